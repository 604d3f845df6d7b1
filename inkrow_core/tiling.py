"""
Tiling - Overlapping tile extraction for a row

Pure computation of tile descriptors from a row's content bounding box:

- width <= T: one tile centered on the content
- otherwise n = ceil((width - O) / S) tiles, tile i at min_x + i*S

where T is the tile edge, O the overlap and S = T - O the stride. All
arithmetic is integer and every offset is computed from its index, so the
same bounding box always produces byte-identical tiles.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

import hashlib
import logging
from typing import List, Optional, Sequence, Tuple

from inkrow_core.errors import TilingError
from inkrow_core.models import BoundingBox, StrokeElement, Tile
from inkrow_core.rendering import TileRenderer, VectorTileRenderer

logger = logging.getLogger(__name__)

TILE_SIZE = 384
TILE_OVERLAP = 64


def tile_count(width: int, tile_size: int = TILE_SIZE, overlap: int = TILE_OVERLAP) -> int:
    """Number of tiles needed to cover ``width`` pixels."""
    if width <= tile_size:
        return 1
    stride = tile_size - overlap
    return -(-(width - overlap) // stride)


def hash_content(image_data: bytes) -> str:
    """Content hash of rendered tile bytes."""
    return hashlib.sha256(image_data).hexdigest()[:16]


def extract_tiles(
    bbox: BoundingBox,
    row_id: str,
    band: Tuple[float, float],
    elements: Sequence[StrokeElement] = (),
    renderer: Optional[TileRenderer] = None,
    tile_size: int = TILE_SIZE,
    overlap: int = TILE_OVERLAP,
) -> List[Tile]:
    """
    Compute the tiles covering a row's content.

    Args:
        bbox: Content bounding box (canvas coordinates)
        row_id: Owning row
        band: (y_start, y_end) of the row
        elements: Strokes to render into the tiles
        renderer: Tile renderer (VectorTileRenderer by default)
        tile_size: Tile edge T
        overlap: Overlap O between consecutive tiles

    Returns:
        Tiles ordered by offset_x

    Raises:
        TilingError: invalid geometry or content outside the row band
    """
    if not 0 <= overlap < tile_size:
        raise TilingError(f"overlap {overlap} must be in [0, {tile_size})")
    if bbox.max_x < bbox.min_x or bbox.max_y < bbox.min_y:
        raise TilingError(f"degenerate bounding box {bbox}", row_id=row_id)

    box = bbox.normalized()
    y_start, y_end = int(band[0]), int(band[1])
    if box.max_y <= y_start or box.min_y >= y_end:
        raise TilingError(
            f"content y=[{box.min_y}, {box.max_y}] lies outside band [{y_start}, {y_end})",
            row_id=row_id,
        )

    clipped = box.min_y < y_start or box.max_y > y_end
    if clipped:
        logger.warning(
            f"Row {row_id}: content spans y=[{box.min_y}, {box.max_y}] beyond its band "
            f"[{y_start}, {y_end}), clipping to the band"
        )

    width = box.max_x - box.min_x
    stride = tile_size - overlap
    offset_y = y_start + ((y_end - y_start) - tile_size) // 2

    if width <= tile_size:
        center_x = (box.min_x + box.max_x) // 2
        offsets = [center_x - tile_size // 2]
    else:
        offsets = [box.min_x + i * stride for i in range(tile_count(width, tile_size, overlap))]

    renderer = renderer or VectorTileRenderer()
    tiles = []
    for index, offset_x in enumerate(offsets):
        image_data = renderer.render(elements, offset_x, offset_y, tile_size, tile_size)
        tiles.append(Tile(
            row_id=row_id,
            tile_index=index,
            offset_x=offset_x,
            offset_y=offset_y,
            width=tile_size,
            height=tile_size,
            overlap_px=overlap if len(offsets) > 1 else 0,
            content_hash=hash_content(image_data),
            clipped=clipped,
            image_data=image_data,
        ))

    logger.debug(f"Row {row_id}: width={width}px -> {len(tiles)} tile(s)")
    return tiles
