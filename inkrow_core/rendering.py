"""
Rendering - Deterministic tile rendering for recognition and hashing

The pipeline never rasterizes by itself: a TileRenderer turns the strokes that
fall inside a tile into the bytes sent to the recognition service. The
default VectorTileRenderer emits a canonical JSON description of the strokes
relative to the tile origin, so identical handwriting yields identical bytes
(and therefore identical content hashes) wherever it sits on the canvas.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

import json
from abc import ABC, abstractmethod
from typing import List, Sequence, Tuple

from inkrow_core.models import StrokeElement


class TileRenderer(ABC):
    """Renders the content of one tile region."""

    @abstractmethod
    def render(
        self,
        elements: Sequence[StrokeElement],
        offset_x: int,
        offset_y: int,
        width: int,
        height: int,
    ) -> bytes:
        pass


class VectorTileRenderer(TileRenderer):
    """
    Canonical vector rendering.

    Element ids are not part of the output, only geometry.
    Coordinates are rounded to ``precision`` decimals.
    """

    def __init__(self, precision: int = 1):
        self.precision = precision

    def _stroke_points(self, element: StrokeElement) -> List[Tuple[float, float]]:
        if element.points:
            return [(element.x + px, element.y + py) for px, py in element.points]
        # Shapes without points are rendered as their diagonal
        return [(element.x, element.y), (element.x + element.width, element.y + element.height)]

    def render(
        self,
        elements: Sequence[StrokeElement],
        offset_x: int,
        offset_y: int,
        width: int,
        height: int,
    ) -> bytes:
        max_x = offset_x + width
        max_y = offset_y + height
        strokes = []
        for element in elements:
            points = [
                [round(x - offset_x, self.precision), round(y - offset_y, self.precision)]
                for x, y in self._stroke_points(element)
                if offset_x <= x <= max_x and offset_y <= y <= max_y
            ]
            if points:
                strokes.append(points)
        strokes.sort()
        payload = {"w": width, "h": height, "strokes": strokes}
        return json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
