"""
Models - Core data structures of the row pipeline

Rows, activation events, stroke elements, tiles and the results produced by
recognition and validation. Persisted structures serialize to camelCase
dictionaries (the document payload format).

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple


class OcrStatus(str, Enum):
    """Recognition status of a row."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


class ValidationStatus(str, Enum):
    """Validation status of a row."""
    PENDING = "pending"
    PROCESSING = "processing"
    VALIDATED = "validated"
    INVALID = "invalid"
    ERROR = "error"


class ValidationMethod(str, Enum):
    """How an equivalence verdict was reached."""
    FIRST_ROW = "first-row"
    FAST_PATH = "fast-path"
    FALLBACK = "fallback"


# =============================================================================
# Geometry and content
# =============================================================================

@dataclass
class BoundingBox:
    """Axis-aligned bounding box in canvas coordinates."""
    min_x: float
    min_y: float
    max_x: float
    max_y: float

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    def normalized(self) -> "BoundingBox":
        """Snap outward to integer pixel coordinates."""
        return BoundingBox(
            min_x=math.floor(self.min_x),
            min_y=math.floor(self.min_y),
            max_x=math.ceil(self.max_x),
            max_y=math.ceil(self.max_y),
        )

    @classmethod
    def enclosing(cls, elements: Iterable["StrokeElement"]) -> Optional["BoundingBox"]:
        """Smallest box enclosing all elements (None when empty)."""
        boxes = [e.bounds() for e in elements]
        if not boxes:
            return None
        return cls(
            min_x=min(b.min_x for b in boxes),
            min_y=min(b.min_y for b in boxes),
            max_x=max(b.max_x for b in boxes),
            max_y=max(b.max_y for b in boxes),
        )


@dataclass
class StrokeElement:
    """
    A drawn element on the canvas.

    Attributes:
        id: Stable element identifier
        x, y: Top-left corner
        width, height: Extent of the element
        points: Stroke points, relative to (x, y)
    """
    id: str
    x: float
    y: float
    width: float = 0.0
    height: float = 0.0
    points: List[Tuple[float, float]] = field(default_factory=list)

    @property
    def center_y(self) -> float:
        return self.y + self.height / 2

    def bounds(self) -> BoundingBox:
        return BoundingBox(self.x, self.y, self.x + self.width, self.y + self.height)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "points": [list(p) for p in self.points],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StrokeElement":
        return cls(
            id=str(data["id"]),
            x=float(data["x"]),
            y=float(data["y"]),
            width=float(data.get("width", 0.0)),
            height=float(data.get("height", 0.0)),
            points=[(float(p[0]), float(p[1])) for p in data.get("points", [])],
        )


# =============================================================================
# Results
# =============================================================================

@dataclass
class ValidationResult:
    """Outcome of comparing a row to its predecessor."""
    equivalent: bool
    method: ValidationMethod
    time_ms: float = 0.0
    canonical_a: Optional[str] = None
    canonical_b: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "equivalent": self.equivalent,
            "method": self.method.value,
            "timeMs": self.time_ms,
            "canonicalA": self.canonical_a,
            "canonicalB": self.canonical_b,
        }
        if self.error:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationResult":
        return cls(
            equivalent=bool(data["equivalent"]),
            method=ValidationMethod(data["method"]),
            time_ms=float(data.get("timeMs", 0.0)),
            canonical_a=data.get("canonicalA"),
            canonical_b=data.get("canonicalB"),
            error=data.get("error"),
        )


@dataclass
class RecognitionResult:
    """Recognized fragment for one tile."""
    tile_id: str
    fragment: str
    confidence: float
    duration_ms: float = 0.0
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tileId": self.tile_id,
            "fragment": self.fragment,
            "confidence": self.confidence,
            "durationMs": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecognitionResult":
        return cls(
            tile_id=str(data["tileId"]),
            fragment=str(data["fragment"]),
            confidence=float(data["confidence"]),
            duration_ms=float(data.get("durationMs", 0.0)),
        )


@dataclass
class PlacedFragment:
    """A recognized fragment positioned at its tile's horizontal offset."""
    offset_x: int
    fragment: str
    tile_id: str = ""


# =============================================================================
# Tiles
# =============================================================================

@dataclass
class Tile:
    """A fixed-size crop of a row, the unit of recognition input."""
    row_id: str
    tile_index: int
    offset_x: int
    offset_y: int
    width: int
    height: int
    overlap_px: int
    content_hash: str = ""
    clipped: bool = False
    image_data: bytes = field(default=b"", repr=False)

    @property
    def tile_id(self) -> str:
        return f"{self.row_id}:tile-{self.tile_index}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rowId": self.row_id,
            "tileIndex": self.tile_index,
            "offsetX": self.offset_x,
            "offsetY": self.offset_y,
            "width": self.width,
            "height": self.height,
            "overlapPx": self.overlap_px,
            "contentHash": self.content_hash,
            "clipped": self.clipped,
        }


# =============================================================================
# Rows
# =============================================================================

@dataclass
class ActivationEvent:
    """One entry of the activation timeline."""
    row_id: str
    activated_at: float
    deactivated_at: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.deactivated_at is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rowId": self.row_id,
            "activatedAt": self.activated_at,
            "deactivatedAt": self.deactivated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActivationEvent":
        return cls(
            row_id=data["rowId"],
            activated_at=data["activatedAt"],
            deactivated_at=data.get("deactivatedAt"),
        )


def row_id_for_index(index: int) -> str:
    """Deterministic row identifier for a sequence position."""
    return f"row-{index}"


@dataclass
class Row:
    """
    One horizontal writing lane.

    Attributes:
        id: Deterministic identifier (row-{index})
        index: Sequence position, defines the Y band
        y_start, y_end: Fixed band boundaries
        is_active: Only flipped by RowManager.set_active_row
        ocr_status: Recognition status
        validation_status: Validation status
        expression: Recognized expression (None until recognized)
        validation_result: Last validation outcome
        error_message: Human-readable failure, "<kind>: <message>"
        activated_at: Time of the last activation
        content_hash: Hash of the content that produced ``expression``
        element_ids: Elements assigned to this row
        last_modified: Time of the last mutation
    """
    id: str
    index: int
    y_start: float
    y_end: float
    is_active: bool = False
    ocr_status: OcrStatus = OcrStatus.PENDING
    validation_status: ValidationStatus = ValidationStatus.PENDING
    expression: Optional[str] = None
    validation_result: Optional[ValidationResult] = None
    error_message: Optional[str] = None
    activated_at: Optional[float] = None
    content_hash: Optional[str] = None
    element_ids: List[str] = field(default_factory=list)
    last_modified: Optional[float] = None

    @property
    def has_expression(self) -> bool:
        return bool(self.expression and self.expression.strip())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "index": self.index,
            "yStart": self.y_start,
            "yEnd": self.y_end,
            "isActive": self.is_active,
            "ocrStatus": self.ocr_status.value,
            "validationStatus": self.validation_status.value,
            "expression": self.expression,
            "validationResult": self.validation_result.to_dict() if self.validation_result else None,
            "errorMessage": self.error_message,
            "activatedAt": self.activated_at,
            "contentHash": self.content_hash,
            "elementIds": list(self.element_ids),
            "lastModified": self.last_modified,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Row":
        result = data.get("validationResult")
        return cls(
            id=data["id"],
            index=data["index"],
            y_start=data["yStart"],
            y_end=data["yEnd"],
            is_active=data.get("isActive", False),
            ocr_status=OcrStatus(data.get("ocrStatus", OcrStatus.PENDING.value)),
            validation_status=ValidationStatus(data.get("validationStatus", ValidationStatus.PENDING.value)),
            expression=data.get("expression"),
            validation_result=ValidationResult.from_dict(result) if result else None,
            error_message=data.get("errorMessage"),
            activated_at=data.get("activatedAt"),
            content_hash=data.get("contentHash"),
            element_ids=list(data.get("elementIds", [])),
            last_modified=data.get("lastModified"),
        )
