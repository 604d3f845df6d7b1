"""
Schema - Pydantic models of the persisted document payload

Validates the payload produced by RowManager.serialize() before it is
restored, so that a corrupt or hand-edited document is rejected as a whole.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from inkrow_core.models import OcrStatus, ValidationMethod, ValidationStatus


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ValidationResultModel(_CamelModel):
    equivalent: bool
    method: ValidationMethod
    time_ms: float = Field(0.0, alias="timeMs")
    canonical_a: Optional[str] = Field(None, alias="canonicalA")
    canonical_b: Optional[str] = Field(None, alias="canonicalB")
    error: Optional[str] = None


class RowModel(_CamelModel):
    id: str
    index: int = Field(ge=0)
    y_start: float = Field(alias="yStart")
    y_end: float = Field(alias="yEnd")
    is_active: bool = Field(False, alias="isActive")
    ocr_status: OcrStatus = Field(OcrStatus.PENDING, alias="ocrStatus")
    validation_status: ValidationStatus = Field(ValidationStatus.PENDING, alias="validationStatus")
    expression: Optional[str] = None
    validation_result: Optional[ValidationResultModel] = Field(None, alias="validationResult")
    error_message: Optional[str] = Field(None, alias="errorMessage")
    activated_at: Optional[float] = Field(None, alias="activatedAt")
    content_hash: Optional[str] = Field(None, alias="contentHash")
    element_ids: List[str] = Field(default_factory=list, alias="elementIds")
    last_modified: Optional[float] = Field(None, alias="lastModified")


class ActivationEventModel(_CamelModel):
    row_id: str = Field(alias="rowId")
    activated_at: float = Field(alias="activatedAt")
    deactivated_at: Optional[float] = Field(None, alias="deactivatedAt")


class StrokeElementModel(_CamelModel):
    id: str
    x: float
    y: float
    width: float = 0.0
    height: float = 0.0
    points: List[Tuple[float, float]] = Field(default_factory=list)


class DocumentModel(_CamelModel):
    """Top-level persisted document."""
    version: int = Field(ge=1)
    row_height: float = Field(gt=0, alias="rowHeight")
    start_y: float = Field(0.0, alias="startY")
    active_row_id: Optional[str] = Field(None, alias="activeRowId")
    rows: List[RowModel] = Field(default_factory=list)
    activation_timeline: List[ActivationEventModel] = Field(default_factory=list, alias="activationTimeline")
    elements: List[StrokeElementModel] = Field(default_factory=list)
