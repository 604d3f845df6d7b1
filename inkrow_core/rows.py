"""
Rows - Row state machine, active-row invariant and activation timeline

RowManager is the single source of truth for row metadata. Every mutation
goes through it:

- set_active_row() is the only way to flip ``is_active``; it closes the
  open timeline entry and opens a new one
- update_row() validates the whole payload (fields, types, status
  transitions) before touching the row, so a rejected update leaves no trace
- an ``ocr_status`` change to ``complete`` re-arms validation for the row
  and for its nearest non-empty successor

Listeners subscribed with subscribe() receive RowEvent notifications after
each mutation; the pipeline uses them to schedule recognition and validation.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

import hashlib
import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from inkrow_core.errors import InvalidRowUpdate, PersistedStateCorrupt, RowNotFound
from inkrow_core.models import (
    ActivationEvent,
    OcrStatus,
    Row,
    StrokeElement,
    ValidationResult,
    ValidationStatus,
    row_id_for_index,
)
from inkrow_core.schema import DocumentModel
from inkrow_core.version import DOCUMENT_VERSION

logger = logging.getLogger(__name__)


class RowEventKind(str, Enum):
    """Notifications emitted by RowManager."""
    CREATED = "created"
    ACTIVATED = "activated"
    DEACTIVATED = "deactivated"
    UPDATED = "updated"
    OCR_COMPLETE = "ocr_complete"
    CLEARED = "cleared"
    LOADED = "loaded"


@dataclass
class RowEvent:
    kind: RowEventKind
    row_id: Optional[str] = None
    content_changed: bool = False
    changes: Dict[str, Any] = field(default_factory=dict)
    previous: Dict[str, Any] = field(default_factory=dict)


RowListener = Callable[[RowEvent], None]

OCR_TRANSITIONS: Dict[OcrStatus, Tuple[OcrStatus, ...]] = {
    OcrStatus.PENDING: (OcrStatus.PENDING, OcrStatus.PROCESSING),
    OcrStatus.PROCESSING: (OcrStatus.PROCESSING, OcrStatus.COMPLETE, OcrStatus.ERROR, OcrStatus.PENDING),
    OcrStatus.COMPLETE: (OcrStatus.COMPLETE, OcrStatus.PENDING),
    OcrStatus.ERROR: (OcrStatus.ERROR, OcrStatus.PENDING),
}

_REARM_VALIDATION = (ValidationStatus.PENDING, ValidationStatus.PROCESSING)

VALIDATION_TRANSITIONS: Dict[ValidationStatus, Tuple[ValidationStatus, ...]] = {
    ValidationStatus.PENDING: (ValidationStatus.PENDING, ValidationStatus.PROCESSING),
    ValidationStatus.PROCESSING: (
        ValidationStatus.PROCESSING,
        ValidationStatus.VALIDATED,
        ValidationStatus.INVALID,
        ValidationStatus.ERROR,
        ValidationStatus.PENDING,
    ),
    ValidationStatus.VALIDATED: (ValidationStatus.VALIDATED,) + _REARM_VALIDATION,
    ValidationStatus.INVALID: (ValidationStatus.INVALID,) + _REARM_VALIDATION,
    ValidationStatus.ERROR: (ValidationStatus.ERROR,) + _REARM_VALIDATION,
}

# Accepted payload keys (camelCase aliases map to attribute names)
FIELD_ALIASES = {
    "ocrStatus": "ocr_status",
    "validationStatus": "validation_status",
    "validationResult": "validation_result",
    "errorMessage": "error_message",
    "contentHash": "content_hash",
}

_OPTIONAL_STR_FIELDS = ("expression", "error_message", "content_hash")
_IMMUTABLE_FIELDS = ("id", "index", "y_start", "y_end", "yStart", "yEnd")


def compute_content_hash(elements: List[StrokeElement]) -> str:
    """Order-independent fingerprint of a row's elements."""
    parts = sorted(
        f"{e.id}:{round(e.x)}:{round(e.y)}:{round(e.width)}:{round(e.height)}"
        for e in elements
    )
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:16]


class RowManager:
    """
    Owns rows, elements and the activation timeline of one document.

    Rows are created on demand with deterministic ids (``row-{index}``) and
    fixed bands ``[start_y + index * row_height, +row_height)``. They are
    never deleted individually, only through clear() or deserialize().
    """

    def __init__(
        self,
        row_height: float = 384,
        start_y: float = 0,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize an empty document.

        Args:
            row_height: Height of each row band in pixels
            start_y: Y coordinate of the first row
            clock: Time source for timestamps (defaults to time.time)
        """
        self.row_height = row_height
        self.start_y = start_y
        self.clock = clock or time.time

        self._rows: Dict[str, Row] = {}
        self._elements: Dict[str, StrokeElement] = {}
        self._element_rows: Dict[str, str] = {}
        self._timeline: List[ActivationEvent] = []
        self._active_row_id: Optional[str] = None
        self._listeners: List[RowListener] = []

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def subscribe(self, listener: RowListener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: RowEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Row listener failed on {event.kind.value} for {event.row_id}: {e}")

    def _now(self) -> float:
        now = self.clock()
        if self._timeline:
            # Keep the timeline monotonic even if the clock steps back
            now = max(now, self._timeline[-1].activated_at)
        return now

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get_row(self, row_id: str) -> Optional[Row]:
        return self._rows.get(row_id)

    def _require(self, row_id: str) -> Row:
        row = self._rows.get(row_id)
        if row is None:
            raise RowNotFound(f"unknown row '{row_id}'", row_id=row_id)
        return row

    def get_rows(self) -> List[Row]:
        """All rows ordered by index."""
        return sorted(self._rows.values(), key=lambda r: r.index)

    def get_active_row(self) -> Optional[Row]:
        if self._active_row_id is None:
            return None
        return self._rows.get(self._active_row_id)

    @property
    def active_row_id(self) -> Optional[str]:
        return self._active_row_id

    def is_row_active(self, row_id: str) -> bool:
        return self._active_row_id == row_id

    def previous_non_empty(self, row_id: str) -> Optional[Row]:
        """Nearest earlier row holding an expression."""
        index = self._require(row_id).index
        candidates = [r for r in self._rows.values() if r.index < index and r.has_expression]
        return max(candidates, key=lambda r: r.index) if candidates else None

    def next_non_empty(self, row_id: str) -> Optional[Row]:
        """Nearest later row holding an expression."""
        index = self._require(row_id).index
        candidates = [r for r in self._rows.values() if r.index > index and r.has_expression]
        return min(candidates, key=lambda r: r.index) if candidates else None

    def rows_after(self, row_id: str) -> List[Row]:
        index = self._require(row_id).index
        return [r for r in self.get_rows() if r.index > index]

    def get_rows_in_viewport(self, y: float, height: float) -> List[Row]:
        """Existing rows intersecting the vertical range [y, y + height)."""
        bottom = y + height
        return [r for r in self.get_rows() if r.y_end > y and r.y_start < bottom]

    def get_activation_timeline(self) -> List[ActivationEvent]:
        """Copy of the ordered activation log."""
        return [
            ActivationEvent(e.row_id, e.activated_at, e.deactivated_at)
            for e in self._timeline
        ]

    # -------------------------------------------------------------------------
    # Creation and activation
    # -------------------------------------------------------------------------

    def _create_row(self, index: int) -> Row:
        row_id = row_id_for_index(index)
        y_start = self.start_y + index * self.row_height
        row = Row(
            id=row_id,
            index=index,
            y_start=y_start,
            y_end=y_start + self.row_height,
            last_modified=self.clock(),
        )
        self._rows[row_id] = row
        logger.debug(f"Created {row_id} band=[{row.y_start}, {row.y_end})")
        self._emit(RowEvent(RowEventKind.CREATED, row_id))
        return row

    def create_row(self) -> Row:
        """Append a row immediately below the lowest existing band."""
        index = max((r.index for r in self._rows.values()), default=-1) + 1
        return self._create_row(index)

    def get_row_for_y(self, y: float) -> Optional[Row]:
        """Row whose band contains ``y``, created if needed (None for invalid y)."""
        if not isinstance(y, (int, float)) or not math.isfinite(y):
            logger.warning(f"Invalid Y coordinate: {y!r}")
            return None
        index = max(0, math.floor((y - self.start_y) / self.row_height))
        row = self._rows.get(row_id_for_index(index))
        return row if row is not None else self._create_row(index)

    def set_active_row(self, row_id: str) -> Row:
        """
        Make ``row_id`` the active row.

        The previous active row is deactivated and its timeline entry closed.
        If its content changed since it was last recognized, its OCR status
        is re-armed to pending and the deactivation event says so.

        Raises:
            RowNotFound: unknown row id
        """
        row = self._require(row_id)
        previous = self.get_active_row()
        if previous is row:
            return row

        now = self._now()
        content_changed = False
        if previous is not None:
            previous.is_active = False
            for entry in reversed(self._timeline):
                if entry.row_id == previous.id and entry.is_open:
                    entry.deactivated_at = now
                    break
            content_changed = self._rearm_if_changed(previous)

        row.is_active = True
        row.activated_at = now
        self._active_row_id = row.id
        self._timeline.append(ActivationEvent(row_id=row.id, activated_at=now))
        logger.debug(f"Active row: {previous.id if previous else None} -> {row.id}")

        if previous is not None:
            self._emit(RowEvent(RowEventKind.DEACTIVATED, previous.id, content_changed=content_changed))
        self._emit(RowEvent(RowEventKind.ACTIVATED, row.id))
        return row

    def _rearm_if_changed(self, row: Row) -> bool:
        current = self.compute_content_hash(row.id)
        if current == row.content_hash:
            return False
        if not row.element_ids and row.content_hash is None and not row.has_expression:
            # Never had content
            return False
        if row.ocr_status != OcrStatus.PENDING:
            logger.debug(f"{row.id}: content changed, OCR re-armed ({row.ocr_status.value} -> pending)")
        row.ocr_status = OcrStatus.PENDING
        row.last_modified = self.clock()
        return True

    def activate_next(self) -> Row:
        """Activate the row below the active one, appending it if needed."""
        active = self.get_active_row()
        if active is None:
            rows = self.get_rows()
            target = rows[0] if rows else self._create_row(0)
        else:
            target = self._rows.get(row_id_for_index(active.index + 1)) or self._create_row(active.index + 1)
        return self.set_active_row(target.id)

    def activate_previous(self) -> Row:
        """Activate the row above the active one (stays on the first row)."""
        active = self.get_active_row()
        if active is None:
            return self.activate_next()
        if active.index == 0:
            return active
        index = active.index - 1
        target = self._rows.get(row_id_for_index(index)) or self._create_row(index)
        return self.set_active_row(target.id)

    # -------------------------------------------------------------------------
    # Updates
    # -------------------------------------------------------------------------

    def _validate_update(self, row: Row, fields: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(fields, dict):
            raise InvalidRowUpdate(f"update payload must be a mapping, got {type(fields).__name__}")

        normalized: Dict[str, Any] = {}
        for key, value in fields.items():
            if key in ("is_active", "isActive"):
                raise InvalidRowUpdate("is_active can only change through set_active_row()", row_id=row.id)
            if key in _IMMUTABLE_FIELDS:
                raise InvalidRowUpdate(f"field '{key}' is immutable", row_id=row.id)
            name = FIELD_ALIASES.get(key, key)

            if name == "ocr_status":
                try:
                    value = OcrStatus(value)
                except ValueError:
                    raise InvalidRowUpdate(f"invalid ocr_status {value!r}", row_id=row.id)
                if value not in OCR_TRANSITIONS[row.ocr_status]:
                    raise InvalidRowUpdate(
                        f"illegal ocr_status transition {row.ocr_status.value} -> {value.value}",
                        row_id=row.id,
                    )
            elif name == "validation_status":
                try:
                    value = ValidationStatus(value)
                except ValueError:
                    raise InvalidRowUpdate(f"invalid validation_status {value!r}", row_id=row.id)
                if value not in VALIDATION_TRANSITIONS[row.validation_status]:
                    raise InvalidRowUpdate(
                        f"illegal validation_status transition {row.validation_status.value} -> {value.value}",
                        row_id=row.id,
                    )
            elif name == "validation_result":
                if isinstance(value, dict):
                    try:
                        value = ValidationResult.from_dict(value)
                    except (KeyError, TypeError, ValueError) as e:
                        raise InvalidRowUpdate(f"invalid validation_result: {e}", row_id=row.id)
                elif value is not None and not isinstance(value, ValidationResult):
                    raise InvalidRowUpdate("validation_result must be a ValidationResult", row_id=row.id)
            elif name in _OPTIONAL_STR_FIELDS:
                if value is not None and not isinstance(value, str):
                    raise InvalidRowUpdate(f"field '{key}' must be a string or None", row_id=row.id)
            else:
                raise InvalidRowUpdate(f"unknown field '{key}'", row_id=row.id)

            normalized[name] = value
        return normalized

    def update_row(self, row_id: str, fields: Dict[str, Any]) -> Row:
        """
        Merge ``fields`` into a row.

        Raises:
            RowNotFound: unknown row id
            InvalidRowUpdate: malformed payload or illegal transition (no
                field is modified)
        """
        row = self._require(row_id)
        changes = self._validate_update(row, fields)

        previous_ocr = row.ocr_status
        previous = {name: getattr(row, name) for name in changes}
        for name, value in changes.items():
            setattr(row, name, value)
        row.last_modified = self.clock()

        ocr_completed = (
            changes.get("ocr_status") == OcrStatus.COMPLETE and previous_ocr != OcrStatus.COMPLETE
        )
        rearmed: List[str] = []
        if ocr_completed:
            rearmed = self._rearm_validation(row, explicit="validation_status" in changes)

        self._emit(RowEvent(RowEventKind.UPDATED, row.id, changes=changes, previous=previous))
        if ocr_completed:
            self._emit(RowEvent(RowEventKind.OCR_COMPLETE, row.id, changes={"rearmed": rearmed}))
        return row

    def _rearm_validation(self, row: Row, explicit: bool) -> List[str]:
        """Reset validation of the row and of its dependent successor."""
        rearmed = []
        if not explicit:
            row.validation_status = ValidationStatus.PENDING
            row.validation_result = None
            rearmed.append(row.id)
        successor = self.next_non_empty(row.id)
        if successor is not None:
            successor.validation_status = ValidationStatus.PENDING
            successor.validation_result = None
            successor.last_modified = self.clock()
            rearmed.append(successor.id)
        logger.debug(f"{row.id}: OCR complete, validation re-armed for {rearmed}")
        return rearmed

    def reset_validation(self, row_id: str) -> Row:
        """Re-arm a row's validation to pending (used by cascade invalidation)."""
        row = self._require(row_id)
        row.validation_status = ValidationStatus.PENDING
        row.validation_result = None
        row.last_modified = self.clock()
        self._emit(RowEvent(RowEventKind.UPDATED, row.id, changes={"validation_status": row.validation_status}))
        return row

    # -------------------------------------------------------------------------
    # Elements
    # -------------------------------------------------------------------------

    def element_in_active_row(self, element: StrokeElement) -> bool:
        active = self.get_active_row()
        if active is None:
            return True
        top = element.y
        bottom = element.y + element.height
        return bottom > active.y_start and top < active.y_end

    def assign_element(self, element: StrokeElement) -> Optional[Row]:
        """
        Assign an element to the row containing its vertical center.

        Elements outside the active row band are rejected (None). Re-assigning
        a known element moves it.
        """
        if not self.element_in_active_row(element):
            logger.debug(f"Element {element.id} rejected: outside the active row")
            return None

        target = self.get_row_for_y(element.center_y)
        if target is None:
            return None

        self.remove_element(element.id)
        self._elements[element.id] = element
        self._element_rows[element.id] = target.id
        target.element_ids.append(element.id)
        target.last_modified = self.clock()
        return target

    def remove_element(self, element_id: str) -> Optional[str]:
        """Remove an element. Returns the id of the row it belonged to."""
        row_id = self._element_rows.pop(element_id, None)
        self._elements.pop(element_id, None)
        if row_id is None:
            return None
        row = self._rows.get(row_id)
        if row is not None and element_id in row.element_ids:
            row.element_ids.remove(element_id)
            row.last_modified = self.clock()
        return row_id

    def elements_for_row(self, row_id: str) -> List[StrokeElement]:
        row = self._require(row_id)
        elements = [self._elements[eid] for eid in row.element_ids if eid in self._elements]
        return sorted(elements, key=lambda e: (e.x, e.id))

    def compute_content_hash(self, row_id: str) -> str:
        return compute_content_hash(self.elements_for_row(row_id))

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def serialize(self) -> Dict[str, Any]:
        """Document payload: rows, active row pointer, timeline and elements."""
        return {
            "version": DOCUMENT_VERSION,
            "rowHeight": self.row_height,
            "startY": self.start_y,
            "activeRowId": self._active_row_id,
            "rows": [row.to_dict() for row in self.get_rows()],
            "activationTimeline": [e.to_dict() for e in self._timeline],
            "elements": [e.to_dict() for e in self._elements.values()],
        }

    def deserialize(self, payload: Dict[str, Any]) -> None:
        """
        Replace the document with a serialized payload.

        The payload is validated as a whole before anything is replaced.

        Raises:
            PersistedStateCorrupt: payload fails schema or invariant checks
        """
        try:
            document = DocumentModel.model_validate(payload)
        except ValidationError as e:
            raise PersistedStateCorrupt(f"invalid document payload: {e.error_count()} error(s)", detail=str(e))

        data = document.model_dump(mode="json", by_alias=True)
        rows = [Row.from_dict(r) for r in data["rows"]]
        timeline = [ActivationEvent.from_dict(e) for e in data["activationTimeline"]]
        elements = [StrokeElement.from_dict(e) for e in data["elements"]]
        self._check_document(document, rows, timeline)

        by_id = {row.id: row for row in rows}
        element_rows = {}
        for row in rows:
            for eid in row.element_ids:
                element_rows[eid] = row.id

        self.row_height = document.row_height
        self.start_y = document.start_y
        self._rows = by_id
        self._timeline = timeline
        self._elements = {e.id: e for e in elements if e.id in element_rows}
        self._element_rows = {eid: rid for eid, rid in element_rows.items() if eid in self._elements}
        self._active_row_id = document.active_row_id
        logger.info(f"Loaded document: {len(rows)} row(s), {len(timeline)} activation(s)")
        self._emit(RowEvent(RowEventKind.LOADED))

    def _check_document(self, document: DocumentModel, rows: List[Row], timeline: List[ActivationEvent]) -> None:
        seen = set()
        for row in rows:
            if row.id != row_id_for_index(row.index) or row.id in seen:
                raise PersistedStateCorrupt(f"row id '{row.id}' does not match index {row.index}")
            seen.add(row.id)
            expected = document.start_y + row.index * document.row_height
            if not math.isclose(row.y_start, expected) or not math.isclose(row.y_end, expected + document.row_height):
                raise PersistedStateCorrupt(f"row '{row.id}' band does not match rowHeight/startY")

        active = [row.id for row in rows if row.is_active]
        if len(active) > 1:
            raise PersistedStateCorrupt(f"more than one active row: {active}")
        if (active[0] if active else None) != document.active_row_id:
            raise PersistedStateCorrupt("activeRowId does not match row flags")

        open_entries = [e for e in timeline if e.is_open]
        if len(open_entries) > 1:
            raise PersistedStateCorrupt("more than one open activation entry")
        for before, after in zip(timeline, timeline[1:]):
            if after.activated_at < before.activated_at:
                raise PersistedStateCorrupt("activation timeline is not ordered")
        for entry in timeline:
            if entry.row_id not in seen:
                raise PersistedStateCorrupt(f"timeline references unknown row '{entry.row_id}'")

    def clear(self) -> None:
        """Reset the whole document."""
        self._rows.clear()
        self._elements.clear()
        self._element_rows.clear()
        self._timeline.clear()
        self._active_row_id = None
        logger.info("Document cleared")
        self._emit(RowEvent(RowEventKind.CLEARED))
