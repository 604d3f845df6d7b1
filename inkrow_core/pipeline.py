"""
Pipeline - Wires row events to recognition and validation

RowPipeline listens to RowManager notifications and drives the row flow:

    row deactivated with changed content
        -> (debounce) tiles -> worker pool -> merge -> post-process
        -> update_row(ocr complete)
        -> cascade invalidation -> (debounce) validation

Failures stay inside the row: they are recorded as ``ocr_status`` or
``validation_status`` = error with an ``"<kind>: <message>"`` error message
and never block other rows. retry_row() is the explicit retry path.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

import logging
from pathlib import Path
from typing import Dict, Optional

from inkrow_core.caching import NamespacedCache, create_cache_backend
from inkrow_core.cas import SympyEquivalenceService, SympySyntaxValidator
from inkrow_core.config import InkrowConfig, OcrConfig
from inkrow_core.errors import InkrowError, InvalidMerge, RowCancelled
from inkrow_core.logging_utils import EventLogger
from inkrow_core.merging import FragmentMerger
from inkrow_core.models import OcrStatus, ValidationResult, ValidationStatus
from inkrow_core.postprocess import PostProcessor
from inkrow_core.recognition import HttpRecognitionService
from inkrow_core.rendering import VectorTileRenderer
from inkrow_core.rows import RowEvent, RowEventKind, RowManager
from inkrow_core.scheduler import OCR, AsyncioScheduler, Scheduler
from inkrow_core.services import EquivalenceService, RecognitionService
from inkrow_core.validation import ValidationOrchestrator
from inkrow_core.worker_pool import WorkerPool

logger = logging.getLogger(__name__)

_STATUS_FIELDS = ("ocr_status", "validation_status")


class RowPipeline:
    """
    Event-driven recognition and validation of a document's rows.

    Example:
        pipeline = RowPipeline(rows, pool, orchestrator, PostProcessor(validator), scheduler)
        rows.set_active_row("row-1")   # row-0 is recognized after the debounce
    """

    def __init__(
        self,
        rows: RowManager,
        pool: WorkerPool,
        orchestrator: ValidationOrchestrator,
        postprocessor: Optional[PostProcessor] = None,
        scheduler: Optional[Scheduler] = None,
        ocr: Optional[OcrConfig] = None,
        event_logger: Optional[EventLogger] = None,
    ):
        self.rows = rows
        self.pool = pool
        self.orchestrator = orchestrator
        self.postprocessor = postprocessor or PostProcessor()
        self.scheduler = scheduler or orchestrator.scheduler or AsyncioScheduler()
        if orchestrator.scheduler is None:
            orchestrator.scheduler = self.scheduler
        self.ocr = ocr or OcrConfig()
        self.event_logger = event_logger

        self._cycles: Dict[str, object] = {}  # row id -> marker of the current recognition cycle
        self._unsubscribe = rows.subscribe(self._on_event)

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def _on_event(self, event: RowEvent) -> None:
        if event.kind == RowEventKind.DEACTIVATED:
            if event.content_changed:
                self.schedule_recognition(event.row_id)
        elif event.kind == RowEventKind.ACTIVATED:
            if self.scheduler.cancel((event.row_id, OCR)):
                logger.debug(f"{event.row_id}: re-activated, pending recognition dropped")
            if self.event_logger:
                timeline = self.rows.get_activation_timeline()
                previous = timeline[-2].row_id if len(timeline) > 1 else None
                self.event_logger.log_activation(event.row_id, previous)
        elif event.kind == RowEventKind.OCR_COMPLETE:
            self.orchestrator.invalidate_downstream(event.row_id)
            self.orchestrator.schedule_validation(event.row_id)
        elif event.kind == RowEventKind.UPDATED:
            self._log_transitions(event)
        elif event.kind in (RowEventKind.CLEARED, RowEventKind.LOADED):
            self._reset()

    def _log_transitions(self, event: RowEvent) -> None:
        if self.event_logger is None:
            return
        row = self.rows.get_row(event.row_id)
        for name in _STATUS_FIELDS:
            if name not in event.changes or name not in event.previous:
                continue
            old, new = event.previous[name], event.changes[name]
            if old == new:
                continue
            self.event_logger.log_row_status(
                event.row_id,
                name,
                old.value,
                new.value,
                error_message=row.error_message if row is not None and new.value == "error" else None,
            )

    def _reset(self) -> None:
        for row_id in list(self._cycles):
            self.pool.cancel_row(row_id)
        self._cycles.clear()
        self.scheduler.shutdown()
        self.orchestrator.reset()

    # -------------------------------------------------------------------------
    # Recognition
    # -------------------------------------------------------------------------

    def schedule_recognition(self, row_id: str) -> None:
        """Debounced recognition; supersedes a cycle already running for the row."""
        if row_id in self._cycles:
            self.pool.cancel_row(row_id)
            self._cycles.pop(row_id, None)

        async def run() -> None:
            await self.recognize_row(row_id)

        self.scheduler.schedule((row_id, OCR), self.ocr.debounce, run)

    async def recognize_now(self, row_id: str) -> Optional[str]:
        """Manual trigger: bypass the debounce."""
        self.scheduler.cancel((row_id, OCR))
        return await self.recognize_row(row_id)

    async def recognize_row(self, row_id: str) -> Optional[str]:
        """
        Run one recognition cycle for a row.

        Returns:
            The recognized expression, or None if the row was emptied,
            failed, was cancelled or changed during recognition
        """
        row = self.rows.get_row(row_id)
        if row is None:
            logger.warning(f"Recognition requested for unknown row {row_id}")
            return None

        elements = self.rows.elements_for_row(row_id)
        content_hash = self.rows.compute_content_hash(row_id)
        self._start(row_id)

        if not elements:
            logger.info(f"{row_id}: no content, expression cleared")
            self.rows.update_row(row_id, {
                "ocr_status": OcrStatus.COMPLETE,
                "expression": None,
                "content_hash": content_hash,
                "error_message": None,
            })
            return None

        cycle = object()
        self._cycles[row_id] = cycle
        try:
            merged = await self.pool.process_row(row, elements)
        except RowCancelled:
            logger.debug(f"{row_id}: recognition cycle cancelled")
            return None
        except InkrowError as e:
            if self._cycles.get(row_id) is cycle:
                self._fail(row_id, e)
            return None
        finally:
            if self._cycles.get(row_id) is cycle:
                del self._cycles[row_id]

        current = self.rows.get_row(row_id)
        if current is None or current.ocr_status != OcrStatus.PROCESSING:
            return None
        if self.rows.compute_content_hash(row_id) != content_hash:
            logger.info(f"{row_id}: content changed during recognition, result discarded")
            self.rows.update_row(row_id, {"ocr_status": OcrStatus.PENDING})
            return None

        result = self.postprocessor.process(merged.text)
        for warning in result.warnings:
            logger.debug(f"{row_id}: {warning}")
        if not result.cleaned.strip() or not result.valid:
            errors = merged.errors + ([result.error] if result.error else [])
            self._fail(row_id, InvalidMerge(
                f"'{result.cleaned}' is not a well-formed expression"
                + (f" ({'; '.join(errors)})" if errors else ""),
                text=result.cleaned,
                errors=errors,
            ))
            return None

        self.rows.update_row(row_id, {
            "ocr_status": OcrStatus.COMPLETE,
            "expression": result.cleaned,
            "content_hash": content_hash,
            "error_message": None,
        })
        logger.info(f"{row_id}: recognized '{result.cleaned}'")
        return result.cleaned

    def _start(self, row_id: str) -> None:
        row = self.rows.get_row(row_id)
        if row.ocr_status in (OcrStatus.COMPLETE, OcrStatus.ERROR):
            self.rows.update_row(row_id, {"ocr_status": OcrStatus.PENDING})
        self.rows.update_row(row_id, {"ocr_status": OcrStatus.PROCESSING, "error_message": None})

    def _fail(self, row_id: str, error: InkrowError) -> None:
        logger.error(f"{row_id}: recognition failed: {error.describe()}")
        row = self.rows.get_row(row_id)
        if row is None or row.ocr_status != OcrStatus.PROCESSING:
            return
        self.rows.update_row(row_id, {
            "ocr_status": OcrStatus.ERROR,
            "error_message": error.describe(),
        })

    # -------------------------------------------------------------------------
    # User actions
    # -------------------------------------------------------------------------

    def cancel_row(self, row_id: str) -> int:
        """
        Cancel the row's pending timers and in-flight recognition.

        The row goes back to ``ocr_status = pending``; other rows are not
        affected. Returns the number of tile requests cancelled.
        """
        self._cycles.pop(row_id, None)
        timers = self.scheduler.cancel_row(row_id)
        cancelled = self.pool.cancel_row(row_id)
        row = self.rows.get_row(row_id)
        if row is not None and row.ocr_status == OcrStatus.PROCESSING:
            self.rows.update_row(row_id, {"ocr_status": OcrStatus.PENDING})
        logger.info(f"{row_id}: cancelled ({cancelled} tile(s), {timers} timer(s))")
        return cancelled

    async def retry_row(self, row_id: str) -> Optional[str]:
        """
        Retry whatever failed on a row.

        A failed recognition is rerun; a failed validation is re-checked.
        Returns the row's expression.
        """
        row = self.rows._require(row_id)
        if row.ocr_status == OcrStatus.ERROR:
            return await self.recognize_now(row_id)
        if row.validation_status == ValidationStatus.ERROR:
            self.rows.reset_validation(row_id)
            await self.orchestrator.validate_now(row_id)
        return row.expression

    async def validate_now(self, row_id: str) -> Optional[ValidationResult]:
        return await self.orchestrator.validate_now(row_id)

    async def wait_idle(self) -> None:
        """Wait for callbacks already fired by the scheduler."""
        await self.scheduler.wait_idle()

    async def close(self) -> None:
        self._unsubscribe()
        self.scheduler.shutdown()
        await self.scheduler.wait_idle()
        await self.pool.shutdown()
        await self.orchestrator.service.close()


def build_pipeline(
    config: Optional[InkrowConfig] = None,
    recognition: Optional[RecognitionService] = None,
    equivalence: Optional[EquivalenceService] = None,
    rows: Optional[RowManager] = None,
    scheduler: Optional[Scheduler] = None,
) -> RowPipeline:
    """
    Assemble a pipeline from configuration.

    Args:
        config: Configuration (defaults when None)
        recognition: Recognition service (HTTP adapter on services.recognition_url when None)
        equivalence: Equivalence service (SymPy when None)
        rows: Row manager (new one when None)
        scheduler: Debounce scheduler (asyncio timers when None)

    Raises:
        ValueError: no recognition service and no recognition_url configured
    """
    config = config or InkrowConfig()
    if recognition is None:
        if not config.services.recognition_url:
            raise ValueError("no recognition service given and services.recognition_url is not set")
        recognition = HttpRecognitionService(
            config.services.recognition_url,
            timeout=config.services.recognition_timeout,
        )

    backend = create_cache_backend(
        config.cache.backend,
        cache_dir=Path(config.cache.cache_dir),
        max_size=config.cache.max_size,
        ttl=config.cache.ttl,
    )
    validator = SympySyntaxValidator()
    rows = rows or RowManager(row_height=config.tiling.row_height, start_y=config.tiling.start_y)
    scheduler = scheduler or AsyncioScheduler()

    merger = FragmentMerger(
        validator=validator,
        tile_size=config.tiling.tile_size,
        tight_gap=config.merge.tight_gap,
        wide_gap=config.merge.wide_gap,
    )
    pool = WorkerPool(
        recognition,
        config=config.pool,
        cache=NamespacedCache(backend, "ocr", default_ttl=config.cache.ttl),
        merger=merger,
        tiling=config.tiling,
        renderer=VectorTileRenderer(),
    )
    orchestrator = ValidationOrchestrator(
        rows,
        equivalence or SympyEquivalenceService(timeout=config.validation.timeout),
        cache=NamespacedCache(backend, "validation", default_ttl=config.cache.ttl),
        config=config.validation,
        scheduler=scheduler,
    )
    event_logger = EventLogger(Path(config.logging.log_dir)) if config.logging.events_log else None
    return RowPipeline(
        rows,
        pool,
        orchestrator,
        postprocessor=PostProcessor(validator),
        scheduler=scheduler,
        ocr=config.ocr,
        event_logger=event_logger,
    )
