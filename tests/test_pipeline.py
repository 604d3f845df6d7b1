"""
End-to-end tests for the row pipeline

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

import asyncio
import pytest

from inkrow_core.cas import SympyEquivalenceService, SympySyntaxValidator
from inkrow_core.config import InkrowConfig, ValidationConfig
from inkrow_core.errors import RecognitionError
from inkrow_core.logging_utils import EventLogger
from inkrow_core.merging import FragmentMerger
from inkrow_core.models import OcrStatus, ValidationMethod, ValidationStatus
from inkrow_core.pipeline import RowPipeline, build_pipeline
from inkrow_core.postprocess import PostProcessor
from inkrow_core.scheduler import OCR
from inkrow_core.validation import ValidationOrchestrator
from inkrow_core.worker_pool import WorkerPool

from conftest import FakeEquivalence, FakeRecognition, OffsetRenderer, stroke

ANSWERS = {
    b"tile@0": "x^2 + 3x",
    b"tile@320": "y + y^2",
    b"tile@640": "- 5",
    b"tile@828": "(x + y)^2 + xy - 5",
}


class FlakyRecognition(FakeRecognition):
    """Fails every call while ``broken`` is set."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.broken = True

    async def recognize(self, image_data):
        if self.broken:
            raise RecognitionError("model unavailable")
        return await super().recognize(image_data)


def make_pipeline(rows, scheduler, recognition, ocr_cache, validation_cache, equivalence=None, event_logger=None):
    validator = SympySyntaxValidator()
    pool = WorkerPool(
        recognition,
        cache=ocr_cache,
        merger=FragmentMerger(validator=validator),
        renderer=OffsetRenderer(),
    )
    orchestrator = ValidationOrchestrator(
        rows,
        equivalence or FakeEquivalence(),
        cache=validation_cache,
        config=ValidationConfig(timeout=30.0),
    )
    return RowPipeline(
        rows,
        pool,
        orchestrator,
        postprocessor=PostProcessor(validator),
        scheduler=scheduler,
        event_logger=event_logger,
    )


async def spin(times: int = 5):
    for _ in range(times):
        await asyncio.sleep(0)


class TestRecognitionFlow:
    """Tests for deactivation -> recognition -> validation."""

    @pytest.mark.asyncio
    async def test_wide_row_recognized_and_validated(self, row_manager, manual_scheduler, ocr_cache, validation_cache):
        """Test a three-tile row is merged, cleaned and validated as first row."""
        recognition = FakeRecognition(answers=ANSWERS)
        pipeline = make_pipeline(row_manager, manual_scheduler, recognition, ocr_cache, validation_cache)

        row_manager.activate_next()
        row_manager.assign_element(stroke("e1", 0, 100, width=800))
        row_manager.activate_next()
        assert manual_scheduler.is_pending(("row-0", OCR))

        await manual_scheduler.advance(1.4)
        assert recognition.calls == []
        await manual_scheduler.advance(0.1)
        row = row_manager.get_row("row-0")
        assert row.ocr_status == OcrStatus.COMPLETE
        assert row.expression == "x^2 + 3xy + y^2 - 5"
        assert row.validation_status == ValidationStatus.PENDING

        await manual_scheduler.advance(0.5)
        row = row_manager.get_row("row-0")
        assert row.validation_status == ValidationStatus.VALIDATED
        assert row.validation_result.method == ValidationMethod.FIRST_ROW
        await pipeline.close()

    @pytest.mark.asyncio
    async def test_second_row_checked_against_first(self, row_manager, manual_scheduler, ocr_cache, validation_cache):
        """Test an equivalent rewrite on the next row is validated with SymPy."""
        pipeline = make_pipeline(
            row_manager, manual_scheduler, FakeRecognition(answers=ANSWERS),
            ocr_cache, validation_cache, equivalence=SympyEquivalenceService(timeout=30.0),
        )
        row_manager.activate_next()
        row_manager.assign_element(stroke("e1", 0, 100, width=800))
        row_manager.activate_next()
        row_manager.assign_element(stroke("e2", 1000, 500))
        row_manager.activate_next()

        await manual_scheduler.advance(2.0)
        first = row_manager.get_row("row-0")
        second = row_manager.get_row("row-1")
        assert second.expression == "(x + y)^2 + xy - 5"
        assert first.validation_status == ValidationStatus.VALIDATED
        assert second.validation_status == ValidationStatus.VALIDATED
        assert second.validation_result.method == ValidationMethod.FAST_PATH
        await pipeline.close()

    @pytest.mark.asyncio
    async def test_reactivation_drops_pending_recognition(self, row_manager, manual_scheduler, ocr_cache, validation_cache):
        """Test returning to a row before the debounce cancels its recognition."""
        recognition = FakeRecognition()
        make_pipeline(row_manager, manual_scheduler, recognition, ocr_cache, validation_cache)

        row_manager.activate_next()
        row_manager.assign_element(stroke("e1", 0, 100))
        row_manager.activate_next()
        row_manager.set_active_row("row-0")

        await manual_scheduler.advance(5.0)
        assert recognition.calls == []
        assert row_manager.get_row("row-0").ocr_status == OcrStatus.PENDING

    @pytest.mark.asyncio
    async def test_ocr_completion_invalidates_successor(self, row_manager, manual_scheduler, ocr_cache, validation_cache):
        """Test re-recognizing row N re-validates row N+1."""
        equivalence = FakeEquivalence()
        pipeline = make_pipeline(
            row_manager, manual_scheduler, FakeRecognition(answers=ANSWERS),
            ocr_cache, validation_cache, equivalence=equivalence,
        )
        row_manager.activate_next()
        row_manager.assign_element(stroke("e1", 0, 100, width=800))
        row_manager.activate_next()
        row_manager.assign_element(stroke("e2", 1000, 500))
        row_manager.activate_next()
        await manual_scheduler.advance(2.0)
        assert len(equivalence.calls) == 1
        key = pipeline.orchestrator.cache_key_for("row-1")

        await pipeline.recognize_now("row-0")
        assert key not in validation_cache
        assert row_manager.get_row("row-1").validation_status == ValidationStatus.PENDING

        await manual_scheduler.advance(0.5)
        assert len(equivalence.calls) == 2
        assert row_manager.get_row("row-1").validation_status == ValidationStatus.VALIDATED
        await pipeline.close()

    @pytest.mark.asyncio
    async def test_emptied_row(self, row_manager, manual_scheduler, ocr_cache, validation_cache):
        """Test erasing a row's content clears its expression."""
        recognition = FakeRecognition()
        pipeline = make_pipeline(row_manager, manual_scheduler, recognition, ocr_cache, validation_cache)
        row_manager.activate_next()
        row_manager.assign_element(stroke("e1", 0, 100))
        await pipeline.recognize_now("row-0")
        assert row_manager.get_row("row-0").expression == "x"

        row_manager.remove_element("e1")
        assert await pipeline.recognize_now("row-0") is None
        row = row_manager.get_row("row-0")
        assert row.expression is None
        assert row.ocr_status == OcrStatus.COMPLETE
        assert len(recognition.calls) == 1
        await pipeline.close()


class TestFailures:
    """Tests for failures, cancellation and retry."""

    @pytest.mark.asyncio
    async def test_recognition_failure_and_retry(self, row_manager, manual_scheduler, ocr_cache, validation_cache):
        """Test a failed row reports its error kind and recovers on retry."""
        recognition = FlakyRecognition()
        pipeline = make_pipeline(row_manager, manual_scheduler, recognition, ocr_cache, validation_cache)
        row_manager.activate_next()
        row_manager.assign_element(stroke("e1", 0, 100))

        assert await pipeline.recognize_now("row-0") is None
        row = row_manager.get_row("row-0")
        assert row.ocr_status == OcrStatus.ERROR
        assert row.error_message.startswith("recognition_error:")
        assert row.expression is None

        recognition.broken = False
        assert await pipeline.retry_row("row-0") == "x"
        row = row_manager.get_row("row-0")
        assert row.ocr_status == OcrStatus.COMPLETE
        assert row.error_message is None
        await pipeline.close()

    @pytest.mark.asyncio
    async def test_failure_does_not_block_other_rows(self, row_manager, manual_scheduler, ocr_cache, validation_cache):
        """Test one failing row leaves the other rows working."""

        class PartlyBroken(FakeRecognition):
            async def recognize(self, image_data):
                if image_data == b"tile@828":
                    raise RecognitionError("unreadable")
                return await super().recognize(image_data)

        pipeline = make_pipeline(row_manager, manual_scheduler, PartlyBroken(), ocr_cache, validation_cache)
        row_manager.activate_next()
        row_manager.assign_element(stroke("e1", 0, 100))
        row_manager.activate_next()
        row_manager.assign_element(stroke("e2", 1000, 500))
        row_manager.activate_next()

        await manual_scheduler.advance(1.5)
        assert row_manager.get_row("row-0").ocr_status == OcrStatus.COMPLETE
        assert row_manager.get_row("row-1").ocr_status == OcrStatus.ERROR
        await pipeline.close()

    @pytest.mark.asyncio
    async def test_cancel_mid_recognition(self, row_manager, manual_scheduler, ocr_cache, validation_cache):
        """Test cancelling leaves the row pending and caches nothing."""
        gate = asyncio.Event()
        pipeline = make_pipeline(row_manager, manual_scheduler, FakeRecognition(gate=gate), ocr_cache, validation_cache)
        row_manager.activate_next()
        row_manager.assign_element(stroke("e1", 0, 100, width=800))

        task = asyncio.ensure_future(pipeline.recognize_now("row-0"))
        await spin()
        assert row_manager.get_row("row-0").ocr_status == OcrStatus.PROCESSING

        assert pipeline.cancel_row("row-0") == 3
        assert row_manager.get_row("row-0").ocr_status == OcrStatus.PENDING
        gate.set()
        assert await task is None
        await pipeline.close()
        assert ocr_cache.keys() == []
        assert row_manager.get_row("row-0").ocr_status == OcrStatus.PENDING

    @pytest.mark.asyncio
    async def test_invalid_merge(self, row_manager, manual_scheduler, ocr_cache, validation_cache):
        """Test an unparsable result is reported as invalid_merge."""
        recognition = FakeRecognition(default="x + ")
        pipeline = make_pipeline(row_manager, manual_scheduler, recognition, ocr_cache, validation_cache)
        row_manager.activate_next()
        row_manager.assign_element(stroke("e1", 0, 100))

        await pipeline.recognize_now("row-0")
        row = row_manager.get_row("row-0")
        assert row.ocr_status == OcrStatus.ERROR
        assert row.error_message.startswith("invalid_merge:")
        await pipeline.close()


class TestEventLog:
    """Tests for the structured event log."""

    @pytest.mark.asyncio
    async def test_transitions_logged(self, row_manager, manual_scheduler, ocr_cache, validation_cache, temp_dir):
        """Test activations and status transitions reach events.jsonl."""
        event_logger = EventLogger(temp_dir)
        pipeline = make_pipeline(
            row_manager, manual_scheduler, FakeRecognition(), ocr_cache, validation_cache,
            event_logger=event_logger,
        )
        row_manager.activate_next()
        row_manager.assign_element(stroke("e1", 0, 100))
        row_manager.activate_next()
        await manual_scheduler.drain()

        activations = event_logger.read_events("activation")
        assert [e["data"]["rowId"] for e in activations] == ["row-0", "row-1"]
        assert activations[1]["data"]["previousRowId"] == "row-0"

        transitions = [
            (e["data"]["field"], e["data"]["to"])
            for e in event_logger.read_events("row_status")
            if e["data"]["rowId"] == "row-0"
        ]
        assert ("ocr_status", "processing") in transitions
        assert ("ocr_status", "complete") in transitions
        assert ("validation_status", "validated") in transitions
        assert "ROW=row-0" in (temp_dir / "pipeline.log").read_text()
        await pipeline.close()


class TestBuildPipeline:
    """Tests for build_pipeline."""

    def test_requires_recognition(self):
        """Test a recognition service or URL is required."""
        with pytest.raises(ValueError):
            build_pipeline(InkrowConfig())

    def test_wiring(self, temp_dir):
        """Test services and caches are wired from configuration."""
        config = InkrowConfig()
        config.logging.log_dir = str(temp_dir / "logs")
        config.cache.cache_dir = str(temp_dir / "cache")
        pipeline = build_pipeline(config, recognition=FakeRecognition(), equivalence=FakeEquivalence())

        assert pipeline.pool.cache.namespace == "ocr"
        assert pipeline.orchestrator.cache.namespace == "validation"
        assert pipeline.orchestrator.config.timeout == 2.0
        assert pipeline.ocr.debounce == 1.5
        assert pipeline.event_logger is not None
