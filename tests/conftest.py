"""
Pytest Configuration and Fixtures

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

import asyncio
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional, Sequence

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from inkrow_core.caching import InMemoryCache, NamespacedCache
from inkrow_core.models import StrokeElement
from inkrow_core.rendering import TileRenderer
from inkrow_core.rows import RowManager
from inkrow_core.scheduler import ManualScheduler
from inkrow_core.services import EquivalenceService, RecognitionService


class FakeClock:
    """Deterministic time source."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class OffsetRenderer(TileRenderer):
    """Renders a tile as ``tile@<offset_x>``, so fragments can be keyed by position."""

    def render(
        self,
        elements: Sequence[StrokeElement],
        offset_x: int,
        offset_y: int,
        width: int,
        height: int,
    ) -> bytes:
        return f"tile@{offset_x}".encode("ascii")


class FakeRecognition(RecognitionService):
    """
    Recognition service answering from a table keyed by rendered bytes.

    When ``gate`` is set, every call waits for it, which lets tests hold
    tasks in flight.
    """

    def __init__(self, answers: Optional[Dict[bytes, str]] = None, default: str = "x", gate: Optional[asyncio.Event] = None):
        self.answers = answers or {}
        self.default = default
        self.gate = gate
        self.calls: List[bytes] = []
        self.running = 0
        self.max_running = 0

    async def recognize(self, image_data: bytes) -> Dict[str, Any]:
        self.calls.append(image_data)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            return {"fragment": self.answers.get(image_data, self.default), "confidence": 0.9}
        finally:
            self.running -= 1


class FakeEquivalence(EquivalenceService):
    """Equivalence service with a fixed verdict that records its calls."""

    def __init__(self, equivalent: bool = True, method: str = "fast-path"):
        self.equivalent = equivalent
        self.method = method
        self.calls: List[tuple] = []

    async def check_equivalence(self, expr_a, expr_b, settings=None):
        self.calls.append((expr_a, expr_b))
        return {
            "equivalent": self.equivalent,
            "method": self.method,
            "time_ms": 1.0,
            "canonical_a": expr_a,
            "canonical_b": expr_b,
        }


def stroke(element_id: str, x: float, y: float, width: float = 40, height: float = 40) -> StrokeElement:
    """A rectangular stroke element with its four corners as points."""
    points = [(0, 0), (width, 0), (width, height), (0, height)]
    return StrokeElement(id=element_id, x=x, y=y, width=width, height=height, points=points)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def row_manager(clock) -> RowManager:
    """Row manager with 384px rows and a deterministic clock."""
    return RowManager(row_height=384, start_y=0, clock=clock)


@pytest.fixture
def manual_scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def memory_backend(clock) -> InMemoryCache:
    return InMemoryCache(max_size=100, clock=clock)


@pytest.fixture
def ocr_cache(memory_backend) -> NamespacedCache:
    return NamespacedCache(memory_backend, "ocr")


@pytest.fixture
def validation_cache(memory_backend) -> NamespacedCache:
    return NamespacedCache(memory_backend, "validation")
