"""
Inkrow Core - Row pipeline for handwritten math

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

from .version import __version__

from .errors import (
    ErrorKind,
    InkrowError,
    Timeout,
    WorkerCrash,
    QueueFull,
    InvalidMerge,
    ParseFailure,
    EquivalenceServiceError,
    CacheCorrupt,
    PersistedStateCorrupt,
    RecognitionError,
    RecognitionFailed,
    RowNotFound,
    InvalidRowUpdate,
    TilingError,
    RowCancelled,
    RowRecognitionError,
)
from .models import (
    OcrStatus,
    ValidationStatus,
    ValidationMethod,
    BoundingBox,
    StrokeElement,
    ValidationResult,
    RecognitionResult,
    PlacedFragment,
    Tile,
    ActivationEvent,
    Row,
)
from .caching import (
    CacheEntry,
    CacheBackend,
    InMemoryCache,
    DiskCache,
    NamespacedCache,
    create_cache_backend,
)
from .config import InkrowConfig, load_config, save_config
from .logging_utils import EventLogger, configure_logging
from .services import RecognitionService, EquivalenceService, SyntaxValidator, ParseOutcome
from .tiling import extract_tiles, tile_count
from .merging import FragmentMerger, MergeResult
from .postprocess import PostProcessor
from .rows import RowManager, RowEvent, RowEventKind
from .scheduler import Scheduler, AsyncioScheduler, ManualScheduler
from .worker_pool import WorkerPool, CancellationToken
from .validation import ValidationOrchestrator, ValidationSummary
from .pipeline import RowPipeline, build_pipeline
from .persistence import JsonDocumentStore

__all__ = [
    "__version__",
    "ErrorKind",
    "InkrowError",
    "Timeout",
    "WorkerCrash",
    "QueueFull",
    "InvalidMerge",
    "ParseFailure",
    "EquivalenceServiceError",
    "CacheCorrupt",
    "PersistedStateCorrupt",
    "RecognitionError",
    "RecognitionFailed",
    "RowNotFound",
    "InvalidRowUpdate",
    "TilingError",
    "RowCancelled",
    "RowRecognitionError",
    "OcrStatus",
    "ValidationStatus",
    "ValidationMethod",
    "BoundingBox",
    "StrokeElement",
    "ValidationResult",
    "RecognitionResult",
    "PlacedFragment",
    "Tile",
    "ActivationEvent",
    "Row",
    "CacheEntry",
    "CacheBackend",
    "InMemoryCache",
    "DiskCache",
    "NamespacedCache",
    "create_cache_backend",
    "InkrowConfig",
    "load_config",
    "save_config",
    "EventLogger",
    "configure_logging",
    "RecognitionService",
    "EquivalenceService",
    "SyntaxValidator",
    "ParseOutcome",
    "extract_tiles",
    "tile_count",
    "FragmentMerger",
    "MergeResult",
    "PostProcessor",
    "RowManager",
    "RowEvent",
    "RowEventKind",
    "Scheduler",
    "AsyncioScheduler",
    "ManualScheduler",
    "WorkerPool",
    "CancellationToken",
    "ValidationOrchestrator",
    "ValidationSummary",
    "RowPipeline",
    "build_pipeline",
    "JsonDocumentStore",
]
