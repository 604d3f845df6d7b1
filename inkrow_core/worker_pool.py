"""
Worker Pool - Bounded-concurrency tile recognition

Dispatches tile recognition requests to the recognition service through a
fixed set of workers:

- at most ``concurrency`` tasks run at once, FIFO across rows
- when every worker is busy tasks wait in a bounded queue; a full queue
  rejects the submission immediately (QueueFull)
- each task has its own timeout; a timeout fails that task only
- a worker that faults is discarded and replaced, and the task is retried
  once on the fresh worker before being reported as WorkerCrash
- recognition-level errors (model error, malformed output) are retried once
- results are cached by tile content hash; an identical hash already cached
  or in flight never triggers a second recognition call
- cancel_row() drops the row's queued tasks and discards the results of its
  in-flight tasks (neither applied nor cached)

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

import asyncio
import base64
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Sequence, Set

from inkrow_core.caching import NamespacedCache
from inkrow_core.config import PoolConfig, TilingConfig
from inkrow_core.errors import (
    InkrowError,
    QueueFull,
    RecognitionError,
    RecognitionFailed,
    RowCancelled,
    RowRecognitionError,
    TilingError,
    Timeout,
    WorkerCrash,
)
from inkrow_core.merging import FragmentMerger, MergeResult
from inkrow_core.models import BoundingBox, PlacedFragment, RecognitionResult, Row, StrokeElement, Tile
from inkrow_core.rendering import TileRenderer
from inkrow_core.services import RecognitionService
from inkrow_core.tiling import extract_tiles

logger = logging.getLogger(__name__)


# =============================================================================
# Task protocol
# =============================================================================

@dataclass
class WorkerRequest:
    """Request sent to a worker."""
    task_id: str
    tile_id: str
    image_data: bytes = field(repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "taskId": self.task_id,
            "tileId": self.tile_id,
            "imageData": base64.b64encode(self.image_data).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkerRequest":
        return cls(
            task_id=data["taskId"],
            tile_id=data["tileId"],
            image_data=base64.b64decode(data["imageData"]),
        )


@dataclass
class WorkerResponse:
    """Response of a worker: a fragment or an error, never both."""
    task_id: str
    tile_id: str
    fragment: Optional[str] = None
    confidence: Optional[float] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    def to_dict(self) -> Dict[str, Any]:
        data = {"taskId": self.task_id, "tileId": self.tile_id}
        if self.ok:
            data.update(fragment=self.fragment, confidence=self.confidence)
        else:
            data.update(errorKind=self.error_kind, message=self.message)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkerResponse":
        return cls(
            task_id=data["taskId"],
            tile_id=data["tileId"],
            fragment=data.get("fragment"),
            confidence=data.get("confidence"),
            error_kind=data.get("errorKind"),
            message=data.get("message"),
        )


class WorkerStatus(str, Enum):
    """Recognition worker status."""
    IDLE = "idle"
    BUSY = "busy"
    FAILED = "failed"


class RecognitionWorker:
    """
    Runs recognition requests against the service.

    Recognition-level errors come back as error responses. Any other
    exception escapes handle() and is treated by the pool as a worker fault.
    """

    def __init__(self, worker_id: int, service: RecognitionService):
        self.worker_id = worker_id
        self.service = service
        self.status = WorkerStatus.IDLE
        self.tasks_handled = 0

    async def handle(self, request: WorkerRequest) -> WorkerResponse:
        self.status = WorkerStatus.BUSY
        try:
            raw = await self.service.recognize(request.image_data)
        except RecognitionError as e:
            self.status = WorkerStatus.IDLE
            return WorkerResponse(request.task_id, request.tile_id, error_kind=e.reason, message=e.message)
        except asyncio.CancelledError:
            self.status = WorkerStatus.IDLE
            raise
        except Exception:
            self.status = WorkerStatus.FAILED
            raise
        finally:
            self.tasks_handled += 1

        self.status = WorkerStatus.IDLE
        fragment = raw.get("fragment") if isinstance(raw, dict) else None
        confidence = raw.get("confidence") if isinstance(raw, dict) else None
        if not isinstance(fragment, str) or not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
            return WorkerResponse(
                request.task_id,
                request.tile_id,
                error_kind=RecognitionError.MALFORMED_OUTPUT,
                message=f"unexpected recognition payload: {raw!r}"[:200],
            )
        return WorkerResponse(request.task_id, request.tile_id, fragment=fragment, confidence=float(confidence))


# =============================================================================
# Cancellation
# =============================================================================

class CancellationToken:
    """Cancellation flag shared by all tiles of one row cycle."""

    def __init__(self, row_id: str = ""):
        self.row_id = row_id
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise RowCancelled(f"row {self.row_id} cancelled", row_id=self.row_id)


@dataclass
class _Waiter:
    tile: Tile
    future: asyncio.Future
    token: CancellationToken

    @property
    def live(self) -> bool:
        return not self.token.cancelled and not self.future.done()


@dataclass
class _Job:
    """One recognition call, shared by every waiter with the same content hash."""
    task_id: str
    content_hash: str
    image_data: bytes = field(repr=False)
    waiters: List[_Waiter] = field(default_factory=list)
    crash_retries: int = 1
    error_retries: int = 1

    @property
    def tile_id(self) -> str:
        return self.waiters[0].tile.tile_id if self.waiters else ""

    def has_live_waiters(self) -> bool:
        return any(w.live for w in self.waiters)


# =============================================================================
# Worker pool
# =============================================================================

class WorkerPool:
    """
    Bounded pool of recognition workers.

    Must be used from a running event loop.
    """

    def __init__(
        self,
        service: RecognitionService,
        config: Optional[PoolConfig] = None,
        cache: Optional[NamespacedCache] = None,
        merger: Optional[FragmentMerger] = None,
        tiling: Optional[TilingConfig] = None,
        renderer: Optional[TileRenderer] = None,
    ):
        """
        Initialize the pool.

        Args:
            service: Recognition service shared by the workers
            config: Pool configuration (concurrency, queue limit, timeout, retries)
            cache: Recognition cache namespace (keyed by content hash)
            merger: Fragment merger used by process_row
            tiling: Tile geometry used by process_row
            renderer: Tile renderer used by process_row
        """
        self.service = service
        self.config = config or PoolConfig()
        self.cache = cache
        self.tiling = tiling or TilingConfig()
        self.merger = merger or FragmentMerger(tile_size=self.tiling.tile_size)
        self.renderer = renderer

        self._worker_ids = itertools.count(1)
        self._task_ids = itertools.count(1)
        self._idle: Deque[RecognitionWorker] = deque(
            RecognitionWorker(next(self._worker_ids), service) for _ in range(self.config.concurrency)
        )
        self._queue: Deque[_Job] = deque()
        self._jobs: Dict[str, _Job] = {}  # content hash -> queued or running job
        self._running: Dict[str, asyncio.Task] = {}
        self._row_tokens: Dict[str, CancellationToken] = {}
        self._row_writes: Dict[str, Set[str]] = {}  # row id -> hashes cached by its current cycle

        # Statistics
        self.active = 0
        self.peak_active = 0
        self.invocations = 0
        self.cache_hits = 0
        self.workers_replaced = 0

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def submit(self, tile: Tile, token: Optional[CancellationToken] = None) -> asyncio.Future:
        """
        Submit a tile for recognition.

        Returns:
            Future resolving to a RecognitionResult

        Raises:
            QueueFull: every worker is busy and the queue is at capacity
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        waiter = _Waiter(tile=tile, future=future, token=token or CancellationToken(tile.row_id))

        if self.cache is not None:
            cached = self.cache.get(tile.content_hash)
            if cached is not None:
                try:
                    result = RecognitionResult.from_dict(cached)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Ignoring unreadable cached result for {tile.content_hash}: {e}")
                    self.cache.delete(tile.content_hash)
                else:
                    self.cache_hits += 1
                    future.set_result(replace(result, tile_id=tile.tile_id, cached=True, duration_ms=0.0))
                    return future

        job = self._jobs.get(tile.content_hash)
        if job is not None:
            job.waiters.append(waiter)
            logger.debug(f"Tile {tile.tile_id} joins in-flight task {job.task_id}")
            return future

        if self.active >= self.config.concurrency and len(self._queue) >= self.config.queue_limit:
            raise QueueFull(
                f"queue limit {self.config.queue_limit} reached",
                tile_id=tile.tile_id,
            )

        job = _Job(
            task_id=f"task-{next(self._task_ids)}",
            content_hash=tile.content_hash,
            image_data=tile.image_data,
            waiters=[waiter],
            crash_retries=self.config.crash_retries,
            error_retries=self.config.error_retries,
        )
        self._jobs[job.content_hash] = job
        self._queue.append(job)
        self._pump()
        return future

    def _pump(self) -> None:
        """Start queued jobs while workers are available."""
        while self._queue and self.active < self.config.concurrency:
            job = self._queue.popleft()
            if not job.has_live_waiters():
                self._forget(job)
                continue
            self.active += 1
            self.peak_active = max(self.peak_active, self.active)
            self._running[job.task_id] = asyncio.ensure_future(self._run(job))

    def _forget(self, job: _Job) -> None:
        if self._jobs.get(job.content_hash) is job:
            del self._jobs[job.content_hash]

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _run(self, job: _Job) -> None:
        result: Optional[RecognitionResult] = None
        error: Optional[BaseException] = None
        try:
            result = await self._execute(job)
        except asyncio.CancelledError:
            error = RowCancelled(f"task {job.task_id} cancelled")
        except InkrowError as e:
            error = e
        except Exception as e:
            logger.error(f"Unexpected failure in task {job.task_id}: {e}")
            error = WorkerCrash(str(e), task_id=job.task_id)
        finally:
            self.active -= 1
            self._running.pop(job.task_id, None)
            self._forget(job)

        self._resolve(job, result, error)
        self._pump()

    async def _execute(self, job: _Job) -> RecognitionResult:
        worker = self._idle.popleft()
        try:
            while True:
                request = WorkerRequest(task_id=job.task_id, tile_id=job.tile_id, image_data=job.image_data)
                started = time.perf_counter()
                self.invocations += 1
                try:
                    response = await asyncio.wait_for(worker.handle(request), timeout=self.config.task_timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"Task {job.task_id} ({job.tile_id}) timed out after {self.config.task_timeout}s")
                    raise Timeout(
                        f"tile {job.tile_id} exceeded {self.config.task_timeout}s",
                        task_id=job.task_id,
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    worker = self._replace_worker(worker, e)
                    if job.crash_retries > 0:
                        job.crash_retries -= 1
                        logger.warning(f"Retrying task {job.task_id} on worker {worker.worker_id}")
                        continue
                    raise WorkerCrash(f"tile {job.tile_id}: {e}", task_id=job.task_id)

                if response.ok:
                    return RecognitionResult(
                        tile_id=job.tile_id,
                        fragment=response.fragment,
                        confidence=response.confidence,
                        duration_ms=(time.perf_counter() - started) * 1000,
                    )

                if job.error_retries > 0:
                    job.error_retries -= 1
                    logger.warning(
                        f"Task {job.task_id} returned {response.error_kind}: {response.message}, retrying"
                    )
                    continue
                raise RecognitionFailed(response.message or "", reason=response.error_kind, task_id=job.task_id)
        finally:
            worker.status = WorkerStatus.IDLE
            self._idle.append(worker)

    def _replace_worker(self, worker: RecognitionWorker, error: Exception) -> RecognitionWorker:
        """Discard a faulted worker and spawn its replacement."""
        self.workers_replaced += 1
        fresh = RecognitionWorker(next(self._worker_ids), self.service)
        logger.warning(f"Worker {worker.worker_id} crashed ({error}), replaced by worker {fresh.worker_id}")
        return fresh

    def _resolve(
        self,
        job: _Job,
        result: Optional[RecognitionResult],
        error: Optional[BaseException],
    ) -> None:
        live = [w for w in job.waiters if w.live]
        for waiter in job.waiters:
            if waiter.future.done():
                continue
            if waiter.token.cancelled:
                waiter.future.cancel()
            elif error is not None:
                waiter.future.set_exception(error)
            else:
                waiter.future.set_result(replace(result, tile_id=waiter.tile.tile_id))

        if result is not None and live and self.cache is not None:
            self.cache.put(job.content_hash, result.to_dict())
            for waiter in live:
                if self._row_tokens.get(waiter.tile.row_id) is waiter.token:
                    self._row_writes.setdefault(waiter.tile.row_id, set()).add(job.content_hash)
        elif result is not None and not live:
            logger.debug(f"Discarding result of task {job.task_id}: all waiters cancelled")

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    def cancel_row(self, row_id: str) -> int:
        """
        Cancel every pending tile of a row.

        Queued tasks are dropped; in-flight tasks complete but their results
        are discarded. Results the row's current cycle already cached are
        evicted. Other rows sharing a task or a cached result keep it.

        Returns:
            Number of tile requests cancelled
        """
        token = self._row_tokens.get(row_id)
        if token is not None:
            token.cancel()
        cancelled = self._discard_waiters(row_id)

        kept = deque()
        for job in self._queue:
            if job.has_live_waiters():
                kept.append(job)
            else:
                self._forget(job)
        self._queue = kept
        self._evict_row_writes(row_id)

        if cancelled:
            logger.info(f"Cancelled {cancelled} tile request(s) of {row_id}")
        return cancelled

    def _evict_row_writes(self, row_id: str) -> None:
        written = self._row_writes.pop(row_id, set())
        if self.cache is None or not written:
            return
        shared = set().union(*self._row_writes.values())
        for content_hash in written - shared:
            self.cache.delete(content_hash)
        logger.debug(f"Evicted {len(written - shared)} cached result(s) of {row_id}")

    def _discard_waiters(self, row_id: str) -> int:
        count = 0
        for job in list(self._jobs.values()):
            for waiter in job.waiters:
                if waiter.tile.row_id == row_id and not waiter.future.done():
                    waiter.token.cancel()
                    waiter.future.cancel()
                    count += 1
        return count

    # -------------------------------------------------------------------------
    # Row processing
    # -------------------------------------------------------------------------

    async def process_row(self, row: Row, elements: Sequence[StrokeElement]) -> MergeResult:
        """
        Recognize a whole row: tiles -> recognition -> merge.

        All-or-nothing: the first unrecoverable tile failure fails the row and
        the row's remaining tiles are cancelled.

        Raises:
            TilingError: no content or content outside the band
            QueueFull: the row's tiles do not fit in the queue
            RowCancelled: cancel_row() was called during processing
            RowRecognitionError: a tile failed (original error in ``cause``)
        """
        bbox = BoundingBox.enclosing(elements)
        if bbox is None:
            raise TilingError(f"row {row.id} has no content", row_id=row.id)

        tiles = extract_tiles(
            bbox,
            row.id,
            (row.y_start, row.y_end),
            elements,
            renderer=self.renderer,
            tile_size=self.tiling.tile_size,
            overlap=self.tiling.overlap,
        )

        previous = self._row_tokens.get(row.id)
        if previous is not None:
            previous.cancel()
        token = CancellationToken(row.id)
        self._row_tokens[row.id] = token
        self._row_writes[row.id] = set()

        futures: List[asyncio.Future] = []
        try:
            for tile in tiles:
                futures.append(self.submit(tile, token))

            await asyncio.wait(futures, return_when=asyncio.FIRST_EXCEPTION)
            token.raise_if_cancelled()

            for tile, future in zip(tiles, futures):
                if future.done() and not future.cancelled() and future.exception() is not None:
                    error = future.exception()
                    self._discard_waiters(row.id)
                    logger.error(f"Row {row.id}: tile {tile.tile_id} failed: {error}")
                    if isinstance(error, InkrowError):
                        raise RowRecognitionError(row.id, error)
                    raise RowRecognitionError(row.id, WorkerCrash(str(error)))

            if any(f.cancelled() for f in futures):
                raise RowCancelled(f"row {row.id} cancelled", row_id=row.id)

            placed = [
                PlacedFragment(offset_x=tile.offset_x, fragment=future.result().fragment, tile_id=tile.tile_id)
                for tile, future in zip(tiles, futures)
            ]
        except (QueueFull, asyncio.CancelledError):
            self._discard_waiters(row.id)
            raise
        finally:
            if self._row_tokens.get(row.id) is token:
                del self._row_tokens[row.id]
                self._row_writes.pop(row.id, None)

        merged = self.merger.merge(placed)
        logger.info(f"Row {row.id}: {len(tiles)} tile(s) -> '{merged.text}' (valid={merged.valid})")
        return merged

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        """Snapshot of the pool state."""
        return {
            "concurrency": self.config.concurrency,
            "idle_workers": len(self._idle),
            "busy_workers": self.active,
            "queued": len(self._queue),
            "queue_limit": self.config.queue_limit,
            "peak_active": self.peak_active,
            "invocations": self.invocations,
            "cache_hits": self.cache_hits,
            "workers_replaced": self.workers_replaced,
        }

    async def shutdown(self) -> None:
        """Drop queued work, wait for running tasks and close the service."""
        for job in self._queue:
            for waiter in job.waiters:
                waiter.token.cancel()
                waiter.future.cancel()
            self._forget(job)
        self._queue.clear()
        if self._running:
            await asyncio.gather(*self._running.values(), return_exceptions=True)
        await self.service.close()
        logger.info("Worker pool shut down")
