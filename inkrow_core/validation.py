"""
Validation - Sequential, cached equivalence checking between rows

Each row holding an expression is compared with its nearest non-empty
predecessor. The first non-empty row has nothing to compare with and is
validated unconditionally (method ``first-row``).

Comparisons run one at a time. Their results are cached under a key built
from the predecessor expression hash, the row expression hash and the hash
of the equivalence settings. The equivalence service gets a hard timeout.
A result whose inputs changed while the service was working is discarded.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

import asyncio
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from inkrow_core.caching import NamespacedCache
from inkrow_core.config import ValidationConfig
from inkrow_core.errors import EquivalenceServiceError, InkrowError, Timeout
from inkrow_core.models import ValidationMethod, ValidationResult, ValidationStatus
from inkrow_core.rows import RowManager
from inkrow_core.scheduler import VALIDATION, Scheduler
from inkrow_core.services import EquivalenceService

logger = logging.getLogger(__name__)


def _digest(text: str, length: int = 16) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:length]


def expression_hash(expression: str) -> str:
    return _digest(expression.strip())


def settings_hash(settings: Optional[Dict[str, Any]]) -> str:
    return _digest(json.dumps(settings or {}, sort_keys=True, default=str))


def validation_key(prev_hash: str, curr_hash: str, settings_digest: str) -> str:
    """Cache key of one comparison."""
    return _digest(f"{prev_hash}|{curr_hash}|{settings_digest}", 32)


@dataclass
class ValidationSummary:
    """Aggregate counts of a validation pass."""
    total: int = 0
    validated: int = 0
    invalid: int = 0
    errors: int = 0
    skipped: int = 0
    cache_hits: int = 0

    def record(self, status: Optional[ValidationStatus], cache_hit: bool) -> None:
        self.total += 1
        if cache_hit:
            self.cache_hits += 1
        if status == ValidationStatus.VALIDATED:
            self.validated += 1
        elif status == ValidationStatus.INVALID:
            self.invalid += 1
        elif status == ValidationStatus.ERROR:
            self.errors += 1
        else:
            self.skipped += 1

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "validated": self.validated,
            "invalid": self.invalid,
            "errors": self.errors,
            "skipped": self.skipped,
            "cacheHits": self.cache_hits,
        }


class ValidationOrchestrator:
    """Validates rows against their predecessors, one comparison at a time."""

    def __init__(
        self,
        rows: RowManager,
        service: EquivalenceService,
        cache: Optional[NamespacedCache] = None,
        config: Optional[ValidationConfig] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            rows: Row manager owning the document
            service: Equivalence service
            cache: Validation cache namespace
            config: Timeout, debounce and settings
            scheduler: Debounce scheduler (needed by schedule_validation)
        """
        self.rows = rows
        self.service = service
        self.cache = cache
        self.config = config or ValidationConfig()
        self.scheduler = scheduler
        self._lock = asyncio.Lock()
        self._row_keys: Dict[str, str] = {}  # row id -> cache key of its last comparison

    @property
    def settings_digest(self) -> str:
        return settings_hash(self.config.settings)

    def cache_key_for(self, row_id: str) -> Optional[str]:
        """Cache key recorded for a row's last comparison."""
        return self._row_keys.get(row_id)

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    async def validate_row(self, row_id: str) -> Optional[ValidationResult]:
        """
        Validate one row.

        Returns:
            The ValidationResult, or None when the row has no expression or
            the result was discarded as stale

        Raises:
            RowNotFound: unknown row id
        """
        async with self._lock:
            result, _ = await self._validate(row_id)
            return result

    async def validate_all(self) -> ValidationSummary:
        """Validate every row in order, reusing cached results."""
        async with self._lock:
            summary = ValidationSummary()
            for row in self.rows.get_rows():
                if not row.has_expression:
                    continue
                _, cache_hit = await self._validate(row.id)
                current = self.rows.get_row(row.id)
                summary.record(current.validation_status if current else None, cache_hit)
            logger.info(f"Validated document: {summary.to_dict()}")
            return summary

    async def validate_pending_from(self, row_id: str) -> ValidationSummary:
        """Validate ``row_id`` and every later row still pending."""
        async with self._lock:
            summary = ValidationSummary()
            start = self.rows.get_row(row_id)
            if start is None:
                return summary
            for row in [start] + self.rows.rows_after(row_id):
                if not row.has_expression or row.validation_status != ValidationStatus.PENDING:
                    continue
                _, cache_hit = await self._validate(row.id)
                current = self.rows.get_row(row.id)
                summary.record(current.validation_status if current else None, cache_hit)
            return summary

    async def _validate(self, row_id: str) -> Tuple[Optional[ValidationResult], bool]:
        row = self.rows._require(row_id)
        if not row.has_expression:
            logger.debug(f"{row_id}: no expression, nothing to validate")
            return None, False

        predecessor = self.rows.previous_non_empty(row_id)
        if predecessor is None:
            result = ValidationResult(equivalent=True, method=ValidationMethod.FIRST_ROW, time_ms=0.0)
            self._set_status(row_id, ValidationStatus.PROCESSING)
            self._apply(row_id, result)
            return result, False

        prev_expr = predecessor.expression
        curr_expr = row.expression
        key = validation_key(expression_hash(prev_expr), expression_hash(curr_expr), self.settings_digest)
        self._row_keys[row_id] = key

        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                try:
                    result = ValidationResult.from_dict(cached)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Dropping unreadable validation cache entry {key}: {e}")
                    self.cache.delete(key)
                else:
                    self._set_status(row_id, ValidationStatus.PROCESSING)
                    self._apply(row_id, result)
                    return result, True

        self._set_status(row_id, ValidationStatus.PROCESSING)
        started = time.perf_counter()
        error: Optional[InkrowError] = None
        raw: Dict[str, Any] = {}
        try:
            raw = await asyncio.wait_for(
                self.service.check_equivalence(prev_expr, curr_expr, self.config.settings),
                timeout=self.config.timeout,
            )
        except asyncio.TimeoutError:
            error = Timeout(f"equivalence check exceeded {self.config.timeout}s")
        except (EquivalenceServiceError, Timeout) as e:
            error = e
        except Exception as e:
            error = EquivalenceServiceError(str(e))
        elapsed_ms = (time.perf_counter() - started) * 1000

        if self._is_stale(row_id, prev_expr, curr_expr):
            logger.info(f"{row_id}: inputs changed during validation, result discarded")
            current = self.rows.get_row(row_id)
            if current is not None and current.validation_status == ValidationStatus.PROCESSING:
                self._set_status(row_id, ValidationStatus.PENDING)
            return None, False

        if error is None:
            try:
                result = ValidationResult(
                    equivalent=bool(raw["equivalent"]),
                    method=ValidationMethod(raw.get("method", ValidationMethod.FALLBACK.value)),
                    time_ms=float(raw.get("time_ms", elapsed_ms)),
                    canonical_a=raw.get("canonical_a"),
                    canonical_b=raw.get("canonical_b"),
                )
            except (KeyError, TypeError, ValueError) as e:
                error = EquivalenceServiceError(f"malformed equivalence response: {e}")

        if error is not None:
            logger.warning(f"{row_id}: validation failed: {error.describe()}")
            result = ValidationResult(
                equivalent=False,
                method=ValidationMethod.FALLBACK,
                time_ms=elapsed_ms,
                error=error.describe(),
            )
            self.rows.update_row(row_id, {
                "validation_status": ValidationStatus.ERROR,
                "validation_result": result,
                "error_message": error.describe(),
            })
            return result, False

        if self.cache is not None:
            self.cache.put(key, result.to_dict())
        self._apply(row_id, result)
        return result, False

    def _is_stale(self, row_id: str, prev_expr: str, curr_expr: str) -> bool:
        row = self.rows.get_row(row_id)
        if row is None or row.expression != curr_expr:
            return True
        # re-armed while the check was in flight
        if row.validation_status != ValidationStatus.PROCESSING:
            return True
        predecessor = self.rows.previous_non_empty(row_id)
        return predecessor is None or predecessor.expression != prev_expr

    def _set_status(self, row_id: str, status: ValidationStatus) -> None:
        self.rows.update_row(row_id, {"validation_status": status})

    def _apply(self, row_id: str, result: ValidationResult) -> None:
        status = ValidationStatus.VALIDATED if result.equivalent else ValidationStatus.INVALID
        self.rows.update_row(row_id, {
            "validation_status": status,
            "validation_result": result,
            "error_message": None,
        })
        logger.debug(f"{row_id}: {status.value} ({result.method.value}, {result.time_ms:.1f}ms)")

    # -------------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------------

    def invalidate_row(self, row_id: str) -> bool:
        """
        Drop a row's cached comparison and re-arm its validation.

        Returns:
            True if a cache entry was deleted
        """
        key = self._row_keys.pop(row_id, None)
        deleted = False
        if key is not None and self.cache is not None:
            deleted = self.cache.delete(key)
        if self.rows.get_row(row_id) is not None:
            self.rows.reset_validation(row_id)
        return deleted

    def invalidate_downstream(self, row_id: str, transitive: bool = False) -> List[str]:
        """
        Invalidate the rows depending on ``row_id``.

        By default only the nearest non-empty successor (the row compared
        against ``row_id``) is invalidated; ``transitive`` extends to every
        later row.

        Returns:
            Ids of the invalidated rows
        """
        if transitive:
            targets = [r for r in self.rows.rows_after(row_id) if r.has_expression]
        else:
            successor = self.rows.next_non_empty(row_id)
            targets = [successor] if successor is not None else []

        for target in targets:
            self.invalidate_row(target.id)
        if targets:
            logger.debug(f"{row_id}: invalidated {[t.id for t in targets]}")
        return [t.id for t in targets]

    def reset(self) -> None:
        """Forget recorded keys (document cleared or reloaded)."""
        self._row_keys.clear()

    # -------------------------------------------------------------------------
    # Debounce
    # -------------------------------------------------------------------------

    def schedule_validation(self, row_id: str) -> None:
        """Debounced validation of ``row_id`` and the pending rows after it."""
        if self.scheduler is None:
            raise RuntimeError("no scheduler configured")

        async def run() -> None:
            await self.validate_pending_from(row_id)

        self.scheduler.schedule((row_id, VALIDATION), self.config.debounce, run)

    async def validate_now(self, row_id: str) -> Optional[ValidationResult]:
        """Manual trigger: bypass the debounce and validate immediately."""
        if self.scheduler is not None:
            self.scheduler.cancel((row_id, VALIDATION))
        return await self.validate_row(row_id)
