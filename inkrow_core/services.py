"""
Services - Contracts of the external collaborators

The pipeline consumes three collaborators through narrow interfaces:
a recognition service (tile image -> fragment), an equivalence service
(two expressions -> verdict) and a syntax validator (text -> parse outcome).
Reference implementations live in inkrow_core.cas and inkrow_core.recognition.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class ParseOutcome:
    """Result of a syntax check."""
    ok: bool
    error: Optional[str] = None


class RecognitionService(ABC):
    """Turns a rendered tile into a symbolic fragment."""

    @abstractmethod
    async def recognize(self, image_data: bytes) -> Dict[str, Any]:
        """
        Recognize one tile.

        Returns:
            {"fragment": str, "confidence": float}

        Raises:
            RecognitionError: model error or malformed output
        """
        pass

    async def close(self) -> None:
        """Release resources held by the service."""
        return None


class EquivalenceService(ABC):
    """Decides whether two expressions are mathematically equivalent."""

    @abstractmethod
    async def check_equivalence(
        self,
        expr_a: str,
        expr_b: str,
        settings: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Compare two expressions.

        Returns:
            {"equivalent": bool, "method": "fast-path" | "fallback",
             "time_ms": float, "canonical_a": str, "canonical_b": str}

        Raises:
            EquivalenceServiceError: the comparison could not be carried out
        """
        pass

    async def close(self) -> None:
        """Release resources held by the service."""
        return None


class SyntaxValidator(ABC):
    """Checks that an expression is well-formed."""

    @abstractmethod
    def parse(self, text: str) -> ParseOutcome:
        pass


class AcceptAllValidator(SyntaxValidator):
    """Validator that accepts any non-empty text."""

    def parse(self, text: str) -> ParseOutcome:
        if not text or not text.strip():
            return ParseOutcome(ok=False, error="empty expression")
        return ParseOutcome(ok=True)
