"""
Merging - Reassemble one expression from ordered tile fragments

For each adjacent pair of tiles the horizontal gap between the end of the
previous tile and the start of the next one decides the separator:

    gap < tight_gap              -> no separator
    tight_gap <= gap < wide_gap  -> one space
    gap >= wide_gap              -> two spaces

At each seam, an operator repeated on both sides (the same symbol read by two
overlapping tiles) is kept once. The merged text is then checked by the
syntax validator; a rejection is reported in the result, never raised.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from inkrow_core.models import PlacedFragment
from inkrow_core.services import SyntaxValidator
from inkrow_core.tiling import TILE_SIZE

logger = logging.getLogger(__name__)

_SEAM_OPERATOR = r"(\\times|\\cdot|[+\-*=])"
_TRAILING_OP = re.compile(_SEAM_OPERATOR + r"\s*$")
_LEADING_OP = re.compile(r"^\s*" + _SEAM_OPERATOR)


@dataclass
class MergeResult:
    """Merged expression and its syntax verdict."""
    text: str
    valid: bool
    errors: List[str] = field(default_factory=list)


def separator_for_gap(gap: int, tight_gap: int = 10, wide_gap: int = 30) -> str:
    """Separator inserted between two fragments whose tiles are ``gap`` px apart."""
    if gap < tight_gap:
        return ""
    if gap < wide_gap:
        return " "
    return "  "


def join_seam(left: str, right: str, separator: str = "") -> str:
    """Join two fragments, dropping an operator duplicated across the seam."""
    trailing = _TRAILING_OP.search(left)
    leading = _LEADING_OP.match(right)
    if trailing and leading and trailing.group(1) == leading.group(1):
        right = right[leading.end():]
    return left + separator + right


class FragmentMerger:
    """Merges tile fragments of one row."""

    def __init__(
        self,
        validator: Optional[SyntaxValidator] = None,
        tile_size: int = TILE_SIZE,
        tight_gap: int = 10,
        wide_gap: int = 30,
    ):
        self.validator = validator
        self.tile_size = tile_size
        self.tight_gap = tight_gap
        self.wide_gap = wide_gap

    def merge(self, results: Sequence[PlacedFragment]) -> MergeResult:
        """
        Merge fragments ordered by offset_x.

        Args:
            results: Positioned fragments of one row (any order)

        Returns:
            MergeResult with the merged text, valid flag and diagnostics
        """
        ordered = sorted(results, key=lambda r: r.offset_x)
        if not ordered:
            return MergeResult(text="", valid=False, errors=["no fragments to merge"])

        text = ordered[0].fragment
        for prev, current in zip(ordered, ordered[1:]):
            gap = current.offset_x - (prev.offset_x + self.tile_size)
            text = join_seam(text, current.fragment, separator_for_gap(gap, self.tight_gap, self.wide_gap))

        if not text.strip():
            return MergeResult(text=text, valid=False, errors=["merged expression is empty"])

        if self.validator is None:
            return MergeResult(text=text, valid=True)

        try:
            outcome = self.validator.parse(text)
        except Exception as e:
            logger.warning(f"Syntax validator raised on merged text '{text}': {e}")
            return MergeResult(text=text, valid=False, errors=[f"validator failure: {e}"])

        if not outcome.ok:
            logger.debug(f"Merged text rejected: '{text}' ({outcome.error})")
            return MergeResult(text=text, valid=False, errors=[outcome.error or "parse failure"])
        return MergeResult(text=text, valid=True)
