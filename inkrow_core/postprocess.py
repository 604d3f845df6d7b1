"""
Post-processing - Rule-based clean-up of merged expressions

Deterministic rules applied in order:

1. unicode look-alikes to LaTeX / ASCII (minus signs, times, dot, divide)
2. letters read in place of digits when surrounded by digits (O->0, l/I->1, S->5)
3. whitespace around binary operators, ``^``/``_`` and brackets
4. balanced ()[]{} check (warning only)

clean() never fails: any internal error returns the input unchanged with a
warning.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from inkrow_core.services import SyntaxValidator

logger = logging.getLogger(__name__)

UNICODE_REPLACEMENTS = [
    ("−", "-"),  # minus sign
    ("–", "-"),  # en dash
    ("—", "-"),  # em dash
    ("×", r" \times "),
    ("·", r" \cdot "),
    ("⋅", r" \cdot "),
    ("÷", r" \div "),
    ("≤", r" \leq "),
    ("≥", r" \geq "),
    ("≠", r" \neq "),
]

DIGIT_LOOKALIKES: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"(?<=\d)[Oo](?=\d)"), "0"),
    (re.compile(r"(?<=\d)[lI](?=\d)"), "1"),
    (re.compile(r"(?<=\d)S(?=\d)"), "5"),
]

_BINARY = re.compile(r"\s*(\\times|\\cdot|\\div|\\leq|\\geq|\\neq|[+=<>])\s*")
_MINUS = re.compile(r"\s*-\s*")
_OPERAND_END = re.compile(r"[A-Za-z0-9)\]}!'.]$")
_PAIRS = {")": "(", "]": "[", "}": "{"}


@dataclass
class CleanResult:
    """Output of clean()."""
    cleaned: str
    warnings: List[str] = field(default_factory=list)


@dataclass
class PostProcessResult:
    """Output of process(): cleaned text plus syntax verdict."""
    cleaned: str
    warnings: List[str] = field(default_factory=list)
    valid: bool = True
    error: Optional[str] = None


def _space_minus(match: re.Match) -> str:
    before = match.string[:match.start()].rstrip()
    if _OPERAND_END.search(before):
        return " - "
    if before and before[-1] not in "([{^_":
        return " -"
    return "-"


def normalize_whitespace(text: str) -> str:
    text = re.sub(r"\s+", " ", text).strip()
    text = _BINARY.sub(lambda m: f" {m.group(1)} ", text)
    text = _MINUS.sub(_space_minus, text)
    text = re.sub(r"\s*([\^_])\s*", r"\1", text)
    text = re.sub(r"([{(\[])\s+", r"\1", text)
    text = re.sub(r"\s+([})\]])", r"\1", text)
    return re.sub(r" {2,}", " ", text).strip()


def check_balanced(text: str) -> Optional[str]:
    """Return a diagnostic when ()[]{} are unbalanced, None otherwise."""
    stack = []
    escaped = False
    for position, char in enumerate(text):
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char in "([{":
            stack.append((char, position))
        elif char in _PAIRS:
            if not stack or stack[-1][0] != _PAIRS[char]:
                return f"unexpected '{char}' at position {position}"
            stack.pop()
    if stack:
        char, position = stack[-1]
        return f"unclosed '{char}' at position {position}"
    return None


class PostProcessor:
    """Cleans merged expressions and re-validates them."""

    def __init__(self, validator: Optional[SyntaxValidator] = None):
        self.validator = validator

    def clean(self, text: str) -> CleanResult:
        """Apply the clean-up rules. Never raises."""
        warnings: List[str] = []
        try:
            cleaned = text
            for source, target in UNICODE_REPLACEMENTS:
                if source in cleaned:
                    cleaned = cleaned.replace(source, target)

            for pattern, digit in DIGIT_LOOKALIKES:
                cleaned, count = pattern.subn(digit, cleaned)
                if count:
                    warnings.append(f"replaced {count} letter(s) by '{digit}' between digits")

            cleaned = normalize_whitespace(cleaned)

            problem = check_balanced(cleaned)
            if problem:
                warnings.append(f"unbalanced delimiters: {problem}")
        except Exception as e:
            logger.warning(f"Post-processing failed for '{text}': {e}")
            return CleanResult(cleaned=text, warnings=[f"post-processing skipped: {e}"])

        return CleanResult(cleaned=cleaned, warnings=warnings)

    def process(self, text: str) -> PostProcessResult:
        """clean() followed by syntax re-validation."""
        result = self.clean(text)
        if self.validator is None:
            return PostProcessResult(cleaned=result.cleaned, warnings=result.warnings)

        try:
            outcome = self.validator.parse(result.cleaned)
        except Exception as e:
            logger.warning(f"Syntax validator raised on '{result.cleaned}': {e}")
            return PostProcessResult(result.cleaned, result.warnings, valid=False, error=str(e))

        return PostProcessResult(
            cleaned=result.cleaned,
            warnings=result.warnings,
            valid=outcome.ok,
            error=outcome.error,
        )
