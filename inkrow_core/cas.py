"""
CAS - SymPy-backed syntax validator and equivalence service

Reference adapters for the two symbolic collaborators of the pipeline:

- SympySyntaxValidator: LaTeX-ish text -> parse outcome
- SympyEquivalenceService: fast path compares canonical (expanded) forms,
  fallback checks simplify(a - b) == 0; equations are compared through
  lhs - rhs, up to a non-zero constant factor

Comparisons run in a worker process the service owns, so a comparison that
misses its deadline is killed instead of left running.

The LaTeX subset handled is the one produced by handwriting recognition:
\\frac, \\sqrt, \\cdot, \\times, \\div, \\left/\\right, ^, _, functions.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

import asyncio
import logging
import re
import time
from concurrent.futures import ProcessPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import sympy as sp
from sympy.parsing.sympy_parser import (
    convert_xor,
    implicit_multiplication_application,
    parse_expr,
    standard_transformations,
)

from inkrow_core.errors import EquivalenceServiceError, ParseFailure, Timeout
from inkrow_core.models import ValidationMethod
from inkrow_core.services import EquivalenceService, ParseOutcome, SyntaxValidator

logger = logging.getLogger(__name__)

TRANSFORMATIONS = standard_transformations + (implicit_multiplication_application, convert_xor)

# Capital letters that SymPy would otherwise read as constants or functions
_LOCALS = {name: sp.Symbol(name) for name in ("E", "I", "N", "O", "Q", "S")}

_RELATION = re.compile(r"\\leq|\\geq|\\neq|\\le\b|\\ge\b|\\ne\b|<=|>=|=|<|>")
_ALLOWED = re.compile(r"^[A-Za-z0-9_+\-*/().,! ]*$")

_SIMPLE_REPLACEMENTS = [
    (r"\left", ""),
    (r"\right", ""),
    (r"\cdot", "*"),
    (r"\times", "*"),
    (r"\div", "/"),
    (r"\ln", " log"),
    (r"\,", " "),
    (r"\;", " "),
    (r"\!", ""),
    ("^", "**"),
    ("{", "("),
    ("}", ")"),
    ("[", "("),
    ("]", ")"),
]


@dataclass
class ParsedExpression:
    """Sides of an expression or relation chain."""
    sides: List[sp.Expr] = field(default_factory=list)
    relations: List[str] = field(default_factory=list)

    @property
    def is_equation(self) -> bool:
        return self.relations == ["="]

    @property
    def is_plain(self) -> bool:
        return not self.relations


def _read_group(text: str, start: int) -> Tuple[str, int]:
    """Read a {...} group (or a single character) starting at ``start``."""
    while start < len(text) and text[start] == " ":
        start += 1
    if start >= len(text):
        raise ParseFailure("missing argument")
    if text[start] != "{":
        return text[start], start + 1

    depth = 0
    for position in range(start, len(text)):
        if text[position] == "{":
            depth += 1
        elif text[position] == "}":
            depth -= 1
            if depth == 0:
                return text[start + 1:position], position + 1
    raise ParseFailure("unclosed '{'")


def _expand_commands(text: str) -> str:
    """Rewrite \\frac and \\sqrt into parenthesized SymPy syntax."""
    out = []
    i = 0
    while i < len(text):
        if text.startswith(r"\frac", i):
            numerator, i = _read_group(text, i + 5)
            denominator, i = _read_group(text, i)
            out.append(f"(({_expand_commands(numerator)})/({_expand_commands(denominator)}))")
        elif text.startswith(r"\sqrt", i):
            i += 5
            index = None
            if i < len(text) and text[i] == "[":
                close = text.find("]", i)
                if close < 0:
                    raise ParseFailure("unclosed '[' in \\sqrt")
                index = text[i + 1:close]
                i = close + 1
            body, i = _read_group(text, i)
            body = _expand_commands(body)
            if index:
                out.append(f"(({body})**(1/({_expand_commands(index)})))")
            else:
                out.append(f"sqrt({body})")
        else:
            out.append(text[i])
            i += 1
    return "".join(out)


def latex_to_sympy(text: str) -> str:
    """
    Convert one side of a LaTeX expression into SymPy source text.

    Raises:
        ParseFailure: unsupported construct or character
    """
    source = _expand_commands(text)
    for latex, replacement in _SIMPLE_REPLACEMENTS:
        source = source.replace(latex, replacement)
    source = re.sub(r"([A-Za-z0-9])_\(([A-Za-z0-9]+)\)", r"\1_\2", source)
    source = re.sub(r"\\([A-Za-z]+)", r" \1 ", source)
    source = re.sub(r"(\d)\s*([A-Za-z(])", r"\1*\2", source)
    if not _ALLOWED.match(source) or "__" in source:
        raise ParseFailure(f"unsupported characters in '{text}'")
    return source


def parse_side(text: str) -> sp.Expr:
    source = latex_to_sympy(text)
    if not source.strip():
        raise ParseFailure("empty expression")
    try:
        return parse_expr(source, local_dict=dict(_LOCALS), transformations=TRANSFORMATIONS)
    except Exception as e:
        raise ParseFailure(f"cannot parse '{text}': {e}") from e


def parse_latex_expression(text: str) -> ParsedExpression:
    """
    Parse an expression or a relation chain (a = b, a < b <= c ...).

    Raises:
        ParseFailure: empty input or unparsable side
    """
    if text is None or not text.strip():
        raise ParseFailure("empty expression")
    relations = [m.group(0) for m in _RELATION.finditer(text)]
    parts = _RELATION.split(text)
    return ParsedExpression(sides=[parse_side(part) for part in parts], relations=relations)


def canonical_form(expr: sp.Expr) -> str:
    """Normalized string used by the fast path."""
    return sp.sstr(sp.expand(expr))


class SympySyntaxValidator(SyntaxValidator):
    """Syntax validator backed by the SymPy parser."""

    def parse(self, text: str) -> ParseOutcome:
        try:
            parse_latex_expression(text)
        except ParseFailure as e:
            return ParseOutcome(ok=False, error=e.message)
        return ParseOutcome(ok=True)


class SympyEquivalenceService(EquivalenceService):
    """
    Equivalence checks with SymPy.

    Settings:
        fallback: run simplify() when canonical forms differ (default True)
    """

    def __init__(
        self,
        timeout: float = 2.0,
        max_workers: int = 1,
        compare_fn: Optional[Callable[..., Dict[str, Any]]] = None,
    ):
        """
        Args:
            timeout: Hard deadline of one comparison (seconds)
            max_workers: Comparison processes
            compare_fn: Module-level function run in the worker process
                (compare_expressions when None)
        """
        self.timeout = timeout
        self.max_workers = max_workers
        self.compare_fn = compare_fn
        self._executor: Optional[ProcessPoolExecutor] = None

    def _comparable(self, parsed: ParsedExpression) -> sp.Expr:
        if parsed.is_plain:
            return parsed.sides[0]
        if parsed.is_equation:
            return parsed.sides[0] - parsed.sides[1]
        raise EquivalenceServiceError(f"unsupported relation chain {parsed.relations}")

    def _fallback_equivalent(self, a: sp.Expr, b: sp.Expr, equations: bool) -> bool:
        if sp.simplify(a - b) == 0:
            return True
        if not equations:
            return False
        if sp.simplify(b) == 0:
            return sp.simplify(a) == 0
        ratio = sp.simplify(a / b)
        return bool(ratio.is_number and ratio != 0)

    def compare(self, expr_a: str, expr_b: str, settings: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Blocking comparison."""
        settings = settings or {}
        started = time.perf_counter()
        try:
            parsed_a = parse_latex_expression(expr_a)
            parsed_b = parse_latex_expression(expr_b)
        except ParseFailure as e:
            raise EquivalenceServiceError(e.message) from e

        if parsed_a.is_equation != parsed_b.is_equation:
            a = self._comparable(parsed_a)
            b = self._comparable(parsed_b)
            return {
                "equivalent": False,
                "method": ValidationMethod.FAST_PATH.value,
                "time_ms": (time.perf_counter() - started) * 1000,
                "canonical_a": canonical_form(a),
                "canonical_b": canonical_form(b),
            }

        a = self._comparable(parsed_a)
        b = self._comparable(parsed_b)
        canonical_a = canonical_form(a)
        canonical_b = canonical_form(b)

        if canonical_a == canonical_b:
            equivalent, method = True, ValidationMethod.FAST_PATH
        elif settings.get("fallback", True):
            try:
                equivalent = self._fallback_equivalent(a, b, parsed_a.is_equation)
            except Exception as e:
                raise EquivalenceServiceError(f"simplification failed: {e}") from e
            method = ValidationMethod.FALLBACK
        else:
            equivalent, method = False, ValidationMethod.FAST_PATH

        return {
            "equivalent": equivalent,
            "method": method.value,
            "time_ms": (time.perf_counter() - started) * 1000,
            "canonical_a": canonical_a,
            "canonical_b": canonical_b,
        }

    async def check_equivalence(
        self,
        expr_a: str,
        expr_b: str,
        settings: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Run compare() in the service's worker process.

        Raises:
            Timeout: the comparison exceeded ``timeout`` (the process is killed)
            EquivalenceServiceError: parse failure or lost worker process
        """
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(
            self._get_executor(), self.compare_fn or compare_expressions, expr_a, expr_b, settings,
        )
        try:
            return await asyncio.wait_for(future, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Comparison exceeded {self.timeout}s, restarting worker process")
            self._restart_executor()
            raise Timeout(f"equivalence check exceeded {self.timeout}s")
        except asyncio.CancelledError:
            self._restart_executor()
            raise
        except BrokenProcessPool as e:
            self._executor = None
            raise EquivalenceServiceError(f"comparison process died: {e}") from e

    def _get_executor(self) -> ProcessPoolExecutor:
        if self._executor is None:
            self._executor = ProcessPoolExecutor(max_workers=self.max_workers)
        return self._executor

    def _restart_executor(self) -> None:
        """Kill the worker processes; the next call starts fresh ones."""
        executor, self._executor = self._executor, None
        if executor is None:
            return
        # a running simplify() cannot be interrupted, only killed
        for process in list((executor._processes or {}).values()):
            process.terminate()
        executor.shutdown(wait=False, cancel_futures=True)

    async def close(self) -> None:
        executor, self._executor = self._executor, None
        if executor is not None:
            await asyncio.to_thread(executor.shutdown, True, cancel_futures=True)


def compare_expressions(expr_a: str, expr_b: str, settings: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Blocking comparison, importable by worker processes."""
    return SympyEquivalenceService().compare(expr_a, expr_b, settings)
