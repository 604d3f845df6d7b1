"""
Tests for post-processing

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

import pytest
from unittest.mock import Mock

from inkrow_core.postprocess import PostProcessor, check_balanced, normalize_whitespace
from inkrow_core.services import AcceptAllValidator, ParseOutcome


class TestNormalizeWhitespace:
    """Tests for whitespace rules."""

    @pytest.mark.parametrize("raw,expected", [
        ("x^2 + 3xy + y^2- 5", "x^2 + 3xy + y^2 - 5"),
        ("a=b", "a = b"),
        ("a  +   b", "a + b"),
        ("-x+1", "-x + 1"),
        ("(-3)", "(-3)"),
        ("x = -5", "x = -5"),
        ("x ^ 2", "x^2"),
        ("x_ 1", "x_1"),
        ("x^{ 2 }", "x^{2}"),
        ("( a+b )", "(a + b)"),
    ])
    def test_rules(self, raw, expected):
        """Test operator, script and bracket spacing."""
        assert normalize_whitespace(raw) == expected


class TestCheckBalanced:
    """Tests for delimiter balance."""

    def test_balanced(self):
        """Test balanced nesting."""
        assert check_balanced("{[(a)]}") is None

    def test_unclosed(self):
        """Test an unclosed opener is reported."""
        assert "unclosed '('" in check_balanced("(x + 1")

    def test_mismatched(self):
        """Test a mismatched closer is reported."""
        assert "unexpected ']'" in check_balanced("(x]")

    def test_escaped_braces_ignored(self):
        """Test LaTeX escaped braces are not delimiters."""
        assert check_balanced(r"\{x") is None


class TestPostProcessor:
    """Tests for PostProcessor."""

    def test_unicode_replacements(self):
        """Test unicode operators become LaTeX/ASCII."""
        processor = PostProcessor()
        assert processor.clean("a−b").cleaned == "a - b"
        assert processor.clean("2×3").cleaned == r"2 \times 3"
        assert processor.clean("a·b").cleaned == r"a \cdot b"
        assert processor.clean("x≤1").cleaned == r"x \leq 1"

    def test_digit_lookalikes(self):
        """Test letters between digits are read as digits."""
        result = PostProcessor().clean("1O5 + 2l3 + 4S6")
        assert result.cleaned == "105 + 213 + 456"
        assert len(result.warnings) == 3

    def test_letters_not_between_digits_kept(self):
        """Test ordinary variables are untouched."""
        assert PostProcessor().clean("O + l + S").cleaned == "O + l + S"

    def test_unbalanced_is_warning_only(self):
        """Test an unbalanced expression is still returned."""
        result = PostProcessor().clean("(x+1")
        assert result.cleaned == "(x + 1"
        assert any("unbalanced" in w for w in result.warnings)

    def test_process_without_validator_is_valid(self):
        """Test process() accepts when no validator is configured."""
        result = PostProcessor().process("x+1")
        assert result.valid is True
        assert result.cleaned == "x + 1"

    def test_process_revalidates(self):
        """Test process() reports the validator verdict on the cleaned text."""
        validator = Mock()
        validator.parse.return_value = ParseOutcome(ok=False, error="bad")
        result = PostProcessor(validator).process("x+")
        assert result.valid is False
        assert result.error == "bad"
        validator.parse.assert_called_once_with(result.cleaned)

    def test_process_validator_exception(self):
        """Test a raising validator makes the result invalid."""
        validator = Mock()
        validator.parse.side_effect = ValueError("boom")
        result = PostProcessor(validator).process("x")
        assert result.valid is False
        assert result.error == "boom"

    def test_empty_text_rejected_by_accept_all(self):
        """Test the default validator rejects blank output."""
        assert PostProcessor(AcceptAllValidator()).process("  ").valid is False

    def test_clean_never_raises(self):
        """Test non-string input is returned with a warning."""
        result = PostProcessor().clean(None)
        assert result.cleaned is None
        assert result.warnings
