"""
Tests for fragment merging

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

import pytest
from unittest.mock import Mock

from inkrow_core.merging import FragmentMerger, join_seam, separator_for_gap
from inkrow_core.models import PlacedFragment
from inkrow_core.services import ParseOutcome


class TestGapLaw:
    """Tests for separator_for_gap."""

    @pytest.mark.parametrize("gap,separator", [
        (-64, ""),
        (5, ""),
        (9, ""),
        (10, " "),
        (20, " "),
        (29, " "),
        (30, "  "),
        (50, "  "),
    ])
    def test_separator(self, gap, separator):
        """Test gap thresholds 10 and 30."""
        assert separator_for_gap(gap) == separator

    def test_custom_thresholds(self):
        """Test thresholds are configurable."""
        assert separator_for_gap(15, tight_gap=20, wide_gap=40) == ""
        assert separator_for_gap(45, tight_gap=20, wide_gap=40) == "  "


class TestJoinSeam:
    """Tests for seam clean-up."""

    def test_plain_join(self):
        """Test fragments are concatenated with the separator."""
        assert join_seam("x^2 + 3x", "y", "") == "x^2 + 3xy"
        assert join_seam("a", "b", " ") == "a b"

    def test_duplicate_operator_kept_once(self):
        """Test an operator read by both overlapping tiles appears once."""
        assert join_seam("a +", "+ b") == "a + b"
        assert join_seam(r"a \cdot", r"\cdot b") == r"a \cdot b"
        assert join_seam("x =", "= 2") == "x = 2"

    def test_different_operators_kept(self):
        """Test distinct operators on each side are both kept."""
        assert join_seam("a +", "- b") == "a +- b"


class TestFragmentMerger:
    """Tests for FragmentMerger."""

    def test_overlapping_tiles_no_separator(self):
        """Test tiles at stride 320 overlap and join directly."""
        merger = FragmentMerger()
        result = merger.merge([
            PlacedFragment(0, "x^2 + 3x"),
            PlacedFragment(320, "y + y^2"),
            PlacedFragment(640, "- 5"),
        ])
        assert result.text == "x^2 + 3xy + y^2- 5"
        assert result.valid is True

    @pytest.mark.parametrize("offset,expected", [(389, "ab"), (404, "a b"), (434, "a  b")])
    def test_gap_between_tiles(self, offset, expected):
        """Test gaps 5, 20 and 50 give no, one and two spaces."""
        result = FragmentMerger().merge([PlacedFragment(0, "a"), PlacedFragment(offset, "b")])
        assert result.text == expected

    def test_results_sorted_by_offset(self):
        """Test out-of-order results are merged left to right."""
        result = FragmentMerger().merge([PlacedFragment(320, "b"), PlacedFragment(0, "a")])
        assert result.text == "ab"

    def test_no_fragments(self):
        """Test an empty input is reported invalid."""
        result = FragmentMerger().merge([])
        assert result.valid is False
        assert result.errors == ["no fragments to merge"]

    def test_blank_text_invalid(self):
        """Test whitespace-only output is invalid."""
        result = FragmentMerger().merge([PlacedFragment(0, " ")])
        assert result.valid is False

    def test_validator_rejection_reported(self):
        """Test a syntax rejection is reported, not raised."""
        validator = Mock()
        validator.parse.return_value = ParseOutcome(ok=False, error="unexpected token")
        result = FragmentMerger(validator=validator).merge([PlacedFragment(0, "x +")])
        assert result.valid is False
        assert result.text == "x +"
        assert result.errors == ["unexpected token"]

    def test_validator_failure_reported(self):
        """Test a validator exception is reported, not raised."""
        validator = Mock()
        validator.parse.side_effect = RuntimeError("boom")
        result = FragmentMerger(validator=validator).merge([PlacedFragment(0, "x")])
        assert result.valid is False
        assert "boom" in result.errors[0]

    def test_validator_accepts(self):
        """Test an accepted expression is valid."""
        validator = Mock()
        validator.parse.return_value = ParseOutcome(ok=True)
        result = FragmentMerger(validator=validator).merge([PlacedFragment(0, "x + 1")])
        assert result.valid is True
        validator.parse.assert_called_once_with("x + 1")
