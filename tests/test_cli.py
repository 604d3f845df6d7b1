"""
Tests for the inkrow CLI

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

import json

import pytest

from inkrow_core.cli import main
from inkrow_core.persistence import JsonDocumentStore
from inkrow_core.rows import RowManager


def write_document(path, clock, *expressions):
    rows = RowManager(clock=clock)
    for expression in expressions:
        row = rows.activate_next()
        rows.update_row(row.id, {"ocr_status": "processing"})
        rows.update_row(row.id, {"ocr_status": "complete", "expression": expression})
        clock.advance(1)
    JsonDocumentStore(path).save(rows.serialize())
    return path


@pytest.fixture
def cli_args(temp_dir):
    """Global options pointing at a config file with a generous comparison deadline."""
    path = temp_dir / "inkrow.yaml"
    path.write_text("validation:\n  timeout: 30.0\n")
    return ["-c", str(path)]


class TestValidateCommand:
    """Tests for `inkrow validate`."""

    def test_equivalent_rows(self, temp_dir, clock, cli_args, capsys):
        """Test a consistent document exits 0 and can be saved back."""
        doc = write_document(temp_dir / "doc.json", clock, "2(x + 1)", "2x + 2")
        assert main(cli_args + ["validate", str(doc), "--save"]) == 0

        out = capsys.readouterr().out
        assert "validated=2" in out
        saved = json.loads(doc.read_text())
        assert [r["validationStatus"] for r in saved["rows"]] == ["validated", "validated"]

    def test_invalid_step(self, temp_dir, clock, cli_args, capsys):
        """Test a wrong step exits 2."""
        doc = write_document(temp_dir / "doc.json", clock, "x + 1", "x + 3")
        assert main(cli_args + ["validate", str(doc)]) == 2
        assert "invalid=1" in capsys.readouterr().out

    def test_missing_document(self, temp_dir, cli_args):
        """Test a missing document exits 1."""
        assert main(cli_args + ["validate", str(temp_dir / "none.json")]) == 1

    def test_corrupt_document(self, temp_dir, cli_args, capsys):
        """Test a corrupt document exits 1 with the error kind."""
        doc = temp_dir / "doc.json"
        doc.write_text("{broken")
        assert main(cli_args + ["validate", str(doc)]) == 1
        assert "persisted_state_corrupt" in capsys.readouterr().out


class TestOtherCommands:
    """Tests for timeline, cache, config and version."""

    def test_timeline(self, temp_dir, clock, cli_args, capsys):
        """Test the timeline is printed as JSON."""
        doc = write_document(temp_dir / "doc.json", clock, "a", "b")
        assert main(cli_args + ["timeline", str(doc)]) == 0
        timeline = json.loads(capsys.readouterr().out)
        assert [e["rowId"] for e in timeline] == ["row-0", "row-1"]
        assert timeline[1]["deactivatedAt"] is None

    def test_cache_purge_without_cache(self, temp_dir, cli_args, capsys):
        """Test purging a missing cache directory is a no-op."""
        assert main(cli_args + ["cache", "purge", "--cache-dir", str(temp_dir / "cache")]) == 0
        assert "No cache" in capsys.readouterr().out

    def test_config(self, cli_args, capsys):
        """Test the effective configuration is listed."""
        assert main(cli_args + ["config"]) == 0
        out = capsys.readouterr().out
        assert "pool:" in out
        assert "concurrency: 3" in out

    def test_version(self, capsys):
        """Test the version banner."""
        assert main(["version"]) == 0
        assert capsys.readouterr().out.startswith("inkrow v")

    def test_no_command(self, capsys):
        """Test running without a command prints help."""
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out
