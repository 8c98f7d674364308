"""Tests for the OSCAL import CLI (scripts/import_oscal.py)."""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import orjson
import pytest

# Import the module under test (lives in scripts/)
_scripts_dir = str(Path(__file__).resolve().parents[1] / "scripts")
if _scripts_dir not in sys.path:
    sys.path.insert(0, _scripts_dir)

from import_oscal import build_parser, document_info, main, options_from_args  # noqa: E402

CATALOG = {
    "catalog": {
        "uuid": "c-1",
        "metadata": {"title": "Test Catalog", "version": "2"},
        "groups": [
            {
                "id": "test-family",
                "title": "Test Family",
                "controls": [
                    {
                        "id": "test-1",
                        "title": "First",
                        "parts": [{"name": "statement", "prose": "Do it."}],
                        "controls": [{"id": "test-1.1", "title": "Enh"}],
                    }
                ],
            }
        ],
    }
}


def _write(path: Path, payload: Any) -> Path:
    path.write_bytes(orjson.dumps(payload))
    return path


class TestParser:
    def test_import_flags(self, tmp_path: Path) -> None:
        args = build_parser().parse_args(
            [
                "import",
                "cat.json",
                "out",
                "--overwrite",
                "--links",
                "--flatten-refs",
                "--resolve-params",
                "--no-xref",
                "--revision",
                "5",
                "--timeout",
                "2.5",
                "--cache-dir",
                str(tmp_path),
            ]
        )
        opts = options_from_args(args)
        assert opts.overwrite and opts.include_links and opts.flatten_references
        assert opts.resolve_parameters
        assert opts.use_xref is False
        assert opts.revision == "5"
        assert opts.timeout == 2.5
        assert opts.cache_dir == tmp_path
        assert opts.dry_run is False

    def test_revision_choices(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["import", "a.json", "out", "--revision", "3"])


class TestCommands:
    def test_import(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        src = _write(tmp_path / "cat.json", CATALOG)
        out = tmp_path / "out"
        assert main(["import", str(src), str(out)]) == 0
        summary = orjson.loads(capsys.readouterr().out)
        assert summary["source_type"] == "catalog"
        assert summary["records"] == 2
        assert (out / "controls" / "test-family" / "test-1.yaml").exists()

    def test_import_missing_file(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["import", str(tmp_path / "nope.json"), str(tmp_path / "out")]) == 1
        assert "not found" in capsys.readouterr().err

    def test_info_catalog(self, tmp_path: Path) -> None:
        info = document_info(_write(tmp_path / "cat.json", CATALOG))
        assert info["type"] == "catalog"
        assert info["controls"] == 2
        assert info["families"] == {"test-family": 2}

    def test_info_profile(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        src = _write(
            tmp_path / "p.json",
            {"profile": {"uuid": "p", "metadata": {"title": "P"}, "imports": [{"href": "cat.json"}]}},
        )
        assert main(["info", str(src)]) == 0
        info = orjson.loads(capsys.readouterr().out)
        assert info["type"] == "profile"
        assert info["imports"] == ["cat.json"]

    def test_validate(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        good = _write(tmp_path / "cat.json", CATALOG)
        bad = _write(tmp_path / "bad.json", {"something": {}})
        assert main(["validate", str(good)]) == 0
        assert orjson.loads(capsys.readouterr().out)["valid"] is True
        assert main(["validate", str(bad)]) == 1
        assert orjson.loads(capsys.readouterr().out)["valid"] is False

    def test_unsupported_extension(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        src = tmp_path / "cat.xml"
        src.write_text("<catalog/>")
        assert main(["info", str(src)]) == 1
        assert "XML" in capsys.readouterr().err
