"""Document I/O: parse OSCAL files by extension, write YAML/JSON outputs.

JSON goes through orjson; YAML through PyYAML (safe loader/dumper only).
XML OSCAL is recognised but not supported.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any

import orjson
import yaml

from controlset.errors import ResolutionError, UnsupportedFormatError
from controlset.oscal_types import SourceDocument, parse_document

JSON_SUFFIXES = frozenset({".json"})
YAML_SUFFIXES = frozenset({".yaml", ".yml"})
XML_SUFFIXES = frozenset({".xml"})


def decode_payload(raw: bytes, suffix: str, *, source: str = "<bytes>") -> Any:
    """Decode raw document bytes according to a file suffix."""
    suffix = suffix.lower()
    if suffix in JSON_SUFFIXES:
        return orjson.loads(raw)
    if suffix in YAML_SUFFIXES:
        return yaml.safe_load(raw)
    if suffix in XML_SUFFIXES:
        raise UnsupportedFormatError(f"XML OSCAL documents are not supported: {source}")
    raise UnsupportedFormatError(f"Unsupported document format: {source}")


def load_payload(path: Path) -> Any:
    """Load and decode a JSON or YAML file without interpreting it."""
    if not path.exists():
        raise ResolutionError(f"Document file not found: {path}")
    return decode_payload(path.read_bytes(), path.suffix, source=str(path))


def load_document(path: Path) -> SourceDocument:
    """Load a catalog or profile from disk."""
    return parse_document(load_payload(path))


def dump_yaml(obj: Any) -> str:
    """Render an object as block-style YAML, keys in insertion order."""
    return yaml.safe_dump(
        obj,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
        width=2**16,
        indent=2,
    )


def save_yaml(obj: Any, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dump_yaml(obj), encoding="utf-8")


def dump_json(obj: Any, *, pretty: bool = True) -> bytes:
    opts = orjson.OPT_INDENT_2 if pretty else 0
    return orjson.dumps(obj, option=opts)
