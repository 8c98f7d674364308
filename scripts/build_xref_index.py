#!/usr/bin/env python3
"""Build the cross-reference DuckDB index from the DISA CCI list XML.

Usage:
    python3 scripts/build_xref_index.py --xml U_CCI_List.xml --db data/xref.duckdb
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any

import orjson

from controlset.xref import build_xref_index, parse_cci_list


def _log(msg: str) -> None:
    """Write human-readable message to stderr."""
    print(msg, file=sys.stderr)


def dump_json(obj: Any) -> None:
    sys.stdout.buffer.write(orjson.dumps(obj, option=orjson.OPT_INDENT_2))
    sys.stdout.buffer.write(b"\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Build the cross-reference (CCI) DuckDB index."
    )
    parser.add_argument("--xml", required=True, type=Path, help="Path to U_CCI_List.xml")
    parser.add_argument("--db", required=True, type=Path, help="Output DuckDB path")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if not args.xml.exists():
        _log(f"Error: CCI list not found: {args.xml}")
        return 1

    _log(f"Parsing {args.xml}")
    version, items = parse_cci_list(args.xml.read_bytes())
    _log(f"Parsed {len(items)} items (list version {version})")

    counts = build_xref_index(items, args.db, version=version)
    _log(f"Wrote {args.db}")
    dump_json({"db": str(args.db), "version": version, **counts})
    return 0


if __name__ == "__main__":
    sys.exit(main())
