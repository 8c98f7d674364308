#!/usr/bin/env python3
"""Import an OSCAL catalog or profile into a control-set directory.

Subcommands:
    import    normalize/resolve and write control-set YAML files
    info      JSON summary of a catalog or profile to stdout
    validate  check the document root is a catalog or profile (exit 1 if not)

Progress goes to stderr; JSON summaries go to stdout.

Usage:
    python3 scripts/import_oscal.py import NIST_SP-800-53_rev5_catalog.json out/ \
      --xref-db data/xref.duckdb --revision 5
    python3 scripts/import_oscal.py info profile.yaml
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any

import orjson

from controlset.document_io import load_document, load_payload
from controlset.errors import ControlSetError
from controlset.importer import ImportOptions, import_document
from controlset.normalizer import iter_control_tree, iter_controls
from controlset.oscal_types import Catalog, Profile

log = logging.getLogger("import_oscal")


def _log(msg: str) -> None:
    """Write human-readable message to stderr."""
    print(msg, file=sys.stderr)


def dump_json(obj: Any) -> None:
    sys.stdout.buffer.write(orjson.dumps(obj, option=orjson.OPT_INDENT_2))
    sys.stdout.buffer.write(b"\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Import OSCAL catalogs and profiles into a control set."
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    imp = sub.add_parser("import", help="Import a catalog or profile")
    imp.add_argument("file", type=Path, help="OSCAL catalog/profile (JSON or YAML)")
    imp.add_argument("output_dir", type=Path, help="Control-set output directory")
    imp.add_argument("--overwrite", action="store_true", help="Replace existing files")
    imp.add_argument("--dry-run", action="store_true", help="Report files without writing")
    imp.add_argument("--links", action="store_true", help="Keep internal back-matter links")
    imp.add_argument(
        "--flatten-refs",
        action="store_true",
        help="Rewrite back-matter links to their resource href and citation",
    )
    imp.add_argument(
        "--resolve-params",
        action="store_true",
        help="Substitute parameter labels into prose",
    )
    imp.add_argument(
        "--cache-dir",
        type=Path,
        default=None,
        help="Download cache (default: $CONTROLSET_CACHE_DIR or <input dir>/.oscal-cache)",
    )
    imp.add_argument(
        "--no-xref",
        action="store_true",
        help="Do not decompose NIST controls into cross-reference units",
    )
    imp.add_argument(
        "--xref-db",
        type=Path,
        default=None,
        help="Cross-reference DuckDB (default: $CONTROLSET_XREF_DB)",
    )
    imp.add_argument(
        "--revision",
        choices=["4", "5"],
        default=None,
        help="Only use cross-references for this SP 800-53 revision",
    )
    imp.add_argument(
        "--timeout", type=float, default=None, help="Remote fetch timeout (seconds)"
    )

    info = sub.add_parser("info", help="Summarize a catalog or profile")
    info.add_argument("file", type=Path)

    validate = sub.add_parser("validate", help="Check a document is a catalog or profile")
    validate.add_argument("file", type=Path)
    return parser


def options_from_args(args: argparse.Namespace) -> ImportOptions:
    return ImportOptions(
        overwrite=args.overwrite,
        dry_run=args.dry_run,
        include_links=args.links,
        flatten_references=args.flatten_refs,
        resolve_parameters=args.resolve_params,
        cache_dir=args.cache_dir,
        use_xref=not args.no_xref,
        xref_db=args.xref_db,
        revision=args.revision,
        timeout=args.timeout,
    )


def document_info(path: Path) -> dict[str, Any]:
    document = load_document(path)
    out: dict[str, Any] = {
        "file": str(path),
        "title": document.metadata.title,
        "version": document.metadata.version,
        "oscal_version": document.metadata.oscal_version,
        "back_matter_resources": len(document.back_matter),
    }
    if isinstance(document, Catalog):
        families: dict[str, int] = {}
        for top, family in iter_controls(document):
            families[family] = families.get(family, 0) + sum(1 for _ in iter_control_tree(top))
        out["type"] = "catalog"
        out["groups"] = len(document.groups)
        out["controls"] = sum(families.values())
        out["families"] = families
    elif isinstance(document, Profile):
        out["type"] = "profile"
        out["imports"] = [spec.href for spec in document.imports]
        out["set_parameters"] = len(document.modify.set_parameters) if document.modify else 0
        out["alters"] = len(document.modify.alters) if document.modify else 0
    return out


def cmd_import(args: argparse.Namespace) -> int:
    options = options_from_args(args)
    _log(f"Importing {args.file} -> {args.output_dir}")
    result = import_document(args.file, args.output_dir, options)
    verb = "Would write" if options.dry_run else "Wrote"
    _log(f"{verb} {len(result.written)} files ({len(result.records)} records)")
    dump_json(result.summary())
    return 0


def cmd_info(args: argparse.Namespace) -> int:
    dump_json(document_info(args.file))
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    payload = load_payload(args.file)
    if isinstance(payload, dict) and ("catalog" in payload or "profile" in payload):
        kind = "catalog" if "catalog" in payload else "profile"
        dump_json({"file": str(args.file), "valid": True, "type": kind})
        return 0
    _log(f"Error: {args.file} is neither an OSCAL catalog nor profile")
    dump_json({"file": str(args.file), "valid": False, "type": None})
    return 1


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    handlers = {"import": cmd_import, "info": cmd_info, "validate": cmd_validate}
    try:
        return handlers[args.command](args)
    except ControlSetError as exc:
        _log(f"Error: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
