"""Control-set output: aggregate metadata record, field schema, YAML files.

Layout written under the output directory::

    control-set.yaml                  aggregate metadata + field schema
    back-matter.yaml                  resources by uuid (when any exist)
    controls/<family>/<id>.yaml       one file per record, sort_id order
"""
from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from controlset.decomposer import AtomicUnit, ControlFramework, family_display_name
from controlset.document_io import dump_yaml
from controlset.normalizer import NormalizedControl
from controlset.oscal_types import Metadata, Resource

log = logging.getLogger(__name__)

type ControlRecord = NormalizedControl | AtomicUnit

CONTROL_SET_FILE = "control-set.yaml"
BACK_MATTER_FILE = "back-matter.yaml"
CONTROLS_DIR = "controls"

COMPLIANCE_STATUS_OPTIONS = (
    "Not Assessed",
    "Satisfied",
    "Other Than Satisfied",
    "Not Applicable",
)
IMPLEMENTATION_STATUS_OPTIONS = (
    "Not Implemented",
    "Planned",
    "Partially Implemented",
    "Implemented",
    "Alternative Implementation",
    "Not Applicable",
)
DESIGNATION_OPTIONS = ("System", "Hybrid", "Common", "Inherited")

# (output key, schema entry) for content fields, emitted only when populated
_CONTENT_FIELDS: tuple[tuple[str, dict[str, Any]], ...] = (
    ("class", {"type": "string"}),
    ("definition", {"type": "string"}),
    ("xref_type", {"type": "string"}),
    ("status", {"type": "string"}),
    ("statement", {"type": "string", "ui_type": "long_text"}),
    ("guidance", {"type": "string", "ui_type": "long_text"}),
    ("objectives", {"type": "array", "array_item_type": "mixed"}),
    ("assessment_methods", {"type": "array", "array_item_type": "string"}),
    ("parameters", {"type": "array", "array_item_type": "object"}),
    ("properties", {"type": "object"}),
    ("links", {"type": "array", "array_item_type": "object"}),
    ("source_catalog", {"type": "string"}),
    ("source_profile", {"type": "string"}),
)


def _now() -> str:
    return datetime.now(UTC).isoformat()


# ---------------------------------------------------------------------------
# Field schema
# ---------------------------------------------------------------------------


def generate_field_schema(
    records: Sequence[ControlRecord],
    xref_enabled: bool = False,
) -> dict[str, Any]:
    """Describe which output fields are populated and how they render."""
    dicts = [r.to_dict() for r in records]
    populated: set[str] = set()
    for d in dicts:
        populated.update(d)

    fields: dict[str, dict[str, Any]] = {
        "id": {"type": "string", "required": True},
        "title": {"type": "string", "required": True},
        "family": {"type": "string", "required": True},
    }
    for key, entry in _CONTENT_FIELDS:
        if key in populated:
            fields[key] = dict(entry)
    if xref_enabled or "parent_control_id" in populated:
        fields["parent_control_id"] = {"type": "string"}

    # Compliance tracking fields, filled in by users after import.
    fields["implementation_narrative"] = {"type": "string", "ui_type": "long_text"}
    fields["control_implementation_status"] = {
        "type": "string",
        "required": True,
        "options": list(IMPLEMENTATION_STATUS_OPTIONS),
    }
    fields["security_control_designation"] = {
        "type": "string",
        "options": list(DESIGNATION_OPTIONS),
    }
    fields["compliance_status"] = {
        "type": "string",
        "options": list(COMPLIANCE_STATUS_OPTIONS),
    }
    fields["inherited"] = {"type": "boolean"}
    fields["date_tested"] = {"type": "string"}
    fields["tested_by"] = {"type": "string"}
    fields["test_results"] = {"type": "string"}
    return {"fields": fields, "total_controls": len(records)}


# ---------------------------------------------------------------------------
# Metadata record
# ---------------------------------------------------------------------------


def family_counts(records: Sequence[ControlRecord]) -> list[dict[str, Any]]:
    counts: dict[str, int] = {}
    for r in records:
        counts[r.family] = counts.get(r.family, 0) + 1
    return [
        {"id": fam, "name": family_display_name(fam), "control_count": counts[fam]}
        for fam in sorted(counts)
    ]


def build_metadata(
    metadata: Metadata,
    source_type: str,
    source_file: str,
    records: Sequence[ControlRecord],
    *,
    uuid: str = "",
    framework: ControlFramework | None = None,
) -> dict[str, Any]:
    """Aggregate control-set record written to ``control-set.yaml``."""
    xref_enabled = framework.xref_enabled if framework is not None else False
    families = family_counts(records)
    out: dict[str, Any] = {
        "title": metadata.title,
        "version": metadata.version,
        "last_modified": metadata.last_modified,
        "oscal_version": metadata.oscal_version,
        "uuid": uuid,
        "source_type": source_type,
        "source_file": source_file,
        "processed_at": _now(),
    }
    if framework is not None:
        out["framework"] = framework.to_dict()
    if metadata.roles:
        out["roles"] = list(metadata.roles)
    if metadata.parties:
        out["parties"] = list(metadata.parties)
    if metadata.responsible_parties:
        out["responsible_parties"] = list(metadata.responsible_parties)
    if metadata.props:
        out["properties"] = {p.name: p.value for p in metadata.props}
    if metadata.links:
        out["links"] = [link.to_dict() for link in metadata.links]
    out["families"] = families
    out["field_schema"] = generate_field_schema(records, xref_enabled)
    out["statistics"] = {
        "total_controls": len(records),
        "families": len(families),
        "types": ["cci"] if xref_enabled else ["control"],
    }
    return out


def resource_to_dict(resource: Resource) -> dict[str, Any]:
    if resource.raw:
        return dict(resource.raw)
    out: dict[str, Any] = {"uuid": resource.uuid}
    if resource.title:
        out["title"] = resource.title
    if resource.description:
        out["description"] = resource.description
    if resource.citation:
        out["citation"] = {"text": resource.citation}
    if resource.rlinks:
        out["rlinks"] = [
            {"href": r.href, **({"media-type": r.media_type} if r.media_type else {})}
            for r in resource.rlinks
        ]
    return out


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------


def _write(path: Path, payload: Any, *, overwrite: bool, dry_run: bool) -> bool:
    if path.exists() and not overwrite:
        log.debug("Keeping existing %s", path)
        return False
    if dry_run:
        log.info("Would write %s", path)
        return True
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dump_yaml(payload), encoding="utf-8")
    return True


def write_control_set(
    metadata_record: Mapping[str, Any],
    records: Sequence[ControlRecord],
    output_dir: Path,
    *,
    back_matter: Mapping[str, Resource] | None = None,
    overwrite: bool = False,
    dry_run: bool = False,
) -> list[Path]:
    """Write the control set. Returns written (or, with dry_run, planned) paths.

    Existing files are left untouched unless ``overwrite`` is set.
    """
    written: list[Path] = []
    path = output_dir / CONTROL_SET_FILE
    if _write(path, dict(metadata_record), overwrite=overwrite, dry_run=dry_run):
        written.append(path)

    if back_matter:
        path = output_dir / BACK_MATTER_FILE
        payload = {"resources": {u: resource_to_dict(r) for u, r in back_matter.items()}}
        if _write(path, payload, overwrite=overwrite, dry_run=dry_run):
            written.append(path)

    by_family: dict[str, list[ControlRecord]] = {}
    for record in records:
        by_family.setdefault(record.family, []).append(record)
    for family, members in by_family.items():
        family_dir = output_dir / CONTROLS_DIR / family
        # Stable sort keeps decomposed units in their ordered position.
        for record in sorted(members, key=lambda r: r.sort_id):
            path = family_dir / f"{record.id}.yaml"
            if _write(path, record.to_dict(), overwrite=overwrite, dry_run=dry_run):
                written.append(path)

    verb = "Would write" if dry_run else "Wrote"
    log.info("%s %d files for %d records to %s", verb, len(written), len(records), output_dir)
    return written
