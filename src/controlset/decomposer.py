"""Atomic decomposition of normalized controls into cross-reference units.

For NIST SP 800-53 sources each NormalizedControl is exploded into one
AtomicUnit per applicable cross-reference (CCI) id. A unit carries the
cross-reference's own definition, the parent's statement/guidance/methods,
and an objective excerpt located by matching the reference's published
structural index (``AC-1 a 1``) against the control's objective part tree.

Controls without cross-references become a single fallback unit. A lookup
failure switches the rest of the run to fallback units; it never aborts.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, fields
from typing import Any

from controlset.errors import CrossReferenceLookupError
from controlset.normalizer import (
    OBJECTIVE_PARTS,
    NormalizedControl,
    NormalizedParameter,
)
from controlset.oscal_types import Control, Link, Metadata
from controlset.part_extractor import (
    extract_structure,
    find_part_by_index,
    find_parts,
    strip_boilerplate,
)
from controlset.xref import (
    CrossReference,
    CrossReferenceLookup,
    control_key_for_id,
    index_tokens,
    xref_number,
)

log = logging.getLogger(__name__)

TITLE_MAX_CHARS = 100

FAMILY_NAMES: dict[str, str] = {
    "ac": "Access Control",
    "at": "Awareness and Training",
    "au": "Audit and Accountability",
    "ca": "Security Assessment and Authorization",
    "cm": "Configuration Management",
    "cp": "Contingency Planning",
    "ia": "Identification and Authentication",
    "ir": "Incident Response",
    "ma": "Maintenance",
    "mp": "Media Protection",
    "pe": "Physical and Environmental Protection",
    "pl": "Planning",
    "ps": "Personnel Security",
    "ra": "Risk Assessment",
    "sa": "System and Services Acquisition",
    "sc": "System and Communications Protection",
    "si": "System and Information Integrity",
    "pm": "Program Management",
    "pt": "PII Processing and Transparency",
    "sr": "Supply Chain Risk Management",
    "ar": "Privacy",
    "cci": "Control Correlation Identifiers",
}


# ---------------------------------------------------------------------------
# Framework detection
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ControlFramework:
    id: str
    name: str
    version: str
    default_granularity: str
    xref_enabled: bool
    baseline: str = "custom"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "baseline": self.baseline,
            "default_granularity": self.default_granularity,
            "xref_enabled": self.xref_enabled,
        }


def detect_framework_type(title: str | None) -> str:
    t = (title or "").lower()
    if "nist" in t or "800-53" in t:
        return "nist-800-53"
    if "iso" in t or "27001" in t:
        return "iso-27001"
    if "cobit" in t:
        return "cobit"
    return "custom"


def is_nist(title: str | None) -> bool:
    return detect_framework_type(title) == "nist-800-53"


def extract_baseline(title: str | None) -> str:
    t = (title or "").lower()
    for baseline in ("high", "moderate", "low", "privacy"):
        if baseline in t:
            return baseline
    return "custom"


def detect_framework(metadata: Metadata, use_xref: bool = True) -> ControlFramework:
    framework_id = detect_framework_type(metadata.title)
    xref_enabled = framework_id == "nist-800-53" and use_xref
    return ControlFramework(
        id=framework_id,
        name=metadata.title or framework_id,
        version=metadata.version or "1.0.0",
        default_granularity="cci" if xref_enabled else "control",
        xref_enabled=xref_enabled,
        baseline=extract_baseline(metadata.title),
    )


def family_display_name(family_id: str) -> str:
    return FAMILY_NAMES.get(family_id.lower(), family_id.upper())


# ---------------------------------------------------------------------------
# Units
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class AtomicUnit:
    id: str
    parent_control_id: str
    title: str
    definition: str
    family: str
    sort_id: str
    class_: str | None = None
    statement: str | None = None
    guidance: str | None = None
    objectives: list[Any] | None = None
    assessment_methods: list[str] | None = None
    parameters: list[NormalizedParameter] | None = None
    properties: dict[str, str] | None = None
    links: list[Link] | None = None
    source_catalog: str | None = None
    source_profile: str | None = None
    xref_type: str | None = None
    status: str | None = None

    @property
    def populated_field_count(self) -> int:
        return sum(1 for f in fields(self) if getattr(self, f.name) is not None)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.id, "title": self.title}
        if self.class_ is not None:
            out["class"] = self.class_
        out["family"] = self.family
        out["sort_id"] = self.sort_id
        out["parent_control_id"] = self.parent_control_id
        if self.definition:
            out["definition"] = self.definition
        if self.xref_type:
            out["xref_type"] = self.xref_type
        if self.status:
            out["status"] = self.status
        for key in ("statement", "guidance", "objectives", "assessment_methods"):
            value = getattr(self, key)
            if value:
                out[key] = value
        if self.parameters:
            out["parameters"] = [p.to_dict() for p in self.parameters]
        if self.properties:
            out["properties"] = dict(self.properties)
        if self.links:
            out["links"] = [link.to_dict() for link in self.links]
        if self.source_catalog:
            out["source_catalog"] = self.source_catalog
        if self.source_profile:
            out["source_profile"] = self.source_profile
        return out


def truncate_title(text: str, limit: int = TITLE_MAX_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def fallback_unit(control: NormalizedControl) -> AtomicUnit:
    """A control with no cross-references, carried as its own unit."""
    return AtomicUnit(
        id=control.id,
        parent_control_id=control.id,
        title=control.title,
        definition=control.statement or "",
        family=control.family,
        sort_id=control.sort_id,
        class_=control.class_,
        statement=control.statement,
        guidance=control.guidance,
        objectives=control.objectives,
        assessment_methods=control.assessment_methods,
        parameters=control.parameters,
        properties=dict(control.properties) if control.properties else None,
        links=control.links,
        source_catalog=control.source_catalog,
        source_profile=control.source_profile,
    )


# ---------------------------------------------------------------------------
# Decomposer
# ---------------------------------------------------------------------------


class Decomposer:
    """Explode NormalizedControls into AtomicUnits.

    ``lookup`` may be None, in which case every control falls back.
    ``sources`` maps control id to the source Control so objective excerpts
    can be matched against the raw part tree.
    """

    def __init__(
        self,
        lookup: CrossReferenceLookup | None,
        *,
        revision: str | None = None,
        resolve_parameters: bool = False,
    ) -> None:
        self._lookup = lookup
        self._revision = revision
        self._resolve_parameters = resolve_parameters
        self._lookup_failed = lookup is None
        self.stats: dict[str, int] = {"controls": 0, "units": 0, "fallbacks": 0}

    @property
    def lookup_failed(self) -> bool:
        return self._lookup_failed

    def _lookup_for(self, control: NormalizedControl) -> list[CrossReference]:
        if self._lookup_failed or self._lookup is None:
            return []
        key = control_key_for_id(control.id)
        try:
            return self._lookup.for_control(key, self._revision)
        except CrossReferenceLookupError as exc:
            log.warning(
                "Cross-reference lookup failed (%s); emitting plain controls", exc
            )
            self._lookup_failed = True
            return []

    def objective_excerpt(
        self,
        xref: CrossReference,
        control: NormalizedControl,
        source: Control | None,
    ) -> list[Any] | None:
        """Objective subtree matching the reference's structural index.

        Falls back to the control's whole objective tree.
        """
        ref = xref.nist_reference(self._revision, control_key_for_id(control.id))
        if source is None or ref is None:
            return control.objectives
        tokens = index_tokens(ref.index)
        if not tokens:
            return control.objectives
        for objective in find_parts(source.parts, OBJECTIVE_PARTS):
            matched = find_part_by_index(objective, tokens)
            if matched is None:
                continue
            structure = strip_boilerplate(
                extract_structure(matched, source.params, self._resolve_parameters)
            )
            if not structure:
                continue
            return structure if isinstance(structure, list) else [structure]
        return control.objectives

    def units_for(
        self,
        control: NormalizedControl,
        source: Control | None = None,
    ) -> list[AtomicUnit]:
        self.stats["controls"] += 1
        xrefs = self._lookup_for(control)
        if not xrefs:
            self.stats["fallbacks"] += 1
            self.stats["units"] += 1
            return [fallback_unit(control)]

        label = source.prop("label") if source is not None else None
        units: list[AtomicUnit] = []
        for xref in xrefs:
            properties = dict(control.properties or {})
            properties["parent_control"] = control.id
            properties["xref_id"] = xref.id
            properties["control_label"] = label or control_key_for_id(control.id)
            units.append(
                AtomicUnit(
                    id=xref.id,
                    parent_control_id=control.id,
                    title=truncate_title(xref.definition) or control.title,
                    definition=xref.definition,
                    family=control.family,
                    sort_id=control.sort_id,
                    class_=control.class_,
                    statement=control.statement,
                    guidance=control.guidance,
                    objectives=self.objective_excerpt(xref, control, source),
                    assessment_methods=control.assessment_methods,
                    parameters=control.parameters,
                    properties=properties,
                    links=control.links,
                    source_catalog=control.source_catalog,
                    source_profile=control.source_profile,
                    xref_type=xref.type or None,
                    status=xref.status or None,
                )
            )
        self.stats["units"] += len(units)
        return units

    def decompose(
        self,
        records: Iterable[NormalizedControl],
        sources: Mapping[str, Control] | None = None,
    ) -> list[AtomicUnit]:
        """Decompose, deduplicate and order a run's records."""
        units: list[AtomicUnit] = []
        for record in records:
            source = sources.get(record.id) if sources else None
            units.extend(self.units_for(record, source))
        result = order_units(deduplicate_units(units))
        log.info(
            "Decomposed %d controls into %d units (%d fallback)",
            self.stats["controls"],
            len(result),
            self.stats["fallbacks"],
        )
        return result


# ---------------------------------------------------------------------------
# Dedup / ordering
# ---------------------------------------------------------------------------


def deduplicate_units(units: Sequence[AtomicUnit]) -> list[AtomicUnit]:
    """One unit per id: the one with the most populated fields (first on ties)."""
    best: dict[str, AtomicUnit] = {}
    for unit in units:
        existing = best.get(unit.id)
        if existing is None or unit.populated_field_count > existing.populated_field_count:
            best[unit.id] = unit
    return list(best.values())


def _unit_order_key(unit: AtomicUnit) -> tuple[int, int, str]:
    number = xref_number(unit.id)
    # Units without a numeric id sort after numbered ones.
    return (0 if number is not None else 1, number or 0, unit.id)


def order_units(units: Sequence[AtomicUnit]) -> list[AtomicUnit]:
    """Group by parent control (first-seen order); sort each group by xref number."""
    groups: dict[str, list[AtomicUnit]] = {}
    for unit in units:
        groups.setdefault(unit.parent_control_id, []).append(unit)
    ordered: list[AtomicUnit] = []
    for group in groups.values():
        ordered.extend(sorted(group, key=_unit_order_key))
    return ordered
