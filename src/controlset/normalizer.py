"""Catalog normalization: group/control tree -> flat NormalizedControl records.

Walks groups depth first (a group's own controls before its subgroups),
builds one record per control via the part extractor, and emits every
enhancement as an independent record right after its parent, tagged with
the parent's family. Withdrawn controls (and their enhancements) are skipped.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from controlset.oscal_types import Catalog, Control, Group, Link, Parameter, Part, Resource
from controlset.part_extractor import extract_structure, extract_text

log = logging.getLogger(__name__)

_SORT_ID_RE = re.compile(r"^([A-Za-z]+)-(\d+)(.*)$")

WITHDRAWN_STATUS = "Withdrawn"
UNKNOWN_FAMILY = "UNKNOWN"
MISC_FAMILY = "MISC"

STATEMENT_PARTS = frozenset({"statement"})
GUIDANCE_PARTS = frozenset({"guidance"})
OBJECTIVE_PARTS = frozenset({"objective", "assessment-objective"})
ASSESSMENT_PARTS = frozenset({"assessment", "assessment-method"})


# ---------------------------------------------------------------------------
# Output records
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class NormalizedParameter:
    id: str
    label: str | None = None
    usage: str | None = None
    values: list[str] | None = None
    guidelines: list[str] | None = None
    constraints: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.id}
        for key in ("label", "usage", "values", "guidelines", "constraints"):
            value = getattr(self, key)
            if value:
                out[key] = value
        return out


@dataclass(slots=True)
class NormalizedControl:
    """A flat, addressable control record.

    Mutable: the profile modify phase and link post-processing update
    records in place before they are written.
    """

    id: str
    title: str
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

    def to_dict(self) -> dict[str, Any]:
        """Serialize, omitting unset fields, keys in output order."""
        out: dict[str, Any] = {"id": self.id, "title": self.title}
        if self.class_ is not None:
            out["class"] = self.class_
        out["family"] = self.family
        out["sort_id"] = self.sort_id
        if self.statement:
            out["statement"] = self.statement
        if self.guidance:
            out["guidance"] = self.guidance
        if self.objectives:
            out["objectives"] = self.objectives
        if self.assessment_methods:
            out["assessment_methods"] = self.assessment_methods
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


@dataclass(frozen=True, slots=True)
class NormalizeOptions:
    resolve_parameters: bool = False
    source_catalog: str | None = None
    source_profile: str | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def sort_id(control_id: str) -> str:
    """Zero-pad the control number: ``AC-2.1`` -> ``AC-0002.1``.

    Ids that do not look like ``FAMILY-NUMBER...`` are returned unchanged.
    """
    m = _SORT_ID_RE.match(control_id)
    if not m:
        return control_id
    family, number, suffix = m.groups()
    return f"{family}-{number.zfill(4)}{suffix}"


def extract_properties(props: Sequence[Any]) -> dict[str, str] | None:
    """Collapse OSCAL props to a name -> value map (last wins)."""
    result = {p.name: p.value for p in props}
    return result or None


def normalize_parameter(param: Parameter) -> NormalizedParameter:
    return NormalizedParameter(
        id=param.id,
        label=param.label,
        usage=param.usage,
        values=list(param.values) or None,
        guidelines=list(param.guidelines) or None,
        constraints=list(param.constraints) or None,
    )


def is_withdrawn(control: Control) -> bool:
    return control.prop("status") == WITHDRAWN_STATUS


def _apply_parts(
    record: NormalizedControl,
    parts: Sequence[Part],
    parameters: Sequence[Parameter],
    resolve_parameters: bool,
) -> None:
    stack: list[Part] = list(reversed(parts))
    while stack:
        part = stack.pop()
        if part.name in STATEMENT_PARTS:
            record.statement = extract_text(part, parameters, resolve_parameters)
        elif part.name in GUIDANCE_PARTS:
            record.guidance = extract_text(part, parameters, resolve_parameters)
        elif part.name in OBJECTIVE_PARTS:
            structure = extract_structure(part, parameters, resolve_parameters)
            if structure is not None:
                if record.objectives is None:
                    record.objectives = []
                if isinstance(structure, list):
                    record.objectives.extend(structure)
                else:
                    record.objectives.append(structure)
        elif part.name in ASSESSMENT_PARTS:
            if record.assessment_methods is None:
                record.assessment_methods = []
            record.assessment_methods.append(extract_text(part, parameters, resolve_parameters))
        else:
            # Unknown kinds are transparent: look for known kinds beneath.
            stack.extend(reversed(part.parts))


def normalize_control(
    control: Control,
    family: str,
    options: NormalizeOptions = NormalizeOptions(),
) -> NormalizedControl:
    """Build one record for a single control (enhancements not included)."""
    record = NormalizedControl(
        id=control.id,
        title=control.title,
        family=family,
        sort_id=sort_id(control.id),
        class_=control.class_,
        properties=extract_properties(control.props),
        links=list(control.links) or None,
        source_catalog=options.source_catalog,
        source_profile=options.source_profile,
    )
    if control.params and not options.resolve_parameters:
        record.parameters = [normalize_parameter(p) for p in control.params]
    _apply_parts(record, control.parts, control.params, options.resolve_parameters)
    return record


def iter_controls(catalog: Catalog) -> Iterator[tuple[Control, str]]:
    """Yield (control, family) for every group-level control, in walk order.

    Only the controls directly under groups (and top-level catalog controls);
    enhancements are left to the caller.
    """
    stack: list[tuple[Group, str]] = [
        (g, g.id or UNKNOWN_FAMILY) for g in reversed(catalog.groups)
    ]
    while stack:
        group, family = stack.pop()
        for control in group.controls:
            yield control, family
        stack.extend((sub, sub.id or family) for sub in reversed(group.groups))
    for control in catalog.controls:
        yield control, MISC_FAMILY


def iter_control_tree(control: Control) -> Iterator[Control]:
    """Pre-order walk of a control and its enhancements, skipping withdrawn subtrees."""
    stack: list[Control] = [control]
    while stack:
        node = stack.pop()
        if is_withdrawn(node):
            log.info("Skipping withdrawn control: %s", node.id)
            continue
        yield node
        stack.extend(reversed(node.controls))


def normalize_catalog(
    catalog: Catalog,
    options: NormalizeOptions = NormalizeOptions(),
) -> list[NormalizedControl]:
    """Normalize every non-withdrawn control of a catalog into flat records."""
    records: list[NormalizedControl] = []
    for top, family in iter_controls(catalog):
        for control in iter_control_tree(top):
            records.append(normalize_control(control, family, options))
    return records


def descendant_ids(catalog: Catalog) -> dict[str, list[str]]:
    """Map each control id to the ids of all its enhancements (any depth)."""
    out: dict[str, list[str]] = {}
    for top, _family in iter_controls(catalog):
        # (control, ancestor ids)
        stack: list[tuple[Control, tuple[str, ...]]] = [(top, ())]
        while stack:
            node, ancestors = stack.pop()
            out.setdefault(node.id, [])
            for ancestor in ancestors:
                out[ancestor].append(node.id)
            stack.extend((child, (*ancestors, node.id)) for child in reversed(node.controls))
    return out


# ---------------------------------------------------------------------------
# Link post-processing
# ---------------------------------------------------------------------------


def remove_internal_links(records: Sequence[NormalizedControl]) -> None:
    """Drop ``#uuid`` back-matter links; remove the field when nothing is left."""
    for record in records:
        if not record.links:
            continue
        kept = [link for link in record.links if not link.href.startswith("#")]
        record.links = kept or None


def flatten_back_matter_references(
    records: Sequence[NormalizedControl],
    resources: Mapping[str, Resource],
) -> None:
    """Rewrite ``#uuid`` links to the resource's first link and citation text."""
    for record in records:
        if not record.links:
            continue
        rewritten: list[Link] = []
        for link in record.links:
            resource = resources.get(link.href[1:]) if link.href.startswith("#") else None
            if resource is None:
                rewritten.append(link)
                continue
            text = resource.citation or resource.title or link.text
            href = resource.rlinks[0].href if resource.rlinks else link.href
            rewritten.append(Link(href=href, rel=link.rel, media_type=link.media_type, text=text))
        record.links = rewritten
