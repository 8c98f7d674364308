"""Profile resolution: imports -> selected, modified NormalizedControls.

Imports are processed strictly in declared order. Each import's catalog is
resolved, normalized, then filtered (include, then exclude). Results are
concatenated without cross-import deduplication. The modify phase then
applies set-parameters and alters in place.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from controlset.errors import ResolutionError
from controlset.normalizer import (
    NormalizedControl,
    NormalizeOptions,
    descendant_ids,
    normalize_catalog,
)
from controlset.oscal_types import Catalog, ImportSpec, Modify, Profile, Resource
from controlset.resolver import DocumentSource

log = logging.getLogger(__name__)


@dataclass(slots=True)
class ProfileResolution:
    controls: list[NormalizedControl]
    back_matter: dict[str, Resource] = field(default_factory=dict[str, Resource])
    catalogs: list[str] = field(default_factory=list[str])


def select_controls(
    controls: list[NormalizedControl],
    spec: ImportSpec,
    catalog: Catalog | None = None,
) -> list[NormalizedControl]:
    """Apply one import's include/exclude selection.

    Ids absent from the catalog simply match nothing.
    """
    selected = controls
    if spec.include_ids is not None and not spec.include_all:
        wanted = set(spec.include_ids)
        if spec.include_with_children and catalog is not None:
            children = descendant_ids(catalog)
            for control_id in spec.include_with_children:
                wanted.update(children.get(control_id, ()))
        selected = [c for c in controls if c.id in wanted]
    if spec.exclude_ids is not None:
        selected = [c for c in selected if c.id not in spec.exclude_ids]
    return selected


def apply_modifications(controls: list[NormalizedControl], modify: Modify) -> None:
    """Apply set-parameters and alters in place."""
    for setting in modify.set_parameters:
        for control in controls:
            for param in control.parameters or ():
                if param.id != setting.param_id:
                    continue
                if setting.values is not None:
                    param.values = list(setting.values)
                if setting.guidelines is not None:
                    param.guidelines = list(setting.guidelines)
                if setting.label is not None:
                    param.label = setting.label

    for alter in modify.alters:
        target = next((c for c in controls if c.id == alter.control_id), None)
        if target is None:
            log.debug("Alter target %s not in resolved controls", alter.control_id)
            continue
        if not alter.added_props:
            continue
        if target.properties is None:
            target.properties = {}
        for prop in alter.added_props:
            target.properties[prop.name] = prop.value


def resolve_profile(
    profile: Profile,
    resolver: DocumentSource,
    base_dir: Path,
    options: NormalizeOptions = NormalizeOptions(),
) -> ProfileResolution:
    """Resolve every import of a profile and apply its modify block."""
    resolution = ProfileResolution(controls=[], back_matter=dict(profile.back_matter))
    for spec in profile.imports:
        document = resolver.resolve(spec.href, base_dir, profile.back_matter)
        if not isinstance(document, Catalog):
            raise ResolutionError(
                f"Import {spec.href} resolved to a profile; profile-of-profile "
                "imports are not supported"
            )
        import_options = NormalizeOptions(
            resolve_parameters=options.resolve_parameters,
            source_catalog=document.metadata.title or spec.href,
            source_profile=options.source_profile,
        )
        normalized = normalize_catalog(document, import_options)
        selected = select_controls(normalized, spec, document)
        log.info(
            "Import %s: %d of %d controls selected", spec.href, len(selected), len(normalized)
        )
        resolution.controls.extend(selected)
        resolution.catalogs.append(spec.href)
        for uuid, resource in document.back_matter.items():
            resolution.back_matter.setdefault(uuid, resource)

    if profile.modify is not None:
        apply_modifications(resolution.controls, profile.modify)
    return resolution
