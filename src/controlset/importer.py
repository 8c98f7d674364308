"""Import pipeline: OSCAL catalog/profile file -> control-set directory.

load -> normalize (catalog) or resolve (profile) -> link post-processing
-> optional cross-reference decomposition -> write.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from controlset.control_set import ControlRecord, build_metadata, write_control_set
from controlset.decomposer import ControlFramework, Decomposer, detect_framework
from controlset.errors import CrossReferenceLookupError
from controlset.document_io import load_document
from controlset.normalizer import (
    NormalizedControl,
    NormalizeOptions,
    flatten_back_matter_references,
    iter_control_tree,
    iter_controls,
    normalize_catalog,
    remove_internal_links,
)
from controlset.oscal_types import Catalog, Control, Resource
from controlset.profile_resolver import resolve_profile
from controlset.resolver import ReferenceResolver
from controlset.xref import CrossReferenceLookup, XrefIndex

log = logging.getLogger(__name__)

CACHE_DIR_ENV = "CONTROLSET_CACHE_DIR"
XREF_DB_ENV = "CONTROLSET_XREF_DB"
DEFAULT_CACHE_DIRNAME = ".oscal-cache"


@dataclass(frozen=True, slots=True)
class ImportOptions:
    overwrite: bool = False
    dry_run: bool = False
    include_links: bool = False
    flatten_references: bool = False
    resolve_parameters: bool = False
    cache_dir: Path | None = None
    use_xref: bool = True
    xref_db: Path | None = None
    revision: str | None = None
    timeout: float | None = None

    def resolved_cache_dir(self, input_path: Path) -> Path:
        if self.cache_dir is not None:
            return self.cache_dir
        env = os.environ.get(CACHE_DIR_ENV)
        if env:
            return Path(env)
        return input_path.parent / DEFAULT_CACHE_DIRNAME

    def resolved_xref_db(self) -> Path | None:
        if self.xref_db is not None:
            return self.xref_db
        env = os.environ.get(XREF_DB_ENV)
        return Path(env) if env else None


@dataclass(slots=True)
class ImportResult:
    source_type: str
    metadata: dict[str, Any]
    records: list[ControlRecord]
    written: list[Path] = field(default_factory=list[Path])
    framework: ControlFramework | None = None

    def summary(self) -> dict[str, Any]:
        return {
            "source_type": self.source_type,
            "title": self.metadata.get("title"),
            "records": len(self.records),
            "families": len(self.metadata.get("families", [])),
            "files": len(self.written),
            "framework": self.framework.id if self.framework else None,
        }


def source_controls(catalogs: list[Catalog]) -> dict[str, Control]:
    """Map control id -> source Control across catalogs (first wins)."""
    out: dict[str, Control] = {}
    for catalog in catalogs:
        for top, _family in iter_controls(catalog):
            for control in iter_control_tree(top):
                out.setdefault(control.id, control)
    return out


def open_xref_lookup(options: ImportOptions) -> CrossReferenceLookup | None:
    """Open the cross-reference DB, or None (with a warning) when unavailable."""
    db_path = options.resolved_xref_db()
    if db_path is None:
        log.warning(
            "No cross-reference database configured (--xref-db or %s); "
            "emitting plain controls",
            XREF_DB_ENV,
        )
        return None
    try:
        return XrefIndex(db_path)
    except CrossReferenceLookupError as exc:
        log.warning("%s; emitting plain controls", exc)
        return None


def import_document(
    path: Path,
    output_dir: Path,
    options: ImportOptions = ImportOptions(),
    *,
    resolver: ReferenceResolver | None = None,
    lookup: CrossReferenceLookup | None = None,
) -> ImportResult:
    """Import one catalog or profile into ``output_dir``.

    ``resolver`` and ``lookup`` may be injected; otherwise they are built
    from ``options``.
    """
    document = load_document(path)
    resolver = resolver or ReferenceResolver(
        options.resolved_cache_dir(path), timeout=options.timeout
    )

    records: list[NormalizedControl]
    back_matter: dict[str, Resource]
    catalogs: list[Catalog]
    if isinstance(document, Catalog):
        source_type = "catalog"
        log.info("Processing catalog: %s", document.metadata.title)
        records = normalize_catalog(
            document, NormalizeOptions(resolve_parameters=options.resolve_parameters)
        )
        back_matter = dict(document.back_matter)
        catalogs = [document]
    else:
        source_type = "profile"
        log.info("Processing profile: %s", document.metadata.title)
        resolution = resolve_profile(
            document,
            resolver,
            path.parent,
            NormalizeOptions(
                resolve_parameters=options.resolve_parameters,
                source_profile=document.metadata.title or path.name,
            ),
        )
        records = resolution.controls
        back_matter = resolution.back_matter
        # Memoized: no second read or fetch.
        catalogs = []
        for spec in document.imports:
            doc = resolver.resolve(spec.href, path.parent, document.back_matter)
            if isinstance(doc, Catalog):
                catalogs.append(doc)

    if options.flatten_references:
        flatten_back_matter_references(records, back_matter)
    if not options.include_links:
        remove_internal_links(records)

    framework = detect_framework(document.metadata, options.use_xref)
    output: list[ControlRecord] = list(records)
    if framework.xref_enabled:
        xref_lookup = lookup if lookup is not None else open_xref_lookup(options)
        decomposer = Decomposer(
            xref_lookup,
            revision=options.revision,
            resolve_parameters=options.resolve_parameters,
        )
        try:
            units = decomposer.decompose(records, source_controls(catalogs))
        finally:
            if lookup is None and isinstance(xref_lookup, XrefIndex):
                xref_lookup.close()
        if decomposer.lookup_failed:
            log.info("No cross-reference lookup; keeping %d plain controls", len(records))
            framework = ControlFramework(
                id=framework.id,
                name=framework.name,
                version=framework.version,
                default_granularity="control",
                xref_enabled=False,
                baseline=framework.baseline,
            )
        else:
            output = list(units)

    metadata = build_metadata(
        document.metadata,
        source_type,
        path.name,
        output,
        uuid=document.uuid,
        framework=framework,
    )
    written = write_control_set(
        metadata,
        output,
        output_dir,
        back_matter=back_matter,
        overwrite=options.overwrite,
        dry_run=options.dry_run,
    )
    log.info("Imported %d records from %s (%s)", len(output), path.name, source_type)
    return ImportResult(
        source_type=source_type,
        metadata=metadata,
        records=output,
        written=written,
        framework=framework,
    )
