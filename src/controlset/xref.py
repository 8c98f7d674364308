"""Cross-reference (CCI) lookup database.

The DISA CCI list correlates NIST SP 800-53 controls to finer-grained,
individually assessable requirements. ``parse_cci_list`` reads the published
XML; ``build_xref_index`` persists it to DuckDB; ``XrefIndex`` opens that
file read-only for the decomposer. ``InMemoryXrefLookup`` serves tests and
small ad-hoc lists.

Tables:
    _schema_version  schema version tracking
    xref_meta        list version / build timestamp
    xref_items       one row per cross-reference id
    xref_references  published references of each item (creator, index...)
    control_mappings control key -> xref id, one row per NIST reference
"""
from __future__ import annotations

import importlib
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

import defusedxml.ElementTree as DefusedET

from controlset.errors import CrossReferenceLookupError

# Dynamic DuckDB import for pyright compatibility
_duckdb_mod = importlib.import_module("duckdb")

SCHEMA_VERSION = "1.0.0"

_CONTROL_KEY_RE = re.compile(r"^\s*([A-Z]{2,3}-\d+)(?:\s*\((\d+)\))?")
_CONTROL_ID_RE = re.compile(r"^([A-Za-z]{2,3})-0*(\d+)(?:\.0*(\d+))?$")
_INDEX_TOKEN_RE = re.compile(r"\([^)]*\)|\[[^\]]*\]|[^\s()\[\]]+")
_XREF_NUMBER_RE = re.compile(r"(\d+)")


@dataclass(frozen=True, slots=True)
class XrefReference:
    creator: str
    title: str
    version: str = ""
    location: str = ""
    index: str = ""

    @property
    def is_nist_800_53(self) -> bool:
        """SP 800-53 itself; the 800-53A assessment procedures do not count."""
        if self.creator != "NIST" or "800-53A" in self.title:
            return False
        return "SP 800-53" in self.title or "Special Publication 800-53" in self.title

    @property
    def revision_rank(self) -> int:
        return int(self.version) if self.version.isdigit() else 0


@dataclass(frozen=True, slots=True)
class CrossReference:
    id: str
    definition: str
    status: str = ""
    publish_date: str = ""
    contributor: str = ""
    type: str = ""
    references: tuple[XrefReference, ...] = ()

    def nist_reference(
        self, revision: str | None = None, control_key: str | None = None
    ) -> XrefReference | None:
        """NIST SP 800-53 reference for ``revision``, else the newest revision.

        With ``control_key`` only references indexing that control qualify.
        The first listed reference wins between equal revisions.
        """
        candidates = [
            ref
            for ref in self.references
            if ref.is_nist_800_53
            and (revision is None or ref.version == revision)
            and (control_key is None or control_key_for_index(ref.index) == control_key)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda ref: ref.revision_rank)

    def matches_revision(self, revision: str | None, control_key: str | None = None) -> bool:
        """True when a ``revision`` reference (indexing ``control_key``, if given) exists."""
        if revision is None:
            return True
        return self.nist_reference(revision, control_key) is not None


def xref_number(xref_id: str) -> int | None:
    m = _XREF_NUMBER_RE.search(xref_id)
    return int(m.group(1)) if m else None


# ---------------------------------------------------------------------------
# Control keys and structural indexes
# ---------------------------------------------------------------------------


def control_key_for_index(index: str) -> str | None:
    """``AC-2 (1) (a)`` -> ``AC-2(1)``; ``AC-1 a 1`` -> ``AC-1``."""
    m = _CONTROL_KEY_RE.match(index)
    if not m:
        return None
    base, enhancement = m.groups()
    return f"{base}({enhancement})" if enhancement else base


def control_key_for_id(control_id: str) -> str:
    """OSCAL control id -> cross-reference control key (``ac-2.1`` -> ``AC-2(1)``)."""
    m = _CONTROL_ID_RE.match(control_id)
    if not m:
        return control_id.upper()
    family, number, enhancement = m.groups()
    key = f"{family.upper()}-{int(number)}"
    return f"{key}({int(enhancement)})" if enhancement else key


def index_tokens(index: str) -> list[str]:
    """Structural tokens that follow the control key in a published index.

    ``AC-1 a 1`` -> ``["a", "1"]``; ``AC-2 (4) (b)`` -> ``["(b)"]``.
    """
    m = _CONTROL_KEY_RE.match(index)
    rest = index[m.end():] if m else index
    return _INDEX_TOKEN_RE.findall(rest)


# ---------------------------------------------------------------------------
# Lookup capability
# ---------------------------------------------------------------------------


class CrossReferenceLookup(Protocol):
    def for_control(
        self, control_key: str, revision: str | None = None
    ) -> list[CrossReference]: ...


class InMemoryXrefLookup:
    """Dict-backed lookup built from parsed items."""

    def __init__(self, items: Iterable[CrossReference]) -> None:
        self._items: dict[str, CrossReference] = {}
        self._mappings: dict[str, list[str]] = {}
        for item in items:
            self._items[item.id] = item
            for key in mapping_keys(item):
                self._mappings.setdefault(key, []).append(item.id)

    def __len__(self) -> int:
        return len(self._items)

    def get(self, xref_id: str) -> CrossReference | None:
        return self._items.get(xref_id)

    def for_control(
        self, control_key: str, revision: str | None = None
    ) -> list[CrossReference]:
        found = [self._items[i] for i in self._mappings.get(control_key.upper(), [])]
        return [x for x in found if x.matches_revision(revision, control_key.upper())]


def mapping_keys(item: CrossReference) -> list[str]:
    """Control keys an item maps to, one per SP 800-53 reference (duplicates kept)."""
    keys: list[str] = []
    for ref in item.references:
        if not ref.is_nist_800_53 or not ref.index:
            continue
        key = control_key_for_index(ref.index)
        if key:
            keys.append(key)
    return keys


# ---------------------------------------------------------------------------
# XML parsing
# ---------------------------------------------------------------------------


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child_text(elem: Any, name: str) -> str:
    for child in elem:
        if _local(child.tag) == name:
            return (child.text or "").strip()
    return ""


def parse_cci_list(xml_bytes: bytes) -> tuple[str, list[CrossReference]]:
    """Parse the DISA CCI list XML. Returns (list version, items)."""
    root = DefusedET.fromstring(xml_bytes)
    version = root.get("version") or ""
    items: list[CrossReference] = []
    for elem in root.iter():
        tag = _local(elem.tag)
        if tag == "metadata" and not version:
            version = _child_text(elem, "version")
        if tag != "cci_item":
            continue
        refs: list[XrefReference] = []
        for child in elem:
            if _local(child.tag) != "references":
                continue
            for ref in child:
                if _local(ref.tag) != "reference":
                    continue
                refs.append(
                    XrefReference(
                        creator=ref.get("creator", ""),
                        title=ref.get("title", ""),
                        version=ref.get("version", ""),
                        location=ref.get("location", ""),
                        index=ref.get("index", ""),
                    )
                )
        items.append(
            CrossReference(
                id=elem.get("id", ""),
                definition=_child_text(elem, "definition"),
                status=_child_text(elem, "status"),
                publish_date=_child_text(elem, "publishdate"),
                contributor=_child_text(elem, "contributor"),
                type=_child_text(elem, "type"),
                references=tuple(refs),
            )
        )
    return version or "unknown", items


# ---------------------------------------------------------------------------
# DuckDB persistence
# ---------------------------------------------------------------------------


def build_xref_index(
    items: Sequence[CrossReference],
    db_path: Path,
    *,
    version: str = "unknown",
) -> dict[str, int]:
    """Write items to a fresh DuckDB file. Returns row counts per table."""
    if db_path.exists():
        db_path.unlink()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = _duckdb_mod.connect(str(db_path))
    try:
        conn.execute(
            """
            CREATE TABLE _schema_version (
                table_name VARCHAR PRIMARY KEY,
                version VARCHAR NOT NULL,
                created_at TIMESTAMP
            )
            """
        )
        conn.execute(
            "INSERT INTO _schema_version VALUES ('xref', ?, current_timestamp)",
            [SCHEMA_VERSION],
        )
        conn.execute("CREATE TABLE xref_meta (key VARCHAR PRIMARY KEY, value VARCHAR)")
        conn.executemany(
            "INSERT INTO xref_meta VALUES (?, ?)",
            [["list_version", version], ["built_at", datetime.now(UTC).isoformat()]],
        )
        conn.execute(
            """
            CREATE TABLE xref_items (
                xref_id VARCHAR PRIMARY KEY,
                status VARCHAR,
                publish_date VARCHAR,
                contributor VARCHAR,
                definition VARCHAR,
                xref_type VARCHAR
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE xref_references (
                xref_id VARCHAR,
                ordinal INTEGER,
                creator VARCHAR,
                title VARCHAR,
                version VARCHAR,
                location VARCHAR,
                ref_index VARCHAR
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE control_mappings (
                control_key VARCHAR,
                xref_id VARCHAR,
                ordinal INTEGER
            )
            """
        )
        item_rows: list[list[Any]] = []
        ref_rows: list[list[Any]] = []
        mapping_rows: list[list[Any]] = []
        seen: set[str] = set()
        for item in items:
            if item.id in seen:
                continue
            seen.add(item.id)
            item_rows.append(
                [item.id, item.status, item.publish_date, item.contributor,
                 item.definition, item.type]
            )
            for i, ref in enumerate(item.references):
                ref_rows.append(
                    [item.id, i, ref.creator, ref.title, ref.version, ref.location, ref.index]
                )
            for key in mapping_keys(item):
                mapping_rows.append([key, item.id, len(mapping_rows)])
        if item_rows:
            conn.executemany("INSERT INTO xref_items VALUES (?, ?, ?, ?, ?, ?)", item_rows)
        if ref_rows:
            conn.executemany(
                "INSERT INTO xref_references VALUES (?, ?, ?, ?, ?, ?, ?)", ref_rows
            )
        if mapping_rows:
            conn.executemany("INSERT INTO control_mappings VALUES (?, ?, ?)", mapping_rows)
    finally:
        conn.close()
    return {
        "xref_items": len(item_rows),
        "xref_references": len(ref_rows),
        "control_mappings": len(mapping_rows),
    }


class XrefIndex:
    """Read-only DuckDB cross-reference lookup.

    Every failure to open or query the database surfaces as
    CrossReferenceLookupError so the decomposer can degrade gracefully.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        if not db_path.exists():
            raise CrossReferenceLookupError(
                f"Cross-reference database not found at {db_path}. "
                "Run scripts/build_xref_index.py to build it."
            )
        try:
            self._conn: Any = _duckdb_mod.connect(str(db_path), read_only=True)
        except _duckdb_mod.Error as exc:
            raise CrossReferenceLookupError(f"Failed to open {db_path}: {exc}") from exc
        actual = self._schema_version()
        if actual != SCHEMA_VERSION:
            self._conn.close()
            raise CrossReferenceLookupError(
                f"Schema version mismatch in {db_path}: expected {SCHEMA_VERSION}, got {actual}"
            )

    def _schema_version(self) -> str:
        try:
            row = self._conn.execute(
                "SELECT version FROM _schema_version WHERE table_name = 'xref'"
            ).fetchone()
        except _duckdb_mod.Error:
            return "unknown"
        return str(row[0]) if row else "unknown"

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> XrefIndex:
        return self

    def __exit__(self, *_args: object) -> None:
        self.close()

    @property
    def list_version(self) -> str:
        row = self._query(
            "SELECT value FROM xref_meta WHERE key = 'list_version'", []
        )
        return str(row[0][0]) if row else "unknown"

    def _query(self, sql: str, params: list[Any]) -> list[tuple[Any, ...]]:
        try:
            return self._conn.execute(sql, params).fetchall()
        except _duckdb_mod.Error as exc:
            raise CrossReferenceLookupError(f"Cross-reference query failed: {exc}") from exc

    def count(self) -> int:
        return int(self._query("SELECT count(*) FROM xref_items", [])[0][0])

    def _load_items(self, ids: Sequence[str]) -> dict[str, CrossReference]:
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        item_rows = self._query(
            "SELECT xref_id, status, publish_date, contributor, definition, xref_type "
            f"FROM xref_items WHERE xref_id IN ({placeholders})",
            list(ids),
        )
        ref_rows = self._query(
            "SELECT xref_id, creator, title, version, location, ref_index "
            f"FROM xref_references WHERE xref_id IN ({placeholders}) "
            "ORDER BY xref_id, ordinal",
            list(ids),
        )
        refs: dict[str, list[XrefReference]] = {}
        for xref_id, creator, title, version, location, ref_index in ref_rows:
            refs.setdefault(xref_id, []).append(
                XrefReference(
                    creator=creator or "",
                    title=title or "",
                    version=version or "",
                    location=location or "",
                    index=ref_index or "",
                )
            )
        return {
            row[0]: CrossReference(
                id=row[0],
                status=row[1] or "",
                publish_date=row[2] or "",
                contributor=row[3] or "",
                definition=row[4] or "",
                type=row[5] or "",
                references=tuple(refs.get(row[0], ())),
            )
            for row in item_rows
        }

    def get(self, xref_id: str) -> CrossReference | None:
        return self._load_items([xref_id]).get(xref_id)

    def for_control(
        self, control_key: str, revision: str | None = None
    ) -> list[CrossReference]:
        rows = self._query(
            "SELECT xref_id FROM control_mappings WHERE control_key = ? ORDER BY ordinal",
            [control_key.upper()],
        )
        ids = [str(r[0]) for r in rows]
        items = self._load_items(sorted(set(ids)))
        found = [items[i] for i in ids if i in items]
        return [x for x in found if x.matches_revision(revision, control_key.upper())]
