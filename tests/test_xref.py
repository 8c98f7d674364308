"""Tests for controlset.xref (CCI list parsing and the DuckDB index)."""
from __future__ import annotations

from pathlib import Path

import duckdb
import pytest

from controlset.errors import CrossReferenceLookupError
from controlset.xref import (
    SCHEMA_VERSION,
    CrossReference,
    InMemoryXrefLookup,
    XrefIndex,
    XrefReference,
    build_xref_index,
    control_key_for_id,
    control_key_for_index,
    index_tokens,
    mapping_keys,
    parse_cci_list,
    xref_number,
)

CCI_XML = b"""<?xml version="1.0" encoding="utf-8"?>
<cci_list xmlns="http://iase.disa.mil/cci">
  <metadata>
    <version>2024-01-30</version>
    <publishdate>2024-01-30</publishdate>
  </metadata>
  <cci_items>
    <cci_item id="CCI-000001">
      <status>draft</status>
      <publishdate>2009-05-13</publishdate>
      <contributor>DISA FSO</contributor>
      <definition>The organization develops an access control policy.</definition>
      <type>policy</type>
      <references>
        <reference creator="NIST" title="NIST SP 800-53" version="3" location="http://x" index="AC-1 a" />
        <reference creator="NIST" title="NIST SP 800-53 Revision 4" version="4" location="http://x" index="AC-1 a 1" />
        <reference creator="NIST" title="NIST SP 800-53 Revision 5" version="5" location="http://x" index="AC-1 a 1 (a)" />
      </references>
    </cci_item>
    <cci_item id="CCI-000015">
      <status>draft</status>
      <definition>The organization employs automated mechanisms.</definition>
      <type>technical</type>
      <references>
        <reference creator="NIST" title="NIST SP 800-53 Revision 4" version="4" location="http://x" index="AC-2 (1)" />
      </references>
    </cci_item>
    <cci_item id="CCI-009999">
      <status>draft</status>
      <definition>Not a NIST mapping.</definition>
      <references>
        <reference creator="DoD" title="Other" version="1" location="" index="X-1" />
      </references>
    </cci_item>
  </cci_items>
</cci_list>
"""


def _item(xref_id: str, index: str, version: str = "5", definition: str = "def") -> CrossReference:
    return CrossReference(
        id=xref_id,
        definition=definition,
        references=(
            XrefReference(
                creator="NIST", title="NIST SP 800-53 Revision 5", version=version, index=index
            ),
        ),
    )


class TestKeys:
    @pytest.mark.parametrize(
        ("index", "expected"),
        [
            ("AC-1 a 1", "AC-1"),
            ("AC-2 (1)", "AC-2(1)"),
            ("AC-2 (1) (a)", "AC-2(1)"),
            ("SC-7(3)", "SC-7(3)"),
            ("PM-10", "PM-10"),
            ("junk", None),
        ],
    )
    def test_control_key_for_index(self, index: str, expected: str | None) -> None:
        assert control_key_for_index(index) == expected

    @pytest.mark.parametrize(
        ("control_id", "expected"),
        [("ac-1", "AC-1"), ("ac-2.1", "AC-2(1)"), ("sc-07.03", "SC-7(3)"), ("weird_id", "WEIRD_ID")],
    )
    def test_control_key_for_id(self, control_id: str, expected: str) -> None:
        assert control_key_for_id(control_id) == expected

    def test_index_tokens(self) -> None:
        assert index_tokens("AC-1 a 1") == ["a", "1"]
        assert index_tokens("AC-2 (4) (b)") == ["(b)"]
        assert index_tokens("AC-3") == []

    def test_xref_number(self) -> None:
        assert xref_number("CCI-000015") == 15
        assert xref_number("ac-1") == 1
        assert xref_number("none") is None


class TestParseCciList:
    def test_items_and_version(self) -> None:
        version, items = parse_cci_list(CCI_XML)
        assert version == "2024-01-30"
        assert [i.id for i in items] == ["CCI-000001", "CCI-000015", "CCI-009999"]
        first = items[0]
        assert first.definition.startswith("The organization develops")
        assert first.type == "policy"
        assert first.contributor == "DISA FSO"
        assert len(first.references) == 3
        assert first.references[1].index == "AC-1 a 1"

    def test_revision_filter(self) -> None:
        _, items = parse_cci_list(CCI_XML)
        first = items[0]
        assert first.matches_revision("4")
        assert first.matches_revision("5")
        assert not first.matches_revision("2")
        assert first.matches_revision(None)
        assert first.nist_reference("5").index == "AC-1 a 1 (a)"

    def test_mapping_keys_one_per_reference(self) -> None:
        _, items = parse_cci_list(CCI_XML)
        assert mapping_keys(items[0]) == ["AC-1", "AC-1", "AC-1"]
        assert mapping_keys(items[2]) == []


MULTI_REF = CrossReference(
    id="CCI-000001",
    definition="def",
    references=(
        XrefReference(creator="NIST", title="NIST SP 800-53", version="3", index="AC-1 a"),
        XrefReference(
            creator="NIST", title="NIST SP 800-53A", version="1", index="AC-1.1 (ii)"
        ),
        XrefReference(
            creator="NIST", title="NIST SP 800-53 Revision 4", version="4", index="AC-1 a 1"
        ),
    ),
)


class TestNistReference:
    def test_assessment_procedures_excluded(self) -> None:
        ref = XrefReference(creator="NIST", title="NIST SP 800-53A", version="1", index="AC-1.1 (ii)")
        assert not ref.is_nist_800_53
        assert mapping_keys(MULTI_REF) == ["AC-1", "AC-1"]

    def test_newest_revision_without_filter(self) -> None:
        assert MULTI_REF.nist_reference().index == "AC-1 a 1"

    def test_explicit_revision(self) -> None:
        assert MULTI_REF.nist_reference("3").index == "AC-1 a"
        assert MULTI_REF.nist_reference("1") is None

    def test_control_key_restricts(self) -> None:
        item = CrossReference(
            id="CCI-000100",
            definition="def",
            references=(
                XrefReference(creator="NIST", title="NIST SP 800-53", version="3", index="AC-2 b"),
                XrefReference(
                    creator="NIST", title="NIST SP 800-53 Revision 5", version="5", index="AC-3 a"
                ),
            ),
        )
        assert item.nist_reference(control_key="AC-2").index == "AC-2 b"
        assert item.matches_revision("5", "AC-3")
        assert not item.matches_revision("5", "AC-2")


class TestInMemoryLookup:
    def test_for_control_with_revision(self) -> None:
        _, items = parse_cci_list(CCI_XML)
        lookup = InMemoryXrefLookup(items)
        assert [x.id for x in lookup.for_control("AC-2(1)")] == ["CCI-000015"]
        assert lookup.for_control("AC-2(1)", "5") == []
        # Duplicated mapping rows are expected; the decomposer deduplicates.
        assert [x.id for x in lookup.for_control("ac-1", "5")] == ["CCI-000001"] * 3


class TestXrefIndex:
    def test_build_and_query(self, tmp_path: Path) -> None:
        db = tmp_path / "xref.duckdb"
        version, items = parse_cci_list(CCI_XML)
        counts = build_xref_index(items, db, version=version)
        assert counts == {"xref_items": 3, "xref_references": 5, "control_mappings": 4}

        with XrefIndex(db) as index:
            assert index.count() == 3
            assert index.list_version == "2024-01-30"
            found = index.for_control("AC-2(1)", "4")
            assert [x.id for x in found] == ["CCI-000015"]
            assert found[0].references[0].index == "AC-2 (1)"
            assert index.for_control("AC-2(1)", "5") == []
            assert index.get("CCI-000001").type == "policy"
            assert index.get("CCI-404") is None

    def test_rebuild_replaces_file(self, tmp_path: Path) -> None:
        db = tmp_path / "xref.duckdb"
        build_xref_index([_item("CCI-000001", "AC-1 a")], db)
        build_xref_index([_item("CCI-000002", "AC-1 b")], db)
        with XrefIndex(db) as index:
            assert [x.id for x in index.for_control("AC-1")] == ["CCI-000002"]

    def test_missing_db(self, tmp_path: Path) -> None:
        with pytest.raises(CrossReferenceLookupError, match="not found"):
            XrefIndex(tmp_path / "missing.duckdb")

    def test_schema_mismatch(self, tmp_path: Path) -> None:
        db = tmp_path / "old.duckdb"
        con = duckdb.connect(str(db))
        con.execute(
            "CREATE TABLE _schema_version (table_name VARCHAR PRIMARY KEY, "
            "version VARCHAR NOT NULL, created_at TIMESTAMP)"
        )
        con.execute("INSERT INTO _schema_version VALUES ('xref', '0.0.1', current_timestamp)")
        con.close()
        with pytest.raises(CrossReferenceLookupError, match="Schema version mismatch"):
            XrefIndex(db)

    def test_missing_schema_table(self, tmp_path: Path) -> None:
        db = tmp_path / "empty.duckdb"
        duckdb.connect(str(db)).close()
        with pytest.raises(CrossReferenceLookupError, match=SCHEMA_VERSION):
            XrefIndex(db)
