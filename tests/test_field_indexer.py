"""Tests for incremental table-field and page-source indexing."""

import os

from alcache.indexer.field_indexer import (
    FieldIndexer,
    extract_contribution,
    extract_page_source,
    extract_table_fields,
)
from alcache.indexer.models import FieldIndexSnapshot

CUSTOMER_TABLE = """table 18 Customer
{
    fields
    {
        field(1; "No."; Code[20]) { }
        field(2; Name; Text[100])
        {
            Caption = 'Name';
        }
        // field(3; Obsolete; Integer) { }
    }

    keys
    {
        key(PK; "No.") { }
    }
}
"""

CUSTOMER_EXTENSION = """tableextension 50100 "Customer Ext" extends Customer
{
    fields
    {
        field(50100; "Loyalty Points"; Integer) { }
        modify(Name)
        {
            Caption = 'Full Name';
        }
    }
}
"""

CUSTOMER_CARD = """page 21 "Customer Card"
{
    PageType = Card;
    // SourceTable = Vendor;
    SourceTable = Customer;
}
"""


def write(path, text, mtime=None):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return str(path.resolve())


class TestExtraction:
    """Tests for per-file extraction."""

    def test_table_fields(self):
        assert extract_table_fields(CUSTOMER_TABLE) == ("Customer", ["No.", "Name"])

    def test_table_extension_uses_base_table(self):
        """Only field() entries count; modify() does not add a field."""
        assert extract_table_fields(CUSTOMER_EXTENSION) == ("Customer", ["Loyalty Points"])

    def test_table_without_fields_block(self):
        assert extract_table_fields("table 50 Empty\n{\n}\n") == ("Empty", [])

    def test_not_a_table(self):
        assert extract_table_fields(CUSTOMER_CARD) is None

    def test_page_source_skips_comments(self):
        assert extract_page_source(CUSTOMER_CARD) == ("Customer Card", "Customer")

    def test_page_without_source_table(self):
        assert extract_page_source("page 50 Dashboard\n{\n}\n") == ("Dashboard", None)

    def test_contribution(self):
        contribution = extract_contribution(CUSTOMER_TABLE)

        assert contribution.table_name == "Customer"
        assert contribution.page_name is None


class TestUpdateIndex:
    """Tests for incremental scans over a source tree."""

    def test_fields_are_unioned_across_extensions(self, tmp_path):
        write(tmp_path / "Base" / "24.0" / "Customer.Table.al", CUSTOMER_TABLE)
        write(tmp_path / "Ext" / "1.0" / "CustomerExt.TableExt.al", CUSTOMER_EXTENSION)
        write(tmp_path / "Base" / "24.0" / "CustomerCard.Page.al", CUSTOMER_CARD)

        snapshot = FieldIndexer().update_index(tmp_path)

        assert snapshot.table_fields["Customer"] == ["Loyalty Points", "Name", "No."]
        assert snapshot.page_sources["Customer Card"] == "Customer"
        assert len(snapshot.reparsed) == 3
        assert snapshot.removed == []

    def test_unchanged_files_are_not_reparsed(self, tmp_path):
        table = write(tmp_path / "Customer.Table.al", CUSTOMER_TABLE, mtime=1_000_000)
        extension = write(tmp_path / "CustomerExt.TableExt.al", CUSTOMER_EXTENSION, mtime=1_000_000)
        indexer = FieldIndexer()

        first = indexer.update_index(tmp_path)
        second = indexer.update_index(tmp_path, first)

        assert sorted(first.reparsed) == sorted([table, extension])
        assert second.reparsed == []
        assert second.table_fields == first.table_fields

        write(tmp_path / "CustomerExt.TableExt.al", CUSTOMER_EXTENSION, mtime=2_000_000)
        third = indexer.update_index(tmp_path, second)

        assert third.reparsed == [extension]
        assert third.watermarks[extension] == 2_000_000

    def test_deleted_file_is_retracted(self, tmp_path):
        write(tmp_path / "Customer.Table.al", CUSTOMER_TABLE)
        extension = write(tmp_path / "CustomerExt.TableExt.al", CUSTOMER_EXTENSION)
        page = write(tmp_path / "CustomerCard.Page.al", CUSTOMER_CARD)
        indexer = FieldIndexer()
        first = indexer.update_index(tmp_path)

        os.remove(extension)
        os.remove(page)
        second = indexer.update_index(tmp_path, first)

        assert second.table_fields["Customer"] == ["Name", "No."]
        assert "Customer Card" not in second.page_sources
        assert sorted(second.removed) == sorted([extension, page])
        assert extension not in second.watermarks
        assert extension not in second.contributions

    def test_changed_file_drops_old_fields(self, tmp_path):
        write(tmp_path / "Customer.Table.al", CUSTOMER_TABLE, mtime=1_000_000)
        indexer = FieldIndexer()
        first = indexer.update_index(tmp_path)

        write(
            tmp_path / "Customer.Table.al",
            CUSTOMER_TABLE.replace('field(2; Name; Text[100])', 'field(2; "Search Name"; Code[100])'),
            mtime=2_000_000,
        )
        second = indexer.update_index(tmp_path, first)

        assert second.table_fields["Customer"] == ["No.", "Search Name"]

    def test_previous_snapshot_is_not_modified(self, tmp_path):
        write(tmp_path / "Customer.Table.al", CUSTOMER_TABLE)
        previous = FieldIndexSnapshot(table_fields={"Vendor": ["No."]}, watermarks={"/gone.al": 1.0})

        snapshot = FieldIndexer().update_index(tmp_path, previous)

        assert previous.table_fields == {"Vendor": ["No."]}
        assert previous.watermarks == {"/gone.al": 1.0}
        assert snapshot.removed == ["/gone.al"]
        assert snapshot.table_fields["Vendor"] == ["No."]

    def test_excluded_directories(self, tmp_path):
        write(tmp_path / "Mine" / "1.0" / "Customer.Table.al", CUSTOMER_TABLE)
        write(tmp_path / "Other" / "1.0" / "CustomerExt.TableExt.al", CUSTOMER_EXTENSION)

        snapshot = FieldIndexer().update_index(tmp_path, exclude_dirs=[tmp_path / "Mine"])

        assert snapshot.table_fields == {"Customer": ["Loyalty Points"]}

    def test_missing_source_root(self, tmp_path):
        snapshot = FieldIndexer().update_index(tmp_path / "missing")

        assert snapshot.table_fields == {}
        assert snapshot.reparsed == []


class TestSingleFileUpdates:
    """Tests for applying one file at a time."""

    def test_update_and_remove_file(self, tmp_path):
        indexer = FieldIndexer()
        snapshot = FieldIndexSnapshot()
        path = tmp_path / "CustomerExt.TableExt.al"

        indexer.update_for_file(snapshot, path, CUSTOMER_EXTENSION, mtime=5.0)
        assert snapshot.table_fields["Customer"] == ["Loyalty Points"]
        assert snapshot.watermarks[str(path)] == 5.0

        indexer.remove_file(snapshot, path)
        assert "Customer" not in snapshot.table_fields
        assert snapshot.watermarks == {}

    def test_snapshot_message_round_trip(self, tmp_path):
        snapshot = FieldIndexer().update_for_file(FieldIndexSnapshot(), tmp_path / "c.al", CUSTOMER_CARD)
        restored = FieldIndexSnapshot.from_message(snapshot.to_message())

        assert restored.page_sources == {"Customer Card": "Customer"}
        assert restored.contributions[str(tmp_path / "c.al")].source_table == "Customer"
