"""Tests for object and procedure extraction."""

import json

from alcache.indexer.metadata_parser import MetadataParser, is_legacy_dialect
from alcache.indexer.models import ObjectType


class TestStructuredDocument:
    """Tests for SymbolReference.json parsing."""

    def test_reads_arrays_and_namespaces(self):
        document = {
            "Tables": [{"Id": 18, "Name": "Customer", "Fields": [{"Id": 1, "Name": "No."}]}],
            "Codeunits": [{"Id": 80, "Name": "Sales-Post"}],
            "Namespaces": [
                {
                    "Name": "Microsoft.Sales",
                    "PageExtensions": [{"Id": 50100, "Name": "CustCardExt", "TargetObject": "Customer Card"}],
                    "Namespaces": [{"EnumTypes": [{"Id": 5, "Name": "Sales Doc Type"}]}],
                }
            ],
        }
        records = MetadataParser().parse_from_structured_document(json.dumps(document), "a.app")
        by_name = {record.name: record for record in records}

        assert set(by_name) == {"Customer", "Sales-Post", "CustCardExt", "Sales Doc Type"}
        assert by_name["Customer"].type == ObjectType.TABLE
        assert by_name["Customer"].id == 18
        assert by_name["Customer"].metadata["Fields"][0]["Name"] == "No."
        assert by_name["CustCardExt"].type == ObjectType.PAGEEXTENSION
        assert by_name["CustCardExt"].metadata["TargetObject"] == "Customer Card"
        assert by_name["Sales Doc Type"].type == ObjectType.ENUM
        assert all(record.source_app == "a.app" for record in records)

    def test_byte_order_mark(self):
        text = "\ufeff" + json.dumps({"Reports": [{"Id": 1, "Name": "Aged"}]})
        records = MetadataParser().parse_from_structured_document(text)

        assert [record.name for record in records] == ["Aged"]

    def test_trailing_garbage_falls_back_to_json_span(self):
        text = "prefix " + json.dumps({"Queries": [{"Id": 7, "Name": "Q"}]}) + " \x00\x00"
        records = MetadataParser().parse_from_structured_document(text)

        assert [record.type for record in records] == [ObjectType.QUERY]

    def test_undecodable_document(self):
        assert MetadataParser().parse_from_structured_document("not json") == []
        assert MetadataParser().parse_from_structured_document("{broken") == []

    def test_entries_without_name_are_skipped(self):
        text = json.dumps({"Tables": [{"Id": 1}, "junk", {"Id": "x", "Name": "T"}]})
        records = MetadataParser().parse_from_structured_document(text)

        assert len(records) == 1
        assert records[0].id is None


class TestSourceText:
    """Tests for AL declaration parsing."""

    def test_quoted_name(self):
        record = MetadataParser().parse_from_source_text('page 21 "Customer Card"\n{\n}\n', "x.app")

        assert record.name == "Customer Card"
        assert record.type == ObjectType.PAGE
        assert record.id == 21
        assert record.source_app == "x.app"

    def test_extension_with_target(self):
        text = 'tableextension 50100 CustExt extends Customer\n{\n}\n'
        record = MetadataParser().parse_from_source_text(text)

        assert record.type == ObjectType.TABLEEXTENSION
        assert record.name == "CustExt"
        assert record.metadata == {"extends": "Customer"}

    def test_declaration_without_id(self):
        record = MetadataParser().parse_object_definition("interface IPrinter\n{\n}\n")

        assert record.type == ObjectType.INTERFACE
        assert record.id is None

    def test_leading_comments(self):
        text = "// Copyright\nnamespace Contoso.Sales;\n\ncodeunit 50100 \"Sales Helper\"\n{\n}\n"
        record = MetadataParser().parse_from_source_text(text)

        assert record.name == "Sales Helper"
        assert record.type == ObjectType.CODEUNIT

    def test_legacy_text_is_not_parsed(self):
        text = "OBJECT Table 18 Customer\n{\n  OBJECT-PROPERTIES\n  {\n  }\n}\n"

        assert is_legacy_dialect(text)
        assert MetadataParser.is_legacy_dialect(text)
        assert MetadataParser().parse_from_source_text(text) is None

    def test_no_declaration(self):
        assert MetadataParser().parse_from_source_text("just some text") is None


class TestProcedures:
    """Tests for procedure header extraction."""

    def test_single_line_headers(self):
        text = """codeunit 50100 Helper
{
    procedure Post(var SalesHeader: Record "Sales Header"; Preview: Boolean): Boolean
    begin
    end;

    local procedure Hidden()
    begin
    end;

    [EventSubscriber(ObjectType::Codeunit, 80, 'OnAfterPost', '', false, false)]
    procedure OnAfterPost()
    begin
    end;

    internal procedure Count() Result: Integer
    begin
    end;
}
"""
        procedures = MetadataParser().extract_procedures(text, ObjectType.CODEUNIT, "Helper")

        assert [item.name for item in procedures] == ["Post", "OnAfterPost", "Count"]
        assert procedures[0].parameters == ['var SalesHeader: Record "Sales Header"', "Preview: Boolean"]
        assert procedures[0].return_type == "Boolean"
        assert procedures[1].parameters == []
        assert procedures[1].return_type is None
        assert procedures[2].return_type == "Integer"

    def test_multi_line_header(self):
        text = """    procedure Calculate(
        Amount: Decimal;
        Rate: Decimal): Decimal
    begin
    end;
"""
        procedures = MetadataParser().extract_procedures(text, "Codeunit", "Calc")

        assert len(procedures) == 1
        assert procedures[0].parameters == ["Amount: Decimal", "Rate: Decimal"]
        assert procedures[0].return_type == "Decimal"

    def test_unclosed_header_ends_at_next_procedure(self):
        """A header still open when the next one starts is emitted on its own."""
        text = """    procedure First(A: Integer;
        B: Text
    procedure Second(C: Code[20])
    begin
    end;
"""
        procedures = MetadataParser().extract_procedures(text, "Codeunit", "X")

        assert [item.name for item in procedures] == ["First", "Second"]
        assert procedures[0].parameters == ["A: Integer", "B: Text"]
        assert procedures[1].parameters == ["C: Code[20]"]

    def test_unclosed_header_at_end_of_text(self):
        procedures = MetadataParser().extract_procedures("procedure Last(A: Integer;", "Codeunit", "X")

        assert [item.name for item in procedures] == ["Last"]
        assert procedures[0].parameters == ["A: Integer"]

    def test_trailing_comment_is_not_a_parameter(self):
        text = "    procedure Post(Amount: Decimal) // see (docs)\n    begin\n    end;\n"

        procedures = MetadataParser().extract_procedures(text, "Codeunit", "X")

        assert procedures[0].parameters == ["Amount: Decimal"]
        assert procedures[0].return_type is None

    def test_comments_inside_multi_line_header(self):
        text = """    procedure Calculate(
        Amount: Decimal; // net (excl. VAT)
        /* legacy: Factor: Decimal; */ Rate: Decimal): Decimal // rounded
    begin
    end;
    // procedure Disabled()
"""

        procedures = MetadataParser().extract_procedures(text, "Codeunit", "Calc")

        assert [item.name for item in procedures] == ["Calculate"]
        assert procedures[0].parameters == ["Amount: Decimal", "Rate: Decimal"]
        assert procedures[0].return_type == "Decimal"


class TestSourceFiles:
    """Tests for batch parsing of source files."""

    def test_parse_source_files(self, tmp_path):
        (tmp_path / "Helper.Codeunit.al").write_text(
            "codeunit 50100 Helper\n{\n    procedure Run()\n    begin\n    end;\n}\n", encoding="utf-8"
        )
        (tmp_path / "notes.al").write_text("nothing declared here", encoding="utf-8")

        result = MetadataParser().parse_source_files(
            [tmp_path / "Helper.Codeunit.al", tmp_path / "notes.al", tmp_path / "missing.al"], "h.app"
        )

        assert [record.name for record in result.objects] == ["Helper"]
        assert [item.name for item in result.procedures[("Codeunit", "Helper")]] == ["Run"]
        assert len(result.warnings) == 1
        assert "missing.al" in result.warnings[0]

    def test_find_symbol_reference(self, tmp_path):
        (tmp_path / "nested").mkdir()
        (tmp_path / "nested" / "symbolreference.json").write_text("{}")

        found = MetadataParser.find_symbol_reference(tmp_path)
        assert found == tmp_path / "nested" / "symbolreference.json"
        assert MetadataParser.find_symbol_reference(tmp_path / "nested" / "none") is None
