"""Tests for the C/AL object parser and id range filtering."""

import pytest

from alcache.indexer.legacy_parser import (
    IdRange,
    filter_by_id_ranges,
    filter_to_id_ranges,
    is_id_in_ranges,
    parse_caption_ml,
    parse_legacy_object,
    reconstruct_legacy_object,
    split_documentation,
)

TABLE = """OBJECT Table 50000 Customer Ext
{
  OBJECT-PROPERTIES
  {
    Date=01.01.20;
    Time=12:00:00;
  }
  PROPERTIES
  {
    CaptionML=[ENU=Customer's Extension;
               DEU=Debitor Erweiterung];
    OnInsert=BEGIN
               TESTFIELD("No.");
             END;

    LookupPageID=Page50000;
  }
  FIELDS
  {
    { 10  ;   ;Name                ;Text50        ;CaptionML=ENU=Name }
    { 60000;  ;Custom Field        ;Code20        ;CaptionML=ENU=Custom Field }
  }
  KEYS
  {
    {    ;Name                                    ;Clustered=Yes }
  }
  FIELDGROUPS
  {
  }
  CODE
  {

    BEGIN
    {
      Customer extension documentation
    }
    END.
  }
}
"""

PAGE = """OBJECT Page 50001 Customer Ext Card
{
  OBJECT-PROPERTIES
  {
    Date=01.01.20;
  }
  PROPERTIES
  {
    SourceTable=Table18;
    PageType=Card;
    ActionList=ACTIONS
    {
      { 1       ;0   ;ActionContainer;
                      ActionContainerType=ActionItems }
      { 50010   ;1   ;Action    ;
                      CaptionML=ENU=Post }
    }
  }
  CONTROLS
  {
    { 1   ;0   ;Container ;
                ContainerType=ContentArea }
    { 50002;1  ;Field     ;
                SourceExpr="No." }
  }
  CODE
  {
    BEGIN
    END.
  }
}
"""


class TestParseLegacyObject:
    """Tests for section parsing."""

    def test_header_and_object_properties(self):
        obj = parse_legacy_object(TABLE)

        assert (obj.type, obj.id, obj.name) == ("Table", "50000", "Customer Ext")
        assert obj.is_table
        assert obj.object_properties["Date"] == "01.01.20"
        assert obj.object_properties["Time"] == "12:00:00"

    def test_properties_and_triggers(self):
        obj = parse_legacy_object(TABLE)

        assert obj.properties["LookupPageID"] == "Page50000"
        assert obj.properties["CaptionML"] == "[ENU=Customer's Extension;DEU=Debitor Erweiterung]"
        assert [trigger.name for trigger in obj.triggers] == ["OnInsert"]
        assert obj.triggers[0].code.startswith("BEGIN")
        assert obj.triggers[0].code.endswith("END;")

    def test_fields(self):
        obj = parse_legacy_object(TABLE)

        assert [(item.id, item.name, item.data_type) for item in obj.fields] == [
            (10, "Name", "Text50"),
            (60000, "Custom Field", "Code20"),
        ]
        assert obj.fields[1].properties == "CaptionML=ENU=Custom Field"
        assert "Clustered=Yes" in obj.keys_text

    def test_documentation_is_split_from_code(self):
        obj = parse_legacy_object(TABLE)

        assert obj.documentation == "Customer extension documentation"
        assert obj.code == "END."

    def test_page_controls_and_actions(self):
        obj = parse_legacy_object(PAGE)

        assert obj.is_page
        assert [(item.id, item.type) for item in obj.controls] == [(1, "Container"), (50002, "Field")]
        assert obj.controls[1].source_expr == '"No."'
        assert [(item.id, item.level) for item in obj.actions] == [(1, 0), (50010, 1)]
        assert obj.properties["PageType"] == "Card"
        assert "ActionContainerType" not in obj.properties

    def test_missing_header(self):
        with pytest.raises(ValueError):
            parse_legacy_object("table 18 Customer { }")


class TestIdRangeFiltering:
    """Tests for filtering and writing objects back out."""

    def test_table_keeps_only_fields_in_range(self):
        """Retained fields are written from their original text."""
        ranges = [IdRange(50000, 99999)]
        original = parse_legacy_object(TABLE)

        rebuilt = reconstruct_legacy_object(filter_by_id_ranges(original, ranges))

        assert original.fields[1].original_text in rebuilt
        assert original.fields[0].original_text not in rebuilt
        assert "Customer extension documentation" in rebuilt
        assert "OnInsert=BEGIN" in rebuilt
        assert "Clustered=Yes" in rebuilt
        assert rebuilt.startswith("OBJECT Table 50000 Customer Ext\n{\n")

        reparsed = parse_legacy_object(rebuilt)
        assert [item.id for item in reparsed.fields] == [60000]
        assert reparsed.documentation == "Customer extension documentation"

    def test_page_filters_controls_and_actions(self):
        rebuilt = filter_to_id_ranges(PAGE, [IdRange(50000, 59999)])

        assert "50002" in rebuilt
        assert "50010" in rebuilt
        assert "ContainerType=ContentArea" not in rebuilt
        assert "ActionContainerType=ActionItems" not in rebuilt
        assert "SourceTable=Table18" in rebuilt

        reparsed = parse_legacy_object(rebuilt)
        assert [item.id for item in reparsed.controls] == [50002]
        assert [item.id for item in reparsed.actions] == [50010]

    def test_filter_does_not_modify_input(self):
        original = parse_legacy_object(TABLE)
        filter_by_id_ranges(original, [IdRange(1, 5)])

        assert len(original.fields) == 2

    def test_no_ranges_returns_text_unchanged(self):
        assert filter_to_id_ranges(TABLE, []) == TABLE
        assert filter_to_id_ranges(TABLE, None) == TABLE

    def test_unparseable_text_returned_unchanged(self):
        text = "codeunit 50100 Modern { }"

        assert filter_to_id_ranges(text, [IdRange(1, 2)]) == text


class TestHelpers:
    """Tests for the small helpers."""

    def test_is_id_in_ranges(self):
        ranges = [IdRange(50000, 50099), IdRange(60000, 60000)]

        assert is_id_in_ranges(50000, ranges)
        assert is_id_in_ranges(60000, ranges)
        assert not is_id_in_ranges(50100, ranges)
        assert not is_id_in_ranges(None, ranges)
        assert not is_id_in_ranges("abc", ranges)
        assert is_id_in_ranges(1, [])
        assert is_id_in_ranges(1, None)

    def test_parse_caption_ml(self):
        captions = parse_caption_ml('[ENU=Customer\'s Card;DEU="Debitor Karte"]')

        assert captions == {"ENU": "Customer's Card", "DEU": "Debitor Karte"}
        assert parse_caption_ml("Plain") == {}
        assert parse_caption_ml("") == {}

    def test_split_documentation_without_block(self):
        code = "PROCEDURE Foo@1();\n    BEGIN\n    END;\n\n    BEGIN\n    END."

        assert split_documentation(code) == (code, "")
