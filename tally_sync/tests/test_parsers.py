"""
Tests for response parsing.

Covers XML helpers, the delimited-field tokenizer and shape classification
with record extraction for every recognized layout.
"""
import pytest
from lxml import etree

from tally_sync.models import Category, FieldSpec, TableSpec
from tally_sync.parsers import (
    NULL_PLACEHOLDER,
    ResponseShape,
    classify_response,
    extract_records,
    normalize,
    parse_delimited,
    process_tdl_output,
    sanitize_xml,
    tally_date_to_iso,
)
from tally_sync.parsers.base import flatten_element
from tally_sync.tests.helpers import envelope


GROUP_MESSAGE = """
<ENVELOPE>
    <HEADER>
        <VERSION>1</VERSION>
        <STATUS>1</STATUS>
    </HEADER>
    <BODY>
        <DATA>
            <COLLECTION>
                <GROUP NAME="Test Group" GUID="test-guid-123">
                    <ALTERID>1</ALTERID>
                    <PARENT>Primary</PARENT>
                </GROUP>
                <GROUP NAME="Other" GUID="test-guid-456">
                    <PARENT>Test Group</PARENT>
                </GROUP>
            </COLLECTION>
        </DATA>
    </BODY>
</ENVELOPE>
"""

VOUCHER_MESSAGE = """
<ENVELOPE>
  <BODY>
    <DATA>
      <TALLYMESSAGE>
        <VOUCHER VCHTYPE="Sales">
          <GUID>v1</GUID>
          <DATE>20240405</DATE>
          <VOUCHERTYPENAME>Sales</VOUCHERTYPENAME>
          <ALLLEDGERENTRIES.LIST>
            <LEDGERNAME>Cash</LEDGERNAME>
            <AMOUNT>-100.00</AMOUNT>
          </ALLLEDGERENTRIES.LIST>
          <ALLLEDGERENTRIES.LIST>
            <LEDGERNAME>Sales</LEDGERNAME>
            <AMOUNT>100.00</AMOUNT>
          </ALLLEDGERENTRIES.LIST>
        </VOUCHER>
      </TALLYMESSAGE>
    </DATA>
  </BODY>
</ENVELOPE>
"""


def _summary(names, rates):
    parts = ["<ENVELOPE>"]
    for i, name in enumerate(names):
        parts.append(f"<DSPACCNAME><DSPDISPNAME>{name}</DSPDISPNAME></DSPACCNAME>")
        if i < len(rates):
            parts.append(
                "<DSPSTKINFO><DSPSTKCL>"
                f"<DSPCLQTY>10 Nos</DSPCLQTY><DSPCLRATE>{rates[i]}</DSPCLRATE>"
                "<DSPCLAMTA>50.00</DSPCLAMTA>"
                "</DSPSTKCL></DSPSTKINFO>"
            )
    parts.append("</ENVELOPE>")
    return "".join(parts)


class TestBaseParsers:
    """Tests for base parsing utilities."""

    def test_sanitize_xml_removes_control_chars(self):
        """Test that control characters are removed."""
        result = sanitize_xml("test\x00\x01\x02value")
        assert result == "testvalue"

    def test_sanitize_xml_fixes_ampersands(self):
        """Test that unescaped ampersands are fixed."""
        result = sanitize_xml("<name>A & B &amp; C</name>")
        assert result == "<name>A &amp; B &amp; C</name>"

    def test_sanitize_xml_drops_control_char_references(self):
        assert sanitize_xml("<A>x&#4;y</A>") == "<A>xy</A>"

    def test_normalize_collapses_whitespace(self):
        assert normalize("  Sundry \n\t Debtors ") == "Sundry Debtors"

    def test_normalize_is_idempotent(self):
        once = normalize(" a \x00\x01 b ")
        assert normalize(once) == once

    def test_normalize_keeps_none(self):
        assert normalize(None) is None

    def test_tally_date_to_iso_formats(self):
        assert tally_date_to_iso("20240401") == "2024-04-01"
        assert tally_date_to_iso("1-Apr-2024") == "2024-04-01"
        assert tally_date_to_iso("1-Apr-24") == "2024-04-01"
        assert tally_date_to_iso("not a date") is None
        assert tally_date_to_iso("") is None

    def test_flatten_element_text_wins_over_attribute(self):
        """Element text is preferred when Tally sends both forms."""
        node = etree.fromstring('<GROUP NAME="Attr"><NAME>Elem</NAME></GROUP>')
        assert flatten_element(node)["NAME"] == "Elem"

    def test_flatten_element_empty_text_keeps_attribute(self):
        node = etree.fromstring('<GROUP NAME="Attr"><NAME></NAME></GROUP>')
        assert flatten_element(node)["NAME"] == "Attr"


class TestDelimited:
    """Tests for the delimited-field tokenizer."""

    def test_process_tdl_output_rows_and_columns(self):
        text = process_tdl_output(envelope([["g1", "Assets"], ["g2", "Liabilities"]]))
        assert text == "\ng1\tAssets\ng2\tLiabilities"

    def test_process_tdl_output_strips_blank_fields(self):
        text = process_tdl_output(envelope([["v1", "Cash"]], blank=True))
        assert text == "\nv1\tCash"

    def test_process_tdl_output_unescapes_entities(self):
        text = process_tdl_output("<ENVELOPE><F01>g1</F01><F02>A &amp; B</F02></ENVELOPE>")
        assert text == "\ng1\tA & B"

    def test_process_tdl_output_keeps_null_placeholder(self):
        text = process_tdl_output("<ENVELOPE><F01>g1</F01><F02>&#241;</F02></ENVELOPE>")
        assert text == f"\ng1\t{NULL_PLACEHOLDER}"

    def test_parse_delimited_placeholder_and_whitespace_are_null(self):
        rows = parse_delimited(f"g1\t{NULL_PLACEHOLDER}\t   \tx", ["guid", "a", "b", "c"])
        assert rows == [{"guid": "g1", "a": None, "b": None, "c": "x"}]

    def test_parse_delimited_drops_rows_without_guid(self):
        rows = parse_delimited("g1\tA\n\tB\n", ["guid", "name"])
        assert [r["guid"] for r in rows] == ["g1"]

    def test_parse_delimited_without_key_column_keeps_rows(self):
        rows = parse_delimited("v1\tCash\nv1\tSales\n", ["voucher_guid", "ledger"])
        assert len(rows) == 2

    def test_parse_delimited_short_rows_pad_with_none(self):
        rows = parse_delimited("g1", ["guid", "name"])
        assert rows == [{"guid": "g1", "name": None}]


class TestClassification:
    """Tests for response shape classification."""

    def test_message_shapes(self):
        assert classify_response(GROUP_MESSAGE) == ResponseShape.MESSAGE
        assert classify_response(VOUCHER_MESSAGE) == ResponseShape.MESSAGE
        assert classify_response(
            "<RESPONSE><BODY><DATA><TALLYMESSAGE><LEDGER NAME='Cash'/></TALLYMESSAGE></DATA></BODY></RESPONSE>"
        ) == ResponseShape.MESSAGE

    def test_summary_shape(self):
        assert classify_response(_summary(["A"], ["1"])) == ResponseShape.SUMMARY

    def test_delimited_shapes(self):
        assert classify_response(envelope([["g1", "A"]])) == ResponseShape.DELIMITED
        assert classify_response(envelope([["g1", "A"]], blank=True)) == ResponseShape.DELIMITED
        assert classify_response("g1\tAssets\n") == ResponseShape.DELIMITED

    def test_empty_shapes(self):
        assert classify_response("") == ResponseShape.EMPTY
        assert classify_response(None) == ResponseShape.EMPTY
        assert classify_response("<ENVELOPE></ENVELOPE>") == ResponseShape.EMPTY
        assert classify_response("<ENVELOPE/>") == ResponseShape.EMPTY

    def test_blank_explode_fields_only_is_empty(self):
        """Vouchers without child rows leave one FLDBLANK each and no fields."""
        document = "<ENVELOPE>\n<FLDBLANK></FLDBLANK>\n<FLDBLANK/>\n</ENVELOPE>"
        assert classify_response(document) == ResponseShape.EMPTY

    def test_unknown_shapes(self):
        assert classify_response("<FOO><BAR>1</BAR></FOO>") == ResponseShape.UNKNOWN
        assert classify_response("<ENVELOPE><BROKEN>") == ResponseShape.UNKNOWN
        assert classify_response("Hello") == ResponseShape.UNKNOWN


class TestExtraction:
    """Tests for record extraction per shape."""

    def test_delimited_groups_example(self, groups_table):
        """Tab-delimited text maps positionally onto the declared fields."""
        extraction = extract_records("g1\tAssets\t1\t1000.50\ng2\tLiabilities\t0\t\n", groups_table)

        assert extraction.shape == ResponseShape.DELIMITED
        assert extraction.records == [
            {"guid": "g1", "name": "Assets", "is_revenue": "1", "opening_balance": "1000.50"},
            {"guid": "g2", "name": "Liabilities", "is_revenue": "0", "opening_balance": ""},
        ]
        assert not extraction.keyed_by_tag

    def test_delimited_for_bare_tag_uses_positional_columns(self):
        extraction = extract_records(envelope([["g1", "Assets"]]), "GROUP")
        assert extraction.records == [{"F01": "g1", "F02": "Assets"}]

    def test_message_flattens_attributes_and_children(self):
        extraction = extract_records(GROUP_MESSAGE, "GROUP")

        assert extraction.shape == ResponseShape.MESSAGE
        assert len(extraction) == 2
        first = extraction.records[0]
        assert first["NAME"] == "Test Group"
        assert first["GUID"] == "test-guid-123"
        assert first["ALTERID"] == "1"
        assert first["PARENT"] == "Primary"
        assert extraction.keyed_by_tag

    def test_message_single_and_repeated_nodes_alike(self):
        single = """<ENVELOPE><TALLYMESSAGE><LEDGER NAME="Cash" GUID="l1"/></TALLYMESSAGE></ENVELOPE>"""
        assert len(extract_records(single, "LEDGER")) == 1

    def test_message_detail_rows_carry_parent_values(self):
        table = TableSpec(
            name="accounting_entries",
            collection="Voucher.AllLedgerEntries",
            category=Category.TRANSACTION,
            fields=(
                FieldSpec(name="voucher_guid", field="..Guid"),
                FieldSpec(name="ledger", field="LedgerName"),
            ),
        )
        extraction = extract_records(VOUCHER_MESSAGE, table)

        assert [r["LEDGERNAME"] for r in extraction.records] == ["Cash", "Sales"]
        assert all(r["..GUID"] == "v1" for r in extraction.records)
        assert extraction.records[0]["..DATE"] == "2024-04-05"

    def test_message_detail_falls_back_to_list_without_all_prefix(self):
        xml = VOUCHER_MESSAGE.replace("ALLLEDGERENTRIES.LIST", "LEDGERENTRIES.LIST")
        table = TableSpec(
            name="accounting_entries",
            collection="Voucher.AllLedgerEntries",
            fields=(FieldSpec(name="ledger", field="LedgerName"),),
        )
        assert len(extract_records(xml, table)) == 2

    def test_message_converts_display_dates(self):
        xml = "<ENVELOPE><TALLYMESSAGE><VOUCHER><GUID>v1</GUID><DATE>5-Apr-24</DATE></VOUCHER></TALLYMESSAGE></ENVELOPE>"
        assert extract_records(xml, "VOUCHER").records[0]["DATE"] == "2024-04-05"

    def test_summary_zips_short_auxiliary_arrays(self):
        """Three names and two rates give three records, the last without a rate."""
        extraction = extract_records(_summary(["Widget A", "Widget B", "Widget C"], ["5.00", "7.50"]), "STOCKITEM")

        assert extraction.shape == ResponseShape.SUMMARY
        assert len(extraction) == 3
        assert extraction.records[0]["NAME"] == "Widget A"
        assert extraction.records[0]["RATE"] == "5.00"
        assert extraction.records[0]["QUANTITY"] == "10 Nos"
        assert extraction.records[1]["RATE"] == "7.50"
        assert "RATE" not in extraction.records[2]

    def test_summary_guid_is_stable(self):
        document = _summary(["Widget A", "Widget B"], ["5.00"])
        first = extract_records(document, "STOCKITEM")
        second = extract_records(document, "STOCKITEM")

        assert first.records[0]["GUID"] == "summary-stockitem-widget-a"
        assert [r["GUID"] for r in first.records] == [r["GUID"] for r in second.records]

    def test_empty_response(self):
        extraction = extract_records("<ENVELOPE></ENVELOPE>", "GROUP")
        assert extraction.shape == ResponseShape.EMPTY
        assert extraction.records == []
        assert extraction.diagnostic is None

    def test_detail_export_without_child_rows(self, entries_table):
        document = "<ENVELOPE>\n<FLDBLANK></FLDBLANK>\n<FLDBLANK></FLDBLANK>\n</ENVELOPE>"
        extraction = extract_records(document, entries_table)

        assert extraction.shape == ResponseShape.EMPTY
        assert extraction.records == []

    @pytest.mark.parametrize("document", [
        "<FOO><BAR>1</BAR></FOO>",
        "<ENVELOPE><BROKEN>",
        "Could not connect",
    ])
    def test_unknown_response_yields_diagnostic(self, document):
        """Unrecognized responses never raise."""
        extraction = extract_records(document, "GROUP")
        assert extraction.shape == ResponseShape.UNKNOWN
        assert extraction.records == []
        assert extraction.diagnostic
