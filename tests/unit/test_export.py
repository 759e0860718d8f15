from __future__ import annotations

import io
import json
from decimal import Decimal

import pandas as pd
import pytest

from bulkupload.models.canonical_row import CanonicalRow, RowStatus, ValidationIssue
from bulkupload.models.errors import ExportError, NoDataError
from bulkupload.services import sinks
from bulkupload.services.export import READY_MESSAGE, ExportConsolidator


def _grn(seq: str, document: str | None, status: RowStatus, **data) -> CanonicalRow:
    values = {"GRNDocumentNumber": document, "Plant": "1000", "QuantityInEntryUnit": Decimal("5")}
    values.update(data)
    return CanonicalRow(sequence_id=seq, data=values, sheet="GRN", status=status)


@pytest.fixture()
def exporter(grn_domain) -> ExportConsolidator:
    return ExportConsolidator.from_domain(grn_domain)


@pytest.fixture()
def rows() -> list[CanonicalRow]:
    valid = _grn("1", "5000000001", RowStatus.VALID)
    invalid = _grn("2", "5000000002", RowStatus.INVALID, Plant=None)
    invalid.validation_errors = [
        ValidationIssue(field="Plant", message="Plant is required", sequence_id="2"),
        ValidationIssue(field="PostingDate", message="Posting Date is required", sequence_id="2"),
    ]
    success = _grn("3", "5000000001", RowStatus.SUCCESS)
    success.mark_success("Document 4900000001 created successfully", {
        "MaterialDocument": "4900000001",
        "MaterialDocumentYear": "2024",
        "ErrorMessage": "",
        "SAP_UUID": "fa163e8f-0000",
        "__metadata": {"uri": "https://example.invalid/x"},
    })
    return [valid, invalid, success]


class TestRecords:
    def test_to_record_folds_messages_and_drops_internal_fields(self, exporter, rows):
        record = exporter.to_record(rows[2])
        assert record == {
            "SequenceNumber": "3",
            "Status": "Success",
            "GRNDocumentNumber": "5000000001",
            "Plant": "1000",
            "QuantityInEntryUnit": Decimal("5"),
            "MaterialDocument": "4900000001",
            "MaterialDocumentYear": "2024",
            "Message": "Document 4900000001 created successfully",
        }

    def test_messages_by_status(self, exporter, rows):
        assert exporter.message_for(rows[0]) == READY_MESSAGE
        assert exporter.message_for(rows[1]) == "Plant is required; Posting Date is required"
        assert exporter.message_for(CanonicalRow(sequence_id="9")) == ""

    def test_legacy_and_default_submission_messages(self, exporter):
        legacy = CanonicalRow(sequence_id="1", status=RowStatus.SUCCESS,
                              response_fields={"SuccessMessage": " Posted "})
        bare_error = CanonicalRow(sequence_id="2", status=RowStatus.ERROR)
        assert exporter.message_for(legacy) == "Posted"
        assert exporter.message_for(bare_error) == "Submission failed"

    def test_status_filters(self, exporter, rows):
        assert [r.sequence_id for r in exporter.filter_rows(rows, "success")] == ["1", "3"]
        assert [r.sequence_id for r in exporter.filter_rows(rows, "error")] == ["2"]
        assert len(exporter.filter_rows(rows, "all")) == 3
        with pytest.raises(ExportError, match="unknown status filter"):
            exporter.filter_rows(rows, "pending")

    def test_no_data_for_filter(self, exporter):
        with pytest.raises(NoDataError, match="no data of type 'error' to export"):
            exporter.export([_grn("1", "5000000001", RowStatus.VALID)], status_filter="error")

    def test_column_order_and_blank_columns(self, exporter, rows):
        records = exporter.build_export_records(rows)
        assert exporter.column_order(records) == [
            "Status", "SequenceNumber", "GRNDocumentNumber", "Plant", "QuantityInEntryUnit",
            "MaterialDocument", "MaterialDocumentYear", "Message",
        ]
        pending = [CanonicalRow(sequence_id="1", data={"Plant": None})]
        assert exporter.column_order(exporter.build_export_records(pending)) == [
            "Status", "SequenceNumber", "Message",
        ]


class TestGrouping:
    def test_groups_in_first_seen_order(self, exporter, rows):
        groups = exporter.group_by(rows)
        assert list(groups) == ["5000000001", "5000000002"]
        assert [r["SequenceNumber"] for r in groups["5000000001"]] == ["1", "3"]
        assert [r["Message"] for r in groups["5000000001"]] == [
            READY_MESSAGE, "Document 4900000001 created successfully",
        ]
        assert "SAP_UUID" not in groups["5000000001"][1]

    def test_group_by_honours_status_filter(self, exporter, rows):
        groups = exporter.group_by(rows, status_filter="error")
        assert list(groups) == ["5000000002"]
        assert groups["5000000002"][0]["Status"] == "Invalid"

    def test_blank_key_group(self, exporter):
        groups = exporter.group_by([_grn("1", None, RowStatus.VALID)])
        assert list(groups) == ["(blank)"]

    def test_group_by_sequence_field(self, exporter, rows):
        assert list(exporter.group_by(rows, "SequenceNumber")) == ["1", "2", "3"]

    def test_group_field_required(self, mini_domain):
        exporter = ExportConsolidator.from_domain(mini_domain)
        with pytest.raises(ExportError, match="no group-by field"):
            exporter.group_by([CanonicalRow(sequence_id="1", status=RowStatus.VALID)])


class TestExport:
    def test_xlsx_round_trip(self, exporter, rows):
        data = exporter.export(rows, "xlsx", metadata={"source": "grn.xlsx"})
        sheets = pd.read_excel(io.BytesIO(data), sheet_name=None)

        assert list(sheets) == ["Export", "Export Info"]
        df = sheets["Export"]
        assert list(df.columns) == [
            "Status", "SequenceNumber", "GRNDocumentNumber", "Plant", "QuantityInEntryUnit",
            "MaterialDocument", "MaterialDocumentYear", "Message",
        ]
        assert list(df["Status"]) == ["Valid", "Invalid", "Success"]
        assert df["Message"].notna().all()
        assert list(df["QuantityInEntryUnit"]) == [5.0, 5.0, 5.0]

        info = dict(zip(sheets["Export Info"]["Key"], sheets["Export Info"]["Value"].astype(str)))
        assert info["domain"] == "grn"
        assert info["status_filter"] == "all"
        assert info["records"] == "3"
        assert info["source"] == "grn.xlsx"

    def test_xlsx_header_is_styled(self, exporter, rows):
        from openpyxl import load_workbook

        wb = load_workbook(io.BytesIO(exporter.export(rows)))
        ws = wb["Export"]
        assert ws["A1"].font.bold
        assert ws["A1"].fill.start_color.rgb.endswith("354A5F")
        assert ws.freeze_panes == "A2"

    def test_grouped_xlsx_has_one_sheet_per_group(self, exporter, rows):
        data = exporter.export_grouped(rows)
        book = pd.ExcelFile(io.BytesIO(data))
        assert book.sheet_names == ["5000000001", "5000000002", "Export Info"]
        assert len(pd.read_excel(book, sheet_name="5000000001")) == 2

    def test_csv(self, exporter, rows):
        text = exporter.export(rows, "csv", status_filter="success").decode("utf-8")
        lines = text.splitlines()
        assert lines[0].startswith("Status,SequenceNumber,GRNDocumentNumber")
        assert len(lines) == 3
        assert lines[1].endswith(f",{READY_MESSAGE}")

    def test_unknown_format(self, exporter, rows):
        with pytest.raises(ExportError, match="unknown export format 'pdf'"):
            exporter.export(rows, "pdf")


class TestSinks:
    def test_sheet_names_are_sanitized_and_unique(self):
        taken: set[str] = set()
        assert sinks._sheet_name("a/b:c", taken) == "a_b_c"
        assert sinks._sheet_name("A_B_C", taken) == "A_B_C (2)"
        long = sinks._sheet_name("x" * 40, taken)
        assert len(long) == 31

    def test_register_formatter(self, monkeypatch, exporter, rows):
        monkeypatch.setattr(sinks, "_FORMATTERS", dict(sinks._FORMATTERS))

        class JsonFormatter:
            extension = "json"

            def write(self, records, columns, metadata):
                return json.dumps([{c: str(r.get(c)) for c in columns} for r in records]).encode()

            def write_grouped(self, groups, columns, metadata):
                return self.write([r for g in groups.values() for r in g], columns, metadata)

        sinks.register_formatter(".JSON", JsonFormatter)
        assert "json" in sinks.available_formats()
        payload = json.loads(exporter.export(rows, "json", status_filter="error"))
        assert payload == [{
            "Status": "Invalid", "SequenceNumber": "2", "GRNDocumentNumber": "5000000002",
            "QuantityInEntryUnit": "5", "Message": "Plant is required; Posting Date is required",
        }]
