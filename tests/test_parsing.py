from __future__ import annotations

import datetime as dt
from decimal import Decimal
from io import BytesIO

import pytest
from openpyxl import Workbook

from ledger_recon.core.errors import ParseError, ProviderError
from ledger_recon.modules.ingestion.parsing import (
    SummaryRow,
    TransactionRow,
    UnrecognizedRow,
    detect_file_kind,
    detect_layout,
    map_header,
    parse_date,
    parse_document,
    parse_month,
    parse_signed_amount,
)
from ledger_recon.modules.ingestion.providers import (
    ExtractedTransaction,
    ExtractedTransactions,
)


class _StubExtractor:
    def __init__(self, result: ExtractedTransactions | None = None, error: Exception | None = None):
        self.result = result
        self.error = error
        self.calls: list[str] = []

    def extract_transactions(self, text: str, declared_type: str) -> ExtractedTransactions:
        self.calls.append(declared_type)
        if self.error:
            raise self.error
        return self.result or ExtractedTransactions()


def _parse_csv(text: str, *, filename: str = "statement.csv", declared_type: str = "csv"):
    return parse_document(
        body=text.encode("utf-8"),
        declared_type=declared_type,
        filename=filename,
        content_type="text/csv",
    )


def test_header_synonyms_map_to_canonical_fields():
    columns = map_header(["Posted Date", "Withdrawals", "Deposits", "Payee", "Memo"])
    assert columns == {"date": 0, "debit": 1, "credit": 2, "vendor": 3, "description": 4}
    assert detect_layout(columns) == "transactions"

    assert detect_layout(map_header(["Month", "Dept", "Spend"])) == "summary"
    assert detect_layout(map_header(["Foo", "Bar"])) == "unrecognized"


def test_transaction_csv_keeps_amount_sign():
    parsed = _parse_csv(
        "Date,Amount,Vendor,Description\n"
        "2024-03-01,-120.00,ACME CORP *4821,Monthly retainer\n"
        "2024-03-02,\"1,250.00\",Stripe,Payout\n"
        "2024-03-03,(45.10),Corner Deli,Lunch\n"
    )
    assert parsed.kind == "csv"
    assert parsed.layout == "transactions"
    rows = parsed.transaction_rows
    assert [r.row_number for r in rows] == [2, 3, 4]
    assert [r.amount for r in rows] == [Decimal("-120.00"), Decimal("1250.00"), Decimal("-45.10")]
    assert rows[0].raw_vendor == "ACME CORP *4821"
    assert rows[0].description == "Monthly retainer"


def test_debit_credit_columns_produce_signed_amounts():
    parsed = _parse_csv(
        "Posted Date;Withdrawals;Deposits;Payee;Memo\n"
        "03/04/2024;45.00;;Uber *TRIP;Ride to client\n"
        "03/05/2024;;1200.50;Stripe;Payout\n",
        declared_type="bank_statement",
    )
    rows = parsed.transaction_rows
    assert len(rows) == 2
    assert rows[0].date == dt.date(2024, 3, 4)
    assert rows[0].amount == Decimal("-45.00")
    assert rows[1].amount == Decimal("1200.50")


def test_type_column_forces_direction():
    parsed = _parse_csv(
        "Date,Amount,Type,Description\n"
        "2024-03-01,99.00,Debit,Software subscription\n"
        "2024-03-02,-15.00,Credit,Refund\n"
    )
    assert [r.amount for r in parsed.transaction_rows] == [Decimal("-99.00"), Decimal("15.00")]


def test_bad_rows_become_unrecognized_with_reasons():
    parsed = _parse_csv(
        "Date,Amount,Vendor\n"
        "not a date,10.00,Acme\n"
        "2024-03-02,abc,Acme\n"
        "2024-03-03,0,Acme\n"
        ",,\n"
        "2024-03-04,5.00,Acme\n"
    )
    assert parsed.total_rows == 4
    reasons = [r.reason for r in parsed.unrecognized_rows]
    assert reasons == ["invalid_date", "invalid_amount", "invalid_amount"]
    assert isinstance(parsed.rows[-1], TransactionRow)
    assert parsed.rows[-1].row_number == 6


def test_summary_layout_produces_summary_rows():
    parsed = _parse_csv(
        "Month,Department,Revenue,Expenses,Headcount\n"
        "2024-01,Engineering,0,12000,5\n"
        "Jan 2024,Sales,30000,8000,3\n"
        "someday,Ops,1,1,1\n",
        filename="summary.csv",
    )
    assert parsed.layout == "summary"
    summaries = parsed.summary_rows
    assert len(summaries) == 2
    assert summaries[0] == SummaryRow(
        row_number=2,
        month=dt.date(2024, 1, 1),
        department="Engineering",
        vendor=None,
        revenue=Decimal("0.00"),
        expenses=Decimal("12000.00"),
        headcount=5,
    )
    assert summaries[1].month == dt.date(2024, 1, 1)
    assert parsed.unrecognized_rows == [UnrecognizedRow(row_number=4, reason="invalid_month")]


def test_unknown_columns_mark_every_row_unrecognized():
    parsed = _parse_csv("Foo,Bar\n1,2\n3,4\n")
    assert parsed.layout == "unrecognized"
    assert {r.reason for r in parsed.unrecognized_rows} == {"unrecognized_columns"}
    assert parsed.total_rows == 2


def test_xlsx_is_read_from_first_sheet():
    wb = Workbook()
    ws = wb.active
    ws.append(["Transaction Date", "Amount", "Merchant"])
    ws.append([dt.datetime(2024, 3, 1), -42.5, "SLACK T0123"])
    ws.append([None, None, None])
    ws.append([dt.datetime(2024, 3, 9), 10, "Refund"])
    buf = BytesIO()
    wb.save(buf)

    parsed = parse_document(
        body=buf.getvalue(),
        declared_type="bank_statement",
        filename="march.xlsx",
        content_type=None,
    )
    assert parsed.kind == "xlsx"
    rows = parsed.transaction_rows
    assert [r.amount for r in rows] == [Decimal("-42.50"), Decimal("10.00")]
    assert rows[0].date == dt.date(2024, 3, 1)
    assert rows[0].raw_vendor == "SLACK T0123"


def test_free_text_without_extractor_is_a_parse_error():
    with pytest.raises(ParseError):
        parse_document(
            body=b"Statement for March\nNothing tabular here\n",
            declared_type="bank_statement",
            filename="statement.txt",
            content_type="text/plain",
        )


def test_free_text_uses_extractor_rows():
    extractor = _StubExtractor(
        ExtractedTransactions(
            transactions=[
                ExtractedTransaction(
                    date="2024-03-01", amount="-19.99", description="Zoom", vendor="ZOOM.US"
                ),
                ExtractedTransaction(date=None, amount="5.00", description="x", vendor=None),
                ExtractedTransaction(date="2024-03-02", amount="n/a", description="y", vendor=None),
            ],
            confidence=0.7,
        )
    )
    parsed = parse_document(
        body=b"Statement for March\n03/01 ZOOM.US 19.99\n",
        declared_type="bank_statement",
        filename="statement.txt",
        content_type="text/plain",
        extractor=extractor,
    )
    assert extractor.calls == ["bank_statement"]
    assert parsed.layout == "free_text"
    assert parsed.confidence == 0.7
    assert parsed.transaction_rows[0].amount == Decimal("-19.99")
    assert parsed.transaction_rows[0].raw_vendor == "ZOOM.US"
    assert [r.reason for r in parsed.unrecognized_rows] == ["invalid_date", "invalid_amount"]


def test_extractor_failure_becomes_parse_error():
    extractor = _StubExtractor(error=ProviderError("timed out", retryable=True))
    with pytest.raises(ParseError):
        parse_document(
            body=b"Some receipt text",
            declared_type="receipt",
            filename="receipt.txt",
            content_type="text/plain",
            extractor=extractor,
        )


def test_pdf_named_upload_without_pdf_bytes_is_rejected():
    assert (
        detect_file_kind(filename="scan.pdf", content_type="application/pdf", body=b"\x00\x01")
        == "bad_pdf_upload"
    )
    with pytest.raises(ParseError):
        parse_document(
            body=b"\x00\x01\x02",
            declared_type="invoice",
            filename="scan.pdf",
            content_type="application/pdf",
        )


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("-12.50", Decimal("-12.50")),
        ("(12.50)", Decimal("-12.50")),
        ("12.50-", Decimal("-12.50")),
        ("12.50 DR", Decimal("-12.50")),
        ("12.50 CR", Decimal("12.50")),
        ("$1,234.56", Decimal("1234.56")),
        ("1.234,56", Decimal("1234.56")),
        ("\u221240", Decimal("-40.00")),
        (7, Decimal("7.00")),
        ("", None),
        ("abc", None),
        ("2024-03-01", None),
        (None, None),
    ],
)
def test_parse_signed_amount(raw, expected):
    assert parse_signed_amount(raw) == expected


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("2024-03-01", dt.date(2024, 3, 1)),
        ("03/04/2024", dt.date(2024, 3, 4)),
        ("25/12/2024", dt.date(2024, 12, 25)),
        ("1 Mar 2024", dt.date(2024, 3, 1)),
        ("Mar 5, 2024", dt.date(2024, 3, 5)),
        ("1850-01-01", None),
        ("yesterday", None),
    ],
)
def test_parse_date(raw, expected):
    assert parse_date(raw) == expected


def test_parse_month_normalizes_to_first_day():
    assert parse_month("2024-02") == dt.date(2024, 2, 1)
    assert parse_month("02/2024") == dt.date(2024, 2, 1)
    assert parse_month("February 2024") == dt.date(2024, 2, 1)
    assert parse_month(dt.date(2024, 2, 17)) == dt.date(2024, 2, 1)
    assert parse_month("never") is None
