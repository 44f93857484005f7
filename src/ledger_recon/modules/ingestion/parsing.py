"""
Format detection and row extraction for uploaded documents.

Rows come out as one of three tagged shapes, decided once from the header:
``TransactionRow`` (date + amount), ``SummaryRow`` (month + department/expense/
revenue) and ``UnrecognizedRow`` (anything the layout could not read).
"""

from __future__ import annotations

import csv
import datetime as dt
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from io import BytesIO, StringIO

from openpyxl import load_workbook
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from ledger_recon.core.errors import ParseError, ProviderError
from ledger_recon.core.logging import get_logger, log_event
from ledger_recon.modules.ingestion.providers import TransactionExtractionProvider

logger = get_logger(__name__)

FIELD_SYNONYMS: dict[str, frozenset[str]] = {
    "date": frozenset(
        {
            "date",
            "transaction date",
            "trans date",
            "posted date",
            "posting date",
            "post date",
            "value date",
            "booking date",
        }
    ),
    "amount": frozenset({"amount", "value", "sum", "total", "transaction amount", "amt"}),
    "debit": frozenset({"debit", "debits", "withdrawal", "withdrawals", "money out", "paid out"}),
    "credit": frozenset({"credit", "credits", "deposit", "deposits", "money in", "paid in"}),
    "description": frozenset(
        {"description", "desc", "memo", "narrative", "details", "particulars"}
    ),
    "vendor": frozenset({"vendor", "merchant", "payee", "counterparty", "name"}),
    "type": frozenset({"type", "transaction type", "debit credit", "dr cr"}),
    "month": frozenset({"month", "period"}),
    "department": frozenset({"department", "dept", "team"}),
    "expense": frozenset({"expense", "expenses", "spend", "cost", "costs"}),
    "revenue": frozenset({"revenue", "income", "sales"}),
    "headcount": frozenset({"headcount", "employees"}),
}

_DEBIT_WORDS = {"debit", "dr", "withdrawal", "payment", "purchase", "out", "fee", "charge"}
_CREDIT_WORDS = {"credit", "cr", "deposit", "in", "refund", "income"}


@dataclass(frozen=True)
class TransactionRow:
    row_number: int
    date: dt.date
    amount: Decimal
    description: str
    raw_vendor: str


@dataclass(frozen=True)
class SummaryRow:
    row_number: int
    month: dt.date
    department: str | None
    vendor: str | None
    revenue: Decimal
    expenses: Decimal
    headcount: int | None


@dataclass(frozen=True)
class UnrecognizedRow:
    row_number: int
    reason: str


ParsedRow = TransactionRow | SummaryRow | UnrecognizedRow


@dataclass
class ParsedDocument:
    kind: str
    layout: str
    rows: list[ParsedRow] = field(default_factory=list)
    raw_text: str | None = None
    confidence: float = 1.0

    @property
    def total_rows(self) -> int:
        return len(self.rows)

    @property
    def transaction_rows(self) -> list[TransactionRow]:
        return [r for r in self.rows if isinstance(r, TransactionRow)]

    @property
    def summary_rows(self) -> list[SummaryRow]:
        return [r for r in self.rows if isinstance(r, SummaryRow)]

    @property
    def unrecognized_rows(self) -> list[UnrecognizedRow]:
        return [r for r in self.rows if isinstance(r, UnrecognizedRow)]


def parse_document(
    *,
    body: bytes,
    declared_type: str,
    filename: str,
    content_type: str | None,
    extractor: TransactionExtractionProvider | None = None,
) -> ParsedDocument:
    kind = detect_file_kind(filename=filename, content_type=content_type, body=body)
    log_event(logger, "ingest.parse.file_kind", filename=filename, kind=kind)

    if kind == "bad_pdf_upload":
        raise ParseError("Bad upload: expected PDF header (%PDF)")
    if kind == "unknown":
        raise ParseError("Unsupported file type")

    if kind == "xlsx":
        header, data = _read_xlsx(body)
        return _parse_table(kind="xlsx", header=header, data=data)

    if kind == "pdf":
        text = _extract_pdf_text(body)
        return _parse_free_text(
            kind="pdf", text=text, declared_type=declared_type, extractor=extractor
        )

    text = _decode_text_bytes(body)
    table = _read_delimited(
        text, force=declared_type == "csv" or filename.lower().endswith((".csv", ".tsv"))
    )
    if table is not None:
        header, data = table
        return _parse_table(kind="csv", header=header, data=data)
    return _parse_free_text(
        kind="text", text=text, declared_type=declared_type, extractor=extractor
    )


def detect_file_kind(*, filename: str, content_type: str | None, body: bytes) -> str:
    name = (filename or "").lower()
    ctype = (content_type or "").lower()
    if _looks_like_pdf_bytes(body):
        return "pdf"
    is_xlsx_name = name.endswith((".xlsx", ".xlsm")) or "spreadsheetml" in ctype
    if body[:4] == b"PK\x03\x04" and is_xlsx_name:
        return "xlsx"
    if _looks_like_text_bytes(body):
        return "text"
    if name.endswith(".pdf") or ctype.endswith("/pdf"):
        return "bad_pdf_upload"
    return "unknown"


def _looks_like_pdf_bytes(body: bytes) -> bool:
    if not body:
        return False
    b = body.lstrip()
    if b.startswith(b"\xef\xbb\xbf"):
        b = b[3:].lstrip()
    return b.startswith(b"%PDF")


def _looks_like_text_bytes(body: bytes) -> bool:
    if not body:
        return False
    sample = body[:4096]
    if b"\x00" in sample:
        return False
    try:
        sample.decode("utf-8")
    except UnicodeDecodeError as e:
        # A multi-byte character cut at the sample boundary is still text.
        if e.start < len(sample) - 3:
            return False
    controls = sum(1 for ch in sample if ch < 32 and ch not in {9, 10, 13})
    return controls / max(1, len(sample)) <= 0.02


def _decode_text_bytes(body: bytes) -> str:
    if body.startswith(b"\xef\xbb\xbf"):
        body = body[3:]
    try:
        return body.decode("utf-8")
    except UnicodeDecodeError:
        return body.decode("latin-1", errors="replace")


def _extract_pdf_text(body: bytes) -> str:
    try:
        reader = PdfReader(BytesIO(body))
        pages = [
            (page.extract_text() or "").replace("\u202f", " ").replace("\xa0", " ")
            for page in reader.pages
        ]
    except (PdfReadError, ValueError) as e:
        raise ParseError(f"Unreadable PDF: {e}") from e
    text = "\n\n".join(p for p in pages if p.strip())
    if not text.strip():
        raise ParseError("PDF has no extractable text")
    return text


def _read_xlsx(body: bytes) -> tuple[list[str], list[list[object]]]:
    try:
        wb = load_workbook(BytesIO(body), read_only=True, data_only=True)
    except Exception as e:  # noqa: BLE001
        raise ParseError(f"Unreadable spreadsheet: {e}") from e
    try:
        ws = wb.worksheets[0]
        rows = [list(r) for r in ws.iter_rows(values_only=True)]
    finally:
        wb.close()
    rows = [r for r in rows if any(_cell_text(c) for c in r)]
    if not rows:
        raise ParseError("Spreadsheet is empty")
    header = [_cell_text(c) for c in rows[0]]
    return header, rows[1:]


def _read_delimited(text: str, *, force: bool) -> tuple[list[str], list[list[object]]] | None:
    lines = [ln for ln in text.splitlines() if ln.strip()]
    if not lines:
        if force:
            raise ParseError("CSV file is empty")
        return None
    sample = "\n".join(lines[:20])
    try:
        dialect = csv.Sniffer().sniff(sample, delimiters=",;\t|")
        delimiter = dialect.delimiter
    except csv.Error:
        delimiter = ","
    rows = [r for r in csv.reader(StringIO("\n".join(lines)), delimiter=delimiter)]
    if not rows or len(rows[0]) < 2:
        if force:
            raise ParseError("CSV header has fewer than two columns")
        return None
    header = [h.strip() for h in rows[0]]
    if not force and len(map_header(header)) < 2:
        return None
    return header, [list(r) for r in rows[1:]]


def _normalize_header(h: str) -> str:
    h = re.sub(r"[_\-/]+", " ", str(h or "").strip().lower())
    h = re.sub(r"[^a-z0-9 ]+", "", h)
    return re.sub(r"\s+", " ", h).strip()


def map_header(header: list[str]) -> dict[str, int]:
    """Map canonical field names to column indexes; first matching column wins."""
    out: dict[str, int] = {}
    for idx, raw in enumerate(header):
        token = _normalize_header(raw)
        for field_name, synonyms in FIELD_SYNONYMS.items():
            if field_name not in out and token in synonyms:
                out[field_name] = idx
                break
    return out


def detect_layout(columns: dict[str, int]) -> str:
    if "date" in columns and ({"amount", "debit", "credit"} & columns.keys()):
        return "transactions"
    if "month" in columns and ({"department", "expense", "revenue"} & columns.keys()):
        return "summary"
    return "unrecognized"


def _parse_table(*, kind: str, header: list[str], data: list[list[object]]) -> ParsedDocument:
    columns = map_header(header)
    layout = detect_layout(columns)
    log_event(
        logger,
        "ingest.parse.layout",
        kind=kind,
        layout=layout,
        columns=sorted(columns),
        data_rows=len(data),
    )

    rows: list[ParsedRow] = []
    for offset, values in enumerate(data):
        if not any(_cell_text(v) for v in values):
            continue
        row_number = offset + 2  # header is row 1
        if layout == "transactions":
            rows.append(_transaction_row(row_number, values, columns))
        elif layout == "summary":
            rows.append(_summary_row(row_number, values, columns))
        else:
            rows.append(UnrecognizedRow(row_number=row_number, reason="unrecognized_columns"))
    return ParsedDocument(kind=kind, layout=layout, rows=rows, confidence=1.0)


def _cell(values: list[object], columns: dict[str, int], name: str) -> object:
    idx = columns.get(name)
    if idx is None or idx >= len(values):
        return None
    return values[idx]


def _cell_text(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _transaction_row(row_number: int, values: list[object], columns: dict[str, int]) -> ParsedRow:
    date = parse_date(_cell(values, columns, "date"))
    if date is None:
        return UnrecognizedRow(row_number=row_number, reason="invalid_date")

    if "amount" in columns:
        amount = parse_signed_amount(_cell(values, columns, "amount"))
    else:
        debit = parse_signed_amount(_cell(values, columns, "debit"))
        credit = parse_signed_amount(_cell(values, columns, "credit"))
        if debit is None and credit is None:
            amount = None
        else:
            amount = abs(credit or Decimal("0")) - abs(debit or Decimal("0"))
    if amount is None or amount == 0:
        return UnrecognizedRow(row_number=row_number, reason="invalid_amount")

    direction = _cell_text(_cell(values, columns, "type")).lower()
    if direction in _DEBIT_WORDS:
        amount = -abs(amount)
    elif direction in _CREDIT_WORDS:
        amount = abs(amount)

    description = _cell_text(_cell(values, columns, "description"))
    raw_vendor = _cell_text(_cell(values, columns, "vendor")) or description
    return TransactionRow(
        row_number=row_number,
        date=date,
        amount=amount,
        description=description or raw_vendor,
        raw_vendor=raw_vendor,
    )


def _summary_row(row_number: int, values: list[object], columns: dict[str, int]) -> ParsedRow:
    month = parse_month(_cell(values, columns, "month"))
    if month is None:
        return UnrecognizedRow(row_number=row_number, reason="invalid_month")
    revenue = parse_signed_amount(_cell(values, columns, "revenue"))
    expenses = parse_signed_amount(_cell(values, columns, "expense"))
    department = _cell_text(_cell(values, columns, "department")) or None
    if revenue is None and expenses is None and department is None:
        return UnrecognizedRow(row_number=row_number, reason="empty_summary")
    headcount_raw = parse_signed_amount(_cell(values, columns, "headcount"))
    return SummaryRow(
        row_number=row_number,
        month=month,
        department=department,
        vendor=_cell_text(_cell(values, columns, "vendor")) or None,
        revenue=abs(revenue or Decimal("0")),
        expenses=abs(expenses or Decimal("0")),
        headcount=int(headcount_raw) if headcount_raw is not None else None,
    )


def _parse_free_text(
    *,
    kind: str,
    text: str,
    declared_type: str,
    extractor: TransactionExtractionProvider | None,
) -> ParsedDocument:
    if not text.strip():
        raise ParseError("Document has no text")
    if extractor is None:
        raise ParseError("Free-text documents need a transaction extractor")
    try:
        extracted = extractor.extract_transactions(text, declared_type)
    except ProviderError as e:
        raise ParseError(f"Transaction extraction failed: {e}") from e

    rows: list[ParsedRow] = []
    for idx, item in enumerate(extracted.transactions, start=1):
        date = parse_date(item.date)
        amount = parse_signed_amount(item.amount)
        if date is None:
            rows.append(UnrecognizedRow(row_number=idx, reason="invalid_date"))
            continue
        if amount is None or amount == 0:
            rows.append(UnrecognizedRow(row_number=idx, reason="invalid_amount"))
            continue
        description = (item.description or item.vendor or "").strip()
        rows.append(
            TransactionRow(
                row_number=idx,
                date=date,
                amount=amount,
                description=description,
                raw_vendor=(item.vendor or description).strip(),
            )
        )
    return ParsedDocument(
        kind=kind,
        layout="free_text",
        rows=rows,
        raw_text=text,
        confidence=extracted.confidence,
    )


def parse_signed_amount(value: object) -> Decimal | None:
    """Parse a statement amount keeping its sign.

    ``-12.50``, ``(12.50)``, ``12.50-`` and ``12.50 DR`` are negative; ``CR`` is positive.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        try:
            return Decimal(str(value)).quantize(Decimal("0.01"))
        except InvalidOperation:
            return None

    s = str(value).strip().replace("\u2212", "-")
    if not s:
        return None
    negative = False
    if s.startswith("(") and s.endswith(")"):
        negative, s = True, s[1:-1].strip()
    m = re.search(r"\s*\b(DR|CR)\.?$", s, re.I)
    if m:
        negative = negative or m.group(1).upper() == "DR"
        s = s[: m.start()].strip()
    if s.startswith("-") or s.endswith("-"):
        negative = True
        s = s.strip("-").strip()
    if "-" in s:
        return None

    magnitude = _parse_decimal_amount(s)
    if magnitude is None:
        return None
    return -magnitude if negative else magnitude


def _parse_decimal_amount(raw: str) -> Decimal | None:
    s = str(raw or "").strip()
    if not s:
        return None
    s = s.replace("\u202f", " ").replace("\xa0", " ")
    if re.search(r"[A-Za-z]{4,}", s):
        return None
    s = re.sub(r"[^0-9,.' ]", "", s)
    s = s.replace(" ", "").replace("'", "")
    if not s or not any(ch.isdigit() for ch in s):
        return None

    if "," in s and "." in s:
        decimal_sep = "," if s.rfind(",") > s.rfind(".") else "."
        thousands_sep = "." if decimal_sep == "," else ","
        normalized = s.replace(thousands_sep, "").replace(decimal_sep, ".")
    elif "," in s:
        idx = s.rfind(",")
        digits_after = len(s) - idx - 1
        if s.count(",") == 1 and digits_after in {1, 2}:
            normalized = s.replace(",", ".")
        else:
            normalized = s.replace(",", "")
    elif s.count(".") > 1:
        normalized = s.replace(".", "")
    else:
        normalized = s

    try:
        return Decimal(normalized).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None


def _is_plausible_date(d: dt.date) -> bool:
    return 1990 <= d.year <= 2100


def parse_date(value: object) -> dt.date | None:
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    raw = str(value).strip()
    if not raw:
        return None

    m = re.match(r"^(\d{4})-(\d{2})-(\d{2})", raw)
    if m:
        try:
            d = dt.date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
            return d if _is_plausible_date(d) else None
        except ValueError:
            return None

    for fmt in ("%Y/%m/%d", "%d %b %Y", "%d %B %Y", "%b %d, %Y", "%B %d, %Y", "%d-%b-%Y"):
        try:
            d = dt.datetime.strptime(raw, fmt).date()
            return d if _is_plausible_date(d) else None
        except ValueError:
            continue

    m = re.fullmatch(r"([0-9]{1,2})[/.]([0-9]{1,2})[/.]([0-9]{2}|[0-9]{4})", raw)
    if m:
        a, b = int(m.group(1)), int(m.group(2))
        year = int(m.group(3))
        if year < 100:
            year += 2000
        # US month-first unless that is impossible.
        for month, day in ((a, b), (b, a)):
            try:
                d = dt.date(year, month, day)
            except ValueError:
                continue
            return d if _is_plausible_date(d) else None
    return None


def parse_month(value: object) -> dt.date | None:
    if isinstance(value, (dt.date, dt.datetime)):
        d = value.date() if isinstance(value, dt.datetime) else value
        return d.replace(day=1)
    raw = str(value or "").strip()
    if not raw:
        return None
    m = re.fullmatch(r"(\d{4})[-/](\d{1,2})", raw)
    if m:
        try:
            return dt.date(int(m.group(1)), int(m.group(2)), 1)
        except ValueError:
            return None
    m = re.fullmatch(r"(\d{1,2})[-/](\d{4})", raw)
    if m:
        try:
            return dt.date(int(m.group(2)), int(m.group(1)), 1)
        except ValueError:
            return None
    for fmt in ("%b %Y", "%B %Y", "%b-%Y", "%b-%y", "%B-%Y"):
        try:
            return dt.datetime.strptime(raw, fmt).date().replace(day=1)
        except ValueError:
            continue
    d = parse_date(raw)
    return d.replace(day=1) if d else None
