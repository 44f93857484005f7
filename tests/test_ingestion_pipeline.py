from __future__ import annotations

from decimal import Decimal

from sqlalchemy import func, select

from ledger_recon.core.db import SessionLocal
from ledger_recon.modules.documents.models import DocumentStatus, DocumentType, RawDocument
from ledger_recon.modules.documents.service import create_document
from ledger_recon.modules.ingestion.providers import CategorySuggestion, VendorSuggestion
from ledger_recon.modules.ingestion.service import IngestionPipeline
from ledger_recon.modules.ledger.models import MonthlyMetric, Transaction, Vendor
from ledger_recon.modules.organizations.service import create_organization


class FakeNormalizer:
    def __init__(self) -> None:
        self.calls: list[str] = []

    def normalize_vendor(self, raw_name: str) -> VendorSuggestion:
        self.calls.append(raw_name)
        return VendorSuggestion(clean_name=raw_name.split("*")[0].strip().title())


class FakeClassifier:
    def classify(self, vendor: str, description: str, amount: Decimal) -> CategorySuggestion:
        return CategorySuggestion(category="Operations & Misc", confidence=0.7)


class NoExtractor:
    def extract_transactions(self, text: str, declared_type: str):
        raise AssertionError("tabular documents never reach the extractor")


def _pipeline(normalizer: FakeNormalizer | None = None) -> IngestionPipeline:
    return IngestionPipeline(
        normalizer=normalizer or FakeNormalizer(),
        classifier=FakeClassifier(),
        extractor=NoExtractor(),
        max_concurrency=2,
    )


def _upload(session, body: bytes, *, filename: str = "statement.csv") -> RawDocument:
    org = create_organization(session, name="Acme Holdings")
    return create_document(
        session,
        organization=org,
        filename=filename,
        content_type="text/csv",
        declared_type=DocumentType.CSV,
        body=body,
    )


def test_vendor_variants_resolve_to_one_vendor_and_one_call():
    body = (
        b"Date,Amount,Vendor\n"
        b"2024-03-01,-120.00,ACME CORP *4821\n"
        b"2024-03-05,-80.00,ACME CORP *9053\n"
        b"2024-03-07,1500.00,Globex Customer\n"
    )
    normalizer = FakeNormalizer()
    with SessionLocal() as session:
        document = _upload(session, body)

        result = _pipeline(normalizer).ingest_document(document_id=document.id)

        assert result is not None
        assert result.status == "processed"
        assert result.created == 3
        acme_calls = [c for c in normalizer.calls if c.startswith("ACME")]
        assert len(acme_calls) == 1

        session.expire_all()
        vendors = session.scalars(
            select(Vendor).where(Vendor.organization_id == document.organization_id)
        ).all()
        assert sorted(v.name for v in vendors) == ["Acme Corp", "Globex Customer"]

        amounts = session.scalars(
            select(Transaction.amount)
            .where(Transaction.document_id == document.id)
            .order_by(Transaction.row_number)
        ).all()
        assert amounts == [Decimal("-120.00"), Decimal("-80.00"), Decimal("1500.00")]

        doc = session.get(RawDocument, document.id)
        assert doc.status == DocumentStatus.PROCESSED
        assert doc.row_count == 3
        assert doc.extraction_confidence == 1.0
        assert doc.summary.startswith("Imported 3 transactions")


def test_document_with_no_parseable_amounts_ends_in_error():
    body = (
        b"Date,Amount,Vendor\n"
        b"2024-03-01,abc,Acme\n"
        b"2024-03-02,,Globex\n"
        b"2024-03-03,n/a,Initech\n"
    )
    with SessionLocal() as session:
        document = _upload(session, body)

        result = _pipeline().ingest_document(document_id=document.id)

        assert result.status == "error"
        session.expire_all()
        doc = session.get(RawDocument, document.id)
        assert doc.status == DocumentStatus.ERROR
        assert doc.error_message == "No valid rows could be imported"
        assert doc.row_count == 3
        assert sum(doc.skip_counts.values()) == 3
        assert doc.skip_counts == {"invalid_amount": 3}
        count = session.scalar(
            select(func.count())
            .select_from(Transaction)
            .where(Transaction.document_id == document.id)
        )
        assert count == 0


def test_partial_success_lowers_confidence_and_counts_skips():
    body = (
        b"Date,Amount,Vendor\n"
        b"2024-03-01,-10.00,Corner Deli\n"
        b"bad date,-10.00,Corner Deli\n"
        b"2024-03-03,-30.00,Corner Deli\n"
        b"2024-03-04,zero,Corner Deli\n"
    )
    with SessionLocal() as session:
        document = _upload(session, body)

        result = _pipeline().ingest_document(document_id=document.id)

        assert result.status == "processed"
        assert result.created == 2
        assert result.skipped == {"invalid_date": 1, "invalid_amount": 1}
        assert result.extraction_confidence == 0.5


def test_ingesting_twice_does_not_duplicate_rows():
    body = b"Date,Amount,Vendor\n2024-03-01,-10.00,Corner Deli\n2024-03-02,-12.00,Corner Deli\n"
    normalizer = FakeNormalizer()
    with SessionLocal() as session:
        document = _upload(session, body)
        pipeline = _pipeline(normalizer)

        first = pipeline.ingest_document(document_id=document.id)
        second = pipeline.ingest_document(document_id=document.id)

        assert first.created == 2
        assert second.status == "processed"
        assert second.created == 0
        assert len(normalizer.calls) == 1
        count = session.scalar(
            select(func.count())
            .select_from(Transaction)
            .where(Transaction.document_id == document.id)
        )
        assert count == 2


def test_reprocessing_an_errored_document_reuses_written_rows():
    body = b"Date,Amount,Vendor\n2024-03-01,-10.00,Corner Deli\n2024-03-02,-12.00,Corner Deli\n"
    with SessionLocal() as session:
        document = _upload(session, body)
        pipeline = _pipeline()
        pipeline.ingest_document(document_id=document.id)

        session.execute(
            RawDocument.__table__.update()
            .where(RawDocument.id == document.id)
            .values(status=DocumentStatus.ERROR)
        )
        session.commit()

        again = pipeline.ingest_document(document_id=document.id)

        assert again.status == "processed"
        assert again.created == 0
        assert again.reused == 2
        assert again.skipped == {"already_imported": 2}


def test_busy_document_is_skipped():
    body = b"Date,Amount,Vendor\n2024-03-01,-10.00,Corner Deli\n"
    with SessionLocal() as session:
        document = _upload(session, body)
        session.execute(
            RawDocument.__table__.update()
            .where(RawDocument.id == document.id)
            .values(status=DocumentStatus.PROCESSING)
        )
        session.commit()

        assert _pipeline().ingest_document(document_id=document.id) is None


def test_summary_sheet_writes_monthly_metrics():
    body = (
        b"Month,Department,Revenue,Expenses,Headcount\n"
        b"2024-01,Engineering,0,12000,5\n"
        b"2024-01,Sales,30000,8000,3\n"
    )
    with SessionLocal() as session:
        document = _upload(session, body, filename="summary.csv")

        result = _pipeline().ingest_document(document_id=document.id)

        assert result.status == "processed"
        assert result.created == 2
        metrics = session.scalars(
            select(MonthlyMetric)
            .where(MonthlyMetric.document_id == document.id)
            .order_by(MonthlyMetric.revenue)
        ).all()
        assert [m.profit for m in metrics] == [Decimal("-12000.00"), Decimal("22000.00")]
        assert metrics[1].headcount == 3


def test_reprocessing_a_summary_sheet_reuses_written_metrics():
    body = (
        b"Month,Department,Revenue,Expenses,Headcount\n"
        b"2024-01,Engineering,0,12000,5\n"
        b"2024-01,Sales,30000,8000,3\n"
    )
    with SessionLocal() as session:
        document = _upload(session, body, filename="summary.csv")
        pipeline = _pipeline()
        pipeline.ingest_document(document_id=document.id)

        session.execute(
            RawDocument.__table__.update()
            .where(RawDocument.id == document.id)
            .values(status=DocumentStatus.ERROR)
        )
        session.commit()

        again = pipeline.ingest_document(document_id=document.id)

        assert again.status == "processed"
        assert again.created == 0
        assert again.reused == 2
        assert again.skipped == {"already_imported": 2}
        count = session.scalar(
            select(func.count())
            .select_from(MonthlyMetric)
            .where(MonthlyMetric.document_id == document.id)
        )
        assert count == 2


def test_unreadable_document_is_marked_error():
    with SessionLocal() as session:
        org = create_organization(session, name="Acme Holdings")
        document = create_document(
            session,
            organization=org,
            filename="scan.pdf",
            content_type="application/pdf",
            declared_type=DocumentType.INVOICE,
            body=b"\x00\x01\x02\x03",
        )

        result = _pipeline().ingest_document(document_id=document.id)

        assert result.status == "error"
        session.expire_all()
        doc = session.get(RawDocument, document.id)
        assert doc.summary == "The document could not be read."
        assert "PDF" in doc.error_message
