from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest
from fastapi import HTTPException

from ledger_recon.core.db import SessionLocal
from ledger_recon.core.errors import ProviderError
from ledger_recon.modules.documents.models import DocumentStatus, DocumentType, RawDocument
from ledger_recon.modules.documents.service import assert_reprocessable, create_document
from ledger_recon.modules.ingestion.providers import CategorySuggestion, VendorSuggestion
from ledger_recon.modules.ingestion.service import IngestionPipeline
from ledger_recon.modules.jobs.models import Job, JobKind, JobStatus
from ledger_recon.modules.jobs.service import (
    ingest_idempotency_key,
    run_ingestion_job,
    run_reconciliation_job,
    submit_job,
    try_start_job,
)
from ledger_recon.modules.organizations.service import create_organization
from ledger_recon.modules.reconciliation.feeds import FeedInvoice, StaticInvoiceFeed


class _Normalizer:
    def normalize_vendor(self, raw_name: str) -> VendorSuggestion:
        return VendorSuggestion(clean_name=raw_name.title())


class _Classifier:
    def classify(self, vendor: str, description: str, amount: Decimal) -> CategorySuggestion:
        return CategorySuggestion(category="Operations & Misc", confidence=0.6)


class _BrokenFeed:
    source = "broken"

    def list_invoices(self, organization_id, start, end):
        raise ProviderError("accounting system unavailable", provider="broken")


def _pipeline() -> IngestionPipeline:
    return IngestionPipeline(normalizer=_Normalizer(), classifier=_Classifier(), extractor=None)


def _document(session, body: bytes):
    org = create_organization(session, name="Acme Holdings")
    return create_document(
        session,
        organization=org,
        filename="statement.csv",
        content_type="text/csv",
        declared_type=DocumentType.CSV,
        body=body,
    )


def test_same_idempotency_key_returns_the_same_job():
    with SessionLocal() as session:
        org = create_organization(session, name="Acme Holdings")
        job, enqueue = submit_job(
            session, organization_id=org.id, kind=JobKind.RECONCILE, idempotency_key="run-1"
        )
        again, enqueue_again = submit_job(
            session, organization_id=org.id, kind=JobKind.RECONCILE, idempotency_key="run-1"
        )

        assert enqueue is True
        assert enqueue_again is False
        assert again.id == job.id
        assert job.status == JobStatus.QUEUED


def test_failed_job_is_requeued_on_resubmit():
    with SessionLocal() as session:
        org = create_organization(session, name="Acme Holdings")
        job, _ = submit_job(
            session, organization_id=org.id, kind=JobKind.RECONCILE, idempotency_key="run-2"
        )
        job.status = JobStatus.FAILED
        job.error_message = "boom"
        session.commit()

        again, enqueue = submit_job(
            session, organization_id=org.id, kind=JobKind.RECONCILE, idempotency_key="run-2"
        )

        assert enqueue is True
        assert again.id == job.id
        assert again.status == JobStatus.QUEUED
        assert again.error_message is None


def test_idempotency_key_cannot_be_reused_for_another_kind():
    with SessionLocal() as session:
        org = create_organization(session, name="Acme Holdings")
        submit_job(session, organization_id=org.id, kind=JobKind.RECONCILE, idempotency_key="k")
        with pytest.raises(HTTPException) as exc:
            submit_job(
                session, organization_id=org.id, kind=JobKind.INGEST_DOCUMENT, idempotency_key="k"
            )
        assert exc.value.status_code == 409


def test_job_starts_only_once():
    with SessionLocal() as session:
        org = create_organization(session, name="Acme Holdings")
        job, _ = submit_job(
            session, organization_id=org.id, kind=JobKind.RECONCILE, idempotency_key="once"
        )
        assert try_start_job(session, job=job) is True
        assert try_start_job(session, job=job) is False
        assert job.status == JobStatus.RUNNING


def test_ingestion_job_succeeds_and_stores_result():
    with SessionLocal() as session:
        document = _document(session, b"Date,Amount,Vendor\n2024-03-01,-10.00,Corner Deli\n")
        job, _ = submit_job(
            session,
            organization_id=document.organization_id,
            kind=JobKind.INGEST_DOCUMENT,
            idempotency_key=ingest_idempotency_key(document.id),
            document_id=document.id,
        )

        finished = run_ingestion_job(job_id=str(job.id), pipeline=_pipeline())

        assert finished.status == JobStatus.SUCCEEDED
        assert finished.result_json["created"] == 1
        assert finished.started_at is not None
        assert finished.finished_at is not None
        # A finished job is not picked up again.
        assert run_ingestion_job(job_id=str(job.id), pipeline=_pipeline()) is None


def test_ingestion_job_fails_when_document_has_no_usable_rows():
    with SessionLocal() as session:
        document = _document(session, b"Date,Amount,Vendor\n2024-03-01,abc,Corner Deli\n")
        job, _ = submit_job(
            session,
            organization_id=document.organization_id,
            kind=JobKind.INGEST_DOCUMENT,
            idempotency_key=ingest_idempotency_key(document.id),
            document_id=document.id,
        )

        finished = run_ingestion_job(job_id=str(job.id), pipeline=_pipeline())

        assert finished.status == JobStatus.FAILED
        assert finished.error_message == "No valid rows could be imported"
        assert finished.result_json["skipped"] == {"invalid_amount": 1}


def test_reconciliation_job_runs_with_params():
    with SessionLocal() as session:
        org = create_organization(session, name="Acme Holdings")
        job, _ = submit_job(
            session,
            organization_id=org.id,
            kind=JobKind.RECONCILE,
            idempotency_key="recon-march",
            params={"start": "2024-03-01", "end": "2024-03-31"},
        )
        feed = StaticInvoiceFeed(
            [
                FeedInvoice(
                    external_id="INV-1",
                    amount=Decimal("500.00"),
                    date=dt.date(2024, 3, 10),
                    vendor_name="Acme Corp",
                )
            ]
        )

        finished = run_reconciliation_job(job_id=str(job.id), feed=feed)

        assert finished.status == JobStatus.SUCCEEDED
        assert finished.result_json["start"] == "2024-03-01"
        assert finished.result_json["discrepancies_created"] == 1


def test_reconciliation_job_fails_on_provider_error():
    with SessionLocal() as session:
        org = create_organization(session, name="Acme Holdings")
        job, _ = submit_job(
            session, organization_id=org.id, kind=JobKind.RECONCILE, idempotency_key="broken"
        )

        finished = run_reconciliation_job(job_id=str(job.id), feed=_BrokenFeed())

        assert finished.status == JobStatus.FAILED
        assert "unavailable" in finished.error_message
        session.expire_all()
        assert session.get(Job, job.id).status == JobStatus.FAILED


def _force(session, model, row_id, **values) -> None:
    session.execute(model.__table__.update().where(model.id == row_id).values(**values))
    session.commit()
    session.expire_all()


def test_job_left_running_by_a_dead_worker_runs_again():
    long_ago = dt.datetime(2020, 1, 1, tzinfo=dt.UTC)
    with SessionLocal() as session:
        document = _document(session, b"Date,Amount,Vendor\n2024-03-01,-10.00,Corner Deli\n")
        key = ingest_idempotency_key(document.id)
        job, _ = submit_job(
            session,
            organization_id=document.organization_id,
            kind=JobKind.INGEST_DOCUMENT,
            idempotency_key=key,
            document_id=document.id,
        )
        _force(session, Job, job.id, status=JobStatus.RUNNING, started_at=long_ago)

        again, enqueue = submit_job(
            session,
            organization_id=document.organization_id,
            kind=JobKind.INGEST_DOCUMENT,
            idempotency_key=key,
            document_id=document.id,
        )

        assert enqueue is True
        assert again.id == job.id
        assert again.status == JobStatus.QUEUED
        finished = run_ingestion_job(job_id=str(job.id), pipeline=_pipeline())
        assert finished.status == JobStatus.SUCCEEDED
        assert finished.result_json["created"] == 1


def test_only_a_stale_running_job_is_reclaimed_by_a_worker():
    with SessionLocal() as session:
        document = _document(session, b"Date,Amount,Vendor\n2024-03-01,-10.00,Corner Deli\n")
        job, _ = submit_job(
            session,
            organization_id=document.organization_id,
            kind=JobKind.INGEST_DOCUMENT,
            idempotency_key=ingest_idempotency_key(document.id),
            document_id=document.id,
        )
        assert try_start_job(session, job=job) is True

        assert run_ingestion_job(job_id=str(job.id), pipeline=_pipeline()) is None
        _, enqueue = submit_job(
            session,
            organization_id=document.organization_id,
            kind=JobKind.INGEST_DOCUMENT,
            idempotency_key=ingest_idempotency_key(document.id),
            document_id=document.id,
        )
        assert enqueue is False

        _force(session, Job, job.id, started_at=dt.datetime(2020, 1, 1, tzinfo=dt.UTC))
        finished = run_ingestion_job(job_id=str(job.id), pipeline=_pipeline())
        assert finished.status == JobStatus.SUCCEEDED


def test_only_failed_or_stalled_documents_can_be_reprocessed():
    with SessionLocal() as session:
        document = _document(session, b"Date,Amount,Vendor\n2024-03-01,-10.00,Corner Deli\n")
        with pytest.raises(HTTPException) as exc:
            assert_reprocessable(document)
        assert exc.value.status_code == 409

        _force(session, RawDocument, document.id, status=DocumentStatus.PROCESSING)
        with pytest.raises(HTTPException):
            assert_reprocessable(session.get(RawDocument, document.id))

        _force(
            session,
            RawDocument,
            document.id,
            updated_at=dt.datetime(2020, 1, 1, tzinfo=dt.UTC),
        )
        assert_reprocessable(session.get(RawDocument, document.id))

        _force(session, RawDocument, document.id, status=DocumentStatus.ERROR)
        assert_reprocessable(session.get(RawDocument, document.id))
