from __future__ import annotations

import uuid
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import Response
from sqlalchemy.orm import Session

from ledger_recon.api.deps import current_organization
from ledger_recon.core.db import db_session
from ledger_recon.core.logging import get_logger, log_event
from ledger_recon.core.storage import get_storage
from ledger_recon.modules.documents.models import DocumentType, RawDocument
from ledger_recon.modules.documents.schemas import DocumentOut, DocumentUploadOut
from ledger_recon.modules.documents.service import (
    assert_reprocessable,
    create_document,
    get_document,
    list_documents,
)
from ledger_recon.modules.jobs.models import Job, JobKind
from ledger_recon.modules.jobs.schemas import JobOut
from ledger_recon.modules.jobs.service import (
    ingest_idempotency_key,
    record_celery_task,
    submit_job,
)
from ledger_recon.modules.organizations.models import Organization
from ledger_recon.worker.tasks import ingest_document_task

router = APIRouter(tags=["documents"])
logger = get_logger(__name__)


def _submit_ingest(session: Session, document: RawDocument) -> Job:
    job, should_enqueue = submit_job(
        session,
        organization_id=document.organization_id,
        kind=JobKind.INGEST_DOCUMENT,
        idempotency_key=ingest_idempotency_key(document.id),
        document_id=document.id,
    )
    if should_enqueue:
        async_result = ingest_document_task.delay(str(job.id))
        log_event(
            logger,
            "celery.task.enqueued",
            task_name="ingest_document",
            celery_task_id=async_result.id,
            document_id=str(document.id),
            job_id=str(job.id),
        )
        session.expire_all()
        job = record_celery_task(session, job=job, celery_task_id=async_result.id)
    return job


@router.post("/organizations/{organization_id}/documents", response_model=DocumentUploadOut)
async def upload_document(
    upload: UploadFile = File(...),
    declared_type: DocumentType = Form(DocumentType.BANK_STATEMENT),
    org: Organization = Depends(current_organization),
    session: Session = Depends(db_session),
) -> DocumentUploadOut:
    body = await upload.read()
    log_event(
        logger,
        "upload.received",
        organization_id=str(org.id),
        filename=upload.filename or "upload.bin",
        content_type=upload.content_type,
        byte_size=len(body),
    )
    document = create_document(
        session,
        organization=org,
        filename=upload.filename or "upload.bin",
        content_type=upload.content_type,
        declared_type=declared_type,
        body=body,
    )
    job = _submit_ingest(session, document)
    session.refresh(document)
    return DocumentUploadOut(
        document=DocumentOut.model_validate(document, from_attributes=True), job_id=job.id
    )


@router.get("/organizations/{organization_id}/documents", response_model=list[DocumentOut])
def list_organization_documents(
    org: Organization = Depends(current_organization),
    session: Session = Depends(db_session),
) -> list[DocumentOut]:
    return [
        DocumentOut.model_validate(d, from_attributes=True)
        for d in list_documents(session, organization=org)
    ]


@router.get("/documents/{document_id}", response_model=DocumentOut)
def read_document(document_id: uuid.UUID, session: Session = Depends(db_session)) -> DocumentOut:
    document = get_document(session, document_id=document_id)
    return DocumentOut.model_validate(document, from_attributes=True)


def _content_disposition(filename: str) -> str:
    encoded = quote(filename, safe="")
    if encoded != filename:
        return f"attachment; filename*=utf-8''{encoded}"
    return f'attachment; filename="{filename}"'


@router.get("/documents/{document_id}/download")
def download_document(document_id: uuid.UUID, session: Session = Depends(db_session)) -> Response:
    document = get_document(session, document_id=document_id)
    body = get_storage().get(key=document.storage_key)
    return Response(
        content=body,
        media_type=document.content_type or "application/octet-stream",
        headers={"Content-Disposition": _content_disposition(document.filename)},
    )


@router.post("/documents/{document_id}/reprocess", response_model=JobOut)
def reprocess_document(document_id: uuid.UUID, session: Session = Depends(db_session)) -> JobOut:
    document = get_document(session, document_id=document_id)
    assert_reprocessable(document)
    job = _submit_ingest(session, document)
    return JobOut.model_validate(job, from_attributes=True)
