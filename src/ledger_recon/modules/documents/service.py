from __future__ import annotations

import uuid
from datetime import UTC, timedelta

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_recon.core.config import settings
from ledger_recon.core.logging import get_logger, log_event
from ledger_recon.core.models import utcnow
from ledger_recon.core.storage import document_key, get_storage, sha256_hex
from ledger_recon.modules.documents.models import DocumentStatus, DocumentType, RawDocument
from ledger_recon.modules.organizations.models import Organization

logger = get_logger(__name__)


def _sanitize_filename(name: str) -> str:
    # Base name only, with no quotes or control characters.
    name = name.replace("\\", "/").split("/")[-1]
    name = "".join(ch for ch in name if ch != '"' and (ch.isprintable() or ch.isspace()))
    return " ".join(name.split()).lstrip(".")


def create_document(
    session: Session,
    *,
    organization: Organization,
    filename: str,
    content_type: str | None,
    declared_type: DocumentType,
    body: bytes,
) -> RawDocument:
    if not body:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Upload is empty")
    if len(body) > settings.max_upload_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Upload exceeds {settings.max_upload_bytes} bytes",
        )

    clean_name = _sanitize_filename(filename) or "upload.bin"
    digest = sha256_hex(body)
    key = document_key(organization_id=organization.id, sha256=digest, filename=clean_name)
    stored = get_storage().put(key=key, body=body)

    document = RawDocument(
        organization_id=organization.id,
        filename=clean_name[:512],
        content_type=content_type,
        byte_size=stored.byte_size,
        sha256=stored.sha256,
        storage_key=stored.key,
        declared_type=declared_type,
        status=DocumentStatus.UPLOADED,
        skip_counts={},
    )
    session.add(document)
    session.commit()
    session.refresh(document)
    log_event(
        logger,
        "document.created",
        document_id=str(document.id),
        organization_id=str(organization.id),
        declared_type=declared_type.value,
        byte_size=document.byte_size,
        sha256=document.sha256,
    )
    return document


def list_documents(session: Session, *, organization: Organization) -> list[RawDocument]:
    return list(
        session.scalars(
            select(RawDocument)
            .where(RawDocument.organization_id == organization.id)
            .order_by(RawDocument.created_at.desc())
        )
    )


def get_document(session: Session, *, document_id: uuid.UUID) -> RawDocument:
    document = session.scalar(select(RawDocument).where(RawDocument.id == document_id))
    if not document:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
    return document


def processing_is_stale(document: RawDocument) -> bool:
    if document.status != DocumentStatus.PROCESSING or document.updated_at is None:
        return False
    updated_at = document.updated_at
    if updated_at.tzinfo is None:
        # SQLite returns naive UTC timestamps.
        updated_at = updated_at.replace(tzinfo=UTC)
    return updated_at < utcnow() - timedelta(minutes=int(settings.processing_stale_minutes))


def assert_reprocessable(document: RawDocument) -> None:
    if document.status == DocumentStatus.ERROR or processing_is_stale(document):
        return
    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=(
            "Only failed or stalled documents can be reprocessed "
            f"(status: {document.status.value})"
        ),
    )
