from __future__ import annotations

import uuid

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_recon.core.logging import get_logger, log_event
from ledger_recon.modules.ingestion.categories import DEFAULT_ORGANIZATION_CATEGORIES
from ledger_recon.modules.ledger.repository import (
    find_or_create_category,
    find_or_create_department,
)
from ledger_recon.modules.organizations.models import Organization

logger = get_logger(__name__)


def create_organization(
    session: Session, *, name: str, departments: list[str] | None = None
) -> Organization:
    clean = " ".join((name or "").split())
    if not clean:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Organization name is required"
        )

    org = Organization(name=clean[:200])
    session.add(org)
    session.commit()
    session.refresh(org)

    for category in DEFAULT_ORGANIZATION_CATEGORIES:
        find_or_create_category(session, organization_id=org.id, name=category)
    seeded_departments = 0
    for department in departments or []:
        if department.strip():
            find_or_create_department(session, organization_id=org.id, name=department)
            seeded_departments += 1

    log_event(
        logger,
        "organization.created",
        organization_id=str(org.id),
        categories=len(DEFAULT_ORGANIZATION_CATEGORIES),
        departments=seeded_departments,
    )
    return org


def get_organization(session: Session, *, organization_id: uuid.UUID) -> Organization:
    org = session.scalar(select(Organization).where(Organization.id == organization_id))
    if not org:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")
    return org
