from __future__ import annotations

import datetime as dt
import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_recon.api.deps import current_organization
from ledger_recon.core.db import db_session
from ledger_recon.modules.ledger.models import Category, Transaction, Vendor
from ledger_recon.modules.ledger.schemas import CategoryOut, TransactionOut, VendorOut
from ledger_recon.modules.organizations.models import Organization

router = APIRouter(tags=["ledger"])


@router.get("/organizations/{organization_id}/transactions", response_model=list[TransactionOut])
def list_transactions(
    start: dt.date | None = None,
    end: dt.date | None = None,
    vendor_id: uuid.UUID | None = None,
    document_id: uuid.UUID | None = None,
    limit: int = Query(default=500, ge=1, le=5000),
    org: Organization = Depends(current_organization),
    session: Session = Depends(db_session),
) -> list[TransactionOut]:
    stmt = select(Transaction).where(Transaction.organization_id == org.id)
    if start:
        stmt = stmt.where(Transaction.date >= start)
    if end:
        stmt = stmt.where(Transaction.date <= end)
    if vendor_id:
        stmt = stmt.where(Transaction.vendor_id == vendor_id)
    if document_id:
        stmt = stmt.where(Transaction.document_id == document_id)
    rows = session.scalars(
        stmt.order_by(Transaction.date.desc(), Transaction.row_number).limit(limit)
    )
    return [TransactionOut.model_validate(t, from_attributes=True) for t in rows]


@router.get("/organizations/{organization_id}/vendors", response_model=list[VendorOut])
def list_vendors(
    org: Organization = Depends(current_organization),
    session: Session = Depends(db_session),
) -> list[VendorOut]:
    rows = session.scalars(
        select(Vendor).where(Vendor.organization_id == org.id).order_by(Vendor.name)
    )
    return [VendorOut.model_validate(v, from_attributes=True) for v in rows]


@router.get("/organizations/{organization_id}/categories", response_model=list[CategoryOut])
def list_categories(
    org: Organization = Depends(current_organization),
    session: Session = Depends(db_session),
) -> list[CategoryOut]:
    rows = session.scalars(
        select(Category).where(Category.organization_id == org.id).order_by(Category.name)
    )
    return [CategoryOut.model_validate(c, from_attributes=True) for c in rows]
