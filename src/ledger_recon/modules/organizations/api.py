from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ledger_recon.api.deps import current_organization
from ledger_recon.core.db import db_session
from ledger_recon.modules.organizations.models import Organization
from ledger_recon.modules.organizations.schemas import OrganizationCreate, OrganizationOut
from ledger_recon.modules.organizations.service import create_organization

router = APIRouter(tags=["organizations"])


@router.post("/organizations", response_model=OrganizationOut, status_code=201)
def create(payload: OrganizationCreate, session: Session = Depends(db_session)) -> OrganizationOut:
    org = create_organization(session, name=payload.name, departments=payload.departments)
    return OrganizationOut.model_validate(org, from_attributes=True)


@router.get("/organizations/{organization_id}", response_model=OrganizationOut)
def read(org: Organization = Depends(current_organization)) -> OrganizationOut:
    return OrganizationOut.model_validate(org, from_attributes=True)
