from __future__ import annotations

import uuid

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from ledger_recon.core.db import db_session
from ledger_recon.core.logging import set_organization_context
from ledger_recon.modules.organizations.models import Organization
from ledger_recon.modules.organizations.service import get_organization


def current_organization(
    organization_id: uuid.UUID, session: Session = Depends(db_session)
) -> Organization:
    org = get_organization(session, organization_id=organization_id)
    set_organization_context(str(org.id))
    return org


def reviewer_name(x_reviewer: str | None = Header(default=None)) -> str:
    return (x_reviewer or "").strip()[:200] or "anonymous"
