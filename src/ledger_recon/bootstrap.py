from __future__ import annotations

from sqlalchemy import select

import ledger_recon.models  # noqa: F401
from ledger_recon.core.config import settings
from ledger_recon.core.db import SessionLocal, engine
from ledger_recon.core.logging import get_logger, log_event
from ledger_recon.core.models import Base
from ledger_recon.modules.organizations.models import Organization
from ledger_recon.modules.organizations.service import create_organization

logger = get_logger(__name__)


def bootstrap() -> None:
    if settings.environment == "dev" and str(settings.database_url).startswith("sqlite"):
        Base.metadata.create_all(engine)
        log_event(logger, "bootstrap.schema.created", database="sqlite")

    name = " ".join((settings.init_organization_name or "").split())
    if not name:
        return

    with SessionLocal() as session:
        if session.scalar(select(Organization.id).where(Organization.name == name)):
            return
        departments = [d.strip() for d in settings.init_departments.split(",") if d.strip()]
        org = create_organization(session, name=name, departments=departments)
        log_event(logger, "bootstrap.organization.seeded", organization_id=str(org.id))
