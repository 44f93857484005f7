from __future__ import annotations

from fastapi import APIRouter

from ledger_recon.modules.documents.api import router as documents_router
from ledger_recon.modules.jobs.api import router as jobs_router
from ledger_recon.modules.ledger.api import router as ledger_router
from ledger_recon.modules.organizations.api import router as organizations_router
from ledger_recon.modules.reconciliation.api import router as reconciliation_router

router = APIRouter()

router.include_router(organizations_router, prefix="/api")
router.include_router(documents_router, prefix="/api")
router.include_router(jobs_router, prefix="/api")
router.include_router(ledger_router, prefix="/api")
router.include_router(reconciliation_router, prefix="/api")


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}
