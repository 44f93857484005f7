"""
Alembic model import hook.

Importing this module ensures all SQLAlchemy models are registered on Base.metadata.
"""

from __future__ import annotations

# Organizations first; every other table carries an organization_id foreign key
from ledger_recon.modules.organizations.models import Organization  # noqa: F401

from ledger_recon.modules.documents.models import RawDocument  # noqa: F401
from ledger_recon.modules.jobs.models import Job  # noqa: F401
from ledger_recon.modules.ledger.models import (  # noqa: F401
    Category,
    Department,
    MonthlyMetric,
    Transaction,
    Vendor,
)
from ledger_recon.modules.reconciliation.models import (  # noqa: F401
    Discrepancy,
    ExternalInvoice,
    Match,
)
