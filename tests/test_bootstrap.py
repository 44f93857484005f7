from __future__ import annotations

from sqlalchemy import func, select

from ledger_recon import bootstrap as bootstrap_mod
from ledger_recon.core.db import SessionLocal
from ledger_recon.modules.ledger.models import Category, Department
from ledger_recon.modules.organizations.models import Organization


def test_bootstrap_seeds_configured_organization_once(monkeypatch):
    monkeypatch.setattr(bootstrap_mod.settings, "init_organization_name", "  Acme   Holdings ")
    monkeypatch.setattr(bootstrap_mod.settings, "init_departments", "Finance, Ops,,")

    bootstrap_mod.bootstrap()
    bootstrap_mod.bootstrap()

    with SessionLocal() as session:
        orgs = list(session.scalars(select(Organization)))
        assert [o.name for o in orgs] == ["Acme Holdings"]
        departments = session.scalars(
            select(Department.name).where(Department.organization_id == orgs[0].id)
        )
        assert sorted(departments) == ["Finance", "Ops"]
        assert session.scalar(select(func.count(Category.id))) > 0


def test_bootstrap_without_organization_name_is_a_no_op(monkeypatch):
    monkeypatch.setattr(bootstrap_mod.settings, "init_organization_name", None)
    bootstrap_mod.bootstrap()
    with SessionLocal() as session:
        assert session.scalar(select(func.count(Organization.id))) == 0
