from __future__ import annotations

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_recon.core.models import Base, Timestamped, UUIDPrimaryKey


class Organization(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "organizations_organization"

    name: Mapped[str] = mapped_column(String(200))
