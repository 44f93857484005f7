from __future__ import annotations

import datetime as dt
import uuid
from decimal import Decimal

from pydantic import BaseModel


class VendorOut(BaseModel):
    id: uuid.UUID
    name: str
    is_recurring: bool


class CategoryOut(BaseModel):
    id: uuid.UUID
    name: str


class TransactionOut(BaseModel):
    id: uuid.UUID
    organization_id: uuid.UUID
    document_id: uuid.UUID | None
    row_number: int
    date: dt.date
    amount: Decimal
    currency: str
    description: str | None
    raw_vendor: str | None
    vendor_id: uuid.UUID
    category_id: uuid.UUID
    is_recurring: bool
    classification_confidence: float | None
    created_at: dt.datetime
