"""initial schema

Revision ID: 0a1b2c3d4e5f
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0a1b2c3d4e5f"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _org_column() -> sa.Column:
    return sa.Column(
        "organization_id",
        sa.Uuid(),
        sa.ForeignKey("organizations_organization.id"),
        nullable=False,
    )


def _enum(name: str, *members: str) -> sa.Enum:
    return sa.Enum(*members, name=name, native_enum=False)


def _confirmed_only() -> dict:
    predicate = sa.text("state = 'CONFIRMED'")
    return {"sqlite_where": predicate, "postgresql_where": predicate}


def upgrade() -> None:
    op.create_table(
        "organizations_organization",
        *_base_columns(),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "documents_raw_document",
        *_base_columns(),
        _org_column(),
        sa.Column("filename", sa.String(length=512), nullable=False),
        sa.Column("content_type", sa.String(length=200), nullable=True),
        sa.Column("byte_size", sa.Integer(), nullable=False),
        sa.Column("sha256", sa.String(length=64), nullable=False),
        sa.Column("storage_key", sa.String(length=1024), nullable=False),
        sa.Column(
            "declared_type",
            _enum("documenttype", "BANK_STATEMENT", "INVOICE", "RECEIPT", "CSV"),
            nullable=False,
        ),
        sa.Column(
            "status",
            _enum("documentstatus", "UPLOADED", "PROCESSING", "PROCESSED", "ERROR"),
            nullable=False,
        ),
        sa.Column("extraction_confidence", sa.Float(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("row_count", sa.Integer(), nullable=True),
        sa.Column("skip_counts", sa.JSON(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_documents_raw_document_organization_id"),
        "documents_raw_document",
        ["organization_id"],
    )
    op.create_index(op.f("ix_documents_raw_document_sha256"), "documents_raw_document", ["sha256"])
    op.create_index(op.f("ix_documents_raw_document_status"), "documents_raw_document", ["status"])
    op.create_index(
        op.f("ix_documents_raw_document_storage_key"), "documents_raw_document", ["storage_key"]
    )

    op.create_table(
        "jobs_job",
        *_base_columns(),
        _org_column(),
        sa.Column("kind", _enum("jobkind", "INGEST_DOCUMENT", "RECONCILE"), nullable=False),
        sa.Column(
            "status",
            _enum("jobstatus", "QUEUED", "RUNNING", "SUCCEEDED", "FAILED"),
            nullable=False,
        ),
        sa.Column("idempotency_key", sa.String(length=200), nullable=False),
        sa.Column(
            "document_id",
            sa.Uuid(),
            sa.ForeignKey("documents_raw_document.id"),
            nullable=True,
        ),
        sa.Column("params_json", sa.JSON(), nullable=False),
        sa.Column("result_json", sa.JSON(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("celery_task_id", sa.String(length=200), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index(op.f("ix_jobs_job_organization_id"), "jobs_job", ["organization_id"])
    op.create_index(op.f("ix_jobs_job_kind"), "jobs_job", ["kind"])
    op.create_index(op.f("ix_jobs_job_status"), "jobs_job", ["status"])
    op.create_index(op.f("ix_jobs_job_document_id"), "jobs_job", ["document_id"])

    for table, length in (
        ("ledger_vendor", 200),
        ("ledger_category", 100),
        ("ledger_department", 100),
    ):
        extra = (
            [sa.Column("is_recurring", sa.Boolean(), nullable=False)]
            if table == "ledger_vendor"
            else []
        )
        op.create_table(
            table,
            *_base_columns(),
            _org_column(),
            sa.Column("name", sa.String(length=length), nullable=False),
            sa.Column("normalized_name", sa.String(length=length), nullable=False),
            *extra,
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "organization_id", "normalized_name", name=f"uq_{table}_name"
            ),
        )
        op.create_index(op.f(f"ix_{table}_organization_id"), table, ["organization_id"])

    op.create_table(
        "ledger_transaction",
        *_base_columns(),
        _org_column(),
        sa.Column(
            "document_id",
            sa.Uuid(),
            sa.ForeignKey("documents_raw_document.id"),
            nullable=True,
        ),
        sa.Column("row_number", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("raw_vendor", sa.String(length=500), nullable=True),
        sa.Column("vendor_id", sa.Uuid(), sa.ForeignKey("ledger_vendor.id"), nullable=False),
        sa.Column(
            "category_id", sa.Uuid(), sa.ForeignKey("ledger_category.id"), nullable=False
        ),
        sa.Column("is_recurring", sa.Boolean(), nullable=False),
        sa.Column("classification_confidence", sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "document_id", "row_number", name="uq_ledger_transaction_document_row"
        ),
    )
    for column in ("organization_id", "document_id", "date", "vendor_id", "category_id"):
        op.create_index(op.f(f"ix_ledger_transaction_{column}"), "ledger_transaction", [column])

    op.create_table(
        "ledger_monthly_metric",
        *_base_columns(),
        _org_column(),
        sa.Column(
            "document_id",
            sa.Uuid(),
            sa.ForeignKey("documents_raw_document.id"),
            nullable=True,
        ),
        sa.Column("row_number", sa.Integer(), nullable=False),
        sa.Column(
            "department_id", sa.Uuid(), sa.ForeignKey("ledger_department.id"), nullable=True
        ),
        sa.Column("vendor_id", sa.Uuid(), sa.ForeignKey("ledger_vendor.id"), nullable=True),
        sa.Column("month", sa.Date(), nullable=False),
        sa.Column("revenue", sa.Numeric(14, 2), nullable=False),
        sa.Column("expenses", sa.Numeric(14, 2), nullable=False),
        sa.Column("profit", sa.Numeric(14, 2), nullable=False),
        sa.Column("headcount", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "document_id", "row_number", name="uq_ledger_monthly_metric_document_row"
        ),
    )
    for column in ("organization_id", "document_id", "department_id", "month"):
        op.create_index(
            op.f(f"ix_ledger_monthly_metric_{column}"), "ledger_monthly_metric", [column]
        )

    op.create_table(
        "reconciliation_external_invoice",
        *_base_columns(),
        _org_column(),
        sa.Column("source", sa.String(length=50), nullable=False),
        sa.Column("external_id", sa.String(length=200), nullable=False),
        sa.Column("number", sa.String(length=100), nullable=True),
        sa.Column("kind", _enum("invoicekind", "INVOICE", "BILL"), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("vendor_name", sa.String(length=200), nullable=False),
        sa.Column(
            "status", _enum("invoicestatus", "OPEN", "PAID", "PARTIAL", "VOID"), nullable=False
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "organization_id",
            "source",
            "external_id",
            name="uq_reconciliation_invoice_external",
        ),
    )
    for column in ("organization_id", "date"):
        op.create_index(
            op.f(f"ix_reconciliation_external_invoice_{column}"),
            "reconciliation_external_invoice",
            [column],
        )

    op.create_table(
        "reconciliation_match",
        *_base_columns(),
        _org_column(),
        sa.Column(
            "transaction_id", sa.Uuid(), sa.ForeignKey("ledger_transaction.id"), nullable=False
        ),
        sa.Column(
            "invoice_id",
            sa.Uuid(),
            sa.ForeignKey("reconciliation_external_invoice.id"),
            nullable=False,
        ),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column(
            "state", _enum("matchstate", "PENDING", "CONFIRMED", "REJECTED"), nullable=False
        ),
        sa.Column("amount_delta", sa.Numeric(14, 2), nullable=False),
        sa.Column("date_delta_days", sa.Integer(), nullable=False),
        sa.Column("matched_on", sa.JSON(), nullable=False),
        sa.Column("decided_by", sa.String(length=200), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("transaction_id", "invoice_id", name="uq_reconciliation_match_pair"),
    )
    for column in ("organization_id", "transaction_id", "invoice_id", "state"):
        op.create_index(
            op.f(f"ix_reconciliation_match_{column}"), "reconciliation_match", [column]
        )
    op.create_index(
        "uq_reconciliation_match_confirmed_transaction",
        "reconciliation_match",
        ["transaction_id"],
        unique=True,
        **_confirmed_only(),
    )
    op.create_index(
        "uq_reconciliation_match_confirmed_invoice",
        "reconciliation_match",
        ["invoice_id"],
        unique=True,
        **_confirmed_only(),
    )

    op.create_table(
        "reconciliation_discrepancy",
        *_base_columns(),
        _org_column(),
        sa.Column(
            "kind",
            _enum(
                "discrepancykind",
                "INVOICE_WITHOUT_TRANSACTION",
                "TRANSACTION_WITHOUT_INVOICE",
                "AMOUNT_MISMATCH",
                "MATCHING_AMBIGUITY",
            ),
            nullable=False,
        ),
        sa.Column(
            "transaction_id", sa.Uuid(), sa.ForeignKey("ledger_transaction.id"), nullable=True
        ),
        sa.Column(
            "invoice_id",
            sa.Uuid(),
            sa.ForeignKey("reconciliation_external_invoice.id"),
            nullable=True,
        ),
        sa.Column("amount_delta", sa.Numeric(14, 2), nullable=True),
        sa.Column(
            "severity",
            _enum("discrepancyseverity", "CRITICAL", "WARNING", "INFO"),
            nullable=False,
        ),
        sa.Column(
            "state",
            _enum("discrepancystate", "OPEN", "RESOLVED", "IGNORED"),
            nullable=False,
        ),
        sa.Column("title", sa.String(length=300), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("suggested_action", sa.Text(), nullable=True),
        sa.Column("data_json", sa.JSON(), nullable=False),
        sa.Column("dedupe_key", sa.String(length=200), nullable=False),
        sa.Column("resolved_by", sa.String(length=200), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "organization_id", "dedupe_key", name="uq_reconciliation_discrepancy_dedupe"
        ),
    )
    for column in ("organization_id", "kind", "transaction_id", "invoice_id", "state"):
        op.create_index(
            op.f(f"ix_reconciliation_discrepancy_{column}"),
            "reconciliation_discrepancy",
            [column],
        )


def downgrade() -> None:
    for table in (
        "reconciliation_discrepancy",
        "reconciliation_match",
        "reconciliation_external_invoice",
        "ledger_monthly_metric",
        "ledger_transaction",
        "ledger_department",
        "ledger_category",
        "ledger_vendor",
        "jobs_job",
        "documents_raw_document",
        "organizations_organization",
    ):
        op.drop_table(table)
