"""Reconciliation ledger and idempotency keys

Revision ID: 20241105_0001
Revises:
Create Date: 2024-11-05 17:20:00.000000
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


revision = "20241105_0001"
down_revision = None
branch_labels = None
depends_on = None


run_status_enum = sa.Enum(
    "pending",
    "invoiced",
    "completed",
    "partial",
    "aborted",
    "failed",
    name="reconciliation_run_status_enum",
    native_enum=False,
)

line_status_values = ("pending", "done", "failed", "skipped")

line_status_enum = sa.Enum(
    *line_status_values,
    name="reconciliation_line_status_enum",
    native_enum=False,
)

fm_status_enum = sa.Enum(
    *line_status_values,
    name="reconciliation_fm_status_enum",
    native_enum=False,
)


def _guid_type(bind) -> sa.types.TypeEngine:
    if bind.dialect.name == "postgresql":
        return postgresql.UUID(as_uuid=True)
    return sa.String(length=36)


def upgrade() -> None:
    bind = op.get_bind()
    guid = _guid_type(bind)

    op.create_table(
        "reconciliation_runs",
        sa.Column("id", guid, nullable=False),
        sa.Column("customer_id", sa.String(length=64), nullable=False),
        sa.Column("customer_name", sa.String(length=255), nullable=False),
        sa.Column("qbo_customer_id", sa.String(length=64), nullable=True),
        sa.Column("invoice_id", sa.String(length=64), nullable=True),
        sa.Column("doc_number", sa.String(length=64), nullable=True),
        sa.Column("currency", sa.String(length=8), nullable=True),
        sa.Column("status", run_status_enum, nullable=False, server_default="pending"),
        sa.Column("email_status", sa.String(length=32), nullable=True),
        sa.Column("message", sa.String(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_reconciliation_runs_customer_id",
        "reconciliation_runs",
        ["customer_id"],
    )
    op.create_index(
        "ix_reconciliation_runs_invoice_id",
        "reconciliation_runs",
        ["invoice_id"],
    )

    op.create_table(
        "reconciliation_lines",
        sa.Column("id", guid, nullable=False),
        sa.Column("run_id", guid, nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sale_id", sa.String(length=64), nullable=False),
        sa.Column("financial_id", sa.String(length=64), nullable=True),
        sa.Column("product_code", sa.String(length=255), nullable=True),
        sa.Column("inv_id", sa.String(length=128), nullable=True),
        sa.Column("supabase_status", line_status_enum, nullable=False, server_default="pending"),
        sa.Column("filemaker_status", fm_status_enum, nullable=False, server_default="pending"),
        sa.Column("error", sa.String(), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.ForeignKeyConstraint(
            ["run_id"],
            ["reconciliation_runs.id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("run_id", "sale_id", name="uq_reconciliation_line_sale"),
    )
    op.create_index(
        "ix_reconciliation_lines_run_id",
        "reconciliation_lines",
        ["run_id"],
    )

    op.create_table(
        "idempotency_keys",
        sa.Column("id", guid, nullable=False),
        sa.Column("run_id", guid, nullable=True),
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column("resource_type", sa.String(length=64), nullable=False),
        sa.Column("request_hash", sa.String(length=128), nullable=False),
        sa.Column("response_body", sa.JSON(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.ForeignKeyConstraint(
            ["run_id"],
            ["reconciliation_runs.id"],
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("key", name="uq_idempotency_key"),
    )
    op.create_index(
        "ix_idempotency_keys_run_id",
        "idempotency_keys",
        ["run_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_idempotency_keys_run_id", table_name="idempotency_keys")
    op.drop_table("idempotency_keys")
    op.drop_index("ix_reconciliation_lines_run_id", table_name="reconciliation_lines")
    op.drop_table("reconciliation_lines")
    op.drop_index("ix_reconciliation_runs_invoice_id", table_name="reconciliation_runs")
    op.drop_index("ix_reconciliation_runs_customer_id", table_name="reconciliation_runs")
    op.drop_table("reconciliation_runs")
