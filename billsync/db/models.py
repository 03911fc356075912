from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import CHAR, TypeDecorator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GUID(TypeDecorator):
    """Platform-independent GUID type."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return str(value)
        return str(uuid.UUID(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


class Base(DeclarativeBase):
    """Shared base class for ORM models."""

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )


class RunStatus:
    PENDING = "pending"
    INVOICED = "invoiced"
    COMPLETED = "completed"
    PARTIAL = "partial"
    ABORTED = "aborted"
    FAILED = "failed"

    ALL = (PENDING, INVOICED, COMPLETED, PARTIAL, ABORTED, FAILED)


class LineStatus:
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"

    ALL = (PENDING, DONE, FAILED, SKIPPED)


class ReconciliationRun(Base):
    __tablename__ = "reconciliation_runs"
    __table_args__ = (
        Index("ix_reconciliation_runs_customer_id", "customer_id"),
        Index("ix_reconciliation_runs_invoice_id", "invoice_id"),
    )

    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    qbo_customer_id: Mapped[Optional[str]] = mapped_column(String(64))
    invoice_id: Mapped[Optional[str]] = mapped_column(String(64))
    doc_number: Mapped[Optional[str]] = mapped_column(String(64))
    currency: Mapped[Optional[str]] = mapped_column(String(8))
    status: Mapped[str] = mapped_column(
        Enum(*RunStatus.ALL, name="reconciliation_run_status_enum", native_enum=False),
        default=RunStatus.PENDING,
        nullable=False,
    )
    email_status: Mapped[Optional[str]] = mapped_column(String(32))
    message: Mapped[Optional[str]] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )

    lines: Mapped[list["ReconciliationLine"]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ReconciliationLine.position",
    )


class ReconciliationLine(Base):
    __tablename__ = "reconciliation_lines"
    __table_args__ = (
        UniqueConstraint("run_id", "sale_id", name="uq_reconciliation_line_sale"),
        Index("ix_reconciliation_lines_run_id", "run_id"),
    )

    run_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("reconciliation_runs.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sale_id: Mapped[str] = mapped_column(String(64), nullable=False)
    financial_id: Mapped[Optional[str]] = mapped_column(String(64))
    product_code: Mapped[Optional[str]] = mapped_column(String(255))
    inv_id: Mapped[Optional[str]] = mapped_column(String(128))
    supabase_status: Mapped[str] = mapped_column(
        Enum(*LineStatus.ALL, name="reconciliation_line_status_enum", native_enum=False),
        default=LineStatus.PENDING,
        nullable=False,
    )
    filemaker_status: Mapped[str] = mapped_column(
        Enum(*LineStatus.ALL, name="reconciliation_fm_status_enum", native_enum=False),
        default=LineStatus.PENDING,
        nullable=False,
    )
    error: Mapped[Optional[str]] = mapped_column(String)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )

    run: Mapped["ReconciliationRun"] = relationship(back_populates="lines")

    @property
    def needs_write_back(self) -> bool:
        open_states = (LineStatus.PENDING, LineStatus.FAILED)
        return self.supabase_status in open_states or self.filemaker_status in open_states


class IdempotencyKeys(Base):
    __tablename__ = "idempotency_keys"
    __table_args__ = (
        UniqueConstraint("key", name="uq_idempotency_key"),
        Index("ix_idempotency_keys_run_id", "run_id"),
    )

    run_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(),
        ForeignKey("reconciliation_runs.id", ondelete="SET NULL"),
        nullable=True,
    )
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(64), nullable=False)
    request_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    response_body: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON(none_as_null=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
