from __future__ import annotations

import uuid
from typing import Iterable, Optional

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.db.models import LineStatus, ReconciliationLine, ReconciliationRun, RunStatus


async def create_run(
    session: AsyncSession,
    *,
    customer_id: str,
    customer_name: str,
) -> ReconciliationRun:
    run = ReconciliationRun(
        customer_id=customer_id,
        customer_name=customer_name,
        status=RunStatus.PENDING,
        lines=[],
    )
    session.add(run)
    await session.flush()
    return run


async def get_run_optional(session: AsyncSession, run_id: uuid.UUID) -> Optional[ReconciliationRun]:
    result = await session.execute(
        select(ReconciliationRun).where(ReconciliationRun.id == run_id)
    )
    return result.scalar_one_or_none()


async def get_run(session: AsyncSession, run_id: uuid.UUID) -> ReconciliationRun:
    run = await get_run_optional(session, run_id)
    if run is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Reconciliation run not found",
        )
    return run


async def list_runs(
    session: AsyncSession,
    *,
    customer_id: Optional[str] = None,
    limit: int = 50,
) -> Iterable[ReconciliationRun]:
    stmt = select(ReconciliationRun)
    if customer_id:
        stmt = stmt.where(ReconciliationRun.customer_id == customer_id)
    stmt = stmt.order_by(ReconciliationRun.created_at.desc()).limit(limit)
    result = await session.execute(stmt)
    return result.scalars().all()


async def record_invoice(
    session: AsyncSession,
    run: ReconciliationRun,
    *,
    qbo_customer_id: str,
    currency: str,
    invoice_id: str,
    doc_number: Optional[str],
    lines: list[dict],
) -> ReconciliationRun:
    """Persist the created invoice and one pending ledger line per sale."""
    run.qbo_customer_id = qbo_customer_id
    run.currency = currency
    run.invoice_id = invoice_id
    run.doc_number = doc_number
    run.status = RunStatus.INVOICED
    for position, line in enumerate(lines):
        financial_id = line.get("financial_id")
        run.lines.append(
            ReconciliationLine(
                position=position,
                sale_id=str(line["sale_id"]),
                financial_id=financial_id,
                product_code=line.get("product_code"),
                inv_id=line.get("inv_id"),
                supabase_status=LineStatus.PENDING,
                filemaker_status=LineStatus.PENDING if financial_id else LineStatus.SKIPPED,
            )
        )
    await session.flush()
    return run


async def update_line(
    session: AsyncSession,
    line: ReconciliationLine,
    *,
    supabase_status: Optional[str] = None,
    filemaker_status: Optional[str] = None,
    error: Optional[str] = None,
) -> ReconciliationLine:
    if supabase_status is not None:
        line.supabase_status = supabase_status
    if filemaker_status is not None:
        line.filemaker_status = filemaker_status
    line.error = error
    await session.flush()
    return line


async def finish_run(
    session: AsyncSession,
    run: ReconciliationRun,
    *,
    status_value: str,
    message: Optional[str] = None,
    email_status: Optional[str] = None,
) -> ReconciliationRun:
    run.status = status_value
    if message is not None:
        run.message = message
    if email_status is not None:
        run.email_status = email_status
    await session.flush()
    return run
