from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.api.deps import get_app_state
from billsync.core.errors import InvoiceCreationError, ReconciliationAborted
from billsync.db import repo
from billsync.db.models import IdempotencyKeys, ReconciliationRun, RunStatus
from billsync.db.session import get_session
from billsync.schemas.billing import InvoiceRequest, ReconciliationResult, ReconciliationRunRead
from billsync.schemas.qbo import CustomerCreate, QBOCustomer
from billsync.services.reconciliation import (
    CustomerChoiceRequired,
    ReconciliationWorkflow,
    candidates_for,
    currency_refs,
)
from billsync.services.state import AppState
from billsync.utils.idempotency import (
    build_fingerprint,
    register_idempotency_key,
    release_idempotency_key,
    store_idempotent_response,
)
from billsync.utils.validators import normalize_limit, parse_uuid


router = APIRouter(prefix="/billing", tags=["billing"])
logger = logging.getLogger("billsync.api.billing")


def _customer_hooks(payload: InvoiceRequest):
    async def choose_customer(_: str, candidates: list[QBOCustomer]) -> Optional[int]:
        return payload.qbo_customer_index

    async def create_customer(name: str) -> Optional[CustomerCreate]:
        if not payload.create_if_missing:
            return None
        return CustomerCreate(
            display_name=name,
            email=payload.new_customer_email,
            currency=payload.new_customer_currency,
        )

    chooser = choose_customer if payload.qbo_customer_index is not None else None
    return chooser, create_customer


async def _settle_unexpected_failure(
    session: AsyncSession,
    record: IdempotencyKeys,
    run: Optional[ReconciliationRun],
    exc: Exception,
) -> None:
    """Free the key when no invoice exists, otherwise pin it to the resumable run."""
    if run is None or not run.invoice_id:
        await release_idempotency_key(session, record)
    else:
        body = ReconciliationResult(
            status=RunStatus.PARTIAL,
            run_id=run.id,
            qbo_customer_id=run.qbo_customer_id,
            invoice_id=run.invoice_id,
            doc_number=run.doc_number,
            message=f"Invoice {run.doc_number or run.invoice_id} created but write-back stopped: {exc}",
        )
        await store_idempotent_response(session, record, jsonable_encoder(body), run_id=run.id)
    await session.commit()
    logger.warning(
        "invoice_request_failed",
        extra={
            "idempotency_key": record.key,
            "run_id": str(run.id) if run is not None else None,
            "error": str(exc),
        },
    )


@router.post(
    "/customers/{customer_id}/invoice",
    response_model=ReconciliationResult,
    status_code=status.HTTP_201_CREATED,
    responses={status.HTTP_409_CONFLICT: {"model": ReconciliationResult}},
)
async def invoice_customer(
    customer_id: str,
    payload: InvoiceRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    session: AsyncSession = Depends(get_session),
    state: AppState = Depends(get_app_state),
):
    if payload.create_if_missing and payload.new_customer_currency:
        currency_refs(payload.new_customer_currency)

    record = None
    if idempotency_key:
        record, replay = await register_idempotency_key(
            session,
            key=idempotency_key,
            request_payload=payload.model_dump(mode="json"),
            resource_type="invoice:reconcile",
            fingerprint=build_fingerprint(customer_id, payload.model_dump(mode="json")),
        )
        if replay:
            logger.info("invoice_idempotent_replay", extra={"idempotency_key": idempotency_key})
            return ReconciliationResult.model_validate(record.response_body)
        await session.commit()

    chooser, creator = _customer_hooks(payload)
    workflow = ReconciliationWorkflow(
        state,
        session,
        choose_customer=chooser,
        create_customer=creator,
    )
    try:
        result = await workflow.run(customer_id, payload.customer_name, send_email=payload.send_email)
    except CustomerChoiceRequired as exc:
        if record is not None:
            await release_idempotency_key(session, record)
            await session.commit()
        body = ReconciliationResult(
            status="needs_customer_choice",
            message=str(exc),
            candidates=candidates_for(exc.candidates),
        )
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=jsonable_encoder(body))
    except (ReconciliationAborted, InvoiceCreationError):
        if record is not None:
            await release_idempotency_key(session, record)
            await session.commit()
        raise
    except Exception as exc:
        if record is not None:
            await _settle_unexpected_failure(session, record, workflow.current_run, exc)
        raise

    if record is not None:
        await store_idempotent_response(
            session,
            record,
            jsonable_encoder(result),
            run_id=result.run_id,
        )
        await session.commit()
    return result


@router.get("/runs", response_model=list[ReconciliationRunRead])
async def list_reconciliation_runs(
    customer_id: Optional[str] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    session: AsyncSession = Depends(get_session),
) -> list[ReconciliationRunRead]:
    runs = await repo.list_runs(session, customer_id=customer_id, limit=normalize_limit(limit))
    return [ReconciliationRunRead.model_validate(run) for run in runs]


@router.get("/runs/{run_id}", response_model=ReconciliationRunRead)
async def get_reconciliation_run(
    run_id: str,
    session: AsyncSession = Depends(get_session),
) -> ReconciliationRunRead:
    run = await repo.get_run(session, parse_uuid(run_id, "run_id"))
    return ReconciliationRunRead.model_validate(run)


@router.post("/runs/{run_id}/resume", response_model=ReconciliationResult)
async def resume_reconciliation_run(
    run_id: str,
    session: AsyncSession = Depends(get_session),
    state: AppState = Depends(get_app_state),
) -> ReconciliationResult:
    run = await repo.get_run(session, parse_uuid(run_id, "run_id"))
    return await ReconciliationWorkflow(state, session).resume(run)
