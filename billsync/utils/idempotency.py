from __future__ import annotations

import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional, Tuple

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.db.models import IdempotencyKeys
from billsync.utils.hashing import canonical_json, sha256_hex


def _check_existing(existing: IdempotencyKeys, hashed_payload: str) -> None:
    if existing.request_hash != hashed_payload:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Idempotency key conflict",
        )
    if existing.response_body is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Idempotency key is currently in use",
        )


async def register_idempotency_key(
    session: AsyncSession,
    *,
    key: str,
    request_payload: Any,
    resource_type: str,
    fingerprint: str | None = None,
) -> Tuple[IdempotencyKeys, bool]:
    """Claim `key` for this request.

    Returns `(record, replay)`. A replay carries the stored response body;
    a different payload under the same key is a 409.
    """
    serialized_payload = fingerprint if fingerprint is not None else canonical_json(request_payload)
    hashed_payload = sha256_hex(serialized_payload)
    result = await session.execute(
        select(IdempotencyKeys).where(IdempotencyKeys.key == key)
    )
    existing = result.scalar_one_or_none()
    if existing:
        _check_existing(existing, hashed_payload)
        return existing, True

    record = IdempotencyKeys(
        run_id=None,
        key=key,
        resource_type=resource_type,
        request_hash=hashed_payload,
        response_body=None,
    )
    session.add(record)
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        result = await session.execute(
            select(IdempotencyKeys).where(IdempotencyKeys.key == key)
        )
        existing = result.scalar_one()
        _check_existing(existing, hashed_payload)
        return existing, True
    return record, False


async def store_idempotent_response(
    session: AsyncSession,
    record: IdempotencyKeys,
    response_body: Any,
    *,
    run_id: Optional[uuid.UUID] = None,
) -> None:
    record.response_body = response_body
    if run_id is not None:
        record.run_id = run_id
    await session.flush()


async def release_idempotency_key(session: AsyncSession, record: IdempotencyKeys) -> None:
    """Drop a claimed key whose request failed so the client can retry it."""
    await session.delete(record)
    await session.flush()


def _normalize_amount(value: Decimal) -> str:
    return str(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def build_fingerprint(*parts: Any) -> str:
    normalized: list[str] = []
    for part in parts:
        if isinstance(part, Decimal):
            normalized.append(_normalize_amount(part))
        elif part is None:
            normalized.append("")
        elif isinstance(part, (dict, list)):
            normalized.append(canonical_json(part))
        else:
            normalized.append(str(part))
    return "|".join(normalized)
