from __future__ import annotations

import uuid
from typing import Optional

from fastapi import HTTPException, status

from billsync.core.errors import ValidationError
from billsync.utils.dates import normalize_timeframe


_SORT_FIELDS = ("date", "amount")
_SORT_DIRECTIONS = ("asc", "desc")


def parse_uuid(value: str, field_name: str = "identifier") -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {field_name} format",
        ) from exc


def resolve_timeframe(value: Optional[str], default: str = "thismonth") -> str:
    if value is None:
        return default
    try:
        return normalize_timeframe(value)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc


def resolve_sort(field: Optional[str], direction: Optional[str]) -> tuple[str, str]:
    field = (field or "date").lower()
    if field not in _SORT_FIELDS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="sort must be one of: date, amount",
        )
    direction = (direction or "desc").lower()
    if direction not in _SORT_DIRECTIONS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="direction must be asc or desc",
        )
    return field, direction


def require_organization(value: Optional[str], default: Optional[str] = None) -> str:
    resolved = value or default
    if not resolved:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Organization ID is required",
        )
    return resolved


def normalize_limit(value: Optional[int], *, default: int = 50, limit: int = 500) -> int:
    if value is None:
        return default
    if value < 1:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="limit must be >= 1",
        )
    if value > limit:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"limit cannot exceed {limit}",
        )
    return value
