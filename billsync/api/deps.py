from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request, status

from billsync.core.config import Settings, get_settings
from billsync.core.errors import VendorApiError
from billsync.schemas.common import ApiResult
from billsync.services.state import AppState


async def enforce_api_key(
    api_key_header: str | None = Header(default=None, alias="X-API-Key"),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.api_key or not api_key_header or api_key_header != settings.api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )


def get_app_state(request: Request) -> AppState:
    state = getattr(request.app.state, "billsync", None)
    if state is None:
        state = AppState.from_settings(get_settings())
        request.app.state.billsync = state
    return state


def require_success(result: ApiResult, message: str) -> ApiResult:
    """Turn a failed vendor envelope into a `VendorApiError` for the error handlers."""
    if not result.success:
        raise VendorApiError(result.error or message, status_code=result.status_code, body=result.data)
    return result
