from __future__ import annotations

import hashlib
import hmac
import time
from typing import Callable, Generator, Optional

import httpx

from billsync.core.errors import ConfigurationError


def mask_secret(value: Optional[str], visible: int = 4) -> str:
    if not value:
        return "[redacted]"
    trimmed = value.strip()
    if len(trimmed) <= visible:
        return "*" * len(trimmed)
    return f"{trimmed[:visible]}***"


def sign_payload(secret: str, payload: str, timestamp: int) -> str:
    message = f"{timestamp}.{payload}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def build_authorization_header(
    secret: str,
    payload: str = "",
    *,
    timestamp: Optional[int] = None,
) -> str:
    """Return the backend `Authorization` value for the given request body.

    The backend recomputes the HMAC over ``"<timestamp>.<body>"`` so the
    payload must be the exact bytes sent on the wire, or ``""`` when the
    request has no JSON body.
    """
    if not secret:
        raise ConfigurationError("BACKEND_SECRET_KEY is not configured")
    ts = int(time.time()) if timestamp is None else timestamp
    signature = sign_payload(secret, payload, ts)
    return f"Bearer {signature}.{ts}"


class HmacSignatureAuth(httpx.Auth):
    requires_request_body = True

    def __init__(
        self,
        secret: str,
        *,
        organization_id: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ConfigurationError("BACKEND_SECRET_KEY is not configured")
        self.secret = secret
        self.organization_id = organization_id
        self.clock = clock

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        content_type = request.headers.get("Content-Type", "")
        if content_type.startswith("multipart/"):
            # multipart bodies are signed as empty
            payload = ""
        else:
            payload = request.content.decode("utf-8") if request.content else ""
        request.headers["Authorization"] = build_authorization_header(
            self.secret,
            payload,
            timestamp=int(self.clock()),
        )
        if self.organization_id:
            request.headers["X-Organization-ID"] = self.organization_id
        yield request


class BearerTokenAuth(httpx.Auth):
    def __init__(self, token: str):
        if not token:
            raise ConfigurationError("Bearer token is not configured")
        self.token = token

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers["Authorization"] = f"Bearer {self.token}"
        yield request
