from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from time import perf_counter
from typing import Any, Optional
from urllib.parse import quote

import httpx

from billsync.core.config import Settings, get_settings
from billsync.core.http import get_async_client, request_with_retry_and_backoff
from billsync.core.logging import log_vendor_call
from billsync.schemas.common import ApiResult, extract_error_message


def path_segment(value: Any) -> str:
    return quote(str(value), safe="")


class VendorClient(ABC):
    """Shared request plumbing for the backend-proxied vendor APIs.

    Subclasses provide `base_url` and `build_auth()`. Credentials are
    resolved before the HTTP client is opened so a missing secret raises
    `ConfigurationError` without touching the network.
    """

    vendor = "vendor"

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self.transport = transport
        self.logger = logging.getLogger(f"billsync.services.{self.vendor}")

    @property
    @abstractmethod
    def base_url(self) -> str: ...

    @abstractmethod
    def build_auth(self) -> httpx.Auth: ...

    def error_message(self, body: Any, status_code: Optional[int]) -> str:
        return extract_error_message(body, status_code)

    async def send(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json_body: Any = None,
        files: Any = None,
        retry: bool = True,
        raw: bool = False,
    ) -> ApiResult:
        auth = self.build_auth()
        url = f"{self.base_url}{path}"
        kwargs: dict[str, Any] = {"headers": {"Accept": "application/json"}}
        if params:
            kwargs["params"] = params
        if json_body is not None:
            kwargs["json"] = json_body
        if files is not None:
            kwargs["files"] = files

        start = perf_counter()
        try:
            async with get_async_client(self.settings, transport=self.transport, auth=auth) as client:
                if retry:
                    response = await request_with_retry_and_backoff(
                        client,
                        method,
                        url,
                        settings=self.settings,
                        **kwargs,
                    )
                else:
                    response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            message = str(exc) or exc.__class__.__name__
            log_vendor_call(
                vendor=self.vendor,
                operation=operation,
                method=method,
                url=url,
                status_code=None,
                latency_ms=(perf_counter() - start) * 1000,
                result="transport_error",
                error_message=message,
            )
            return ApiResult.fail(message)

        latency_ms = (perf_counter() - start) * 1000
        body = self._decode(response, raw=raw)
        if response.is_success:
            log_vendor_call(
                vendor=self.vendor,
                operation=operation,
                method=method,
                url=url,
                status_code=response.status_code,
                latency_ms=latency_ms,
                result="success",
            )
            return ApiResult.ok(body, response.status_code)

        message = self.error_message(body, response.status_code)
        log_vendor_call(
            vendor=self.vendor,
            operation=operation,
            method=method,
            url=url,
            status_code=response.status_code,
            latency_ms=latency_ms,
            result="error",
            error_message=message,
        )
        return ApiResult.fail(message, response.status_code, data=body)

    @staticmethod
    def _decode(response: httpx.Response, *, raw: bool) -> Any:
        if raw and response.is_success:
            return response.content
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text
