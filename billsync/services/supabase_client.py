from __future__ import annotations

import logging
from time import perf_counter
from typing import Any, Iterable, Mapping, Optional, Union

import httpx
from postgrest.exceptions import APIError
from supabase import AsyncClient, acreate_client

from billsync.core.config import Settings, get_settings
from billsync.core.errors import ConfigurationError
from billsync.core.logging import log_vendor_call
from billsync.schemas.common import ApiResult


ADMIN_NOT_INITIALIZED = "Supabase admin client not initialized"

FILTER_OPERATORS = ("eq", "neq", "gt", "gte", "lt", "lte", "is", "in")

# (column, operator, value); a mapping means equality on every key
Filter = tuple[str, str, Any]
Filters = Union[Mapping[str, Any], Iterable[Filter], None]


def _normalize_filters(filters: Filters) -> list[Filter]:
    if filters is None:
        return []
    if isinstance(filters, Mapping):
        return [(column, "eq", value) for column, value in filters.items()]
    normalized = []
    for column, operator, value in filters:
        if operator not in FILTER_OPERATORS:
            raise ValueError(f"Unsupported filter operator: {operator}")
        normalized.append((column, operator, value))
    return normalized


def _apply_filters(builder: Any, filters: list[Filter]) -> Any:
    for column, operator, value in filters:
        if operator == "is":
            builder = builder.is_(column, "null" if value is None else value)
        elif operator == "in":
            builder = builder.in_(column, list(value))
        else:
            builder = getattr(builder, operator)(column, value)
    return builder


def _status_from_api_error(exc: APIError) -> Optional[int]:
    code = str(getattr(exc, "code", "") or "")
    if code.isdigit() and len(code) == 3:
        return int(code)
    return None


class SupabaseService:
    """Table access on the anon client and on the service-role client.

    The service-role ("admin") client bypasses row level security and is only
    built when `SUPABASE_SERVICE_ROLE_KEY` is configured.
    """

    vendor = "supabase"

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client: Optional[AsyncClient] = None,
        admin_client: Optional[AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._client = client
        self._admin_client = admin_client
        self.logger = logging.getLogger("billsync.services.supabase")

    @property
    def has_admin(self) -> bool:
        return self._admin_client is not None or bool(self.settings.supabase_service_role_key)

    async def get_client(self) -> AsyncClient:
        if self._client is None:
            if not self.settings.supabase_anon_key:
                raise ConfigurationError("SUPABASE_ANON_KEY is not configured")
            self._client = await acreate_client(self.settings.supabase_url, self.settings.supabase_anon_key)
        return self._client

    async def get_admin_client(self) -> Optional[AsyncClient]:
        if self._admin_client is None and self.settings.supabase_service_role_key:
            self._admin_client = await acreate_client(
                self.settings.supabase_url,
                self.settings.supabase_service_role_key,
            )
        return self._admin_client

    async def query(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Filters = None,
        order: Optional[str] = None,
        ascending: bool = True,
        limit: Optional[int] = None,
    ) -> ApiResult:
        client = await self.get_client()
        return await self._select(client, table, columns, filters, order, ascending, limit)

    async def insert(self, table: str, values: Union[dict[str, Any], list[dict[str, Any]]]) -> ApiResult:
        client = await self.get_client()
        return await self._insert(client, table, values)

    async def update(self, table: str, values: dict[str, Any], *, filters: Filters) -> ApiResult:
        client = await self.get_client()
        return await self._update(client, table, values, filters)

    async def remove(self, table: str, *, filters: Filters) -> ApiResult:
        client = await self.get_client()
        return await self._remove(client, table, filters)

    async def admin_query(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Filters = None,
        order: Optional[str] = None,
        ascending: bool = True,
        limit: Optional[int] = None,
    ) -> ApiResult:
        client = await self.get_admin_client()
        if client is None:
            return ApiResult.fail(ADMIN_NOT_INITIALIZED)
        return await self._select(client, table, columns, filters, order, ascending, limit)

    async def admin_insert(
        self,
        table: str,
        values: Union[dict[str, Any], list[dict[str, Any]]],
    ) -> ApiResult:
        client = await self.get_admin_client()
        if client is None:
            return ApiResult.fail(ADMIN_NOT_INITIALIZED)
        return await self._insert(client, table, values)

    async def admin_update(self, table: str, values: dict[str, Any], *, filters: Filters) -> ApiResult:
        client = await self.get_admin_client()
        if client is None:
            return ApiResult.fail(ADMIN_NOT_INITIALIZED)
        return await self._update(client, table, values, filters)

    async def admin_remove(self, table: str, *, filters: Filters) -> ApiResult:
        client = await self.get_admin_client()
        if client is None:
            return ApiResult.fail(ADMIN_NOT_INITIALIZED)
        return await self._remove(client, table, filters)

    async def _select(
        self,
        client: AsyncClient,
        table: str,
        columns: str,
        filters: Filters,
        order: Optional[str],
        ascending: bool,
        limit: Optional[int],
    ) -> ApiResult:
        builder = _apply_filters(client.table(table).select(columns), _normalize_filters(filters))
        if order:
            builder = builder.order(order, desc=not ascending)
        if limit is not None:
            builder = builder.limit(limit)
        return await self._execute("select", table, builder)

    async def _insert(self, client: AsyncClient, table: str, values: Any) -> ApiResult:
        return await self._execute("insert", table, client.table(table).insert(values))

    async def _update(self, client: AsyncClient, table: str, values: dict[str, Any], filters: Filters) -> ApiResult:
        normalized = _normalize_filters(filters)
        if not normalized:
            raise ValueError("update requires at least one filter")
        builder = _apply_filters(client.table(table).update(values), normalized)
        return await self._execute("update", table, builder)

    async def _remove(self, client: AsyncClient, table: str, filters: Filters) -> ApiResult:
        normalized = _normalize_filters(filters)
        if not normalized:
            raise ValueError("delete requires at least one filter")
        builder = _apply_filters(client.table(table).delete(), normalized)
        return await self._execute("delete", table, builder)

    async def _execute(self, operation: str, table: str, builder: Any) -> ApiResult:
        start = perf_counter()
        try:
            response = await builder.execute()
        except APIError as exc:
            message = exc.message or str(exc)
            self._log(operation, table, start, "error", message)
            return ApiResult.fail(message, _status_from_api_error(exc), data=getattr(exc, "details", None))
        except httpx.HTTPError as exc:
            message = str(exc) or exc.__class__.__name__
            self._log(operation, table, start, "transport_error", message)
            return ApiResult.fail(message)
        self._log(operation, table, start, "success")
        data = response.data
        return ApiResult.ok(data if data is not None else [], 200)

    def _log(
        self,
        operation: str,
        table: str,
        start: float,
        result: str,
        error_message: Optional[str] = None,
    ) -> None:
        log_vendor_call(
            vendor=self.vendor,
            operation=f"{operation}:{table}",
            method=operation.upper(),
            url=f"{self.settings.supabase_url.rstrip('/')}/rest/v1/{table}",
            status_code=None,
            latency_ms=(perf_counter() - start) * 1000,
            result=result,
            error_message=error_message,
        )
