from __future__ import annotations

import asyncio
import json
import os
from typing import Any, Callable, Optional

import httpx
import pytest
from postgrest.exceptions import APIError
from sqlalchemy.ext.asyncio import async_sessionmaker

from billsync.core.config import Settings
from billsync.db.models import Base
from billsync.db.session import build_engine
from billsync.services.state import AppState

# billsync.main builds its app at import time, which requires API_KEY.
os.environ.setdefault("API_KEY", "test-api-key")


BACKEND_URL = "https://backend.test"


class MockBackend:
    """Route table for `httpx.MockTransport` that records every request."""

    def __init__(self) -> None:
        self.routes: list[tuple[str, str, Any]] = []
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, *responses: Any) -> None:
        """Queue responses for `method path`; the last one repeats.

        A response is a `(status, body)` tuple, a JSON body (status 200) or a
        callable taking the request.
        """
        self.routes.append((method.upper(), path, list(responses)))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for method, path, responses in self.routes:
            if method == request.method and path == request.url.path:
                response = responses[0] if len(responses) == 1 else responses.pop(0)
                if callable(response):
                    response = response(request)
                if isinstance(response, httpx.Response):
                    return response
                if isinstance(response, tuple):
                    status_code, body = response
                else:
                    status_code, body = 200, response
                return httpx.Response(status_code, json=body)
        return httpx.Response(404, json={"error": f"no route for {request.method} {request.url.path}"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, method: Optional[str] = None, path: Optional[str] = None) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if (method is None or request.method == method.upper())
            and (path is None or request.url.path == path)
        ]


class FakeResponse:
    def __init__(self, data: Any):
        self.data = data


class FakeQuery:
    def __init__(self, client: "FakeSupabase", table: str, action: str, payload: Any = None):
        self.client = client
        self.table = table
        self.action = action
        self.payload = payload
        self.filters: list[tuple[str, str, Any]] = []
        self._order: Optional[tuple[str, bool]] = None
        self._limit: Optional[int] = None

    def _filter(self, column: str, operator: str, value: Any) -> "FakeQuery":
        self.filters.append((column, operator, value))
        return self

    def eq(self, column: str, value: Any) -> "FakeQuery":
        return self._filter(column, "eq", value)

    def neq(self, column: str, value: Any) -> "FakeQuery":
        return self._filter(column, "neq", value)

    def gt(self, column: str, value: Any) -> "FakeQuery":
        return self._filter(column, "gt", value)

    def gte(self, column: str, value: Any) -> "FakeQuery":
        return self._filter(column, "gte", value)

    def lt(self, column: str, value: Any) -> "FakeQuery":
        return self._filter(column, "lt", value)

    def lte(self, column: str, value: Any) -> "FakeQuery":
        return self._filter(column, "lte", value)

    def is_(self, column: str, value: Any) -> "FakeQuery":
        return self._filter(column, "is", value)

    def in_(self, column: str, values: list[Any]) -> "FakeQuery":
        return self._filter(column, "in", values)

    def order(self, column: str, desc: bool = False) -> "FakeQuery":
        self._order = (column, desc)
        return self

    def limit(self, count: int) -> "FakeQuery":
        self._limit = count
        return self

    def _matches(self, row: dict[str, Any]) -> bool:
        for column, operator, value in self.filters:
            current = row.get(column)
            if operator == "eq" and current != value:
                return False
            if operator == "neq" and current == value:
                return False
            if operator == "is" and not (value == "null" and current is None):
                return False
            if operator == "in" and current not in value:
                return False
            if operator in ("gt", "gte", "lt", "lte"):
                if current is None:
                    return False
                if operator == "gt" and not current > value:
                    return False
                if operator == "gte" and not current >= value:
                    return False
                if operator == "lt" and not current < value:
                    return False
                if operator == "lte" and not current <= value:
                    return False
        return True

    async def execute(self) -> FakeResponse:
        self.client.calls.append(
            {"table": self.table, "action": self.action, "payload": self.payload, "filters": list(self.filters)}
        )
        failures = self.client.failures.get((self.table, self.action))
        if failures:
            raise failures.pop(0)

        rows = self.client.tables.setdefault(self.table, [])
        if self.action == "insert":
            new_rows = self.payload if isinstance(self.payload, list) else [self.payload]
            inserted = [dict(row) for row in new_rows]
            rows.extend(inserted)
            return FakeResponse([dict(row) for row in inserted])
        matched = [row for row in rows if self._matches(row)]
        if self.action == "update":
            for row in matched:
                row.update(self.payload)
            return FakeResponse([dict(row) for row in matched])
        if self.action == "delete":
            self.client.tables[self.table] = [row for row in rows if row not in matched]
            return FakeResponse([dict(row) for row in matched])

        selected = [dict(row) for row in matched]
        if self._order is not None:
            column, desc = self._order
            selected.sort(key=lambda row: (row.get(column) is None, row.get(column) or ""), reverse=desc)
        if self._limit is not None:
            selected = selected[: self._limit]
        return FakeResponse(selected)


class FakeTable:
    def __init__(self, client: "FakeSupabase", name: str):
        self.client = client
        self.name = name

    def select(self, columns: str = "*") -> FakeQuery:
        return FakeQuery(self.client, self.name, "select")

    def insert(self, values: Any) -> FakeQuery:
        return FakeQuery(self.client, self.name, "insert", values)

    def update(self, values: dict[str, Any]) -> FakeQuery:
        return FakeQuery(self.client, self.name, "update", values)

    def delete(self) -> FakeQuery:
        return FakeQuery(self.client, self.name, "delete")


class FakeSupabase:
    """In-memory stand-in for the supabase `AsyncClient` table builder."""

    def __init__(self, tables: Optional[dict[str, list[dict[str, Any]]]] = None):
        self.tables: dict[str, list[dict[str, Any]]] = tables if tables is not None else {}
        self.calls: list[dict[str, Any]] = []
        self.failures: dict[tuple[str, str], list[Exception]] = {}

    def table(self, name: str) -> FakeTable:
        return FakeTable(self, name)

    def fail(self, table: str, action: str, *errors: Exception) -> None:
        self.failures.setdefault((table, action), []).extend(errors)

    def writes(self, table: Optional[str] = None) -> list[dict[str, Any]]:
        return [
            call
            for call in self.calls
            if call["action"] != "select" and (table is None or call["table"] == table)
        ]


def api_error(message: str, code: str = "500") -> APIError:
    return APIError({"message": message, "code": code, "hint": None, "details": None})


async def create_ledger_tables(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def request_json(request: httpx.Request) -> Any:
    return json.loads(request.content.decode("utf-8"))


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        API_KEY="test-api-key",
        BACKEND_API_URL=BACKEND_URL,
        BACKEND_SECRET_KEY="backend-secret",
        ORGANIZATION_ID="org-1",
        SUPABASE_URL="https://supabase.test",
        SUPABASE_ANON_KEY="anon-key",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        RETRY_MAX_ATTEMPTS=2,
        RETRY_MAX_WAIT=0,
        QBO_TEST_PANEL_ENABLED=True,
        SCRIPT_BILLING_EMAILS="billing@obsi.test",
        BUSINESS_TIMEZONE="America/Vancouver",
    )


@pytest.fixture
def backend() -> MockBackend:
    return MockBackend()


@pytest.fixture
def supabase() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def app_state(settings: Settings, backend: MockBackend, supabase: FakeSupabase) -> AppState:
    return AppState.from_settings(
        settings,
        transport=backend.transport,
        supabase_client=supabase,
        supabase_admin_client=supabase,
    )


@pytest.fixture
def with_session(settings: Settings) -> Callable[[Callable[[Any], Any]], Any]:
    """Run `fn(session)` on a fresh event loop against the sqlite ledger."""

    def runner(fn: Callable[[Any], Any]) -> Any:
        async def main() -> Any:
            engine = build_engine(settings.database_url)
            await create_ledger_tables(engine)
            factory = async_sessionmaker(bind=engine, expire_on_commit=False)
            try:
                async with factory() as session:
                    return await fn(session)
            finally:
                await engine.dispose()

        return asyncio.run(main())

    return runner
