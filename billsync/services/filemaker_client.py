from __future__ import annotations

import json
from datetime import date
from typing import Any, Optional

import httpx

from billsync.core.security import BearerTokenAuth, HmacSignatureAuth
from billsync.schemas.common import ApiResult, extract_error_message
from billsync.services.vendor import VendorClient, path_segment
from billsync.utils.dates import build_timeframe_query, business_today


# FileMaker answers a find with no hits using message code 401
NO_RECORDS_CODE = "401"


def response_rows(payload: Any) -> list[dict[str, Any]]:
    """Return `response.data` from a Data API payload, or an empty list."""
    if not isinstance(payload, dict):
        return []
    response = payload.get("response")
    if not isinstance(response, dict):
        return []
    rows = response.get("data")
    return rows if isinstance(rows, list) else []


def _first_message(payload: Any) -> tuple[Optional[str], Optional[str]]:
    if not isinstance(payload, dict):
        return None, None
    messages = payload.get("messages")
    if isinstance(messages, list) and messages and isinstance(messages[0], dict):
        code = messages[0].get("code")
        return (str(code) if code is not None else None), messages[0].get("message")
    return None, None


class FileMakerClient(VendorClient):
    vendor = "filemaker"

    @property
    def base_url(self) -> str:
        return self.settings.filemaker_base_url

    @property
    def records_layout(self) -> str:
        return self.settings.filemaker_records_layout

    def build_auth(self) -> httpx.Auth:
        if self.settings.filemaker_bearer_token:
            return BearerTokenAuth(self.settings.filemaker_bearer_token)
        return HmacSignatureAuth(self.settings.backend_secret_key or "")

    def error_message(self, body: Any, status_code: Optional[int]) -> str:
        message = extract_error_message(body, status_code)
        _, fm_message = _first_message(body)
        if fm_message and message.startswith("HTTP "):
            return str(fm_message)
        return message

    async def list_records(self, layout: str, **options: Any) -> ApiResult:
        params = {key: str(value) for key, value in options.items() if value is not None}
        return await self.send(
            "list_records",
            "GET",
            f"/records/{path_segment(layout)}",
            params=params or None,
        )

    async def get_record(self, layout: str, record_id: str) -> ApiResult:
        return await self.send(
            "get_record",
            "GET",
            f"/records/{path_segment(layout)}/{path_segment(record_id)}",
        )

    async def find_records(self, layout: str, query: list[dict[str, Any]]) -> ApiResult:
        result = await self.send(
            "find_records",
            "POST",
            f"/records/{path_segment(layout)}",
            params={"_find": "true"},
            json_body={"query": query},
        )
        if not result.success:
            code, _ = _first_message(result.data)
            if code == NO_RECORDS_CODE:
                return ApiResult.ok({"response": {"data": []}, "messages": result.data.get("messages")}, 200)
        return result

    async def create_record(self, layout: str, field_data: dict[str, Any]) -> ApiResult:
        return await self.send(
            "create_record",
            "POST",
            f"/records/{path_segment(layout)}",
            json_body={"fieldData": field_data},
            retry=False,
        )

    async def update_record(self, layout: str, record_id: str, field_data: dict[str, Any]) -> ApiResult:
        return await self.send(
            "update_record",
            "PATCH",
            f"/records/{path_segment(layout)}/{path_segment(record_id)}",
            json_body={"fieldData": field_data},
        )

    async def delete_record(self, layout: str, record_id: str) -> ApiResult:
        return await self.send(
            "delete_record",
            "DELETE",
            f"/records/{path_segment(layout)}/{path_segment(record_id)}",
        )

    async def execute_script(self, layout: str, script_name: str, param: Any = None) -> ApiResult:
        params = None
        if param is not None and param != "":
            params = {"script.param": param if isinstance(param, str) else json.dumps(param)}
        return await self.send(
            "execute_script",
            "GET",
            f"/scripts/{path_segment(layout)}/{path_segment(script_name)}",
            params=params,
            retry=False,
        )

    async def download_container(
        self,
        layout: str,
        record_id: str,
        field_name: str,
        repetition: str = "1",
    ) -> ApiResult:
        return await self.send(
            "download_container",
            "GET",
            self._container_path(layout, record_id, field_name, repetition),
            raw=True,
        )

    async def upload_container(
        self,
        layout: str,
        record_id: str,
        field_name: str,
        filename: str,
        content: bytes,
        repetition: str = "1",
        content_type: str = "application/octet-stream",
    ) -> ApiResult:
        return await self.send(
            "upload_container",
            "POST",
            self._container_path(layout, record_id, field_name, repetition),
            files={"file": (filename, content, content_type)},
            retry=False,
        )

    async def get_record_by_uuid(self, uuid: str, layout: Optional[str] = None) -> ApiResult:
        result = await self.find_records(layout or self.records_layout, [{"__ID": uuid}])
        if not result.success:
            return result
        rows = response_rows(result.data)
        if not rows:
            return ApiResult.fail(f"FileMaker record {uuid} not found", 404)
        return ApiResult.ok(rows[0], result.status_code)

    async def find_record_id_by_uuid(self, uuid: str, layout: Optional[str] = None) -> ApiResult:
        """Resolve a record UUID (`__ID`) to the internal FileMaker recordId."""
        result = await self.get_record_by_uuid(uuid, layout)
        if not result.success:
            return result
        record_id = result.data.get("recordId")
        if record_id is None:
            return ApiResult.fail(f"FileMaker record {uuid} has no recordId")
        return ApiResult.ok(str(record_id), result.status_code)

    async def update_record_by_uuid(
        self,
        uuid: str,
        field_data: dict[str, Any],
        layout: Optional[str] = None,
    ) -> ApiResult:
        layout = layout or self.records_layout
        lookup = await self.find_record_id_by_uuid(uuid, layout)
        if not lookup.success:
            return lookup
        return await self.update_record(layout, lookup.data, field_data)

    async def fetch_financial_records(
        self,
        timeframe: str,
        customer_id: Optional[str] = None,
        project_id: Optional[str] = None,
        *,
        today: Optional[date] = None,
    ) -> ApiResult:
        query = build_timeframe_query(
            timeframe,
            today=today or business_today(self.settings),
            customer_id=customer_id,
            project_id=project_id,
        )
        self.logger.info(
            "filemaker_financial_fetch",
            extra={"timeframe": timeframe, "requests": len(query)},
        )
        return await self.find_records(self.records_layout, query)

    async def fetch_unpaid_records(self, customer_id: Optional[str] = None) -> ApiResult:
        return await self.fetch_financial_records("unpaid", customer_id)

    async def health_check(self) -> ApiResult:
        return await self.list_records(self.records_layout, _limit=1)

    def _container_path(self, layout: str, record_id: str, field_name: str, repetition: str) -> str:
        return "/containers/{}/{}/{}/{}".format(
            path_segment(layout),
            path_segment(record_id),
            path_segment(field_name),
            path_segment(repetition),
        )
