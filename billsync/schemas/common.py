from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel


class ApiResult(BaseModel):
    """Uniform envelope returned by every vendor client call."""

    success: bool
    data: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @classmethod
    def ok(cls, data: Any = None, status_code: Optional[int] = None) -> "ApiResult":
        return cls(success=True, data=data, status_code=status_code)

    @classmethod
    def fail(cls, error: str, status_code: Optional[int] = None, data: Any = None) -> "ApiResult":
        return cls(success=False, error=error, status_code=status_code, data=data)


def extract_error_message(body: Any, status_code: Optional[int] = None) -> str:
    if isinstance(body, dict):
        for key in ("detail", "error", "message"):
            value = body.get(key)
            if value:
                return value if isinstance(value, str) else str(value)
        fault = body.get("Fault") or body.get("fault")
        if fault:
            errors = fault.get("Error") if isinstance(fault, dict) else None
            if isinstance(errors, list) and errors:
                first = errors[0] if isinstance(errors[0], dict) else {}
                detail = first.get("Detail") or first.get("Message")
                if detail:
                    return str(detail)
            return str(fault)
    if status_code is not None:
        return f"HTTP {status_code}"
    return "Unknown error"
