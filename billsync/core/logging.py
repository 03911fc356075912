from __future__ import annotations

import logging
import logging.config
from contextvars import ContextVar
from typing import Any, Optional

from pythonjsonlogger import jsonlogger


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
customer_id_ctx: ContextVar[Optional[str]] = ContextVar("customer_id", default=None)
run_id_ctx: ContextVar[Optional[str]] = ContextVar("run_id", default=None)


class RequestContextFilter(logging.Filter):
    """Injects request scoped context variables into each log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get()
        record.customer_id = customer_id_ctx.get()
        record.run_id = run_id_ctx.get()
        return True


def configure_logging(level: int = logging.INFO) -> None:
    """Configure JSON structured logging."""
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "request_context": {
                    "()": RequestContextFilter,
                }
            },
            "formatters": {
                "json": {
                    "()": jsonlogger.JsonFormatter,
                    "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                }
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stdout",
                    "level": level,
                    "formatter": "json",
                    "filters": ["request_context"],
                }
            },
            "loggers": {
                "": {
                    "handlers": ["default"],
                    "level": level,
                }
            },
        }
    )


def set_request_context(
    request_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    run_id: Optional[str] = None,
) -> None:
    if request_id is not None:
        request_id_ctx.set(request_id)
    if customer_id is not None:
        customer_id_ctx.set(customer_id)
    if run_id is not None:
        run_id_ctx.set(run_id)


def clear_request_context() -> None:
    request_id_ctx.set(None)
    customer_id_ctx.set(None)
    run_id_ctx.set(None)


def _redact_value(value: Any) -> str:
    if value is None:
        return ""
    return "***redacted***"


def sanitize_payload(payload: Any) -> Any:
    """Remove obvious secrets from a payload while keeping business fields."""

    sensitive_keys = {
        "authorization",
        "apikey",
        "api_key",
        "token",
        "secret",
        "password",
    }

    def _sanitize(value: Any) -> Any:
        if isinstance(value, dict):
            sanitized: dict[str, Any] = {}
            for key, val in value.items():
                key_lower = str(key).lower()
                if any(token in key_lower for token in sensitive_keys):
                    sanitized[key] = _redact_value(val)
                else:
                    sanitized[key] = _sanitize(val)
            return sanitized
        if isinstance(value, list):
            return [_sanitize(item) for item in value]
        return value

    return _sanitize(payload)


def log_vendor_call(
    *,
    vendor: str,
    operation: str,
    method: str,
    url: str,
    status_code: Optional[int],
    latency_ms: Optional[float],
    result: str,
    error_message: Optional[str] = None,
) -> None:
    logger = logging.getLogger(f"billsync.vendor.{vendor}")
    level = logging.INFO if result == "success" else logging.WARNING
    logger.log(
        level,
        "vendor_call_finished",
        extra={
            "event": "vendor_call_finished",
            "vendor": vendor,
            "operation": operation,
            "method": method,
            "url": url,
            "status_code": status_code,
            "latency_ms": None if latency_ms is None else round(latency_ms, 2),
            "result": result,
            "error_message": error_message,
        },
    )


def log_reconciliation_step(step: str, *, payload: Any = None, **fields: Any) -> None:
    logger = logging.getLogger("billsync.reconciliation")
    logger.info(
        "reconciliation_step",
        extra={
            "event": "reconciliation_step",
            "step": step,
            "request_id": request_id_ctx.get(),
            "customer_id": customer_id_ctx.get(),
            "run_id": run_id_ctx.get(),
            "payload": sanitize_payload(payload) if payload is not None else None,
            **fields,
        },
    )
