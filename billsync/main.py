from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from time import perf_counter
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from billsync.api import routes_billing, routes_diagnostics, routes_financial, routes_sales
from billsync.api.deps import enforce_api_key
from billsync.core import logging as logging_utils
from billsync.core.config import get_settings
from billsync.core.errors import (
    ConfigurationError,
    InvoiceCreationError,
    ReconciliationAborted,
    ValidationError,
    VendorApiError,
)
from billsync.db.session import get_engine
from billsync.services.state import AppState

RequestHandler = Callable[[Request], Awaitable[Response]]

ABORT_STATUS = {
    "customer_not_found": status.HTTP_404_NOT_FOUND,
    "nothing_to_invoice": status.HTTP_409_CONFLICT,
    "needs_customer_choice": status.HTTP_409_CONFLICT,
    "sales_unavailable": status.HTTP_502_BAD_GATEWAY,
    "customer_search_failed": status.HTTP_502_BAD_GATEWAY,
    "customer_create_failed": status.HTTP_502_BAD_GATEWAY,
}


def _error_response(
    request: Request,
    status_code: int,
    message: str,
    details: Any = None,
) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    payload = {
        "code": status_code,
        "message": message,
        "details": details,
        "correlation_id": request_id,
    }
    response = JSONResponse(status_code=status_code, content=payload)
    if request_id:
        response.headers["X-Request-Id"] = request_id
    return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging_utils.configure_logging()
    logger = logging.getLogger("billsync.lifespan")
    engine = get_engine()
    logger.info(
        "application_startup",
        extra={"app_version": settings.app_version},
    )
    try:
        yield
    finally:
        await engine.dispose()
        logger.info("application_shutdown")


def create_app(state: Optional[AppState] = None) -> FastAPI:
    settings = state.settings if state is not None else get_settings()
    app = FastAPI(
        title="Billsync",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.billsync = state

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next: RequestHandler):
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        logging_utils.set_request_context(request_id=request_id)
        start = perf_counter()
        logger = logging.getLogger("billsync.request")
        request.state.response_status = None
        try:
            response = await call_next(request)
            request.state.response_status = response.status_code
            response.headers["X-Request-Id"] = request_id
            return response
        except Exception:
            request.state.response_status = status.HTTP_500_INTERNAL_SERVER_ERROR
            raise
        finally:
            duration_ms = (perf_counter() - start) * 1000
            logger.info(
                "request_completed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": request.state.response_status,
                    "duration_ms": round(duration_ms, 2),
                },
            )
            logging_utils.clear_request_context()

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        if isinstance(exc.detail, str):
            return _error_response(request, exc.status_code, exc.detail)
        return _error_response(request, exc.status_code, "Request failed", exc.detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return _error_response(
            request,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "Validation error",
            jsonable_errors(exc),
        )

    @app.exception_handler(ValidationError)
    async def domain_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return _error_response(request, status.HTTP_400_BAD_REQUEST, str(exc), exc.errors)

    @app.exception_handler(ReconciliationAborted)
    async def reconciliation_aborted_handler(request: Request, exc: ReconciliationAborted) -> JSONResponse:
        status_code = ABORT_STATUS.get(exc.reason, status.HTTP_422_UNPROCESSABLE_ENTITY)
        return _error_response(request, status_code, str(exc), {"reason": exc.reason})

    @app.exception_handler(InvoiceCreationError)
    async def invoice_creation_handler(request: Request, exc: InvoiceCreationError) -> JSONResponse:
        return _error_response(request, status.HTTP_502_BAD_GATEWAY, str(exc))

    @app.exception_handler(VendorApiError)
    async def vendor_error_handler(request: Request, exc: VendorApiError) -> JSONResponse:
        logging.getLogger("billsync.errors").warning(
            "vendor_error",
            extra={"status_code": exc.status_code, "error_message": str(exc)},
        )
        return _error_response(
            request,
            status.HTTP_502_BAD_GATEWAY,
            str(exc),
            {"vendor_status": exc.status_code},
        )

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
        return _error_response(request, status.HTTP_503_SERVICE_UNAVAILABLE, str(exc))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        request_id = getattr(request.state, "request_id", None)
        logger = logging.getLogger("billsync.errors")
        logger.exception(
            "unhandled_error",
            extra={"correlation_id": request_id},
        )
        return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")

    if not settings.allow_docs_without_auth:
        app.dependencies.append(Depends(enforce_api_key))

    protected_router = APIRouter(dependencies=[Depends(enforce_api_key)])
    protected_router.include_router(routes_financial.router)
    protected_router.include_router(routes_sales.router)
    protected_router.include_router(routes_billing.router)
    protected_router.include_router(routes_diagnostics.router)
    app.include_router(protected_router)

    @app.get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": settings.app_version}

    return app


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    errors = []
    for error in exc.errors():
        error = dict(error)
        error.pop("ctx", None)
        errors.append(error)
    return errors


app = create_app()


def run() -> None:
    uvicorn.run(
        "billsync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        factory=False,
    )


if __name__ == "__main__":
    run()
