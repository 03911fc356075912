from __future__ import annotations

from typing import Any, Optional


class BillsyncError(RuntimeError):
    pass


class ConfigurationError(BillsyncError):
    """Raised before any network call when credentials are missing."""


class VendorApiError(BillsyncError):
    def __init__(self, message: str, *, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ValidationError(BillsyncError):
    def __init__(self, errors: list[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class ReconciliationAborted(BillsyncError):
    def __init__(self, message: str, *, reason: str = "aborted", details: Any = None):
        super().__init__(message)
        self.reason = reason
        self.details = details


class UnsupportedCurrencyError(ReconciliationAborted):
    def __init__(self, currency: str):
        super().__init__(f"Unsupported currency: {currency}", reason="unsupported_currency")
        self.currency = currency


class InvoiceCreationError(BillsyncError):
    pass
