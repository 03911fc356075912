from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


ReconciliationStatus = Literal["completed", "partial", "aborted", "failed", "needs_customer_choice"]


class InvoiceRequest(BaseModel):
    customer_name: str = Field(min_length=1, max_length=500)
    qbo_customer_index: Optional[int] = Field(
        default=None,
        description="1-based position in the candidate list returned with a 409 response.",
    )
    create_if_missing: bool = False
    new_customer_email: Optional[EmailStr] = None
    new_customer_currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    send_email: bool = True


class CustomerCandidate(BaseModel):
    index: int
    id: str
    display_name: Optional[str] = None
    company_name: Optional[str] = None
    currency: Optional[str] = None
    email: Optional[str] = None


class InvoiceLinePreview(BaseModel):
    product_code: str
    quantity: float
    unit_price: float
    amount: float
    sale_ids: list[str] = Field(default_factory=list)


class ReconciliationResult(BaseModel):
    status: ReconciliationStatus
    run_id: Optional[UUID] = None
    qbo_customer_id: Optional[str] = None
    invoice_id: Optional[str] = None
    doc_number: Optional[str] = None
    lines: list[InvoiceLinePreview] = Field(default_factory=list)
    sale_count: int = 0
    updated_count: int = 0
    failed_count: int = 0
    failed_sale_ids: list[str] = Field(default_factory=list)
    email_status: Optional[str] = None
    message: str = ""
    candidates: list[CustomerCandidate] = Field(default_factory=list)


class ReconciliationLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    sale_id: str
    financial_id: Optional[str] = None
    product_code: Optional[str] = None
    inv_id: Optional[str] = None
    supabase_status: str
    filemaker_status: str
    error: Optional[str] = None


class ReconciliationRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: str
    customer_name: str
    qbo_customer_id: Optional[str] = None
    invoice_id: Optional[str] = None
    doc_number: Optional[str] = None
    currency: Optional[str] = None
    status: str
    email_status: Optional[str] = None
    message: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    lines: list[ReconciliationLineRead] = Field(default_factory=list)
