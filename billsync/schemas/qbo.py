from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class QBOReference(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow", coerce_numbers_to_str=True)

    value: Optional[str] = None
    name: Optional[str] = None


class QBOEmailAddress(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow", coerce_numbers_to_str=True)

    address: Optional[str] = Field(default=None, alias="Address")


class QBOCustomer(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow", coerce_numbers_to_str=True)

    id: str = Field(alias="Id")
    display_name: Optional[str] = Field(default=None, alias="DisplayName")
    company_name: Optional[str] = Field(default=None, alias="CompanyName")
    currency_ref: Optional[QBOReference] = Field(default=None, alias="CurrencyRef")
    primary_email: Optional[QBOEmailAddress] = Field(default=None, alias="PrimaryEmailAddr")

    @property
    def currency(self) -> Optional[str]:
        if self.currency_ref is None:
            return None
        return self.currency_ref.value

    @property
    def email(self) -> Optional[str]:
        if self.primary_email is None:
            return None
        return self.primary_email.address


class SalesItemLineDetail(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow", coerce_numbers_to_str=True)

    item_ref: Optional[QBOReference] = Field(default=None, alias="ItemRef")
    qty: Optional[float] = Field(default=None, alias="Qty")
    unit_price: Optional[float] = Field(default=None, alias="UnitPrice")
    tax_code_ref: Optional[QBOReference] = Field(default=None, alias="TaxCodeRef")


class QBOInvoiceLine(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow", coerce_numbers_to_str=True)

    id: Optional[str] = Field(default=None, alias="Id")
    line_num: Optional[int] = Field(default=None, alias="LineNum")
    amount: Optional[float] = Field(default=None, alias="Amount")
    description: Optional[str] = Field(default=None, alias="Description")
    detail_type: Optional[str] = Field(default=None, alias="DetailType")
    sales_item_line_detail: Optional[SalesItemLineDetail] = Field(
        default=None,
        alias="SalesItemLineDetail",
    )


class QBOInvoice(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow", coerce_numbers_to_str=True)

    id: Optional[str] = Field(default=None, alias="Id")
    doc_number: Optional[str] = Field(default=None, alias="DocNumber")
    customer_ref: Optional[QBOReference] = Field(default=None, alias="CustomerRef")
    due_date: Optional[str] = Field(default=None, alias="DueDate")
    total_amount: Optional[float] = Field(default=None, alias="TotalAmt")
    lines: list[QBOInvoiceLine] = Field(default_factory=list, alias="Line")

    @property
    def sales_lines(self) -> list[QBOInvoiceLine]:
        return [line for line in self.lines if line.detail_type == "SalesItemLineDetail"]


class CustomerCreate(BaseModel):
    display_name: str = Field(min_length=1, max_length=500)
    company_name: Optional[str] = Field(default=None, max_length=500)
    email: Optional[EmailStr] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)

    def to_qbo_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "DisplayName": self.display_name,
            "CompanyName": self.company_name or self.display_name,
        }
        if self.email:
            payload["PrimaryEmailAddr"] = {"Address": str(self.email)}
        if self.currency and self.currency.upper() != "CAD":
            payload["CurrencyRef"] = {"value": self.currency.upper()}
        return payload
