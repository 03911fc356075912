from __future__ import annotations

import json
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TimeEntry(BaseModel):
    """A billable-hours record read from the FileMaker records layout."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: Optional[str] = None
    record_id: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: str = "Unknown Customer"
    project_id: Optional[str] = None
    project_name: str = "Unknown Project"
    hours: float = 0.0
    rate: float = 0.0
    amount: float = 0.0
    date: Optional[str] = None
    month: int = 0
    year: int = 0
    billed: bool = False
    description: str = ""
    created_at: Optional[str] = None
    modified_at: Optional[str] = None


class ProjectGroup(BaseModel):
    project_id: Optional[str] = None
    project_name: str
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    records: list[TimeEntry] = Field(default_factory=list)
    total_amount: float = 0.0
    total_hours: float = 0.0


class CustomerGroup(BaseModel):
    customer_id: Optional[str] = None
    customer_name: str
    records: list[TimeEntry] = Field(default_factory=list)
    total_amount: float = 0.0
    total_hours: float = 0.0
    projects: dict[Optional[str], ProjectGroup] = Field(default_factory=dict)


class RecordTotals(BaseModel):
    total_amount: float = 0.0
    total_hours: float = 0.0
    billed_amount: float = 0.0
    billed_hours: float = 0.0
    unbilled_amount: float = 0.0
    unbilled_hours: float = 0.0


class MonthlyTotal(BaseModel):
    year: int
    month: int
    label: str
    total_amount: float = 0.0
    total_hours: float = 0.0
    billed_amount: float = 0.0
    unbilled_amount: float = 0.0
    record_count: int = 0


class ChartDataset(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    label: str
    data: list[float] = Field(default_factory=list)
    background_color: Optional[str] = Field(default=None, alias="backgroundColor")
    border_color: Optional[str] = Field(default=None, alias="borderColor")
    fill: Optional[bool] = None
    tension: Optional[float] = None


class ChartData(BaseModel):
    labels: list[str] = Field(default_factory=list)
    datasets: list[ChartDataset] = Field(default_factory=list)


class SaleLine(BaseModel):
    """A `customer_sales` row from Supabase."""

    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    organization_id: Optional[str] = None
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    quantity: float = 0.0
    unit_price: float = 0.0
    total_price: float = 0.0
    date: Optional[str] = None
    financial_id: Optional[str] = None
    inv_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "SaleLine":
        data = dict(row)
        customers = data.pop("customers", None)
        if isinstance(customers, str):
            try:
                customers = json.loads(customers)
            except ValueError:
                customers = None
        if isinstance(customers, dict) and not data.get("customer_name"):
            data["customer_name"] = customers.get("business_name")
        for key in ("quantity", "unit_price", "total_price"):
            if data.get(key) is None:
                data[key] = 0.0
        return cls.model_validate(data)


class Product(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: Optional[str] = None
    name: str = ""
    price: float = 0.0
    description: Optional[str] = None
    organization_id: Optional[str] = None

    @field_validator("price", mode="before")
    @classmethod
    def _price_default(cls, value: Any) -> Any:
        return 0.0 if value in (None, "") else value


class SalesTotals(BaseModel):
    total_amount: float = 0.0
    total_quantity: float = 0.0


class SalesCustomerGroup(BaseModel):
    customer_id: str
    customer_name: str
    records: list[SaleLine] = Field(default_factory=list)
    total_amount: float = 0.0
    total_quantity: float = 0.0


class SalesProductGroup(BaseModel):
    product_name: str
    records: list[SaleLine] = Field(default_factory=list)
    total_amount: float = 0.0
    total_quantity: float = 0.0


class SalesStats(BaseModel):
    total: int = 0
    total_amount: float = 0.0
    average_amount: float = 0.0
    min_amount: float = 0.0
    max_amount: float = 0.0
    by_type: dict[str, float] = Field(default_factory=lambda: {"sales": 0.0, "sellable": 0.0})


class SaleCreationError(BaseModel):
    financial_id: Optional[str] = None
    error: str


class SalesBatchResult(BaseModel):
    created: list[SaleLine] = Field(default_factory=list)
    errors: list[SaleCreationError] = Field(default_factory=list)
    message: str = ""


class ProductStats(BaseModel):
    total: int = 0
    average_price: float = 0.0
    min_price: float = 0.0
    max_price: float = 0.0


class ProductPriceGroups(BaseModel):
    low: list[Product] = Field(default_factory=list)
    medium: list[Product] = Field(default_factory=list)
    high: list[Product] = Field(default_factory=list)


class SalesMonthlyTotal(BaseModel):
    year: int
    month: int
    label: str
    total_amount: float = 0.0
    total_quantity: float = 0.0
    records: list[SaleLine] = Field(default_factory=list)


class FinancialRecordsResponse(BaseModel):
    timeframe: str
    records: list[TimeEntry] = Field(default_factory=list)
    totals: RecordTotals = Field(default_factory=RecordTotals)
    monthly_totals: list[MonthlyTotal] = Field(default_factory=list)


class CustomerSummary(BaseModel):
    customer_id: Optional[str] = None
    customer_name: str
    total_amount: float = 0.0
    total_hours: float = 0.0
    record_count: int = 0
    project_count: int = 0


class SalesActivityResponse(BaseModel):
    timeframe: Optional[str] = None
    records: list[SaleLine] = Field(default_factory=list)
    totals: SalesTotals = Field(default_factory=SalesTotals)
    by_customer: list[SalesCustomerGroup] = Field(default_factory=list)
    chart: Optional[ChartData] = None


class ProductCatalog(BaseModel):
    products: list[Product] = Field(default_factory=list)
    stats: ProductStats = Field(default_factory=ProductStats)
    price_groups: ProductPriceGroups = Field(default_factory=ProductPriceGroups)
