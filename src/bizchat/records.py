"""
Pydantic models for the business records owned by the backend.

The assistant never defines these tables itself; it reads and writes them
through the Backend pillar. Field names follow the backend's column names.
"""

import uuid
from datetime import date, datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field

InvoiceStatus = Literal["draft", "sent", "paid", "overdue", "cancelled"]


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Customer(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    email: str = ""
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: str = "US"
    is_vip: bool = False
    user_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=_now)


class Item(BaseModel):
    """A catalog product or service."""

    id: str = Field(default_factory=_new_id)
    name: str
    description: Optional[str] = None
    type: Literal["product", "service"] = "service"
    sale_price: float = 0.0
    tax_rate: Optional[float] = None
    unit: str = "unit"
    enable_sale_info: bool = True
    user_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=_now)


class SelectedItem(BaseModel):
    """A catalog item chosen for an invoice, with its quantity and rate."""

    item_id: str
    name: str
    quantity: float = 1
    rate: float
    tax_rate: Optional[float] = None
    unit: str = "unit"

    @property
    def total(self) -> float:
        return round(self.quantity * self.rate, 2)

    @classmethod
    def from_item(cls, item: Item, quantity: float = 1) -> "SelectedItem":
        return cls(
            item_id=item.id,
            name=item.name,
            quantity=quantity,
            rate=item.sale_price,
            tax_rate=item.tax_rate,
            unit=item.unit,
        )


class LineItem(BaseModel):
    id: str = Field(default_factory=_new_id)
    invoice_id: str
    description: str
    quantity: float = 1
    rate: float = 0.0
    tax: float = 0.0
    unit: str = "unit"
    total: float = 0.0


class Invoice(BaseModel):
    id: str = Field(default_factory=_new_id)
    invoice_number: str
    customer_id: str
    customer_name: Optional[str] = None
    issue_date: date
    due_date: date
    subtotal: float = 0.0
    tax_amount: float = 0.0
    discount: float = 0.0
    total: float = 0.0
    status: InvoiceStatus = "draft"
    currency: str = "USD"
    template_name: str = "modern"
    user_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=_now)


class Expense(BaseModel):
    id: str = Field(default_factory=_new_id)
    description: str
    amount: float
    expense_date: date
    category: Optional[str] = None
    vendor_name: Optional[str] = None
    status: str = "pending"
    is_billable: bool = False
    tax_amount: float = 0.0
    currency: str = "USD"
    user_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=_now)


class BusinessProfile(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    email: Optional[str] = None
    country: str = "US"
    default_tax_rate: Optional[float] = None
    invoice_number_format: Optional[str] = None
    invoice_number_sequence: int = 0
    user_id: Optional[str] = None

