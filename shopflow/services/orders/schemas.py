"""API request/response schemas and the transition event passed to the fanout."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class OrderItemIn(BaseModel):
    """Line item as priced by the storefront at checkout."""

    product_id: int
    product_name: str = Field(min_length=1)
    product_slug: str | None = None
    product_image: str | None = None
    brand: str | None = None
    sku: str | None = None
    price: Decimal = Field(ge=0)
    quantity: int = Field(gt=0)
    options: dict[str, Any] | None = None


class OrderCreateRequest(BaseModel):
    """Checkout payload accepted from the storefront."""

    customer_email: str = Field(pattern=EMAIL_PATTERN)
    customer_first_name: str = Field(min_length=1)
    customer_last_name: str = Field(min_length=1)
    customer_phone: str = Field(min_length=3)
    shipping_country: str = Field(min_length=1)
    shipping_state: str | None = None
    shipping_city: str = Field(min_length=1)
    shipping_address_1: str = Field(min_length=1)
    shipping_address_2: str | None = None
    shipping_postal_code: str = Field(min_length=1)

    items: list[OrderItemIn] = Field(min_length=1)
    subtotal: Decimal = Field(ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    shipping: Decimal = Field(default=Decimal("0"), ge=0)
    total: Decimal = Field(ge=0)
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    payment_method: str = Field(min_length=1)
    promo_code: str | None = None
    notes: str | None = None

    ip_address: str | None = None
    user_agent: str | None = None
    geo_country: str | None = None
    geo_city: str | None = None
    geo_region: str | None = None
    ga_client_id: str | None = None
    gclid: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None


class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: int
    product_name: str
    product_slug: str | None = None
    product_image: str | None = None
    brand: str | None = None
    sku: str | None = None
    price: Decimal
    quantity: int
    options: dict[str, Any] | None = None


class StatusRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    status: str
    location: str | None = None
    notes: str | None = None
    actor: str
    is_current: bool
    is_completed: bool
    created_at: datetime


class OrderSnapshot(BaseModel):
    """Detached, read-only view of an order handed to channels and HTTP clients.

    Built right after the ledger write commits, so notification code never
    touches a live ORM session.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str
    customer_email: str
    customer_first_name: str
    customer_last_name: str
    customer_phone: str
    shipping_country: str
    shipping_state: str | None = None
    shipping_city: str
    shipping_address_1: str
    shipping_address_2: str | None = None
    shipping_postal_code: str
    subtotal: Decimal
    discount: Decimal
    shipping: Decimal
    total: Decimal
    currency: str
    payment_method: str
    promo_code: str | None = None
    notes: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    ga_client_id: str | None = None
    gclid: str | None = None
    hashed_email: str | None = None
    hashed_phone: str | None = None
    payment_status: str
    paid_at: datetime | None = None
    payment_gateway: str | None = None
    gateway_payment_id: str | None = None
    payment_url: str | None = None
    payment_proof: str | None = None
    courier: str | None = None
    tracking_number: str | None = None
    tracking_url: str | None = None
    created_at: datetime
    items: list[OrderItemOut] = []
    statuses: list[StatusRecordOut] = []

    @property
    def current_status(self) -> str | None:
        for record in self.statuses:
            if record.is_current:
                return record.status
        return None

    @property
    def customer_name(self) -> str:
        return f"{self.customer_first_name} {self.customer_last_name}"


class OrderResponse(OrderSnapshot):
    """Order as returned by the HTTP API; the access token is only shown at creation."""

    access_token: str | None = None
    status: str | None = None


class OrderListResponse(BaseModel):
    orders: list[OrderResponse]
    total: int
    page: int
    limit: int


class StatusUpdateRequest(BaseModel):
    status: str = Field(min_length=1)
    location: str | None = None
    notes: str | None = None


class TrackingUpdateRequest(BaseModel):
    courier: str = Field(min_length=1)
    tracking_number: str = Field(min_length=1)
    tracking_url: str | None = None


class TrackOrderRequest(BaseModel):
    order_id: str = Field(min_length=1)
    email: str = Field(min_length=3)


class PromoCodeCreateRequest(BaseModel):
    code: str = Field(min_length=2, max_length=32)
    discount: int = Field(ge=1, le=100)
    manager_name: str = Field(min_length=1)


class PromoCodeValidateRequest(BaseModel):
    code: str = Field(min_length=1)


class PromoCodeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    code: str
    discount: int
    manager_name: str
    is_active: bool
    used_count: int


class TransitionEvent(BaseModel):
    """One committed ledger transition, as seen by the notification fanout."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str = ""
    order: OrderSnapshot
    old_status: str | None
    new_status: str
    actor: str
    location: str | None = None
    notes: str | None = None
    newly_paid: bool = False
