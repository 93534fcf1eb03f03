"""Order database models.

This DB is the source of truth for orders, their immutable line-item
snapshots, the append-only status ledger and promo codes.
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shopflow.common.db import Base, JSONType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Order(Base):
    """Purchase aggregate: customer snapshot, totals, payment and tracking state."""

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    access_token: Mapped[str] = mapped_column(String, unique=True, index=True)

    customer_email: Mapped[str] = mapped_column(String, index=True)
    customer_first_name: Mapped[str] = mapped_column(String)
    customer_last_name: Mapped[str] = mapped_column(String)
    customer_phone: Mapped[str] = mapped_column(String)
    shipping_country: Mapped[str] = mapped_column(String)
    shipping_state: Mapped[str | None] = mapped_column(String, nullable=True)
    shipping_city: Mapped[str] = mapped_column(String)
    shipping_address_1: Mapped[str] = mapped_column(String)
    shipping_address_2: Mapped[str | None] = mapped_column(String, nullable=True)
    shipping_postal_code: Mapped[str] = mapped_column(String)

    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    discount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    shipping: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3), default="EUR")
    payment_method: Mapped[str] = mapped_column(String, index=True)
    promo_code: Mapped[str | None] = mapped_column(String, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Attribution captured at checkout, carried into every ledger record.
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    geo_country: Mapped[str | None] = mapped_column(String, nullable=True)
    geo_city: Mapped[str | None] = mapped_column(String, nullable=True)
    geo_region: Mapped[str | None] = mapped_column(String, nullable=True)
    ga_client_id: Mapped[str | None] = mapped_column(String, nullable=True)
    gclid: Mapped[str | None] = mapped_column(String, nullable=True)
    utm_source: Mapped[str | None] = mapped_column(String, nullable=True)
    utm_medium: Mapped[str | None] = mapped_column(String, nullable=True)
    utm_campaign: Mapped[str | None] = mapped_column(String, nullable=True)
    hashed_email: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hashed_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)

    payment_status: Mapped[str] = mapped_column(String, default="pending", index=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_gateway: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    payment_url: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_proof: Mapped[str | None] = mapped_column(String, nullable=True)

    courier: Mapped[str | None] = mapped_column(String, nullable=True)
    tracking_number: Mapped[str | None] = mapped_column(String, nullable=True)
    tracking_url: Mapped[str | None] = mapped_column(String, nullable=True)

    status_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    items: Mapped[list["OrderItem"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.id"
    )
    statuses: Mapped[list["OrderStatusRecord"]] = relationship(
        back_populates="order",
        order_by="OrderStatusRecord.id",
    )


class OrderItem(Base):
    """Line item snapshot; never re-read from the catalog after placement."""

    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), index=True)
    product_id: Mapped[int] = mapped_column(Integer)
    product_name: Mapped[str] = mapped_column(String)
    product_slug: Mapped[str | None] = mapped_column(String, nullable=True)
    product_image: Mapped[str | None] = mapped_column(String, nullable=True)
    brand: Mapped[str | None] = mapped_column(String, nullable=True)
    sku: Mapped[str | None] = mapped_column(String, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    quantity: Mapped[int] = mapped_column(Integer)
    options: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    order: Mapped[Order] = relationship(back_populates="items")


class OrderStatusRecord(Base):
    """Immutable audit trail entry; only `is_current` may flip to false."""

    __tablename__ = "order_statuses"
    __table_args__ = (
        Index(
            "uq_order_statuses_current",
            "order_id",
            unique=True,
            postgresql_where=text("is_current"),
            sqlite_where=text("is_current"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), index=True)
    status: Mapped[str] = mapped_column(String, index=True)
    location: Mapped[str | None] = mapped_column(String, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    actor: Mapped[str] = mapped_column(String, default="operator")
    is_current: Mapped[bool] = mapped_column(Boolean, default=True)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    hashed_email: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hashed_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    gclid: Mapped[str | None] = mapped_column(String, nullable=True)
    conversion_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

    order: Mapped[Order] = relationship(back_populates="statuses")


class PromoCode(Base):
    """Discount code owned by a sales manager."""

    __tablename__ = "promo_codes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String, unique=True, index=True)
    discount: Mapped[int] = mapped_column(Integer)
    manager_name: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    used_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
