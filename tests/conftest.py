"""Shared fixtures: in-memory database, recording channels and a scripted gateway."""

import os

os.environ["POSTGRES_DSN"] = "sqlite+pysqlite:///:memory:"
os.environ["TRACING_ENABLED"] = "false"
os.environ["SWEEPS_ENABLED"] = "false"
os.environ["API_KEY"] = "test-key"

import asyncio
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shopflow.common.db import Base
from shopflow.common.errors import GatewayUnavailable, ValidationError
from shopflow.common.state_machine import PaymentStatus
from shopflow.services.notification.channels import AnalyticsChannel, ChatChannel, EmailChannel
from shopflow.services.notification.service import NotificationFanout
from shopflow.services.orders.main import build_container
from shopflow.services.orders.models import OrderStatusRecord
from shopflow.services.orders.schemas import OrderCreateRequest, OrderSnapshot
from shopflow.services.payments.gateways import (
    GatewayRegistry,
    GatewayStatusReport,
    Outcome,
    PaymentAttempt,
    PaymentGateway,
)


class RecordingChat(ChatChannel):
    name = "chat"

    def __init__(self) -> None:
        self.messages: list[str] = []
        self.started = False
        self.closed = False

    async def start(self) -> None:
        self.started = True

    async def close(self) -> None:
        self.closed = True

    async def send_message(self, text: str) -> None:
        self.messages.append(text)


class RecordingEmail(EmailChannel):
    name = "email"

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    async def send_email(self, to: str, subject: str, body: str) -> None:
        self.sent.append((to, subject, body))


class RecordingAnalytics(AnalyticsChannel):
    name = "ga4"

    def __init__(self) -> None:
        self.checkouts: list[str] = []
        self.purchases: list[str] = []

    async def track_begin_checkout(self, order: OrderSnapshot) -> None:
        self.checkouts.append(order.id)

    async def track_purchase(self, order: OrderSnapshot) -> None:
        self.purchases.append(order.id)


class FailingChat(ChatChannel):
    name = "chat"

    async def send_message(self, text: str) -> None:
        raise RuntimeError("chat provider down")


class ScriptedGateway(PaymentGateway):
    """In-process gateway whose provider answers are set by the test."""

    name = "fakepay"
    display_name = "Open Banking"
    payment_methods = frozenset({"Open Banking"})
    supports_polling = True
    status_map = {
        "paid": (Outcome.PAID, PaymentStatus.PAID),
        "pending": (Outcome.PENDING, PaymentStatus.PENDING),
        "expired": (Outcome.FAILED, PaymentStatus.EXPIRED),
        "cancelled": (Outcome.FAILED, PaymentStatus.CANCELLED),
    }

    def __init__(self) -> None:
        super().__init__(timeout=1.0)
        self.statuses: dict[str, str] = {}
        self.unavailable: set[str] = set()
        self.created: list[str] = []

    async def create_payment(self, order: OrderSnapshot, options: dict[str, Any]) -> PaymentAttempt:
        if order.id in self.unavailable:
            raise GatewayUnavailable("fakepay create timed out")
        self.created.append(order.id)
        return PaymentAttempt(gateway_payment_id=f"fp-{order.id}", redirect_url=f"https://pay.test/{order.id}")

    async def check_status(self, gateway_payment_id: str) -> GatewayStatusReport:
        if gateway_payment_id in self.unavailable:
            raise GatewayUnavailable("fakepay check timed out")
        return GatewayStatusReport(
            gateway=self.name,
            status=self.statuses.get(gateway_payment_id, "pending"),
            gateway_payment_id=gateway_payment_id,
        )

    def verify_callback(self, payload, raw_body, headers) -> bool:
        return payload.get("signature") == "good"

    def parse_callback(self, payload) -> GatewayStatusReport:
        if "status" not in payload:
            raise ValidationError("missing status")
        return GatewayStatusReport(
            gateway=self.name,
            status=payload["status"],
            gateway_payment_id=payload.get("txn_id"),
            order_reference=payload.get("order_id"),
            confirmations=payload.get("confirmations"),
        )


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def chat():
    return RecordingChat()


@pytest.fixture
def email():
    return RecordingEmail()


@pytest.fixture
def analytics():
    return RecordingAnalytics()


@pytest.fixture
def fanout(chat, email, analytics):
    return NotificationFanout(chat=chat, email=email, analytics=[analytics])


@pytest.fixture
def gateway():
    return ScriptedGateway()


@pytest.fixture
def container(session_factory, fanout, gateway, tmp_path):
    built = build_container(session_factory, fanout=fanout, gateways=GatewayRegistry([gateway]))
    built.payments.uploads_dir = tmp_path / "uploads"
    return built


def order_request(**overrides) -> OrderCreateRequest:
    data = {
        "customer_email": "Anna.Schmidt@Example.com",
        "customer_first_name": "Anna",
        "customer_last_name": "Schmidt",
        "customer_phone": "+49 (151) 234-5678",
        "shipping_country": "DE",
        "shipping_city": "Berlin",
        "shipping_address_1": "Torstrasse 1",
        "shipping_postal_code": "10119",
        "items": [
            {
                "product_id": 17,
                "product_name": "Kelly 28 Togo",
                "sku": "HK28-TG",
                "price": Decimal("5800.00"),
                "quantity": 1,
            }
        ],
        "subtotal": Decimal("5800.00"),
        "total": Decimal("5800.00"),
        "payment_method": "Open Banking",
        "ip_address": "203.0.113.7",
        "user_agent": "Mozilla/5.0",
        "gclid": "gclid-abc",
    }
    data.update(overrides)
    return OrderCreateRequest(**data)


def place_order(container, **overrides) -> OrderSnapshot:
    order, _ = asyncio.run(container.orders.create_order(order_request(**overrides)))
    return order


def ledger(session_factory, order_id: str) -> list[OrderStatusRecord]:
    with session_factory() as db:
        return list(
            db.execute(
                select(OrderStatusRecord)
                .where(OrderStatusRecord.order_id == order_id)
                .order_by(OrderStatusRecord.id)
            ).scalars()
        )
