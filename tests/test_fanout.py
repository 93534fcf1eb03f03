"""Notification fanout routing, isolation and channel payloads."""

import asyncio
import hashlib
import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from conftest import FailingChat, RecordingAnalytics, RecordingChat, RecordingEmail
from shopflow.common.errors import NotificationChannelFailure
from shopflow.services.notification.channels import (
    ChatChannel,
    GoogleAnalyticsChannel,
    HttpEmailChannel,
    TelegramChatChannel,
    analytics_client_id,
)
from shopflow.services.notification.service import NotificationFanout
from shopflow.services.orders.schemas import OrderSnapshot, TransitionEvent


def snapshot(**overrides) -> OrderSnapshot:
    data = {
        "id": "LS123456789012",
        "customer_email": "anna@example.com",
        "customer_first_name": "Anna",
        "customer_last_name": "Schmidt",
        "customer_phone": "+491512345678",
        "shipping_country": "DE",
        "shipping_city": "Berlin",
        "shipping_address_1": "Torstrasse 1",
        "shipping_postal_code": "10119",
        "subtotal": Decimal("5800.00"),
        "discount": Decimal("0"),
        "shipping": Decimal("0"),
        "total": Decimal("5800.00"),
        "currency": "EUR",
        "payment_method": "Open Banking",
        "payment_status": "paid",
        "ip_address": "203.0.113.7",
        "created_at": datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc),
        "items": [{"product_id": 17, "product_name": "Kelly 28", "price": Decimal("5800.00"), "quantity": 1}],
    }
    data.update(overrides)
    return OrderSnapshot(**data)


def event(new_status: str, newly_paid: bool = False, old_status: str = "Awaiting Payment") -> TransitionEvent:
    return TransitionEvent(
        order=snapshot(),
        old_status=old_status,
        new_status=new_status,
        actor="gateway",
        newly_paid=newly_paid,
    )


def test_newly_paid_confirmation_fans_out_everywhere():
    chat, email, analytics = RecordingChat(), RecordingEmail(), RecordingAnalytics()
    fanout = NotificationFanout(chat=chat, email=email, analytics=[analytics])

    results = asyncio.run(fanout.dispatch(event("Payment Confirmed", newly_paid=True)))

    assert results == [True, True, True]
    assert analytics.purchases == ["LS123456789012"]
    assert email.sent[0][0] == "anna@example.com"
    assert email.sent[0][1] == "LUX STORE - ORDER: LS123456789012 - STATUS: Payment Confirmed"
    assert "Payment Confirmed" in chat.messages[0]


def test_repeat_confirmation_skips_purchase():
    analytics = RecordingAnalytics()
    fanout = NotificationFanout(chat=RecordingChat(), email=RecordingEmail(), analytics=[analytics])

    asyncio.run(fanout.dispatch(event("Payment Confirmed", newly_paid=False)))

    assert analytics.purchases == []


def test_payment_failed_sends_no_email():
    chat, email = RecordingChat(), RecordingEmail()
    fanout = NotificationFanout(chat=chat, email=email)

    asyncio.run(fanout.dispatch(event("Payment Failed")))

    assert email.sent == []
    assert "Payment failed" in chat.messages[0]


def test_failing_channel_does_not_block_others():
    """One broken provider is logged and counted; the rest still deliver."""

    email, analytics = RecordingEmail(), RecordingAnalytics()
    fanout = NotificationFanout(chat=FailingChat(), email=email, analytics=[analytics])

    results = asyncio.run(fanout.dispatch(event("Payment Confirmed", newly_paid=True)))

    assert sorted(results) == [False, True, True]
    assert len(email.sent) == 1
    assert analytics.purchases == ["LS123456789012"]


def test_channels_run_concurrently():
    """Every call of one dispatch is in flight at the same time."""

    class HandshakeChat(ChatChannel):
        def __init__(self, mine: asyncio.Event, other: asyncio.Event) -> None:
            self.mine = mine
            self.other = other

        async def send_message(self, text: str) -> None:
            self.mine.set()
            await asyncio.wait_for(self.other.wait(), timeout=1)

    class HandshakeEmail(RecordingEmail):
        def __init__(self, mine: asyncio.Event, other: asyncio.Event) -> None:
            super().__init__()
            self.mine = mine
            self.other = other

        async def send_email(self, to: str, subject: str, body: str) -> None:
            self.mine.set()
            await asyncio.wait_for(self.other.wait(), timeout=1)

    async def scenario():
        chat_started, email_started = asyncio.Event(), asyncio.Event()
        fanout = NotificationFanout(
            chat=HandshakeChat(chat_started, email_started),
            email=HandshakeEmail(email_started, chat_started),
        )
        return await fanout.dispatch(event("Under Review", old_status="Payment Confirmed"))

    assert asyncio.run(scenario()) == [True, True]


def test_order_placed_reports_begin_checkout():
    chat, analytics = RecordingChat(), RecordingAnalytics()
    fanout = NotificationFanout(chat=chat, analytics=[analytics])

    asyncio.run(fanout.order_placed(snapshot(payment_status="pending")))

    assert analytics.checkouts == ["LS123456789012"]
    assert "New order" in chat.messages[0]


def test_missing_channels_are_skipped():
    fanout = NotificationFanout()
    assert asyncio.run(fanout.dispatch(event("Delivered"))) == []


def test_start_and_close_reach_every_channel():
    chat = RecordingChat()
    fanout = NotificationFanout(chat=chat, email=RecordingEmail())
    asyncio.run(fanout.start())
    asyncio.run(fanout.close())
    assert chat.started and chat.closed


def test_telegram_posts_to_each_chat():
    posted = []

    def handler(request):
        posted.append((request.url.path, json.loads(request.content)["chat_id"]))
        return httpx.Response(200, json={"ok": True})

    channel = TelegramChatChannel(
        "TOKEN", ["1", "2"], api_url="https://tg.test", transport=httpx.MockTransport(handler)
    )

    async def scenario():
        await channel.send_message("hello")
        await channel.close()

    asyncio.run(scenario())
    assert posted == [("/botTOKEN/sendMessage", "1"), ("/botTOKEN/sendMessage", "2")]


def test_telegram_failing_chat_does_not_stop_the_others():
    reached = []

    def handler(request):
        chat_id = json.loads(request.content)["chat_id"]
        reached.append(chat_id)
        if chat_id == "1":
            return httpx.Response(403, json={"ok": False, "description": "bot was blocked"})
        return httpx.Response(200, json={"ok": True})

    channel = TelegramChatChannel(
        "TOKEN", ["1", "2", "3"], api_url="https://tg.test", transport=httpx.MockTransport(handler)
    )

    async def scenario():
        try:
            await channel.send_message("hello")
        finally:
            await channel.close()

    with pytest.raises(NotificationChannelFailure, match="1 chat"):
        asyncio.run(scenario())
    assert reached == ["1", "2", "3"]


def test_email_provider_error_raises_channel_failure():
    channel = HttpEmailChannel(
        "key",
        "orders@lux-store.eu",
        "LUX STORE",
        api_url="https://mail.test/send",
        transport=httpx.MockTransport(lambda request: httpx.Response(401, json={"error": "bad key"})),
    )

    async def scenario():
        try:
            await channel.send_email("anna@example.com", "subject", "body")
        finally:
            await channel.close()

    with pytest.raises(NotificationChannelFailure):
        asyncio.run(scenario())


def test_ga4_purchase_payload():
    captured = {}

    def handler(request):
        captured["params"] = dict(request.url.params)
        captured["body"] = json.loads(request.content)
        return httpx.Response(204)

    channel = GoogleAnalyticsChannel(
        "G-TEST", "secret", endpoint="https://ga.test/mp/collect", transport=httpx.MockTransport(handler)
    )

    async def scenario():
        await channel.track_purchase(snapshot())
        await channel.close()

    asyncio.run(scenario())
    assert captured["params"] == {"measurement_id": "G-TEST", "api_secret": "secret"}
    purchase = captured["body"]["events"][0]
    assert purchase["name"] == "purchase"
    assert purchase["params"]["transaction_id"] == "LS123456789012"
    assert purchase["params"]["value"] == 5800.0
    assert purchase["params"]["items"][0]["item_id"] == "17"


def test_analytics_client_id_fallbacks():
    assert analytics_client_id(snapshot(ga_client_id="GA1.2.3")) == "GA1.2.3"
    assert analytics_client_id(snapshot()) == hashlib.sha256(b"203.0.113.7").hexdigest()
    assert analytics_client_id(snapshot(ip_address=None)) == "unknown"
