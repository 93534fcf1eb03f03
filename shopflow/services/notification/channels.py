"""Outbound notification channels: chat bot, transactional email, analytics.

Each channel owns one lazily created `httpx.AsyncClient`; `close()` releases
it at shutdown. Failures surface as `NotificationChannelFailure` and are
absorbed by the fanout, never by the channel itself.
"""

import hashlib
from abc import ABC, abstractmethod
from datetime import timezone
from typing import Any

import httpx

from shopflow.common.config import settings
from shopflow.common.errors import NotificationChannelFailure
from shopflow.services.orders.schemas import OrderSnapshot


class _HttpChannel:
    name = "http"

    def __init__(self, timeout: float | None = None, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.timeout = settings.notification_timeout_seconds if timeout is None else timeout
        self.transport = transport
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _post(self, url: str, *, json: Any, params: dict[str, str] | None = None, headers=None) -> None:
        await self.start()
        try:
            response = await self._client.post(url, json=json, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise NotificationChannelFailure(f"{self.name} transport error: {exc}") from exc
        if not response.is_success:
            raise NotificationChannelFailure(f"{self.name} returned HTTP {response.status_code}")


class ChatChannel(ABC):
    """Operator chat; one message fans out to every configured chat."""

    name = "chat"

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def send_message(self, text: str) -> None: ...


class EmailChannel(ABC):
    name = "email"

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def send_email(self, to: str, subject: str, body: str) -> None: ...


class AnalyticsChannel(ABC):
    name = "analytics"

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def track_begin_checkout(self, order: OrderSnapshot) -> None: ...

    @abstractmethod
    async def track_purchase(self, order: OrderSnapshot) -> None: ...


class TelegramChatChannel(_HttpChannel, ChatChannel):
    name = "telegram"

    def __init__(self, bot_token: str, chat_ids: list[str], api_url: str | None = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.bot_token = bot_token
        self.chat_ids = list(chat_ids)
        self.api_url = (api_url or settings.telegram_api_url).rstrip("/")

    async def send_message(self, text: str) -> None:
        url = f"{self.api_url}/bot{self.bot_token}/sendMessage"
        failed: list[str] = []
        for chat_id in self.chat_ids:
            try:
                await self._post(url, json={"chat_id": chat_id, "text": text, "parse_mode": "Markdown"})
            except NotificationChannelFailure as exc:
                failed.append(f"{chat_id}: {exc}")
        if failed:
            raise NotificationChannelFailure(f"{self.name} failed for {len(failed)} chat(s): {'; '.join(failed)}")


class HttpEmailChannel(_HttpChannel, EmailChannel):
    """Transactional mail over a SendGrid-compatible JSON API."""

    name = "email"

    def __init__(self, api_key: str, sender: str, sender_name: str, api_url: str | None = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key
        self.sender = sender
        self.sender_name = sender_name
        self.api_url = api_url or settings.email_api_url

    async def send_email(self, to: str, subject: str, body: str) -> None:
        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.sender, "name": self.sender_name},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }
        await self._post(self.api_url, json=payload, headers={"Authorization": f"Bearer {self.api_key}"})


def order_items_payload(order: OrderSnapshot) -> list[dict[str, Any]]:
    return [
        {
            "item_id": str(item.product_id) if item.product_id is not None else item.sku or "unknown",
            "item_name": item.product_name,
            "quantity": item.quantity,
            "price": float(item.price),
        }
        for item in order.items
    ]


def analytics_client_id(order: OrderSnapshot) -> str:
    """GA client id, else a hash of the customer IP, else `unknown`."""

    if order.ga_client_id:
        return order.ga_client_id
    if order.ip_address:
        return hashlib.sha256(order.ip_address.encode("utf-8")).hexdigest()
    return "unknown"


class GoogleAnalyticsChannel(_HttpChannel, AnalyticsChannel):
    """GA4 measurement protocol events."""

    name = "ga4"

    def __init__(self, measurement_id: str, api_secret: str, endpoint: str | None = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.measurement_id = measurement_id
        self.api_secret = api_secret
        self.endpoint = endpoint or settings.ga_endpoint

    async def _send(self, order: OrderSnapshot, event_name: str) -> None:
        payload = {
            "client_id": analytics_client_id(order),
            "events": [
                {
                    "name": event_name,
                    "params": {
                        "transaction_id": order.id,
                        "value": float(order.total),
                        "currency": order.currency,
                        "payment_method": order.payment_method,
                        "items": order_items_payload(order),
                    },
                }
            ],
        }
        await self._post(
            self.endpoint,
            json=payload,
            params={"measurement_id": self.measurement_id, "api_secret": self.api_secret},
        )

    async def track_begin_checkout(self, order: OrderSnapshot) -> None:
        await self._send(order, "begin_checkout")

    async def track_purchase(self, order: OrderSnapshot) -> None:
        await self._send(order, "purchase")


class PixelConversionChannel(_HttpChannel, AnalyticsChannel):
    """Ad-pixel server-side `Purchase` conversions with hashed customer identifiers."""

    name = "pixel"

    def __init__(self, pixel_id: str, access_token: str, api_url: str | None = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.pixel_id = pixel_id
        self.access_token = access_token
        self.api_url = (api_url or settings.pixel_api_url).rstrip("/")

    async def track_begin_checkout(self, order: OrderSnapshot) -> None:
        # Only purchases are reported as conversions.
        return None

    async def track_purchase(self, order: OrderSnapshot) -> None:
        user_data: dict[str, Any] = {}
        if order.hashed_email:
            user_data["em"] = [order.hashed_email]
        if order.hashed_phone:
            user_data["ph"] = [order.hashed_phone]
        if order.ip_address:
            user_data["client_ip_address"] = order.ip_address
        if order.user_agent:
            user_data["client_user_agent"] = order.user_agent
        paid_at = order.paid_at or order.created_at
        if paid_at.tzinfo is None:
            paid_at = paid_at.replace(tzinfo=timezone.utc)
        payload = {
            "data": [
                {
                    "event_name": "Purchase",
                    "event_time": int(paid_at.timestamp()),
                    "event_id": order.id,
                    "action_source": "website",
                    "user_data": user_data,
                    "custom_data": {
                        "value": float(order.total),
                        "currency": order.currency,
                        "order_id": order.id,
                    },
                }
            ]
        }
        await self._post(
            f"{self.api_url}/{self.pixel_id}/events",
            json=payload,
            params={"access_token": self.access_token},
        )
