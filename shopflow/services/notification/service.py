"""Notification fanout for committed order events.

Every outbound call runs concurrently in its own error boundary: a failing
channel is logged and counted, the others still run, and the caller never
sees the exception. The status transition that triggered the dispatch is
already durable by the time any of this runs.
"""

import asyncio
from collections.abc import Awaitable, Callable

from shopflow.common.logging import event_id_ctx, logger
from shopflow.common.metrics import notification_failures_total
from shopflow.common.state_machine import EMAIL_STATUSES, OrderStatus
from shopflow.services.notification import messages
from shopflow.services.notification.channels import AnalyticsChannel, ChatChannel, EmailChannel
from shopflow.services.orders.schemas import OrderSnapshot, TransitionEvent


Call = tuple[str, Callable[[], Awaitable[None]]]


class NotificationFanout:
    """Dispatches chat, email and analytics side effects for order events."""

    def __init__(
        self,
        chat: ChatChannel | None = None,
        email: EmailChannel | None = None,
        analytics: list[AnalyticsChannel] | None = None,
        service_name: str = "orders",
    ) -> None:
        self.chat = chat
        self.email = email
        self.analytics = list(analytics or [])
        self.service_name = service_name

    def _channels(self) -> list:
        return [channel for channel in [self.chat, self.email, *self.analytics] if channel is not None]

    async def start(self) -> None:
        for channel in self._channels():
            await channel.start()

    async def close(self) -> None:
        for channel in self._channels():
            try:
                await channel.close()
            except Exception as exc:
                logger.warning("channel_close_failed channel=%s error=%s", channel.name, exc)

    async def _guarded(self, channel: str, order_id: str, call: Callable[[], Awaitable[None]]) -> bool:
        try:
            await call()
            return True
        except Exception as exc:
            notification_failures_total.labels(service=self.service_name, channel=channel).inc()
            logger.error(
                "notification_failed channel=%s order_id=%s error_type=%s error=%s",
                channel,
                order_id,
                type(exc).__name__,
                exc,
            )
            return False

    async def _fan_out(self, order_id: str, calls: list[Call]) -> list[bool]:
        if not calls:
            return []
        return list(await asyncio.gather(*(self._guarded(channel, order_id, call) for channel, call in calls)))

    def _chat(self, text: str) -> list[Call]:
        if self.chat is None:
            return []
        return [(self.chat.name, lambda: self.chat.send_message(text))]

    def _email(self, order: OrderSnapshot, subject: str, body: str) -> list[Call]:
        if self.email is None:
            return []
        return [(self.email.name, lambda: self.email.send_email(order.customer_email, subject, body))]

    def _purchase(self, order: OrderSnapshot) -> list[Call]:
        return [(channel.name, lambda channel=channel: channel.track_purchase(order)) for channel in self.analytics]

    def _begin_checkout(self, order: OrderSnapshot) -> list[Call]:
        return [
            (channel.name, lambda channel=channel: channel.track_begin_checkout(order))
            for channel in self.analytics
        ]

    async def dispatch(self, event: TransitionEvent) -> list[bool]:
        """Fan out the side effects bound to one committed transition."""

        order = event.order
        status = OrderStatus(event.new_status)
        calls: list[Call] = []
        if status == OrderStatus.PAYMENT_CONFIRMED and event.newly_paid:
            calls += self._purchase(order)
        if status in EMAIL_STATUSES:
            calls += self._email(order, *messages.status_email(order, status))
        if status == OrderStatus.PAYMENT_FAILED:
            calls += self._chat(messages.payment_failed_chat(event))
        else:
            calls += self._chat(messages.transition_chat(event))
        token = event_id_ctx.set(event.event_id)
        try:
            return await self._fan_out(order.id, calls)
        finally:
            event_id_ctx.reset(token)

    async def order_placed(self, order: OrderSnapshot) -> list[bool]:
        return await self._fan_out(
            order.id, self._chat(messages.order_placed_chat(order)) + self._begin_checkout(order)
        )

    async def payment_pending(self, order: OrderSnapshot, confirmations: int | None, gateway: str) -> list[bool]:
        return await self._fan_out(order.id, self._chat(messages.payment_pending_chat(order, confirmations, gateway)))

    async def send_reminder(self, order: OrderSnapshot) -> list[bool]:
        return await self._fan_out(
            order.id,
            self._email(order, *messages.reminder_email(order)) + self._chat(messages.reminder_chat(order)),
        )

    async def tracking_updated(self, order: OrderSnapshot) -> list[bool]:
        return await self._fan_out(
            order.id,
            self._email(order, *messages.tracking_email(order)) + self._chat(messages.tracking_chat(order)),
        )

    async def payment_proof_received(self, order: OrderSnapshot, gateway: str, filename: str) -> list[bool]:
        return await self._fan_out(order.id, self._chat(messages.proof_received_chat(order, gateway, filename)))

    async def alert(self, order_id: str, title: str, detail: str) -> list[bool]:
        """Operator-facing warning, e.g. a payment report for an unknown order."""

        return await self._fan_out(order_id, self._chat(messages.alert_chat(title, detail)))
