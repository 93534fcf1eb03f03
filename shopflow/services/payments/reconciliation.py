"""Reconciliation of gateway reports against orders.

Turns provider-specific status reports (webhooks, polls, operator checks)
into lifecycle calls. A report that carries no new fact, such as a second
`paid` for an already-paid order, ends here as a counted no-op.
"""

from dataclasses import dataclass
from typing import Any

from shopflow.common.config import settings
from shopflow.common.errors import GatewayError, NotFound, OrderError
from shopflow.common.logging import logger, order_id_ctx
from shopflow.common.metrics import (
    duplicate_reports_skipped_total,
    terminal_reports_ignored_total,
    webhook_rejections_total,
)
from shopflow.common.state_machine import TERMINAL_STATUSES, Actor, PaymentStatus
from shopflow.common.tracing import tracer
from shopflow.services.orders.lifecycle import OrderLifecycle
from shopflow.services.orders.schemas import OrderSnapshot
from shopflow.services.orders.store import OrderStore
from shopflow.services.payments.gateways import GatewayRegistry, GatewayStatusReport, Outcome


TERMINAL_LABELS = frozenset(status.value for status in TERMINAL_STATUSES)


@dataclass
class ReconciliationResult:
    order_id: str | None
    # confirmed | failed | pending | duplicate | ignored | ignored_terminal | rejected | not_found | error
    action: str
    outcome: str | None = None
    detail: str | None = None


class ReconciliationEngine:
    """Maps gateway reports to `confirm_payment` / `fail_payment` / pending notices."""

    def __init__(
        self,
        session_factory,
        lifecycle: OrderLifecycle,
        gateways: GatewayRegistry,
        fanout,
        store: OrderStore | None = None,
        service_name: str = "orders",
    ) -> None:
        self.session_factory = session_factory
        self.lifecycle = lifecycle
        self.gateways = gateways
        self.fanout = fanout
        self.store = store or OrderStore()
        self.service_name = service_name
        # (gateway, payment id) pairs already announced as detected.
        self._pending_notified: set[tuple[str, str]] = set()

    async def reconcile(self, order: OrderSnapshot, report: GatewayStatusReport) -> ReconciliationResult:
        """Apply one status report to one order."""

        gateway = self.gateways.get(report.gateway)
        classified = gateway.classify(report) if gateway is not None else None
        if classified is None:
            logger.warning(
                "report_ignored reason=unknown_status gateway=%s order_id=%s status=%s",
                report.gateway,
                order.id,
                report.status,
            )
            return ReconciliationResult(order.id, "ignored", None, f"unknown status {report.status!r}")

        outcome, reason = classified
        with tracer.start_as_current_span("reconcile") as span:
            span.set_attribute("order.id", order.id)
            span.set_attribute("gateway", report.gateway)
            span.set_attribute("outcome", outcome.value)

            if outcome == Outcome.PAID:
                if order.payment_status == PaymentStatus.PAID.value:
                    return self._duplicate(order, report, outcome)
                snapshot = await self.lifecycle.confirm_payment(
                    order.id,
                    notes=self._notes(report, "Payment Confirmed"),
                    actor=Actor.GATEWAY,
                    source=report.gateway,
                )
                if snapshot is None:
                    return await self._skipped(order, report, outcome)
                self._pending_notified.discard(self._attempt_key(order, report))
                return ReconciliationResult(order.id, "confirmed", outcome.value)

            if outcome == Outcome.FAILED:
                if order.payment_status == PaymentStatus.PAID.value:
                    logger.warning(
                        "report_ignored reason=failure_after_paid gateway=%s order_id=%s status=%s",
                        report.gateway,
                        order.id,
                        report.status,
                    )
                    return ReconciliationResult(order.id, "ignored", outcome.value, "order already paid")
                snapshot = await self.lifecycle.fail_payment(
                    order.id,
                    reason,
                    notes=self._notes(report, f"Payment {reason.value}"),
                    gateway=report.gateway,
                    actor=Actor.GATEWAY,
                )
                if snapshot is None:
                    return await self._skipped(order, report, outcome)
                self._pending_notified.discard(self._attempt_key(order, report))
                return ReconciliationResult(order.id, "failed", outcome.value, reason.value)

            if report.confirmations == 1:
                key = self._attempt_key(order, report)
                if key not in self._pending_notified:
                    self._pending_notified.add(key)
                    await self.fanout.payment_pending(order, report.confirmations, report.gateway)
            return ReconciliationResult(order.id, "pending", outcome.value)

    async def handle_callback(
        self,
        gateway_name: str,
        payload: Any,
        raw_body: bytes = b"",
        headers: dict[str, str] | None = None,
    ) -> ReconciliationResult:
        """Verify, parse and reconcile one webhook. Never raises."""

        headers = headers or {}
        gateway = self.gateways.get(gateway_name)
        if gateway is None:
            return self._reject(gateway_name, "unknown_gateway", None)
        if not isinstance(payload, dict):
            return self._reject(gateway_name, "malformed", None)
        reference = payload.get("order_name") or payload.get("client_transaction_id")
        if not gateway.verify_callback(payload, raw_body, headers):
            return self._reject(gateway_name, "bad_signature", reference)
        try:
            report = gateway.parse_callback(payload)
        except OrderError as exc:
            return self._reject(gateway_name, "malformed", reference, str(exc))

        try:
            order = self._find_order(report)
            if order is None:
                logger.error(
                    "report_order_not_found gateway=%s gateway_payment_id=%s order_reference=%s status=%s",
                    gateway_name,
                    report.gateway_payment_id,
                    report.order_reference,
                    report.status,
                )
                await self.fanout.alert(
                    report.order_reference or "",
                    "Payment report for unknown order",
                    f"Gateway: {gateway_name}\nTransaction: {report.gateway_payment_id}\n"
                    f"Reference: {report.order_reference}\nStatus: {report.status}",
                )
                return ReconciliationResult(None, "not_found", None, report.order_reference)
            token = order_id_ctx.set(order.id)
            try:
                logger.info(
                    "callback_received gateway=%s order_id=%s status=%s",
                    gateway_name,
                    order.id,
                    report.status,
                )
                return await self.reconcile(order, report)
            finally:
                order_id_ctx.reset(token)
        except Exception as exc:
            logger.exception(
                "callback_processing_failed gateway=%s order_reference=%s error=%s",
                gateway_name,
                report.order_reference,
                exc,
            )
            return ReconciliationResult(report.order_reference, "error", None, type(exc).__name__)

    async def reconcile_order(self, order_id: str) -> ReconciliationResult:
        """Poll the order's gateway now and reconcile the answer."""

        with self.session_factory() as db:
            order = OrderSnapshot.model_validate(self.store.get(db, order_id), from_attributes=True)
        if not order.payment_gateway or not order.gateway_payment_id:
            raise NotFound(
                f"order {order_id} has no payment attempt",
                public_message="Order has no payment attempt",
            )
        gateway = self.gateways.get(order.payment_gateway)
        if gateway is None:
            raise NotFound(f"gateway {order.payment_gateway} is not configured")
        report = await gateway.check_status(order.gateway_payment_id)
        return await self.reconcile(order, report)

    async def poll_gateway(self, gateway_name: str, order_id: str, gateway_payment_id: str) -> ReconciliationResult:
        """One sweep step: check one pending order. Gateway errors propagate to the sweep."""

        gateway = self.gateways.get(gateway_name)
        if gateway is None:
            raise NotFound(f"gateway {gateway_name} is not configured")
        try:
            report = await gateway.check_status(gateway_payment_id)
        except GatewayError:
            logger.warning("poll_gateway_unavailable gateway=%s order_id=%s", gateway_name, order_id)
            raise
        with self.session_factory() as db:
            order = OrderSnapshot.model_validate(self.store.get(db, order_id), from_attributes=True)
        return await self.reconcile(order, report)

    def _find_order(self, report: GatewayStatusReport) -> OrderSnapshot | None:
        with self.session_factory() as db:
            order = None
            if report.gateway_payment_id:
                order = self.store.find_by_gateway_payment_id(db, report.gateway, report.gateway_payment_id)
            if order is None and report.order_reference:
                order = self.store.find(db, report.order_reference)
                if order is None and not report.order_reference.startswith(settings.order_id_prefix):
                    order = self.store.find(db, f"{settings.order_id_prefix}{report.order_reference}")
            if order is None:
                return None
            return OrderSnapshot.model_validate(order, from_attributes=True)

    async def _skipped(
        self, order: OrderSnapshot, report: GatewayStatusReport, outcome: Outcome
    ) -> ReconciliationResult:
        """Classify a report the lifecycle declined to apply."""

        with self.session_factory() as db:
            current = OrderSnapshot.model_validate(self.store.get(db, order.id), from_attributes=True)
        if current.payment_status == PaymentStatus.PAID.value or current.current_status not in TERMINAL_LABELS:
            return self._duplicate(order, report, outcome)

        terminal_reports_ignored_total.labels(
            service=self.service_name, gateway=report.gateway, outcome=outcome.value
        ).inc()
        if outcome != Outcome.PAID:
            logger.warning(
                "report_ignored reason=terminal_status gateway=%s order_id=%s status=%s current=%s",
                report.gateway,
                order.id,
                report.status,
                current.current_status,
            )
            return ReconciliationResult(order.id, "ignored_terminal", outcome.value, current.current_status)

        logger.error(
            "paid_report_for_terminal_order gateway=%s order_id=%s status=%s current=%s payment_status=%s",
            report.gateway,
            order.id,
            report.status,
            current.current_status,
            current.payment_status,
        )
        await self.fanout.alert(
            order.id,
            "Payment received for a closed order",
            f"Order: {order.id}\nCurrent status: {current.current_status}\n"
            f"Payment status: {current.payment_status}\n{self._notes(report, 'Payment report')}",
        )
        return ReconciliationResult(order.id, "ignored_terminal", outcome.value, current.current_status)

    def _attempt_key(self, order: OrderSnapshot, report: GatewayStatusReport) -> tuple[str, str]:
        return report.gateway, report.gateway_payment_id or order.id

    def _duplicate(
        self, order: OrderSnapshot, report: GatewayStatusReport, outcome: Outcome
    ) -> ReconciliationResult:
        duplicate_reports_skipped_total.labels(service=self.service_name, gateway=report.gateway).inc()
        logger.info(
            "duplicate report skipped gateway=%s order_id=%s status=%s",
            report.gateway,
            order.id,
            report.status,
        )
        return ReconciliationResult(order.id, "duplicate", outcome.value)

    def _reject(
        self, gateway_name: str, reason: str, reference: str | None, detail: str | None = None
    ) -> ReconciliationResult:
        webhook_rejections_total.labels(service=self.service_name, gateway=gateway_name, reason=reason).inc()
        logger.error(
            "callback_rejected gateway=%s reason=%s order_reference=%s",
            gateway_name,
            reason,
            reference,
        )
        return ReconciliationResult(None, "rejected", None, detail or reason)

    def _notes(self, report: GatewayStatusReport, title: str) -> str:
        lines = [f"{report.gateway}: {title}", f"Provider status: {report.status}"]
        if report.gateway_payment_id:
            lines.append(f"Transaction: {report.gateway_payment_id}")
        if report.amount:
            lines.append(f"Amount: {report.amount} {report.currency or ''}".rstrip())
        for url in report.tx_urls:
            lines.append(f"Tx: {url}")
        if report.error_message:
            lines.append(f"Error: {report.error_message}")
        return "\n".join(lines)
