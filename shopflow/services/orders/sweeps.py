"""Time-driven sweeps: auto-review, unpaid reminders and gateway polling.

Sweeps share no state and may overlap each other and inbound requests; the
lifecycle's conditional writes keep that safe. Each order is handled in its
own error boundary so one bad order never stops the rest of a run.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from shopflow.common.config import settings
from shopflow.common.logging import logger, order_id_ctx
from shopflow.common.metrics import sweep_order_failures_total, sweep_runs_total
from shopflow.common.state_machine import Actor, OrderStatus
from shopflow.services.orders.lifecycle import OrderLifecycle
from shopflow.services.orders.schemas import OrderSnapshot
from shopflow.services.orders.store import OrderStore


@dataclass
class SweepReport:
    sweep: str
    selected: int = 0
    processed: int = 0
    failed: int = 0
    order_ids: list[str] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SweepRunner:
    """Runs each sweep once on demand, or forever on its own interval."""

    def __init__(
        self,
        session_factory,
        lifecycle: OrderLifecycle,
        reconciliation,
        fanout,
        store: OrderStore | None = None,
        clock: Callable[[], datetime] = _utcnow,
        service_name: str = "orders",
    ) -> None:
        self.session_factory = session_factory
        self.lifecycle = lifecycle
        self.reconciliation = reconciliation
        self.fanout = fanout
        self.store = store or OrderStore()
        self.clock = clock
        self.service_name = service_name

    async def _each(
        self, report: SweepReport, order_id: str, step: Callable[[], Awaitable[bool]]
    ) -> None:
        token = order_id_ctx.set(order_id)
        try:
            if await step():
                report.processed += 1
                report.order_ids.append(order_id)
        except Exception as exc:
            report.failed += 1
            sweep_order_failures_total.labels(service=self.service_name, sweep=report.sweep).inc()
            logger.error(
                "sweep_order_failed sweep=%s order_id=%s error_type=%s error=%s",
                report.sweep,
                order_id,
                type(exc).__name__,
                exc,
            )
        finally:
            order_id_ctx.reset(token)

    def _finish(self, report: SweepReport) -> SweepReport:
        sweep_runs_total.labels(service=self.service_name, sweep=report.sweep).inc()
        logger.info(
            "sweep_finished sweep=%s selected=%s processed=%s failed=%s",
            report.sweep,
            report.selected,
            report.processed,
            report.failed,
        )
        return report

    async def auto_review_sweep(self, now: datetime | None = None) -> SweepReport:
        """Advance orders that have sat in `Payment Confirmed` long enough."""

        now = now or self.clock()
        cutoff = now - timedelta(minutes=settings.auto_review_after_minutes)
        with self.session_factory() as db:
            order_ids = self.store.orders_in_status_since(db, OrderStatus.PAYMENT_CONFIRMED, cutoff)
        report = SweepReport("auto_review", selected=len(order_ids))

        for order_id in order_ids:
            async def step(order_id=order_id) -> bool:
                snapshot = await self.lifecycle.transition(
                    order_id,
                    OrderStatus.UNDER_REVIEW,
                    notes="Automatically moved to review",
                    actor=Actor.SCHEDULER,
                    expected_current=OrderStatus.PAYMENT_CONFIRMED,
                )
                return snapshot is not None

            await self._each(report, order_id, step)
        return self._finish(report)

    async def payment_reminder_sweep(self, now: datetime | None = None) -> SweepReport:
        """Remind customers whose order turned 24 hours old during the last window.

        The window is `(now - 25h, now - 24h]`, one hour wide to match the
        hourly schedule, so consecutive runs never select the same order.
        """

        now = now or self.clock()
        until = now - timedelta(hours=settings.reminder_after_hours)
        after = until - timedelta(hours=settings.reminder_window_hours)
        with self.session_factory() as db:
            order_ids = self.store.awaiting_payment_created_between(db, after, until)
        report = SweepReport("payment_reminder", selected=len(order_ids))

        for order_id in order_ids:
            async def step(order_id=order_id) -> bool:
                with self.session_factory() as db:
                    order = OrderSnapshot.model_validate(self.store.get(db, order_id), from_attributes=True)
                await self.fanout.send_reminder(order)
                return True

            await self._each(report, order_id, step)
        return self._finish(report)

    async def gateway_poll_sweep(self, now: datetime | None = None) -> SweepReport:
        """Check pending attempts at every gateway that supports polling."""

        report = SweepReport("gateway_poll")
        for gateway in self.reconciliation.gateways.polling():
            with self.session_factory() as db:
                pending = self.store.pending_for_gateway(db, gateway.name)
            report.selected += len(pending)

            for order_id, gateway_payment_id in pending:
                async def step(order_id=order_id, gateway_payment_id=gateway_payment_id, name=gateway.name) -> bool:
                    result = await self.reconciliation.poll_gateway(name, order_id, gateway_payment_id)
                    logger.info(
                        "poll_result gateway=%s order_id=%s action=%s", name, order_id, result.action
                    )
                    return result.action in {"confirmed", "failed"}

                await self._each(report, order_id, step)
        return self._finish(report)

    def sweeps(self) -> dict[str, Callable[..., Awaitable[SweepReport]]]:
        return {
            "auto_review": self.auto_review_sweep,
            "payment_reminder": self.payment_reminder_sweep,
            "gateway_poll": self.gateway_poll_sweep,
        }

    def intervals(self) -> dict[str, int]:
        return {
            "auto_review": settings.auto_review_interval_seconds,
            "payment_reminder": settings.reminder_interval_seconds,
            "gateway_poll": settings.payment_poll_interval_seconds,
        }

    async def run_forever(self, name: str, interval_seconds: int) -> None:
        """Background loop for one sweep; errors are logged and the loop continues."""

        sweep = self.sweeps()[name]
        logger.info("sweep_loop_started sweep=%s interval=%s", name, interval_seconds)
        while True:
            try:
                await sweep()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("sweep_loop_error sweep=%s error=%s", name, exc)
            await asyncio.sleep(interval_seconds)
