"""Order lifecycle: status transitions and the side effects bound to them.

A transition is one database transaction that bumps `orders.status_version`
conditionally, retires the current ledger record and appends the new one. The
paid flag is flipped by a conditional update in the same transaction, and only
the writer that actually flipped it fires purchase analytics. Notifications go
out after commit and never undo the transition.
"""

from dataclasses import dataclass

from shopflow.common.config import settings
from shopflow.common.errors import StaleStatusError, ValidationError
from shopflow.common.logging import logger, order_id_ctx, trace_id_ctx
from shopflow.common.metrics import (
    order_transitions_total,
    payment_confirmations_total,
    payment_failures_total,
    status_conflicts_total,
)
from shopflow.common.state_machine import (
    FAILED_PAYMENT_STATUSES,
    TERMINAL_STATUSES,
    Actor,
    OrderStatus,
    PaymentStatus,
    is_automatic,
    parse_status,
)
from shopflow.services.orders.models import utcnow
from shopflow.services.orders.schemas import OrderSnapshot, TransitionEvent
from shopflow.services.orders.store import OrderStore


@dataclass
class _PaymentChange:
    """Payment-status mutation applied together with a ledger write."""

    target: PaymentStatus
    # Skip the whole transition when the conditional update matches no row.
    required: bool


class OrderLifecycle:
    """Applies status transitions and hands committed ones to the fanout."""

    def __init__(
        self,
        session_factory,
        fanout,
        store: OrderStore | None = None,
        service_name: str = "orders",
        conflict_retries: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.fanout = fanout
        self.store = store or OrderStore()
        self.service_name = service_name
        self.conflict_retries = (
            settings.transition_conflict_retries if conflict_retries is None else conflict_retries
        )

    async def transition(
        self,
        order_id: str,
        new_status,
        *,
        location: str | None = None,
        notes: str | None = None,
        actor: Actor = Actor.OPERATOR,
        expected_current: OrderStatus | None = None,
    ) -> OrderSnapshot | None:
        """Move an order to `new_status` and return the reloaded order.

        Returns None when an automatic transition was skipped: the current
        status no longer matches `expected_current`, or the order sits in a
        terminal status.
        """

        status = parse_status(new_status)
        payment = None
        if status == OrderStatus.PAYMENT_CONFIRMED:
            payment = _PaymentChange(PaymentStatus.PAID, required=False)
        return await self._run(order_id, status, location, notes, actor, expected_current, payment)

    async def confirm_payment(
        self,
        order_id: str,
        *,
        notes: str | None = None,
        actor: Actor = Actor.GATEWAY,
        source: str = "gateway",
    ) -> OrderSnapshot | None:
        """Record a confirmed payment unless the order is already paid."""

        payment = _PaymentChange(PaymentStatus.PAID, required=True)
        snapshot = await self._run(
            order_id, OrderStatus.PAYMENT_CONFIRMED, None, notes, actor, None, payment
        )
        if snapshot is not None:
            payment_confirmations_total.labels(service=self.service_name, source=source).inc()
        return snapshot

    async def fail_payment(
        self,
        order_id: str,
        reason: PaymentStatus,
        *,
        notes: str | None = None,
        gateway: str = "unknown",
        actor: Actor = Actor.GATEWAY,
    ) -> OrderSnapshot | None:
        """Move an unpaid order to `Payment Failed` with `reason` as its payment status."""

        reason = PaymentStatus(reason)
        if reason not in FAILED_PAYMENT_STATUSES:
            raise ValidationError(f"{reason.value} is not a payment failure reason")
        payment = _PaymentChange(reason, required=True)
        snapshot = await self._run(
            order_id, OrderStatus.PAYMENT_FAILED, None, notes, actor, None, payment
        )
        if snapshot is not None:
            payment_failures_total.labels(
                service=self.service_name, gateway=gateway, reason=payment.target.value
            ).inc()
        return snapshot

    async def _run(
        self,
        order_id: str,
        status: OrderStatus,
        location: str | None,
        notes: str | None,
        actor: Actor,
        expected_current: OrderStatus | None,
        payment: _PaymentChange | None,
    ) -> OrderSnapshot | None:
        token = order_id_ctx.set(order_id)
        try:
            attempt = 0
            while True:
                try:
                    event = self._apply(order_id, status, location, notes, actor, expected_current, payment)
                    break
                except StaleStatusError:
                    status_conflicts_total.labels(service=self.service_name).inc()
                    if attempt >= self.conflict_retries:
                        logger.error(
                            "transition_conflict_exhausted order_id=%s status=%s attempts=%s",
                            order_id,
                            status.value,
                            attempt + 1,
                        )
                        raise
                    attempt += 1
                    logger.warning(
                        "transition_conflict_retry order_id=%s status=%s attempt=%s",
                        order_id,
                        status.value,
                        attempt,
                    )

            if event is None:
                return None
            order_transitions_total.labels(
                service=self.service_name, status=status.value, actor=actor.value
            ).inc()
            logger.info(
                "order_transitioned order_id=%s from=%s to=%s actor=%s newly_paid=%s",
                order_id,
                event.old_status,
                event.new_status,
                actor.value,
                event.newly_paid,
            )
            await self.fanout.dispatch(event)
            return event.order
        finally:
            order_id_ctx.reset(token)

    def _apply(
        self,
        order_id: str,
        status: OrderStatus,
        location: str | None,
        notes: str | None,
        actor: Actor,
        expected_current: OrderStatus | None,
        payment: _PaymentChange | None,
    ) -> TransitionEvent | None:
        """Write one transition in a single transaction; None means skipped."""

        with self.session_factory() as db:
            order = self.store.get(db, order_id)
            previous = self.store.current_record(db, order_id)
            old_status = previous.status if previous is not None else None

            if expected_current is not None and old_status != expected_current.value:
                logger.info(
                    "transition_skipped reason=status_moved order_id=%s expected=%s current=%s",
                    order_id,
                    expected_current.value,
                    old_status,
                )
                return None
            if is_automatic(actor) and old_status in {s.value for s in TERMINAL_STATUSES}:
                logger.info(
                    "transition_skipped reason=terminal order_id=%s current=%s actor=%s",
                    order_id,
                    old_status,
                    actor.value,
                )
                return None

            self.store.advance_pointer(db, order_id, order.status_version)

            newly_paid = False
            if payment is not None:
                if payment.target == PaymentStatus.PAID:
                    changed = self.store.mark_paid(db, order_id, utcnow())
                    newly_paid = changed
                else:
                    changed = self.store.mark_payment_failed(db, order_id, payment.target)
                if payment.required and not changed:
                    db.rollback()
                    logger.info(
                        "transition_skipped reason=payment_unchanged order_id=%s payment_status=%s",
                        order_id,
                        order.payment_status,
                    )
                    return None

            self.store.append_record(
                db,
                order,
                previous,
                status,
                location=location,
                notes=notes,
                actor=actor.value,
            )
            db.commit()

            db.expire_all()
            snapshot = OrderSnapshot.model_validate(self.store.get(db, order_id), from_attributes=True)
            return TransitionEvent(
                trace_id=trace_id_ctx.get(),
                order=snapshot,
                old_status=old_status,
                new_status=status.value,
                actor=actor.value,
                location=location,
                notes=notes,
                newly_paid=newly_paid,
            )
