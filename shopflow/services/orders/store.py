"""Persistence helpers over orders and the append-only status ledger.

Every method takes an open session so callers control the transaction
boundary; the lifecycle composes several of these into one commit.
"""

from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload

from shopflow.common.errors import NotFound, StaleStatusError
from shopflow.common.state_machine import INCOMPLETE_STATUSES, TERMINAL_STATUSES, OrderStatus, PaymentStatus
from shopflow.services.orders.models import Order, OrderStatusRecord, utcnow


# Fields copied from the previous current record into the next one, falling
# back to the order column of the same name.
ATTRIBUTION_FIELDS = ("hashed_email", "hashed_phone", "gclid", "user_agent", "ip_address")


class OrderStore:
    """Query and write primitives for `Order` and `OrderStatusRecord`."""

    def _with_ledger(self):
        return select(Order).options(selectinload(Order.items), selectinload(Order.statuses))

    def get(self, db: Session, order_id: str) -> Order:
        order = db.execute(self._with_ledger().where(Order.id == order_id)).scalar_one_or_none()
        if order is None:
            raise NotFound(f"order {order_id} not found")
        return order

    def find(self, db: Session, order_id: str) -> Order | None:
        return db.execute(self._with_ledger().where(Order.id == order_id)).scalar_one_or_none()

    def find_by_token(self, db: Session, access_token: str) -> Order | None:
        return db.execute(
            self._with_ledger().where(Order.access_token == access_token)
        ).scalar_one_or_none()

    def find_by_gateway_payment_id(self, db: Session, gateway: str, gateway_payment_id: str) -> Order | None:
        return db.execute(
            self._with_ledger().where(
                Order.payment_gateway == gateway,
                Order.gateway_payment_id == gateway_payment_id,
            )
        ).scalar_one_or_none()

    def list_page(self, db: Session, page: int, limit: int) -> tuple[list[Order], int]:
        total = db.execute(select(func.count()).select_from(Order)).scalar_one()
        orders = (
            db.execute(
                self._with_ledger()
                .order_by(Order.created_at.desc(), Order.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            .scalars()
            .all()
        )
        return list(orders), total

    # Ledger

    def current_record(self, db: Session, order_id: str) -> OrderStatusRecord | None:
        return db.execute(
            select(OrderStatusRecord).where(
                OrderStatusRecord.order_id == order_id,
                OrderStatusRecord.is_current.is_(True),
            )
        ).scalar_one_or_none()

    def advance_pointer(self, db: Session, order_id: str, expected_version: int) -> int:
        """Claim the next ledger slot for an order or raise `StaleStatusError`.

        The conditional bump on `status_version` is the per-order serialization
        point: of two writers that read the same version only one gets a row.
        """

        result = db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status_version == expected_version)
            .values(status_version=expected_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleStatusError(
                f"status pointer moved for order {order_id} (expected version {expected_version})"
            )
        return expected_version + 1

    def append_record(
        self,
        db: Session,
        order: Order,
        previous: OrderStatusRecord | None,
        status: OrderStatus,
        *,
        location: str | None,
        notes: str | None,
        actor: str,
    ) -> OrderStatusRecord:
        """Retire the current record and insert `status` as the new current one."""

        db.execute(
            update(OrderStatusRecord)
            .where(
                OrderStatusRecord.order_id == order.id,
                OrderStatusRecord.is_current.is_(True),
            )
            .values(is_current=False)
            .execution_options(synchronize_session=False)
        )
        carried = {}
        for field in ATTRIBUTION_FIELDS:
            value = getattr(previous, field) if previous is not None else None
            carried[field] = value if value is not None else getattr(order, field)
        conversion_value = previous.conversion_value if previous is not None else None
        currency = previous.currency if previous is not None else None

        record = OrderStatusRecord(
            order_id=order.id,
            status=status.value,
            location=location,
            notes=notes,
            actor=actor,
            is_current=True,
            is_completed=status not in INCOMPLETE_STATUSES,
            conversion_value=conversion_value if conversion_value is not None else order.total,
            currency=currency or order.currency,
            created_at=utcnow(),
            **carried,
        )
        db.add(record)
        db.flush()
        return record

    def mark_paid(self, db: Session, order_id: str, paid_at: datetime) -> bool:
        """Set `paid` once. True only for the caller whose update took effect."""

        result = db.execute(
            update(Order)
            .where(Order.id == order_id, Order.payment_status != PaymentStatus.PAID.value)
            .values(payment_status=PaymentStatus.PAID.value, paid_at=paid_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def mark_payment_failed(self, db: Session, order_id: str, reason: PaymentStatus) -> bool:
        result = db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.payment_status.not_in([PaymentStatus.PAID.value, reason.value]),
            )
            .values(payment_status=reason.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # Payment attempt and tracking

    def record_payment_attempt(
        self,
        db: Session,
        order_id: str,
        gateway: str,
        gateway_payment_id: str,
        payment_url: str | None,
    ) -> bool:
        """Overwrite the active attempt unless the order got paid meanwhile."""

        result = db.execute(
            update(Order)
            .where(Order.id == order_id, Order.payment_status != PaymentStatus.PAID.value)
            .values(
                payment_gateway=gateway,
                gateway_payment_id=gateway_payment_id,
                payment_url=payment_url,
                payment_status=PaymentStatus.PENDING.value,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def set_payment_proof(self, db: Session, order_id: str, path: str) -> None:
        db.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(payment_proof=path)
            .execution_options(synchronize_session=False)
        )

    def set_tracking(
        self, db: Session, order_id: str, courier: str, tracking_number: str, tracking_url: str | None
    ) -> None:
        db.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(courier=courier, tracking_number=tracking_number, tracking_url=tracking_url)
            .execution_options(synchronize_session=False)
        )

    # Sweep queries

    def orders_in_status_since(self, db: Session, status: OrderStatus, cutoff: datetime) -> list[str]:
        """Order ids whose current record is `status` and was written at or before `cutoff`."""

        rows = db.execute(
            select(OrderStatusRecord.order_id)
            .where(
                OrderStatusRecord.is_current.is_(True),
                OrderStatusRecord.status == status.value,
                OrderStatusRecord.created_at <= cutoff,
            )
            .order_by(OrderStatusRecord.created_at)
        ).scalars()
        return list(rows)

    def awaiting_payment_created_between(
        self, db: Session, after: datetime, until: datetime
    ) -> list[str]:
        """Unpaid order ids still awaiting payment with `after < created_at <= until`."""

        rows = db.execute(
            select(Order.id)
            .join(OrderStatusRecord, OrderStatusRecord.order_id == Order.id)
            .where(
                OrderStatusRecord.is_current.is_(True),
                OrderStatusRecord.status == OrderStatus.AWAITING_PAYMENT.value,
                Order.payment_status == PaymentStatus.PENDING.value,
                Order.created_at > after,
                Order.created_at <= until,
            )
            .order_by(Order.created_at)
        ).scalars()
        return list(rows)

    def pending_for_gateway(self, db: Session, gateway: str) -> list[tuple[str, str]]:
        """Unpaid attempts on `gateway` whose order is not delivered or closed."""

        rows = db.execute(
            select(Order.id, Order.gateway_payment_id)
            .join(OrderStatusRecord, OrderStatusRecord.order_id == Order.id)
            .where(
                OrderStatusRecord.is_current.is_(True),
                OrderStatusRecord.status.not_in([status.value for status in TERMINAL_STATUSES]),
                Order.payment_status == PaymentStatus.PENDING.value,
                Order.payment_gateway == gateway,
                Order.gateway_payment_id.is_not(None),
            )
            .order_by(Order.created_at)
        ).all()
        return [(order_id, payment_id) for order_id, payment_id in rows]
