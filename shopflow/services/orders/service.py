"""Order placement, lookup, operator edits and promo codes."""

import hashlib
import random
import re
import secrets
import time

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from shopflow.common.config import settings
from shopflow.common.errors import NotFound, ValidationError
from shopflow.common.logging import logger, order_id_ctx
from shopflow.common.metrics import orders_created_total
from shopflow.common.state_machine import Actor, OrderStatus
from shopflow.services.orders.lifecycle import OrderLifecycle
from shopflow.services.orders.models import Order, OrderItem, OrderStatusRecord, PromoCode, utcnow
from shopflow.services.orders.schemas import OrderCreateRequest, OrderSnapshot
from shopflow.services.orders.store import OrderStore


ORDER_ID_ATTEMPTS = 5


def generate_order_id(prefix: str | None = None) -> str:
    """`LS` + last 9 digits of epoch milliseconds + 3 random digits."""

    millis = str(int(time.time() * 1000))[-9:]
    return f"{prefix or settings.order_id_prefix}{millis}{random.randint(0, 999):03d}"


def hash_email(email: str) -> str:
    return hashlib.sha256(email.strip().lower().encode("utf-8")).hexdigest()


def hash_phone(phone: str) -> str:
    return hashlib.sha256(re.sub(r"\D", "", phone).encode("utf-8")).hexdigest()


class OrderService:
    """Owns order rows; status changes go through `OrderLifecycle`."""

    def __init__(
        self,
        session_factory,
        lifecycle: OrderLifecycle,
        fanout,
        store: OrderStore | None = None,
        service_name: str = "orders",
    ) -> None:
        self.session_factory = session_factory
        self.lifecycle = lifecycle
        self.fanout = fanout
        self.store = store or OrderStore()
        self.service_name = service_name

    def _snapshot(self, order: Order) -> OrderSnapshot:
        return OrderSnapshot.model_validate(order, from_attributes=True)

    async def create_order(self, req: OrderCreateRequest) -> tuple[OrderSnapshot, str]:
        """Persist a new order with its initial ledger record.

        Returns the snapshot plus the customer access token, which is only
        handed out here.
        """

        promo_code = None
        if req.promo_code:
            promo_code = req.promo_code.strip().upper()
            with self.session_factory() as db:
                promo = db.execute(
                    select(PromoCode).where(func.upper(PromoCode.code) == promo_code)
                ).scalar_one_or_none()
            if promo is None or not promo.is_active:
                raise ValidationError(f"invalid promo code {promo_code}", public_message="Invalid promo code")

        fields = req.model_dump(exclude={"items", "promo_code"})
        fields["customer_email"] = req.customer_email.strip().lower()
        fields["currency"] = req.currency.upper()
        for attempt in range(1, ORDER_ID_ATTEMPTS + 1):
            order_id = generate_order_id()
            access_token = secrets.token_urlsafe(32)
            with self.session_factory() as db:
                order = Order(
                    id=order_id,
                    access_token=access_token,
                    promo_code=promo_code,
                    hashed_email=hash_email(req.customer_email),
                    hashed_phone=hash_phone(req.customer_phone),
                    payment_status="pending",
                    status_version=1,
                    created_at=utcnow(),
                    **fields,
                )
                order.items = [OrderItem(**item.model_dump()) for item in req.items]
                db.add(order)
                db.add(
                    OrderStatusRecord(
                        order_id=order_id,
                        status=OrderStatus.AWAITING_PAYMENT.value,
                        location=f"{req.shipping_city}, {req.shipping_country}",
                        notes="Order placed",
                        actor=Actor.CUSTOMER.value,
                        is_current=True,
                        is_completed=False,
                        hashed_email=order.hashed_email,
                        hashed_phone=order.hashed_phone,
                        gclid=req.gclid,
                        conversion_value=req.total,
                        currency=fields["currency"],
                        user_agent=req.user_agent,
                        ip_address=req.ip_address,
                        created_at=order.created_at,
                    )
                )
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    logger.warning("order_id_collision order_id=%s attempt=%s", order_id, attempt)
                    continue
                snapshot = self._snapshot(self.store.get(db, order_id))
            break
        else:
            raise ValidationError("could not allocate a unique order id")

        token = order_id_ctx.set(snapshot.id)
        try:
            orders_created_total.labels(service=self.service_name, payment_method=snapshot.payment_method).inc()
            logger.info(
                "order_created order_id=%s total=%s currency=%s payment_method=%s",
                snapshot.id,
                snapshot.total,
                snapshot.currency,
                snapshot.payment_method,
            )
            await self.fanout.order_placed(snapshot)
        finally:
            order_id_ctx.reset(token)
        return snapshot, access_token

    def get_order(self, order_id: str) -> OrderSnapshot | None:
        with self.session_factory() as db:
            order = self.store.find(db, order_id)
            return self._snapshot(order) if order is not None else None

    def get_order_by_token(self, access_token: str) -> OrderSnapshot | None:
        with self.session_factory() as db:
            order = self.store.find_by_token(db, access_token)
            return self._snapshot(order) if order is not None else None

    def track_order(self, order_id: str, email: str) -> OrderSnapshot:
        """Customer lookup by order id plus email, both compared case-insensitively."""

        with self.session_factory() as db:
            order = self.store.find(db, order_id.strip().upper())
            if order is None or order.customer_email.lower() != email.strip().lower():
                raise NotFound(f"no order {order_id} for supplied email")
            return self._snapshot(order)

    def list_orders(self, page: int = 1, limit: int = 20) -> tuple[list[OrderSnapshot], int]:
        if page < 1 or limit < 1 or limit > 100:
            raise ValidationError(f"bad page window page={page} limit={limit}")
        with self.session_factory() as db:
            orders, total = self.store.list_page(db, page, limit)
            return [self._snapshot(order) for order in orders], total

    async def transition_status(
        self,
        order_id: str,
        status: str,
        location: str | None = None,
        notes: str | None = None,
        actor: Actor = Actor.OPERATOR,
    ) -> OrderSnapshot:
        return await self.lifecycle.transition(
            order_id, status, location=location, notes=notes, actor=actor
        )

    async def update_tracking(
        self, order_id: str, courier: str, tracking_number: str, tracking_url: str | None = None
    ) -> OrderSnapshot:
        """Attach courier details and tell the customer; the status is left alone."""

        with self.session_factory() as db:
            self.store.get(db, order_id)
            self.store.set_tracking(db, order_id, courier.strip(), tracking_number.strip(), tracking_url)
            db.commit()
            db.expire_all()
            snapshot = self._snapshot(self.store.get(db, order_id))
        logger.info("tracking_updated order_id=%s courier=%s", order_id, courier)
        await self.fanout.tracking_updated(snapshot)
        return snapshot

    # Promo codes

    def validate_promo_code(self, code: str) -> PromoCode:
        """Resolve an active code and count the use."""

        normalized = code.strip().upper()
        with self.session_factory() as db:
            result = db.execute(
                update(PromoCode)
                .where(func.upper(PromoCode.code) == normalized, PromoCode.is_active.is_(True))
                .values(used_count=PromoCode.used_count + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise NotFound(f"promo code {normalized} not found", public_message="Invalid promo code")
            db.commit()
            return db.execute(
                select(PromoCode).where(func.upper(PromoCode.code) == normalized)
            ).scalar_one()

    def create_promo_code(self, code: str, discount: int, manager_name: str) -> PromoCode:
        if not 1 <= discount <= 100:
            raise ValidationError(f"discount {discount} out of range", public_message="Discount must be 1-100")
        normalized = code.strip().upper()
        with self.session_factory() as db:
            promo = PromoCode(code=normalized, discount=discount, manager_name=manager_name.strip())
            db.add(promo)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise ValidationError(
                    f"promo code {normalized} exists", public_message="Promo code already exists"
                ) from exc
            logger.info("promo_code_created code=%s discount=%s manager=%s", normalized, discount, promo.manager_name)
            return promo

    def deactivate_promo_code(self, code: str) -> PromoCode:
        normalized = code.strip().upper()
        with self.session_factory() as db:
            promo = db.execute(
                select(PromoCode).where(func.upper(PromoCode.code) == normalized)
            ).scalar_one_or_none()
            if promo is None:
                raise NotFound(f"promo code {normalized} not found", public_message="Promo code not found")
            promo.is_active = False
            db.commit()
            logger.info("promo_code_deactivated code=%s", normalized)
            return promo

    def list_active_promo_codes(self) -> list[PromoCode]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(PromoCode).where(PromoCode.is_active.is_(True)).order_by(PromoCode.created_at.desc())
                ).scalars()
            )
