"""Payment attempts and manual transfer proofs for existing orders."""

import time
from pathlib import Path
from typing import Any

from shopflow.common.config import settings
from shopflow.common.errors import AlreadyPaid, NotFound, ValidationError
from shopflow.common.logging import logger
from shopflow.common.state_machine import PaymentStatus
from shopflow.services.orders.schemas import OrderSnapshot
from shopflow.services.orders.store import OrderStore
from shopflow.services.payments.gateways import GatewayRegistry, PaymentAttempt


PROOF_CONTENT_TYPES = {
    "image/jpeg": {".jpg", ".jpeg"},
    "image/jpg": {".jpg", ".jpeg"},
    "image/png": {".png"},
    "application/pdf": {".pdf"},
}


class PaymentService:
    """Guards and persists payment attempts created against a gateway."""

    def __init__(
        self,
        session_factory,
        gateways: GatewayRegistry,
        fanout,
        store: OrderStore | None = None,
        uploads_dir: str | None = None,
        max_proof_bytes: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.gateways = gateways
        self.fanout = fanout
        self.store = store or OrderStore()
        self.uploads_dir = Path(uploads_dir or settings.uploads_dir)
        self.max_proof_bytes = max_proof_bytes or settings.max_proof_bytes

    def _load(self, order_id: str) -> OrderSnapshot:
        with self.session_factory() as db:
            return OrderSnapshot.model_validate(self.store.get(db, order_id), from_attributes=True)

    async def create_payment(
        self, order_id: str, gateway_name: str, options: dict[str, Any] | None = None
    ) -> PaymentAttempt:
        """Start a payment attempt, replacing any earlier attempt on the order."""

        options = options or {}
        gateway = self.gateways.get(gateway_name)
        if gateway is None:
            raise ValidationError(
                f"unknown gateway {gateway_name}", public_message="Unsupported payment method"
            )
        order = self._load(order_id)
        if order.payment_status == PaymentStatus.PAID.value:
            raise AlreadyPaid(f"order {order_id} is already paid")
        if not gateway.accepts(order.payment_method):
            raise ValidationError(
                f"gateway {gateway_name} does not settle payment method {order.payment_method!r}",
                public_message="Payment method does not match the order",
            )

        attempt = await gateway.create_payment(order, options)

        with self.session_factory() as db:
            stored = self.store.record_payment_attempt(
                db, order_id, gateway.name, attempt.gateway_payment_id, attempt.redirect_url
            )
            if not stored:
                db.rollback()
                raise AlreadyPaid(f"order {order_id} was paid while the attempt was being created")
            db.commit()
        if order.gateway_payment_id and order.gateway_payment_id != attempt.gateway_payment_id:
            logger.info(
                "payment_attempt_replaced order_id=%s gateway=%s previous=%s",
                order_id,
                gateway.name,
                order.gateway_payment_id,
            )
        logger.info(
            "payment_attempt_created order_id=%s gateway=%s gateway_payment_id=%s",
            order_id,
            gateway.name,
            attempt.gateway_payment_id,
        )
        return attempt

    async def submit_payment_proof(
        self,
        order_id: str,
        gateway_name: str,
        filename: str,
        content: bytes,
        content_type: str | None,
    ) -> str:
        """Store a transfer receipt for operator review; the status is unchanged."""

        gateway = self.gateways.get(gateway_name)
        if gateway is None:
            raise ValidationError(f"unknown gateway {gateway_name}", public_message="Unsupported payment method")
        extension = Path(filename or "").suffix.lower()
        allowed = PROOF_CONTENT_TYPES.get((content_type or "").lower())
        if allowed is None or extension not in allowed:
            raise ValidationError(
                f"rejected proof type {content_type} {extension}",
                public_message="Only JPEG, PNG and PDF files are allowed",
            )
        if not content:
            raise ValidationError("empty proof upload", public_message="File is required")
        if len(content) > self.max_proof_bytes:
            raise ValidationError(
                f"proof of {len(content)} bytes exceeds limit",
                public_message="File is too large",
            )
        order = self._load(order_id)
        if order.payment_status == PaymentStatus.PAID.value:
            raise AlreadyPaid(f"order {order_id} is already paid")

        directory = self.uploads_dir / f"{gateway.name}-proofs"
        directory.mkdir(parents=True, exist_ok=True)
        stored_name = f"{order_id}_{int(time.time() * 1000)}{extension}"
        (directory / stored_name).write_bytes(content)

        with self.session_factory() as db:
            self.store.set_payment_proof(db, order_id, stored_name)
            db.commit()
            order = OrderSnapshot.model_validate(self.store.get(db, order_id), from_attributes=True)
        logger.info("payment_proof_stored order_id=%s gateway=%s file=%s", order_id, gateway.name, stored_name)
        await self.fanout.payment_proof_received(order, gateway.display_name, stored_name)
        return stored_name

    def list_gateways(self) -> list[dict[str, Any]]:
        result = []
        for name in self.gateways.names():
            gateway = self.gateways.get(name)
            result.append(
                {
                    "name": gateway.name,
                    "display_name": gateway.display_name,
                    "payment_methods": sorted(gateway.payment_methods),
                    "supports_polling": gateway.supports_polling,
                }
            )
        return result
