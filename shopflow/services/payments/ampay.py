"""AmPay open-banking redirect gateway with HMAC-signed webhooks."""

import hashlib
import hmac
from typing import Any

from shopflow.common.config import settings
from shopflow.common.errors import GatewayUnavailable, ValidationError
from shopflow.common.logging import logger
from shopflow.common.state_machine import PaymentStatus
from shopflow.services.orders.schemas import OrderSnapshot
from shopflow.services.payments.gateways import (
    GatewayStatusReport,
    Outcome,
    PaymentAttempt,
    PaymentGateway,
)


SIGNATURE_HEADER = "x-signature"


class AmPayGateway(PaymentGateway):
    name = "ampay"
    display_name = "Open Banking (AmPay)"
    payment_methods = frozenset({"Open Banking", "ampay"})
    status_map = {
        "accepted": (Outcome.PAID, PaymentStatus.PAID),
        "pending": (Outcome.PENDING, PaymentStatus.PENDING),
        "processing": (Outcome.PENDING, PaymentStatus.PENDING),
        "expired": (Outcome.FAILED, PaymentStatus.EXPIRED),
        "failed": (Outcome.FAILED, PaymentStatus.FAILED),
    }

    def __init__(
        self,
        gateway_url: str | None = None,
        webhook_secret: str | None = None,
        merchant_id: str | None = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.gateway_url = gateway_url or settings.ampay_gateway_url
        self.webhook_secret = settings.ampay_webhook_secret if webhook_secret is None else webhook_secret
        self.merchant_id = merchant_id or settings.ampay_merchant_id

    async def create_payment(self, order: OrderSnapshot, options: dict[str, Any]) -> PaymentAttempt:
        payload = {
            "client_merchant_id": self.merchant_id,
            "sub_method": options.get("sub_method", "GAM"),
            "currency": order.currency,
            "amount": float(order.total),
            "callback_url": settings.ampay_callback_url,
            "client_transaction_id": order.id,
            "transaction_description": order.id,
            "customer": {
                "ip": order.ip_address or options.get("customer_ip", ""),
                "email": order.customer_email,
                "full_name": order.customer_name,
                "country": options.get("customer_country", order.shipping_country),
            },
        }
        data = await self._request("create", "POST", self.gateway_url, json=payload)
        if isinstance(data, dict) and data.get("error_message"):
            raise GatewayUnavailable(f"ampay create declined: {data['error_message']}")
        data = self._require(data, "system_id", "redirect_url")
        return PaymentAttempt(
            gateway_payment_id=str(data["system_id"]),
            redirect_url=data["redirect_url"],
            details={"tracker_id": data.get("tracker_id")},
        )

    async def check_status(self, gateway_payment_id: str) -> GatewayStatusReport:
        data = await self._request(
            "check",
            "POST",
            self.gateway_url,
            json={"action": "status", "system_id": gateway_payment_id},
        )
        data = self._require(data, "status")
        return self._report(data, default_payment_id=gateway_payment_id)

    def verify_callback(self, payload: dict[str, Any], raw_body: bytes, headers: dict[str, str]) -> bool:
        if not self.webhook_secret:
            logger.error("ampay_webhook_secret_missing")
            return False
        signature = {k.lower(): v for k, v in headers.items()}.get(SIGNATURE_HEADER, "")
        expected = hmac.new(self.webhook_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())

    def parse_callback(self, payload: dict[str, Any]) -> GatewayStatusReport:
        if not payload.get("status") or not payload.get("client_transaction_id"):
            raise ValidationError("ampay callback missing status or client_transaction_id")
        return self._report(payload)

    def _report(self, data: dict[str, Any], default_payment_id: str | None = None) -> GatewayStatusReport:
        return GatewayStatusReport(
            gateway=self.name,
            status=str(data["status"]),
            gateway_payment_id=str(data.get("system_id") or default_payment_id or "") or None,
            order_reference=data.get("client_transaction_id"),
            amount=str(data["amount"]) if data.get("amount") is not None else None,
            currency=data.get("currency"),
            error_message=data.get("error_message"),
        )
