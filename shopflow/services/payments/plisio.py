"""Plisio crypto invoicing. Callbacks carry a keyed `verify_hash`."""

import hashlib
import hmac
import json
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


def callback_digest(payload: dict[str, Any], secret: str) -> str:
    """HMAC-SHA1 over the key-sorted compact JSON of every field but `verify_hash`."""

    fields = {key: payload[key] for key in sorted(payload) if key != "verify_hash"}
    message = json.dumps(fields, separators=(",", ":"), ensure_ascii=False)
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha1).hexdigest()


class PlisioGateway(PaymentGateway):
    name = "plisio"
    display_name = "Cryptocurrency"
    payment_methods = frozenset({"Cryptocurrency", "Crypto", "plisio"})
    status_map = {
        "completed": (Outcome.PAID, PaymentStatus.PAID),
        "mismatch": (Outcome.PAID, PaymentStatus.PAID),
        "paid": (Outcome.PAID, PaymentStatus.PAID),
        "new": (Outcome.PENDING, PaymentStatus.PENDING),
        "pending": (Outcome.PENDING, PaymentStatus.PENDING),
        "pending internal": (Outcome.PENDING, PaymentStatus.PENDING),
        "expired": (Outcome.FAILED, PaymentStatus.EXPIRED),
        "cancelled": (Outcome.FAILED, PaymentStatus.CANCELLED),
        "error": (Outcome.FAILED, PaymentStatus.ERROR),
    }

    def __init__(
        self,
        api_url: str | None = None,
        api_key: str | None = None,
        secret_key: str | None = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.api_url = (api_url or settings.plisio_api_url).rstrip("/")
        self.api_key = settings.plisio_api_key if api_key is None else api_key
        self.secret_key = settings.plisio_secret_key if secret_key is None else secret_key

    async def create_payment(self, order: OrderSnapshot, options: dict[str, Any]) -> PaymentAttempt:
        currency = options.get("currency")
        if not currency:
            raise ValidationError("cryptocurrency is required", public_message="Cryptocurrency is required")
        data = await self._request(
            "create",
            "GET",
            f"{self.api_url}/invoices/new",
            params={
                "source_currency": order.currency,
                "source_amount": str(order.total),
                "order_number": order.id.removeprefix(settings.order_id_prefix),
                "currency": currency,
                "email": order.customer_email,
                "order_name": order.id,
                "callback_url": settings.plisio_callback_url,
                "api_key": self.api_key,
            },
        )
        invoice = self._invoice(data, "create")
        invoice = self._require(invoice, "txn_id", "invoice_url")
        return PaymentAttempt(
            gateway_payment_id=str(invoice["txn_id"]),
            redirect_url=invoice["invoice_url"],
            details={
                key: invoice.get(key)
                for key in ("amount", "currency", "wallet_hash", "qr_code", "expire_utc")
                if invoice.get(key) is not None
            },
        )

    async def check_status(self, gateway_payment_id: str) -> GatewayStatusReport:
        data = await self._request(
            "check",
            "GET",
            f"{self.api_url}/invoices/{gateway_payment_id}",
            params={"api_key": self.api_key},
        )
        body = self._invoice(data, "check")
        # The lookup endpoint nests the invoice one level deeper than create.
        invoice = body.get("invoice") if isinstance(body.get("invoice"), dict) else body
        invoice = self._require(invoice, "status")
        return self._report(invoice, default_payment_id=gateway_payment_id)

    def verify_callback(self, payload: dict[str, Any], raw_body: bytes, headers: dict[str, str]) -> bool:
        received = payload.get("verify_hash")
        if not self.secret_key:
            logger.error("plisio_secret_key_missing")
            return False
        if not isinstance(received, str) or not received:
            return False
        return hmac.compare_digest(callback_digest(payload, self.secret_key), received)

    def parse_callback(self, payload: dict[str, Any]) -> GatewayStatusReport:
        if not payload.get("status") or not (payload.get("txn_id") or payload.get("order_name")):
            raise ValidationError("plisio callback missing status or transaction reference")
        return self._report(payload)

    def _invoice(self, data: Any, operation: str) -> dict[str, Any]:
        body = self._require(data, "status")
        if body["status"] == "error":
            error = body.get("data") or {}
            message = error.get("message") if isinstance(error, dict) else None
            raise GatewayUnavailable(f"plisio {operation} error: {message or 'unknown'}")
        return self._require(body.get("data"))

    def _report(self, data: dict[str, Any], default_payment_id: str | None = None) -> GatewayStatusReport:
        confirmations = data.get("confirmations")
        try:
            confirmations = int(confirmations) if confirmations is not None else None
        except (TypeError, ValueError):
            confirmations = None
        tx_urls = data.get("tx_urls") or []
        if isinstance(tx_urls, str):
            tx_urls = [tx_urls]
        return GatewayStatusReport(
            gateway=self.name,
            status=str(data["status"]),
            gateway_payment_id=str(data.get("txn_id") or default_payment_id or "") or None,
            order_reference=data.get("order_name"),
            confirmations=confirmations,
            amount=str(data["amount"]) if data.get("amount") is not None else None,
            currency=data.get("currency"),
            tx_urls=[str(url) for url in tx_urls],
        )
