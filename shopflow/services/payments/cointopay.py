"""Open-banking payments through the Cointopay proxy. No webhooks; polled."""

from typing import Any

from shopflow.common.config import settings
from shopflow.common.errors import InvalidGatewayResponse
from shopflow.common.state_machine import PaymentStatus
from shopflow.services.orders.schemas import OrderSnapshot
from shopflow.services.payments.gateways import (
    GatewayStatusReport,
    Outcome,
    PaymentAttempt,
    PaymentGateway,
)


class CointopayGateway(PaymentGateway):
    name = "cointopay"
    display_name = "Open Banking"
    payment_methods = frozenset({"Open Banking", "cointopay"})
    supports_polling = True
    status_map = {
        "paid": (Outcome.PAID, PaymentStatus.PAID),
        "overpaid": (Outcome.PAID, PaymentStatus.PAID),
        "confirmed": (Outcome.PAID, PaymentStatus.PAID),
        "pending": (Outcome.PENDING, PaymentStatus.PENDING),
        "awaiting-fiat": (Outcome.PENDING, PaymentStatus.PENDING),
        "not paid": (Outcome.PENDING, PaymentStatus.PENDING),
        "expired": (Outcome.FAILED, PaymentStatus.EXPIRED),
    }

    def __init__(self, proxy_url: str | None = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.proxy_url = (proxy_url or settings.cointopay_proxy_url).rstrip("/")

    async def create_payment(self, order: OrderSnapshot, options: dict[str, Any]) -> PaymentAttempt:
        data = await self._request(
            "create",
            "POST",
            f"{self.proxy_url}/gateway/lx/cp_create.php",
            json={"amount": float(order.total)},
        )
        data = self._require(data, "gateway_payment_id", "payment_url")
        return PaymentAttempt(
            gateway_payment_id=str(data["gateway_payment_id"]),
            redirect_url=data["payment_url"],
        )

    async def check_status(self, gateway_payment_id: str) -> GatewayStatusReport:
        data = await self._request(
            "check",
            "POST",
            f"{self.proxy_url}/gateway/lx/cp_status.php",
            json={"gatewayPaymentId": gateway_payment_id},
        )
        body = self._require(data, "data")
        details = body["data"]
        if not isinstance(details, dict) or not details.get("Status"):
            raise InvalidGatewayResponse("cointopay status response missing data.Status")
        return GatewayStatusReport(
            gateway=self.name,
            status=str(details["Status"]),
            gateway_payment_id=gateway_payment_id,
            order_reference=details.get("CustomerReferenceNr") or None,
            amount=str(details["Amount"]) if details.get("Amount") is not None else None,
            currency=details.get("inputCurrency"),
        )
