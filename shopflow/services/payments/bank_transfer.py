"""Manual bank transfers: the customer pays offline and uploads a proof.

The provider never reports settlement; an operator confirms the payment by
moving the order to `Payment Confirmed`.
"""

from typing import Any

from shopflow.common.config import settings
from shopflow.common.state_machine import PaymentStatus
from shopflow.services.orders.schemas import OrderSnapshot
from shopflow.services.payments.gateways import (
    GatewayStatusReport,
    Outcome,
    PaymentAttempt,
    PaymentGateway,
)


class BankTransferGateway(PaymentGateway):
    status_map = {"pending": (Outcome.PENDING, PaymentStatus.PENDING)}

    def __init__(
        self,
        name: str,
        display_name: str,
        payment_methods: set[str],
        details_url: str | None = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.name = name
        self.display_name = display_name
        self.payment_methods = frozenset(payment_methods) | {name}
        self.details_url = details_url or None

    async def bank_details(self) -> dict[str, Any]:
        if not self.details_url:
            return {}
        data = await self._request("details", "GET", self.details_url)
        return self._require(data)

    async def create_payment(self, order: OrderSnapshot, options: dict[str, Any]) -> PaymentAttempt:
        details = await self.bank_details()
        return PaymentAttempt(
            gateway_payment_id=order.id,
            redirect_url=None,
            details={
                "bank_details": details,
                "reference": order.id,
                "amount": str(order.total),
                "currency": order.currency,
            },
        )

    async def check_status(self, gateway_payment_id: str) -> GatewayStatusReport:
        return GatewayStatusReport(
            gateway=self.name,
            status="pending",
            gateway_payment_id=gateway_payment_id,
            order_reference=gateway_payment_id,
        )


def default_bank_transfers(**kwargs) -> list[BankTransferGateway]:
    return [
        BankTransferGateway(
            "sepa", "SEPA Instant Transfer", {"SEPA Instant Transfer", "SEPA"},
            details_url=settings.sepa_details_url, **kwargs,
        ),
        BankTransferGateway(
            "faster_payments", "Faster Payments", {"Faster Payments", "UK Faster Payments"},
            details_url=settings.faster_payments_details_url, **kwargs,
        ),
        BankTransferGateway(
            "ach", "ACH Transfer", {"ACH Transfer", "ACH"},
            details_url=settings.ach_details_url, **kwargs,
        ),
        BankTransferGateway("turkey", "Turkey Bank Transfer", {"Turkey Bank Transfer"}, **kwargs),
    ]
