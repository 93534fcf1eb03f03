"""Payment gateway contract and the shared HTTP plumbing adapters build on.

Adapters are stateless translators between a provider's JSON and the
`PaymentAttempt` / `GatewayStatusReport` shapes; whatever must survive a
restart lives on the order row.
"""

import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel

from shopflow.common.config import settings
from shopflow.common.errors import GatewayUnavailable, InvalidGatewayResponse, ValidationError
from shopflow.common.logging import logger
from shopflow.common.metrics import gateway_latency_seconds, gateway_requests_total
from shopflow.common.state_machine import PaymentStatus
from shopflow.services.orders.schemas import OrderSnapshot


class Outcome(str, Enum):
    """Tri-state result of classifying a provider status."""

    PAID = "paid"
    PENDING = "pending"
    FAILED = "failed"


class PaymentAttempt(BaseModel):
    gateway_payment_id: str
    redirect_url: str | None = None
    details: dict[str, Any] = {}


class GatewayStatusReport(BaseModel):
    """Provider status for one transaction, normalized to common field names."""

    gateway: str
    status: str
    gateway_payment_id: str | None = None
    order_reference: str | None = None
    confirmations: int | None = None
    amount: str | None = None
    currency: str | None = None
    tx_urls: list[str] = []
    error_message: str | None = None


class PaymentGateway(ABC):
    """Uniform create/check/callback contract implemented per provider."""

    name: str = ""
    display_name: str = ""
    # Order `payment_method` values this gateway can settle.
    payment_methods: frozenset[str] = frozenset()
    # True when the poll sweep should check pending orders of this gateway.
    supports_polling: bool = False
    # Lower-cased provider status -> (outcome, payment status reason).
    status_map: dict[str, tuple[Outcome, PaymentStatus]] = {}

    def __init__(self, timeout: float | None = None, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.timeout = settings.gateway_timeout_seconds if timeout is None else timeout
        self.transport = transport

    def accepts(self, payment_method: str) -> bool:
        return payment_method in self.payment_methods

    def classify(self, report: GatewayStatusReport) -> tuple[Outcome, PaymentStatus] | None:
        """Map provider vocabulary to an outcome; None for unknown statuses."""

        return self.status_map.get((report.status or "").strip().lower())

    @abstractmethod
    async def create_payment(self, order: OrderSnapshot, options: dict[str, Any]) -> PaymentAttempt:
        """Start a payment attempt at the provider."""

    @abstractmethod
    async def check_status(self, gateway_payment_id: str) -> GatewayStatusReport:
        """Fetch the provider's current status for one transaction."""

    def verify_callback(self, payload: dict[str, Any], raw_body: bytes, headers: dict[str, str]) -> bool:
        """Authenticate an inbound webhook. Gateways without webhooks reject all."""

        return False

    def parse_callback(self, payload: dict[str, Any]) -> GatewayStatusReport:
        raise ValidationError(f"{self.name} does not accept callbacks")

    async def _request(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Call the provider and return decoded JSON.

        Transport failures, timeouts and non-2xx answers raise
        `GatewayUnavailable`; a body that is not JSON raises
        `InvalidGatewayResponse`.
        """

        start = time.perf_counter()
        result = "ok"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(method, url, json=json, params=params)
            if not response.is_success:
                result = "http_error"
                raise GatewayUnavailable(
                    f"{self.name} {operation} returned HTTP {response.status_code}"
                )
            try:
                return response.json()
            except ValueError as exc:
                result = "invalid"
                raise InvalidGatewayResponse(f"{self.name} {operation} returned non-JSON body") from exc
        except httpx.TimeoutException as exc:
            result = "timeout"
            raise GatewayUnavailable(f"{self.name} {operation} timed out") from exc
        except httpx.HTTPError as exc:
            result = "transport_error"
            raise GatewayUnavailable(f"{self.name} {operation} transport error: {exc}") from exc
        finally:
            elapsed = time.perf_counter() - start
            gateway_requests_total.labels(
                service=settings.service_name, gateway=self.name, operation=operation, result=result
            ).inc()
            gateway_latency_seconds.labels(
                service=settings.service_name, gateway=self.name, operation=operation
            ).observe(elapsed)
            if result != "ok":
                logger.warning(
                    "gateway_call_failed gateway=%s operation=%s result=%s elapsed=%.3f",
                    self.name,
                    operation,
                    result,
                    elapsed,
                )

    def _require(self, data: Any, *keys: str) -> dict[str, Any]:
        """Return `data` if it is an object holding every key, else raise."""

        if not isinstance(data, dict):
            raise InvalidGatewayResponse(f"{self.name} response is not an object")
        missing = [key for key in keys if data.get(key) in (None, "")]
        if missing:
            raise InvalidGatewayResponse(f"{self.name} response missing {', '.join(missing)}")
        return data


class GatewayRegistry:
    """Name -> adapter lookup handed to the payment and reconciliation services."""

    def __init__(self, gateways: list[PaymentGateway]) -> None:
        self._gateways = {gateway.name: gateway for gateway in gateways}

    def get(self, name: str) -> PaymentGateway | None:
        return self._gateways.get(name)

    def polling(self) -> list[PaymentGateway]:
        return [gateway for gateway in self._gateways.values() if gateway.supports_polling]

    def names(self) -> list[str]:
        return sorted(self._gateways)
