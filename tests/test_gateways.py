"""Gateway adapters against scripted provider responses."""

import asyncio
import hashlib
import hmac
import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from shopflow.common.errors import GatewayUnavailable, InvalidGatewayResponse, ValidationError
from shopflow.common.state_machine import PaymentStatus
from shopflow.services.orders.schemas import OrderSnapshot
from shopflow.services.payments.ampay import AmPayGateway
from shopflow.services.payments.bank_transfer import BankTransferGateway, default_bank_transfers
from shopflow.services.payments.cointopay import CointopayGateway
from shopflow.services.payments.gateways import GatewayRegistry, GatewayStatusReport, Outcome
from shopflow.services.payments.plisio import PlisioGateway, callback_digest


def snapshot(**overrides) -> OrderSnapshot:
    data = {
        "id": "LS123456789012",
        "customer_email": "anna@example.com",
        "customer_first_name": "Anna",
        "customer_last_name": "Schmidt",
        "customer_phone": "+491512345678",
        "shipping_country": "DE",
        "shipping_city": "Berlin",
        "shipping_address_1": "Torstrasse 1",
        "shipping_postal_code": "10119",
        "subtotal": Decimal("5800.00"),
        "discount": Decimal("0"),
        "shipping": Decimal("0"),
        "total": Decimal("5800.00"),
        "currency": "EUR",
        "payment_method": "Open Banking",
        "payment_status": "pending",
        "created_at": datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc),
    }
    data.update(overrides)
    return OrderSnapshot(**data)


def transport(handler) -> httpx.MockTransport:
    return httpx.MockTransport(handler)


def test_cointopay_create_payment():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"gateway_payment_id": 987, "payment_url": "https://pay.test/987"})

    gateway = CointopayGateway(proxy_url="https://proxy.test/", transport=transport(handler))
    attempt = asyncio.run(gateway.create_payment(snapshot(), {}))

    assert seen == {"path": "/gateway/lx/cp_create.php", "body": {"amount": 5800.0}}
    assert attempt.gateway_payment_id == "987"
    assert attempt.redirect_url == "https://pay.test/987"


def test_cointopay_check_status_classifies():
    def handler(request):
        assert json.loads(request.content) == {"gatewayPaymentId": "987"}
        return httpx.Response(200, json={"data": {"Status": "Paid", "Amount": 5800, "inputCurrency": "EUR"}})

    gateway = CointopayGateway(proxy_url="https://proxy.test", transport=transport(handler))
    report = asyncio.run(gateway.check_status("987"))

    assert report.status == "Paid"
    assert report.amount == "5800"
    assert gateway.classify(report) == (Outcome.PAID, PaymentStatus.PAID)


def test_cointopay_missing_fields_is_invalid_response():
    gateway = CointopayGateway(
        proxy_url="https://proxy.test",
        transport=transport(lambda request: httpx.Response(200, json={"payment_url": "https://pay.test"})),
    )
    with pytest.raises(InvalidGatewayResponse):
        asyncio.run(gateway.create_payment(snapshot(), {}))


def test_non_json_body_is_invalid_response():
    gateway = CointopayGateway(
        proxy_url="https://proxy.test",
        transport=transport(lambda request: httpx.Response(200, text="<html>maintenance</html>")),
    )
    with pytest.raises(InvalidGatewayResponse):
        asyncio.run(gateway.check_status("987"))


def test_server_error_is_unavailable():
    gateway = CointopayGateway(
        proxy_url="https://proxy.test",
        transport=transport(lambda request: httpx.Response(503, json={"error": "down"})),
    )
    with pytest.raises(GatewayUnavailable):
        asyncio.run(gateway.check_status("987"))


def test_redirect_is_unavailable():
    gateway = CointopayGateway(
        proxy_url="https://proxy.test",
        transport=transport(
            lambda request: httpx.Response(302, headers={"location": "https://login.test"}, text="moved")
        ),
    )
    with pytest.raises(GatewayUnavailable):
        asyncio.run(gateway.check_status("987"))


def test_timeout_is_unavailable():
    def handler(request):
        raise httpx.ConnectTimeout("provider too slow", request=request)

    gateway = CointopayGateway(proxy_url="https://proxy.test", transport=transport(handler))
    with pytest.raises(GatewayUnavailable):
        asyncio.run(gateway.create_payment(snapshot(), {}))


def test_ampay_signature_verification():
    raw_body = b'{"status":"ACCEPTED","client_transaction_id":"LS123456789012","system_id":"S-1"}'
    signature = hmac.new(b"s3cret", raw_body, hashlib.sha256).hexdigest()
    payload = json.loads(raw_body)

    gateway = AmPayGateway(webhook_secret="s3cret")
    assert gateway.verify_callback(payload, raw_body, {"X-Signature": signature})
    assert not gateway.verify_callback(payload, raw_body + b" ", {"X-Signature": signature})
    assert not gateway.verify_callback(payload, raw_body, {})


def test_ampay_without_secret_rejects_everything():
    raw_body = b'{"status":"ACCEPTED"}'
    signature = hmac.new(b"", raw_body, hashlib.sha256).hexdigest()
    gateway = AmPayGateway(webhook_secret="")
    assert not gateway.verify_callback({"status": "ACCEPTED"}, raw_body, {"x-signature": signature})


def test_ampay_parse_callback():
    gateway = AmPayGateway(webhook_secret="s3cret")
    report = gateway.parse_callback(
        {"status": "ACCEPTED", "client_transaction_id": "LS123456789012", "system_id": "S-1", "amount": 5800}
    )
    assert report.gateway_payment_id == "S-1"
    assert report.order_reference == "LS123456789012"
    assert gateway.classify(report) == (Outcome.PAID, PaymentStatus.PAID)

    with pytest.raises(ValidationError):
        gateway.parse_callback({"status": "ACCEPTED"})


def test_ampay_create_payment():
    def handler(request):
        body = json.loads(request.content)
        assert body["client_transaction_id"] == "LS123456789012"
        assert body["customer"]["full_name"] == "Anna Schmidt"
        return httpx.Response(200, json={"system_id": "S-1", "redirect_url": "https://ampay.test/r", "tracker_id": "T"})

    gateway = AmPayGateway(gateway_url="https://ampay.test/api", webhook_secret="s", transport=transport(handler))
    attempt = asyncio.run(gateway.create_payment(snapshot(), {}))
    assert attempt.gateway_payment_id == "S-1"
    assert attempt.details == {"tracker_id": "T"}


def test_plisio_callback_digest():
    payload = {"txn_id": "T1", "status": "completed", "order_name": "LS123456789012", "amount": "0.1"}
    payload["verify_hash"] = callback_digest(payload, "key")

    gateway = PlisioGateway(secret_key="key")
    assert gateway.verify_callback(payload, b"", {})
    assert not gateway.verify_callback({**payload, "amount": "0.2"}, b"", {})
    assert not PlisioGateway(secret_key="").verify_callback(payload, b"", {})


def test_plisio_create_requires_currency():
    gateway = PlisioGateway(api_key="k", secret_key="s")
    with pytest.raises(ValidationError):
        asyncio.run(gateway.create_payment(snapshot(payment_method="Cryptocurrency"), {}))


def test_plisio_create_payment():
    def handler(request):
        assert request.url.path == "/api/v1/invoices/new"
        assert request.url.params["order_number"] == "123456789012"
        assert request.url.params["currency"] == "BTC"
        return httpx.Response(
            200,
            json={"status": "success", "data": {"txn_id": "T1", "invoice_url": "https://plisio.test/i/T1"}},
        )

    gateway = PlisioGateway(api_url="https://plisio.test/api/v1", api_key="k", transport=transport(handler))
    attempt = asyncio.run(gateway.create_payment(snapshot(payment_method="Cryptocurrency"), {"currency": "BTC"}))
    assert attempt.gateway_payment_id == "T1"


def test_plisio_error_envelope_is_unavailable():
    gateway = PlisioGateway(
        api_url="https://plisio.test/api/v1",
        api_key="bad",
        transport=transport(
            lambda request: httpx.Response(200, json={"status": "error", "data": {"message": "Invalid api key"}})
        ),
    )
    with pytest.raises(GatewayUnavailable):
        asyncio.run(gateway.create_payment(snapshot(), {"currency": "BTC"}))


def test_plisio_check_status_reads_nested_invoice():
    gateway = PlisioGateway(
        api_url="https://plisio.test/api/v1",
        api_key="k",
        transport=transport(
            lambda request: httpx.Response(
                200,
                json={"status": "success", "data": {"invoice": {"status": "pending", "confirmations": "1"}}},
            )
        ),
    )
    report = asyncio.run(gateway.check_status("T1"))
    assert report.gateway_payment_id == "T1"
    assert report.confirmations == 1
    assert gateway.classify(report) == (Outcome.PENDING, PaymentStatus.PENDING)


def test_unknown_provider_status_is_unclassified():
    gateway = PlisioGateway(api_key="k", secret_key="s")
    assert gateway.classify(GatewayStatusReport(gateway="plisio", status="refunded")) is None


def test_bank_transfer_reference_is_order_id():
    gateway = BankTransferGateway("sepa", "SEPA Instant Transfer", {"SEPA"})
    attempt = asyncio.run(gateway.create_payment(snapshot(payment_method="SEPA"), {}))

    assert attempt.gateway_payment_id == "LS123456789012"
    assert attempt.redirect_url is None
    assert attempt.details["reference"] == "LS123456789012"
    assert attempt.details["bank_details"] == {}
    assert gateway.accepts("sepa")
    assert not gateway.accepts("Open Banking")


def test_bank_transfer_fetches_details():
    gateway = BankTransferGateway(
        "faster_payments",
        "Faster Payments",
        {"Faster Payments"},
        details_url="https://bank.test/details",
        transport=transport(lambda request: httpx.Response(200, json={"sort_code": "04-00-04"})),
    )
    attempt = asyncio.run(gateway.create_payment(snapshot(payment_method="Faster Payments"), {}))
    assert attempt.details["bank_details"] == {"sort_code": "04-00-04"}


def test_registry_lists_polling_gateways():
    registry = GatewayRegistry([CointopayGateway(), AmPayGateway(), PlisioGateway(), *default_bank_transfers()])

    assert [gateway.name for gateway in registry.polling()] == ["cointopay"]
    assert registry.names() == sorted(
        ["cointopay", "ampay", "plisio", "sepa", "faster_payments", "ach", "turkey"]
    )
    assert registry.get("paypal") is None
