"""Order placement, lookups, tracking, promo codes and payment attempts."""

import asyncio
import hashlib
import re

import pytest

from conftest import ledger, order_request, place_order
from shopflow.common.errors import AlreadyPaid, NotFound, ValidationError
from shopflow.services.orders.service import generate_order_id, hash_phone


def test_generated_order_id_shape():
    assert re.fullmatch(r"LS\d{12}", generate_order_id())
    assert generate_order_id("QA").startswith("QA")


def test_create_order_writes_initial_record(container, session_factory, chat, analytics):
    order, access_token = asyncio.run(container.orders.create_order(order_request()))

    assert re.fullmatch(r"LS\d{12}", order.id)
    assert len(access_token) >= 32
    assert order.customer_email == "anna.schmidt@example.com"
    assert order.hashed_email == hashlib.sha256(b"anna.schmidt@example.com").hexdigest()
    assert order.hashed_phone == hash_phone("+49 151 2345678")
    assert order.payment_status == "pending"
    assert order.current_status == "Awaiting Payment"
    assert [item.product_name for item in order.items] == ["Kelly 28 Togo"]

    (record,) = ledger(session_factory, order.id)
    assert record.location == "Berlin, DE"
    assert record.notes == "Order placed"
    assert record.actor == "customer"
    assert record.is_completed is False
    assert record.gclid == "gclid-abc"

    assert "New order" in chat.messages[-1]
    assert analytics.checkouts == [order.id]


def test_create_order_rejects_unknown_promo_code(container, session_factory):
    with pytest.raises(ValidationError):
        asyncio.run(container.orders.create_order(order_request(promo_code="NOPE")))


def test_create_order_with_promo_code_does_not_count_use(container):
    container.orders.create_promo_code("vip10", 10, "Giulia")
    order = place_order(container, promo_code=" vip10 ")

    assert order.promo_code == "VIP10"
    (promo,) = container.orders.list_active_promo_codes()
    assert promo.used_count == 0


def test_track_order_is_case_insensitive(container):
    order = place_order(container)

    found = container.orders.track_order(order.id.lower(), "ANNA.SCHMIDT@example.com")
    assert found.id == order.id

    with pytest.raises(NotFound):
        container.orders.track_order(order.id, "someone@else.com")
    with pytest.raises(NotFound):
        container.orders.track_order("LS000000000000", "anna.schmidt@example.com")


def test_lookup_by_access_token(container):
    order, access_token = asyncio.run(container.orders.create_order(order_request()))

    assert container.orders.get_order_by_token(access_token).id == order.id
    assert container.orders.get_order_by_token("not-a-token") is None
    assert container.orders.get_order("LS000000000000") is None


def test_list_orders_pages_newest_first(container):
    placed = [place_order(container).id for _ in range(3)]

    first_page, total = container.orders.list_orders(page=1, limit=2)
    second_page, _ = container.orders.list_orders(page=2, limit=2)

    assert total == 3
    assert len(first_page) == 2
    assert len(second_page) == 1
    assert {o.id for o in first_page + second_page} == set(placed)

    with pytest.raises(ValidationError):
        container.orders.list_orders(page=0, limit=2)
    with pytest.raises(ValidationError):
        container.orders.list_orders(page=1, limit=101)


def test_update_tracking_notifies_without_new_status(container, session_factory, email, chat):
    order = place_order(container)

    updated = asyncio.run(
        container.orders.update_tracking(order.id, " DHL ", "JD0146", "https://dhl.test/JD0146")
    )

    assert updated.courier == "DHL"
    assert updated.tracking_number == "JD0146"
    assert len(ledger(session_factory, order.id)) == 1
    assert email.sent[-1][1].endswith("Tracking information")
    assert "Tracking updated" in chat.messages[-1]


def test_update_tracking_unknown_order(container):
    with pytest.raises(NotFound):
        asyncio.run(container.orders.update_tracking("LS000000000000", "DHL", "X"))


def test_promo_code_lifecycle(container):
    created = container.orders.create_promo_code(" summer ", 15, "Marco")
    assert created.code == "SUMMER"

    with pytest.raises(ValidationError):
        container.orders.create_promo_code("SUMMER", 20, "Marco")
    with pytest.raises(ValidationError):
        container.orders.create_promo_code("HUGE", 150, "Marco")

    validated = container.orders.validate_promo_code("summer")
    assert validated.used_count == 1
    assert container.orders.validate_promo_code("SUMMER").used_count == 2

    container.orders.deactivate_promo_code("summer")
    assert container.orders.list_active_promo_codes() == []
    with pytest.raises(NotFound):
        container.orders.validate_promo_code("SUMMER")
    with pytest.raises(NotFound):
        container.orders.deactivate_promo_code("MISSING")


def test_create_payment_records_attempt(container, gateway):
    order = place_order(container)

    attempt = asyncio.run(container.payments.create_payment(order.id, "fakepay", {}))

    stored = container.orders.get_order(order.id)
    assert stored.payment_gateway == "fakepay"
    assert stored.gateway_payment_id == attempt.gateway_payment_id
    assert stored.payment_url == attempt.redirect_url
    assert gateway.created == [order.id]


def test_create_payment_guards(container, gateway):
    order = place_order(container)
    crypto = place_order(container, payment_method="Cryptocurrency")

    with pytest.raises(ValidationError):
        asyncio.run(container.payments.create_payment(order.id, "paypal", {}))
    with pytest.raises(ValidationError):
        asyncio.run(container.payments.create_payment(crypto.id, "fakepay", {}))
    with pytest.raises(NotFound):
        asyncio.run(container.payments.create_payment("LS000000000000", "fakepay", {}))

    asyncio.run(container.lifecycle.confirm_payment(order.id))
    with pytest.raises(AlreadyPaid):
        asyncio.run(container.payments.create_payment(order.id, "fakepay", {}))
    assert gateway.created == []


def test_payment_proof_is_stored(container, chat):
    order = place_order(container)

    stored = asyncio.run(
        container.payments.submit_payment_proof(order.id, "fakepay", "receipt.PNG", b"\x89PNG data", "image/png")
    )

    path = container.payments.uploads_dir / "fakepay-proofs" / stored
    assert path.read_bytes() == b"\x89PNG data"
    assert stored.startswith(f"{order.id}_") and stored.endswith(".png")
    assert container.orders.get_order(order.id).payment_proof == stored
    assert container.orders.get_order(order.id).current_status == "Awaiting Payment"
    assert "Payment proof uploaded" in chat.messages[-1]


def test_payment_proof_rejections(container):
    order = place_order(container)
    container.payments.max_proof_bytes = 8

    def submit(filename, content, content_type):
        return asyncio.run(
            container.payments.submit_payment_proof(order.id, "fakepay", filename, content, content_type)
        )

    with pytest.raises(ValidationError):
        submit("receipt.exe", b"MZ", "application/octet-stream")
    with pytest.raises(ValidationError):
        submit("receipt.pdf", b"%PDF", "image/png")
    with pytest.raises(ValidationError):
        submit("receipt.pdf", b"", "application/pdf")
    with pytest.raises(ValidationError):
        submit("receipt.pdf", b"%PDF-1.7 long", "application/pdf")
