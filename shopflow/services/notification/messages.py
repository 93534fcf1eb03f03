"""Plain-text message builders for chat and email notifications."""

from shopflow.common.config import settings
from shopflow.common.state_machine import STATUS_DESCRIPTIONS, OrderStatus
from shopflow.services.orders.schemas import OrderSnapshot, TransitionEvent


def _money(order: OrderSnapshot) -> str:
    return f"{order.total:.2f} {order.currency}"


def _items(order: OrderSnapshot) -> str:
    return "\n".join(
        f"- {item.product_name} x{item.quantity} ({item.price:.2f})" for item in order.items
    )


def tracking_link(order: OrderSnapshot) -> str:
    return f"{settings.storefront_url.rstrip('/')}/track-order?order={order.id}"


def order_placed_chat(order: OrderSnapshot) -> str:
    lines = [
        "🛒 *New order*",
        f"Order: `{order.id}`",
        f"Customer: {order.customer_name} ({order.customer_email})",
        f"Ship to: {order.shipping_city}, {order.shipping_country}",
        f"Total: {_money(order)}",
        f"Payment: {order.payment_method}",
    ]
    if order.promo_code:
        lines.append(f"Promo: {order.promo_code}")
    lines.append(_items(order))
    return "\n".join(lines)


def transition_chat(event: TransitionEvent) -> str:
    order = event.order
    lines = [
        "🔄 *Status updated*",
        f"Order: `{order.id}`",
        f"{event.old_status or '-'} → {event.new_status}",
        f"By: {event.actor}",
    ]
    if event.new_status == OrderStatus.PAYMENT_CONFIRMED.value:
        lines.append(f"Amount: {_money(order)} via {order.payment_gateway or order.payment_method}")
    if event.location:
        lines.append(f"Location: {event.location}")
    if event.notes:
        lines.append(f"Notes: {event.notes}")
    return "\n".join(lines)


def payment_failed_chat(event: TransitionEvent) -> str:
    order = event.order
    return "\n".join(
        [
            "❌ *Payment failed*",
            f"Order: `{order.id}`",
            f"Reason: {order.payment_status}",
            f"Gateway: {order.payment_gateway or order.payment_method}",
            f"Total: {_money(order)}",
        ]
        + ([f"Notes: {event.notes}"] if event.notes else [])
    )


def payment_pending_chat(order: OrderSnapshot, confirmations: int | None, gateway: str) -> str:
    return "\n".join(
        [
            "⏳ *Payment detected*",
            f"Order: `{order.id}`",
            f"Gateway: {gateway}",
            f"Confirmations: {confirmations or 0}",
            "Status: Waiting for confirmations",
        ]
    )


def status_email(order: OrderSnapshot, status: OrderStatus) -> tuple[str, str]:
    subject = f"{settings.store_name} - ORDER: {order.id} - STATUS: {status.value}"
    body = "\n\n".join(
        [
            f"Dear {order.customer_first_name},",
            STATUS_DESCRIPTIONS[status],
            f"Order: {order.id}\nTotal: {_money(order)}",
            f"Track your order: {tracking_link(order)}",
            f"{settings.store_name} Concierge Service",
        ]
    )
    return subject, body


def reminder_email(order: OrderSnapshot) -> tuple[str, str]:
    subject = f"{settings.store_name} - ORDER: {order.id} - Payment reminder"
    body = "\n\n".join(
        [
            f"Dear {order.customer_first_name},",
            "Your order is still reserved, but we have not yet received your payment.",
            f"Order: {order.id}\nTotal: {_money(order)}\nPayment method: {order.payment_method}",
            f"Complete your payment or contact us: {tracking_link(order)}",
            f"{settings.store_name} Concierge Service",
        ]
    )
    return subject, body


def reminder_chat(order: OrderSnapshot) -> str:
    return "\n".join(
        [
            "⏰ *Payment reminder sent*",
            f"Order: `{order.id}`",
            f"Customer: {order.customer_name} ({order.customer_email})",
            f"Total: {_money(order)}",
        ]
    )


def tracking_email(order: OrderSnapshot) -> tuple[str, str]:
    subject = f"{settings.store_name} - ORDER: {order.id} - Tracking information"
    lines = [
        f"Dear {order.customer_first_name},",
        "Your parcel has been handed to the courier.",
        f"Courier: {order.courier}\nTracking number: {order.tracking_number}",
    ]
    if order.tracking_url:
        lines.append(f"Follow your parcel: {order.tracking_url}")
    lines.append(f"{settings.store_name} Concierge Service")
    return subject, "\n\n".join(lines)


def tracking_chat(order: OrderSnapshot) -> str:
    return "\n".join(
        [
            "📦 *Tracking updated*",
            f"Order: `{order.id}`",
            f"Courier: {order.courier}",
            f"Tracking: {order.tracking_number}",
        ]
        + ([f"URL: {order.tracking_url}"] if order.tracking_url else [])
    )


def proof_received_chat(order: OrderSnapshot, gateway: str, filename: str) -> str:
    return "\n".join(
        [
            "📎 *Payment proof uploaded*",
            f"Order: `{order.id}`",
            f"Method: {gateway}",
            f"Total: {_money(order)}",
            f"File: {filename}",
        ]
    )


def alert_chat(title: str, detail: str) -> str:
    return f"⚠️ *{title}*\n{detail}"
