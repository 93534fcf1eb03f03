"""Canonical order status vocabulary and its migration path.

Operators may move an order between any two statuses; automatic actors
(gateways, scheduler) never move an order out of a terminal status. Older
label sets are kept as explicit, versioned migration maps so stored ledgers
can be upgraded in one pass.
"""

from enum import Enum

from shopflow.common.errors import ValidationError


STATUS_VOCABULARY_VERSION = 3


class OrderStatus(str, Enum):
    """Canonical status labels; the values are the stable wire contract."""

    AWAITING_PAYMENT = "Awaiting Payment"
    PAYMENT_CONFIRMED = "Payment Confirmed"
    UNDER_REVIEW = "Under Review"
    BEING_PREPARED = "Being Prepared"
    SCHEDULED_FOR_DISPATCH = "Scheduled for Dispatch"
    ON_ITS_WAY = "On Its Way to You"
    DELIVERED = "Delivered"
    PAYMENT_FAILED = "Payment Failed"
    CLOSED = "Order Closed"


class Actor(str, Enum):
    """Who requested a transition."""

    CUSTOMER = "customer"
    OPERATOR = "operator"
    GATEWAY = "gateway"
    SCHEDULER = "scheduler"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CLOSED})
AUTOMATIC_ACTORS = frozenset({Actor.GATEWAY, Actor.SCHEDULER})
FAILED_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.FAILED, PaymentStatus.EXPIRED, PaymentStatus.CANCELLED, PaymentStatus.ERROR}
)

# Statuses that send the customer a templated status email.
EMAIL_STATUSES = frozenset(
    {
        OrderStatus.PAYMENT_CONFIRMED,
        OrderStatus.UNDER_REVIEW,
        OrderStatus.BEING_PREPARED,
        OrderStatus.SCHEDULED_FOR_DISPATCH,
        OrderStatus.ON_ITS_WAY,
        OrderStatus.DELIVERED,
        OrderStatus.CLOSED,
    }
)

# Records in these statuses are not "completed" steps of the journey.
INCOMPLETE_STATUSES = frozenset({OrderStatus.AWAITING_PAYMENT, OrderStatus.PAYMENT_FAILED})

STATUS_DESCRIPTIONS: dict[OrderStatus, str] = {
    OrderStatus.AWAITING_PAYMENT: "Your order is reserved and awaiting payment confirmation.",
    OrderStatus.PAYMENT_CONFIRMED: "Your payment has been successfully received, thank you.",
    OrderStatus.UNDER_REVIEW: "Our concierge team is carefully reviewing and validating your order.",
    OrderStatus.BEING_PREPARED: "Your item is being handled and assembled at our warehouse with the utmost care.",
    OrderStatus.SCHEDULED_FOR_DISPATCH: "Your order is being finalised and prepared for secure international shipment.",
    OrderStatus.ON_ITS_WAY: "Your parcel has been dispatched and is now on its way to you.",
    OrderStatus.DELIVERED: "Your order has been successfully delivered. We hope it brings you joy.",
    OrderStatus.PAYMENT_FAILED: "We could not confirm your payment. Please contact us to complete your order.",
    OrderStatus.CLOSED: "Your order has been closed as requested or due to an unresolved issue.",
}

# v1 stored upper-case keys; v2 used long concierge labels plus per-gateway
# failure labels. Each map upgrades one version.
V1_TO_V2: dict[str, str] = {
    "AWAITING": "Awaiting Payment",
    "PAYMENT": "Payment Confirmed",
    "UNDER": "Under Concierge Review",
    "PROCESSED": "Processed by Logistics Team",
    "BEING": "Being Prepared at Our Warehouse",
    "PREPARING": "Preparing for Dispatch",
    "SHIPPED": "Shipped",
    "DELIVERED": "Delivered",
    "CANCELLED": "Cancelled",
}

V2_TO_V3: dict[str, OrderStatus] = {
    "Awaiting Payment": OrderStatus.AWAITING_PAYMENT,
    "Payment Confirmed": OrderStatus.PAYMENT_CONFIRMED,
    "Under Concierge Review": OrderStatus.UNDER_REVIEW,
    "Processed by Logistics Team": OrderStatus.BEING_PREPARED,
    "Being Prepared at Our Warehouse": OrderStatus.BEING_PREPARED,
    "Preparing for Dispatch": OrderStatus.SCHEDULED_FOR_DISPATCH,
    "Shipped": OrderStatus.ON_ITS_WAY,
    "Delivered": OrderStatus.DELIVERED,
    "Cancelled": OrderStatus.CLOSED,
    "Payment Expired": OrderStatus.PAYMENT_FAILED,
    "Payment Cancelled": OrderStatus.PAYMENT_FAILED,
    "Payment Error": OrderStatus.PAYMENT_FAILED,
}


def migrate_status_label(label: str) -> OrderStatus | None:
    """Upgrade a stored label from any known vocabulary to the current one."""

    try:
        return OrderStatus(label)
    except ValueError:
        pass
    label = V1_TO_V2.get(label, label)
    return V2_TO_V3.get(label)


def legacy_label_map() -> dict[str, OrderStatus]:
    """Every legacy label that differs from its canonical v3 replacement."""

    mapping: dict[str, OrderStatus] = {}
    for label in list(V1_TO_V2) + list(V2_TO_V3):
        target = migrate_status_label(label)
        if target is not None and target.value != label:
            mapping[label] = target
    return mapping


def parse_status(value: str) -> OrderStatus:
    """Resolve a canonical label (or enum name) or raise `ValidationError`."""

    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(value)
    except ValueError:
        pass
    try:
        return OrderStatus[str(value).strip().upper()]
    except KeyError as exc:
        raise ValidationError(f"Unknown order status: {value!r}") from exc


def is_automatic(actor: Actor) -> bool:
    return actor in AUTOMATIC_ACTORS
