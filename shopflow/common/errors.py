"""Domain exception taxonomy shared by services and the HTTP layer.

Every error carries a `public_message` that is safe to show to customers;
the exception text itself may hold operational detail and is only logged.
"""


class OrderError(Exception):
    """Base class for all order/payment domain errors."""

    public_message = "Request could not be processed"

    def __init__(self, message: str = "", public_message: str | None = None) -> None:
        super().__init__(message or self.public_message)
        if public_message is not None:
            self.public_message = public_message


class ValidationError(OrderError):
    """Malformed input: bad status label, missing field, unverified webhook."""

    public_message = "Invalid request"


class NotFound(OrderError):
    """Unknown order id, access token, gateway payment id or promo code."""

    public_message = "Order not found"


class AlreadyPaid(OrderError):
    """A payment attempt was requested for an order that is already paid."""

    public_message = "Order is already paid"


class StaleStatusError(OrderError):
    """The current-status pointer moved while a transition was being applied."""

    public_message = "Order was updated concurrently, please retry"


class GatewayError(OrderError):
    """Base class for payment provider failures."""

    public_message = "Payment gateway temporarily unavailable"


class GatewayUnavailable(GatewayError):
    """Provider unreachable, timed out, or answered with a non-success status."""


class InvalidGatewayResponse(GatewayError):
    """Provider answered successfully but the body violates the contract."""


class NotificationChannelFailure(OrderError):
    """A chat/email/analytics call failed. Always caught inside the fanout."""
