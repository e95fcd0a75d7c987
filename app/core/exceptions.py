"""
Checkout Error Taxonomy

Every failure the checkout core can surface to a caller is a subclass of
CheckoutError. Each carries the HTTP status it maps to, whether the caller
may retry, and the short message shown to the customer. Internal details
stay in `message` (logged), never in `user_message`.

Outcomes that look like errors but are not (a stale or duplicate status
observation, an order that is already paid) are reported as reconciliation
outcomes instead, see app.services.reconciler.
"""

from typing import Optional


TRY_AGAIN_MESSAGE = "Something went wrong starting your payment. Please try again."
GATEWAY_DOWN_MESSAGE = "We couldn't reach the payment provider, please try again."
PAYMENT_FAILED_MESSAGE = "There was an issue with your payment. Please contact support or retry."
NOT_CONFIRMED_MESSAGE = "We couldn't confirm your payment yet, check your order history later."


class CheckoutError(Exception):
    """Base class for errors raised by the checkout core."""

    status_code: int = 500
    retryable: bool = False
    user_message: str = TRY_AGAIN_MESSAGE

    def __init__(self, message: str, *, order_id: Optional[int] = None,
                 session_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.order_id = order_id
        self.session_id = session_id

    def to_dict(self, debug: bool = False) -> dict:
        """Error body returned to HTTP clients."""
        return {
            "success": False,
            "error": self.user_message,
            "detail": self.message if debug else None,
            "retryable": self.retryable,
        }


class OrderNotFound(CheckoutError):
    status_code = 404
    user_message = "Order not found."


class SessionNotFound(CheckoutError):
    status_code = 404
    user_message = "Checkout not found."


class GatewayUnavailable(CheckoutError):
    """Network failure, timeout, 5xx or rate limiting at the gateway."""
    status_code = 503
    retryable = True
    user_message = GATEWAY_DOWN_MESSAGE


class GatewayError(CheckoutError):
    """The gateway understood the request and rejected it."""
    status_code = 502
    user_message = TRY_AGAIN_MESSAGE

    def __init__(self, message: str, *, error_code: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.error_code = error_code


class DuplicateSessionCollision(GatewayError):
    """The gateway already holds a checkout for this reference."""
    status_code = 409


class DuplicateSessionUnresolved(CheckoutError):
    """A collision was reported but no session could be retrieved for the reference."""
    status_code = 409
    user_message = "Your payment is already being set up. Please try again in a moment."


class CheckoutInProgress(CheckoutError):
    status_code = 409
    user_message = "Your payment is already being set up. Please try again in a moment."


class CheckoutNotAllowed(CheckoutError):
    status_code = 409
    user_message = "This order can no longer be paid."


class IllegalTransition(CheckoutError):
    status_code = 409
    user_message = "The order cannot move to that status."


class InvalidSignature(CheckoutError):
    status_code = 401
    user_message = "Unauthorized"


class InvalidWebhookPayload(CheckoutError):
    status_code = 400
    user_message = "Invalid payload"


class ConfigurationError(RuntimeError):
    """Raised at startup when required settings are missing."""
