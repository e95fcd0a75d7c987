"""
Order State Machine

Legal statuses and transitions for an order:

    AWAITING_PAYMENT -> PAYMENT_CONFIRMED -> CONFIRMED -> PREPARING -> READY -> DELIVERED
           |
           +-> PAYMENT_FAILED

    CANCELLED: from any state before PREPARING, restaurant action only.

A transition is legal only when the target ranks strictly higher than the
current status. PAYMENT_FAILED and CANCELLED sit outside the ranked
sequence and block further movement, except that a failed payment may
still be confirmed later when checkout retries are allowed.
"""

import enum

from app.models import OrderStatus


class StatusSource(str, enum.Enum):
    """Channel an observation or action arrived through."""
    WEBHOOK = "webhook"
    POLL = "poll"
    VERIFY = "verify"
    RESTAURANT = "restaurant"


PAYMENT_SOURCES = frozenset({StatusSource.WEBHOOK, StatusSource.POLL, StatusSource.VERIFY})
PAYMENT_OUTCOMES = frozenset({OrderStatus.PAYMENT_CONFIRMED, OrderStatus.PAYMENT_FAILED})

_RANKS = {
    OrderStatus.AWAITING_PAYMENT: 0,
    OrderStatus.PAYMENT_CONFIRMED: 1,
    OrderStatus.CONFIRMED: 2,
    OrderStatus.PREPARING: 3,
    OrderStatus.READY: 4,
    OrderStatus.DELIVERED: 5,
}

CANCELLABLE = frozenset({
    OrderStatus.AWAITING_PAYMENT,
    OrderStatus.PAYMENT_FAILED,
    OrderStatus.PAYMENT_CONFIRMED,
    OrderStatus.CONFIRMED,
})


def rank(status: OrderStatus) -> int:
    """Position in the forward sequence, -1 for out-of-band statuses."""
    return _RANKS.get(status, -1)


def is_terminal(status: OrderStatus, allow_retry: bool = False) -> bool:
    if status == OrderStatus.PAYMENT_FAILED:
        return not allow_retry
    return status in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)


def is_paid(status: OrderStatus) -> bool:
    """True once payment has been confirmed, whatever happened after."""
    return rank(status) >= rank(OrderStatus.PAYMENT_CONFIRMED)


def can_start_checkout(status: OrderStatus, allow_retry: bool = False) -> bool:
    """Whether a new checkout session may be created for an order in `status`."""
    if status == OrderStatus.AWAITING_PAYMENT:
        return True
    return allow_retry and status == OrderStatus.PAYMENT_FAILED


def can_transition(
    current: OrderStatus,
    target: OrderStatus,
    source: StatusSource,
    allow_retry: bool = False,
) -> bool:
    """Check whether `current -> target` is forward progress for `source`."""
    if current == target:
        return False

    if target == OrderStatus.CANCELLED:
        return source == StatusSource.RESTAURANT and current in CANCELLABLE

    if current == OrderStatus.CANCELLED or current == OrderStatus.DELIVERED:
        return False

    # Payment channels only report payment outcomes; the kitchen only
    # moves orders that have been paid for.
    if source in PAYMENT_SOURCES and target not in PAYMENT_OUTCOMES:
        return False
    if source == StatusSource.RESTAURANT and (
        target in PAYMENT_OUTCOMES or not is_paid(current)
    ):
        return False

    if target == OrderStatus.PAYMENT_FAILED:
        return current == OrderStatus.AWAITING_PAYMENT

    if current == OrderStatus.PAYMENT_FAILED:
        # The one documented way out of a failed payment
        return (
            allow_retry
            and target == OrderStatus.PAYMENT_CONFIRMED
            and source in PAYMENT_SOURCES
        )

    return rank(target) > rank(current)


def legal_predecessors(
    target: OrderStatus,
    source: StatusSource,
    allow_retry: bool = False,
) -> list[OrderStatus]:
    """Every status from which `target` can be reached by `source`."""
    return [
        status for status in OrderStatus
        if can_transition(status, target, source, allow_retry)
    ]
