"""
Checkout Orchestrator

Creates the hosted-checkout session for an order, guaranteeing at most one
live session per order even when mobile clients fire the same request
several times (timeouts, app backgrounding, double taps).

Layers of protection, outermost first:
    1. Idempotent re-entry: an order that already has a live session gets
       that session back without touching the gateway.
    2. Per-order critical section around check-then-create.
    3. The gateway's own duplicate-reference detection, recovered by
       looking the existing session up.
    4. A compare-and-swap when storing the session id, so a second
       instance cannot overwrite a session it did not create.

The orchestrator never changes the order status; only the reconciler does.
"""

import logging
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    CheckoutInProgress,
    CheckoutNotAllowed,
    DuplicateSessionCollision,
    DuplicateSessionUnresolved,
)
from app.models import Order
from app.services.locks import BaseKeyedLock
from app.services.orders import get_order
from app.services.payment.base import BaseGatewayClient, CheckoutSession
from app.services.state_machine import can_start_checkout, is_paid

logger = logging.getLogger(__name__)


def stored_session(order: Order) -> CheckoutSession:
    """The session recorded on the order."""
    return CheckoutSession(
        session_id=order.checkout_session_id,
        pay_url=order.checkout_url,
        reference=order.checkout_reference_for(order.checkout_attempts),
        status=order.checkout_session_status,
    )


class CheckoutOrchestrator:
    """
    Entry point for POST /checkout.

    Args:
        gateway: Gateway client used to create and look up sessions
        lock: Keyed lock manager providing the per-order critical section
        lock_timeout: Seconds to wait for the lock before CheckoutInProgress
        allow_retry: Allow a fresh session after a failed payment
    """

    def __init__(
        self,
        gateway: BaseGatewayClient,
        lock: BaseKeyedLock,
        lock_timeout: float = 15.0,
        allow_retry: bool = True,
    ):
        self.gateway = gateway
        self.lock = lock
        self.lock_timeout = lock_timeout
        self.allow_retry = allow_retry

    async def initiate_checkout(self, db: AsyncSession, order_id: int) -> CheckoutSession:
        """
        Return the order's live checkout session, creating one if needed.

        Raises:
            OrderNotFound: No order with this id
            CheckoutNotAllowed: The order can no longer be paid
            CheckoutInProgress: Another request holds the order's lock too long,
                or another instance stored a session first and it is not live
            DuplicateSessionUnresolved: The gateway reported a duplicate but
                has no session for the reference
            GatewayUnavailable: The gateway could not be reached
        """
        order = await get_order(db, order_id)

        if self._reusable(order):
            logger.info(f"Order #{order.id}: reusing checkout {order.checkout_session_id}")
            return stored_session(order)

        self._ensure_payable(order)

        async with self.lock.hold(f"checkout:{order.id}", self.lock_timeout):
            # Another request may have finished while we waited
            await db.refresh(order)
            if self._reusable(order):
                logger.info(
                    f"Order #{order.id}: checkout {order.checkout_session_id} "
                    f"created by a concurrent request"
                )
                return stored_session(order)
            self._ensure_payable(order)

            previous_session_id = order.checkout_session_id
            attempt = order.checkout_attempts + 1
            session = await self._create_or_recover(order, attempt)
            return await self._store_session(db, order, session, previous_session_id, attempt)

    def _reusable(self, order: Order) -> bool:
        # A paid order keeps its session; a cancelled one loses it
        return order.has_live_session and (
            is_paid(order.status) or can_start_checkout(order.status, self.allow_retry)
        )

    def _ensure_payable(self, order: Order) -> None:
        if not can_start_checkout(order.status, self.allow_retry):
            raise CheckoutNotAllowed(
                f"Order #{order.id} is {order.status.value}, checkout refused",
                order_id=order.id,
            )

    async def _create_or_recover(self, order: Order, attempt: int) -> CheckoutSession:
        reference = order.checkout_reference_for(attempt)
        try:
            return await self.gateway.create_session(
                reference=reference,
                amount=order.total_amount,
                currency=order.currency,
                description=f"Order #{order.id}",
            )
        except DuplicateSessionCollision:
            logger.warning(
                f"Order #{order.id}: gateway reports a checkout for {reference} already, "
                f"looking it up"
            )

        existing = await self.gateway.find_session_by_reference(reference)
        if existing is None:
            logger.error(
                f"Order #{order.id}: duplicate checkout reported for {reference} "
                f"but none is retrievable"
            )
            raise DuplicateSessionUnresolved(
                f"Gateway collision for {reference} without a retrievable session",
                order_id=order.id,
            )
        logger.info(f"Order #{order.id}: recovered existing checkout {existing.session_id}")
        return existing

    async def _store_session(
        self,
        db: AsyncSession,
        order: Order,
        session: CheckoutSession,
        previous_session_id: Optional[str],
        attempt: int,
    ) -> CheckoutSession:
        """Attach the session to the order unless someone else got there first."""
        if previous_session_id is None:
            slot_free = Order.checkout_session_id.is_(None)
        else:
            slot_free = or_(
                Order.checkout_session_id.is_(None),
                Order.checkout_session_id == previous_session_id,
            )

        result = await db.execute(
            update(Order)
            .where(Order.id == order.id, slot_free)
            .values(
                checkout_session_id=session.session_id,
                checkout_url=session.pay_url,
                checkout_session_status=session.status,
                checkout_attempts=attempt,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        await db.refresh(order)

        if result.rowcount == 1:
            logger.info(
                f"Order #{order.id}: checkout {session.session_id} stored "
                f"(attempt {attempt})"
            )
            return session

        if order.has_live_session:
            logger.warning(
                f"Order #{order.id}: lost the race to store {session.session_id}, "
                f"using {order.checkout_session_id}"
            )
            return stored_session(order)

        raise CheckoutInProgress(
            f"Order #{order.id}: session slot changed while creating {session.session_id}",
            order_id=order.id,
            session_id=session.session_id,
        )
