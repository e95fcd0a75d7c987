"""
Status Reconciler

The single writer of orders.status. Webhook deliveries, client polls,
forced verifications and restaurant actions all end up in
`apply_transition`, which advances the status with one conditional
UPDATE:

    UPDATE orders SET status = :target
     WHERE id = :id AND status IN (:legal_predecessors)

If the row matched, the transition happened exactly once and its history
row and downstream effects follow. If it did not, the observation was a
duplicate or arrived out of order, and the call is a successful no-op.
Two observations racing for the same order therefore converge on one
transition whatever their arrival order.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import IllegalTransition
from app.models import (
    GatewayStatus,
    Order,
    OrderStatus,
    OrderStatusHistory,
)
from app.services.payment.base import BaseGatewayClient, CheckoutSession
from app.services.state_machine import (
    StatusSource,
    can_start_checkout,
    can_transition,
    is_paid,
    legal_predecessors,
)
from app.tasks import notify_payment_failed, track_order_placed

logger = logging.getLogger(__name__)


# Order status an observed gateway status asks for. PENDING and EXPIRED
# never move an order: an expired session only frees the order for a new one.
OBSERVED_TARGETS = {
    GatewayStatus.PAID: OrderStatus.PAYMENT_CONFIRMED,
    GatewayStatus.FAILED: OrderStatus.PAYMENT_FAILED,
}


class ReconcileOutcome(str, enum.Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    STALE = "stale"
    IGNORED = "ignored"


@dataclass
class ReconcileResult:
    """What a reconciliation call did to the order."""
    order: Order
    outcome: ReconcileOutcome
    previous_status: OrderStatus
    observed: Optional[GatewayStatus] = None
    session: Optional[CheckoutSession] = None

    @property
    def applied(self) -> bool:
        return self.outcome == ReconcileOutcome.APPLIED


class StatusReconciler:
    """
    Merges observed payment results and restaurant actions into the order.

    Args:
        gateway: Client used by verify_with_gateway
        allow_retry: Whether PAYMENT_FAILED may still become PAYMENT_CONFIRMED
        auto_accept: Move freshly paid orders on to CONFIRMED
    """

    def __init__(
        self,
        gateway: BaseGatewayClient,
        allow_retry: bool = True,
        auto_accept: bool = False,
    ):
        self.gateway = gateway
        self.allow_retry = allow_retry
        self.auto_accept = auto_accept

    # =========================================================================
    # OBSERVATIONS
    # =========================================================================

    async def apply_observed_status(
        self,
        db: AsyncSession,
        order: Order,
        observed: GatewayStatus,
        source: StatusSource,
        *,
        session_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> ReconcileResult:
        """
        Apply a gateway status seen through `source` to the order.

        Idempotent: the same observation delivered any number of times
        advances the order at most once.
        """
        session_id = session_id or order.checkout_session_id
        await self._record_session_status(db, order.id, observed, session_id)

        target = OBSERVED_TARGETS.get(observed)
        if target == OrderStatus.PAYMENT_FAILED and session_id != order.checkout_session_id:
            # A superseded session failing says nothing about the current one
            target = None
        if target is None:
            await db.commit()
            await db.refresh(order)
            logger.info(
                f"Order #{order.id}: {observed.value} observed via {source.value} "
                f"(session={session_id}), status stays {order.status.value}"
            )
            return ReconcileResult(order, ReconcileOutcome.IGNORED, order.status, observed)

        return await self.apply_transition(
            db,
            order,
            target,
            source,
            observed=observed,
            session_id=session_id,
            transaction_id=transaction_id,
        )

    async def _record_session_status(
        self,
        db: AsyncSession,
        order_id: int,
        observed: GatewayStatus,
        session_id: Optional[str],
    ) -> None:
        """Mirror the gateway's view of the order's current session."""
        if session_id is None or observed == GatewayStatus.PENDING:
            return
        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.checkout_session_id == session_id,
                or_(
                    Order.checkout_session_status.is_(None),
                    Order.checkout_session_status != GatewayStatus.PAID,
                ),
            )
            .values(checkout_session_status=observed)
            .execution_options(synchronize_session=False)
        )
        await db.execute(stmt)

    # =========================================================================
    # THE WRITER
    # =========================================================================

    async def apply_transition(
        self,
        db: AsyncSession,
        order: Order,
        target: OrderStatus,
        source: StatusSource,
        *,
        observed: Optional[GatewayStatus] = None,
        session_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> ReconcileResult:
        """
        Move the order to `target` if that is forward progress.

        The status check and the write are one conditional UPDATE, so a
        concurrent observation cannot slip in between them.
        """
        order_id = order.id

        # Row lock where the database supports it, so the history row
        # records the exact status that was replaced
        locked = await db.execute(
            select(Order.status).where(Order.id == order_id).with_for_update()
        )
        previous = locked.scalar_one()

        predecessors = legal_predecessors(target, source, self.allow_retry)
        applied = False
        if predecessors:
            values = {"status": target, "status_changed_at": func.now()}
            if transaction_id and target == OrderStatus.PAYMENT_CONFIRMED:
                values["transaction_id"] = transaction_id
            result = await db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status.in_(predecessors))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            applied = result.rowcount == 1

        if applied:
            db.add(OrderStatusHistory(
                order_id=order_id,
                from_status=previous,
                to_status=target,
                source=source.value,
                observed_status=observed.value if observed else None,
                session_id=session_id,
            ))
        await db.commit()
        await db.refresh(order)

        if not applied:
            outcome = self._noop_outcome(order.status, target)
            if observed == GatewayStatus.PAID and order.status == OrderStatus.CANCELLED:
                logger.error(
                    f"Order #{order_id}: payment received for a cancelled order "
                    f"(session={session_id}, transaction={transaction_id}), needs a refund"
                )
                return ReconcileResult(order, outcome, order.status, observed)
            logger.info(
                f"Order #{order_id}: {target.value} via {source.value} is a no-op "
                f"({outcome.value}, status={order.status.value}, session={session_id})"
            )
            return ReconcileResult(order, outcome, order.status, observed)

        logger.info(
            f"Order #{order_id}: {previous.value} -> {target.value} "
            f"via {source.value} (session={session_id})"
        )
        self._dispatch_effects(order, target, source)

        if target == OrderStatus.PAYMENT_CONFIRMED and self.auto_accept:
            await self.apply_transition(db, order, OrderStatus.CONFIRMED, StatusSource.RESTAURANT)

        return ReconcileResult(order, ReconcileOutcome.APPLIED, previous, observed)

    @staticmethod
    def _noop_outcome(current: OrderStatus, target: OrderStatus) -> ReconcileOutcome:
        if current == target:
            return ReconcileOutcome.ALREADY_APPLIED
        if target == OrderStatus.PAYMENT_CONFIRMED and is_paid(current):
            return ReconcileOutcome.ALREADY_APPLIED
        return ReconcileOutcome.STALE

    def _dispatch_effects(self, order: Order, target: OrderStatus, source: StatusSource) -> None:
        """Queue downstream work for a committed transition."""
        snapshot = {
            "order_id": order.id,
            "reference": order.reference,
            "user_id": order.user_id,
            "customer_email": order.customer_email,
            "total_amount": str(order.total_amount),
            "currency": order.currency,
            "source": source.value,
        }
        try:
            if target == OrderStatus.PAYMENT_CONFIRMED:
                track_order_placed.delay(snapshot)
            elif target == OrderStatus.PAYMENT_FAILED:
                notify_payment_failed.delay(snapshot)
        except Exception:
            # The transition is committed; a broker outage must not undo it
            logger.exception(f"Order #{order.id}: failed to queue effects for {target.value}")

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def verify_with_gateway(
        self,
        db: AsyncSession,
        order: Order,
        source: StatusSource = StatusSource.VERIFY,
    ) -> ReconcileResult:
        """
        Ask the gateway for the order's session status and apply it.

        Orders that are already past payment are returned unchanged
        without a gateway call.

        Raises:
            GatewayUnavailable: The gateway could not be reached
        """
        if not can_start_checkout(order.status, self.allow_retry):
            outcome = (
                ReconcileOutcome.ALREADY_APPLIED if is_paid(order.status)
                else ReconcileOutcome.STALE
            )
            logger.info(f"Order #{order.id}: verification not needed ({order.status.value})")
            return ReconcileResult(order, outcome, order.status)

        if order.checkout_session_id is None:
            logger.info(f"Order #{order.id}: no checkout session to verify")
            return ReconcileResult(order, ReconcileOutcome.IGNORED, order.status)

        session = await self.gateway.get_session_status(order.checkout_session_id)
        result = await self.apply_observed_status(
            db,
            order,
            session.status,
            source,
            session_id=session.session_id,
            transaction_id=session.transaction_id,
        )
        result.session = session
        return result

    async def apply_restaurant_action(
        self,
        db: AsyncSession,
        order: Order,
        target: OrderStatus,
    ) -> ReconcileResult:
        """
        Apply a kitchen/front-of-house status change.

        Repeating an action that already happened is fine; anything else
        that is not forward progress is rejected.

        Raises:
            IllegalTransition: `target` cannot be reached from the current status
        """
        if order.status != target and not can_transition(
            order.status, target, StatusSource.RESTAURANT, self.allow_retry
        ):
            raise IllegalTransition(
                f"Order #{order.id} cannot move from {order.status.value} to {target.value}",
                order_id=order.id,
            )

        result = await self.apply_transition(db, order, target, StatusSource.RESTAURANT)
        if not result.applied and order.status != target:
            # Lost a race against another change
            raise IllegalTransition(
                f"Order #{order.id} moved to {order.status.value} before {target.value} could apply",
                order_id=order.id,
            )
        return result
