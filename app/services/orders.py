"""
Order lookups and creation.

Order CRUD belongs to the ordering service; these are the few calls the
checkout core needs to find orders and to create one awaiting payment.
"""

import json
import logging
import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import OrderNotFound, SessionNotFound
from app.models import Order, OrderItem, OrderStatus

logger = logging.getLogger(__name__)


async def get_order(db: AsyncSession, order_id: int) -> Order:
    """Load an order by id, raising OrderNotFound if it does not exist."""
    result = await db.execute(select(Order).where(Order.id == order_id))
    order = result.scalar_one_or_none()
    if order is None:
        raise OrderNotFound(f"Order #{order_id} not found", order_id=order_id)
    return order


async def find_order_by_reference(db: AsyncSession, reference: str) -> Optional[Order]:
    """
    Resolve a checkout reference to its order.

    Tries the reference as-is first, then as a re-attempt reference
    ("ORD-42.2" belongs to "ORD-42").
    """
    result = await db.execute(select(Order).where(Order.reference == reference))
    order = result.scalar_one_or_none()
    if order is not None:
        return order

    base = Order.base_reference(reference)
    if base is None:
        return None
    result = await db.execute(select(Order).where(Order.reference == base))
    return result.scalar_one_or_none()


async def get_order_by_session(db: AsyncSession, session_id: str) -> Order:
    """Load the order a checkout session is attached to."""
    result = await db.execute(select(Order).where(Order.checkout_session_id == session_id))
    order = result.scalar_one_or_none()
    if order is None:
        raise SessionNotFound(f"No order for checkout {session_id}", session_id=session_id)
    return order


def new_reference() -> str:
    return f"ORD-{uuid.uuid4().hex[:10].upper()}"


async def create_order(
    db: AsyncSession,
    items: list[dict],
    currency: str,
    reference: Optional[str] = None,
    user_id: Optional[int] = None,
    customer_name: Optional[str] = None,
    customer_email: Optional[str] = None,
) -> Order:
    """
    Create an order awaiting payment.

    Args:
        items: Dicts with menu_item_id, quantity, unit_price (Decimal),
            optional name and customizations
        currency: Three-letter currency code
    """
    order = Order(
        reference=reference or new_reference(),
        user_id=user_id,
        customer_name=customer_name,
        customer_email=customer_email,
        currency=currency,
        status=OrderStatus.AWAITING_PAYMENT,
        checkout_attempts=0,
    )
    total = Decimal("0.00")
    for position, item in enumerate(items):
        unit_price = Decimal(item["unit_price"])
        total += unit_price * item["quantity"]
        order.items.append(OrderItem(
            position=position,
            menu_item_id=item["menu_item_id"],
            name=item.get("name"),
            quantity=item["quantity"],
            unit_price=unit_price,
            customizations=json.dumps(item["customizations"]) if item.get("customizations") else None,
        ))
    order.total_amount = total

    db.add(order)
    await db.commit()
    await db.refresh(order)

    logger.info(f"Order #{order.id} created ({order.reference}, {order.total_amount} {order.currency})")
    return order
