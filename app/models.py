"""
SQLAlchemy Database Models

The Order is the durable record of truth for payment state. The gateway's
view of a checkout session is mirrored onto the order as a hint
(checkout_session_status) but only `status` is authoritative.
"""

import enum
import json
import re
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text, Enum, ForeignKey,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base


class OrderStatus(str, enum.Enum):
    """Order status workflow."""
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    CONFIRMED = "CONFIRMED"
    PREPARING = "PREPARING"
    READY = "READY"
    DELIVERED = "DELIVERED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CANCELLED = "CANCELLED"


class GatewayStatus(str, enum.Enum):
    """Checkout session status as reported by the gateway."""
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


# Sessions in these states can never be paid, a new one may replace them
DEAD_SESSION_STATUSES = (GatewayStatus.FAILED, GatewayStatus.EXPIRED)

_ATTEMPT_SUFFIX = re.compile(r"^(?P<base>.+)\.(?P<attempt>\d+)$")


class Order(Base):
    """
    Customer order with its payment linkage.

    Lifecycle: created AWAITING_PAYMENT, a checkout session is attached on
    the first checkout attempt, and the status advances only through the
    status reconciler.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    reference = Column(String(64), nullable=False, unique=True, index=True)

    # =========================================================================
    # CUSTOMER (owned by the accounts service, copied for downstream effects)
    # =========================================================================
    user_id = Column(Integer, nullable=True, index=True)
    customer_name = Column(String(100), nullable=True)
    customer_email = Column(String(255), nullable=True)

    # =========================================================================
    # PRICING
    # =========================================================================
    total_amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="EUR")

    # =========================================================================
    # PAYMENT LINKAGE
    # =========================================================================
    checkout_session_id = Column(String(100), nullable=True, unique=True, index=True)
    checkout_url = Column(String(500), nullable=True)
    checkout_session_status = Column(Enum(GatewayStatus), nullable=True)
    checkout_attempts = Column(Integer, nullable=False, default=0)
    transaction_id = Column(String(100), nullable=True)

    # =========================================================================
    # ORDER STATUS
    # =========================================================================
    status = Column(
        Enum(OrderStatus),
        default=OrderStatus.AWAITING_PAYMENT,
        nullable=False,
        index=True
    )

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    status_changed_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
        lazy="selectin",
    )

    @property
    def has_live_session(self) -> bool:
        """A session exists and has not been observed failed or expired."""
        return (
            self.checkout_session_id is not None
            and self.checkout_session_status not in DEAD_SESSION_STATUSES
        )

    def checkout_reference_for(self, attempt: int) -> str:
        """Reference sent to the gateway for the given checkout attempt."""
        if attempt <= 1:
            return self.reference
        return f"{self.reference}.{attempt}"

    @staticmethod
    def base_reference(checkout_reference: str) -> Optional[str]:
        """Order reference behind a re-attempt reference, None if not one."""
        match = _ATTEMPT_SUFFIX.match(checkout_reference)
        return match.group("base") if match else None

    def __repr__(self):
        return f"<Order #{self.id} {self.reference} - {self.status.value}>"


class OrderItem(Base):
    """Line item, owned exclusively by its order."""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    position = Column(Integer, nullable=False, default=0)
    menu_item_id = Column(Integer, nullable=False)
    name = Column(String(100), nullable=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    customizations = Column(Text, nullable=True)  # JSON string

    order = relationship("Order", back_populates="items")

    @property
    def line_total(self) -> Decimal:
        return Decimal(self.unit_price) * self.quantity

    @property
    def customization_data(self) -> dict:
        return json.loads(self.customizations) if self.customizations else {}

    def __repr__(self):
        return f"<OrderItem {self.quantity}x #{self.menu_item_id} (order {self.order_id})>"


class OrderStatusHistory(Base):
    """
    One row per applied status transition.

    Written in the same transaction as the status update, so a no-op
    observation never leaves a row behind.
    """
    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    from_status = Column(Enum(OrderStatus), nullable=False)
    to_status = Column(Enum(OrderStatus), nullable=False)
    source = Column(String(20), nullable=False)
    observed_status = Column(String(20), nullable=True)
    session_id = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return (
            f"<OrderStatusHistory order={self.order_id} "
            f"{self.from_status.value}->{self.to_status.value} via {self.source}>"
        )
