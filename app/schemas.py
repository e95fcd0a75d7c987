"""
Pydantic Schemas for Request/Response Validation

Wire format is camelCase (mobile and web clients); Python attributes stay
snake_case.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer
from pydantic.alias_generators import to_camel

from app.models import GatewayStatus, OrderStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class CheckoutRequest(CamelModel):
    """Body of POST /checkout."""
    order_id: int = Field(..., ge=1, examples=[42])


class OrderItemCreate(CamelModel):
    """Single item in an order."""
    menu_item_id: int = Field(..., ge=1, examples=[7])
    name: Optional[str] = Field(None, max_length=100, examples=["Margherita"])
    quantity: int = Field(..., ge=1, le=99, examples=[2])
    unit_price: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2, examples=["10.99"])
    customizations: Optional[dict[str, Any]] = None


class OrderCreate(CamelModel):
    """Request schema for creating an order awaiting payment."""
    items: List[OrderItemCreate] = Field(..., min_length=1)
    currency: Optional[str] = Field(None, min_length=3, max_length=3, examples=["EUR"])
    user_id: Optional[int] = None
    customer_name: Optional[str] = Field(None, max_length=100)
    customer_email: Optional[str] = Field(None, max_length=255)


class StatusUpdateRequest(CamelModel):
    """Restaurant status change."""
    status: OrderStatus


class SimulatedWebhookRequest(CamelModel):
    """Development-only simulated gateway event."""
    order_id: int = Field(..., ge=1)
    event_type: str = Field(default="checkout.paid")


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class CheckoutResponse(CamelModel):
    order_id: int
    session_id: str
    pay_url: str


class CheckoutStatusResponse(CamelModel):
    session_id: str
    order_id: int
    status: GatewayStatus
    order_status: OrderStatus
    transaction_id: Optional[str] = None


class OrderStatusResponse(CamelModel):
    """Polled by clients waiting for a payment result."""
    id: int
    status: OrderStatus
    session_id: Optional[str] = None
    status_changed_at: Optional[datetime] = None


class VerifyPaymentResponse(CamelModel):
    order_id: int
    status: OrderStatus
    gateway_status: Optional[GatewayStatus] = None
    applied: bool
    outcome: str
    message: Optional[str] = None


class WebhookResponse(CamelModel):
    received: bool = True
    processed: bool
    order_id: Optional[int] = None
    status: Optional[OrderStatus] = None
    applied: bool = False


class OrderItemResponse(CamelModel):
    menu_item_id: int
    name: Optional[str]
    quantity: int
    unit_price: Decimal
    customization_data: dict = Field(default_factory=dict, serialization_alias="customizations")

    @field_serializer("unit_price")
    def serialize_price(self, value: Decimal) -> str:
        return f"{value:.2f}"


class OrderResponse(CamelModel):
    """Response schema for a single order."""
    id: int
    reference: str
    status: OrderStatus
    total_amount: Decimal
    currency: str
    checkout_session_id: Optional[str]
    checkout_url: Optional[str]
    transaction_id: Optional[str]
    items: List[OrderItemResponse]
    created_at: Optional[datetime]
    status_changed_at: Optional[datetime]

    @field_serializer("total_amount")
    def serialize_total(self, value: Decimal) -> str:
        return f"{value:.2f}"


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None
    retryable: bool = False


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    redis: str
    gateway: str
    timestamp: datetime
