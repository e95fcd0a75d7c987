"""
Webhook Receiver

Authenticates gateway notifications and hands them to the reconciler.

Order of operations matters:
    1. Verify the HMAC-SHA256 signature of the raw body. A bad signature
       is rejected before the body is even parsed, so an attacker learns
       nothing about which references exist.
    2. Parse the event and map its type to a gateway status.
    3. Resolve the order by reference.
    4. Delegate to the reconciler, which makes repeated deliveries harmless.

The receiver holds no business rules of its own.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidSignature, InvalidWebhookPayload, OrderNotFound
from app.models import GatewayStatus
from app.services.orders import find_order_by_reference
from app.services.reconciler import ReconcileResult, StatusReconciler
from app.services.state_machine import StatusSource

logger = logging.getLogger(__name__)


EVENT_STATUSES = {
    "paid": GatewayStatus.PAID,
    "successful": GatewayStatus.PAID,
    "failed": GatewayStatus.FAILED,
    "expired": GatewayStatus.EXPIRED,
    "pending": GatewayStatus.PENDING,
}


class WebhookEvent(BaseModel):
    """Gateway notification body; accepts camelCase and the gateway's snake_case."""
    model_config = ConfigDict(extra="allow")

    event_type: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("eventType", "event_type"),
    )
    reference: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("reference", "checkout_reference"),
    )
    session_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("sessionId", "checkout_id", "id"),
    )
    transaction_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("transactionId", "transaction_id", "transaction_code"),
    )

    @property
    def observed_status(self) -> Optional[GatewayStatus]:
        """Gateway status the event reports, None for unknown event types."""
        name = self.event_type.strip().lower()
        if name.startswith("checkout."):
            name = name[len("checkout."):]
        return EVENT_STATUSES.get(name)


@dataclass
class WebhookOutcome:
    event: WebhookEvent
    result: Optional[ReconcileResult] = None

    @property
    def processed(self) -> bool:
        return self.result is not None


def sign_payload(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of `body`, as the gateway computes it."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Constant-time check of a signature header (with or without "sha256=")."""
    if not signature:
        return False
    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = sign_payload(secret, body)
    return hmac.compare_digest(expected, provided.lower())


class WebhookReceiver:
    """
    Handles POST /webhook.

    Args:
        secret: Shared signing secret
        reconciler: Status reconciler the events are delegated to
    """

    def __init__(self, secret: str, reconciler: StatusReconciler):
        if not secret:
            raise ValueError("A webhook secret is required")
        self._secret = secret
        self.reconciler = reconciler

    def authenticate(self, body: bytes, signature: Optional[str], client: Optional[str] = None) -> None:
        """
        Raises:
            InvalidSignature: Missing or wrong signature
        """
        if not verify_signature(self._secret, body, signature):
            logger.warning(
                f"Webhook rejected: invalid signature from {client or 'unknown'} "
                f"({len(body)} bytes) - possible forgery attempt"
            )
            raise InvalidSignature("Webhook signature mismatch")

    @staticmethod
    def parse(body: bytes) -> WebhookEvent:
        """
        Raises:
            InvalidWebhookPayload: Body is not a JSON event object
        """
        try:
            data = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InvalidWebhookPayload(f"Webhook body is not JSON: {e}")
        if not isinstance(data, dict):
            raise InvalidWebhookPayload("Webhook body must be a JSON object")
        try:
            return WebhookEvent.model_validate(data)
        except ValidationError as e:
            raise InvalidWebhookPayload(f"Webhook body rejected: {e.error_count()} invalid field(s)")

    async def handle(
        self,
        db: AsyncSession,
        body: bytes,
        signature: Optional[str],
        client: Optional[str] = None,
    ) -> WebhookOutcome:
        """
        Authenticate, parse and apply one delivery.

        Raises:
            InvalidSignature: Bad signature (nothing else was looked at)
            InvalidWebhookPayload: Malformed body
            OrderNotFound: Reference does not match any order
        """
        self.authenticate(body, signature, client)
        event = self.parse(body)
        return await self.process(db, event, StatusSource.WEBHOOK)

    async def process(
        self,
        db: AsyncSession,
        event: WebhookEvent,
        source: StatusSource = StatusSource.WEBHOOK,
    ) -> WebhookOutcome:
        """Apply an already authenticated event."""
        observed = event.observed_status
        if observed is None:
            logger.info(f"Webhook event {event.event_type!r} for {event.reference} received but not processed")
            return WebhookOutcome(event)

        order = await find_order_by_reference(db, event.reference)
        if order is None:
            logger.error(
                f"Webhook anomaly: {event.event_type} for unknown reference "
                f"{event.reference!r} (session={event.session_id})"
            )
            raise OrderNotFound(
                f"No order for reference {event.reference}",
                session_id=event.session_id,
            )

        logger.info(
            f"Webhook {event.event_type} for order #{order.id} "
            f"(reference={event.reference}, session={event.session_id})"
        )
        result = await self.reconciler.apply_observed_status(
            db,
            order,
            observed,
            source,
            session_id=event.session_id,
            transaction_id=event.transaction_id,
        )
        return WebhookOutcome(event, result)
