"""
Mock Gateway Client Implementation

Simulates the hosted-checkout gateway in memory without making real API
calls. Used in development mode (ENV_MODE=development) to:
    - Walk the complete checkout flow locally
    - Drive payment outcomes from the simulation webhook
    - Run the test suite without network access

Behavior:
    - Generates gateway-like checkout ids (chk_xxx)
    - Rejects a second checkout for the same reference, like the real
      gateway does (DuplicateSessionCollision)
    - Sessions start PENDING and are settled with mark_paid/mark_failed/
      mark_expired
    - Optional simulated latency, and an `unavailable` switch that makes
      every call raise GatewayUnavailable
"""

import asyncio
import random
import uuid
import logging
from decimal import Decimal
from typing import Callable, Optional

from app.core.exceptions import (
    DuplicateSessionCollision,
    GatewayUnavailable,
    SessionNotFound,
)
from app.models import GatewayStatus
from app.services.payment.base import (
    BaseGatewayClient,
    CheckoutSession,
    format_amount,
)

logger = logging.getLogger(__name__)


class MockGatewayClient(BaseGatewayClient):
    """
    In-memory implementation of the gateway client.

    Attributes:
        pay_url_base: Base used to build hosted payment page URLs
        min_latency: Minimum simulated response time in seconds
        max_latency: Maximum simulated response time in seconds
        unavailable: When True every call raises GatewayUnavailable
        create_calls: Number of create_session calls that reached the gateway

    Example:
        >>> gateway = MockGatewayClient(pay_url_base="https://pay.example")
        >>> session = await gateway.create_session("ORD-1", Decimal("9.99"), "EUR", "Order #1")
        >>> gateway.mark_paid(session.session_id)
    """

    def __init__(
        self,
        pay_url_base: str = "https://pay.example",
        min_latency: float = 0.0,
        max_latency: float = 0.0,
        session_id_factory: Optional[Callable[[], str]] = None,
    ):
        self.pay_url_base = pay_url_base.rstrip("/")
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.unavailable = False
        self.create_calls = 0
        self._session_id_factory = session_id_factory or self._generate_session_id
        self._sessions: dict[str, CheckoutSession] = {}
        self._by_reference: dict[str, str] = {}

        logger.info(
            f"MockGatewayClient initialized "
            f"(latency={min_latency}-{max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "mock"

    @property
    def sessions(self) -> dict[str, CheckoutSession]:
        return self._sessions

    @staticmethod
    def _generate_session_id() -> str:
        return f"chk_{uuid.uuid4().hex[:16]}"

    async def _simulate_latency(self) -> None:
        if self.max_latency > 0:
            await asyncio.sleep(random.uniform(self.min_latency, self.max_latency))
        if self.unavailable:
            raise GatewayUnavailable("Mock gateway is switched to unavailable")

    async def get_access_token(self) -> str:
        await self._simulate_latency()
        return f"mock_token_{uuid.uuid4().hex[:8]}"

    async def create_session(
        self,
        reference: str,
        amount: Decimal,
        currency: str,
        description: str,
    ) -> CheckoutSession:
        self.create_calls += 1
        await self._simulate_latency()

        if reference in self._by_reference:
            logger.debug(f"Mock: Duplicate checkout for reference {reference}")
            raise DuplicateSessionCollision(
                f"Checkout already exists for reference {reference}",
                error_code="DUPLICATED_CHECKOUT",
            )

        session_id = self._session_id_factory()
        session = CheckoutSession(
            session_id=session_id,
            pay_url=f"{self.pay_url_base}/{session_id}",
            reference=reference,
            amount=format_amount(amount),
            currency=currency,
            raw={"description": description, "mock": True},
        )
        self._sessions[session_id] = session
        self._by_reference[reference] = session_id

        logger.info(f"Mock: Checkout created - {session_id} - {reference} - {session.amount} {currency}")
        return session

    async def get_session_status(self, session_id: str) -> CheckoutSession:
        await self._simulate_latency()
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"Unknown checkout {session_id}", session_id=session_id)
        return session

    async def find_session_by_reference(self, reference: str) -> Optional[CheckoutSession]:
        await self._simulate_latency()
        session_id = self._by_reference.get(reference)
        return self._sessions.get(session_id) if session_id else None

    async def health_check(self) -> bool:
        """Healthy unless switched to unavailable."""
        return not self.unavailable

    # =========================================================================
    # SIMULATION HELPERS
    # =========================================================================

    def _settle(self, session_id: str, status: GatewayStatus) -> CheckoutSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"Unknown checkout {session_id}", session_id=session_id)
        session.status = status
        if status == GatewayStatus.PAID and session.transaction_id is None:
            session.transaction_id = f"txn_mock_{uuid.uuid4().hex[:12]}"
        logger.info(f"Mock: Checkout {session_id} -> {status.value}")
        return session

    def mark_paid(self, session_id: str) -> CheckoutSession:
        return self._settle(session_id, GatewayStatus.PAID)

    def mark_failed(self, session_id: str) -> CheckoutSession:
        return self._settle(session_id, GatewayStatus.FAILED)

    def mark_expired(self, session_id: str) -> CheckoutSession:
        return self._settle(session_id, GatewayStatus.EXPIRED)
