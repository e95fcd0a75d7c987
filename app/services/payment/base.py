"""
Gateway Client Abstract Base Class

Defines the interface contract for hosted-checkout gateway clients.
Both MockGatewayClient and SumUpGatewayClient implement these methods,
so the checkout orchestrator and the reconciler behave identically
regardless of which client is active.

Design Pattern: Strategy Pattern
    - Allows runtime switching between the mock and the real gateway
    - Facilitates testing with the in-memory implementation
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from app.models import GatewayStatus


_CENT = Decimal("0.01")


def format_amount(amount: Union[Decimal, int, str]) -> str:
    """
    Render an amount as a two-decimal fixed-point string.

    Floats are refused: amounts travel as Decimal from the database to the
    wire so nothing drifts against the gateway's ledger.

    Example:
        >>> format_amount(Decimal("21.975"))
        '21.98'
    """
    if isinstance(amount, float):
        raise TypeError("amounts must be Decimal, int or str, not float")
    return str(Decimal(amount).quantize(_CENT, rounding=ROUND_HALF_UP))


def parse_gateway_status(raw: Optional[str]) -> GatewayStatus:
    """Map a gateway status string onto GatewayStatus."""
    value = (raw or "").strip().upper()
    if value in ("PAID", "SUCCESSFUL"):
        return GatewayStatus.PAID
    if value == "FAILED":
        return GatewayStatus.FAILED
    if value == "EXPIRED":
        return GatewayStatus.EXPIRED
    return GatewayStatus.PENDING


@dataclass
class CheckoutSession:
    """
    A hosted-checkout session as seen by the gateway.

    Attributes:
        session_id: Gateway checkout id
        pay_url: Hosted payment page the customer is redirected to
        reference: Checkout reference the session was created with
        status: Last status reported by the gateway
        transaction_id: Gateway transaction id once a payment went through
        amount: Amount as a two-decimal string
        currency: Currency code
        raw: Unmodified gateway payload, for logging
    """
    session_id: str
    pay_url: str
    reference: Optional[str] = None
    status: GatewayStatus = GatewayStatus.PENDING
    transaction_id: Optional[str] = None
    amount: Optional[str] = None
    currency: Optional[str] = None
    raw: dict = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "session_id": self.session_id,
            "pay_url": self.pay_url,
            "reference": self.reference,
            "status": self.status.value,
            "transaction_id": self.transaction_id,
            "amount": self.amount,
            "currency": self.currency,
        }


class BaseGatewayClient(ABC):
    """
    Abstract base class for hosted-checkout gateway clients.

    Every call is awaited by the caller and bounded by a timeout. Network
    problems surface as GatewayUnavailable (retryable), a checkout that
    already exists for a reference as DuplicateSessionCollision, and other
    rejections as GatewayError.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the name of the gateway (e.g. "mock", "sumup")."""
        pass

    @abstractmethod
    async def get_access_token(self) -> str:
        """Return a bearer token, fetching a new one when needed."""
        pass

    @abstractmethod
    async def create_session(
        self,
        reference: str,
        amount: Decimal,
        currency: str,
        description: str,
    ) -> CheckoutSession:
        """
        Create a hosted-checkout session.

        Args:
            reference: Unique merchant reference for this checkout
            amount: Amount to charge
            currency: Three-letter currency code
            description: Text shown on the hosted payment page

        Raises:
            DuplicateSessionCollision: A checkout already exists for `reference`
            GatewayUnavailable: The gateway could not be reached
            GatewayError: The gateway rejected the request
        """
        pass

    @abstractmethod
    async def get_session_status(self, session_id: str) -> CheckoutSession:
        """
        Fetch the current state of a session.

        Raises:
            SessionNotFound: The gateway does not know `session_id`
            GatewayUnavailable: The gateway could not be reached
        """
        pass

    @abstractmethod
    async def find_session_by_reference(self, reference: str) -> Optional[CheckoutSession]:
        """Look up the session created for `reference`, None if there is none."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Verify connectivity to the gateway.

        Returns:
            bool: True if the gateway is reachable and credentials work
        """
        pass

    async def aclose(self) -> None:
        """Release network resources held by the client."""
        return None
