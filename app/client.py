"""
Checkout Client

Async HTTP client for the checkout service, as used by the web and mobile
front ends. Besides thin wrappers around the endpoints it implements the
payment wait loop a client runs after returning from the hosted payment
page:

    async with CheckoutClient("http://localhost:8001") as client:
        checkout = await client.start_checkout(order_id)
        ...  # customer pays on checkout["payUrl"]
        outcome = await client.wait_for_payment(order_id)

The loop is bounded: it never runs more than ceil(max_wait / interval)
attempts, whatever the server answers.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from app.core.exceptions import NOT_CONFIRMED_MESSAGE, PAYMENT_FAILED_MESSAGE
from app.models import OrderStatus
from app.services.state_machine import is_paid

logger = logging.getLogger(__name__)


@dataclass
class PollOutcome:
    """Where the wait loop ended."""
    status: Optional[OrderStatus]
    confirmed: bool = False
    failed: bool = False
    timed_out: bool = False
    message: Optional[str] = None


class CheckoutClient:
    """
    Client for the checkout service HTTP API.

    Args:
        base_url: Service root, e.g. "http://localhost:8001"
        poll_interval: Seconds between two polls of wait_for_payment
        max_wait: Upper bound on the total wait, in seconds
        verify_every: Force a gateway verification every N polls while
            the order is still awaiting payment
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests use ASGI/Mock transports)
        sleep: Coroutine used between polls
    """

    def __init__(
        self,
        base_url: str,
        *,
        poll_interval: float = 5.0,
        max_wait: float = 60.0,
        verify_every: int = 5,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.verify_every = max(1, verify_every)
        self._sleep = sleep
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "CheckoutClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def max_attempts(self) -> int:
        return max(1, math.ceil(self.max_wait / self.poll_interval))

    # =========================================================================
    # ENDPOINTS
    # =========================================================================

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        response = await self._client.request(method, path, **kwargs)
        response.raise_for_status()
        return response.json()

    async def start_checkout(self, order_id: int) -> dict:
        """POST /checkout -> {orderId, sessionId, payUrl}"""
        return await self._request("POST", "/checkout", json={"orderId": order_id})

    async def get_order_status(self, order_id: int) -> dict:
        return await self._request("GET", f"/orders/{order_id}/status")

    async def get_session_status(self, session_id: str) -> dict:
        return await self._request("GET", f"/checkout/{session_id}/status")

    async def verify_payment(self, order_id: int) -> dict:
        return await self._request("POST", f"/orders/{order_id}/verify-payment")

    # =========================================================================
    # WAIT LOOP
    # =========================================================================

    def _should_verify(self, attempt: int, status: Optional[OrderStatus]) -> bool:
        if attempt == 0:
            # Back in the foreground: the webhook may not have arrived yet
            return True
        return status in (None, OrderStatus.AWAITING_PAYMENT) and attempt % self.verify_every == 0

    async def wait_for_payment(self, order_id: int) -> PollOutcome:
        """
        Poll until the payment is confirmed, failed, or the wait runs out.

        Transport errors and 5xx answers count as an attempt and are
        otherwise ignored; 4xx answers are raised.
        """
        status: Optional[OrderStatus] = None
        attempts = self.max_attempts

        for attempt in range(attempts):
            try:
                if self._should_verify(attempt, status):
                    data = await self.verify_payment(order_id)
                else:
                    data = await self.get_order_status(order_id)
                status = OrderStatus(data["status"])
            except httpx.HTTPStatusError as e:
                if e.response.status_code < 500:
                    raise
                logger.warning(
                    f"Order #{order_id}: poll {attempt + 1}/{attempts} got "
                    f"{e.response.status_code}, retrying"
                )
            except httpx.TransportError as e:
                logger.warning(f"Order #{order_id}: poll {attempt + 1}/{attempts} failed - {e}")
            else:
                if is_paid(status):
                    logger.info(f"Order #{order_id}: payment confirmed ({status.value})")
                    return PollOutcome(status, confirmed=True)
                if status in (OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELLED):
                    logger.info(f"Order #{order_id}: payment not completed ({status.value})")
                    return PollOutcome(status, failed=True, message=PAYMENT_FAILED_MESSAGE)

            if attempt < attempts - 1:
                await self._sleep(self.poll_interval)

        logger.info(f"Order #{order_id}: no payment result after {attempts} polls")
        return PollOutcome(status, timed_out=True, message=NOT_CONFIRMED_MESSAGE)
