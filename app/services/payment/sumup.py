"""
SumUp Gateway Client Implementation

Production implementation of the hosted-checkout gateway over httpx.
Used when ENV_MODE=production or ENV_MODE=staging.

Requirements:
    - GATEWAY_CLIENT_ID / GATEWAY_CLIENT_SECRET (OAuth client credentials)
    - GATEWAY_MERCHANT_CODE or GATEWAY_MERCHANT_EMAIL

API endpoints used:
    POST /token                                   client-credentials token
    POST /v0.1/checkouts                          create hosted checkout
    GET  /v0.1/checkouts/{id}                     checkout status
    GET  /v0.1/checkouts?checkout_reference=...   lookup by reference

Security Notes:
    - Never log access tokens or the client secret
    - Amounts are sent as two-decimal strings, never floats
"""

import asyncio
import logging
import time
from decimal import Decimal
from typing import Any, Optional

import httpx

from app.core.config import get_settings
from app.core.exceptions import (
    DuplicateSessionCollision,
    GatewayError,
    GatewayUnavailable,
    SessionNotFound,
)
from app.services.payment.base import (
    BaseGatewayClient,
    CheckoutSession,
    format_amount,
    parse_gateway_status,
)

logger = logging.getLogger(__name__)

DUPLICATE_ERROR_CODE = "DUPLICATED_CHECKOUT"

# Refresh tokens this many seconds before the gateway says they expire
TOKEN_EXPIRY_MARGIN = 30.0


class SumUpGatewayClient(BaseGatewayClient):
    """
    Production gateway client.

    Keeps one httpx.AsyncClient (connection pooling, bounded timeout) and
    an in-process access token shared by concurrent requests until shortly
    before it expires.

    Example:
        >>> client = SumUpGatewayClient()
        >>> session = await client.create_session(
        ...     reference="ORD-42",
        ...     amount=Decimal("21.98"),
        ...     currency="EUR",
        ...     description="Order #42",
        ... )
        >>> print(session.pay_url)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        merchant_code: Optional[str] = None,
        merchant_email: Optional[str] = None,
        pay_url_base: Optional[str] = None,
        redirect_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize from explicit arguments, falling back to settings.

        Raises:
            ValueError: If client credentials or the merchant are not configured
        """
        settings = get_settings()

        self._client_id = client_id or settings.gateway_client_id
        self._client_secret = client_secret or settings.gateway_client_secret
        self._merchant_code = merchant_code or settings.gateway_merchant_code
        self._merchant_email = merchant_email or settings.gateway_merchant_email
        self._pay_url_base = (pay_url_base or settings.gateway_pay_url_base).rstrip("/")
        self._redirect_url = redirect_url or settings.gateway_redirect_url

        if not (self._client_id and self._client_secret):
            raise ValueError(
                "GATEWAY_CLIENT_ID and GATEWAY_CLIENT_SECRET are required for "
                "staging and production. Set them in your .env file or environment variables."
            )
        if not (self._merchant_code or self._merchant_email):
            raise ValueError("GATEWAY_MERCHANT_CODE or GATEWAY_MERCHANT_EMAIL is required.")

        self._client = httpx.AsyncClient(
            base_url=base_url or settings.gateway_base_url,
            timeout=httpx.Timeout(timeout or settings.gateway_timeout_seconds),
            transport=transport,
        )
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

        logger.info(f"SumUpGatewayClient initialized (base_url={self._client.base_url})")

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "sumup"

    # =========================================================================
    # TRANSPORT
    # =========================================================================

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send one request, mapping network failures and 5xx to GatewayUnavailable."""
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"SumUp: Timeout on {method} {path} - {e!r}")
            raise GatewayUnavailable(f"Gateway timeout on {method} {path}") from e
        except httpx.TransportError as e:
            logger.error(f"SumUp: Connection error on {method} {path} - {e!r}")
            raise GatewayUnavailable(f"Gateway connection error on {method} {path}") from e

        if response.status_code >= 500 or response.status_code == 429:
            logger.error(f"SumUp: {method} {path} returned {response.status_code}")
            raise GatewayUnavailable(
                f"Gateway returned {response.status_code} on {method} {path}"
            )
        return response

    @staticmethod
    def _error_details(response: httpx.Response) -> tuple[Optional[str], str]:
        """Extract (error_code, message) from an error body."""
        try:
            body: Any = response.json()
        except ValueError:
            return None, response.text[:200]
        if isinstance(body, list) and body:
            body = body[0]
        if not isinstance(body, dict):
            return None, str(body)[:200]
        return body.get("error_code"), body.get("message") or str(body)[:200]

    async def _authorized(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send an authenticated request, refreshing the token once on 401."""
        token = await self.get_access_token()
        response = await self._send(
            method, path, headers={"Authorization": f"Bearer {token}"}, **kwargs
        )
        if response.status_code == 401:
            logger.warning(f"SumUp: Token rejected on {method} {path}, refreshing")
            self._invalidate_token(token)
            token = await self.get_access_token()
            response = await self._send(
                method, path, headers={"Authorization": f"Bearer {token}"}, **kwargs
            )
        return response

    # =========================================================================
    # AUTHENTICATION
    # =========================================================================

    def _invalidate_token(self, token: str) -> None:
        if self._token == token:
            self._token = None
            self._token_expires_at = 0.0

    async def get_access_token(self) -> str:
        """
        Return a cached token, or fetch one with the client-credentials grant.

        Concurrent callers wait on the same refresh instead of each paying
        for a round trip.
        """
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            response = await self._send(
                "POST",
                "/token",
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                },
            )
            if response.status_code != 200:
                error_code, message = self._error_details(response)
                logger.critical(f"SumUp: Authentication failed - {response.status_code} {error_code}")
                raise GatewayError(
                    f"Token request failed ({response.status_code}): {message}",
                    error_code=error_code,
                )

            body = response.json()
            token = body.get("access_token")
            if not token:
                raise GatewayError("Token response did not contain an access_token")

            expires_in = float(body.get("expires_in") or 3600)
            self._token = token
            self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN, 0.0)
            logger.debug(f"SumUp: Access token refreshed (expires_in={expires_in:.0f}s)")
            return token

    # =========================================================================
    # CHECKOUTS
    # =========================================================================

    def _to_session(self, body: dict) -> CheckoutSession:
        session_id = body["id"]
        transactions = body.get("transactions") or []
        transaction_id = transactions[0].get("id") if transactions else None
        return CheckoutSession(
            session_id=session_id,
            pay_url=body.get("hosted_checkout_url") or f"{self._pay_url_base}/{session_id}",
            reference=body.get("checkout_reference"),
            status=parse_gateway_status(body.get("status")),
            transaction_id=transaction_id or body.get("transaction_code"),
            amount=str(body["amount"]) if body.get("amount") is not None else None,
            currency=body.get("currency"),
            raw=body,
        )

    async def create_session(
        self,
        reference: str,
        amount: Decimal,
        currency: str,
        description: str,
    ) -> CheckoutSession:
        payload = {
            "checkout_reference": reference,
            "amount": format_amount(amount),
            "currency": currency,
            "description": description,
            "hosted_checkout": {"enabled": True},
        }
        if self._merchant_code:
            payload["merchant_code"] = self._merchant_code
        else:
            payload["pay_to_email"] = self._merchant_email
        if self._redirect_url:
            payload["redirect_url"] = self._redirect_url

        logger.info(f"SumUp: Creating checkout {reference} for {payload['amount']} {currency}")
        response = await self._authorized("POST", "/v0.1/checkouts", json=payload)

        if response.status_code in (200, 201):
            session = self._to_session(response.json())
            logger.info(f"SumUp: Checkout created - {session.session_id} - {reference}")
            return session

        error_code, message = self._error_details(response)
        if response.status_code == 409 or error_code == DUPLICATE_ERROR_CODE:
            logger.warning(f"SumUp: Duplicate checkout for {reference} ({error_code})")
            raise DuplicateSessionCollision(
                f"Checkout already exists for reference {reference}: {message}",
                error_code=error_code or DUPLICATE_ERROR_CODE,
            )

        logger.error(f"SumUp: Checkout rejected - {response.status_code} {error_code}: {message}")
        raise GatewayError(
            f"Checkout creation rejected ({response.status_code}): {message}",
            error_code=error_code,
        )

    async def get_session_status(self, session_id: str) -> CheckoutSession:
        response = await self._authorized("GET", f"/v0.1/checkouts/{session_id}")

        if response.status_code == 404:
            raise SessionNotFound(f"Gateway does not know checkout {session_id}", session_id=session_id)
        if response.status_code != 200:
            error_code, message = self._error_details(response)
            raise GatewayError(
                f"Status query rejected ({response.status_code}): {message}",
                error_code=error_code,
                session_id=session_id,
            )

        session = self._to_session(response.json())
        logger.debug(f"SumUp: Checkout {session_id} status={session.status.value}")
        return session

    async def find_session_by_reference(self, reference: str) -> Optional[CheckoutSession]:
        response = await self._authorized(
            "GET", "/v0.1/checkouts", params={"checkout_reference": reference}
        )
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            error_code, message = self._error_details(response)
            raise GatewayError(
                f"Checkout lookup rejected ({response.status_code}): {message}",
                error_code=error_code,
            )

        body = response.json()
        checkouts = body if isinstance(body, list) else [body]
        matching = [c for c in checkouts if c.get("checkout_reference") in (None, reference)]
        return self._to_session(matching[0]) if matching else None

    async def health_check(self) -> bool:
        """Verify that credentials work by obtaining a token."""
        try:
            await self.get_access_token()
            return True
        except (GatewayUnavailable, GatewayError) as e:
            logger.error(f"SumUp: Health check failed - {e}")
            return False

    async def aclose(self) -> None:
        await self._client.aclose()
