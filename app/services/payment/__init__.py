"""
Gateway Client Factory

Provides a single entry point for obtaining a gateway client instance.
The factory pattern allows the rest of the application to remain agnostic
about which implementation is being used.

Usage:
    from app.services.payment import get_gateway_client

    # Returns MockGatewayClient or SumUpGatewayClient based on ENV_MODE
    gateway = get_gateway_client()

    session = await gateway.create_session("ORD-42", Decimal("21.98"), "EUR", "Order #42")

Environment Switching:
    - ENV_MODE=development → MockGatewayClient (no API calls)
    - ENV_MODE=staging → SumUpGatewayClient (sandbox credentials)
    - ENV_MODE=production → SumUpGatewayClient (live credentials)
"""

import logging
from functools import lru_cache

from app.core.config import get_settings
from app.services.payment.base import (
    BaseGatewayClient,
    CheckoutSession,
    format_amount,
    parse_gateway_status,
)
from app.services.payment.mock import MockGatewayClient
from app.services.payment.sumup import SumUpGatewayClient

logger = logging.getLogger(__name__)


@lru_cache()
def get_gateway_client() -> BaseGatewayClient:
    """
    Get the configured gateway client instance.

    The instance is cached so the access token and the HTTP connection
    pool are shared by every request in the process.

    Raises:
        ValueError: If real services are enabled but credentials are missing
    """
    settings = get_settings()

    if settings.use_real_services:
        logger.info(
            f"Gateway: Using SumUpGatewayClient ({settings.env_mode.value} mode)"
        )
        return SumUpGatewayClient()

    logger.info("Gateway: Using MockGatewayClient (development mode)")
    return MockGatewayClient(
        pay_url_base=settings.gateway_pay_url_base,
        min_latency=0.05,
        max_latency=0.2,
    )


def reset_gateway_client() -> None:
    """
    Clear the cached gateway client.

    The next call to get_gateway_client() creates a new instance.
    """
    get_gateway_client.cache_clear()
    logger.debug("Gateway client cache cleared")


__all__ = [
    "get_gateway_client",
    "reset_gateway_client",
    "BaseGatewayClient",
    "CheckoutSession",
    "MockGatewayClient",
    "SumUpGatewayClient",
    "format_amount",
    "parse_gateway_status",
]
