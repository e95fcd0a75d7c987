"""
                        Services Module

Business logic behind the checkout API. External integrations keep the
hybrid architecture pattern: a Mock implementation for development and a
Real one for staging and production.

Services:
    - payment: Hosted-checkout gateway clients (mock, SumUp)
    - checkout: Checkout orchestrator (one live session per order)
    - webhook: Signed gateway notification receiver
    - reconciler: Single writer of the order status
    - state_machine: Legal order status transitions
    - locks: Per-order critical sections (local or Redis)
"""

from app.services.checkout import CheckoutOrchestrator
from app.services.reconciler import StatusReconciler
from app.services.webhook import WebhookReceiver

__all__ = ["CheckoutOrchestrator", "StatusReconciler", "WebhookReceiver"]
