"""
                Restaurant Checkout Service

Hosted-checkout payment creation and payment status reconciliation for
the restaurant order pipeline, with a hybrid Mock/Real gateway
architecture.
"""

__version__ = "1.0.0"
