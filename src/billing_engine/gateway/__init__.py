"""Payment gateway adapters."""

from billing_engine.gateway.base import (
    ChargeResult,
    PaymentGateway,
    RefundResult,
    Settlement,
)
from billing_engine.gateway.stripe import StripeGateway
from billing_engine.gateway.stub import StubGateway

__all__ = [
    "PaymentGateway",
    "ChargeResult",
    "Settlement",
    "RefundResult",
    "StripeGateway",
    "StubGateway",
]
