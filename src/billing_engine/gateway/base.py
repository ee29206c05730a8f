"""Base protocol and types for payment gateway adapters.

All gateway adapters must implement the PaymentGateway protocol. Amounts
cross this boundary as Decimal dollars; adapters convert to the gateway's
own units.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol

CHARGE_SUCCEEDED = "succeeded"
CHARGE_FAILED = "failed"
CHARGE_PENDING = "pending"


@dataclass(frozen=True)
class ChargeResult:
    """Outcome of a charge attempt as reported by the gateway."""

    gateway_payment_id: str
    status: str  # succeeded/failed/pending
    amount: Decimal
    idempotency_key: str | None = None
    failure_code: str | None = None
    failure_message: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == CHARGE_SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status == CHARGE_FAILED


@dataclass(frozen=True)
class Settlement:
    """Settlement detail for a captured payment."""

    gateway_payment_id: str
    fee: Decimal
    net: Decimal
    available_on: datetime.date | None = None


@dataclass(frozen=True)
class RefundResult:
    """Result of a refund request."""

    refund_id: str
    gateway_payment_id: str
    amount: Decimal
    status: str


def to_cents(amount: Decimal) -> int:
    """Convert a dollar amount to integer cents."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    """Convert integer cents to a dollar amount."""
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


class PaymentGateway(Protocol):
    """Protocol for payment gateway adapters.

    Error contract:
    - A definitive failure (decline, missing payment method, rejected
      request) raises GatewayError.
    - A call that ends without a definitive answer raises
      GatewayTimeoutError; the caller must not assume either outcome.
    - Settlement data that is not available yet raises ReconciliationError.
    """

    gateway_name: str

    async def create_charge(
        self,
        customer_id: str,
        payment_method_id: str,
        amount: Decimal,
        idempotency_key: str,
    ) -> ChargeResult:
        """Charge a stored payment method.

        Repeating a call with the same idempotency key must not create a
        second charge.

        Returns:
            ChargeResult with status succeeded.
        """
        ...

    async def find_charge(self, idempotency_key: str) -> ChargeResult | None:
        """Look up an earlier attempt by its idempotency key.

        Returns:
            The attempt's result, or None if the gateway never saw it.
        """
        ...

    async def retrieve_settlement(self, gateway_payment_id: str) -> Settlement:
        """Fetch fee and net amount for a captured payment."""
        ...

    async def refund(self, gateway_payment_id: str) -> RefundResult:
        """Refund a captured payment in full."""
        ...
