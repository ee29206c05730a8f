"""Stub payment gateway for local development and testing.

Outcomes can be scripted per call so sweeps can be driven through
success, decline and unknown-outcome paths without a network.
"""

from __future__ import annotations

import datetime
from collections import deque
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from billing_engine.exceptions import GatewayError, GatewayTimeoutError, ReconciliationError
from billing_engine.gateway.base import (
    CHARGE_FAILED,
    CHARGE_SUCCEEDED,
    ChargeResult,
    RefundResult,
    Settlement,
)

SUCCEED = "succeed"
DECLINE = "decline"
TIMEOUT = "timeout"
# Charge goes through but the response is lost
TIMEOUT_AFTER_CHARGE = "timeout_after_charge"


@dataclass
class ChargeCall:
    """One recorded create_charge invocation."""

    customer_id: str
    payment_method_id: str
    amount: Decimal
    idempotency_key: str


class StubGateway:
    """In-memory gateway.

    Every create_charge call consumes the next scripted outcome, falling back
    to ``default_outcome``. Charges are keyed by idempotency key: repeating a
    key returns the recorded result without charging again.
    """

    gateway_name = "stub"

    def __init__(
        self,
        default_outcome: str = SUCCEED,
        fee_rate: Decimal = Decimal("0.029"),
        fixed_fee: Decimal = Decimal("0.30"),
        settle_immediately: bool = True,
    ):
        self.default_outcome = default_outcome
        self.fee_rate = fee_rate
        self.fixed_fee = fixed_fee
        self.settle_immediately = settle_immediately

        # In-memory tracking for stub
        self.calls: list[ChargeCall] = []
        self.refunds: list[str] = []
        self._outcomes: deque[str] = deque()
        self._charges: dict[str, ChargeResult] = {}
        self._by_payment_id: dict[str, ChargeResult] = {}
        self._settled: set[str] = set()
        self._sequence = 0

    def script(self, *outcomes: str) -> None:
        """Queue outcomes for the next create_charge calls."""
        self._outcomes.extend(outcomes)

    def add_captured(self, gateway_payment_id: str, amount: Decimal, settled: bool = True) -> None:
        """Seed a payment captured outside this stub's create_charge."""
        result = ChargeResult(
            gateway_payment_id=gateway_payment_id, status=CHARGE_SUCCEEDED, amount=amount
        )
        self._by_payment_id[gateway_payment_id] = result
        if settled:
            self._settled.add(gateway_payment_id)

    def settle(self, gateway_payment_id: str) -> None:
        """Make settlement data available for a payment."""
        self._settled.add(gateway_payment_id)

    @property
    def successful_charges(self) -> list[ChargeResult]:
        return [c for c in self._charges.values() if c.succeeded]

    def _next_id(self, prefix: str) -> str:
        self._sequence += 1
        return f"{prefix}_stub_{self._sequence:06d}"

    def _record(self, key: str, status: str, amount: Decimal, **extra: Any) -> ChargeResult:
        result = ChargeResult(
            gateway_payment_id=self._next_id("pi"),
            status=status,
            amount=amount,
            idempotency_key=key,
            **extra,
        )
        self._charges[key] = result
        self._by_payment_id[result.gateway_payment_id] = result
        if status == CHARGE_SUCCEEDED and self.settle_immediately:
            self._settled.add(result.gateway_payment_id)
        return result

    async def create_charge(
        self,
        customer_id: str,
        payment_method_id: str,
        amount: Decimal,
        idempotency_key: str,
    ) -> ChargeResult:
        """Charge a stored payment method (stub implementation)."""
        self.calls.append(ChargeCall(customer_id, payment_method_id, amount, idempotency_key))

        existing = self._charges.get(idempotency_key)
        if existing is not None:
            if existing.failed:
                raise GatewayError(existing.failure_message or "declined", existing.failure_code)
            return existing

        if not customer_id or not payment_method_id:
            raise GatewayError("No payment method on file", "missing_payment_method")

        outcome = self._outcomes.popleft() if self._outcomes else self.default_outcome
        if outcome == TIMEOUT:
            raise GatewayTimeoutError("Gateway did not respond", "timeout")
        if outcome == TIMEOUT_AFTER_CHARGE:
            self._record(idempotency_key, CHARGE_SUCCEEDED, amount)
            raise GatewayTimeoutError("Gateway did not respond", "timeout")
        if outcome == DECLINE:
            self._record(
                idempotency_key,
                CHARGE_FAILED,
                amount,
                failure_code="card_declined",
                failure_message="Your card was declined.",
            )
            raise GatewayError("Your card was declined.", "card_declined")
        return self._record(idempotency_key, CHARGE_SUCCEEDED, amount)

    async def find_charge(self, idempotency_key: str) -> ChargeResult | None:
        """Look up an attempt by idempotency key."""
        return self._charges.get(idempotency_key)

    async def retrieve_settlement(self, gateway_payment_id: str) -> Settlement:
        """Fee is ``fee_rate`` of the amount plus ``fixed_fee``."""
        charge = self._by_payment_id.get(gateway_payment_id)
        if charge is None:
            raise GatewayError(f"No such payment: {gateway_payment_id}", "resource_missing")
        if gateway_payment_id not in self._settled:
            raise ReconciliationError(f"Settlement pending for {gateway_payment_id}")

        fee = (charge.amount * self.fee_rate + self.fixed_fee).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )
        return Settlement(
            gateway_payment_id=gateway_payment_id,
            fee=fee,
            net=charge.amount - fee,
            available_on=datetime.date.today(),
        )

    async def refund(self, gateway_payment_id: str) -> RefundResult:
        """Refund a payment in full."""
        charge = self._by_payment_id.get(gateway_payment_id)
        if charge is None or not charge.succeeded:
            raise GatewayError(f"No such payment: {gateway_payment_id}", "resource_missing")
        self.refunds.append(gateway_payment_id)
        return RefundResult(
            refund_id=self._next_id("re"),
            gateway_payment_id=gateway_payment_id,
            amount=charge.amount,
            status="succeeded",
        )
