"""Stripe gateway adapter.

Charges are off-session PaymentIntents confirmed at creation. The attempt's
idempotency key is sent both as the Idempotency-Key header and as metadata
so a lost response can be found again with the search API.

API Docs: https://docs.stripe.com/api/payment_intents
"""

from __future__ import annotations

import datetime
import logging
from decimal import Decimal
from typing import Any

import httpx

from billing_engine.exceptions import GatewayError, GatewayTimeoutError, ReconciliationError
from billing_engine.gateway.base import (
    CHARGE_FAILED,
    CHARGE_PENDING,
    CHARGE_SUCCEEDED,
    ChargeResult,
    RefundResult,
    Settlement,
    from_cents,
    to_cents,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.stripe.com"

# PaymentIntent statuses that will not turn into a capture on their own
_FAILED_INTENT_STATUSES = {"canceled", "requires_payment_method"}


class StripeGateway:
    """PaymentGateway implementation over the Stripe REST API."""

    gateway_name = "stripe"

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=(api_key, ""),
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Send a request, mapping transport and HTTP failures to gateway errors."""
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            response = await self._client.request(
                method, path, data=data, params=params, headers=headers
            )
        except httpx.ConnectError as e:
            # Request never reached Stripe
            raise GatewayError(f"Could not connect to Stripe: {e}", "network_error") from e
        except httpx.TransportError as e:
            raise GatewayTimeoutError(f"Stripe request did not complete: {e}", "timeout") from e

        if response.status_code >= 500:
            raise GatewayTimeoutError(
                f"Stripe returned {response.status_code}", "server_error"
            )
        if response.status_code >= 400:
            error = _error_body(response)
            code = error.get("decline_code") or error.get("code") or str(response.status_code)
            logger.warning("Stripe rejected %s %s: %s", method, path, error.get("message"))
            raise GatewayError(error.get("message") or response.text, code)
        return response.json()

    async def create_charge(
        self,
        customer_id: str,
        payment_method_id: str,
        amount: Decimal,
        idempotency_key: str,
    ) -> ChargeResult:
        if not customer_id or not payment_method_id:
            raise GatewayError("No payment method on file", "missing_payment_method")

        intent = await self._request(
            "POST",
            "/v1/payment_intents",
            data={
                "amount": to_cents(amount),
                "currency": "usd",
                "customer": customer_id,
                "payment_method": payment_method_id,
                "off_session": "true",
                "confirm": "true",
                "metadata[idempotency_key]": idempotency_key,
            },
            idempotency_key=idempotency_key,
        )
        result = _charge_result(intent, idempotency_key)
        if result.failed:
            raise GatewayError(
                result.failure_message or "Payment was not completed", result.failure_code
            )
        if not result.succeeded:
            # e.g. requires_action or processing: no definitive answer yet
            raise GatewayTimeoutError(
                f"PaymentIntent {result.gateway_payment_id} is {intent.get('status')}", "pending"
            )
        return result

    async def find_charge(self, idempotency_key: str) -> ChargeResult | None:
        found = await self._request(
            "GET",
            "/v1/payment_intents/search",
            params={"query": f"metadata['idempotency_key']:'{idempotency_key}'"},
        )
        data = found.get("data") or []
        if not data:
            return None
        return _charge_result(data[0], idempotency_key)

    async def retrieve_settlement(self, gateway_payment_id: str) -> Settlement:
        # Older payments were recorded by charge id rather than intent id
        if gateway_payment_id.startswith("ch_"):
            charge = await self._request(
                "GET",
                f"/v1/charges/{gateway_payment_id}",
                params={"expand[]": "balance_transaction"},
            )
        else:
            intent = await self._request(
                "GET",
                f"/v1/payment_intents/{gateway_payment_id}",
                params={"expand[]": "latest_charge.balance_transaction"},
            )
            charge = intent.get("latest_charge")
        txn = charge.get("balance_transaction") if isinstance(charge, dict) else None
        if not isinstance(txn, dict):
            raise ReconciliationError(f"No balance transaction yet for {gateway_payment_id}")

        available_on = txn.get("available_on")
        return Settlement(
            gateway_payment_id=gateway_payment_id,
            fee=from_cents(txn["fee"]),
            net=from_cents(txn["net"]),
            available_on=(
                datetime.datetime.fromtimestamp(available_on, datetime.timezone.utc).date()
                if available_on
                else None
            ),
        )

    async def refund(self, gateway_payment_id: str) -> RefundResult:
        target = "charge" if gateway_payment_id.startswith("ch_") else "payment_intent"
        refund = await self._request(
            "POST",
            "/v1/refunds",
            data={target: gateway_payment_id},
            idempotency_key=f"refund-{gateway_payment_id}",
        )
        return RefundResult(
            refund_id=refund["id"],
            gateway_payment_id=gateway_payment_id,
            amount=from_cents(refund["amount"]),
            status=refund["status"],
        )


def _error_body(response: httpx.Response) -> dict[str, Any]:
    try:
        return response.json().get("error") or {}
    except ValueError:
        return {}


def _charge_result(intent: dict[str, Any], idempotency_key: str) -> ChargeResult:
    status = intent.get("status")
    if status == "succeeded":
        mapped = CHARGE_SUCCEEDED
    elif status in _FAILED_INTENT_STATUSES:
        mapped = CHARGE_FAILED
    else:
        mapped = CHARGE_PENDING

    last_error = intent.get("last_payment_error") or {}
    return ChargeResult(
        gateway_payment_id=intent["id"],
        status=mapped,
        amount=from_cents(intent.get("amount", 0)),
        idempotency_key=idempotency_key,
        failure_code=last_error.get("decline_code") or last_error.get("code"),
        failure_message=last_error.get("message"),
        raw=intent,
    )
