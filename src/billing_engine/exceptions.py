"""Exception taxonomy for the billing engine.

Sweeps decide what to do with a failure by its type:

- GatewayError: recorded on the affected charge; the sweep continues.
- GatewayTimeoutError: outcome unknown; the charge stays claimed until the
  processing reconciliation pass resolves it.
- ReconciliationError: settlement data not available yet; retried later.
- PersistenceError: the single operation is aborted (and rolled back).
- ConfigError: commission creation is blocked for the affected payment.
"""

from __future__ import annotations


class BillingEngineError(Exception):
    """Base class for all billing engine errors."""


class GatewayError(BillingEngineError):
    """Definitive failure reported by (or before calling) the payment gateway."""

    def __init__(self, message: str, code: str | None = None):
        self.code = code
        super().__init__(message)


class GatewayTimeoutError(GatewayError):
    """The gateway call ended without a definitive success or failure."""


class ReconciliationError(BillingEngineError):
    """Settlement data is not yet available for a payment."""


class PersistenceError(BillingEngineError):
    """A write conflicted or violated a constraint."""


class ConfigError(BillingEngineError):
    """A required commission setting is missing."""

    def __init__(self, setting_key: str, message: str | None = None):
        self.setting_key = setting_key
        super().__init__(message or f"Commission setting '{setting_key}' is not configured")


class NotFoundError(BillingEngineError):
    """A referenced row does not exist."""

    def __init__(self, entity: str, entity_id: object):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InvalidTransitionError(BillingEngineError):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = getattr(from_status, "value", from_status)
        self.to_status = getattr(to_status, "value", to_status)
        self.reason = reason
        msg = f"Invalid transition from '{self.from_status}' to '{self.to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
