"""Status state machines with transition validation."""

from __future__ import annotations

from enum import Enum
from typing import ClassVar

from billing_engine.exceptions import InvalidTransitionError
from billing_engine.models.enums import (
    ChargeStatus,
    LedgerStatus,
    PayrollRunStatus,
    ScheduleStatus,
)


class StatusMachine:
    """Transition table lookups shared by the concrete machines."""

    # Define valid transitions: {from_status: [allowed_to_statuses]}
    VALID_TRANSITIONS: ClassVar[dict[Enum, list[Enum]]] = {}

    @classmethod
    def can_transition(cls, from_status: Enum, to_status: Enum) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(
        cls, from_status: Enum, to_status: Enum, reason: str | None = None
    ) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status, reason)

    @classmethod
    def get_next_statuses(cls, current_status: Enum) -> list[Enum]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])

    @classmethod
    def is_terminal(cls, status: Enum) -> bool:
        return not cls.VALID_TRANSITIONS.get(status)


class ScheduleStateMachine(StatusMachine):
    """Payment schedule transitions.

    Allowed transitions:
    - pending_initial → active (first success or confirmation)
    - pending_initial → expired (abandoned)
    - pending_initial → cancelled
    - active → completed
    - active → cancelled
    """

    VALID_TRANSITIONS = {
        ScheduleStatus.PENDING_INITIAL: [
            ScheduleStatus.ACTIVE,
            ScheduleStatus.EXPIRED,
            ScheduleStatus.CANCELLED,
        ],
        ScheduleStatus.ACTIVE: [ScheduleStatus.COMPLETED, ScheduleStatus.CANCELLED],
        ScheduleStatus.COMPLETED: [],
        ScheduleStatus.EXPIRED: [],
        ScheduleStatus.CANCELLED: [],
    }

    @classmethod
    def can_produce_charges(cls, status: ScheduleStatus) -> bool:
        return status == ScheduleStatus.ACTIVE


class ChargeStateMachine(StatusMachine):
    """Scheduled charge transitions.

    Allowed transitions:
    - pending → processing (claim)
    - pending → skipped
    - processing → succeeded
    - processing → failed (attempts exhausted)
    - processing → pending (retry after decline, or released unknown outcome)
    - failed → pending (manual retry, still bounded by max attempts)
    """

    VALID_TRANSITIONS = {
        ChargeStatus.PENDING: [ChargeStatus.PROCESSING, ChargeStatus.SKIPPED],
        ChargeStatus.PROCESSING: [
            ChargeStatus.SUCCEEDED,
            ChargeStatus.FAILED,
            ChargeStatus.PENDING,
        ],
        ChargeStatus.FAILED: [ChargeStatus.PENDING],
        ChargeStatus.SUCCEEDED: [],
        ChargeStatus.SKIPPED: [],
    }

    # Installments that count toward schedule completion
    SETTLED = {ChargeStatus.SUCCEEDED, ChargeStatus.SKIPPED}


class LedgerStateMachine(StatusMachine):
    """Commission ledger entry transitions.

    Paid entries are immutable: payroll has been issued on them.
    """

    VALID_TRANSITIONS = {
        LedgerStatus.PENDING: [LedgerStatus.APPROVED, LedgerStatus.VOID],
        LedgerStatus.APPROVED: [LedgerStatus.PAID, LedgerStatus.VOID],
        LedgerStatus.PAID: [],
        LedgerStatus.VOID: [],
    }

    @classmethod
    def can_void(cls, status: LedgerStatus) -> bool:
        return cls.can_transition(status, LedgerStatus.VOID)


class PayrollRunStateMachine(StatusMachine):
    """Payroll run transitions: draft → approved → paid."""

    VALID_TRANSITIONS = {
        PayrollRunStatus.DRAFT: [PayrollRunStatus.APPROVED],
        PayrollRunStatus.APPROVED: [PayrollRunStatus.PAID],
        PayrollRunStatus.PAID: [],
    }

    @classmethod
    def can_modify_adjustments(cls, status: PayrollRunStatus) -> bool:
        """Adjustments may only be attached while the run is a draft."""
        return status == PayrollRunStatus.DRAFT
