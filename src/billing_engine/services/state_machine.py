"""Transaction status state machine with transition validation."""

from __future__ import annotations

from enum import Enum

from billing_engine.errors import InvalidTransitionError


class TransactionStatus(str, Enum):
    """Provider-independent transaction status values."""

    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class TransactionStateMachine:
    """State machine for transaction status transitions.

    Allowed transitions:
    - PENDING → SUCCESS
    - PENDING → FAILED
    - PENDING → CANCELLED
    - PENDING → EXPIRED

    Every non-PENDING status is terminal.
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        TransactionStatus.PENDING: [
            TransactionStatus.SUCCESS,
            TransactionStatus.FAILED,
            TransactionStatus.CANCELLED,
            TransactionStatus.EXPIRED,
        ],
        TransactionStatus.SUCCESS: [],
        TransactionStatus.FAILED: [],
        TransactionStatus.CANCELLED: [],
        TransactionStatus.EXPIRED: [],
    }

    TERMINAL = frozenset(
        {
            TransactionStatus.SUCCESS,
            TransactionStatus.FAILED,
            TransactionStatus.CANCELLED,
            TransactionStatus.EXPIRED,
        }
    )

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            reason = "status is terminal" if cls.is_terminal(from_status) else None
            raise InvalidTransitionError(str(from_status), str(to_status), reason)

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return status in cls.TERMINAL

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])
