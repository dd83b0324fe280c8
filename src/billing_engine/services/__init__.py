"""Billing engine services."""

from billing_engine.services.state_machine import TransactionStateMachine, TransactionStatus

__all__ = [
    "TransactionStateMachine",
    "TransactionStatus",
]
