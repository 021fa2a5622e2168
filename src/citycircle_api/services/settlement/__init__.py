"""Deferred verification settlement for check-in grants."""

from .dispatch import run_settlement_check
from .pending_grants import OutstandingGrant, PendingGrantLedger, adjusted_loops, confidence_ratio
from .triggers import SettlementOutcome, SettlementTriggerDetector, SweepSummary

__all__ = [
    "OutstandingGrant",
    "PendingGrantLedger",
    "SettlementOutcome",
    "SettlementTriggerDetector",
    "SweepSummary",
    "adjusted_loops",
    "confidence_ratio",
    "run_settlement_check",
]
