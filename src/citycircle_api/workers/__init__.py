"""Background workers supporting async processing."""

from .settlement_sweep import SettlementSweepWorker

__all__ = ["SettlementSweepWorker"]
