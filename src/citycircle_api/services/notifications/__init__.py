"""Real-time notification package."""

from .backend import InMemoryRealtimeBackend, LoggingRealtimeBackend, RealtimeBackend
from .service import (
    POINTS_UNLOCKED,
    REDEMPTION,
    TRANSACTION,
    EventPublisher,
    PublishedEvent,
    account_channel,
    get_event_publisher,
)

__all__ = [
    "EventPublisher",
    "InMemoryRealtimeBackend",
    "LoggingRealtimeBackend",
    "POINTS_UNLOCKED",
    "PublishedEvent",
    "REDEMPTION",
    "RealtimeBackend",
    "TRANSACTION",
    "account_channel",
    "get_event_publisher",
]
