"""Real-time delivery backends for account and store channels."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Mapping, Protocol

from loguru import logger


class RealtimeBackend(Protocol):
    """Minimal protocol for pushing events to connected clients."""

    async def send_event(self, channel: str, event: str, payload: Mapping[str, Any]) -> None:
        ...


class LoggingRealtimeBackend:
    """Backend that only logs; used when no socket gateway is wired in."""

    async def send_event(self, channel: str, event: str, payload: Mapping[str, Any]) -> None:
        logger.info("Realtime event emitted", channel=channel, event_name=event, payload=dict(payload))


@dataclass
class InMemoryRealtimeBackend:
    """Stores emitted events for inspection in tests."""

    sent_messages: List[dict[str, Any]]

    def __init__(self) -> None:
        self.sent_messages = []

    async def send_event(self, channel: str, event: str, payload: Mapping[str, Any]) -> None:
        self.sent_messages.append({"channel": channel, "event": event, "payload": dict(payload)})
