"""Fire-and-forget publisher for balance and settlement events."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from loguru import logger

from .backend import InMemoryRealtimeBackend, LoggingRealtimeBackend, RealtimeBackend

POINTS_UNLOCKED = "points-unlocked"
TRANSACTION = "transaction"
REDEMPTION = "redemption"

RECENT_EVENT_LIMIT = 256


@dataclass
class PublishedEvent:
    """Representation of an event that reached the backend."""

    channel: str
    event: str
    payload: dict[str, Any]


def account_channel(account_id: int) -> str:
    return f"user:{account_id}"


class EventPublisher:
    """Publishes events to the real-time backend, never raising to the caller."""

    def __init__(
        self,
        backend: Optional[RealtimeBackend] = None,
        *,
        history_limit: int = RECENT_EVENT_LIMIT,
    ) -> None:
        self._backend: RealtimeBackend = backend or LoggingRealtimeBackend()
        self._events: deque[PublishedEvent] = deque(maxlen=history_limit)

    @property
    def backend(self) -> RealtimeBackend:
        return self._backend

    @property
    def sent_events(self) -> list[PublishedEvent]:
        """Most recent delivered events, oldest first."""

        return list(self._events)

    def use_backend(self, backend: RealtimeBackend) -> None:
        self._backend = backend

    def use_in_memory_backend(self) -> InMemoryRealtimeBackend:
        backend = InMemoryRealtimeBackend()
        self._backend = backend
        return backend

    async def publish(self, event: str, payload: Mapping[str, Any], *, channel: str) -> bool:
        try:
            await self._backend.send_event(channel, event, payload)
        except Exception:  # pragma: no cover - backend specific
            logger.exception("Failed to publish realtime event", channel=channel, event_name=event)
            return False
        self._events.append(PublishedEvent(channel=channel, event=event, payload=dict(payload)))
        return True

    def reset(self) -> None:
        self._events.clear()


_PUBLISHER = EventPublisher()


def get_event_publisher() -> EventPublisher:
    return _PUBLISHER
