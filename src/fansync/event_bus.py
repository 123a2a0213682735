"""Lightweight asyncio event bus for intra-process pub/sub."""

from __future__ import annotations

import asyncio
import contextlib
from collections import defaultdict
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any, TypeAlias

from fansync.logger import logger

# --- Event types ---


@dataclass
class RosterUpdatedEvent:
    """The active creator's roster was refreshed or its error flag changed."""

    creator_id: str
    count: int
    error: str | None = None


@dataclass
class MessagesUpdatedEvent:
    """The active conversation's rendered message list changed."""

    creator_id: str
    fan_id: str
    count: int
    error: str | None = None


@dataclass
class SendFailedEvent:
    """An optimistic send ended in the failed state."""

    creator_id: str
    fan_id: str
    temp_id: str
    error_kind: str
    message: str
    retryable: bool


@dataclass
class SelectionChangedEvent:
    creator_id: str | None
    fan_id: str | None
    epoch: int


Event: TypeAlias = RosterUpdatedEvent | MessagesUpdatedEvent | SendFailedEvent | SelectionChangedEvent
Listener: TypeAlias = Callable[[Any], Coroutine[Any, Any, None]]


class EventBus:
    """Fire-and-forget async event dispatcher."""

    def __init__(self) -> None:
        self._listeners: defaultdict[type, list[Listener]] = defaultdict(list)

    def subscribe(self, event_type: type, listener: Listener) -> Callable[[], None]:
        """Subscribe to an event type. Returns an unsubscribe function."""
        self._listeners[event_type].append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners[event_type].remove(listener)

        return _unsubscribe

    def emit(self, event: Event) -> None:
        """Emit an event to all subscribers. Non-blocking, fire-and-forget."""
        for listener in self._listeners[type(event)]:
            asyncio.ensure_future(_safe_call(listener, event))


async def _safe_call(listener: Listener, event: Event) -> None:
    try:
        await listener(event)
    except Exception as exc:
        logger.warning(
            "EventBus listener error",
            event_type=type(event).__name__,
            listener=getattr(listener, "__qualname__", repr(listener)),
            err=str(exc),
        )
