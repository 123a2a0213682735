"""Tests for the EventBus pub/sub system."""

from __future__ import annotations

import asyncio

import pytest

from fansync.event_bus import (
    EventBus,
    MessagesUpdatedEvent,
    RosterUpdatedEvent,
    SendFailedEvent,
)


@pytest.fixture
def bus() -> EventBus:
    """Create a fresh EventBus for each test."""
    return EventBus()


def _send_failed(temp_id: str = "tmp-1") -> SendFailedEvent:
    return SendFailedEvent(
        creator_id="cr",
        fan_id="fan",
        temp_id=temp_id,
        error_kind="transport",
        message="Network problem",
        retryable=True,
    )


class TestEventBus:
    """Test EventBus subscription and emission."""

    @pytest.mark.asyncio
    async def test_subscribe_and_emit(self, bus: EventBus) -> None:
        received: list[RosterUpdatedEvent] = []

        async def listener(event: RosterUpdatedEvent) -> None:
            received.append(event)

        bus.subscribe(RosterUpdatedEvent, listener)

        event = RosterUpdatedEvent(creator_id="cr", count=3)
        bus.emit(event)

        # Give event loop time to process
        await asyncio.sleep(0.01)

        assert received == [event]

    @pytest.mark.asyncio
    async def test_event_type_isolation(self, bus: EventBus) -> None:
        """Different event types don't interfere with each other."""
        messages: list[MessagesUpdatedEvent] = []
        failures: list[SendFailedEvent] = []

        async def on_messages(event: MessagesUpdatedEvent) -> None:
            messages.append(event)

        async def on_failure(event: SendFailedEvent) -> None:
            failures.append(event)

        bus.subscribe(MessagesUpdatedEvent, on_messages)
        bus.subscribe(SendFailedEvent, on_failure)

        bus.emit(MessagesUpdatedEvent(creator_id="cr", fan_id="fan", count=2))
        bus.emit(_send_failed())
        await asyncio.sleep(0.01)

        assert len(messages) == 1
        assert [f.temp_id for f in failures] == ["tmp-1"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, bus: EventBus) -> None:
        received: list[SendFailedEvent] = []

        async def listener(event: SendFailedEvent) -> None:
            received.append(event)

        unsubscribe = bus.subscribe(SendFailedEvent, listener)
        bus.emit(_send_failed("first"))
        await asyncio.sleep(0.01)

        unsubscribe()
        unsubscribe()  # second call is a no-op
        bus.emit(_send_failed("second"))
        await asyncio.sleep(0.01)

        assert [e.temp_id for e in received] == ["first"]

    @pytest.mark.asyncio
    async def test_emit_without_subscribers(self, bus: EventBus) -> None:
        # Should not raise
        bus.emit(RosterUpdatedEvent(creator_id="cr", count=0, error="auth"))
        await asyncio.sleep(0.01)

    @pytest.mark.asyncio
    async def test_listener_exception_does_not_propagate(self, bus: EventBus) -> None:
        """Exceptions in listeners don't propagate or affect other listeners."""
        received_good: list[SendFailedEvent] = []

        async def bad_listener(event: SendFailedEvent) -> None:
            raise ValueError("Intentional error")

        async def good_listener(event: SendFailedEvent) -> None:
            received_good.append(event)

        bus.subscribe(SendFailedEvent, bad_listener)
        bus.subscribe(SendFailedEvent, good_listener)

        bus.emit(_send_failed())
        await asyncio.sleep(0.01)

        assert len(received_good) == 1

    @pytest.mark.asyncio
    async def test_fire_and_forget_behavior(self, bus: EventBus) -> None:
        """emit() returns before slow listeners finish."""
        processing_started = asyncio.Event()
        processing_done = asyncio.Event()

        async def slow_listener(event: RosterUpdatedEvent) -> None:
            processing_started.set()
            await asyncio.sleep(0.1)
            processing_done.set()

        bus.subscribe(RosterUpdatedEvent, slow_listener)

        bus.emit(RosterUpdatedEvent(creator_id="cr", count=1))

        assert not processing_done.is_set()
        await asyncio.wait_for(processing_started.wait(), timeout=1.0)
        await asyncio.wait_for(processing_done.wait(), timeout=1.0)
