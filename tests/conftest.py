"""Shared test fixtures for fansync."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from fansync.types import (
    FanIdentity,
    Message,
    MessagePage,
    SendPayload,
    SendReceipt,
    Thread,
)

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures, importable by test files)
# ---------------------------------------------------------------------------

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def at(seconds: float) -> datetime:
    """Timestamp ``seconds`` after a fixed reference point."""
    return T0 + timedelta(seconds=seconds)


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Usage::

        s = make_settings(intervals=IntervalsConfig(message_poll=0.01))
        s = make_settings(tiers=TiersConfig(whale_threshold=500))
    """
    from fansync.config import (
        IntervalsConfig,
        LimitsConfig,
        LoggingConfig,
        PlatformConfig,
        SecretsConfig,
        ServerConfig,
        Settings,
        TiersConfig,
    )

    defaults = {
        "platform": PlatformConfig(),
        "intervals": IntervalsConfig(),
        "tiers": TiersConfig(),
        "limits": LimitsConfig(),
        "server": ServerConfig(),
        "logging": LoggingConfig(),
        "secrets": SecretsConfig(),
    }
    defaults.update(overrides)
    return Settings.model_construct(**defaults)


def make_thread(
    fan_id: str,
    *,
    ltv: int = 0,
    unread: int = 0,
    last_at: datetime | None = None,
    handle: str | None = None,
    display_name: str | None = None,
    nickname: str | None = None,
) -> Thread:
    return Thread(
        fan=FanIdentity(
            fan_id=fan_id,
            handle=handle or fan_id,
            display_name=display_name or fan_id.title(),
            nickname=nickname,
        ),
        ltv=ltv,
        unread_count=unread,
        last_activity_at=last_at,
    )


def make_message(
    server_id: str,
    seconds: float,
    *,
    text: str | None = None,
    from_creator: bool = False,
) -> Message:
    return Message(
        server_id=server_id,
        timestamp=at(seconds),
        from_creator=from_creator,
        text=text if text is not None else f"text {server_id}",
    )


# ---------------------------------------------------------------------------
# Scriptable gateway
# ---------------------------------------------------------------------------


@dataclass
class SendCall:
    creator_id: str
    fan_id: str
    payload: SendPayload


@dataclass
class FakeGateway:
    """In-memory MessagingGateway.

    Tests script the data it returns (``threads``, ``pages``), errors to raise
    (``thread_errors`` / ``message_errors`` / ``send_errors``, consumed in
    order) and artificial latency (``*_delay``).  Every send is recorded.
    """

    threads: dict[str, list[Thread]] = field(default_factory=dict)
    pages: dict[tuple[str, str, str | None], MessagePage] = field(default_factory=dict)
    thread_errors: list[Exception] = field(default_factory=list)
    message_errors: list[Exception] = field(default_factory=list)
    send_errors: list[Exception] = field(default_factory=list)
    thread_delay: float = 0.0
    message_delay: float = 0.0
    send_delay: float = 0.0
    sends: list[SendCall] = field(default_factory=list)
    thread_calls: list[str] = field(default_factory=list)
    message_calls: list[tuple[str, str, str | None]] = field(default_factory=list)
    closed: bool = False
    _next_id: int = 0

    async def list_threads(self, creator_id: str) -> list[Thread]:
        self.thread_calls.append(creator_id)
        if self.thread_delay:
            await asyncio.sleep(self.thread_delay)
        if self.thread_errors:
            raise self.thread_errors.pop(0)
        return list(self.threads.get(creator_id, []))

    async def list_messages(
        self, creator_id: str, fan_id: str, page_token: str | None = None
    ) -> MessagePage:
        self.message_calls.append((creator_id, fan_id, page_token))
        if self.message_delay:
            await asyncio.sleep(self.message_delay)
        if self.message_errors:
            raise self.message_errors.pop(0)
        return self.pages.get((creator_id, fan_id, page_token), MessagePage(messages=[]))

    async def send_message(
        self, creator_id: str, fan_id: str, payload: SendPayload
    ) -> SendReceipt:
        self.sends.append(SendCall(creator_id, fan_id, payload))
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.send_errors:
            raise self.send_errors.pop(0)
        self._next_id += 1
        return SendReceipt(server_id=f"srv-{self._next_id}", timestamp=at(1000 + self._next_id))

    async def close(self) -> None:
        self.closed = True

    def set_messages(
        self,
        creator_id: str,
        fan_id: str,
        messages: list[Message],
        *,
        token: str | None = None,
        next_token: str | None = None,
    ) -> None:
        self.pages[(creator_id, fan_id, token)] = MessagePage(
            messages=messages, next_page_token=next_token
        )


async def settle(predicate: Any, *, timeout: float = 1.0) -> None:
    """Yield to the loop until ``predicate()`` holds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults, no config.toml,
    no .env, no file I/O.
    """
    safe = make_settings()
    monkeypatch.setattr("fansync.config._settings", safe)


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()
