"""Data models for fansync."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from fansync.errors import ErrorKind


class Tier(StrEnum):
    WHALE = "whale"
    SPENDER = "spender"
    FREE = "free"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]


_TIER_RANK: dict[Tier, int] = {Tier.WHALE: 3, Tier.SPENDER: 2, Tier.FREE: 1}


class MessageStatus(StrEnum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    FAILED = "failed"


# --- Roster ---


@dataclass(frozen=True)
class FanIdentity:
    fan_id: str  # stable platform id
    handle: str
    display_name: str
    nickname: str | None = None
    avatar_url: str | None = None


@dataclass(frozen=True)
class LastMessage:
    text: str | None
    has_media: bool
    sent_at: datetime | None
    from_creator: bool


@dataclass(frozen=True)
class Thread:
    """One fan's conversation with a creator, as last reported by the platform."""

    fan: FanIdentity
    ltv: int = 0  # lifetime spend, minor units
    unread_count: int = 0
    last_message: LastMessage | None = None
    last_activity_at: datetime | None = None
    is_muted: bool = False
    registered_at: datetime | None = None

    @property
    def fan_id(self) -> str:
        return self.fan.fan_id

    @property
    def last_message_at(self) -> datetime | None:
        if self.last_activity_at is not None:
            return self.last_activity_at
        return self.last_message.sent_at if self.last_message else None


@dataclass(frozen=True)
class RosterEntry:
    thread: Thread
    tier: Tier

    @property
    def fan_id(self) -> str:
        return self.thread.fan_id


# --- Messages ---


@dataclass
class Message:
    server_id: str | None
    timestamp: datetime | None
    from_creator: bool
    text: str | None = None
    media_refs: tuple[str, ...] = ()
    price: int | None = None  # pay-per-view, minor units
    status: MessageStatus = MessageStatus.CONFIRMED
    temp_id: str | None = None  # only for locally originated sends
    error: ErrorKind | None = None

    @property
    def key(self) -> str:
        """Identity used for de-duplication in a rendered list."""
        if self.server_id is not None:
            return self.server_id
        if self.temp_id is None:
            raise ValueError("message has neither server_id nor temp_id")
        return self.temp_id


@dataclass(frozen=True)
class MessagePage:
    messages: list[Message]
    next_page_token: str | None = None


@dataclass(frozen=True)
class SendReceipt:
    server_id: str
    timestamp: datetime


@dataclass(frozen=True)
class ConversationKey:
    creator_id: str
    fan_id: str


# --- Send payload ---


@dataclass(frozen=True)
class SendPayload:
    """What the operator asked to send.

    Callers may hand the engine a bare string or a mapping; both are
    normalized once through :meth:`coerce` so nothing downstream has to
    branch on the input shape.
    """

    text: str | None = None
    media_refs: tuple[str, ...] = field(default=())
    price: int | None = None

    @classmethod
    def coerce(cls, value: str | Mapping[str, Any] | SendPayload) -> SendPayload:
        if isinstance(value, SendPayload):
            return cls._normalized(value.text, value.media_refs, value.price)
        if isinstance(value, str):
            return cls._normalized(value, (), None)
        if isinstance(value, Mapping):
            refs = value.get("media_refs")
            if refs is None:
                refs = value.get("mediaUuids")
            return cls._normalized(value.get("text"), refs or (), value.get("price"))
        raise TypeError(f"Unsupported send payload type: {type(value).__name__}")

    @classmethod
    def _normalized(cls, text: Any, refs: Any, price: Any) -> SendPayload:
        if text is not None and not isinstance(text, str):
            raise TypeError("text must be a string")
        if isinstance(refs, str):
            raise TypeError("media_refs must be a sequence of ids, not a string")
        stripped = text.strip() if text else ""
        if price is not None and (isinstance(price, bool) or not isinstance(price, int)):
            raise TypeError("price must be an integer amount in minor units")
        return cls(
            text=stripped or None,
            media_refs=tuple(str(r) for r in refs if r),
            price=price,
        )

    @property
    def is_empty(self) -> bool:
        return self.text is None and not self.media_refs

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "media_refs": list(self.media_refs), "price": self.price}
