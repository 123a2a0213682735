"""Creator roster: whale-priority ordering of a creator's fan threads.

Operators work the highest-value conversations first, so the roster is
ordered by tier before recency:

    tier rank desc → unread count desc → last message desc → fan id asc

Tier is derived from lifetime value on every refresh and never stored.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from fansync.errors import ErrorKind
from fansync.gateway import MessagingGateway
from fansync.polling import ChangeCallback, Poller
from fansync.types import RosterEntry, Thread, Tier

_NO_TIMESTAMP = datetime.min.replace(tzinfo=UTC)


@dataclass(frozen=True)
class TierThresholds:
    whale: int = 100_000  # minor units


def classify_tier(ltv: int, thresholds: TierThresholds) -> Tier:
    """Pure function of ``ltv``; no memory of a fan's previous tier."""
    if ltv >= thresholds.whale:
        return Tier.WHALE
    if ltv > 0:
        return Tier.SPENDER
    return Tier.FREE


def _sort_key(entry: RosterEntry) -> tuple[int, int, float, str]:
    at = entry.thread.last_message_at or _NO_TIMESTAMP
    # Negate so one ascending sort gives desc/desc/desc/asc
    return (-entry.tier.rank, -entry.thread.unread_count, -at.timestamp(), entry.fan_id)


def sort_roster(threads: Iterable[Thread], thresholds: TierThresholds) -> list[RosterEntry]:
    entries = [RosterEntry(thread=t, tier=classify_tier(t.ltv, thresholds)) for t in threads]
    entries.sort(key=_sort_key)
    return entries


@dataclass(frozen=True)
class RosterView:
    """What callers see: last good roster plus loading/error flags."""

    creator_id: str | None
    entries: tuple[RosterEntry, ...] = ()
    loading: bool = False
    error: ErrorKind | None = None
    last_synced_at: datetime | None = None

    def filter(self, *, unread_only: bool = False, search: str | None = None) -> list[RosterEntry]:
        needle = (search or "").strip().casefold()
        result: list[RosterEntry] = []
        for entry in self.entries:
            if unread_only and entry.thread.unread_count <= 0:
                continue
            if needle and not _matches(entry.thread, needle):
                continue
            result.append(entry)
        return result


def _matches(thread: Thread, needle: str) -> bool:
    fan = thread.fan
    haystack = (fan.handle, fan.display_name, fan.nickname or "")
    return any(needle in field.casefold() for field in haystack)


class RosterSync(Poller):
    """Keeps one creator's roster fresh until stopped."""

    label = "roster"

    def __init__(
        self,
        gateway: MessagingGateway,
        creator_id: str,
        *,
        interval: float,
        thresholds: TierThresholds,
        timeout: float | None = None,
        is_current: Callable[[], bool] | None = None,
        on_change: ChangeCallback | None = None,
    ) -> None:
        super().__init__(
            interval=interval, timeout=timeout, is_current=is_current, on_change=on_change
        )
        self._gateway = gateway
        self.creator_id = creator_id
        self._thresholds = thresholds
        self._entries: tuple[RosterEntry, ...] = ()

    @property
    def entries(self) -> tuple[RosterEntry, ...]:
        return self._entries

    def view(self) -> RosterView:
        return RosterView(
            creator_id=self.creator_id,
            entries=self._entries,
            loading=self.loading,
            error=self.error,
            last_synced_at=self.last_synced_at,
        )

    async def _fetch(self) -> list[Thread]:
        return await self._gateway.list_threads(self.creator_id)

    def _apply(self, result: list[Thread]) -> None:
        # Wholesale replacement: fans missing from this poll are archived
        self._entries = tuple(sort_roster(result, self._thresholds))

    def _log_context(self) -> dict[str, Any]:
        return {"creator_id": self.creator_id}
