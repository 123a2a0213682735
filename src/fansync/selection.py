"""Which creator and fan conversation is currently active.

The selection is an immutable :class:`Selection` snapshot.  Only
:class:`SelectionState` creates new snapshots, and each transition is a
single attribute assignment, so a reader can never observe a new creator
paired with the previous creator's fan.

Background work captures the key it was started for and asks
``is_current_creator`` / ``is_current_conversation`` before touching
shared state (the staleness check).
"""

from __future__ import annotations

import contextlib
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeAlias

from fansync.logger import logger
from fansync.types import ConversationKey

SelectionListener: TypeAlias = "Callable[[Selection, Selection], None]"


@dataclass(frozen=True)
class Selection:
    creator_id: str | None = None
    fan_id: str | None = None
    epoch: int = 0

    @property
    def conversation(self) -> ConversationKey | None:
        if self.creator_id is None or self.fan_id is None:
            return None
        return ConversationKey(creator_id=self.creator_id, fan_id=self.fan_id)


class SelectionState:
    """Single owner of selection transitions."""

    def __init__(self) -> None:
        self._current = Selection()
        self._listeners: list[SelectionListener] = []

    @property
    def current(self) -> Selection:
        return self._current

    def select_creator(self, creator_id: str | None) -> Selection:
        """Switch creator. Always clears the fan selection."""
        if creator_id == self._current.creator_id:
            return self._current
        return self._transition(creator_id, None)

    def select_fan(self, fan_id: str | None) -> Selection:
        """Switch fan within the current creator."""
        if fan_id is not None and self._current.creator_id is None:
            raise ValueError("Select a creator before selecting a fan")
        if fan_id == self._current.fan_id:
            return self._current
        return self._transition(self._current.creator_id, fan_id)

    def clear(self) -> Selection:
        if self._current.creator_id is None and self._current.fan_id is None:
            return self._current
        return self._transition(None, None)

    def is_current_creator(self, creator_id: str) -> bool:
        return self._current.creator_id == creator_id

    def is_current_conversation(self, key: ConversationKey) -> bool:
        return self._current.conversation == key

    def subscribe(self, listener: SelectionListener) -> Callable[[], None]:
        """Register ``listener(old, new)``. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _unsubscribe

    def _transition(self, creator_id: str | None, fan_id: str | None) -> Selection:
        old = self._current
        new = Selection(creator_id=creator_id, fan_id=fan_id, epoch=old.epoch + 1)
        self._current = new
        logger.debug(
            "Selection changed",
            creator_id=creator_id,
            fan_id=fan_id,
            epoch=new.epoch,
        )
        for listener in list(self._listeners):
            listener(old, new)
        return new
