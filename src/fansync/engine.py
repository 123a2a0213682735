"""InboxEngine, the one object the UI layer talks to.

Control flow::

    select_creator ──→ RosterSync (one per creator)
    select_fan     ──→ Conversation = MessageCache + MessageSync + sender
    send_message   ──→ Conversation.sender

Every component receives a staleness predicate bound to the key it was
created for.  A selection change first swaps the snapshot (so in-flight
work is already stale), then cancels the previous selection's tasks, then
waits for them to unwind.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from fansync.config import Settings, get_settings
from fansync.errors import ErrorKind
from fansync.event_bus import (
    EventBus,
    MessagesUpdatedEvent,
    RosterUpdatedEvent,
    SelectionChangedEvent,
    SendFailedEvent,
)
from fansync.gateway import MessagingGateway, PayloadLimits
from fansync.logger import logger
from fansync.message_cache import MessageCache
from fansync.messages import MessagesView, MessageSync
from fansync.roster import RosterSync, RosterView, TierThresholds
from fansync.selection import Selection, SelectionState
from fansync.sender import OptimisticSendCoordinator, SendAttempt
from fansync.types import ConversationKey, SendPayload


@dataclass
class Conversation:
    """Everything scoped to one (creator, fan) pair."""

    key: ConversationKey
    cache: MessageCache
    sync: MessageSync
    sender: OptimisticSendCoordinator

    def stop(self) -> None:
        self.sync.stop()
        self.sender.detach()
        self.cache.clear()

    async def wait_closed(self) -> None:
        await self.sync.wait_closed()
        await self.sender.wait_closed()


class InboxEngine:
    def __init__(
        self,
        gateway: MessagingGateway,
        *,
        settings: Settings | None = None,
        bus: EventBus | None = None,
    ) -> None:
        s = settings or get_settings()
        self._gateway = gateway
        self.bus = bus or EventBus()
        self.selection = SelectionState()
        self._roster_interval = s.intervals.roster_poll
        self._message_interval = s.intervals.message_poll
        self._timeout = s.platform.request_timeout
        self._thresholds = TierThresholds(whale=s.tiers.whale_threshold)
        self._limits = PayloadLimits.from_settings(s)
        self._roster: RosterSync | None = None
        self._conversation: Conversation | None = None
        self._closed = False

    @property
    def current(self) -> Selection:
        return self.selection.current

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def select_creator(self, creator_id: str | None) -> RosterView:
        """Switch creator: tears down the roster and any open conversation."""
        if self._closed:
            raise RuntimeError("InboxEngine is closed")
        if creator_id == self.current.creator_id:
            return self.roster_view()

        old_roster, old_conversation = self._roster, self._conversation
        self._roster = None
        self._conversation = None
        selection = self.selection.select_creator(creator_id)
        await self._teardown(old_roster, old_conversation)
        if self._closed or self.current.creator_id != creator_id:
            # Superseded by another selection while the old one was unwinding
            return self.roster_view()

        if creator_id is not None and self._roster is None:
            self._roster = self._start_roster(creator_id)
        logger.info("Creator selected", creator_id=creator_id)
        self._emit_selection(selection)
        return self.roster_view()

    async def select_fan(self, fan_id: str | None) -> MessagesView:
        """Open the conversation with *fan_id* under the current creator."""
        if self._closed:
            raise RuntimeError("InboxEngine is closed")
        if fan_id is not None and self.current.creator_id is None:
            raise LookupError("Select a creator before selecting a fan")
        if fan_id == self.current.fan_id:
            return self.messages_view()

        old_conversation = self._conversation
        self._conversation = None
        selection = self.selection.select_fan(fan_id)
        await self._teardown(None, old_conversation)
        key = selection.conversation
        if self._closed or self.current.conversation != key:
            return self.messages_view()

        if key is not None and self._conversation is None:
            self._conversation = self._open_conversation(key)
        logger.info("Fan selected", creator_id=selection.creator_id, fan_id=fan_id)
        self._emit_selection(selection)
        return self.messages_view()

    async def close(self) -> None:
        """Stop every background task. The gateway is left to its owner."""
        if self._closed:
            return
        self._closed = True
        old_roster, old_conversation = self._roster, self._conversation
        self._roster = None
        self._conversation = None
        self.selection.clear()
        await self._teardown(old_roster, old_conversation)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def send_message(self, payload: str | Mapping[str, Any] | SendPayload) -> str:
        """Optimistically send to the selected fan. Returns the temp id."""
        return self._require_conversation().sender.send(payload)

    def retry_failed_message(self, temp_id: str) -> MessagesView:
        self._require_conversation().sender.retry(temp_id)
        return self.messages_view()

    def discard_failed_message(self, temp_id: str) -> MessagesView:
        self._require_conversation().sender.discard(temp_id)
        return self.messages_view()

    async def wait_for_send(self, temp_id: str) -> SendAttempt:
        return await self._require_conversation().sender.wait(temp_id)

    # ------------------------------------------------------------------
    # Manual refresh
    # ------------------------------------------------------------------

    async def refresh_roster(self) -> RosterView:
        if self._roster is not None:
            await self._roster.refresh()
        return self.roster_view()

    async def refresh_messages(self) -> MessagesView:
        if self._conversation is not None:
            await self._conversation.sync.refresh()
        return self.messages_view()

    async def load_older_messages(self) -> MessagesView:
        if self._conversation is not None:
            await self._conversation.sync.load_older()
        return self.messages_view()

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def roster_view(self) -> RosterView:
        if self._roster is None:
            return RosterView(creator_id=self.current.creator_id)
        return self._roster.view()

    def messages_view(self) -> MessagesView:
        if self._conversation is None:
            return MessagesView(key=None)
        return self._conversation.sync.view()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_conversation(self) -> Conversation:
        if self._conversation is None:
            raise LookupError("No fan selected")
        return self._conversation

    def _start_roster(self, creator_id: str) -> RosterSync:
        roster = RosterSync(
            self._gateway,
            creator_id,
            interval=self._roster_interval,
            thresholds=self._thresholds,
            timeout=self._timeout,
            is_current=lambda: self.selection.is_current_creator(creator_id),
            on_change=lambda: self._emit_roster(roster),
        )
        roster.start()
        return roster

    def _open_conversation(self, key: ConversationKey) -> Conversation:
        def is_current() -> bool:
            return self.selection.is_current_conversation(key)

        def changed() -> None:
            self._emit_messages(conversation)

        cache = MessageCache(key)
        sync = MessageSync(
            self._gateway,
            cache,
            interval=self._message_interval,
            timeout=self._timeout,
            is_current=is_current,
            on_change=changed,
        )
        sender = OptimisticSendCoordinator(
            self._gateway,
            cache,
            limits=self._limits,
            timeout=self._timeout,
            is_current=is_current,
            on_change=changed,
            on_failure=lambda attempt: self._emit_send_failed(key, attempt),
        )
        conversation = Conversation(key=key, cache=cache, sync=sync, sender=sender)
        sync.start()
        return conversation

    async def _teardown(self, roster: RosterSync | None, conversation: Conversation | None) -> None:
        # Cancel everything first, then wait, so nothing old runs between the two
        if roster is not None:
            roster.stop()
        if conversation is not None:
            conversation.stop()
        if roster is not None:
            await roster.wait_closed()
        if conversation is not None:
            await conversation.wait_closed()

    def _emit_roster(self, roster: RosterSync) -> None:
        self.bus.emit(
            RosterUpdatedEvent(
                creator_id=roster.creator_id,
                count=len(roster.entries),
                error=str(roster.error) if roster.error else None,
            )
        )

    def _emit_messages(self, conversation: Conversation) -> None:
        self.bus.emit(
            MessagesUpdatedEvent(
                creator_id=conversation.key.creator_id,
                fan_id=conversation.key.fan_id,
                count=len(conversation.cache),
                error=str(conversation.sync.error) if conversation.sync.error else None,
            )
        )

    def _emit_send_failed(self, key: ConversationKey, attempt: SendAttempt) -> None:
        kind = attempt.error
        if kind is None:
            logger.warning("Send failure without an error kind", temp_id=attempt.temp_id)
            kind = ErrorKind.TRANSPORT
        self.bus.emit(
            SendFailedEvent(
                creator_id=key.creator_id,
                fan_id=key.fan_id,
                temp_id=attempt.temp_id,
                error_kind=str(kind),
                message=kind.user_message,
                retryable=kind.retryable,
            )
        )

    def _emit_selection(self, selection: Selection) -> None:
        self.bus.emit(
            SelectionChangedEvent(
                creator_id=selection.creator_id,
                fan_id=selection.fan_id,
                epoch=selection.epoch,
            )
        )
