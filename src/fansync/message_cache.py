"""Merged message list for one (creator, fan) conversation.

Two writers feed this structure: the poller (authoritative pages keyed by
``server_id``) and the send coordinator (pending entries keyed by
``temp_id``).  The reconciliation map links the two once a send is
confirmed, which is what keeps a send from showing up twice when the poll
that contains it races the send's own confirmation.

Rendered order::

    authoritative messages, by timestamp (ties: server id)
    then pending / failed / confirmed-but-not-yet-polled sends, in send order

No I/O happens here.  Callers check staleness before merging; after
``clear()`` every mutation is refused so a late result cannot repopulate a
torn-down conversation.
"""

from __future__ import annotations

import itertools
from dataclasses import replace
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Final

from fansync.errors import ErrorKind
from fansync.types import ConversationKey, Message, MessagePage, MessageStatus, SendReceipt

FAILED: Final = "failed"

_NO_TIMESTAMP = datetime.max.replace(tzinfo=UTC)


class MessageCache:
    def __init__(self, key: ConversationKey) -> None:
        self.key = key
        self._confirmed: dict[str, Message] = {}
        self._pending: dict[str, Message] = {}  # insertion order == send order
        self._reconciliation: dict[str, str] = {}  # temp_id → server_id | FAILED
        self._next_page_token: str | None = None
        self._older_loaded = False
        self.closed = False

    # ------------------------------------------------------------------
    # Authoritative data
    # ------------------------------------------------------------------

    def merge_latest(self, page: MessagePage) -> bool:
        """Merge a fresh poll of the newest page."""
        if self.closed:
            return False
        for message in page.messages:
            self._upsert(message)
        if not self._older_loaded:
            # Once the user has paged back, the cursor belongs to that walk
            self._next_page_token = page.next_page_token
        self._collapse_resolved()
        return True

    def merge_older(self, page: MessagePage) -> bool:
        """Merge a page fetched by backward pagination."""
        if self.closed:
            return False
        for message in page.messages:
            self._upsert(message)
        self._older_loaded = True
        self._next_page_token = page.next_page_token
        self._collapse_resolved()
        return True

    @property
    def next_page_token(self) -> str | None:
        return self._next_page_token

    @property
    def has_more(self) -> bool:
        return self._next_page_token is not None

    def _upsert(self, message: Message) -> None:
        server_id = message.server_id
        if server_id is None:
            return
        stored = replace(message, status=MessageStatus.CONFIRMED, error=None)
        temp_id = self._temp_id_for(server_id)
        if temp_id is not None:
            stored.temp_id = temp_id
        self._confirmed[server_id] = stored

    def _temp_id_for(self, server_id: str) -> str | None:
        for temp_id, resolved in self._reconciliation.items():
            if resolved == server_id:
                return temp_id
        return None

    def _collapse_resolved(self) -> None:
        for temp_id in list(self._pending):
            server_id = self._reconciliation.get(temp_id)
            if server_id is None or server_id == FAILED:
                continue
            confirmed = self._confirmed.get(server_id)
            if confirmed is None:
                # Confirmed by the send but not yet seen by a poll: keep showing it
                continue
            confirmed.temp_id = temp_id
            del self._pending[temp_id]

    # ------------------------------------------------------------------
    # Locally originated sends
    # ------------------------------------------------------------------

    def add_pending(self, message: Message) -> bool:
        if self.closed:
            return False
        temp_id = message.temp_id
        if temp_id is None:
            raise ValueError("pending message needs a temp_id")
        if temp_id in self._pending or temp_id in self._reconciliation:
            raise RuntimeError(f"temp_id collision: {temp_id}")
        self._pending[temp_id] = replace(
            message, server_id=None, status=MessageStatus.PENDING, error=None
        )
        return True

    def mark_dispatching(self, temp_id: str) -> bool:
        message = self._pending_or_none(temp_id)
        if message is None:
            return False
        message.status = MessageStatus.PENDING
        message.error = None
        if self._reconciliation.get(temp_id) == FAILED:
            del self._reconciliation[temp_id]
        return True

    def resolve(self, temp_id: str, receipt: SendReceipt) -> bool:
        message = self._pending_or_none(temp_id)
        if message is None:
            return False
        self._reconciliation[temp_id] = receipt.server_id
        message.server_id = receipt.server_id
        message.timestamp = receipt.timestamp
        message.status = MessageStatus.CONFIRMED
        message.error = None
        self._collapse_resolved()
        return True

    def fail(self, temp_id: str, kind: ErrorKind) -> bool:
        message = self._pending_or_none(temp_id)
        if message is None:
            return False
        self._reconciliation[temp_id] = FAILED
        message.status = MessageStatus.FAILED
        message.error = kind
        return True

    def discard(self, temp_id: str) -> bool:
        """Drop a failed send. Pending and confirmed sends cannot be discarded."""
        message = self._pending_or_none(temp_id)
        if message is None or message.status is not MessageStatus.FAILED:
            return False
        del self._pending[temp_id]
        self._reconciliation.pop(temp_id, None)
        return True

    def pending(self, temp_id: str) -> Message | None:
        message = self._pending.get(temp_id)
        return replace(message) if message is not None else None

    def _pending_or_none(self, temp_id: str) -> Message | None:
        if self.closed:
            return None
        return self._pending.get(temp_id)

    def reconciliation(self) -> MappingProxyType[str, str]:
        return MappingProxyType(dict(self._reconciliation))

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def render(self) -> list[Message]:
        authoritative = sorted(self._confirmed.values(), key=self._order_key)
        tail = list(self._pending.values())
        return [replace(m) for m in itertools.chain(authoritative, tail)]

    @staticmethod
    def _order_key(message: Message) -> tuple[datetime, str]:
        return (message.timestamp or _NO_TIMESTAMP, message.server_id or "")

    def __len__(self) -> int:
        return len(self._confirmed) + len(self._pending)

    def clear(self) -> None:
        """Teardown: drop everything and refuse further writes."""
        self._confirmed.clear()
        self._pending.clear()
        self._reconciliation.clear()
        self._next_page_token = None
        self.closed = True
