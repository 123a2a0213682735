"""Contract the sync engine requires from the remote messaging platform."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from fansync.types import MessagePage, SendPayload, SendReceipt, Thread


@runtime_checkable
class MessagingGateway(Protocol):
    """Remote platform operations.

    Every method may raise a :class:`fansync.errors.GatewayError` subclass.
    Timeouts surface as ``TransportError``.  Cancelling the awaiting task
    must propagate ``asyncio.CancelledError`` untouched, never a failure.
    """

    async def list_threads(self, creator_id: str) -> list[Thread]: ...

    async def list_messages(
        self, creator_id: str, fan_id: str, page_token: str | None = None
    ) -> MessagePage:
        """Return one page of a conversation, oldest message first.

        ``page_token=None`` is the latest page.  ``next_page_token`` on the
        result points at the next *older* page, or is None at the start of
        the conversation.
        """
        ...

    async def send_message(
        self, creator_id: str, fan_id: str, payload: SendPayload
    ) -> SendReceipt: ...

    async def close(self) -> None: ...
