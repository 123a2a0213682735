"""Message polling and backward pagination for the active conversation."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fansync.errors import ErrorKind, GatewayError, TransportError
from fansync.gateway import MessagingGateway
from fansync.logger import logger
from fansync.message_cache import MessageCache
from fansync.polling import ChangeCallback, Poller
from fansync.types import ConversationKey, Message, MessagePage
from fansync.utils import bounded


@dataclass(frozen=True)
class MessagesView:
    key: ConversationKey | None
    messages: tuple[Message, ...] = ()
    loading: bool = False
    loading_older: bool = False
    error: ErrorKind | None = None
    has_more: bool = False
    last_synced_at: datetime | None = None


class MessageSync(Poller):
    """Polls the newest page of one conversation into its :class:`MessageCache`."""

    label = "messages"

    def __init__(
        self,
        gateway: MessagingGateway,
        cache: MessageCache,
        *,
        interval: float,
        timeout: float | None = None,
        is_current: Callable[[], bool] | None = None,
        on_change: ChangeCallback | None = None,
    ) -> None:
        super().__init__(
            interval=interval, timeout=timeout, is_current=is_current, on_change=on_change
        )
        self._gateway = gateway
        self.cache = cache
        self._older: asyncio.Task[bool] | None = None

    @property
    def key(self) -> ConversationKey:
        return self.cache.key

    @property
    def loading_older(self) -> bool:
        return self._older is not None and not self._older.done()

    def view(self) -> MessagesView:
        return MessagesView(
            key=self.key,
            messages=tuple(self.cache.render()),
            loading=self.loading,
            loading_older=self.loading_older,
            error=self.error,
            has_more=self.cache.has_more,
            last_synced_at=self.last_synced_at,
        )

    async def _fetch(self) -> MessagePage:
        return await self._gateway.list_messages(self.key.creator_id, self.key.fan_id)

    def _apply(self, result: MessagePage) -> None:
        self.cache.merge_latest(result)

    def _is_stale(self) -> bool:
        return super()._is_stale() or self.cache.closed

    def _log_context(self) -> dict[str, Any]:
        return {"creator_id": self.key.creator_id, "fan_id": self.key.fan_id}

    # --- backward pagination ---

    async def load_older(self) -> bool:
        """Fetch the page before the oldest loaded one.

        Returns True if a page was merged.  Repeated calls while a page is
        in flight share it.
        """
        if self._stopped:
            return False
        task = self._older
        if task is None or task.done():
            token = self.cache.next_page_token
            if token is None:
                return False
            task = self._older = asyncio.create_task(
                self._fetch_older(token), name=f"{self.label}-older"
            )
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            return False

    async def _fetch_older(self, token: str) -> bool:
        failure: GatewayError | None = None
        try:
            page = await bounded(
                self._gateway.list_messages(self.key.creator_id, self.key.fan_id, token),
                self._timeout,
            )
        except GatewayError as exc:
            failure = exc
        except Exception as exc:
            logger.exception("Unexpected error loading older page", **self._log_context())
            failure = TransportError(f"Unexpected poll error: {exc!r}")
        if failure is not None:
            if self._is_stale():
                return False
            self._record_failure(failure)
            self._notify()
            return False

        if self._is_stale():
            logger.debug("Discarding stale older page", **self._log_context())
            return False
        self.cache.merge_older(page)
        logger.debug(
            "Loaded older messages",
            count=len(page.messages),
            has_more=page.next_page_token is not None,
            **self._log_context(),
        )
        self._notify()
        return True

    def stop(self) -> None:
        super().stop()
        if self._older is not None and not self._older.done():
            self._older.cancel()

    async def wait_closed(self) -> None:
        await super().wait_closed()
        if self._older is not None:
            await asyncio.wait([self._older])
