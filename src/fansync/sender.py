"""Optimistic sends for one conversation.

A send is visible the moment the operator submits it.  Each attempt walks::

    created → dispatching → confirmed
                    │
                    └──→ failed ──(retry)──→ dispatching

Retries reuse the same ``temp_id`` and the same normalized payload, so the
operator's intent is never re-derived from edited input.  Sends are never
retried automatically: a timed-out send may still have been delivered, and
only the operator can decide to risk a duplicate.

The coordinator is bound to one :class:`MessageCache`.  Once detached (the
conversation was torn down) late dispatch results are dropped instead of
being written anywhere.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, TypeAlias

from fansync.errors import ErrorKind, GatewayError, TransportError
from fansync.gateway import MessagingGateway, PayloadLimits, validate_payload
from fansync.logger import logger
from fansync.message_cache import MessageCache
from fansync.polling import ChangeCallback
from fansync.types import ConversationKey, Message, MessageStatus, SendPayload
from fansync.utils import bounded, create_background_task


class SendState(StrEnum):
    CREATED = "created"
    DISPATCHING = "dispatching"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class SendAttempt:
    temp_id: str
    payload: SendPayload
    state: SendState = SendState.CREATED
    attempts: int = 0
    server_id: str | None = None
    error: ErrorKind | None = None
    error_message: str | None = None


FailureCallback: TypeAlias = Callable[[SendAttempt], None]


def mint_temp_id() -> str:
    return f"tmp-{uuid.uuid4().hex}"


def _always_current() -> bool:
    return True


class OptimisticSendCoordinator:
    def __init__(
        self,
        gateway: MessagingGateway,
        cache: MessageCache,
        *,
        limits: PayloadLimits | None = None,
        timeout: float | None = None,
        is_current: Callable[[], bool] | None = None,
        on_change: ChangeCallback | None = None,
        on_failure: FailureCallback | None = None,
        id_factory: Callable[[], str] = mint_temp_id,
    ) -> None:
        self._gateway = gateway
        self._cache = cache
        self._limits = limits or PayloadLimits()
        self._timeout = timeout
        self._is_current = is_current or _always_current
        self._on_change = on_change
        self._on_failure = on_failure
        self._id_factory = id_factory
        self._attempts: dict[str, SendAttempt] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._detached = False

    @property
    def key(self) -> ConversationKey:
        return self._cache.key

    @property
    def detached(self) -> bool:
        return self._detached

    def attempt(self, temp_id: str) -> SendAttempt | None:
        return self._attempts.get(temp_id)

    def send(self, payload: str | Mapping[str, Any] | SendPayload) -> str:
        """Show *payload* as pending right away and dispatch it in the background.

        Returns the ``temp_id`` the UI can use to follow the send.  Raises
        ``TypeError`` for an unusable payload shape and ``RuntimeError`` once
        the coordinator has been detached.
        """
        if self._detached:
            raise RuntimeError("Conversation is closed; cannot send")
        normalized = SendPayload.coerce(payload)
        temp_id = self._id_factory()
        if temp_id in self._attempts:
            raise RuntimeError(f"temp_id collision: {temp_id}")

        attempt = SendAttempt(temp_id=temp_id, payload=normalized)
        self._attempts[temp_id] = attempt
        self._cache.add_pending(
            Message(
                server_id=None,
                timestamp=None,
                from_creator=True,
                text=normalized.text,
                media_refs=normalized.media_refs,
                price=normalized.price,
                status=MessageStatus.PENDING,
                temp_id=temp_id,
            )
        )
        logger.info(
            "Send queued",
            temp_id=temp_id,
            creator_id=self.key.creator_id,
            fan_id=self.key.fan_id,
            media=len(normalized.media_refs),
            priced=normalized.price is not None,
        )
        self._dispatch(attempt)
        return temp_id

    def retry(self, temp_id: str) -> None:
        """Re-dispatch a failed send with its original payload."""
        if self._detached:
            raise RuntimeError("Conversation is closed; cannot retry")
        attempt = self._attempts.get(temp_id)
        if attempt is None:
            raise KeyError(temp_id)
        if attempt.state is not SendState.FAILED:
            raise ValueError(f"Send {temp_id} is {attempt.state}; only failed sends can be retried")
        logger.info("Retrying send", temp_id=temp_id, attempt=attempt.attempts + 1)
        self._dispatch(attempt)

    def discard(self, temp_id: str) -> None:
        """Remove a failed send from the conversation."""
        attempt = self._attempts.get(temp_id)
        if attempt is None:
            raise KeyError(temp_id)
        if attempt.state is not SendState.FAILED:
            raise ValueError(f"Send {temp_id} is {attempt.state}; only failed sends can be discarded")
        del self._attempts[temp_id]
        self._cache.discard(temp_id)
        self._notify()

    async def wait(self, temp_id: str) -> SendAttempt:
        """Wait for the current dispatch of *temp_id* to settle."""
        attempt = self._attempts.get(temp_id)
        if attempt is None:
            raise KeyError(temp_id)
        task = self._tasks.get(temp_id)
        if task is not None:
            await asyncio.wait([task])
        return attempt

    def detach(self) -> None:
        """Stop touching the cache and cancel dispatches that have not returned."""
        self._detached = True
        for task in self._tasks.values():
            if not task.done():
                task.cancel()

    async def wait_closed(self) -> None:
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.wait(tasks)

    # --- internals ---

    def _dispatch(self, attempt: SendAttempt) -> None:
        attempt.state = SendState.DISPATCHING
        attempt.attempts += 1
        attempt.error = None
        attempt.error_message = None
        self._cache.mark_dispatching(attempt.temp_id)
        self._notify()

        temp_id = attempt.temp_id
        task = create_background_task(self._run_dispatch(attempt), name=f"send-{temp_id}")
        self._tasks[temp_id] = task

        def _forget(done: asyncio.Task[None]) -> None:
            if self._tasks.get(temp_id) is done:
                del self._tasks[temp_id]

        task.add_done_callback(_forget)

    async def _run_dispatch(self, attempt: SendAttempt) -> None:
        key = self.key
        try:
            validate_payload(attempt.payload, self._limits)
            receipt = await bounded(
                self._gateway.send_message(key.creator_id, key.fan_id, attempt.payload),
                self._timeout,
            )
        except GatewayError as exc:
            if self._is_stale():
                logger.debug("Dropping failure for closed conversation", temp_id=attempt.temp_id)
                return
            self._fail(attempt, exc)
            return
        except Exception as exc:
            # A broken gateway must still leave a retryable failed message
            logger.exception(
                "Unexpected error during send",
                temp_id=attempt.temp_id,
                creator_id=key.creator_id,
                fan_id=key.fan_id,
            )
            if self._is_stale():
                return
            self._fail(attempt, TransportError(f"Unexpected send error: {exc!r}"))
            return

        if self._is_stale():
            # Delivered, but the conversation is gone; the next poll of it will show the message
            logger.info(
                "Send confirmed after conversation closed",
                temp_id=attempt.temp_id,
                server_id=receipt.server_id,
            )
            return
        attempt.state = SendState.CONFIRMED
        attempt.server_id = receipt.server_id
        self._cache.resolve(attempt.temp_id, receipt)
        logger.info("Send confirmed", temp_id=attempt.temp_id, server_id=receipt.server_id)
        self._notify()

    def _fail(self, attempt: SendAttempt, exc: GatewayError) -> None:
        attempt.state = SendState.FAILED
        attempt.error = exc.kind
        attempt.error_message = str(exc)
        self._cache.fail(attempt.temp_id, exc.kind)
        logger.warning(
            "Send failed",
            temp_id=attempt.temp_id,
            creator_id=self.key.creator_id,
            fan_id=self.key.fan_id,
            error_kind=str(exc.kind),
            err=str(exc),
        )
        self._notify()
        if self._on_failure is not None:
            self._on_failure(attempt)

    def _is_stale(self) -> bool:
        return self._detached or self._cache.closed or not self._is_current()

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change()
