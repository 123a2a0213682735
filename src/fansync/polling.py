"""Recurring fetch bound to the lifetime of one selection.

asyncio.create_task doesn't run the coroutine synchronously up to the first
await, so ``stop()`` flips ``_stopped`` before cancelling: a loop that has
been scheduled but not yet started must still see that it is dead.

Results are applied only if the poller is still running *and* the
selection it was created for is still the current one.  A cancelled fetch
never reports a failure.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeAlias

from fansync.errors import AuthError, ErrorKind, GatewayError, RateLimited, TransportError
from fansync.logger import logger
from fansync.utils import bounded, create_background_task, utc_now

ChangeCallback: TypeAlias = Callable[[], None]


def _always_current() -> bool:
    return True


class Poller:
    """Base class: subclasses implement ``_fetch`` and ``_apply``."""

    label = "poll"

    def __init__(
        self,
        *,
        interval: float,
        timeout: float | None = None,
        is_current: Callable[[], bool] | None = None,
        on_change: ChangeCallback | None = None,
    ) -> None:
        self._interval = interval
        self._timeout = timeout
        self._is_current = is_current or _always_current
        self._on_change = on_change
        self._task: asyncio.Task[None] | None = None
        self._inflight: asyncio.Task[bool] | None = None
        self._stopped = False
        self._retry_after: float | None = None

        self.loading = False
        self.error: ErrorKind | None = None
        self.last_synced_at: datetime | None = None

    # --- subclass hooks ---

    async def _fetch(self) -> Any:
        raise NotImplementedError

    def _apply(self, result: Any) -> None:
        raise NotImplementedError

    def _log_context(self) -> dict[str, Any]:
        return {}

    # --- lifecycle ---

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stopped(self) -> bool:
        return self._stopped

    def start(self) -> None:
        """Fetch immediately, then every ``interval`` seconds until stopped."""
        if self._stopped or self.running:
            return
        self._task = create_background_task(self._run(), name=f"{self.label}-loop")

    def stop(self) -> None:
        """Cancel the timer and any in-flight fetch. Idempotent."""
        self._stopped = True
        for task in (self._task, self._inflight):
            if task is not None and not task.done():
                task.cancel()

    async def wait_closed(self) -> None:
        """Wait until cancelled tasks have unwound."""
        tasks = [t for t in (self._task, self._inflight) if t is not None]
        if tasks:
            await asyncio.wait(tasks)

    async def refresh(self) -> bool:
        """Fetch now.  Concurrent callers share one in-flight request.

        Returns True if fresh data was applied.
        """
        if self._stopped:
            return False
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.create_task(self._fetch_once(), name=f"{self.label}-fetch")
        task = self._inflight
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            # The fetch itself was cancelled by stop(); nothing to report
            return False

    # --- internals ---

    async def _run(self) -> None:
        logger.debug("Poll loop started", poller=self.label, **self._log_context())
        while not self._stopped:
            try:
                await self.refresh()
            except Exception:
                logger.exception("Error in poll loop", poller=self.label, **self._log_context())
            delay = self._interval
            if self._retry_after is not None:
                delay = max(delay, self._retry_after)
                self._retry_after = None
            await asyncio.sleep(delay)

    async def _fetch_once(self) -> bool:
        self.loading = True
        failure: GatewayError | None = None
        try:
            result = await bounded(self._fetch(), self._timeout)
        except GatewayError as exc:
            failure = exc
        except Exception as exc:
            logger.exception("Unexpected poll error", poller=self.label, **self._log_context())
            failure = TransportError(f"Unexpected poll error: {exc!r}")
        finally:
            self.loading = False

        if self._is_stale():
            logger.debug("Discarding stale poll result", poller=self.label, **self._log_context())
            return False
        if failure is not None:
            self._record_failure(failure)
            self._notify()
            return False
        self._apply(result)
        self.error = None
        self.last_synced_at = utc_now()
        self._notify()
        return True

    def _is_stale(self) -> bool:
        return self._stopped or not self._is_current()

    def _record_failure(self, exc: GatewayError) -> None:
        # Sticky until the next success; existing data stays as-is
        self.error = exc.kind
        if isinstance(exc, RateLimited):
            self._retry_after = exc.retry_after
        log = logger.error if isinstance(exc, AuthError) else logger.warning
        log(
            "Poll failed, keeping last known data",
            poller=self.label,
            error_kind=str(exc.kind),
            err=str(exc),
            **self._log_context(),
        )

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change()
