"""REST client for the creator platform's chat API.

One :class:`aiohttp.ClientSession` is shared by every creator; credentials
are resolved per call through ``token_provider`` because each creator
connects their own platform account.

Status mapping::

    401 403              → AuthError
    429                  → RateLimited (Retry-After honoured)
    400 413 422          → ValidationError
    other 4xx            → Rejected
    5xx, network, timeout → TransportError

List calls retry ``RateLimited`` a few times before giving up.  Sends are
never retried here; re-sending paid content is an operator decision.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any, TypeAlias, TypeVar

import aiohttp

from fansync.errors import (
    AuthError,
    GatewayError,
    RateLimited,
    Rejected,
    TransportError,
    ValidationError,
)
from fansync.logger import logger
from fansync.types import (
    FanIdentity,
    LastMessage,
    Message,
    MessagePage,
    SendPayload,
    SendReceipt,
    Thread,
)
from fansync.utils import parse_timestamp, utc_now

from ._validation import PayloadLimits, validate_payload

if TYPE_CHECKING:
    from fansync.config import Settings

TokenProvider: TypeAlias = Callable[[str], Awaitable[str | None]]

_LOW_RATE_LIMIT_REMAINING = 10
_VALIDATION_STATUSES = frozenset({400, 413, 422})
_AUTH_STATUSES = frozenset({401, 403})


def error_for_status(
    status: int, body: Mapping[str, Any] | None = None, headers: Mapping[str, str] | None = None
) -> GatewayError:
    """Translate an HTTP error response into the gateway error taxonomy."""
    detail = ""
    if body:
        detail = str(body.get("message") or body.get("error") or "")
    if status in _AUTH_STATUSES:
        return AuthError(detail or f"Platform rejected credentials ({status})", status=status)
    if status == 429:
        retry_after = _parse_retry_after((headers or {}).get("Retry-After"))
        return RateLimited(detail or "Rate limit exceeded", retry_after=retry_after)
    if status in _VALIDATION_STATUSES:
        return ValidationError(detail or f"Platform rejected payload ({status})", status=status)
    if 400 <= status < 500:
        return Rejected(detail or f"Platform refused request ({status})", status=status)
    return TransportError(detail or f"Platform error ({status})", status=status)


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return max(0.0, seconds)


class HttpMessagingGateway:
    """aiohttp implementation of :class:`~fansync.gateway.MessagingGateway`."""

    def __init__(
        self,
        *,
        base_url: str,
        token_provider: TokenProvider,
        api_version: str = "2025-06-26",
        timeout: float = 15.0,
        page_size: int = 50,
        max_roster_pages: int = 20,
        read_retries: int = 3,
        max_backoff: float = 30.0,
        limits: PayloadLimits | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._api_version = api_version
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._page_size = page_size
        self._max_roster_pages = max_roster_pages
        self._read_retries = read_retries
        self._max_backoff = max_backoff
        self._limits = limits or PayloadLimits()
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_settings(cls, settings: Settings) -> HttpMessagingGateway:
        """Build a gateway that uses the single configured platform token."""
        secret = settings.secrets.platform_token
        token = secret.get_secret_value() if secret else None

        async def _static_token(_creator_id: str) -> str | None:
            return token

        p = settings.platform
        return cls(
            base_url=p.base_url,
            token_provider=_static_token,
            api_version=p.api_version,
            timeout=p.request_timeout,
            page_size=p.page_size,
            max_roster_pages=p.max_roster_pages,
            read_retries=p.read_retries,
            max_backoff=p.max_backoff,
            limits=PayloadLimits.from_settings(settings),
        )

    # ------------------------------------------------------------------
    # MessagingGateway
    # ------------------------------------------------------------------

    async def list_threads(self, creator_id: str) -> list[Thread]:
        threads: list[Thread] = []
        seen: set[str] = set()
        for page in range(1, self._max_roster_pages + 1):
            data = await self._read(
                "/chats",
                creator_id=creator_id,
                params={"page": str(page), "size": str(self._page_size)},
            )
            for thread in _parse_all(_parse_thread, _items(data), "chats"):
                # Pages can shift while we walk them; keep the first sighting
                if thread.fan_id in seen:
                    continue
                seen.add(thread.fan_id)
                threads.append(thread)
            if not _has_more(data):
                break
        else:
            logger.warning(
                "Roster truncated at page limit",
                creator_id=creator_id,
                pages=self._max_roster_pages,
            )
        return threads

    async def list_messages(
        self, creator_id: str, fan_id: str, page_token: str | None = None
    ) -> MessagePage:
        page = _page_number(page_token)
        data = await self._read(
            f"/chats/{fan_id}/messages",
            creator_id=creator_id,
            params={"page": str(page), "size": str(self._page_size)},
        )
        messages = _parse_all(lambda raw: _parse_message(raw, fan_id), _items(data), "messages")
        # Platform returns newest first
        messages.reverse()
        next_token = str(page + 1) if _has_more(data) else None
        return MessagePage(messages=messages, next_page_token=next_token)

    async def send_message(
        self, creator_id: str, fan_id: str, payload: SendPayload
    ) -> SendReceipt:
        validate_payload(payload, self._limits)
        body: dict[str, Any] = {"text": payload.text}
        if payload.media_refs:
            body["mediaUuids"] = list(payload.media_refs)
        if payload.price is not None:
            body["price"] = payload.price
        data = await self._request(
            "POST", f"/chats/{fan_id}/messages", creator_id=creator_id, json=body
        )
        if not isinstance(data, Mapping):
            raise TransportError("Malformed send response")
        server_id = data.get("messageUuid") or data.get("uuid")
        if not server_id:
            raise TransportError("Send response did not include a message id")
        timestamp = parse_timestamp(data.get("sentAt")) or utc_now()
        return SendReceipt(server_id=str(server_id), timestamp=timestamp)

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _read(self, path: str, *, creator_id: str, params: dict[str, str]) -> Any:
        """GET with bounded retry on 429."""
        attempt = 0
        while True:
            try:
                return await self._request("GET", path, creator_id=creator_id, params=params)
            except RateLimited as exc:
                if attempt >= self._read_retries:
                    raise
                delay = self._backoff_delay(attempt, exc.retry_after)
                logger.info(
                    "Rate limited, backing off",
                    path=path,
                    creator_id=creator_id,
                    attempt=attempt + 1,
                    delay=round(delay, 2),
                )
                await asyncio.sleep(delay)
                attempt += 1

    def _backoff_delay(self, attempt: int, retry_after: float | None) -> float:
        if retry_after is not None:
            return min(retry_after, self._max_backoff)
        return min(2**attempt + random.uniform(0, 1), self._max_backoff)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        creator_id: str,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        token = await self._token_provider(creator_id)
        if not token:
            raise AuthError(f"No platform credential for creator {creator_id}")
        headers = {
            "Authorization": f"Bearer {token}",
            "X-Fanvue-API-Version": self._api_version,
        }
        url = f"{self._base_url}{path}"
        session = self._get_session()
        try:
            async with session.request(
                method, url, params=params, json=json, headers=headers, timeout=self._timeout
            ) as resp:
                self._log_rate_limit(resp, path)
                if resp.status >= 400:
                    raise error_for_status(resp.status, await _error_body(resp), resp.headers)
                try:
                    return await resp.json(content_type=None)
                except ValueError as exc:
                    raise TransportError("Platform returned a non-JSON body") from exc
        except TimeoutError as exc:
            raise TransportError(f"{method} {path} timed out") from exc
        except aiohttp.ClientError as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

    @staticmethod
    def _log_rate_limit(resp: aiohttp.ClientResponse, path: str) -> None:
        remaining = resp.headers.get("X-RateLimit-Remaining")
        if remaining is None:
            return
        try:
            left = int(remaining)
        except ValueError:
            return
        limit = resp.headers.get("X-RateLimit-Limit", "?")
        if left < _LOW_RATE_LIMIT_REMAINING:
            logger.warning("Platform rate limit nearly exhausted", path=path, remaining=left)
        else:
            logger.debug("Platform rate limit", path=path, remaining=left, limit=limit)


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


async def _error_body(resp: aiohttp.ClientResponse) -> dict[str, Any]:
    try:
        body = await resp.json(content_type=None)
    except (ValueError, aiohttp.ClientError):
        return {}
    return body if isinstance(body, dict) else {}


def _items(data: Any) -> list[dict[str, Any]]:
    if isinstance(data, Mapping):
        items = data.get("data") or []
    else:
        items = data or []
    if not isinstance(items, list):
        kind = type(items).__name__
        raise TransportError(f"Malformed list response: expected a list, got {kind}")
    return [i for i in items if isinstance(i, Mapping)]


def _has_more(data: Any) -> bool:
    if not isinstance(data, Mapping):
        return False
    pagination = data.get("pagination")
    return isinstance(pagination, Mapping) and bool(pagination.get("hasMore"))


def _page_number(page_token: str | None) -> int:
    if page_token is None:
        return 1
    try:
        page = int(page_token)
    except ValueError as exc:
        raise ValidationError(f"Invalid page token {page_token!r}") from exc
    return max(1, page)


T = TypeVar("T")


def _parse_all(
    parse: Callable[[Mapping[str, Any]], T | None],
    items: list[dict[str, Any]],
    what: str,
) -> list[T]:
    """Parse every item, mapping bad field types to :class:`TransportError`."""
    try:
        parsed = [parse(raw) for raw in items]
    except (TypeError, ValueError, AttributeError, OverflowError) as exc:
        raise TransportError(f"Malformed {what} response: {exc}") from exc
    return [p for p in parsed if p is not None]


def _minor_units(value: Any) -> int:
    """Platform amounts are cents whether the JSON number has a fraction or not."""
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, int | float):
        return max(0, round(value))
    raise TypeError(f"amount must be a number, got {type(value).__name__}")


def _parse_thread(raw: Mapping[str, Any]) -> Thread | None:
    user = raw.get("user") or {}
    fan_id = user.get("uuid") or raw.get("uuid")
    if not fan_id:
        return None
    handle = user.get("handle") or ""
    fan = FanIdentity(
        fan_id=str(fan_id),
        handle=handle,
        display_name=user.get("displayName") or handle or "Unknown",
        nickname=user.get("nickname") or None,
        avatar_url=user.get("avatarUrl") or None,
    )
    last = raw.get("lastMessage")
    last_message = None
    if isinstance(last, Mapping):
        last_message = LastMessage(
            text=last.get("text") or None,
            has_media=bool(last.get("hasMedia")),
            sent_at=parse_timestamp(last.get("sentAt")),
            from_creator=bool(last.get("senderUuid")) and last.get("senderUuid") != fan_id,
        )
    return Thread(
        fan=fan,
        ltv=_minor_units(user.get("totalSpent", raw.get("totalSpent"))),
        unread_count=max(0, int(raw.get("unreadMessagesCount") or 0)),
        last_message=last_message,
        last_activity_at=parse_timestamp(raw.get("lastMessageAt")),
        is_muted=bool(raw.get("isMuted", False)),
        registered_at=parse_timestamp(user.get("registeredAt")),
    )


def _parse_message(raw: Mapping[str, Any], fan_id: str) -> Message | None:
    server_id = raw.get("uuid")
    if not server_id:
        return None
    if "isFromCreator" in raw:
        from_creator = bool(raw["isFromCreator"])
    else:
        sender = raw.get("sender") or {}
        from_creator = sender.get("uuid") != fan_id
    price: int | None = None
    pricing = raw.get("pricing")
    if isinstance(pricing, Mapping):
        usd = pricing.get("USD") or {}
        if usd.get("price") is not None:
            price = _minor_units(usd["price"])
    elif raw.get("price") is not None:
        price = _minor_units(raw["price"])
    media = raw.get("mediaUuids") or []
    return Message(
        server_id=str(server_id),
        timestamp=parse_timestamp(raw.get("sentAt") or raw.get("createdAt")),
        from_creator=from_creator,
        text=raw.get("text") or None,
        media_refs=tuple(str(m) for m in media),
        price=price,
    )
