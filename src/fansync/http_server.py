"""Embedded HTTP server exposing the inbox engine to the UI.

JSON endpoints for selection, roster, messages and sends, plus an SSE
stream of engine events.  Binds to localhost by default; put it behind the
UI's own reverse proxy for anything else.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import asdict
from datetime import datetime
from typing import Any

from aiohttp import web

from fansync.engine import InboxEngine
from fansync.event_bus import (
    MessagesUpdatedEvent,
    RosterUpdatedEvent,
    SelectionChangedEvent,
    SendFailedEvent,
)
from fansync.logger import logger
from fansync.messages import MessagesView
from fansync.roster import RosterView
from fansync.types import Message, RosterEntry

engine_key = web.AppKey("engine", InboxEngine)

_start_time = time.monotonic()

_STREAMED_EVENTS: dict[type, str] = {
    RosterUpdatedEvent: "roster_updated",
    MessagesUpdatedEvent: "messages_updated",
    SendFailedEvent: "send_failed",
    SelectionChangedEvent: "selection_changed",
}


# ------------------------------------------------------------------
# Serialization
# ------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def roster_entry_to_dict(entry: RosterEntry) -> dict[str, Any]:
    thread = entry.thread
    last = thread.last_message
    return {
        "fan_id": thread.fan_id,
        "handle": thread.fan.handle,
        "display_name": thread.fan.display_name,
        "nickname": thread.fan.nickname,
        "avatar_url": thread.fan.avatar_url,
        "tier": str(entry.tier),
        "ltv": thread.ltv,
        "unread_count": thread.unread_count,
        "is_muted": thread.is_muted,
        "last_message_at": _iso(thread.last_message_at),
        "last_message": (
            {
                "text": last.text,
                "has_media": last.has_media,
                "from_creator": last.from_creator,
            }
            if last is not None
            else None
        ),
    }


def message_to_dict(message: Message) -> dict[str, Any]:
    return {
        "key": message.key,
        "server_id": message.server_id,
        "temp_id": message.temp_id,
        "timestamp": _iso(message.timestamp),
        "from_creator": message.from_creator,
        "text": message.text,
        "media_refs": list(message.media_refs),
        "price": message.price,
        "status": str(message.status),
        "error": str(message.error) if message.error else None,
        "error_message": message.error.user_message if message.error else None,
        "retryable": message.error.retryable if message.error else None,
    }


def _roster_payload(view: RosterView, entries: list[RosterEntry]) -> dict[str, Any]:
    return {
        "creator_id": view.creator_id,
        "loading": view.loading,
        "error": str(view.error) if view.error else None,
        "last_synced_at": _iso(view.last_synced_at),
        "entries": [roster_entry_to_dict(e) for e in entries],
    }


def _messages_payload(view: MessagesView) -> dict[str, Any]:
    return {
        "creator_id": view.key.creator_id if view.key else None,
        "fan_id": view.key.fan_id if view.key else None,
        "loading": view.loading,
        "loading_older": view.loading_older,
        "error": str(view.error) if view.error else None,
        "has_more": view.has_more,
        "last_synced_at": _iso(view.last_synced_at),
        "messages": [message_to_dict(m) for m in view.messages],
    }


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


async def _json_body(request: web.Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return None
    return body if isinstance(body, dict) else None


# ------------------------------------------------------------------
# Handlers
# ------------------------------------------------------------------


async def _handle_health(request: web.Request) -> web.Response:
    engine = request.app[engine_key]
    current = engine.current
    return web.json_response(
        {
            "status": "ok",
            "uptime_seconds": round(time.monotonic() - _start_time),
            "creator_id": current.creator_id,
            "fan_id": current.fan_id,
        }
    )


async def _handle_select_creator(request: web.Request) -> web.Response:
    engine = request.app[engine_key]
    body = await _json_body(request)
    if body is None or "creator_id" not in body:
        return _error("creator_id required", 400)
    creator_id = body["creator_id"]
    if creator_id is not None and (not isinstance(creator_id, str) or not creator_id):
        return _error("creator_id must be a non-empty string or null", 400)
    view = await engine.select_creator(creator_id)
    return web.json_response(_roster_payload(view, list(view.entries)))


async def _handle_select_fan(request: web.Request) -> web.Response:
    engine = request.app[engine_key]
    body = await _json_body(request)
    if body is None or "fan_id" not in body:
        return _error("fan_id required", 400)
    fan_id = body["fan_id"]
    if fan_id is not None and (not isinstance(fan_id, str) or not fan_id):
        return _error("fan_id must be a non-empty string or null", 400)
    try:
        view = await engine.select_fan(fan_id)
    except LookupError as exc:
        return _error(str(exc), 409)
    return web.json_response(_messages_payload(view))


async def _handle_roster(request: web.Request) -> web.Response:
    engine = request.app[engine_key]
    view = engine.roster_view()
    unread_only = request.query.get("unread", "").lower() in ("1", "true", "yes")
    entries = view.filter(unread_only=unread_only, search=request.query.get("search"))
    return web.json_response(_roster_payload(view, entries))


async def _handle_messages(request: web.Request) -> web.Response:
    engine = request.app[engine_key]
    return web.json_response(_messages_payload(engine.messages_view()))


async def _handle_send(request: web.Request) -> web.Response:
    engine = request.app[engine_key]
    body = await _json_body(request)
    if body is None:
        return _error("JSON object body required", 400)
    try:
        temp_id = engine.send_message(body)
    except TypeError as exc:
        return _error(str(exc), 400)
    except LookupError as exc:
        return _error(str(exc), 409)
    payload = _messages_payload(engine.messages_view())
    payload["temp_id"] = temp_id
    return web.json_response(payload, status=202)


async def _handle_retry(request: web.Request) -> web.Response:
    return await _failed_send_action(request, retry=True)


async def _handle_discard(request: web.Request) -> web.Response:
    return await _failed_send_action(request, retry=False)


async def _failed_send_action(request: web.Request, *, retry: bool) -> web.Response:
    engine = request.app[engine_key]
    body = await _json_body(request)
    temp_id = body.get("temp_id") if body else None
    if not isinstance(temp_id, str) or not temp_id:
        return _error("temp_id required", 400)
    try:
        if retry:
            view = engine.retry_failed_message(temp_id)
        else:
            view = engine.discard_failed_message(temp_id)
    except KeyError:
        return _error(f"unknown temp_id: {temp_id}", 404)
    except LookupError as exc:
        return _error(str(exc), 409)
    except ValueError as exc:
        return _error(str(exc), 409)
    return web.json_response(_messages_payload(view))


async def _handle_refresh_roster(request: web.Request) -> web.Response:
    engine = request.app[engine_key]
    view = await engine.refresh_roster()
    return web.json_response(_roster_payload(view, list(view.entries)))


async def _handle_refresh_messages(request: web.Request) -> web.Response:
    engine = request.app[engine_key]
    return web.json_response(_messages_payload(await engine.refresh_messages()))


async def _handle_older_messages(request: web.Request) -> web.Response:
    engine = request.app[engine_key]
    return web.json_response(_messages_payload(await engine.load_older_messages()))


async def _handle_events(request: web.Request) -> web.StreamResponse:
    """SSE stream of engine events."""
    engine = request.app[engine_key]

    response = web.StreamResponse(
        status=200,
        reason="OK",
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )
    queue: asyncio.Queue[Any] = asyncio.Queue()

    async def on_event(event: Any) -> None:
        await queue.put(event)

    unsubscribers = [engine.bus.subscribe(t, on_event) for t in _STREAMED_EVENTS]
    try:
        await response.prepare(request)
        while True:
            event = await queue.get()
            name = _STREAMED_EVENTS[type(event)]
            data = json.dumps(asdict(event))
            await response.write(f"event: {name}\ndata: {data}\n\n".encode())
    except ConnectionResetError:
        logger.debug("SSE client disconnected")
    finally:
        for unsubscribe in unsubscribers:
            unsubscribe()

    return response


# ------------------------------------------------------------------
# Server setup
# ------------------------------------------------------------------


def build_app(engine: InboxEngine) -> web.Application:
    app = web.Application()
    app[engine_key] = engine
    app.router.add_get("/health", _handle_health)
    app.router.add_post("/api/creator", _handle_select_creator)
    app.router.add_post("/api/fan", _handle_select_fan)
    app.router.add_get("/api/roster", _handle_roster)
    app.router.add_get("/api/messages", _handle_messages)
    app.router.add_post("/api/send", _handle_send)
    app.router.add_post("/api/retry", _handle_retry)
    app.router.add_post("/api/discard", _handle_discard)
    app.router.add_post("/api/refresh/roster", _handle_refresh_roster)
    app.router.add_post("/api/refresh/messages", _handle_refresh_messages)
    app.router.add_post("/api/messages/older", _handle_older_messages)
    app.router.add_get("/api/events", _handle_events)
    return app


async def start_http_server(engine: InboxEngine, host: str, port: int) -> web.AppRunner:
    """Create, start, and return the HTTP server runner."""
    runner = web.AppRunner(build_app(engine))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("HTTP server listening", host=host, port=port)
    return runner
