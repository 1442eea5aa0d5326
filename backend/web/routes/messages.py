"""
Group chat routes: post, history and the live event stream.

Permissions:
    Every operation requires a current membership of the group. Admins get
    no implicit chat access; they join like anyone else.

Stream format (text/event-stream):
    id: <seq>
    event: message
    data: {"id": ..., "group_id": ..., "sender_id": ..., "content": ..., "created_at": ..., "seq": ...}

    A reconnecting client sends `Last-Event-ID`; messages after that sequence
    number are replayed before live delivery starts. Idle streams receive a
    comment line as heartbeat.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from identity_access.errors import ValidationError
from identity_access.gate import is_authenticated, is_member
from messaging.bus import Message, Subscription
from wiring import get_services

from .security import _csrf_guard, _json_private, current_caller

messages_router = APIRouter(tags=["Messages"])
logger = logging.getLogger("campus.web.messages")

HEARTBEAT_SECONDS = 15.0


class MessageCreate(BaseModel):
    content: Optional[str] = None


def _serialize_message(message: Message) -> dict:
    return {
        "id": message.id,
        "group_id": message.group_id,
        "sender_id": message.sender_id,
        "content": message.content,
        "created_at": message.created_at,
        "seq": message.seq,
    }


def _parse_cursor(raw: Optional[str], *, code: str) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(code)


def _format_event(message: Message) -> str:
    data = json.dumps(_serialize_message(message), separators=(",", ":"))
    return f"id: {message.seq}\nevent: message\ndata: {data}\n\n"


@messages_router.post("/api/groups/{group_id}/messages")
async def post_message(request: Request, group_id: str, payload: MessageCreate):
    """Append a message to the group's log; only members may post."""
    svc = get_services()
    ident = svc.gate.require(current_caller(request), is_authenticated)
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    message = svc.bus.post(group_id, ident.user_id, payload.content or "")
    return _json_private({"message": _serialize_message(message)}, status_code=201)


@messages_router.get("/api/groups/{group_id}/messages")
async def list_messages(request: Request, group_id: str, since: Optional[str] = None, limit: Optional[str] = None):
    """Return messages in creation order; `since` is the last seen sequence number."""
    svc = get_services()
    ident = svc.gate.require(current_caller(request), is_authenticated)
    cursor = _parse_cursor(since, code="invalid_since")
    page = _parse_cursor(limit, code="invalid_limit")
    messages = svc.bus.history(group_id, ident.user_id, since=cursor, limit=page)
    return _json_private({"messages": [_serialize_message(m) for m in messages]})


async def _event_stream(request: Request, sub: Subscription, backlog: list[Message]):
    last_seq = 0
    try:
        for message in backlog:
            last_seq = message.seq
            yield _format_event(message)
        while True:
            if await request.is_disconnected():
                break
            try:
                message = await sub.next_message(timeout=HEARTBEAT_SECONDS)
            except StopAsyncIteration:
                break
            if message is None:
                yield ": keep-alive\n\n"
                continue
            # Backlog and live delivery can overlap right after subscribing.
            if message.seq <= last_seq:
                continue
            last_seq = message.seq
            yield _format_event(message)
    finally:
        sub.cancel()


@messages_router.get("/api/groups/{group_id}/messages/stream")
async def stream_messages(request: Request, group_id: str):
    """Open a live stream of new messages (Server-Sent Events)."""
    svc = get_services()
    ident = svc.gate.require(current_caller(request), is_authenticated, is_member(group_id))
    last_event_id = _parse_cursor(request.headers.get("last-event-id"), code="invalid_last_event_id")
    # Subscribe before reading the backlog so nothing committed in between is lost.
    sub = svc.bus.subscribe(group_id, ident.user_id)
    backlog: list[Message] = []
    if last_event_id is not None:
        try:
            backlog = svc.bus.history(group_id, ident.user_id, since=last_event_id)
        except Exception:
            sub.cancel()
            raise
    headers = {"Cache-Control": "private, no-store", "Vary": "Origin", "X-Accel-Buffering": "no"}
    return StreamingResponse(_event_stream(request, sub, backlog), media_type="text/event-stream", headers=headers)
