"""
Message bus: append-only group message logs with realtime fan-out to members.

Why:
    Posting must never produce a message from a non-member. The membership
    check and the insert are one guarded repository operation
    (`append_if_member`), never a check followed by a separate write, so a
    member leaving concurrently cannot slip a message through.

Ordering:
    Within a group, `post` appends and publishes under a lock chosen from a
    fixed pool by group id, so subscribers of this process receive messages
    in commit order. The pool is fixed so unknown group ids cost nothing.
    Ordering between processes comes from the repository, which serialises
    appends per group in the database. Nothing is promised across groups.

Subscriptions:
    Membership is checked once, when subscribing. A member who leaves may
    still receive messages already in flight; that bounded staleness is
    accepted. `Subscription.cancel()` stops delivery for that subscriber only.
    Delivery crosses threads via `loop.call_soon_threadsafe`, so `post` may be
    called from worker threads while subscribers live on the event loop.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from threading import Lock
from typing import Dict, List, Optional, Protocol, Set

from identity_access.errors import ForbiddenError, ValidationError
from ops import telemetry

logger = logging.getLogger("campus.messaging")

MAX_CONTENT_LENGTH = 4000
MAX_HISTORY_LIMIT = 500
DEFAULT_QUEUE_SIZE = 1000
LOCK_STRIPES = 64

_CLOSED = object()


@dataclass(frozen=True)
class Message:
    id: str
    group_id: str
    sender_id: str
    content: str
    created_at: str
    seq: int


class MessageRepoProtocol(Protocol):
    def append_if_member(self, *, group_id: str, sender_id: str, content: str) -> Optional[Message]:
        """Insert the message only if the sender is a member; None otherwise (atomic)."""
        ...

    def list_if_member(
        self, *, group_id: str, caller_id: str, since: Optional[int], limit: Optional[int]
    ) -> Optional[List[Message]]:
        """Return messages ordered by seq if the caller is a member; None otherwise."""
        ...


class MembershipReader(Protocol):
    def is_member(self, group_id: str, user_id: str) -> bool:
        ...


def _tail(value: str | None) -> str:
    return (value or "")[-6:]


class Subscription:
    """Live, cancellable stream of a group's new messages.

    Use as an async iterator (`async for msg in sub`) or call `next_message`
    with a timeout to interleave heartbeats.
    """

    def __init__(self, bus: "MessageBus", group_id: str, user_id: str,
                 loop: asyncio.AbstractEventLoop, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        self.group_id = group_id
        self.user_id = user_id
        self._bus = bus
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, message: Message) -> None:
        # Called by the bus from any thread.
        if self._closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._enqueue, message)
        except RuntimeError:
            # Event loop already closed; nobody is listening any more.
            self.cancel()

    def _enqueue(self, item: object) -> None:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning("subscriber too slow; dropping stream gid_tail=%s", _tail(self.group_id))
            self.cancel()

    def cancel(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._bus._unsubscribe(self)
        try:
            self._loop.call_soon_threadsafe(self._wake)
        except RuntimeError:
            pass

    def _wake(self) -> None:
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # A full queue still wakes the reader; it sees `closed` next.
            pass

    async def next_message(self, timeout: float | None = None) -> Optional[Message]:
        """Return the next message, or None on timeout.

        Raises StopAsyncIteration once the subscription is cancelled.
        """
        if self._closed:
            raise StopAsyncIteration
        try:
            if timeout is None:
                item = await self._queue.get()
            else:
                item = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED or self._closed:
            raise StopAsyncIteration
        return item

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Message:
        return await self.next_message()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.cancel()


class MessageBus:
    def __init__(self, repo: MessageRepoProtocol, memberships: MembershipReader) -> None:
        self._repo = repo
        self._memberships = memberships
        self._subscribers: Dict[str, Set[Subscription]] = {}
        self._locks = tuple(Lock() for _ in range(LOCK_STRIPES))
        self._registry_lock = Lock()

    def _lock_for(self, group_id: str) -> Lock:
        return self._locks[hash(group_id) % len(self._locks)]

    def post(self, group_id: str, sender_id: str, content: str) -> Message:
        """Append a message as `sender_id` and fan it out to live subscribers.

        Raises:
            ValidationError("invalid_content"): empty or too long content.
            ForbiddenError("not_a_member"): sender holds no membership at write time.
        """
        content = (content or "").strip() if isinstance(content, str) else ""
        if not content or len(content) > MAX_CONTENT_LENGTH:
            raise ValidationError("invalid_content")
        with self._lock_for(group_id):
            message = self._repo.append_if_member(group_id=group_id, sender_id=sender_id, content=content)
            if message is None:
                raise ForbiddenError("not_a_member")
            with self._registry_lock:
                targets = list(self._subscribers.get(group_id, ()))
            for sub in targets:
                sub._deliver(message)
        telemetry.increment_counter("messages_posted_total")
        logger.debug("message posted gid_tail=%s seq=%s fanout=%d", _tail(group_id), message.seq, len(targets))
        return message

    def history(
        self,
        group_id: str,
        caller_id: str,
        *,
        since: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Message]:
        """Return the group's messages in creation order, optionally after cursor `since`."""
        # bool is an int subclass; True must not pass as cursor 1.
        if since is not None and (isinstance(since, bool) or not isinstance(since, int) or since < 0):
            raise ValidationError("invalid_since")
        if limit is not None:
            if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
                raise ValidationError("invalid_limit")
            limit = min(limit, MAX_HISTORY_LIMIT)
        messages = self._repo.list_if_member(group_id=group_id, caller_id=caller_id, since=since, limit=limit)
        if messages is None:
            raise ForbiddenError("not_a_member")
        return messages

    def subscribe(
        self,
        group_id: str,
        caller_id: str,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        maxsize: int = DEFAULT_QUEUE_SIZE,
    ) -> Subscription:
        """Open a live stream for a current member. Must run on (or be given) an event loop."""
        loop = loop or asyncio.get_running_loop()
        # Registering under the group lock orders the subscription against posts.
        with self._lock_for(group_id):
            if not self._memberships.is_member(group_id, caller_id):
                raise ForbiddenError("not_a_member")
            sub = Subscription(self, group_id, caller_id, loop, maxsize=maxsize)
            with self._registry_lock:
                self._subscribers.setdefault(group_id, set()).add(sub)
        telemetry.adjust_gauge("live_subscriptions", 1)
        logger.info("stream opened gid_tail=%s user_tail=%s", _tail(group_id), _tail(caller_id))
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._registry_lock:
            bucket = self._subscribers.get(sub.group_id)
            if bucket is None or sub not in bucket:
                return
            bucket.discard(sub)
            if not bucket:
                self._subscribers.pop(sub.group_id, None)
        telemetry.adjust_gauge("live_subscriptions", -1)

    def subscriber_count(self, group_id: str) -> int:
        with self._registry_lock:
            return len(self._subscribers.get(group_id, ()))

    def close_group(self, group_id: str) -> None:
        """Cancel every live subscription of a group (used when it is deleted)."""
        with self._registry_lock:
            targets = list(self._subscribers.get(group_id, ()))
        for sub in targets:
            sub.cancel()


__all__ = [
    "MAX_CONTENT_LENGTH",
    "Message",
    "MessageBus",
    "MessageRepoProtocol",
    "Subscription",
]
