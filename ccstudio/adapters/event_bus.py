"""Event bridge between session engine callbacks and UI subscribers.

Sessions publish synchronously from inside the decoder loop, so
``publish`` never awaits and never blocks. Each subscriber owns a
bounded buffer; a subscriber that falls behind loses its backlog and
receives a single ``resync`` event telling it to refetch the snapshot.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from typing import Any

from ccstudio.adapters.events import (
    MessageUpdated,
    Resync,
    SessionEvent,
    StateChanged,
    dict_to_event,
)

logger = logging.getLogger(__name__)


def _coalescable(first: SessionEvent, nxt: SessionEvent) -> bool:
    return (
        isinstance(first, MessageUpdated)
        and isinstance(nxt, MessageUpdated)
        and first.delta is not None
        and nxt.delta is not None
        and first.session_id == nxt.session_id
        and first.message_id == nxt.message_id
        and first.block_index == nxt.block_index
    )


class Subscription:
    """One consumer's bounded view of the event stream."""

    def __init__(self, bridge: EventBridge, session_id: str | None, maxsize: int) -> None:
        self._bridge = bridge
        self.session_id = session_id
        self._maxsize = maxsize
        self._buffer: deque[SessionEvent] = deque()
        self._ready = asyncio.Event()
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return len(self._buffer)

    def offer(self, event: SessionEvent) -> None:
        if self._closed:
            return
        if self.session_id is not None and event.session_id != self.session_id:
            return
        if len(self._buffer) >= self._maxsize:
            dropped = len(self._buffer) + 1
            self._buffer.clear()
            self.dropped += dropped
            logger.warning(
                "Event subscriber overflow (session=%s), dropped %d event(s); requesting resync",
                self.session_id or "*", dropped,
            )
            event = Resync(
                session_id=self.session_id or "",
                seq=event.seq,
                dropped=dropped,
            )
        self._buffer.append(event)
        self._ready.set()

    def _take(self, coalesce: bool) -> SessionEvent:
        event = self._buffer.popleft()
        if not coalesce:
            return event
        while self._buffer and _coalescable(event, self._buffer[0]):
            nxt = self._buffer.popleft()
            event = MessageUpdated(
                session_id=event.session_id,
                seq=nxt.seq,
                message_id=event.message_id,
                block_index=event.block_index,
                delta=(event.delta or "") + (nxt.delta or ""),
                coalesced=event.coalesced + 1,
            )
        return event

    async def get(self, coalesce: bool = True) -> SessionEvent | None:
        """Next event, or None once the subscription is closed and drained."""
        while not self._buffer:
            if self._closed:
                return None
            self._ready.clear()
            await self._ready.wait()
        return self._take(coalesce)

    async def consume(self, coalesce: bool = True) -> AsyncIterator[SessionEvent]:
        """Yield events as they arrive. Stops on close()."""
        while True:
            event = await self.get(coalesce)
            if event is None:
                return
            yield event

    def close(self) -> None:
        self._closed = True
        self._ready.set()
        self._bridge._remove(self)


class EventBridge:
    """Fans session events out to subscribers, assigning sequence numbers."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._maxsize = maxsize
        self._subscriptions: list[Subscription] = []
        self._seq: dict[str, int] = {}
        self._closed = False

    def publish(self, data: dict[str, Any]) -> SessionEvent | None:
        """Callback for SessionRegistry(event_callback=...). Never blocks."""
        if self._closed:
            return None
        event = dict_to_event(data)
        seq = self._seq.get(event.session_id, 0) + 1
        self._seq[event.session_id] = seq
        event.seq = seq
        for subscription in list(self._subscriptions):
            subscription.offer(event)
        if isinstance(event, StateChanged) and event.new_state == "disposed":
            # Disposed sessions publish nothing further.
            self._seq.pop(event.session_id, None)
        return event

    def make_callback(self):
        """Return the synchronous callback for the session registry."""
        return self.publish

    def subscribe(self, session_id: str | None = None) -> Subscription:
        subscription = Subscription(self, session_id, self._maxsize)
        if self._closed:
            subscription._closed = True
            return subscription
        self._subscriptions.append(subscription)
        logger.debug(
            "Event subscriber added (session=%s), active=%d",
            session_id or "*", len(self._subscriptions),
        )
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def last_seq(self, session_id: str) -> int:
        return self._seq.get(session_id, 0)

    def close(self) -> None:
        """Close every subscription and reject further events."""
        self._closed = True
        for subscription in list(self._subscriptions):
            subscription.close()
