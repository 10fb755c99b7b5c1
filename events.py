"""
Event transport for near-real-time updates.

Services publish an Event after every write; clients subscribe to a topic
and receive a stream of events. Two transports implement the same
interface:

- PollingTransport re-reads the store for the topic at a fixed interval and
  emits what changed since the previous read. Publishing is a no-op because
  the store already holds everything a subscriber needs.
- PushTransport is an in-process broker: publish hands the event straight to
  every subscriber queue of that topic.

Topics: ``chat:<chatId>``, ``user:<userId>:chats``,
``user:<userId>:notifications``.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime
from typing import AsyncIterator, Callable, Dict, List, Optional, Protocol, Tuple

from pydantic import BaseModel, Field

from config import CHAT_LIST_POLL_INTERVAL, CHAT_POLL_INTERVAL, NOTIFICATION_POLL_INTERVAL
from store import Store, utcnow

logger = logging.getLogger(__name__)


class Event(BaseModel):
    topic: str
    type: str
    payload: dict
    at: datetime = Field(default_factory=utcnow)


def chat_topic(chat_id: str) -> str:
    return f"chat:{chat_id}"


def user_chats_topic(user_id: str) -> str:
    return f"user:{user_id}:chats"


def user_notifications_topic(user_id: str) -> str:
    return f"user:{user_id}:notifications"


def parse_topic(topic: str) -> Tuple[str, str]:
    """Split a topic into (kind, entity id); kind is chat, chats or notifications."""
    parts = topic.split(":")
    if len(parts) == 2 and parts[0] == "chat" and parts[1]:
        return "chat", parts[1]
    if len(parts) == 3 and parts[0] == "user" and parts[1] and parts[2] in ("chats", "notifications"):
        return parts[2], parts[1]
    raise ValueError(f"Unknown topic {topic!r}")


class Transport(Protocol):
    def publish(self, event: Event) -> None:
        ...

    def subscribe(self, topic: str) -> AsyncIterator[Event]:
        ...


class PollingTransport:
    def __init__(self, store: Store, intervals: Optional[Dict[str, float]] = None):
        self.store = store
        self.intervals = {
            "chat": CHAT_POLL_INTERVAL,
            "chats": CHAT_LIST_POLL_INTERVAL,
            "notifications": NOTIFICATION_POLL_INTERVAL,
        }
        self.intervals.update(intervals or {})
        self.views: Dict[str, Callable[[dict, str], dict]] = {}

    def register_view(self, kind: str, view: Callable[[dict, str], dict]) -> None:
        """Shape payloads of one topic kind, e.g. the per-user chat view."""
        self.views[kind] = view

    def publish(self, event: Event) -> None:
        pass

    def _source(self, kind: str, entity_id: str) -> Tuple[str, Callable[[], List[dict]]]:
        if kind == "chat":
            return "message", lambda: self.store.find("message", {"chatId": entity_id}, sort=[("timestamp", 1)])
        if kind == "chats":
            return "chat", lambda: self.store.find("chat", {"participants": entity_id}, sort=[("updatedAt", 1)])
        return "notification", lambda: self.store.find("notification", {"userId": entity_id}, sort=[("createdAt", 1)])

    async def subscribe(self, topic: str) -> AsyncIterator[Event]:
        kind, entity_id = parse_topic(topic)
        event_type, fetch = self._source(kind, entity_id)
        interval = self.intervals[kind]
        view = self.views.get(kind, lambda doc, _: doc)
        seen: Optional[Dict[str, object]] = None
        while True:
            docs = await asyncio.to_thread(fetch)
            current = {d["id"]: d.get("updatedAt") for d in docs}
            if seen is not None:
                for doc in docs:
                    if doc["id"] not in seen:
                        yield Event(topic=topic, type=f"{event_type}.created", payload=await asyncio.to_thread(view, doc, entity_id))
                    elif seen[doc["id"]] != current[doc["id"]]:
                        yield Event(topic=topic, type=f"{event_type}.updated", payload=await asyncio.to_thread(view, doc, entity_id))
                for gone in seen.keys() - current.keys():
                    yield Event(topic=topic, type=f"{event_type}.deleted", payload={"id": gone})
            seen = current
            await asyncio.sleep(interval)


class PushSubscription:
    """Queue-backed stream for one subscriber; registered as soon as it exists."""

    def __init__(self, transport: "PushTransport", topic: str, loop: asyncio.AbstractEventLoop):
        self.transport = transport
        self.topic = topic
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        if self.closed:
            raise StopAsyncIteration
        return await self.queue.get()

    async def aclose(self) -> None:
        self.closed = True
        self.transport._remove(self)


class PushTransport:
    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[PushSubscription]] = {}

    def publish(self, event: Event) -> None:
        with self._lock:
            targets = list(self._subscribers.get(event.topic, []))
        for sub in targets:
            try:
                sub.loop.call_soon_threadsafe(sub.queue.put_nowait, event)
            except RuntimeError:
                # subscriber's loop already closed
                self._remove(sub)

    def _remove(self, sub: PushSubscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.topic, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subscribers.pop(sub.topic, None)

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, []))

    def subscribe(self, topic: str) -> PushSubscription:
        parse_topic(topic)
        sub = PushSubscription(self, topic, asyncio.get_running_loop())
        with self._lock:
            self._subscribers.setdefault(topic, []).append(sub)
        return sub


def create_transport(kind: str, store: Store) -> Transport:
    if kind == "push":
        return PushTransport()
    if kind != "polling":
        logger.warning(f"Unknown EVENT_TRANSPORT {kind!r}, falling back to polling")
    return PollingTransport(store)
