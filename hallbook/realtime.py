"""Live notification delivery over Server-Sent Events.

Each connected client holds a :class:`Subscription` (an asyncio queue bound
to the event loop that created it). Notifications are created on worker
threads, so :meth:`NotificationHub.publish` hands items to the loop with
``call_soon_threadsafe``.

The stream sends, in order: a ``snapshot`` (unread count and recent items),
any notifications newer than the client's ``Last-Event-ID``, then live
``notification`` events. Notification ids only grow, so the stream keeps the
highest id it has sent and drops anything at or below it. A hub only reaches
streams in its own process; notifications stored by another service are
picked up by polling the database every ``poll_seconds``. A ``heartbeat``
goes out when the stream has been idle.
"""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


class Subscription:
    def __init__(self, user_id: int, loop: asyncio.AbstractEventLoop) -> None:
        self.user_id = user_id
        self.loop = loop
        self.queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue()
        self.closed = False

    def offer(self, item: Dict[str, Any]) -> None:
        self.loop.call_soon_threadsafe(self.queue.put_nowait, item)


class NotificationHub:
    def __init__(self) -> None:
        self._subscriptions: Dict[int, Set[Subscription]] = {}
        self._lock = Lock()

    def subscribe(self, user_id: int) -> Subscription:
        """Must be called from inside the event loop that will read the queue."""

        subscription = Subscription(user_id, asyncio.get_running_loop())
        with self._lock:
            self._subscriptions.setdefault(user_id, set()).add(subscription)
        logger.info("[SSE] user %s subscribed (%s open)", user_id, self.subscriber_count(user_id))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.closed = True
        with self._lock:
            live = self._subscriptions.get(subscription.user_id)
            if live is not None:
                live.discard(subscription)
                if not live:
                    del self._subscriptions[subscription.user_id]
        logger.info("[SSE] user %s unsubscribed", subscription.user_id)

    def subscriber_count(self, user_id: int) -> int:
        with self._lock:
            return len(self._subscriptions.get(user_id, ()))

    def publish(self, user_id: int, item: Dict[str, Any]) -> int:
        """Queue ``item`` for every live stream of ``user_id``. Thread-safe."""

        with self._lock:
            targets = list(self._subscriptions.get(user_id, ()))
        delivered = 0
        for subscription in targets:
            try:
                subscription.offer(item)
                delivered += 1
            except RuntimeError:
                # the owning loop has shut down
                self.unsubscribe(subscription)
        return delivered


notification_hub = NotificationHub()


def _event(kind: str, payload: Dict[str, Any], event_id: Optional[int] = None) -> Dict[str, Any]:
    message: Dict[str, Any] = {"event": kind, "data": json.dumps(payload, default=str)}
    if event_id is not None:
        message["id"] = str(event_id)
    return message


async def notification_stream(
    user_id: int,
    load_snapshot: Callable[[], Dict[str, Any]],
    load_missed: Callable[[int], List[Dict[str, Any]]],
    last_event_id: Optional[int] = None,
    hub: NotificationHub = notification_hub,
    heartbeat_seconds: float = 15.0,
    poll_seconds: Optional[float] = None,
) -> AsyncGenerator[Dict[str, Any], None]:
    """Yield SSE event dicts for one client.

    ``load_snapshot`` and ``load_missed`` do blocking database work and run
    in a worker thread. The subscription is opened before they run, so a
    notification created in between is queued rather than lost. With
    ``poll_seconds`` set, ``load_missed`` is also called on that interval to
    pick up notifications that never pass through ``hub``.
    """

    subscription = hub.subscribe(user_id)
    try:
        snapshot = await asyncio.to_thread(load_snapshot)
        in_snapshot = {item["id"] for item in snapshot.get("recent", [])}
        high_water = max(max(in_snapshot, default=0), last_event_id or 0)
        yield _event("snapshot", snapshot)

        if last_event_id is not None:
            for item in await asyncio.to_thread(load_missed, last_event_id):
                if item["id"] in in_snapshot:
                    continue
                high_water = max(high_water, item["id"])
                yield _event("notification", item, item["id"])
        in_snapshot.clear()

        wait = heartbeat_seconds if poll_seconds is None else min(poll_seconds, heartbeat_seconds)
        idle = 0.0
        while True:
            try:
                item = await asyncio.wait_for(subscription.queue.get(), timeout=wait)
            except asyncio.TimeoutError:
                idle += wait
                if poll_seconds is not None:
                    fresh = [i for i in await asyncio.to_thread(load_missed, high_water) if i["id"] > high_water]
                    for found in fresh:
                        high_water = found["id"]
                        yield _event("notification", found, found["id"])
                    if fresh:
                        idle = 0.0
                        continue
                if idle >= heartbeat_seconds:
                    idle = 0.0
                    yield _event("heartbeat", {"timestamp": datetime.now(timezone.utc).isoformat()})
                continue
            if item["id"] <= high_water:
                continue
            high_water = item["id"]
            idle = 0.0
            yield _event("notification", item, item["id"])
    finally:
        hub.unsubscribe(subscription)
