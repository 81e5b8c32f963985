"""
CONTRACT: inline
ROLE: In-process pub/sub with bounded queues.

INPUTS:
  - Topic: n/a  Type: n/a
OUTPUTS:
  - Topic: n/a  Type: n/a

CONFIG KEYS:
  - bus.max_queue_depth: default per-subscriber queue depth

PERF / TIMING:
  - preserve per-topic ordering for every subscriber

FAILURE MODES:
  - queue full -> drop oldest -> on_drop(topic, depth)

LOG EVENTS:
  - module=core.bus, event=queue_full, payload keys=topic, depth

TESTS:
  - tests/test_session.py subscribes to attendance.status and attendance.confirmations

CONTRACT DETAILS:
# Bus contract

- Topics used by the session: attendance.status, attendance.confirmations,
  vision.presence, log.events, ui.telemetry.
- A slow subscriber loses its oldest messages, never blocks the publisher.
- Confirmation subscribers should ask for a deeper queue than the default.
"""

from __future__ import annotations

import queue
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional


DropHandler = Callable[[str, int], None]


class Bus:
    """Simple in-process pub/sub bus with bounded queues."""

    def __init__(self, max_queue_depth: int = 8, on_drop: Optional[DropHandler] = None) -> None:
        self._max_queue_depth = max(1, int(max_queue_depth))
        self._on_drop = on_drop
        self._lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._subscribers: Dict[str, List[queue.Queue[Any]]] = defaultdict(list)
        self._drop_counts: Dict[str, int] = defaultdict(int)
        self._publish_counts: Dict[str, int] = defaultdict(int)

    def set_drop_handler(self, on_drop: Optional[DropHandler]) -> None:
        self._on_drop = on_drop

    def get_drop_counts(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self._drop_counts)

    def get_publish_counts(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self._publish_counts)

    def subscribe(self, topic: str, max_queue_depth: Optional[int] = None) -> queue.Queue[Any]:
        """Subscribe to a topic and return a queue of messages."""
        depth = self._max_queue_depth if max_queue_depth is None else max(1, int(max_queue_depth))
        q: queue.Queue[Any] = queue.Queue(maxsize=depth)
        with self._lock:
            self._subscribers[topic].append(q)
        return q

    def unsubscribe(self, topic: str, q: queue.Queue[Any]) -> None:
        with self._lock:
            subscribers = self._subscribers.get(topic, [])
            if q in subscribers:
                subscribers.remove(q)

    def publish(self, topic: str, msg: Any) -> None:
        """Publish a message to all subscribers without blocking."""
        with self._lock:
            subscribers = list(self._subscribers.get(topic, []))
        with self._stats_lock:
            self._publish_counts[topic] += 1
        for q in subscribers:
            if self._offer(q, msg):
                with self._stats_lock:
                    self._drop_counts[topic] += 1
                if self._on_drop:
                    self._on_drop(topic, q.maxsize)

    @staticmethod
    def _offer(q: queue.Queue[Any], msg: Any) -> bool:
        """Enqueue, evicting the oldest item on overflow.

        Returns True when an item was evicted.
        """
        try:
            q.put_nowait(msg)
            return False
        except queue.Full:
            try:
                q.get_nowait()
            except queue.Empty:
                pass
            try:
                q.put_nowait(msg)
            except queue.Full:
                pass
            return True


def drain(q: queue.Queue[Any]) -> List[Any]:
    """Return every message currently queued, oldest first."""
    items: List[Any] = []
    try:
        while True:
            items.append(q.get_nowait())
    except queue.Empty:
        return items


def drain_latest(q: queue.Queue[Any]) -> Optional[Any]:
    item = None
    try:
        while True:
            item = q.get_nowait()
    except queue.Empty:
        return item
