"""
Bounded channels between pipeline stages.

:class:`StageQueue` is a closable, bounded FIFO: producers block while it is
full, consumers block while it is empty, and closing it lets consumers drain
what is left before they see :class:`~sprinting_boxes.errors.QueueClosed`.

:class:`FrameFeed` is the Reader's input: it hands out frame indices in
order, but only while the number of frames in flight (admitted but not yet
committed by the Finalizer) stays below a window. That window is what bounds
the Finalizer's reorder buffer.
"""

from __future__ import annotations

import queue
import threading
import time
from collections import deque
from typing import Deque, Generic, Optional, TypeVar

from ..errors import Backpressure, QueueClosed

T = TypeVar("T")


class StageQueue(Generic[T]):
    """
    Bounded, closable FIFO shared by two adjacent stages.

    Attributes:
        name: Label used in logs and errors.
        capacity: Maximum number of queued items.
    """

    def __init__(self, name: str, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.name = name
        self.capacity = capacity
        self._items: Deque[T] = deque()
        self._closed = False
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._not_full = threading.Condition(self._lock)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def push(self, item: T, timeout: Optional[float] = None) -> None:
        """
        Enqueue ``item``, blocking while the queue is full.

        Args:
            item: Item to enqueue; ownership passes to the consumer.
            timeout: Seconds to wait for room. ``None`` waits forever, ``0``
                fails immediately when full.

        Raises:
            Backpressure: When still full after ``timeout``.
            QueueClosed: When the queue is (or becomes) closed.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._not_full:
            while True:
                if self._closed:
                    raise QueueClosed(f"queue '{self.name}' is closed")
                if len(self._items) < self.capacity:
                    break
                if deadline is None:
                    self._not_full.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise Backpressure(f"queue '{self.name}' is full ({self.capacity})")
                self._not_full.wait(remaining)
            self._items.append(item)
            self._not_empty.notify()

    def pop(self, timeout: Optional[float] = None) -> T:
        """
        Dequeue the oldest item, blocking while the queue is empty.

        Raises:
            QueueClosed: When the queue is closed and fully drained.
            queue.Empty: When nothing arrived within ``timeout``.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._not_empty:
            while not self._items:
                if self._closed:
                    raise QueueClosed(f"queue '{self.name}' is closed")
                if deadline is None:
                    self._not_empty.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise queue.Empty
                self._not_empty.wait(remaining)
            item = self._items.popleft()
            self._not_full.notify()
            return item

    def close(self, discard: bool = False) -> None:
        """
        Stop accepting items. Consumers drain the rest unless ``discard`` is set.
        """
        with self._lock:
            self._closed = True
            if discard:
                self._items.clear()
            self._not_empty.notify_all()
            self._not_full.notify_all()


class FrameFeed:
    """
    Ordered source of frame indices gated by an in-flight window.

    Attributes:
        start: First index to hand out (resume point).
        total: One past the last index.
        max_in_flight: Maximum ``next_index - committed`` distance.
    """

    def __init__(self, start: int, total: int, max_in_flight: int) -> None:
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be >= 1")
        self.start = start
        self.total = total
        self.max_in_flight = max_in_flight
        self._next = start
        self._committed = start
        self._stopped = False
        self._cond = threading.Condition()

    @property
    def next_index(self) -> int:
        with self._cond:
            return self._next

    @property
    def committed(self) -> int:
        with self._cond:
            return self._committed

    def pop(self, timeout: Optional[float] = None) -> int:
        """
        Next index to read.

        Raises:
            QueueClosed: When every index was handed out or the feed was stopped.
            queue.Empty: When the window stayed full for ``timeout``.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._stopped or self._next >= self.total:
                    raise QueueClosed("frame feed exhausted")
                if self._next - self._committed < self.max_in_flight:
                    index = self._next
                    self._next += 1
                    return index
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise queue.Empty
                self._cond.wait(remaining)

    def commit(self, next_expected: int) -> None:
        """
        Record that every index below ``next_expected`` has been persisted.
        """
        with self._cond:
            if next_expected > self._committed:
                self._committed = next_expected
                self._cond.notify_all()

    def stop(self) -> None:
        """
        Stop admitting new frames; already admitted frames keep flowing.
        """
        with self._cond:
            self._stopped = True
            self._cond.notify_all()

    def close(self, discard: bool = False) -> None:
        self.stop()
