"""
Bounded FIFO of outbound messages shared by callers and the dispatcher.

put() blocks while the queue is full; it never drops and never grows past
maxsize. requeue() hands a popped message back to the head so a cancelled or
disconnected dispatcher does not lose it.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Optional

from pc2mqtt.message import Message

DEFAULT_MAXSIZE = 500


class QueueFullError(RuntimeError):
    """Raised by non-blocking or timed put() when the queue stays full."""


class DeliveryQueue:
    def __init__(self, maxsize: int = DEFAULT_MAXSIZE) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be > 0")
        self.maxsize = maxsize
        self._items: deque[Message] = deque()
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._not_full = threading.Condition(self._lock)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def full(self) -> bool:
        with self._lock:
            return len(self._items) >= self.maxsize

    def put(self, message: Message, *, block: bool = True, timeout: Optional[float] = None) -> None:
        with self._not_full:
            if len(self._items) >= self.maxsize:
                if not block:
                    raise QueueFullError(f"delivery queue full ({self.maxsize})")
                if timeout is None:
                    while len(self._items) >= self.maxsize:
                        self._not_full.wait()
                else:
                    deadline = time.monotonic() + timeout
                    while len(self._items) >= self.maxsize:
                        remaining = deadline - time.monotonic()
                        if remaining <= 0:
                            raise QueueFullError(f"delivery queue full ({self.maxsize})")
                        self._not_full.wait(remaining)
            self._items.append(message)
            self._not_empty.notify()

    def put_nowait(self, message: Message) -> None:
        self.put(message, block=False)

    def requeue(self, message: Message) -> None:
        """Return a popped message to the head. May exceed maxsize by that one message."""
        with self._lock:
            self._items.appendleft(message)
            self._not_empty.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[Message]:
        """Pop the head, waiting up to timeout. Returns None if nothing arrived."""
        with self._not_empty:
            if timeout is None:
                while not self._items:
                    self._not_empty.wait()
            else:
                deadline = time.monotonic() + timeout
                while not self._items:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    self._not_empty.wait(remaining)
            message = self._items.popleft()
            if len(self._items) < self.maxsize:
                self._not_full.notify()
            return message

    def snapshot(self) -> list[Message]:
        with self._lock:
            return list(self._items)
