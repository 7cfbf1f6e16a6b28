"""Per-connection outbound frame queue."""

from __future__ import annotations

import threading
from collections import deque

from chanlog.config import OverflowPolicy

Frame = str | bytes


class OutboundQueue:
    """Two-lane FIFO shared by producer threads and one sender task.

    Control frames (advertisements, status, responses) go in an unbounded
    lane that is always drained first and never dropped.  Data frames go
    in a lane bounded by *capacity*; when it is full the overflow policy
    decides:

    * ``drop_newest``: the incoming frame is discarded.
    * ``drop_oldest``: the oldest queued data frame is discarded.
    * ``disconnect``: the incoming frame is discarded and the queue is
      marked overflowed; the owner closes the connection.

    Every discarded data frame increments :attr:`dropped`.
    """

    def __init__(self, capacity: int, policy: OverflowPolicy = OverflowPolicy.DROP_NEWEST) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._policy = policy
        self._control: deque[Frame] = deque()
        self._data: deque[Frame] = deque()
        self._lock = threading.Lock()
        self._dropped = 0
        self._overflowed = False
        self._closed = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def policy(self) -> OverflowPolicy:
        return self._policy

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def overflowed(self) -> bool:
        return self._overflowed

    @property
    def data_len(self) -> int:
        return len(self._data)

    def __len__(self) -> int:
        with self._lock:
            return len(self._control) + len(self._data)

    def put_control(self, frame: Frame) -> bool:
        with self._lock:
            if self._closed:
                return False
            self._control.append(frame)
            return True

    def put_data(self, frame: Frame) -> bool:
        """Enqueue a data frame; return ``False`` if *frame* was not queued."""
        with self._lock:
            if self._closed:
                return False
            if len(self._data) < self._capacity:
                self._data.append(frame)
                return True
            self._dropped += 1
            if self._policy is OverflowPolicy.DROP_OLDEST:
                self._data.popleft()
                self._data.append(frame)
                return True
            if self._policy is OverflowPolicy.DISCONNECT:
                self._overflowed = True
                self._closed = True
            return False

    def pop(self) -> Frame | None:
        with self._lock:
            if self._control:
                return self._control.popleft()
            if self._data:
                return self._data.popleft()
            return None

    def close(self) -> None:
        """Reject further frames.  Already queued frames can still be popped."""
        with self._lock:
            self._closed = True

    def clear(self) -> None:
        with self._lock:
            self._control.clear()
            self._data.clear()
