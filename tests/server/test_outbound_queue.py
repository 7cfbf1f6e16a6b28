"""Tests for the per-connection outbound queue."""

from __future__ import annotations

import pytest

from chanlog.config import OverflowPolicy
from chanlog.server.queue import OutboundQueue


def _drain(queue: OutboundQueue) -> list[object]:
    frames = []
    while (frame := queue.pop()) is not None:
        frames.append(frame)
    return frames


class TestOutboundQueue:
    def test_control_lane_is_drained_first(self) -> None:
        queue = OutboundQueue(4)
        queue.put_data(b"d1")
        queue.put_control("c1")
        queue.put_data(b"d2")
        queue.put_control("c2")
        assert _drain(queue) == ["c1", "c2", b"d1", b"d2"]

    def test_control_lane_is_unbounded(self) -> None:
        queue = OutboundQueue(1)
        for i in range(10):
            assert queue.put_control(str(i))
        assert len(queue) == 10
        assert queue.dropped == 0

    def test_drop_newest(self) -> None:
        queue = OutboundQueue(3, OverflowPolicy.DROP_NEWEST)
        accepted = [queue.put_data(bytes([i])) for i in range(5)]
        assert accepted == [True, True, True, False, False]
        assert queue.dropped == 2
        assert _drain(queue) == [b"\x00", b"\x01", b"\x02"]

    def test_drop_oldest(self) -> None:
        queue = OutboundQueue(3, OverflowPolicy.DROP_OLDEST)
        for i in range(5):
            assert queue.put_data(bytes([i]))
        assert queue.dropped == 2
        assert _drain(queue) == [b"\x02", b"\x03", b"\x04"]

    def test_disconnect(self) -> None:
        queue = OutboundQueue(2, OverflowPolicy.DISCONNECT)
        assert queue.put_data(b"a")
        assert queue.put_data(b"b")
        assert not queue.overflowed
        assert not queue.put_data(b"c")
        assert queue.overflowed
        assert queue.dropped == 1
        assert not queue.put_control("late")
        assert _drain(queue) == [b"a", b"b"]

    def test_close_keeps_queued_frames(self) -> None:
        queue = OutboundQueue(2)
        queue.put_data(b"a")
        queue.close()
        assert not queue.put_data(b"b")
        assert queue.pop() == b"a"
        assert queue.dropped == 0

    def test_clear(self) -> None:
        queue = OutboundQueue(2)
        queue.put_data(b"a")
        queue.put_control("c")
        queue.clear()
        assert len(queue) == 0
        assert queue.data_len == 0

    def test_invalid_capacity(self) -> None:
        with pytest.raises(ValueError):
            OutboundQueue(0)
