import queue
import threading

import pytest

from sprinting_boxes.errors import Backpressure, QueueClosed
from sprinting_boxes.pipeline.queues import FrameFeed, StageQueue


class TestStageQueue:
    def test_fifo(self):
        q = StageQueue("q", 4)
        for i in range(3):
            q.push(i)
        assert len(q) == 3
        assert [q.pop(timeout=0.1) for _ in range(3)] == [0, 1, 2]

    def test_full_queue_raises_backpressure(self):
        q = StageQueue("q", 1)
        q.push("a")
        with pytest.raises(Backpressure):
            q.push("b", timeout=0.01)
        assert len(q) == 1

    def test_empty_pop_times_out(self):
        q = StageQueue("q", 1)
        with pytest.raises(queue.Empty):
            q.pop(timeout=0.01)

    def test_close_drains_then_raises(self):
        q = StageQueue("q", 4)
        q.push(1)
        q.push(2)
        q.close()
        with pytest.raises(QueueClosed):
            q.push(3)
        assert q.pop(timeout=0.1) == 1
        assert q.pop(timeout=0.1) == 2
        with pytest.raises(QueueClosed):
            q.pop(timeout=0.1)

    def test_close_with_discard_drops_items(self):
        q = StageQueue("q", 4)
        q.push(1)
        q.close(discard=True)
        assert q.closed
        with pytest.raises(QueueClosed):
            q.pop(timeout=0.1)

    def test_close_wakes_blocked_producer(self):
        q = StageQueue("q", 1)
        q.push("a")
        errors = []

        def produce():
            try:
                q.push("b", timeout=5)
            except QueueClosed as exc:
                errors.append(exc)

        t = threading.Thread(target=produce)
        t.start()
        q.close()
        t.join(5)
        assert not t.is_alive()
        assert len(errors) == 1

    def test_blocked_consumer_receives_item(self):
        q = StageQueue("q", 1)
        got = []
        t = threading.Thread(target=lambda: got.append(q.pop(timeout=5)))
        t.start()
        q.push("x")
        t.join(5)
        assert got == ["x"]

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            StageQueue("q", 0)


class TestFrameFeed:
    def test_hands_out_indices_within_window(self):
        feed = FrameFeed(start=5, total=100, max_in_flight=3)
        assert [feed.pop(timeout=0.01) for _ in range(3)] == [5, 6, 7]
        with pytest.raises(queue.Empty):
            feed.pop(timeout=0.01)
        feed.commit(6)
        assert feed.pop(timeout=0.01) == 8
        assert feed.committed == 6
        assert feed.next_index == 9

    def test_commit_never_moves_backwards(self):
        feed = FrameFeed(start=0, total=10, max_in_flight=2)
        feed.commit(4)
        feed.commit(2)
        assert feed.committed == 4

    def test_exhausted_feed_is_closed(self):
        feed = FrameFeed(start=0, total=2, max_in_flight=10)
        feed.pop(timeout=0.01)
        feed.pop(timeout=0.01)
        with pytest.raises(QueueClosed):
            feed.pop(timeout=0.01)

    def test_stop_ends_admission(self):
        feed = FrameFeed(start=0, total=10, max_in_flight=10)
        feed.pop(timeout=0.01)
        feed.stop()
        with pytest.raises(QueueClosed):
            feed.pop(timeout=0.01)

    def test_resume_start_at_total_is_closed(self):
        feed = FrameFeed(start=10, total=10, max_in_flight=4)
        with pytest.raises(QueueClosed):
            feed.pop(timeout=0.01)
