import threading
import time

import pytest

from sprinting_boxes.data_structures import RunState
from sprinting_boxes.pipeline.queues import FrameFeed, StageQueue
from sprinting_boxes.pipeline.telemetry import ProgressTracker
from sprinting_boxes.pipeline.workers import WorkerPool, frame_index_of

STAGES = ["work"]


def make_pool(handler_factory, inbox, outbox, tracker, **kwargs):
    kwargs.setdefault("push_timeout_s", 0.02)
    kwargs.setdefault("pop_timeout_s", 0.02)
    kwargs.setdefault("supervisor_interval_s", 0.01)
    return WorkerPool(
        name="work",
        handler_factory=handler_factory,
        inbox=inbox,
        outbox=outbox,
        tracker=tracker,
        **kwargs,
    )


def drain_queue(q):
    items = []
    while True:
        try:
            items.append(q.pop(timeout=1))
        except Exception:
            return items


def test_frame_index_of():
    class Item:
        frame_index = 7

    assert frame_index_of(3) == 3
    assert frame_index_of(Item()) == 7
    assert frame_index_of("x") is None


def test_pool_processes_everything_and_closes_outbox():
    tracker = ProgressTracker("r", STAGES)
    tracker.set_totals(20)
    feed = FrameFeed(0, 20, max_in_flight=100)
    out = StageQueue("out", 100)
    pool = make_pool(lambda: (lambda i: i * 10), feed, out, tracker, initial_workers=3, max_workers=4)
    pool.start()
    assert pool.join(5)

    assert sorted(drain_queue(out)) == [i * 10 for i in range(20)]
    assert out.closed
    stage = tracker.snapshot().stages["work"]
    assert stage.current == 20
    assert stage.done is True
    assert stage.ms_per_frame > 0.0


def test_none_results_are_not_forwarded():
    tracker = ProgressTracker("r", STAGES)
    feed = FrameFeed(0, 5, max_in_flight=10)
    out = StageQueue("out", 10)
    pool = make_pool(lambda: (lambda i: None if i % 2 else i), feed, out, tracker)
    pool.start()
    assert pool.join(5)
    assert sorted(drain_queue(out)) == [0, 2, 4]


def test_resize_clamps_and_retires_surplus():
    tracker = ProgressTracker("r", STAGES)
    inbox = StageQueue("in", 10)
    pool = make_pool(lambda: (lambda i: None), inbox, None, tracker, initial_workers=2, max_workers=3)
    pool.start()
    try:
        assert pool.resize(10) == 3
        deadline = time.monotonic() + 5
        while pool.alive != 3 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert pool.alive == 3

        assert pool.resize(-10) == 1
        deadline = time.monotonic() + 5
        while pool.alive != 1 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert pool.alive == 1
        assert pool.target == 1
    finally:
        inbox.close()
        assert pool.join(5)


def test_handler_failure_reports_stage_failure():
    tracker = ProgressTracker("r", STAGES)
    feed = FrameFeed(0, 10, max_in_flight=10)
    failures = []
    abort = threading.Event()

    def on_error(failure):
        failures.append(failure)
        abort.set()
        feed.stop()

    def handler(i):
        if i == 3:
            raise RuntimeError("boom")
        return None

    pool = make_pool(lambda: handler, feed, None, tracker, abort=abort, on_error=on_error)
    pool.start()
    assert pool.join(5)

    assert len(failures) == 1
    assert failures[0].stage == "work"
    assert failures[0].frame_index == 3
    assert str(failures[0]) == "work stage failed at frame 3: boom"
    assert tracker.snapshot().stages["work"].done is False


def test_factory_failure_sets_abort_without_callback():
    tracker = ProgressTracker("r", STAGES)
    abort = threading.Event()

    def factory():
        raise RuntimeError("no model")

    pool = make_pool(factory, StageQueue("in", 1), None, tracker, abort=abort)
    pool.start()
    assert pool.join(5)
    assert abort.is_set()


def test_handler_close_is_called():
    tracker = ProgressTracker("r", STAGES)
    closed = []

    class Handler:
        def __call__(self, item):
            return None

        def close(self):
            closed.append(True)

    pool = make_pool(Handler, FrameFeed(0, 3, 10), None, tracker, initial_workers=2, max_workers=2)
    pool.start()
    assert pool.join(5)
    assert closed == [True, True]


@pytest.mark.parametrize("workers", [1, 4])
def test_worker_count_is_reported(workers):
    tracker = ProgressTracker("r", STAGES)
    tracker.set_state(RunState.RUNNING)
    inbox = StageQueue("in", 1)
    pool = make_pool(lambda: (lambda i: None), inbox, None, tracker, initial_workers=workers, max_workers=4)
    pool.start()
    deadline = time.monotonic() + 5
    while tracker.snapshot().stages["work"].workers != workers and time.monotonic() < deadline:
        time.sleep(0.01)
    assert tracker.snapshot().stages["work"].workers == workers
    inbox.close()
    assert pool.join(5)
    assert tracker.snapshot().stages["work"].workers == 0
