import pytest

from sprinting_boxes.config import TelemetryConfig
from sprinting_boxes.data_structures import KeepAlive, ProgressSnapshot, RunState
from sprinting_boxes.pipeline.telemetry import (
    ProgressBroadcaster,
    ProgressSubscription,
    ProgressTracker,
)

STAGES = ["reader", "detect"]


@pytest.fixture
def tracker():
    return ProgressTracker("run", STAGES, ema_alpha=0.5)


def test_first_sample_is_taken_as_is(tracker):
    tracker.record("detect", 0.040, active_workers=2)
    assert tracker.snapshot().stages["detect"].ms_per_frame == pytest.approx(20.0)


def test_ema_update(tracker):
    tracker.record("detect", 0.010, active_workers=1)
    tracker.record("detect", 0.030, active_workers=1)
    # 10 + 0.5 * (30 - 10)
    assert tracker.snapshot().stages["detect"].ms_per_frame == pytest.approx(20.0)
    assert tracker.snapshot().stages["detect"].current == 2


def test_resumed_frames_count_as_processed(tracker):
    tracker.set_totals(100, resumed=40)
    snap = tracker.snapshot()
    assert snap.total_frames == 100
    assert all(s.current == 40 and s.total == 100 for s in snap.stages.values())


def test_snapshot_is_cached_until_change(tracker):
    first = tracker.snapshot()
    assert tracker.snapshot() is first
    tracker.set_workers("reader", 1)
    second = tracker.snapshot()
    assert second is not first
    assert second.version > first.version
    tracker.set_workers("reader", 1)
    assert tracker.snapshot() is second


def test_error_is_authoritative_over_active(tracker):
    tracker.set_state(RunState.RUNNING)
    assert tracker.snapshot().is_active is True
    tracker.set_error("detect stage failed at frame 3: boom")
    tracker.set_error("later error")
    snap = tracker.snapshot()
    assert snap.is_active is False
    assert snap.error == "detect stage failed at frame 3: boom"


def test_completed_snapshot(tracker):
    tracker.set_state(RunState.COMPLETED)
    snap = tracker.snapshot()
    assert snap.is_complete is True
    assert snap.is_terminal is True
    assert snap.to_dict()["state"] == "Completed"


def test_fps_uses_slowest_unfinished_stage(tracker):
    tracker.record("reader", 0.005, 1)
    tracker.record("detect", 0.050, 1)
    assert tracker.snapshot().fps == pytest.approx(20.0)
    tracker.mark_stage_done("detect")
    assert tracker.snapshot().fps == pytest.approx(200.0)


def test_subscription_drops_oldest():
    sub = ProgressSubscription(capacity=2)
    for i in range(4):
        sub.put(KeepAlive(run_id="r", timestamp_s=float(i)))
    assert sub.dropped == 2
    assert [sub.get(timeout=0.1).timestamp_s for _ in range(2)] == [2.0, 3.0]
    assert sub.get(timeout=0.01) is None


def test_closed_subscription_iterates_remaining_items():
    sub = ProgressSubscription()
    sub.put(KeepAlive(run_id="r", timestamp_s=1.0))
    sub.close()
    sub.put(KeepAlive(run_id="r", timestamp_s=2.0))
    assert [e.timestamp_s for e in sub] == [1.0]


def test_broadcaster_streams_until_terminal(tracker):
    broadcaster = ProgressBroadcaster(
        tracker, TelemetryConfig(interval_s=0.01, keepalive_s=0.02, subscriber_buffer=1024)
    )
    tracker.set_state(RunState.RUNNING)
    sub = broadcaster.subscribe()
    broadcaster.start()

    tracker.record("reader", 0.01, 1)
    tracker.set_state(RunState.STOPPED)
    broadcaster.join(5)

    events = []
    while True:
        event = sub.get(timeout=1)
        if event is None:
            break
        events.append(event)
    snapshots = [e for e in events if isinstance(e, ProgressSnapshot)]
    assert snapshots[0].state == RunState.RUNNING
    assert snapshots[-1].state == RunState.STOPPED
    assert sub.closed

    late = broadcaster.subscribe()
    assert late.get(timeout=0.1).state == RunState.STOPPED
    assert late.get(timeout=0.1) is None


def test_broadcaster_sends_keepalive_when_idle(tracker):
    broadcaster = ProgressBroadcaster(
        tracker, TelemetryConfig(interval_s=0.01, keepalive_s=0.02, subscriber_buffer=1024)
    )
    sub = broadcaster.subscribe()
    broadcaster.start()
    try:
        seen_keepalive = False
        for _ in range(200):
            event = sub.get(timeout=1)
            if isinstance(event, KeepAlive):
                seen_keepalive = True
                break
        assert seen_keepalive
    finally:
        broadcaster.close()
        broadcaster.join(5)
    assert sub.closed
