"""
Progress telemetry for a processing run.

Workers report into a :class:`ProgressTracker` (lock-protected counters).
A single :class:`ProgressBroadcaster` thread turns tracker state into
immutable :class:`~sprinting_boxes.data_structures.ProgressSnapshot` objects
and fans them out to any number of :class:`ProgressSubscription` readers:

- every ``interval_s`` when something changed,
- immediately on significant transitions (stage completion, error, run end),
- a :class:`~sprinting_boxes.data_structures.KeepAlive` marker at most every
  ``keepalive_s`` while nothing changes.

The stream ends after the terminal snapshot has been delivered.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Iterator, List, Optional, Sequence, Union

from ..config import TelemetryConfig
from ..data_structures import KeepAlive, ProgressSnapshot, RunState, StageProgress

logger = logging.getLogger(__name__)

ProgressEvent = Union[ProgressSnapshot, KeepAlive]


@dataclass
class _StageCounters:
    current: int = 0
    total: int = 0
    ms_per_frame: float = 0.0
    workers: int = 0
    done: bool = False


class ProgressTracker:
    """
    Thread-safe progress counters of one run.

    Args:
        run_id: Run identifier stamped on every snapshot.
        stage_names: Stages reported, in display order.
        ema_alpha: Smoothing factor of the per-stage ms/frame average.
    """

    def __init__(self, run_id: str, stage_names: Sequence[str], ema_alpha: float = 0.05) -> None:
        self.run_id = run_id
        self.ema_alpha = ema_alpha
        self._lock = threading.Lock()
        self._stages: Dict[str, _StageCounters] = {name: _StageCounters() for name in stage_names}
        self._state = RunState.IDLE
        self._error: Optional[str] = None
        self._total_frames = 0
        self._version = 0
        self._snapshot: Optional[ProgressSnapshot] = None
        self._significant = threading.Event()

    @property
    def state(self) -> RunState:
        with self._lock:
            return self._state

    @property
    def error(self) -> Optional[str]:
        with self._lock:
            return self._error

    def _touch(self, significant: bool = False) -> None:
        # Caller holds the lock.
        self._version += 1
        self._snapshot = None
        if significant:
            self._significant.set()

    def set_state(self, state: RunState, error: Optional[str] = None) -> None:
        with self._lock:
            self._state = state
            if error is not None and self._error is None:
                self._error = error
            self._touch(significant=True)
        logger.info("Run %s -> %s", self.run_id, state.value)

    def set_error(self, error: str) -> None:
        """
        Record the first error of the run; later errors are ignored.
        """
        with self._lock:
            if self._error is None:
                self._error = error
                self._touch(significant=True)

    def set_totals(self, total_frames: int, resumed: int = 0) -> None:
        """
        Set the frame total of every stage; ``resumed`` frames count as already processed.
        """
        with self._lock:
            self._total_frames = total_frames
            for counters in self._stages.values():
                counters.total = total_frames
                counters.current = min(resumed, total_frames)
            self._touch()

    def set_workers(self, stage: str, workers: int) -> None:
        with self._lock:
            counters = self._stages[stage]
            if counters.workers != workers:
                counters.workers = workers
                self._touch()

    def record(self, stage: str, elapsed_s: float, active_workers: int) -> None:
        """
        Count one processed item and fold its latency into the stage average.

        Latency is divided by the number of active workers so the average
        reflects the pool's throughput rather than a single worker's.
        """
        sample_ms = elapsed_s * 1000.0 / max(1, active_workers)
        with self._lock:
            counters = self._stages[stage]
            counters.current += 1
            if counters.ms_per_frame <= 0.0:
                counters.ms_per_frame = sample_ms
            else:
                counters.ms_per_frame += self.ema_alpha * (sample_ms - counters.ms_per_frame)
            self._touch()

    def mark_stage_done(self, stage: str) -> None:
        with self._lock:
            counters = self._stages[stage]
            if not counters.done:
                counters.done = True
                self._touch(significant=True)

    def snapshot(self) -> ProgressSnapshot:
        """
        Current immutable snapshot (rebuilt only after a change).
        """
        with self._lock:
            if self._snapshot is None:
                self._snapshot = ProgressSnapshot(
                    run_id=self.run_id,
                    state=self._state,
                    total_frames=self._total_frames,
                    is_active=self._state in (RunState.STARTING, RunState.RUNNING)
                    and self._error is None,
                    is_complete=self._state == RunState.COMPLETED,
                    error=self._error,
                    stages={
                        name: StageProgress(
                            current=c.current,
                            total=c.total,
                            ms_per_frame=c.ms_per_frame,
                            workers=c.workers,
                            done=c.done,
                        )
                        for name, c in self._stages.items()
                    },
                    version=self._version,
                )
            return self._snapshot

    def wake(self) -> None:
        self._significant.set()

    def wait_significant(self, timeout: float) -> bool:
        """
        Block until a significant change or ``timeout``; clears the flag.
        """
        fired = self._significant.wait(timeout)
        self._significant.clear()
        return fired


class ProgressSubscription:
    """
    Bounded per-subscriber buffer; iterating it yields events until the stream ends.

    When the reader falls behind, the oldest pending event is dropped.
    """

    def __init__(self, capacity: int = 16) -> None:
        self._items: Deque[ProgressEvent] = deque(maxlen=max(1, capacity))
        self._cond = threading.Condition()
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def put(self, event: ProgressEvent) -> None:
        with self._cond:
            if self._closed:
                return
            if len(self._items) == self._items.maxlen:
                self.dropped += 1
            self._items.append(event)
            self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """
        Next event, or None once closed and drained (or on timeout).
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._items:
                if self._closed:
                    return None
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)
            return self._items.popleft()

    def __iter__(self) -> Iterator[ProgressEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event


class ProgressBroadcaster:
    """
    Single producer thread fanning snapshots out to subscribers.
    """

    def __init__(self, tracker: ProgressTracker, config: Optional[TelemetryConfig] = None) -> None:
        self.tracker = tracker
        self.config = config or TelemetryConfig()
        self._subscribers: List[ProgressSubscription] = []
        self._lock = threading.Lock()
        self._finished = False
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run, name=f"progress-{self.tracker.run_id}", daemon=True
        )
        self._thread.start()

    def subscribe(self) -> ProgressSubscription:
        """
        New subscription primed with the current snapshot.

        Subscribing after the stream ended yields the final snapshot only.
        """
        sub = ProgressSubscription(self.config.subscriber_buffer)
        with self._lock:
            sub.put(self.tracker.snapshot())
            if self._finished:
                sub.close()
            else:
                self._subscribers.append(sub)
        return sub

    def close(self) -> None:
        """
        End the stream without waiting for a terminal state.
        """
        self._stop.set()
        self.tracker.wake()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _publish(self, event: ProgressEvent) -> None:
        with self._lock:
            self._subscribers = [s for s in self._subscribers if not s.closed]
            for sub in self._subscribers:
                sub.put(event)

    def _finish(self) -> None:
        with self._lock:
            self._finished = True
            subscribers, self._subscribers = self._subscribers, []
        for sub in subscribers:
            sub.close()

    def _run(self) -> None:
        last_version = -1
        last_sent = time.monotonic()
        try:
            while True:
                self.tracker.wait_significant(self.config.interval_s)
                snapshot = self.tracker.snapshot()
                now = time.monotonic()
                if snapshot.version != last_version:
                    self._publish(snapshot)
                    last_version = snapshot.version
                    last_sent = now
                elif now - last_sent >= self.config.keepalive_s:
                    self._publish(KeepAlive(run_id=snapshot.run_id, timestamp_s=time.time()))
                    last_sent = now
                if snapshot.is_terminal or self._stop.is_set():
                    break
        finally:
            self._finish()
            logger.debug("Progress stream of run %s ended", self.tracker.run_id)
