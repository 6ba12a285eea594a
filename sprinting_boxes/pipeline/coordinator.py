"""
Pipeline coordinator: builds the stage graph of one run and drives its state machine.

::

    FrameFeed -> reader -> crop -> detect -> feature -> finalize
                 (pool)    (pool)  (pool)    (pool)     (pool of 1)

State machine: ``Idle -> Starting -> Running -> Completed | Stopped | Failed``.

- Stop is cooperative: the feed stops admitting frames and every admitted
  frame drains through the graph. Rows whose cliff decision is final are
  persisted; the ones still inside the look-ahead window are recomputed on
  resume. The run is then Stopped.
- The first stage failure aborts the graph (queues are closed and emptied)
  and the run ends Failed with the error recorded in the progress snapshot.
- A new start resumes after the last persisted frame.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from ..artifacts import RunArtifacts
from ..config import STAGE_NAMES, Config
from ..crop_config import CropConfig
from ..data_structures import AuditSettings, ProgressSnapshot, RunState
from ..detection import Detector
from ..errors import PreconditionFailed, StageFailure
from ..features import FeatureTimeline
from ..video_io import FrameSource
from .finalize import Finalizer
from .queues import FrameFeed, StageQueue
from .stages import CropStage, DetectStage, FeatureStage, ReaderStage
from .telemetry import ProgressBroadcaster, ProgressSubscription, ProgressTracker
from .workers import WorkerPool

logger = logging.getLogger(__name__)

SourceFactory = Callable[[], FrameSource]
DetectorFactory = Callable[[], Detector]


@dataclass
class RunRequest:
    """
    Everything a run needs besides the global config.

    Attributes:
        run_id: Run identifier.
        artifacts: Output files of the run.
        crop_config: Zone crops and polygons.
        source_factory: Opens a new frame source (one per reader worker).
        detector_factory: Builds a detector (one per detect worker).
        sample_rate: Samples per second, used to stamp audit timestamps.
        audit_defaults: Audit settings used when the run has no ``audit.json`` yet.
        restart: Discard persisted features and start from frame 0.
    """

    run_id: str
    artifacts: RunArtifacts
    crop_config: CropConfig
    source_factory: SourceFactory
    detector_factory: DetectorFactory
    sample_rate: Optional[float] = None
    audit_defaults: Optional[AuditSettings] = None
    restart: bool = False


class PipelineRun:
    """
    One execution of the pipeline over a run's video.
    """

    def __init__(self, request: RunRequest, config: Config, run_lock: Optional[threading.Lock] = None) -> None:
        self.request = request
        self.run_id = request.run_id
        self.config = config
        self.run_lock = run_lock or threading.Lock()
        self.tracker = ProgressTracker(request.run_id, STAGE_NAMES, config.pipeline.ema_alpha)
        self.broadcaster = ProgressBroadcaster(self.tracker, config.telemetry)

        self.pools: Dict[str, WorkerPool] = {}
        self._queues: List[StageQueue[object]] = []
        self._feed: Optional[FrameFeed] = None
        self._finalizer: Optional[Finalizer] = None
        self._total_frames = 0
        self._abort = threading.Event()
        self._stop_requested = threading.Event()
        self._failure: Optional[BaseException] = None
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._watcher: Optional[threading.Thread] = None

    @property
    def state(self) -> RunState:
        return self.tracker.state

    @property
    def total_frames(self) -> int:
        return self._total_frames

    def snapshot(self) -> ProgressSnapshot:
        return self.tracker.snapshot()

    def subscribe(self) -> ProgressSubscription:
        return self.broadcaster.subscribe()

    def start(self) -> ProgressSnapshot:
        """
        Build the stage graph and launch the pools.

        Raises:
            PreconditionFailed: When the run is not Idle or the video cannot be opened.
        """
        with self._lock:
            if self.tracker.state != RunState.IDLE:
                raise PreconditionFailed(f"run {self.run_id} was already started")
            self.tracker.set_state(RunState.STARTING)
        self.broadcaster.start()
        try:
            start_index = self._prepare()
        except Exception as exc:
            self.tracker.set_state(RunState.FAILED, error=str(exc))
            self._done.set()
            if isinstance(exc, PreconditionFailed):
                raise
            raise PreconditionFailed(f"cannot start run {self.run_id}: {exc}") from exc

        if self._stop_requested.is_set() and self._feed is not None:
            self._feed.stop()
        logger.info(
            "Starting run %s at frame %d of %d", self.run_id, start_index, self._total_frames
        )
        for name in STAGE_NAMES:
            self.pools[name].start()
        self.tracker.set_state(RunState.RUNNING)
        self._watcher = threading.Thread(
            target=self._watch, name=f"run-{self.run_id}-watcher", daemon=True
        )
        self._watcher.start()
        return self.tracker.snapshot()

    def _prepare(self) -> int:
        request = self.request
        pipeline = self.config.pipeline

        source = request.source_factory()
        try:
            total = int(source.total_frames)
        finally:
            source.release()
        self._total_frames = total

        if request.restart:
            request.artifacts.reset_outputs()
        request.artifacts.repair()
        rows = request.artifacts.features.read()
        start_index = rows[-1].frame_index + 1 if rows else 0
        if len(rows) != start_index:
            raise PreconditionFailed(
                f"{request.artifacts.features.path} is not contiguous; restart the run"
            )

        timeline = FeatureTimeline(self.config.cliffs)
        timeline.seed(rows)
        feed = FrameFeed(start_index, total, pipeline.max_in_flight)
        finalizer = Finalizer(request.artifacts, timeline, feed, start_index)
        self._feed = feed
        self._finalizer = finalizer
        self.tracker.set_totals(total, resumed=start_index)

        q_frames: StageQueue[object] = StageQueue("frames", pipeline.queue_capacity)
        q_crops: StageQueue[object] = StageQueue("crops", pipeline.queue_capacity)
        q_detections: StageQueue[object] = StageQueue("detections", pipeline.queue_capacity)
        q_features: StageQueue[object] = StageQueue("features", pipeline.queue_capacity)
        self._queues = [q_frames, q_crops, q_detections, q_features]

        detector_config = self.config.detector
        features_config = self.config.features
        crop_config = request.crop_config
        abort = self._abort
        handlers = {
            "reader": lambda: ReaderStage(request.source_factory(), abort),
            "crop": lambda: CropStage(crop_config, detector_config.enable_clahe),
            "detect": lambda: DetectStage(
                request.detector_factory(), detector_config, crop_config, features_config.team_size
            ),
            "feature": lambda: FeatureStage(features_config),
            "finalize": lambda: finalizer,
        }
        wiring = {
            "reader": (feed, q_frames),
            "crop": (q_frames, q_crops),
            "detect": (q_crops, q_detections),
            "feature": (q_detections, q_features),
            "finalize": (q_features, None),
        }
        for name in STAGE_NAMES:
            inbox, outbox = wiring[name]
            max_workers = 1 if name == "finalize" else pipeline.max_workers.get(name, 1)
            self.pools[name] = WorkerPool(
                name=name,
                handler_factory=handlers[name],
                inbox=inbox,
                outbox=outbox,
                tracker=self.tracker,
                initial_workers=pipeline.initial_workers.get(name, 1),
                max_workers=max_workers,
                abort=abort,
                on_error=self._on_stage_failure,
                push_timeout_s=pipeline.push_timeout_s,
                pop_timeout_s=pipeline.pop_timeout_s,
                supervisor_interval_s=pipeline.supervisor_interval_s,
            )
        return start_index

    def stop(self) -> bool:
        """
        Request a cooperative stop. Returns False when the run is not active.
        """
        if self.tracker.state not in (RunState.STARTING, RunState.RUNNING):
            return False
        self._stop_requested.set()
        if self._feed is not None:
            self._feed.stop()
        logger.info("Stop requested for run %s", self.run_id)
        return True

    def resize(self, stage: str, delta: int) -> int:
        """
        Change a stage's worker target.

        Raises:
            KeyError: For unknown stage names.
            PreconditionFailed: When the run is not active.
        """
        if stage not in STAGE_NAMES:
            raise KeyError(f"Unknown stage '{stage}'. Expected one of {STAGE_NAMES}.")
        if self.tracker.state not in (RunState.STARTING, RunState.RUNNING) or stage not in self.pools:
            raise PreconditionFailed(f"run {self.run_id} is not running")
        return self.pools[stage].resize(delta)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until the run reaches a terminal state. Returns False on timeout.
        """
        return self._done.wait(timeout)

    def _on_stage_failure(self, failure: StageFailure) -> None:
        with self._lock:
            first = self._failure is None
            if first:
                self._failure = failure
        if not first:
            return
        self.tracker.set_error(str(failure))
        self._abort.set()
        if self._feed is not None:
            self._feed.stop()
        for q in self._queues:
            q.close(discard=True)

    def _watch(self) -> None:
        try:
            for name in STAGE_NAMES:
                self.pools[name].join()
            if self._failure is not None:
                self.tracker.set_state(RunState.FAILED, error=str(self._failure))
                return
            finalizer = self._finalizer
            assert finalizer is not None
            completed = finalizer.next_index >= self._total_frames
            try:
                finalizer.finish(completed)
                if completed:
                    finalizer.write_audit(
                        self.run_lock,
                        self.request.audit_defaults or AuditSettings(),
                        self.request.sample_rate,
                    )
                    self.request.artifacts.completion.mark(self._total_frames)
            except Exception as exc:
                logger.exception("Run %s failed while finalizing", self.run_id)
                failure = StageFailure("finalize", finalizer.next_index, exc)
                self.tracker.set_state(RunState.FAILED, error=str(failure))
                return
            self.tracker.set_state(RunState.COMPLETED if completed else RunState.STOPPED)
        finally:
            self._done.set()


class RunRegistry:
    """
    Active and finished runs of a service instance, keyed by run id.

    Also owns the run-scoped locks that serialize audit writes.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: Dict[str, PipelineRun] = {}
        self._run_locks: Dict[str, threading.Lock] = {}

    def lock_for(self, run_id: str) -> threading.Lock:
        with self._lock:
            lock = self._run_locks.get(run_id)
            if lock is None:
                lock = self._run_locks[run_id] = threading.Lock()
            return lock

    def get(self, run_id: str) -> Optional[PipelineRun]:
        with self._lock:
            return self._runs.get(run_id)

    def add(self, run: PipelineRun) -> None:
        """
        Register ``run``, replacing a finished run with the same id.

        Raises:
            PreconditionFailed: When a run with the same id has not finished.
        """
        with self._lock:
            existing = self._runs.get(run.run_id)
            if existing is not None and not existing.state.is_terminal:
                raise PreconditionFailed(f"run {run.run_id} is already {existing.state.value}")
            self._runs[run.run_id] = run

    def active(self) -> List[PipelineRun]:
        with self._lock:
            return [r for r in self._runs.values() if not r.state.is_terminal]
