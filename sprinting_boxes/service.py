"""
Run-level operations exposed to callers (HTTP handlers, the CLI, tests).

:class:`PipelineService` resolves a run id to its directory under the output
root, checks preconditions, launches :class:`~sprinting_boxes.pipeline.PipelineRun`
instances and serializes every audit mutation of a run behind one lock
(shared with the Finalizer's final ``audit.json`` write).

Example:

    service = PipelineService(load_config("config.yaml"))
    service.start("game_2024_06_01")
    for event in service.subscribe_progress("game_2024_06_01"):
        print(event)
    service.mutate_cliff("game_2024_06_01", 1234, "confirm")
    print(service.export_chapters("game_2024_06_01"))
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .artifacts import RunArtifacts, merge_candidates
from .audit import CliffAction, apply_action, recompute, vlc_playlist, youtube_chapters
from .config import STAGE_NAMES, Config, load_config
from .data_structures import (
    AuditSettings,
    AuditState,
    CliffData,
    FeatureRow,
    ProgressSnapshot,
    RunState,
    StageProgress,
)
from .detection import Detector, create_detector
from .errors import MissingCropConfig, PreconditionFailed, RunNotFound
from .pipeline import PipelineRun, ProgressSubscription, RunRegistry, RunRequest
from .run_context import RunContext
from .video_io import FrameSource, backend_api_preference, open_video

logger = logging.getLogger(__name__)

# (video_path, sample_rate, frame_stride, backend) -> frame source
SourceFactory = Callable[[Path, Optional[float], Optional[int], str], FrameSource]
DetectorFactory = Callable[[], Detector]


class PipelineService:
    """
    Entry point for processing runs and auditing their results.

    Args:
        config: Service-wide configuration. Defaults to :func:`load_config`.
        detector_factory: Builds one detector per detect worker. Defaults to
            the YOLO detector configured in ``config.detector``.
        source_factory: Opens a frame source for a video. Defaults to
            :func:`~sprinting_boxes.video_io.open_video`.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        detector_factory: Optional[DetectorFactory] = None,
        source_factory: Optional[SourceFactory] = None,
    ) -> None:
        self.config = config or load_config()
        self.registry = RunRegistry()
        self._detector_factory = detector_factory or self._default_detector
        self._source_factory = source_factory or self._default_source

    def _default_detector(self) -> Detector:
        cfg = self.config.detector
        return create_detector(
            str(cfg.model_path),
            conf_threshold=cfg.min_confidence,
            device=cfg.device,
        )

    @staticmethod
    def _default_source(
        path: Path, sample_rate: Optional[float], stride: Optional[int], backend: str
    ) -> FrameSource:
        return open_video(path, sample_rate=sample_rate, stride=stride, backend=backend)

    # -- run resolution -------------------------------------------------

    def _context(self, run_id: str) -> RunContext:
        return RunContext.load(self.config.run_dir(run_id))

    def _artifacts(self, run_id: str) -> RunArtifacts:
        return RunArtifacts(self.config.run_dir(run_id))

    def _sample_rate(self, context: RunContext) -> float:
        return float(self.config.sample_rate or context.sample_rate)

    @staticmethod
    def _default_settings(context: RunContext) -> AuditSettings:
        return AuditSettings(
            light_team_name=context.light_team_name,
            dark_team_name=context.dark_team_name,
        )

    # -- processing -----------------------------------------------------

    def start(
        self,
        run_id: str,
        backend_hint: Optional[str] = None,
        restart: bool = False,
    ) -> ProgressSnapshot:
        """
        Start (or resume) processing of a run.

        Args:
            run_id: Run directory name.
            backend_hint: Decode backend ("opencv", "auto", "ffmpeg", ...).
            restart: Discard persisted features and start from frame 0.

        Raises:
            PreconditionFailed: Unknown run, missing calibration or crops,
                unknown backend, missing video, or a run already in progress.
        """
        try:
            context = self._context(run_id)
        except RunNotFound as exc:
            raise PreconditionFailed(str(exc)) from exc

        backend = backend_hint or self.config.pipeline.backend
        try:
            backend_api_preference(backend)
        except ValueError as exc:
            raise PreconditionFailed(str(exc)) from exc

        for dependency in context.validate_dependencies():
            if dependency.valid:
                continue
            if dependency.artifact_name == context.crops_path.name:
                raise MissingCropConfig(dependency.message)
            raise PreconditionFailed(dependency.message)
        crop_config = context.load_crop_config()

        video_path = context.resolve_video_path(self.config.video_root)
        if not video_path.exists():
            raise PreconditionFailed(f"Video not found: {video_path}")

        sample_rate = self._sample_rate(context)
        stride = self.config.frame_stride
        source_factory = self._source_factory

        def open_source() -> FrameSource:
            return source_factory(video_path, sample_rate, stride, backend)

        request = RunRequest(
            run_id=run_id,
            artifacts=self._artifacts(run_id),
            crop_config=crop_config,
            source_factory=open_source,
            detector_factory=self._detector_factory,
            sample_rate=sample_rate,
            audit_defaults=self._default_settings(context),
            restart=restart,
        )
        run = PipelineRun(request, self.config, self.registry.lock_for(run_id))
        self.registry.add(run)
        return run.start()

    def stop(self, run_id: str) -> bool:
        """
        Request a cooperative stop. Returns False when nothing is running.
        """
        run = self.registry.get(run_id)
        if run is None:
            return False
        return run.stop()

    def resize_workers(self, run_id: str, stage_name: str, delta: int) -> int:
        """
        Grow or shrink a stage's worker pool; returns the new target.

        Raises:
            KeyError: Unknown stage name.
            PreconditionFailed: The run is not running.
        """
        if stage_name not in STAGE_NAMES:
            raise KeyError(f"Unknown stage '{stage_name}'. Expected one of {STAGE_NAMES}.")
        run = self.registry.get(run_id)
        if run is None:
            raise PreconditionFailed(f"run {run_id} is not running")
        return run.resize(stage_name, delta)

    def wait(self, run_id: str, timeout: Optional[float] = None) -> bool:
        """
        Block until the run's current execution ends. Returns False on timeout.
        """
        run = self.registry.get(run_id)
        if run is None:
            return True
        return run.wait(timeout)

    # -- progress -------------------------------------------------------

    def _idle_snapshot(self, run_id: str) -> ProgressSnapshot:
        self._context(run_id)
        artifacts = self._artifacts(run_id)
        rows = artifacts.features.read()
        done = len(rows)
        completed_total = artifacts.completion.load()
        return ProgressSnapshot(
            run_id=run_id,
            state=RunState.IDLE,
            total_frames=completed_total or 0,
            is_active=False,
            is_complete=completed_total is not None,
            error=None,
            stages={
                name: StageProgress(current=done, total=completed_total or 0)
                for name in STAGE_NAMES
            },
        )

    def get_progress(self, run_id: str) -> ProgressSnapshot:
        """
        Latest progress snapshot (an Idle snapshot when the run never started here).

        Raises:
            RunNotFound: Unknown run id.
        """
        run = self.registry.get(run_id)
        if run is not None:
            return run.snapshot()
        return self._idle_snapshot(run_id)

    def subscribe_progress(self, run_id: str) -> ProgressSubscription:
        """
        Stream of progress snapshots and keep-alive markers.

        For a run that is not executing the stream holds one snapshot and ends.

        Raises:
            RunNotFound: Unknown run id.
        """
        run = self.registry.get(run_id)
        if run is not None:
            return run.subscribe()
        sub = ProgressSubscription(self.config.telemetry.subscriber_buffer)
        sub.put(self._idle_snapshot(run_id))
        sub.close()
        return sub

    # -- features and audit ---------------------------------------------

    def get_features(self, run_id: str) -> List[FeatureRow]:
        """
        All persisted feature rows, in frame order.

        Raises:
            RunNotFound: Unknown run id.
        """
        self._context(run_id)
        return self._artifacts(run_id).features.read()

    def _load_state(self, run_id: str, context: RunContext) -> AuditState:
        """
        Current audit state with derived fields filled in.

        Before ``audit.json`` exists the state is built from ``points.csv``.
        Either way it is recomputed, so operator actions that read derived
        colors (``toggle_colors``) see the same values the operator sees.
        """
        # Caller holds the run lock.
        artifacts = self._artifacts(run_id)
        state = artifacts.audit.load()
        if state is None:
            state = merge_candidates(
                artifacts.candidates.read(), None, self._default_settings(context)
            )
        state.cliffs = recompute(state.cliffs, state.settings, self._sample_rate(context))
        return state

    def _save_state(self, run_id: str, context: RunContext, state: AuditState) -> AuditState:
        # Caller holds the run lock.
        state.cliffs = recompute(state.cliffs, state.settings, self._sample_rate(context))
        self._artifacts(run_id).audit.save(state)
        return state

    def get_cliffs(self, run_id: str) -> AuditState:
        """
        Reviewed cliffs and audit settings.

        Before ``audit.json`` exists, the raw candidates of ``points.csv``
        are returned as Unconfirmed cliffs.

        Raises:
            RunNotFound: Unknown run id.
        """
        context = self._context(run_id)
        with self.registry.lock_for(run_id):
            state = self._load_state(run_id, context)
        return state

    def set_cliffs(
        self,
        run_id: str,
        cliffs: Sequence[CliffData],
        settings: Optional[AuditSettings] = None,
    ) -> AuditState:
        """
        Replace the cliff list (and optionally the settings), recompute and persist.
        """
        context = self._context(run_id)
        with self.registry.lock_for(run_id):
            if settings is None:
                settings = self._load_state(run_id, context).settings
            state = AuditState(cliffs=list(cliffs), settings=settings)
            state = self._save_state(run_id, context, state)
        logger.info("Saved %d cliffs for run %s", len(state.cliffs), run_id)
        return state

    def update_settings(self, run_id: str, settings: AuditSettings) -> AuditState:
        """
        Replace the audit settings, recompute and persist.
        """
        context = self._context(run_id)
        with self.registry.lock_for(run_id):
            state = self._load_state(run_id, context)
            state.settings = settings
            return self._save_state(run_id, context, state)

    def mutate_cliff(self, run_id: str, frame_index: int, action: CliffAction | str) -> AuditState:
        """
        Apply an operator action to one cliff, recompute and persist.

        Raises:
            RunNotFound: Unknown run id.
            CliffNotFound: No cliff at ``frame_index``.
            ValueError: Unknown action.
        """
        context = self._context(run_id)
        with self.registry.lock_for(run_id):
            state = self._load_state(run_id, context)
            state.cliffs = apply_action(state.cliffs, frame_index, action)
            return self._save_state(run_id, context, state)

    # -- exports --------------------------------------------------------

    def export_chapters(self, run_id: str) -> str:
        """
        YouTube chapter list of the confirmed points.
        """
        state = self.get_cliffs(run_id)
        context = self._context(run_id)
        return youtube_chapters(state.cliffs, state.settings, self._sample_rate(context))

    def export_playlist(self, run_id: str, save: bool = False) -> str:
        """
        VLC playlist with one entry per confirmed point.

        The last entry runs to the end of the analysed footage. With ``save``
        the playlist is also written to ``playlist.m3u`` in the run directory.
        """
        context = self._context(run_id)
        state = self.get_cliffs(run_id)
        sample_rate = self._sample_rate(context)
        rows = self.get_features(run_id)
        duration = (rows[-1].frame_index + 1) / sample_rate if rows else 0.0
        video_path = context.resolve_video_path(self.config.video_root)
        text = vlc_playlist(
            state.cliffs, state.settings, sample_rate, str(video_path.resolve()), duration
        )
        if save:
            path = self._artifacts(run_id).playlist_path
            path.write_text(text, encoding="utf-8")
            logger.info("Saved playlist to %s", path)
        return text

    def active_runs(self) -> List[PipelineRun]:
        return self.registry.active()
