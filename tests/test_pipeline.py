"""End-to-end runs of the staged pipeline over the synthetic scene in conftest."""
import shutil
import threading
from dataclasses import replace

import pytest

from sprinting_boxes.artifacts import RunArtifacts
from sprinting_boxes.data_structures import (
    AuditSettings,
    CliffCandidate,
    CliffData,
    FeatureRow,
    KeepAlive,
    ProgressSnapshot,
    RunState,
)
from sprinting_boxes.errors import MissingCropConfig, PreconditionFailed
from sprinting_boxes.run_context import create_run
from sprinting_boxes.service import PipelineService

from .conftest import LEFT_EMPTY_AT, TOTAL_FRAMES, ArrayFrameSource, BlobDetector

RUN_ID = "game"
WAIT_S = 20


def drain(subscription, timeout=WAIT_S):
    """Collect events until the stream ends (or a generous timeout)."""
    events = []
    while True:
        event = subscription.get(timeout=timeout)
        if event is None:
            return events
        events.append(event)


def test_full_run_persists_rows_and_single_cliff(make_service, calibrated_run):
    service = make_service()
    service.start(RUN_ID)
    assert service.wait(RUN_ID, WAIT_S)

    progress = service.get_progress(RUN_ID)
    assert progress.state == RunState.COMPLETED
    assert progress.is_complete
    assert progress.error is None
    assert all(stage.current == TOTAL_FRAMES for stage in progress.stages.values())

    rows = service.get_features(RUN_ID)
    assert [r.frame_index for r in rows] == list(range(TOTAL_FRAMES))
    assert [r.frame_index for r in rows if r.is_cliff] == [LEFT_EMPTY_AT]
    assert rows[0].left_count == pytest.approx(1.0)
    assert rows[0].field_count == pytest.approx(2 / 7)
    assert rows[LEFT_EMPTY_AT - 1].pre_point_score == pytest.approx(1.0)
    assert rows[LEFT_EMPTY_AT].pre_point_score == 0.0
    assert rows[0].com_x == pytest.approx(0.51)
    assert rows[0].com_y == pytest.approx(0.3)
    assert rows[0].com_delta_x is None
    assert rows[1].com_delta_x == pytest.approx(0.0)

    candidates = RunArtifacts(calibrated_run.output_dir).candidates.read()
    assert len(candidates) == 1
    (candidate,) = candidates
    assert candidate.frame_index == LEFT_EMPTY_AT
    assert candidate.left_emptied_first is True
    assert candidate.right_emptied_first is False
    assert candidate.maybe_false_positive is False
    assert candidate.drop == pytest.approx(2 / 3)


def test_completed_run_writes_audit(make_service, calibrated_run):
    service = make_service()
    service.start(RUN_ID)
    assert service.wait(RUN_ID, WAIT_S)

    audit = RunArtifacts(calibrated_run.output_dir).audit.load()
    assert audit is not None
    assert [c.frame_index for c in audit.cliffs] == [LEFT_EMPTY_AT]
    assert audit.cliffs[0].status.value == "Unconfirmed"
    assert audit.cliffs[0].left_team_color == "light"

    state = service.mutate_cliff(RUN_ID, LEFT_EMPTY_AT, "confirm")
    assert state.cliffs[0].status.value == "Confirmed"
    chapters = service.export_chapters(RUN_ID)
    assert chapters.splitlines()[1].endswith("Point 1 - Light Pull (Light 0 - Dark 0)")


def test_stop_then_resume_matches_uninterrupted_run(make_service, calibrated_run, test_config, tmp_path):
    gate = threading.Event()
    reached = threading.Event()

    def gated_source():
        return ArrayFrameSource(gate_at=40, gate=gate, reached=reached)

    service = make_service(gated_source)
    service.start(RUN_ID)
    assert reached.wait(WAIT_S)
    assert service.stop(RUN_ID) is True
    gate.set()
    assert service.wait(RUN_ID, WAIT_S)

    assert service.get_progress(RUN_ID).state == RunState.STOPPED
    stopped_rows = service.get_features(RUN_ID)
    assert 0 < len(stopped_rows) <= 41
    assert [r.frame_index for r in stopped_rows] == list(range(len(stopped_rows)))
    assert not RunArtifacts(calibrated_run.output_dir).audit.path.exists()

    snapshot = service.start(RUN_ID)
    assert snapshot.stages["finalize"].current >= len(stopped_rows)
    assert service.wait(RUN_ID, WAIT_S)
    assert service.get_progress(RUN_ID).state == RunState.COMPLETED

    resumed = service.get_features(RUN_ID)
    assert [r.frame_index for r in resumed] == list(range(TOTAL_FRAMES))

    # Same scene, processed in one go in a separate output root.
    reference_config = replace(test_config, output_root=tmp_path / "reference")
    reference_config.ensure_output_dirs()
    reference_run = create_run(reference_config.output_root, reference_config.video_root, "game.mp4")
    for name in ("field_boundaries.json", "crops.json"):
        shutil.copy(calibrated_run.output_dir / name, reference_run.output_dir / name)
    reference = PipelineService(
        reference_config,
        detector_factory=BlobDetector,
        source_factory=lambda path, sample_rate, stride, backend: ArrayFrameSource(),
    )
    reference.start(RUN_ID)
    assert reference.wait(RUN_ID, WAIT_S)
    assert reference.get_features(RUN_ID) == resumed


def test_stop_when_idle_returns_false(make_service, calibrated_run):
    service = make_service()
    assert service.stop(RUN_ID) is False


def test_start_twice_is_rejected(make_service, calibrated_run):
    gate = threading.Event()
    reached = threading.Event()
    service = make_service(lambda: ArrayFrameSource(gate_at=5, gate=gate, reached=reached))
    service.start(RUN_ID)
    try:
        with pytest.raises(PreconditionFailed):
            service.start(RUN_ID)
    finally:
        service.stop(RUN_ID)
        gate.set()
        service.wait(RUN_ID, WAIT_S)


def test_missing_crops_is_rejected(make_service, calibrated_run):
    calibrated_run.crops_path.unlink()
    service = make_service()
    with pytest.raises(MissingCropConfig):
        service.start(RUN_ID)
    assert service.get_progress(RUN_ID).state == RunState.IDLE


def test_unknown_run_is_rejected(make_service, test_config):
    service = make_service()
    with pytest.raises(PreconditionFailed):
        service.start("nope")


def test_unknown_backend_is_rejected(make_service, calibrated_run):
    service = make_service()
    with pytest.raises(PreconditionFailed):
        service.start(RUN_ID, backend_hint="betamax")


def test_decode_failure_fails_the_run(make_service, calibrated_run):
    service = make_service(lambda: ArrayFrameSource(fail_at=10))
    service.start(RUN_ID)
    assert service.wait(RUN_ID, WAIT_S)

    progress = service.get_progress(RUN_ID)
    assert progress.state == RunState.FAILED
    assert progress.is_active is False
    assert progress.error == "reader stage failed at frame 10: Could not decode frame 10"
    assert len(service.get_features(RUN_ID)) <= 10


def test_failed_run_can_restart(make_service, calibrated_run):
    failing = make_service(lambda: ArrayFrameSource(fail_at=10))
    failing.start(RUN_ID)
    assert failing.wait(RUN_ID, WAIT_S)
    assert failing.get_progress(RUN_ID).state == RunState.FAILED

    failing.start(RUN_ID, restart=True)
    # Same factory, same failure; the run directory is reset first.
    assert failing.wait(RUN_ID, WAIT_S)
    assert failing.get_progress(RUN_ID).state == RunState.FAILED

    service = make_service()
    service.start(RUN_ID, restart=True)
    assert service.wait(RUN_ID, WAIT_S)
    assert service.get_progress(RUN_ID).state == RunState.COMPLETED
    assert len(service.get_features(RUN_ID)) == TOTAL_FRAMES


def test_resize_is_clamped(make_service, calibrated_run, test_config):
    gate = threading.Event()
    reached = threading.Event()
    service = make_service(lambda: ArrayFrameSource(gate_at=20, gate=gate, reached=reached))
    service.start(RUN_ID)
    try:
        max_detect = test_config.pipeline.max_workers["detect"]
        assert service.resize_workers(RUN_ID, "detect", 100) == max_detect
        assert service.resize_workers(RUN_ID, "detect", -100) == 1
        assert service.resize_workers(RUN_ID, "finalize", 3) == 1
        with pytest.raises(KeyError):
            service.resize_workers(RUN_ID, "upscale", 1)
    finally:
        service.stop(RUN_ID)
        gate.set()
        service.wait(RUN_ID, WAIT_S)

    with pytest.raises(PreconditionFailed):
        service.resize_workers(RUN_ID, "detect", 1)


def test_progress_stream_ends_with_terminal_snapshot(make_service, calibrated_run):
    service = make_service()
    service.start(RUN_ID)
    events = drain(service.subscribe_progress(RUN_ID))
    assert service.wait(RUN_ID, WAIT_S)

    snapshots = [e for e in events if isinstance(e, ProgressSnapshot)]
    assert all(isinstance(e, (ProgressSnapshot, KeepAlive)) for e in events)
    assert snapshots
    assert snapshots[-1].state == RunState.COMPLETED
    assert snapshots[-1].is_terminal
    versions = [s.version for s in snapshots]
    assert versions == sorted(versions)


def test_idle_progress_of_unstarted_run(make_service, calibrated_run):
    service = make_service()
    progress = service.get_progress(RUN_ID)
    assert progress.state == RunState.IDLE
    assert progress.is_active is False
    assert progress.is_complete is False

    events = drain(service.subscribe_progress(RUN_ID), timeout=1)
    assert len(events) == 1
    assert events[0].state == RunState.IDLE


def test_set_cliffs_and_update_settings_persist_recomputed_state(make_service, calibrated_run):
    service = make_service()
    cliffs = [
        CliffData(frame_index=30, right_emptied_first=True),
        CliffData(frame_index=10),
        CliffData(frame_index=20, left_emptied_first=True),
    ]
    state = service.set_cliffs(RUN_ID, cliffs)
    assert [c.frame_index for c in state.cliffs] == [10, 20, 30]
    assert [(c.score_light, c.score_dark) for c in state.cliffs] == [(0, 0), (0, 1), (0, 2)]
    assert state.settings.light_team_name == "Light"

    state = service.update_settings(
        RUN_ID, AuditSettings(initial_score_light=3, time_offset_secs=60.0)
    )
    assert [(c.score_light, c.score_dark) for c in state.cliffs] == [(3, 0), (3, 1), (3, 2)]
    assert state.cliffs[2].timestamp == "00:01:30"

    reloaded = make_service().get_cliffs(RUN_ID)
    assert reloaded == state


def test_toggle_colors_before_audit_exists_and_idle_completion(make_service, calibrated_run):
    artifacts = RunArtifacts(calibrated_run.output_dir)
    artifacts.features.append(
        [
            FeatureRow(frame_index=i, left_count=1.0, right_count=1.0, field_count=0.0, pre_point_score=1.0)
            for i in range(60)
        ]
    )
    artifacts.candidates.append(
        [CliffCandidate(frame_index=10, timestamp_s=1.0), CliffCandidate(frame_index=50, timestamp_s=5.0)]
    )
    assert not artifacts.audit.path.exists()

    service = make_service()
    before = service.get_cliffs(RUN_ID)
    assert [(c.frame_index, c.left_team_color) for c in before.cliffs] == [(10, "light"), (50, "dark")]

    state = service.mutate_cliff(RUN_ID, 50, "toggle_colors")
    assert [(c.frame_index, c.left_team_color) for c in state.cliffs] == [(10, "light"), (50, "light")]
    assert state.cliffs[1].manual_color_override == "light"

    # An operator edit on an unfinished run does not make it complete.
    progress = make_service().get_progress(RUN_ID)
    assert progress.is_complete is False
    assert progress.stages["finalize"].current == 60


def test_completed_run_reports_complete_when_idle(make_service, calibrated_run):
    service = make_service()
    service.start(RUN_ID)
    assert service.wait(RUN_ID, WAIT_S)
    assert RunArtifacts(calibrated_run.output_dir).completion.load() == TOTAL_FRAMES

    progress = make_service().get_progress(RUN_ID)
    assert progress.state == RunState.IDLE
    assert progress.is_complete is True
    assert progress.total_frames == TOTAL_FRAMES
