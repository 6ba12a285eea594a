from sprinting_boxes.artifacts import RunArtifacts, merge_candidates
from sprinting_boxes.data_structures import (
    DARK,
    LEFT,
    AuditSettings,
    AuditState,
    CliffCandidate,
    CliffData,
    CliffStatus,
    FeatureRow,
)


def row(i, **kwargs):
    return FeatureRow(
        frame_index=i,
        left_count=1 / 7,
        right_count=0.1 + 0.2,
        field_count=0.0,
        pre_point_score=1 / 3,
        **kwargs,
    )


def test_feature_rows_round_trip_exactly(tmp_path):
    table = RunArtifacts(tmp_path).features
    rows = [row(0), row(1, is_cliff=True, com_x=0.51, com_y=0.3, distribution_std_dev=0.05, com_delta_x=-1e-17)]
    assert table.append(rows) == 2
    assert table.append([]) == 0
    assert table.read() == rows
    assert table.last_frame_index() == 1


def test_appends_keep_single_header(tmp_path):
    table = RunArtifacts(tmp_path).features
    table.append([row(0)])
    table.append([row(1)])
    lines = table.path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 3
    assert lines[0].startswith("frame_index,")


def test_missing_files_read_empty(tmp_path):
    artifacts = RunArtifacts(tmp_path / "nowhere")
    assert artifacts.features.read() == []
    assert artifacts.candidates.read() == []
    assert artifacts.audit.load() is None


def test_candidates_round_trip(tmp_path):
    table = RunArtifacts(tmp_path).candidates
    candidates = [
        CliffCandidate(frame_index=40, timestamp_s=20.0, right_emptied_first=True, drop=0.4),
        CliffCandidate(frame_index=10, timestamp_s=5.0, left_emptied_first=True, maybe_false_positive=True),
    ]
    table.append(candidates)
    assert [c.frame_index for c in table.read()] == [10, 40]
    assert table.read()[0] == candidates[1]


def test_audit_store_round_trip(tmp_path):
    store = RunArtifacts(tmp_path).audit
    state = AuditState(
        cliffs=[CliffData(frame_index=3, status=CliffStatus.CONFIRMED, manual_side_override=LEFT)],
        settings=AuditSettings(light_team_name="Sharks", initial_score_dark=2),
    )
    store.save(state)
    assert store.load() == state
    assert not store.path.with_suffix(".json.tmp").exists()


def test_reset_outputs_keeps_audit(tmp_path):
    artifacts = RunArtifacts(tmp_path)
    artifacts.features.append([row(0)])
    artifacts.candidates.append([CliffCandidate(frame_index=0, timestamp_s=0.0)])
    artifacts.audit.save(AuditState())
    artifacts.reset_outputs()
    assert not artifacts.features.path.exists()
    assert not artifacts.candidates.path.exists()
    assert artifacts.audit.path.exists()


def test_merge_candidates_keeps_operator_input():
    existing = AuditState(
        cliffs=[CliffData(frame_index=10, status=CliffStatus.FALSE_POSITIVE, manual_color_override=DARK)],
        settings=AuditSettings(dark_team_name="Jets"),
    )
    candidates = [
        CliffCandidate(frame_index=10, timestamp_s=1.0, left_emptied_first=True),
        CliffCandidate(frame_index=30, timestamp_s=3.0, right_emptied_first=True, maybe_false_positive=True),
    ]
    merged = merge_candidates(candidates, existing)
    assert [c.frame_index for c in merged.cliffs] == [10, 30]
    assert merged.cliffs[0].status == CliffStatus.FALSE_POSITIVE
    assert merged.cliffs[0].manual_color_override == DARK
    assert merged.cliffs[0].left_emptied_first is True
    assert merged.cliffs[1].status == CliffStatus.UNCONFIRMED
    assert merged.cliffs[1].right_emptied_first and merged.cliffs[1].maybe_false_positive
    assert merged.settings.dark_team_name == "Jets"


def test_merge_candidates_without_audit_uses_defaults():
    merged = merge_candidates([], None, AuditSettings(light_team_name="Sharks"))
    assert merged.cliffs == []
    assert merged.settings.light_team_name == "Sharks"


def test_merge_candidates_refreshes_detector_flags():
    # A restarted run re-detects cliff 10 with different flags.
    stale = CliffData(
        frame_index=10,
        status=CliffStatus.CONFIRMED,
        right_emptied_first=True,
        maybe_false_positive=True,
        manual_side_override=LEFT,
    )
    existing = AuditState(cliffs=[stale])
    merged = merge_candidates([CliffCandidate(frame_index=10, timestamp_s=1.0, left_emptied_first=True)], existing)
    (cliff,) = merged.cliffs
    assert (cliff.left_emptied_first, cliff.right_emptied_first, cliff.maybe_false_positive) == (
        True,
        False,
        False,
    )
    assert cliff.status == CliffStatus.CONFIRMED
    assert cliff.manual_side_override == LEFT
    assert existing.cliffs[0].right_emptied_first is True


def test_read_ignores_unterminated_last_row(tmp_path):
    artifacts = RunArtifacts(tmp_path)
    rows = [row(0), row(1)]
    artifacts.features.append(rows)
    with artifacts.features.path.open("a", encoding="utf-8") as f:
        f.write("2,1.0,0.")
    assert artifacts.features.read() == rows


def test_repair_drops_partial_rows_before_resume(tmp_path):
    artifacts = RunArtifacts(tmp_path)
    artifacts.features.append([row(0), row(1)])
    artifacts.candidates.append([CliffCandidate(frame_index=1, timestamp_s=0.5)])
    for path in (artifacts.features.path, artifacts.candidates.path):
        with path.open("a", encoding="utf-8") as f:
            f.write("2,0.")
    artifacts.repair()
    artifacts.features.append([row(2)])
    assert [r.frame_index for r in artifacts.features.read()] == [0, 1, 2]
    assert [c.frame_index for c in artifacts.candidates.read()] == [1]
    assert artifacts.candidates.path.read_text(encoding="utf-8").endswith("\n")


def test_completion_marker(tmp_path):
    artifacts = RunArtifacts(tmp_path)
    assert artifacts.completion.load() is None
    artifacts.completion.mark(120)
    assert artifacts.completion.is_complete
    assert artifacts.completion.load() == 120
    artifacts.reset_outputs()
    assert not artifacts.completion.is_complete
