"""
Configuration for the point detection pipeline.

This module centralizes configurable parameters such as:
- Video and output roots, detector weights and decode backend.
- Stage queue capacity, worker pool sizes and the in-flight window.
- Tiled detection and counting thresholds.
- Cliff detection and emptied-first heuristics.
- Progress telemetry cadence.

The defaults are meant for a 1 sample/second analysis of a 7-a-side game.
Every threshold is exposed here; none of them is universally right for all
footage, so calibrate against recorded runs before trusting new videos.
Values can be overridden from a YAML file (see :func:`load_config`) and from
the ``SPRINTING_BOXES_VIDEO_ROOT`` / ``SPRINTING_BOXES_OUTPUT_ROOT`` environment
variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, cast

try:
    import yaml  # type: ignore[import-not-found]
except ImportError:  # pragma: no cover - optional dependency
    yaml = None  # type: ignore[assignment]

from .data_structures import FIELD, LEFT_END_ZONE, OVERVIEW, RIGHT_END_ZONE

STAGE_NAMES: List[str] = ["reader", "crop", "detect", "feature", "finalize"]


@dataclass
class PipelineConfig:
    """
    Stage graph sizing.

    Attributes:
        queue_capacity: Capacity of every inter-stage queue.
        max_in_flight: Maximum distance between the next frame admitted by the
            reader and the next frame the finalizer expects. Bounds the
            finalizer's reorder buffer.
        initial_workers: Starting worker count per stage.
        max_workers: Upper bound per stage for ``resize``.
        push_timeout_s: Push timeout before a worker re-checks for abort.
        pop_timeout_s: Pop timeout before a worker re-checks its retire flag.
        supervisor_interval_s: How often pool supervisors reconcile worker counts.
        ema_alpha: Smoothing factor for per-stage ms/frame.
        backend: Default decode backend hint.
    """

    queue_capacity: int = 32
    max_in_flight: int = 64
    initial_workers: Dict[str, int] = field(
        default_factory=lambda: {"reader": 1, "crop": 1, "detect": 2, "feature": 1, "finalize": 1}
    )  # type: ignore[misc]
    max_workers: Dict[str, int] = field(
        default_factory=lambda: {"reader": 1, "crop": 4, "detect": 8, "feature": 4, "finalize": 1}
    )  # type: ignore[misc]
    push_timeout_s: float = 0.5
    pop_timeout_s: float = 0.2
    supervisor_interval_s: float = 0.05
    ema_alpha: float = 0.05
    backend: str = "opencv"

    def __post_init__(self) -> None:
        if self.queue_capacity < 1:
            raise ValueError("queue_capacity must be >= 1")
        if self.max_in_flight < 1:
            raise ValueError("max_in_flight must be >= 1")
        if not 0.0 < self.ema_alpha <= 1.0:
            raise ValueError("ema_alpha must be in (0, 1]")


@dataclass
class SliceConfig:
    """
    Tiled (SAHI-style) detection parameters.

    Attributes:
        tile_size: Square tile size in pixels; 0 disables slicing.
        overlap: Fractional overlap between neighbouring tiles, clamped to [0, 0.5].
        nms_iou_threshold: Boxes overlapping more than this are merged.
        batch_size: Tiles sent to the detector per call.
    """

    tile_size: int = 0
    overlap: float = 0.2
    nms_iou_threshold: float = 0.5
    batch_size: int = 8

    def __post_init__(self) -> None:
        self.overlap = min(max(float(self.overlap), 0.0), 0.5)
        if self.tile_size < 0:
            raise ValueError("tile_size must be >= 0")

    @property
    def is_enabled(self) -> bool:
        return self.tile_size > 0

    @property
    def stride(self) -> int:
        """
        Pixel step between tile origins (at least 1).
        """
        return max(1, int(self.tile_size * (1.0 - self.overlap)))


@dataclass
class DetectorConfig:
    """
    Object detector settings.

    Attributes:
        model_path: Path to YOLO weights.
        min_confidence: Detections below this confidence are ignored.
        device: Optional inference device passed to ultralytics ("cpu", "0", ...).
        detect_zones: Zones that go through the detector.
        enable_clahe: Apply CLAHE contrast enhancement to crops before detection.
        slicing: Tiled detection settings.
    """

    model_path: Path = Path("models") / "yolov8n.pt"
    min_confidence: float = 0.25
    device: Optional[str] = None
    detect_zones: List[str] = field(
        default_factory=lambda: [LEFT_END_ZONE, RIGHT_END_ZONE, FIELD]
    )  # type: ignore[misc]
    enable_clahe: bool = False
    slicing: SliceConfig = field(default_factory=SliceConfig)  # type: ignore[misc]


@dataclass
class FeatureConfig:
    """
    Per-frame feature parameters.

    Attributes:
        team_size: Players per team on the field; normalizes zone counts.
        min_zone_players: Players needed in each end zone before the
            pre-point score rises above zero.
        com_zone: Zone whose positions feed the centre of mass. Falls back to
            all counted positions when the zone was not detected.
    """

    team_size: int = 7
    min_zone_players: int = 2
    com_zone: str = FIELD

    def __post_init__(self) -> None:
        if self.team_size < 1:
            raise ValueError("team_size must be >= 1")


@dataclass
class CliffConfig:
    """
    Cliff (point transition) detection thresholds.

    Attributes:
        min_drop: Minimum smoothed pre-point score drop.
        min_prepoint_duration: Frames of "ready" plateau required before a cliff.
        min_post_duration: Frames required after a cliff.
        max_post_proba: Upper bound on the median raw score after a cliff.
        absolute_threshold: Smoothed score right after the cliff must be at most this.
        pre_plateau_min: Lower bound on the median smoothed score before a cliff.
        min_gap: Minimum frames between two accepted cliffs.
        smoothing_window: Trailing mean window for the score.
        lookback_frames: Frames before a cliff inspected by the emptied-first check.
        lookahead_frames: Frames after a cliff inspected by the emptied-first check.
        empty_threshold: A zone count at or below this is "empty".
        empty_consecutive_frames: Consecutive empty frames before a zone counts as emptied.
        simultaneous_frames: Both zones emptying within this many frames is suspicious.
        marginal_drop_margin: Drops below ``min_drop + margin`` are flagged as maybe false.
        tiebreak_frames: How far back a same-frame emptying is resolved by comparing counts.
    """

    min_drop: float = 0.15
    min_prepoint_duration: int = 10
    min_post_duration: int = 10
    max_post_proba: float = 0.55
    absolute_threshold: float = 0.5
    pre_plateau_min: float = 0.5
    min_gap: int = 20
    smoothing_window: int = 3
    lookback_frames: int = 10
    lookahead_frames: int = 15
    empty_threshold: float = 0.0
    empty_consecutive_frames: int = 2
    simultaneous_frames: int = 1
    marginal_drop_margin: float = 0.05
    tiebreak_frames: int = 300

    def __post_init__(self) -> None:
        if self.smoothing_window < 1:
            raise ValueError("smoothing_window must be >= 1")
        if self.empty_consecutive_frames < 1:
            raise ValueError("empty_consecutive_frames must be >= 1")


@dataclass
class TelemetryConfig:
    """
    Progress broadcast cadence.

    Attributes:
        interval_s: Snapshot cadence while something changes.
        keepalive_s: Minimum spacing between keep-alive markers.
        subscriber_buffer: Pending items per subscriber before the oldest is dropped.
    """

    interval_s: float = 0.5
    keepalive_s: float = 1.0
    subscriber_buffer: int = 16


@dataclass
class Config:
    """
    High-level configuration shared by every run of a service instance.

    Attributes:
        video_root: Directory that relative video names are resolved against.
        output_root: Directory holding one sub-directory per run.
        sample_rate: Override of the run's samples/second (None = use metadata.json).
        frame_stride: Use every N-th source frame instead of a sample rate.
        zones: Zones cropped from every frame.
        pipeline: Stage graph sizing.
        detector: Detector settings.
        features: Per-frame feature settings.
        cliffs: Cliff detection thresholds.
        telemetry: Progress broadcast cadence.
    """

    video_root: Path = Path("data") / "videos"
    output_root: Path = Path("outputs")
    sample_rate: Optional[float] = None
    frame_stride: Optional[int] = None
    zones: List[str] = field(
        default_factory=lambda: [LEFT_END_ZONE, RIGHT_END_ZONE, FIELD, OVERVIEW]
    )  # type: ignore[misc]

    pipeline: PipelineConfig = field(default_factory=PipelineConfig)  # type: ignore[misc]
    detector: DetectorConfig = field(default_factory=DetectorConfig)  # type: ignore[misc]
    features: FeatureConfig = field(default_factory=FeatureConfig)  # type: ignore[misc]
    cliffs: CliffConfig = field(default_factory=CliffConfig)  # type: ignore[misc]
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)  # type: ignore[misc]

    def ensure_output_dirs(self) -> None:
        """
        Create the output root if it does not exist.
        """
        self.output_root.mkdir(parents=True, exist_ok=True)

    def run_dir(self, run_id: str) -> Path:
        """
        Directory holding the artifacts of ``run_id``.
        """
        return self.output_root / run_id


def _load_yaml(config_path: Path) -> Dict[str, Any]:
    """
    Load a YAML configuration file. Missing files yield an empty dict.
    """
    if not config_path.exists():
        return {}
    if yaml is None:
        raise ImportError(
            "pyyaml is required to load YAML config files. "
            "Install it with `pip install pyyaml`."
        )
    with config_path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}  # type: ignore[no-untyped-call]
    if not isinstance(data, dict):
        raise ValueError(f"{config_path} must contain a top-level mapping.")
    return cast(Dict[str, Any], data)


def _apply_mapping(target: Any, values: Mapping[str, Any]) -> None:
    """
    Recursively copy ``values`` onto a dataclass instance.

    Nested dataclasses are updated in place; Path-typed defaults are coerced
    from strings. Unknown keys raise so typos do not pass silently.
    """
    known = {f.name for f in fields(target)}
    for key, value in values.items():
        if key not in known:
            raise ValueError(f"Unknown config key '{key}' for {type(target).__name__}")
        current = getattr(target, key)
        if is_dataclass(current) and isinstance(value, Mapping):
            _apply_mapping(current, cast(Mapping[str, Any], value))
        elif isinstance(current, Path) and value is not None:
            setattr(target, key, Path(str(value)))
        elif isinstance(current, dict) and isinstance(value, Mapping):
            merged = dict(cast(Dict[str, Any], current))
            merged.update(cast(Mapping[str, Any], value))
            setattr(target, key, merged)
        else:
            setattr(target, key, value)
    post_init = getattr(target, "__post_init__", None)
    if post_init is not None:
        post_init()


def load_config(config_path: Optional[Path | str] = None) -> Config:
    """
    Build a :class:`Config` from code defaults, an optional YAML file and the environment.

    Precedence (lowest to highest): defaults, YAML, environment variables.
    CLI flags are applied on top by :mod:`sprinting_boxes.main`.
    """
    config = Config()
    if config_path is not None:
        _apply_mapping(config, _load_yaml(Path(config_path)))

    video_root = os.environ.get("SPRINTING_BOXES_VIDEO_ROOT")
    if video_root:
        config.video_root = Path(video_root)
    output_root = os.environ.get("SPRINTING_BOXES_OUTPUT_ROOT")
    if output_root:
        config.output_root = Path(output_root)
    return config
