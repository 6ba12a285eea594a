"""
Core data structures shared by the pipeline stages, the artifacts layer and
the audit engine.

The footage is assumed to come from a single fixed camera overlooking an
ultimate frisbee field, with both end zones visible. Geometry that comes out
of calibration is stored in normalized image coordinates (0..1, top-left
origin); anything handed to OpenCV inside a stage is in pixels.

Frame/CropSet/DetectionResult/FrameFeatures are produced once by a stage and
handed over through a queue; nothing mutates them afterwards.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np

# Pixel bounding box in absolute image coordinates (top-left origin).
BBoxXYXY = Tuple[float, float, float, float]
PixelPoint = Tuple[float, float]
Image = np.ndarray[Any, np.dtype[np.uint8]]

LIGHT = "light"
DARK = "dark"
LEFT = "left"
RIGHT = "right"

LEFT_END_ZONE = "left_end_zone"
RIGHT_END_ZONE = "right_end_zone"
FIELD = "field"
OVERVIEW = "overview"


def opposite_color(color: str) -> str:
    """
    Complement of a team color ("light" <-> "dark").
    """
    return DARK if color == LIGHT else LIGHT


@dataclass(frozen=True)
class Point:
    """
    Normalized 2D point.
    """

    x: float
    y: float


@dataclass(frozen=True)
class BBox:
    """
    Normalized bounding box (top-left corner plus size).

    Attributes:
        x: Left edge in [0, 1].
        y: Top edge in [0, 1].
        w: Width in [0, 1].
        h: Height in [0, 1].
    """

    x: float
    y: float
    w: float
    h: float

    def to_pixels(self, width: int, height: int) -> Tuple[int, int, int, int]:
        """
        Convert to a clamped pixel rectangle ``(x, y, w, h)``.

        The rectangle may have zero width/height when the box lies outside
        the image; callers decide whether that is an error.
        """
        x = min(max(int(round(self.x * width)), 0), width)
        y = min(max(int(round(self.y * height)), 0), height)
        w = min(max(int(round(self.w * width)), 0), width - x)
        h = min(max(int(round(self.h * height)), 0), height - y)
        return x, y, w, h


@dataclass
class Frame:
    """
    A decoded, sampled video frame.

    Attributes:
        frame_index: Zero-based index in the sampled sequence (not the source video).
        image: BGR pixel buffer.
        timestamp_s: Position in the source video, in seconds.
        source_frame: Index of the decoded frame in the source video.
    """

    frame_index: int
    image: Image
    timestamp_s: float
    source_frame: int = 0


@dataclass
class ZoneCrop:
    """
    One zone cut out of a frame.

    Attributes:
        name: Zone name (e.g. ``left_end_zone``).
        image: Cropped BGR pixels.
        offset: Pixel position of the crop's top-left corner in the frame.
        original_polygon: Calibrated polygon in crop-local pixels.
        effective_polygon: Counting polygon in crop-local pixels.
    """

    name: str
    image: Image
    offset: Tuple[int, int]
    original_polygon: List[PixelPoint]
    effective_polygon: List[PixelPoint]


@dataclass
class CropSet:
    """
    All configured zones of one frame.

    Attributes:
        frame_index: Sampled frame index.
        timestamp_s: Source timestamp in seconds.
        frame_size: (width, height) of the full frame in pixels.
        zones: Mapping of zone name -> crop. Always holds every configured zone.
    """

    frame_index: int
    timestamp_s: float
    frame_size: Tuple[int, int]
    zones: Dict[str, ZoneCrop] = field(default_factory=dict)  # type: ignore[misc]


@dataclass(frozen=True)
class Detection:
    """
    Single object detection in pixel coordinates of the image it was run on.

    Attributes:
        bbox_xyxy: Bounding box (x1, y1, x2, y2) in pixels.
        confidence: Detector confidence score.
        label: Class name reported by the detector (e.g. "person").
    """

    bbox_xyxy: BBoxXYXY
    confidence: float
    label: str = "person"

    @property
    def bottom_center(self) -> PixelPoint:
        """
        Foot point of the box, used for zone membership.
        """
        x1, _, x2, y2 = self.bbox_xyxy
        return (x1 + x2) / 2.0, y2


@dataclass
class DetectionResult:
    """
    Per-zone player counts for one frame.

    Attributes:
        frame_index: Sampled frame index.
        timestamp_s: Source timestamp in seconds.
        counts: Zone name -> counted players divided by team size.
        positions: Zone name -> counted player foot points, ROI-normalized.
    """

    frame_index: int
    timestamp_s: float
    counts: Dict[str, float]
    positions: Dict[str, List[PixelPoint]] = field(default_factory=dict)  # type: ignore[misc]


@dataclass
class FrameFeatures:
    """
    Order-independent features of one frame, as produced by the Feature Extractor.

    Temporal features (deltas, cliff flags) are added later, in frame order,
    when the Finalizer turns these into :class:`FeatureRow` objects.
    """

    frame_index: int
    timestamp_s: float
    left_count: float
    right_count: float
    field_count: float
    pre_point_score: float
    com_x: Optional[float] = None
    com_y: Optional[float] = None
    distribution_std_dev: Optional[float] = None


FEATURE_COLUMNS: List[str] = [
    "frame_index",
    "left_count",
    "right_count",
    "field_count",
    "pre_point_score",
    "is_cliff",
    "com_x",
    "com_y",
    "distribution_std_dev",
    "com_delta_x",
    "com_delta_y",
    "std_dev_delta",
]


@dataclass
class FeatureRow:
    """
    One row of the persisted feature table (``features.csv``).

    CoM and dispersion fields are ``None`` when no player positions were
    counted in the frame; deltas are ``None`` when either side is missing.
    """

    frame_index: int
    left_count: float
    right_count: float
    field_count: float
    pre_point_score: float
    is_cliff: bool = False
    com_x: Optional[float] = None
    com_y: Optional[float] = None
    distribution_std_dev: Optional[float] = None
    com_delta_x: Optional[float] = None
    com_delta_y: Optional[float] = None
    std_dev_delta: Optional[float] = None


@dataclass
class CliffCandidate:
    """
    Raw point-transition event emitted by the Finalizer.

    Attributes:
        frame_index: Frame where the pre-point score falls off the plateau.
        timestamp_s: Source timestamp in seconds.
        left_emptied_first: Left end zone emptied before the right one.
        right_emptied_first: Right end zone emptied before the left one.
        maybe_false_positive: Heuristics could not attribute the pull cleanly.
        drop: Effective smoothed score drop at the cliff.
    """

    frame_index: int
    timestamp_s: float
    left_emptied_first: bool = False
    right_emptied_first: bool = False
    maybe_false_positive: bool = False
    drop: float = 0.0


class CliffStatus(str, Enum):
    """
    Review status of a cliff.
    """

    UNCONFIRMED = "Unconfirmed"
    CONFIRMED = "Confirmed"
    FALSE_POSITIVE = "FalsePositive"

    @classmethod
    def parse(cls, value: object) -> "CliffStatus":
        """
        Lenient parse: unknown values fall back to ``Unconfirmed``.
        """
        try:
            return cls(str(value))
        except ValueError:
            return cls.UNCONFIRMED


@dataclass
class CliffData:
    """
    A reviewed (or reviewable) point transition with its derived score state.

    ``manual_side_override`` and ``manual_color_override`` are operator input.
    ``left_team_color``, ``right_team_color``, ``score_light``, ``score_dark``
    and ``is_break`` are derived and rewritten on every recompute.

    Attributes:
        frame_index: Sampled frame index of the cliff.
        timestamp: Wall-clock style "HH:MM:SS" label.
        left_emptied_first: Detector heuristic flag.
        right_emptied_first: Detector heuristic flag.
        maybe_false_positive: Detector heuristic flag.
        status: Review status.
        manual_side_override: "left" / "right" pulling side set by the operator.
        manual_color_override: "light" / "dark" color of the left side set by the operator.
        left_team_color: Derived color of the team on the left.
        right_team_color: Derived color of the team on the right.
        score_light: Running light score after this point.
        score_dark: Running dark score after this point.
        is_break: The pulling team pulls again on the next valid point.
    """

    frame_index: int
    timestamp: str = "00:00:00"
    left_emptied_first: bool = False
    right_emptied_first: bool = False
    maybe_false_positive: bool = False
    status: CliffStatus = CliffStatus.UNCONFIRMED
    manual_side_override: Optional[str] = None
    manual_color_override: Optional[str] = None
    left_team_color: Optional[str] = None
    right_team_color: Optional[str] = None
    score_light: int = 0
    score_dark: int = 0
    is_break: bool = False

    @property
    def is_valid(self) -> bool:
        return self.status != CliffStatus.FALSE_POSITIVE

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert to a JSON-serializable dictionary.
        """
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CliffData":
        """
        Construct from a mapping (e.g., loaded JSON). Missing keys take defaults.
        """
        return cls(
            frame_index=int(data["frame_index"]),
            timestamp=str(data.get("timestamp") or "00:00:00"),
            left_emptied_first=bool(data.get("left_emptied_first", False)),
            right_emptied_first=bool(data.get("right_emptied_first", False)),
            maybe_false_positive=bool(data.get("maybe_false_positive", False)),
            status=CliffStatus.parse(data.get("status", CliffStatus.UNCONFIRMED.value)),
            manual_side_override=data.get("manual_side_override"),
            manual_color_override=data.get("manual_color_override"),
            left_team_color=data.get("left_team_color"),
            right_team_color=data.get("right_team_color"),
            score_light=int(data.get("score_light", 0) or 0),
            score_dark=int(data.get("score_dark", 0) or 0),
            is_break=bool(data.get("is_break", False)),
        )


@dataclass
class AuditSettings:
    """
    Per-run audit settings.

    Attributes:
        light_team_name: Display name of the light team.
        dark_team_name: Display name of the dark team.
        initial_score_light: Light score before the first reviewed point.
        initial_score_dark: Dark score before the first reviewed point.
        time_offset_secs: Extra offset added to every timestamp.
        video_start_time: "HH:MM:SS" (or "MM:SS") of the game clock at video start.
    """

    light_team_name: str = "Team A"
    dark_team_name: str = "Team B"
    initial_score_light: int = 0
    initial_score_dark: int = 0
    time_offset_secs: float = 0.0
    video_start_time: str = "00:00:00"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuditSettings":
        defaults = cls()
        return cls(
            light_team_name=str(data.get("light_team_name", defaults.light_team_name)),
            dark_team_name=str(data.get("dark_team_name", defaults.dark_team_name)),
            initial_score_light=int(data.get("initial_score_light", 0) or 0),
            initial_score_dark=int(data.get("initial_score_dark", 0) or 0),
            time_offset_secs=float(data.get("time_offset_secs", 0.0) or 0.0),
            video_start_time=str(data.get("video_start_time") or defaults.video_start_time),
        )


@dataclass
class AuditState:
    """
    Cliffs plus settings, as stored in ``audit.json``.
    """

    cliffs: List[CliffData] = field(default_factory=list)  # type: ignore[misc]
    settings: AuditSettings = field(default_factory=AuditSettings)  # type: ignore[misc]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cliffs": [c.to_dict() for c in self.cliffs],
            "settings": self.settings.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuditState":
        cliffs = [CliffData.from_dict(c) for c in data.get("cliffs", []) or []]
        settings = AuditSettings.from_dict(data.get("settings", {}) or {})
        return cls(cliffs=cliffs, settings=settings)


class RunState(str, Enum):
    """
    Lifecycle state of a processing run.
    """

    IDLE = "Idle"
    STARTING = "Starting"
    RUNNING = "Running"
    COMPLETED = "Completed"
    STOPPED = "Stopped"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.STOPPED, RunState.FAILED)


@dataclass(frozen=True)
class StageProgress:
    """
    Progress counters of one stage.

    Attributes:
        current: Items processed so far (including resumed frames).
        total: Items expected for the whole run.
        ms_per_frame: Exponentially smoothed milliseconds per item for the pool.
        workers: Workers currently alive in the pool.
        done: True once the stage has processed its last item.
    """

    current: int = 0
    total: int = 0
    ms_per_frame: float = 0.0
    workers: int = 0
    done: bool = False


@dataclass(frozen=True)
class ProgressSnapshot:
    """
    Immutable view of a run's progress, published to subscribers.

    A non-null ``error`` is authoritative over ``is_active``.
    """

    run_id: str
    state: RunState
    total_frames: int
    is_active: bool
    is_complete: bool
    error: Optional[str]
    stages: Dict[str, StageProgress]
    version: int = 0

    @property
    def fps(self) -> float:
        """
        Observed throughput, bounded by the slowest stage still working.
        """
        rates = [
            s.ms_per_frame for s in self.stages.values() if s.ms_per_frame > 0.0 and not s.done
        ]
        if not rates:
            return 0.0
        return 1000.0 / max(rates)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        """
        JSON-friendly form used by the CLI and event streams.
        """
        fps = self.fps
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "total_frames": self.total_frames,
            "is_active": self.is_active,
            "is_complete": self.is_complete,
            "error": self.error,
            "fps": round(fps, 3) if math.isfinite(fps) else 0.0,
            "stages": {name: asdict(stage) for name, stage in self.stages.items()},
        }


@dataclass(frozen=True)
class KeepAlive:
    """
    Marker sent to subscribers when nothing changed since the last snapshot.
    """

    run_id: str
    timestamp_s: float
