"""Shared fixtures for the sprinting_boxes test-suite.

The pipeline fixtures build a synthetic game instead of decoding a real
video: 200x100 black frames where every player is a small white rectangle.
A blob detector (connected components) stands in for YOLO, so counts are
exact and the expected cliff can be derived by hand.

Scenario (``game_scene``):
- 100 sampled frames, 7 players lined up in each end zone until the pull.
- The left end zone empties at frame 60, the right one at frame 63.
- Two players stand in the middle of the field throughout.
"""
import logging
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

import cv2
import numpy as np
import pytest

from sprinting_boxes.config import Config, PipelineConfig, TelemetryConfig
from sprinting_boxes.crop_config import (
    CropConfig,
    FieldBoundaries,
    ZoneConfig,
    save_crop_config,
    save_field_boundaries,
)
from sprinting_boxes.data_structures import (
    FIELD,
    LEFT_END_ZONE,
    OVERVIEW,
    RIGHT_END_ZONE,
    BBox,
    Detection,
    Frame,
    Point,
)
from sprinting_boxes.run_context import RunContext, create_run
from sprinting_boxes.service import PipelineService

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

FRAME_W = 200
FRAME_H = 100
TOTAL_FRAMES = 100
LEFT_EMPTY_AT = 60
RIGHT_EMPTY_AT = 63
LEFT_PLAYERS = [3, 9, 15, 21, 27, 33, 39]
RIGHT_PLAYERS = [153, 159, 165, 171, 177, 183, 189]
FIELD_PLAYERS = [90, 110]


def rect(x1: float, x2: float) -> List[Point]:
    return [Point(x1, 0.0), Point(x2, 0.0), Point(x2, 1.0), Point(x1, 1.0)]


def render_frame(index: int) -> np.ndarray:
    """Draw the players of the scenario for sampled frame ``index``."""
    image = np.zeros((FRAME_H, FRAME_W, 3), dtype=np.uint8)
    xs = list(FIELD_PLAYERS)
    if index < LEFT_EMPTY_AT:
        xs += LEFT_PLAYERS
    if index < RIGHT_EMPTY_AT:
        xs += RIGHT_PLAYERS
    for x in xs:
        image[20:30, x : x + 4] = 255
    return image


class ArrayFrameSource:
    """In-memory frame source; optionally fails or blocks at a given frame."""

    def __init__(
        self,
        total: int = TOTAL_FRAMES,
        render: Callable[[int], np.ndarray] = render_frame,
        fail_at: Optional[int] = None,
        gate_at: Optional[int] = None,
        gate: Optional[threading.Event] = None,
        reached: Optional[threading.Event] = None,
    ) -> None:
        self._total = total
        self._render = render
        self.fail_at = fail_at
        self.gate_at = gate_at
        self.gate = gate
        self.reached = reached
        self.released = False

    @property
    def total_frames(self) -> int:
        return self._total

    def read(self, unit: int) -> Frame:
        if self.fail_at is not None and unit == self.fail_at:
            raise IOError(f"Could not decode frame {unit}")
        if self.gate_at is not None and self.gate is not None and unit >= self.gate_at:
            if not self.gate.is_set():
                if self.reached is not None:
                    self.reached.set()
                self.gate.wait(10)
        return Frame(
            frame_index=unit,
            image=self._render(unit),
            timestamp_s=float(unit),
            source_frame=unit,
        )

    def release(self) -> None:
        self.released = True


class BlobDetector:
    """Reports every white connected component as a person."""

    def detect(self, image: np.ndarray) -> List[Detection]:
        image = np.ascontiguousarray(image)
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY) if image.ndim == 3 else image
        _, binary = cv2.threshold(gray, 127, 255, cv2.THRESH_BINARY)
        count, _, stats, _ = cv2.connectedComponentsWithStats(binary, connectivity=8)
        detections = []
        for label in range(1, count):
            x, y, w, h, _ = (int(v) for v in stats[label])
            detections.append(
                Detection(bbox_xyxy=(float(x), float(y), float(x + w), float(y + h)), confidence=0.9)
            )
        return detections

    def detect_batch(self, images):
        return [self.detect(image) for image in images]


@pytest.fixture
def frame_source_factory():
    """Factory building ``ArrayFrameSource`` objects; keyword arguments are forwarded."""

    def factory(**kwargs) -> ArrayFrameSource:
        return ArrayFrameSource(**kwargs)

    return factory


@pytest.fixture
def blob_detector() -> BlobDetector:
    return BlobDetector()


@pytest.fixture
def scene_crop_config() -> CropConfig:
    """Crop configuration matching the synthetic scene (full-height vertical bands)."""
    zones: Dict[str, ZoneConfig] = {
        LEFT_END_ZONE: ZoneConfig(
            name=LEFT_END_ZONE,
            bbox=BBox(0.0, 0.0, 0.25, 1.0),
            original_polygon=rect(0.0, 0.25),
            effective_polygon=rect(0.0, 0.25),
        ),
        RIGHT_END_ZONE: ZoneConfig(
            name=RIGHT_END_ZONE,
            bbox=BBox(0.75, 0.0, 0.25, 1.0),
            original_polygon=rect(0.75, 1.0),
            effective_polygon=rect(0.75, 1.0),
        ),
        FIELD: ZoneConfig(
            name=FIELD,
            bbox=BBox(0.25, 0.0, 0.5, 1.0),
            original_polygon=rect(0.25, 0.75),
            effective_polygon=rect(0.25, 0.75),
        ),
        OVERVIEW: ZoneConfig(
            name=OVERVIEW,
            bbox=BBox(0.0, 0.0, 1.0, 1.0),
            original_polygon=rect(0.25, 0.75),
            effective_polygon=rect(0.25, 0.75),
        ),
    }
    return CropConfig(roi=BBox(0.0, 0.0, 1.0, 1.0), zones=zones)


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Service configuration with short timeouts, rooted in a temporary directory."""
    config = Config(
        video_root=tmp_path / "videos",
        output_root=tmp_path / "outputs",
        pipeline=PipelineConfig(
            queue_capacity=8,
            max_in_flight=16,
            push_timeout_s=0.05,
            pop_timeout_s=0.02,
            supervisor_interval_s=0.01,
        ),
        telemetry=TelemetryConfig(interval_s=0.02, keepalive_s=0.05, subscriber_buffer=256),
    )
    config.video_root.mkdir(parents=True)
    config.ensure_output_dirs()
    return config


@pytest.fixture
def calibrated_run(test_config: Config, scene_crop_config: CropConfig) -> RunContext:
    """A run directory with metadata, field boundaries and crops ready for processing."""
    (test_config.video_root / "game.mp4").write_bytes(b"")
    context = create_run(test_config.output_root, test_config.video_root, "game.mp4")
    boundaries = FieldBoundaries(
        field=rect(0.25, 0.75),
        left_end_zone=rect(0.0, 0.25),
        right_end_zone=rect(0.75, 1.0),
    )
    save_field_boundaries(boundaries, context.field_boundaries_path)
    save_crop_config(scene_crop_config, context.crops_path)
    return context


@pytest.fixture
def make_service(test_config: Config):
    """Build a ``PipelineService`` using the blob detector and a custom source factory."""
    services: List[PipelineService] = []

    def factory(source_factory: Optional[Callable[[], ArrayFrameSource]] = None) -> PipelineService:
        build = source_factory or ArrayFrameSource

        def open_source(path, sample_rate, stride, backend):
            return build()

        service = PipelineService(
            test_config,
            detector_factory=BlobDetector,
            source_factory=open_source,
        )
        services.append(service)
        return service

    yield factory

    for service in services:
        for run in service.active_runs():
            run.stop()
            run.wait(5)
