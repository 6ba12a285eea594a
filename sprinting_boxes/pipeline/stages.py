"""
Stage handlers: Reader, Cropper, Detector and Feature Extractor.

Each handler is a small callable owned by exactly one worker thread, so it
may hold per-thread resources (a video capture, a detector model, a CLAHE
object). The Finalizer lives in :mod:`sprinting_boxes.pipeline.finalize`.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional, Sequence

import cv2

from ..config import DetectorConfig, FeatureConfig
from ..crop_config import CropConfig
from ..data_structures import (
    CropSet,
    DetectionResult,
    Frame,
    FrameFeatures,
    Image,
    PixelPoint,
    ZoneCrop,
)
from ..detection import Detector
from ..errors import Cancelled
from ..features import compute_frame_features
from ..slicing import detect_with_slicing
from ..utils.geometry import point_in_polygon, transform_polygon
from ..video_io import FrameSource

logger = logging.getLogger(__name__)

PERSON_LABEL = "person"


class ReaderStage:
    """
    Decode the sampled frame for each admitted index.
    """

    def __init__(self, source: FrameSource, abort: Optional[threading.Event] = None) -> None:
        self.source = source
        self.abort = abort

    def __call__(self, unit: int) -> Frame:
        if self.abort is not None and self.abort.is_set():
            raise Cancelled(f"read of frame {unit} cancelled")
        return self.source.read(unit)

    def close(self) -> None:
        self.source.release()


def apply_clahe(image: Image, clahe: "cv2.CLAHE") -> Image:
    """
    Equalize the lightness channel (Lab) of a BGR image.
    """
    lab = cv2.cvtColor(image, cv2.COLOR_BGR2LAB)
    lightness, a, b = cv2.split(lab)
    merged = cv2.merge((clahe.apply(lightness), a, b))
    return cv2.cvtColor(merged, cv2.COLOR_LAB2BGR)  # type: ignore[return-value]


class CropStage:
    """
    Cut every configured zone out of a frame.

    Raises ``ValueError`` when a zone maps to an empty pixel rectangle, which
    means the calibration does not match the video.
    """

    def __init__(self, crop_config: CropConfig, enable_clahe: bool = False) -> None:
        self.crop_config = crop_config
        self._clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8)) if enable_clahe else None

    def __call__(self, frame: Frame) -> CropSet:
        height, width = frame.image.shape[:2]
        zones: Dict[str, ZoneCrop] = {}
        for name, zone in self.crop_config.zones.items():
            x, y, w, h = zone.bbox.to_pixels(width, height)
            if w == 0 or h == 0:
                raise ValueError(f"zone '{name}' is empty in a {width}x{height} frame")
            image = frame.image[y : y + h, x : x + w]
            if self._clahe is not None:
                image = apply_clahe(image, self._clahe)
            zones[name] = ZoneCrop(
                name=name,
                image=image,
                offset=(x, y),
                original_polygon=transform_polygon(zone.original_polygon, zone.bbox, w, h),
                effective_polygon=transform_polygon(zone.effective_polygon, zone.bbox, w, h),
            )
        return CropSet(
            frame_index=frame.frame_index,
            timestamp_s=frame.timestamp_s,
            frame_size=(width, height),
            zones=zones,
        )


class DetectStage:
    """
    Count players per zone.

    A person counts for a zone when the bottom-centre of its box lies inside
    the zone's effective polygon; zones without a polygon count every
    detection in the crop. Counts are divided by ``team_size`` and the counted
    foot points are reported in ROI-normalized coordinates.
    """

    def __init__(
        self,
        detector: Detector,
        config: DetectorConfig,
        crop_config: CropConfig,
        team_size: int = 7,
    ) -> None:
        self.detector = detector
        self.config = config
        self.crop_config = crop_config
        self.team_size = team_size

    def _count_zone(self, crop: ZoneCrop, roi: Sequence[int]) -> List[PixelPoint]:
        detections = detect_with_slicing(
            self.detector, crop.image, self.config.slicing, self.config.min_confidence
        )
        roi_x, roi_y, roi_w, roi_h = roi
        points: List[PixelPoint] = []
        for det in detections:
            if det.label != PERSON_LABEL:
                continue
            foot = det.bottom_center
            if crop.effective_polygon and not point_in_polygon(foot, crop.effective_polygon):
                continue
            gx = crop.offset[0] + foot[0]
            gy = crop.offset[1] + foot[1]
            points.append(
                (
                    (gx - roi_x) / roi_w if roi_w else 0.0,
                    (gy - roi_y) / roi_h if roi_h else 0.0,
                )
            )
        return points

    def __call__(self, crops: CropSet) -> DetectionResult:
        width, height = crops.frame_size
        roi = self.crop_config.roi.to_pixels(width, height)
        counts: Dict[str, float] = {}
        positions: Dict[str, List[PixelPoint]] = {}
        for name in self.config.detect_zones:
            crop = crops.zones.get(name)
            if crop is None:
                counts[name] = 0.0
                continue
            points = self._count_zone(crop, roi)
            counts[name] = len(points) / float(self.team_size)
            positions[name] = points
        logger.debug("Frame %d counts: %s", crops.frame_index, counts)
        return DetectionResult(
            frame_index=crops.frame_index,
            timestamp_s=crops.timestamp_s,
            counts=counts,
            positions=positions,
        )

    def close(self) -> None:
        close = getattr(self.detector, "close", None)
        if callable(close):
            close()


class FeatureStage:
    """
    Order-independent per-frame features.
    """

    def __init__(self, config: FeatureConfig) -> None:
        self.config = config

    def __call__(self, result: DetectionResult) -> FrameFeatures:
        return compute_frame_features(result, self.config)
