"""
Calibration artifacts: field boundaries and the crop configuration derived from them.

Designed for a static camera where the field and both end zones are visible.
An operator marks the three polygons once per run (``field_boundaries.json``,
optionally relative to a region of interest); :func:`compute_crop_config`
turns them into per-zone crop rectangles and counting polygons
(``crops.json``) that the Cropper applies to every frame.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .data_structures import FIELD, LEFT_END_ZONE, OVERVIEW, RIGHT_END_ZONE, BBox, Point
from .errors import MissingCropConfig, PreconditionFailed
from .utils.geometry import (
    compute_bbox_with_padding,
    compute_buffer_distance,
    compute_effective_polygon,
)

logger = logging.getLogger(__name__)

FIELD_BOUNDARIES_FILE = "field_boundaries.json"
CROPS_FILE = "crops.json"

# Padding added around every crop so buffered polygons stay inside the crop.
CROP_PADDING = 0.01
# End zone buffer as a fraction of the zone's diagonal.
BUFFER_PCT = 0.03


def _points_from(data: object) -> List[Point]:
    return [Point(float(p["x"]), float(p["y"])) for p in (data or [])]  # type: ignore[index,union-attr]


def _points_to(points: Sequence[Point]) -> List[Dict[str, float]]:
    return [{"x": p.x, "y": p.y} for p in points]


def _bbox_from(data: Mapping[str, Any]) -> BBox:
    return BBox(x=float(data["x"]), y=float(data["y"]), w=float(data["w"]), h=float(data["h"]))


def _bbox_to(bbox: BBox) -> Dict[str, float]:
    return {"x": bbox.x, "y": bbox.y, "w": bbox.w, "h": bbox.h}


@dataclass
class FieldBoundaries:
    """
    Operator-marked polygons for one run.

    Attributes:
        field: Playing field polygon.
        left_end_zone: Left end zone polygon.
        right_end_zone: Right end zone polygon.
        roi: Optional region of interest. When set, the polygons are relative to it.
    """

    field: List[Point]
    left_end_zone: List[Point]
    right_end_zone: List[Point]
    roi: Optional[BBox] = None

    def get_global_points(self, points: Sequence[Point]) -> List[Point]:
        """
        Map ROI-relative points to global normalized coordinates.
        """
        if self.roi is None:
            return list(points)
        roi = self.roi
        return [Point(roi.x + p.x * roi.w, roi.y + p.y * roi.h) for p in points]

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {
            "field": _points_to(self.field),
            "left_end_zone": _points_to(self.left_end_zone),
            "right_end_zone": _points_to(self.right_end_zone),
        }
        if self.roi is not None:
            data["roi"] = {
                "x_normalized": self.roi.x,
                "y_normalized": self.roi.y,
                "width_normalized": self.roi.w,
                "height_normalized": self.roi.h,
            }
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FieldBoundaries":
        roi_data = data.get("roi")
        roi = None
        if isinstance(roi_data, Mapping):
            roi = BBox(
                x=float(roi_data["x_normalized"]),
                y=float(roi_data["y_normalized"]),
                w=float(roi_data["width_normalized"]),
                h=float(roi_data["height_normalized"]),
            )
        return cls(
            field=_points_from(data.get("field")),
            left_end_zone=_points_from(data.get("left_end_zone")),
            right_end_zone=_points_from(data.get("right_end_zone")),
            roi=roi,
        )


@dataclass
class ZoneConfig:
    """
    Crop rectangle and polygons of one zone, in global normalized coordinates.

    Attributes:
        name: Zone name.
        bbox: Crop rectangle.
        original_polygon: Polygon as calibrated.
        effective_polygon: Polygon used for counting detections.
    """

    name: str
    bbox: BBox
    original_polygon: List[Point] = field(default_factory=list)  # type: ignore[misc]
    effective_polygon: List[Point] = field(default_factory=list)  # type: ignore[misc]

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "bbox": _bbox_to(self.bbox),
            "original_polygon": _points_to(self.original_polygon),
            "effective_polygon": _points_to(self.effective_polygon),
        }

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> "ZoneConfig":
        return cls(
            name=name,
            bbox=_bbox_from(data["bbox"]),
            original_polygon=_points_from(data.get("original_polygon")),
            effective_polygon=_points_from(data.get("effective_polygon")),
        )


@dataclass
class CropConfig:
    """
    Every zone cropped from each frame, plus the ROI used to normalize positions.
    """

    roi: BBox
    zones: Dict[str, ZoneConfig]

    def to_dict(self) -> Dict[str, object]:
        return {
            "roi": _bbox_to(self.roi),
            "zones": {name: zone.to_dict() for name, zone in self.zones.items()},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CropConfig":
        """
        Parse ``crops.json``.

        Older files store the two end zones as top-level keys without a ROI;
        those are accepted and the ROI becomes the union of the zone boxes.
        """
        zones_data: Mapping[str, Any] = data.get("zones") or {
            key: value
            for key, value in data.items()
            if key != "roi" and isinstance(value, Mapping) and "bbox" in value
        }
        zones = {name: ZoneConfig.from_dict(name, z) for name, z in zones_data.items()}
        if not zones:
            raise MissingCropConfig("crop configuration defines no zones")
        roi_data = data.get("roi")
        if isinstance(roi_data, Mapping):
            roi = _bbox_from(roi_data)
        else:
            x1 = min(z.bbox.x for z in zones.values())
            y1 = min(z.bbox.y for z in zones.values())
            x2 = max(z.bbox.x + z.bbox.w for z in zones.values())
            y2 = max(z.bbox.y + z.bbox.h for z in zones.values())
            roi = BBox(x=x1, y=y1, w=x2 - x1, h=y2 - y1)
        return cls(roi=roi, zones=zones)


def compute_crop_config(
    boundaries: FieldBoundaries,
    zones: Sequence[str] = (LEFT_END_ZONE, RIGHT_END_ZONE, FIELD, OVERVIEW),
    crop_padding: float = CROP_PADDING,
    buffer_pct: float = BUFFER_PCT,
) -> CropConfig:
    """
    Derive crop rectangles and counting polygons from field boundaries.

    End zones count players in ``original ∪ (buffered ∩ field)``; the field
    and the overview count inside the calibrated field polygon.

    Raises:
        PreconditionFailed: When a polygon is missing or degenerate.
    """
    field_global = boundaries.get_global_points(boundaries.field)
    if len(field_global) < 3:
        raise PreconditionFailed("field polygon needs at least three points")

    configs: Dict[str, ZoneConfig] = {}
    for name, raw in (
        (LEFT_END_ZONE, boundaries.left_end_zone),
        (RIGHT_END_ZONE, boundaries.right_end_zone),
    ):
        if name not in zones:
            continue
        zone_global = boundaries.get_global_points(raw)
        if len(zone_global) < 3:
            raise PreconditionFailed(f"{name} polygon needs at least three points")
        distance = compute_buffer_distance(zone_global, buffer_pct)
        effective = compute_effective_polygon(zone_global, field_global, distance)
        bbox = compute_bbox_with_padding(effective, crop_padding)
        if bbox is None:
            raise PreconditionFailed(f"could not compute a crop box for {name}")
        configs[name] = ZoneConfig(
            name=name, bbox=bbox, original_polygon=zone_global, effective_polygon=effective
        )

    field_bbox = compute_bbox_with_padding(field_global, crop_padding)
    if field_bbox is None:
        raise PreconditionFailed("could not compute a crop box for the field")
    if FIELD in zones:
        configs[FIELD] = ZoneConfig(
            name=FIELD,
            bbox=field_bbox,
            original_polygon=field_global,
            effective_polygon=field_global,
        )

    if boundaries.roi is not None:
        roi = boundaries.roi
    else:
        everything: List[Point] = list(field_global)
        for zone in configs.values():
            everything.extend(zone.effective_polygon)
        roi = compute_bbox_with_padding(everything, crop_padding) or field_bbox

    if OVERVIEW in zones:
        configs[OVERVIEW] = ZoneConfig(
            name=OVERVIEW,
            bbox=roi,
            original_polygon=field_global,
            effective_polygon=field_global,
        )

    logger.info("Computed crop config for zones %s", sorted(configs))
    return CropConfig(roi=roi, zones=configs)


def load_field_boundaries(path: Path | str) -> FieldBoundaries:
    """
    Load ``field_boundaries.json``.

    Raises:
        PreconditionFailed: When the file does not exist.
    """
    path = Path(path)
    if not path.exists():
        raise PreconditionFailed(f"Field boundaries must be defined before processing ({path}).")
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    return FieldBoundaries.from_dict(data)


def save_field_boundaries(boundaries: FieldBoundaries, path: Path | str) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(boundaries.to_dict(), f, indent=2)


def load_crop_config(path: Path | str) -> CropConfig:
    """
    Load ``crops.json``.

    Raises:
        MissingCropConfig: When the file does not exist or defines no zone.
    """
    path = Path(path)
    if not path.exists():
        raise MissingCropConfig(f"Crop configurations must be generated before processing ({path}).")
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    return CropConfig.from_dict(data)


def save_crop_config(config: CropConfig, path: Path | str) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(config.to_dict(), f, indent=2)
