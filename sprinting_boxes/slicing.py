"""
Tiled ("sliced") detection for small, distant players.

A crop is cut into overlapping square tiles, every tile goes through the
detector at native resolution, and the per-tile boxes are shifted back to
crop coordinates and merged with non-max suppression.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

import cv2
import numpy as np

from .config import SliceConfig
from .data_structures import Detection, Image
from .detection import Detector

logger = logging.getLogger(__name__)


@dataclass
class Tile:
    """
    A tile cut from a larger image.

    Attributes:
        image: Tile pixels, zero-padded to ``tile_size`` x ``tile_size``.
        x_offset: Left edge of the tile in the source image.
        y_offset: Top edge of the tile in the source image.
        width: Width of the unpadded tile.
        height: Height of the unpadded tile.
    """

    image: Image
    x_offset: int
    y_offset: int
    width: int
    height: int


def generate_offsets(total_size: int, tile_size: int, stride: int) -> List[int]:
    """
    Tile origins along one axis.

    Tiles step by ``stride`` until one reaches the edge; if the last tile
    would overhang, an extra edge-aligned tile is added so the border is
    covered without padding.
    """
    offsets: List[int] = []
    pos = 0
    while pos < total_size:
        offsets.append(pos)
        if pos + tile_size >= total_size:
            break
        pos += stride

    if offsets:
        last = offsets[-1]
        if last + tile_size > total_size and total_size >= tile_size:
            edge_aligned = total_size - tile_size
            if edge_aligned != last:
                offsets.append(edge_aligned)
    return sorted(set(offsets))


def generate_tiles(image: Image, config: SliceConfig) -> List[Tile]:
    """
    Cut ``image`` into overlapping tiles. Returns nothing when slicing is disabled.
    """
    if not config.is_enabled:
        return []
    img_h, img_w = image.shape[:2]
    size = config.tile_size
    tiles: List[Tile] = []
    for y in generate_offsets(img_h, size, config.stride):
        for x in generate_offsets(img_w, size, config.stride):
            w = min(size, img_w - x)
            h = min(size, img_h - y)
            tile = image[y : y + h, x : x + w]
            if w < size or h < size:
                tile = cv2.copyMakeBorder(
                    tile, 0, size - h, 0, size - w, cv2.BORDER_CONSTANT, value=(0, 0, 0)
                )
            else:
                tile = tile.copy()
            tiles.append(Tile(image=tile, x_offset=x, y_offset=y, width=w, height=h))
    return tiles


def nms(detections: List[Detection], iou_threshold: float) -> List[Detection]:
    """
    Non-max suppression with ``cv2.dnn.NMSBoxes``, highest confidence first.

    A box is dropped when it overlaps an already kept box by more than
    ``iou_threshold``.
    """
    if not detections:
        return []
    boxes = [
        [float(x1), float(y1), float(x2 - x1), float(y2 - y1)]
        for x1, y1, x2, y2 in (d.bbox_xyxy for d in detections)
    ]
    scores = [float(d.confidence) for d in detections]
    # Confidence filtering already happened per tile.
    indices = cv2.dnn.NMSBoxes(boxes, scores, 0.0, float(iou_threshold))
    return [detections[int(i)] for i in np.array(indices).flatten()]


def shift_detection(detection: Detection, tile: Tile) -> Detection:
    """
    Move a tile-local detection into source image coordinates.
    """
    x1, y1, x2, y2 = detection.bbox_xyxy
    return Detection(
        bbox_xyxy=(x1 + tile.x_offset, y1 + tile.y_offset, x2 + tile.x_offset, y2 + tile.y_offset),
        confidence=detection.confidence,
        label=detection.label,
    )


def detect_with_slicing(
    detector: Detector,
    image: Image,
    config: SliceConfig,
    min_confidence: float,
) -> List[Detection]:
    """
    Run ``detector`` over overlapping tiles of ``image`` and merge the results.

    Tiles are sent in batches of ``config.batch_size``. Falls back to a single
    full-image call when slicing is disabled.
    """
    if not config.is_enabled:
        return [d for d in detector.detect(image) if d.confidence >= min_confidence]

    tiles = generate_tiles(image, config)
    logger.debug("Detecting with slicing: %d tiles", len(tiles))
    merged: List[Detection] = []
    batch_size = max(1, config.batch_size)
    for start in range(0, len(tiles), batch_size):
        chunk = tiles[start : start + batch_size]
        results = detector.detect_batch([t.image for t in chunk])
        for tile, detections in zip(chunk, results):
            for det in detections:
                if det.confidence < min_confidence:
                    continue
                merged.append(shift_detection(det, tile))
    return nms(merged, config.nms_iou_threshold)
