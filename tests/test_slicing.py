import numpy as np

from sprinting_boxes.config import SliceConfig
from sprinting_boxes.data_structures import Detection
from sprinting_boxes.slicing import detect_with_slicing, generate_offsets, generate_tiles, nms

from .conftest import BlobDetector


def test_generate_offsets_adds_edge_aligned_tile():
    assert generate_offsets(100, 40, 32) == [0, 32, 60, 64]
    assert generate_offsets(30, 40, 32) == [0]
    assert generate_offsets(64, 32, 32) == [0, 32]


def test_tiles_are_padded_to_tile_size():
    image = np.zeros((30, 50, 3), dtype=np.uint8)
    tiles = generate_tiles(image, SliceConfig(tile_size=40, overlap=0.2))
    assert [(t.x_offset, t.y_offset) for t in tiles] == [(0, 0), (10, 0), (32, 0)]
    assert all(t.image.shape == (40, 40, 3) for t in tiles)
    assert tiles[0].height == 30


def test_disabled_slicing_yields_no_tiles():
    assert generate_tiles(np.zeros((10, 10, 3), dtype=np.uint8), SliceConfig()) == []


def test_nms_threshold_is_an_upper_bound_on_kept_overlap():
    # The two boxes overlap with IoU 1/3.
    a = Detection(bbox_xyxy=(0, 0, 10, 10), confidence=0.9)
    b = Detection(bbox_xyxy=(5, 0, 15, 10), confidence=0.8)
    assert nms([b, a], 0.3) == [a]
    assert nms([b, a], 0.4) == [a, b]


def test_nms_of_nothing():
    assert nms([], 0.5) == []


def test_nms_keeps_highest_confidence():
    a = Detection(bbox_xyxy=(0, 0, 10, 10), confidence=0.9)
    b = Detection(bbox_xyxy=(1, 0, 11, 10), confidence=0.8)
    c = Detection(bbox_xyxy=(50, 50, 60, 60), confidence=0.5)
    assert nms([b, c, a], 0.5) == [a, c]


def test_sliced_detection_matches_full_image():
    image = np.zeros((60, 120, 3), dtype=np.uint8)
    for x in (5, 40, 75, 110):
        image[20:30, x : x + 4] = 255
    full = detect_with_slicing(BlobDetector(), image, SliceConfig(), 0.25)
    sliced = detect_with_slicing(BlobDetector(), image, SliceConfig(tile_size=48, overlap=0.25), 0.25)
    key = lambda d: d.bbox_xyxy  # noqa: E731
    assert sorted(map(key, sliced)) == sorted(map(key, full))
    assert len(full) == 4


def test_low_confidence_is_filtered():
    class Weak:
        def detect(self, image):
            return [Detection(bbox_xyxy=(0, 0, 1, 1), confidence=0.1)]

        def detect_batch(self, images):
            return [self.detect(i) for i in images]

    image = np.zeros((10, 10, 3), dtype=np.uint8)
    assert detect_with_slicing(Weak(), image, SliceConfig(), 0.25) == []
    assert detect_with_slicing(Weak(), image, SliceConfig(tile_size=8), 0.25) == []
