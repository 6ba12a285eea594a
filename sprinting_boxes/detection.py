"""
Person detection on zone crops.

Detect workers each build their own detector through :func:`create_detector`;
ultralytics models keep per-call state and are not shared across threads.
Anything with ``detect`` / ``detect_batch`` methods satisfies the
:class:`Detector` protocol, which is how tests plug in synthetic detectors.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .data_structures import Detection, Image

try:
    from ultralytics import YOLO  # type: ignore[import-not-found]
except ImportError:  # pragma: no cover - optional dependency
    YOLO = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)


class Detector(Protocol):
    def detect(self, image: Image) -> List[Detection]:
        """
        Detect objects in one BGR image.

        Returns:
            Detections in pixel coordinates of ``image``.
        """
        ...

    def detect_batch(self, images: Sequence[Image]) -> List[List[Detection]]:
        """
        Detect objects in several images; one list per input image, in order.
        """
        ...


def _class_name(names: Any, class_id: int) -> str:
    if isinstance(names, dict):
        return str(names.get(class_id, class_id))
    if isinstance(names, (list, tuple)) and 0 <= class_id < len(names):
        return str(names[class_id])
    return str(class_id)


@dataclass
class YoloDetector:
    """
    ultralytics YOLO model applied to batches of zone crops.

    Attributes:
        weights: Path to the ``.pt`` weights.
        min_confidence: Confidence floor handed to the model.
        device: Inference device ("cpu", "0", "mps", ...); None lets ultralytics pick.
        image_size: Inference size; None keeps the model default.
    """

    weights: str
    min_confidence: float = 0.25
    device: Optional[str] = None
    image_size: Optional[int] = None
    _model: Any = field(init=False, repr=False, default=None)

    def __post_init__(self) -> None:
        if YOLO is None:
            raise ImportError(
                "ultralytics is required for person detection. Install it with `pip install ultralytics`."
            )
        logger.debug("Loading YOLO weights from %s", self.weights)
        self._model = YOLO(self.weights)

    def detect(self, image: Image) -> List[Detection]:
        return self.detect_batch([image])[0]

    def detect_batch(self, images: Sequence[Image]) -> List[List[Detection]]:
        if not images:
            return []
        kwargs: Dict[str, Any] = {"conf": self.min_confidence, "verbose": False}
        if self.device is not None:
            kwargs["device"] = self.device
        if self.image_size is not None:
            kwargs["imgsz"] = self.image_size
        results = self._model.predict(list(images), **kwargs)  # type: ignore[union-attr]
        return [self._convert(result) for result in results]

    @staticmethod
    def _convert(result: Any) -> List[Detection]:
        boxes = getattr(result, "boxes", None)
        if boxes is None or len(boxes) == 0:
            return []
        names = getattr(result, "names", {})
        corners = boxes.xyxy.cpu().numpy()
        scores = boxes.conf.cpu().numpy()
        class_ids = boxes.cls.cpu().numpy().astype(int)
        return [
            Detection(
                bbox_xyxy=(float(x1), float(y1), float(x2), float(y2)),
                confidence=float(score),
                label=_class_name(names, int(class_id)),
            )
            for (x1, y1, x2, y2), score, class_id in zip(corners, scores, class_ids)
        ]


def create_detector(
    model_path: str,
    conf_threshold: float = 0.25,
    device: Optional[str] = None,
    image_size: Optional[int] = None,
) -> Detector:
    """
    Build the detector used by one detect worker.

    Args:
        model_path: YOLO weights file.
        conf_threshold: Confidence floor applied inside the model. The detect
            stage applies ``DetectorConfig.min_confidence`` again after tiling.
        device: Optional inference device.
        image_size: Optional inference size.

    Raises:
        ImportError: When ultralytics is not installed.
    """
    return YoloDetector(
        weights=model_path,
        min_confidence=conf_threshold,
        device=device,
        image_size=image_size,
    )
