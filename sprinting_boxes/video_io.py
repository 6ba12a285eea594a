"""
Thin OpenCV wrapper for reading sampled frames from a game video.

Analysis runs at a low sample rate (1 sample/second by default), so the
reader maps a *sample index* ("unit") to a source frame and seeks or grabs
forward to it instead of decoding every frame. The rest of the codebase only
sees :class:`~sprinting_boxes.data_structures.Frame` objects indexed by unit.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType
from typing import Dict, Generator, Optional, Protocol

import cv2

from .data_structures import Frame

logger = logging.getLogger(__name__)

# Backend hint -> OpenCV VideoCapture API preference constant name.
BACKENDS: Dict[str, str] = {
    "auto": "CAP_ANY",
    "opencv": "CAP_ANY",
    "ffmpeg": "CAP_FFMPEG",
    "gstreamer": "CAP_GSTREAMER",
    "avfoundation": "CAP_AVFOUNDATION",
}

# Forward gaps longer than this many source frames are seeked instead of grabbed.
_MAX_GRAB_GAP = 120


class FrameSource(Protocol):
    """
    Anything the Reader stage can pull sampled frames from.
    """

    @property
    def total_frames(self) -> int:
        """
        Number of sampled units in the source.
        """
        ...

    def read(self, unit: int) -> Frame:
        """
        Decode sampled unit ``unit``. Raises IOError when the frame cannot be read.
        """
        ...

    def release(self) -> None:
        ...


def backend_api_preference(backend: str) -> int:
    """
    Resolve a backend hint to an OpenCV ``apiPreference``.

    Raises:
        ValueError: For unknown hints.
    """
    key = (backend or "auto").strip().lower()
    if key not in BACKENDS:
        raise ValueError(f"Unknown video backend '{backend}'. Expected one of {sorted(BACKENDS)}.")
    return int(getattr(cv2, BACKENDS[key], cv2.CAP_ANY))


@dataclass
class VideoReader:
    """
    Read sampled video frames.

    Attributes:
        path: Path to the input video.
        sample_rate: Samples per second of video. Ignored when ``stride`` is set.
        stride: Keep every N-th source frame instead of sampling by time.
        backend: Decode backend hint (see :data:`BACKENDS`).
    """

    path: Path
    sample_rate: Optional[float] = 1.0
    stride: Optional[int] = None
    backend: str = "opencv"

    def __post_init__(self) -> None:
        if self.stride is not None and self.stride < 1:
            raise ValueError("stride must be >= 1")
        if self.stride is None and (self.sample_rate is None or self.sample_rate <= 0):
            raise ValueError("sample_rate must be > 0 when no stride is given")
        api = backend_api_preference(self.backend)
        self._cap = cv2.VideoCapture(str(self.path), api)
        if not self._cap.isOpened():
            raise FileNotFoundError(f"Could not open video: {self.path}")
        self._next_source = 0
        logger.info(
            "Opened %s (%.2f fps, %d frames, %d sampled units, backend=%s)",
            self.path,
            self.fps,
            self.source_frame_count,
            self.total_frames,
            self.backend,
        )

    @property
    def fps(self) -> float:
        """
        Frames per second reported by the container (defaults to 25 if missing).
        """
        return float(self._cap.get(cv2.CAP_PROP_FPS) or 25.0)

    @property
    def source_frame_count(self) -> int:
        """
        Total number of frames in the container (0 if unknown).
        """
        return int(self._cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0)

    @property
    def width(self) -> int:
        return int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)

    @property
    def height(self) -> int:
        return int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)

    @property
    def total_frames(self) -> int:
        """
        Number of sampled units (at least 1).
        """
        count = self.source_frame_count
        if self.stride is not None:
            return max(1, math.ceil(count / self.stride))
        assert self.sample_rate is not None
        return max(1, int(math.floor(count * self.sample_rate / self.fps)))

    def source_index(self, unit: int) -> int:
        """
        Source frame decoded for sampled unit ``unit``.
        """
        if self.stride is not None:
            return unit * self.stride
        assert self.sample_rate is not None
        return int(round(unit * self.fps / self.sample_rate))

    def read(self, unit: int) -> Frame:
        """
        Decode sampled unit ``unit``.

        Consecutive units are reached by grabbing forward; backward or long
        jumps seek the container.

        Raises:
            IOError: When the frame cannot be decoded.
        """
        target = self.source_index(unit)
        if target < self._next_source or target - self._next_source > _MAX_GRAB_GAP:
            self._cap.set(cv2.CAP_PROP_POS_FRAMES, float(target))
            self._next_source = target
        while self._next_source < target:
            if not self._cap.grab():
                raise IOError(f"Could not grab source frame {self._next_source} of {self.path}")
            self._next_source += 1
        ok, image = self._cap.read()
        if not ok or image is None:
            raise IOError(f"Could not decode source frame {target} (unit {unit}) of {self.path}")
        self._next_source = target + 1
        return Frame(
            frame_index=unit,
            image=image,  # type: ignore[arg-type]
            timestamp_s=target / self.fps,
            source_frame=target,
        )

    def frames(self, start: int = 0) -> Generator[Frame, None, None]:
        """
        Iterate over sampled frames from unit ``start`` to the end.
        """
        for unit in range(start, self.total_frames):
            yield self.read(unit)

    def release(self) -> None:
        """
        Release the underlying OpenCV handle.
        """
        self._cap.release()

    def __enter__(self) -> "VideoReader":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.release()


def open_video(
    path: Path,
    sample_rate: Optional[float] = 1.0,
    stride: Optional[int] = None,
    backend: str = "opencv",
) -> VideoReader:
    """
    Convenience function to create a :class:`VideoReader`.
    """
    return VideoReader(path=path, sample_rate=sample_rate, stride=stride, backend=backend)
