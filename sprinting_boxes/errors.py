"""
Exception types raised by the processing pipeline and the run service.

The hierarchy is intentionally flat: callers that only care about "something
went wrong with this run" can catch :class:`SprintingBoxesError`, while the
queue/pool plumbing distinguishes the recoverable cases (``Backpressure``,
``QueueClosed``, ``Cancelled``) from fatal ``StageFailure`` errors.
"""

from __future__ import annotations

from typing import Optional


class SprintingBoxesError(Exception):
    """
    Base class for all errors raised by this package.
    """


class PreconditionFailed(SprintingBoxesError):
    """
    A run cannot start because a required artifact or state is missing.

    Recoverable by operator action (e.g. saving field boundaries), never
    retried automatically.
    """


class MissingCropConfig(PreconditionFailed):
    """
    ``crops.json`` is missing or does not define any zone.
    """


class Backpressure(SprintingBoxesError):
    """
    A bounded stage queue stayed full for the whole push timeout.
    """


class QueueClosed(SprintingBoxesError):
    """
    The queue was closed: no more pushes, and pops have drained everything.
    """


class Cancelled(SprintingBoxesError):
    """
    Raised inside a stage when a cooperative stop was requested.

    Not an error from the run's point of view; it maps to the ``Stopped`` state.
    """


class StageFailure(SprintingBoxesError):
    """
    A stage handler failed on a specific item.

    Attributes:
        stage: Stage name ("reader", "crop", "detect", "feature", "finalize").
        frame_index: Frame being processed when the failure happened, if known.
        cause: Original exception.
    """

    def __init__(
        self,
        stage: str,
        frame_index: Optional[int],
        cause: BaseException,
    ) -> None:
        self.stage = stage
        self.frame_index = frame_index
        self.cause = cause
        where = f" at frame {frame_index}" if frame_index is not None else ""
        super().__init__(f"{stage} stage failed{where}: {cause}")


class RunNotFound(SprintingBoxesError, LookupError):
    """
    No run directory with a ``metadata.json`` exists for the given run id.
    """


class CliffNotFound(SprintingBoxesError, LookupError):
    """
    ``mutate_cliff`` referenced a frame index with no recorded cliff.
    """
