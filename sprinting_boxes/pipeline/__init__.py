"""
Concurrent stage graph: queues, worker pools, stage handlers, telemetry and the coordinator.
"""

from .coordinator import PipelineRun, RunRegistry, RunRequest
from .queues import FrameFeed, StageQueue
from .telemetry import ProgressBroadcaster, ProgressSubscription, ProgressTracker
from .workers import WorkerPool

__all__ = [
    "FrameFeed",
    "PipelineRun",
    "ProgressBroadcaster",
    "ProgressSubscription",
    "ProgressTracker",
    "RunRegistry",
    "RunRequest",
    "StageQueue",
    "WorkerPool",
]
