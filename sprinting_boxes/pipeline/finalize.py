"""
Finalizer stage: reorder, derive temporal features and persist.

Feature objects arrive in whatever order the upstream pools finish them.
The Finalizer buffers them by frame index, feeds them to a
:class:`~sprinting_boxes.features.FeatureTimeline` strictly in order and
appends finished rows and cliff candidates to the run's CSV files. Every
time the next expected index advances it commits it to the
:class:`~sprinting_boxes.pipeline.queues.FrameFeed`, which lets the Reader
admit more frames.

Only rows whose cliff decision is final are written. On a stop the rows
still waiting for context are discarded and re-processed on resume, so a
stopped-and-resumed run writes the same rows as an uninterrupted one.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional, Tuple

from ..artifacts import RunArtifacts, merge_candidates
from ..audit import recompute
from ..data_structures import AuditSettings, AuditState, CliffCandidate, FeatureRow, FrameFeatures
from ..features import FeatureTimeline
from .queues import FrameFeed

logger = logging.getLogger(__name__)


class Finalizer:
    """
    In-order persistence of one run's features.

    Args:
        artifacts: Output files of the run.
        timeline: Temporal feature state, already seeded on resume.
        feed: Frame feed to commit progress to.
        start_index: First frame this run processes.
    """

    def __init__(
        self,
        artifacts: RunArtifacts,
        timeline: FeatureTimeline,
        feed: Optional[FrameFeed],
        start_index: int,
    ) -> None:
        self.artifacts = artifacts
        self.timeline = timeline
        self.feed = feed
        self._buffer: Dict[int, FrameFeatures] = {}
        self._next = start_index
        self._lock = threading.Lock()
        self.rows_written = 0
        self.candidates_written = 0

    @property
    def next_index(self) -> int:
        with self._lock:
            return self._next

    @property
    def buffered(self) -> int:
        with self._lock:
            return len(self._buffer)

    def __call__(self, features: FrameFeatures) -> None:
        with self._lock:
            index = features.frame_index
            if index < self._next or index in self._buffer:
                raise ValueError(f"duplicate frame {index}")
            self._buffer[index] = features

            decided: List[Tuple[FeatureRow, Optional[CliffCandidate]]] = []
            while self._next in self._buffer:
                decided.extend(self.timeline.push(self._buffer.pop(self._next)))
                self._next += 1
            self._persist(decided)
            next_index = self._next
        if self.feed is not None:
            self.feed.commit(next_index)

    def _persist(self, decided: List[Tuple[FeatureRow, Optional[CliffCandidate]]]) -> None:
        if not decided:
            return
        rows = [row for row, _ in decided]
        candidates = [c for _, c in decided if c is not None]
        self.rows_written += self.artifacts.features.append(rows)
        self.candidates_written += self.artifacts.candidates.append(candidates)

    def finish(self, completed: bool) -> None:
        """
        Flush the timeline when the run completed; otherwise keep only decided rows.
        """
        with self._lock:
            if self._buffer:
                logger.warning(
                    "Discarding %d out-of-order frames after %d", len(self._buffer), self._next
                )
                self._buffer.clear()
            if completed:
                self._persist(self.timeline.flush())
        logger.info(
            "Finalizer wrote %d rows and %d cliff candidates", self.rows_written, self.candidates_written
        )

    def write_audit(
        self,
        run_lock: threading.Lock,
        default_settings: AuditSettings,
        sample_rate: Optional[float],
    ) -> AuditState:
        """
        Merge all detected candidates into ``audit.json`` and recompute scores.

        Operator edits already in ``audit.json`` are kept.
        """
        with run_lock:
            store = self.artifacts.audit
            state = merge_candidates(self.artifacts.candidates.read(), store.load(), default_settings)
            state.cliffs = recompute(state.cliffs, state.settings, sample_rate)
            store.save(state)
        logger.info("Saved %d cliffs to %s", len(state.cliffs), store.path)
        return state
