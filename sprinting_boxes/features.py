"""
Occupancy features and point-transition ("cliff") detection.

Per frame, zone counts are turned into a pre-point score that is high while
both end zones are lined up (the state right before a pull) and drops to
zero as soon as one of them empties. The cliff detector looks for that drop
in the score stream; the emptied-first heuristic then decides which side
pulled.

Everything that depends on neighbouring frames lives in :class:`FeatureTimeline`,
which must be fed frames in strictly increasing ``frame_index`` order.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .config import CliffConfig, FeatureConfig
from .data_structures import (
    FIELD,
    LEFT_END_ZONE,
    RIGHT_END_ZONE,
    CliffCandidate,
    DetectionResult,
    FeatureRow,
    FrameFeatures,
    PixelPoint,
)

logger = logging.getLogger(__name__)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return min(max(value, low), high)


def pre_point_score(
    left_count: float,
    right_count: float,
    field_count: float,
    team_size: int = 7,
    min_zone_players: int = 2,
) -> float:
    """
    Readiness score in [0, 1] from normalized zone counts.

    ``balance`` is the emptier end zone's count, or 0 until it holds
    ``min_zone_players``; ``symmetry`` penalizes uneven end zones and
    ``field_term`` penalizes a crowded field. The score is monotonic in
    ``min(left, right)`` and reaches 0 as soon as either end zone empties.
    """
    threshold = min_zone_players / float(team_size)
    min_count = min(left_count, right_count)
    balance = min_count if min_count >= threshold else 0.0
    symmetry = _clamp(1.2 - abs(left_count - right_count))
    field_term = _clamp(1.5 - field_count)
    return _clamp(2.0 * balance * symmetry * field_term)


def center_of_mass(
    positions: Sequence[PixelPoint],
) -> Tuple[Optional[float], Optional[float], Optional[float]]:
    """
    Centre of mass and RMS distance to it, or ``(None, None, None)`` without positions.
    """
    if not positions:
        return None, None, None
    pts = np.asarray(positions, dtype=np.float64)
    com = pts.mean(axis=0)
    spread = float(np.sqrt(np.mean(np.sum((pts - com) ** 2, axis=1))))
    return float(com[0]), float(com[1]), spread


def compute_frame_features(result: DetectionResult, config: FeatureConfig) -> FrameFeatures:
    """
    Order-independent features of one frame.
    """
    left = float(result.counts.get(LEFT_END_ZONE, 0.0))
    right = float(result.counts.get(RIGHT_END_ZONE, 0.0))
    field_count = float(result.counts.get(FIELD, 0.0))

    if config.com_zone in result.positions:
        positions = result.positions[config.com_zone]
    else:
        positions = [p for zone_positions in result.positions.values() for p in zone_positions]
    com_x, com_y, spread = center_of_mass(positions)

    return FrameFeatures(
        frame_index=result.frame_index,
        timestamp_s=result.timestamp_s,
        left_count=left,
        right_count=right,
        field_count=field_count,
        pre_point_score=pre_point_score(
            left, right, field_count, config.team_size, config.min_zone_players
        ),
        com_x=com_x,
        com_y=com_y,
        distribution_std_dev=spread,
    )


class CliffDetector:
    """
    Stateless cliff test over a window of pre-point scores.
    """

    def __init__(self, config: CliffConfig) -> None:
        self.config = config

    def smooth(self, scores: Sequence[float]) -> List[float]:
        """
        Trailing mean over ``smoothing_window`` values.
        """
        window = self.config.smoothing_window
        if window <= 1:
            return list(scores)
        out: List[float] = []
        for i in range(len(scores)):
            chunk = scores[max(0, i - (window - 1)) : i + 1]
            out.append(sum(chunk) / len(chunk))
        return out

    def cliff_drop(self, scores: Sequence[float], i: int) -> Optional[float]:
        """
        Effective drop if position ``i`` is a cliff, else None.

        A cliff needs a full "ready" plateau before it, a large enough drop
        in the smoothed score, a low smoothed value right after and a full
        post window whose raw median stays low.
        """
        cfg = self.config
        n = len(scores)
        pre = cfg.min_prepoint_duration
        post = cfg.min_post_duration
        if n < pre + post or i < pre or i + post >= n:
            return None

        smoothed = self.smooth(scores)
        drop = smoothed[i] - smoothed[i + 1]
        cumulative = smoothed[max(0, i - (cfg.smoothing_window - 1))] - smoothed[i + 1]
        effective = max(drop, cumulative)
        if effective < cfg.min_drop:
            return None
        if smoothed[i + 1] > cfg.absolute_threshold:
            return None

        pre_window = sorted(smoothed[i - pre : i])
        if len(pre_window) < pre or pre_window[len(pre_window) // 2] < cfg.pre_plateau_min:
            return None

        post_window = sorted(scores[i + 1 : i + 1 + post])
        if len(post_window) < post or post_window[len(post_window) // 2] > cfg.max_post_proba:
            return None
        return effective


class StreamingCliffDetector:
    """
    Incremental wrapper around :class:`CliffDetector`.

    Decisions for a frame are made once ``min_post_duration`` later frames
    are known (or on :meth:`flush`). Only the context needed for future
    decisions is retained.
    """

    def __init__(self, config: CliffConfig) -> None:
        self.detector = CliffDetector(config)
        self.config = config
        self._indices: List[int] = []
        self._scores: List[float] = []
        self._finalized = 0
        self.last_cliff_index: Optional[int] = None

    def seed(
        self,
        indices: Sequence[int],
        scores: Sequence[float],
        last_cliff_index: Optional[int],
    ) -> None:
        """
        Restore context from already decided frames (resume).
        """
        keep = self.context_size()
        self._indices = list(indices)[-keep:]
        self._scores = list(scores)[-keep:]
        self._finalized = len(self._indices)
        self.last_cliff_index = last_cliff_index

    def push(self, frame_index: int, score: float) -> List[Tuple[int, Optional[float]]]:
        """
        Add a score; returns newly decided ``(frame_index, drop or None)`` pairs.
        """
        self._indices.append(frame_index)
        self._scores.append(score)
        return self._process(flush=False)

    def flush(self) -> List[Tuple[int, Optional[float]]]:
        """
        Decide every remaining frame.
        """
        return self._process(flush=True)

    def context_size(self) -> int:
        return self.config.min_prepoint_duration + self.config.smoothing_window + 2

    def _process(self, flush: bool) -> List[Tuple[int, Optional[float]]]:
        decided: List[Tuple[int, Optional[float]]] = []
        n = len(self._indices)
        if n < self.config.smoothing_window and not flush:
            return decided

        post = self.config.min_post_duration
        if flush:
            end = n
        elif n > post:
            end = n - post
        else:
            end = 0

        for k in range(self._finalized, end):
            frame_index = self._indices[k]
            drop = self.detector.cliff_drop(self._scores, k)
            if drop is not None and self.last_cliff_index is not None:
                if frame_index - self.last_cliff_index < self.config.min_gap:
                    drop = None
            if drop is not None:
                self.last_cliff_index = frame_index
            decided.append((frame_index, drop))
        self._finalized = max(self._finalized, end)

        keep = self.context_size()
        if self._finalized > keep:
            cut = self._finalized - keep
            del self._indices[:cut]
            del self._scores[:cut]
            self._finalized -= cut
        return decided


@dataclass
class _Pending:
    row: FeatureRow
    timestamp_s: float
    decided: bool = False
    drop: Optional[float] = None


class FeatureTimeline:
    """
    In-order derivation of temporal features.

    Feed :class:`FrameFeatures` in increasing ``frame_index`` order with
    :meth:`push`; it returns finished ``(FeatureRow, CliffCandidate or None)``
    pairs, also in order, once the cliff decision and the emptied-first
    window for that frame are available. :meth:`flush` finishes everything.
    """

    def __init__(self, config: CliffConfig) -> None:
        self.config = config
        self.cliffs = StreamingCliffDetector(config)
        self._pending: Deque[_Pending] = deque()
        self._by_index: Dict[int, _Pending] = {}
        self._counts: Dict[int, Tuple[float, float]] = {}
        self._prev: Optional[FrameFeatures] = None
        self._last_seen: Optional[int] = None

    @property
    def next_index(self) -> int:
        return 0 if self._last_seen is None else self._last_seen + 1

    def seed(self, rows: Sequence[FeatureRow]) -> None:
        """
        Restore temporal context from persisted rows (resume after stop).
        """
        if not rows:
            return
        # The emptied-first window and the cliff detector look back different distances.
        for r in list(rows)[-self._history_size() :]:
            self._counts[r.frame_index] = (r.left_count, r.right_count)
        scored = list(rows)[-max(self._history_size(), self.cliffs.context_size()) :]
        cliff_rows = [r.frame_index for r in rows if r.is_cliff]
        self.cliffs.seed(
            [r.frame_index for r in scored],
            [r.pre_point_score for r in scored],
            cliff_rows[-1] if cliff_rows else None,
        )
        last = rows[-1]
        self._prev = FrameFeatures(
            frame_index=last.frame_index,
            timestamp_s=0.0,
            left_count=last.left_count,
            right_count=last.right_count,
            field_count=last.field_count,
            pre_point_score=last.pre_point_score,
            com_x=last.com_x,
            com_y=last.com_y,
            distribution_std_dev=last.distribution_std_dev,
        )
        self._last_seen = last.frame_index

    def push(self, features: FrameFeatures) -> List[Tuple[FeatureRow, Optional[CliffCandidate]]]:
        if features.frame_index != self.next_index:
            raise ValueError(
                f"frames must arrive in order: expected {self.next_index}, got {features.frame_index}"
            )
        self._last_seen = features.frame_index
        self._counts[features.frame_index] = (features.left_count, features.right_count)

        pending = _Pending(row=self._make_row(features), timestamp_s=features.timestamp_s)
        self._pending.append(pending)
        self._by_index[features.frame_index] = pending
        self._prev = features

        self._apply(self.cliffs.push(features.frame_index, features.pre_point_score))
        return self._drain(flush=False)

    def flush(self) -> List[Tuple[FeatureRow, Optional[CliffCandidate]]]:
        self._apply(self.cliffs.flush())
        return self._drain(flush=True)

    def _history_size(self) -> int:
        cfg = self.config
        return cfg.lookback_frames + cfg.lookahead_frames + cfg.tiebreak_frames + 1

    def _make_row(self, features: FrameFeatures) -> FeatureRow:
        prev = self._prev

        def delta(cur: Optional[float], old: Optional[float]) -> Optional[float]:
            if cur is None or old is None:
                return None
            return cur - old

        return FeatureRow(
            frame_index=features.frame_index,
            left_count=features.left_count,
            right_count=features.right_count,
            field_count=features.field_count,
            pre_point_score=features.pre_point_score,
            com_x=features.com_x,
            com_y=features.com_y,
            distribution_std_dev=features.distribution_std_dev,
            com_delta_x=delta(features.com_x, prev.com_x if prev else None),
            com_delta_y=delta(features.com_y, prev.com_y if prev else None),
            std_dev_delta=delta(
                features.distribution_std_dev, prev.distribution_std_dev if prev else None
            ),
        )

    def _apply(self, decisions: List[Tuple[int, Optional[float]]]) -> None:
        for frame_index, drop in decisions:
            pending = self._by_index.get(frame_index)
            if pending is None:
                continue
            pending.decided = True
            pending.drop = drop
            pending.row.is_cliff = drop is not None

    def _drain(self, flush: bool) -> List[Tuple[FeatureRow, Optional[CliffCandidate]]]:
        out: List[Tuple[FeatureRow, Optional[CliffCandidate]]] = []
        last_seen = self._last_seen if self._last_seen is not None else -1
        while self._pending:
            head = self._pending[0]
            if not head.decided:
                break
            index = head.row.frame_index
            if head.row.is_cliff and not flush and last_seen < index + self.config.lookahead_frames:
                break
            self._pending.popleft()
            del self._by_index[index]
            candidate = self._candidate(head) if head.row.is_cliff else None
            out.append((head.row, candidate))
        self._trim_counts()
        return out

    def _trim_counts(self) -> None:
        if self._last_seen is None:
            return
        oldest = self._last_seen - self._history_size()
        if self._pending:
            oldest = min(oldest, self._pending[0].row.frame_index - self._history_size())
        for idx in [i for i in self._counts if i < oldest]:
            del self._counts[idx]

    def _emptied_at(self, start: int, end: int) -> Tuple[Optional[int], Optional[int]]:
        cfg = self.config
        left_run = right_run = 0
        left_at: Optional[int] = None
        right_at: Optional[int] = None
        for i in range(start, end + 1):
            counts = self._counts.get(i)
            if counts is None:
                break
            left, right = counts
            left_run = left_run + 1 if left <= cfg.empty_threshold else 0
            right_run = right_run + 1 if right <= cfg.empty_threshold else 0
            if left_at is None and left_run >= cfg.empty_consecutive_frames:
                left_at = i
            if right_at is None and right_run >= cfg.empty_consecutive_frames:
                right_at = i
        return left_at, right_at

    def _tie_break(self, before: int) -> Optional[str]:
        """
        Most recent frame before ``before`` where the zone counts differ; lower count wins.
        """
        for i in range(before - 1, before - 1 - self.config.tiebreak_frames, -1):
            counts = self._counts.get(i)
            if counts is None:
                break
            left, right = counts
            if left < right:
                return "left"
            if right < left:
                return "right"
        return None

    def _candidate(self, pending: _Pending) -> CliffCandidate:
        cfg = self.config
        index = pending.row.frame_index
        candidate = CliffCandidate(
            frame_index=index,
            timestamp_s=pending.timestamp_s,
            drop=float(pending.drop or 0.0),
        )
        left_at, right_at = self._emptied_at(
            max(0, index - cfg.lookback_frames), index + cfg.lookahead_frames
        )
        if left_at is not None and right_at is not None:
            if left_at < right_at:
                candidate.left_emptied_first = True
            elif right_at < left_at:
                candidate.right_emptied_first = True
            else:
                winner = self._tie_break(left_at)
                candidate.left_emptied_first = winner in (None, "left")
                candidate.right_emptied_first = winner in (None, "right")
            if abs(left_at - right_at) <= cfg.simultaneous_frames:
                candidate.maybe_false_positive = True
        elif left_at is not None:
            candidate.left_emptied_first = True
        elif right_at is not None:
            candidate.right_emptied_first = True
        else:
            candidate.maybe_false_positive = True

        if candidate.drop < cfg.min_drop + cfg.marginal_drop_margin:
            candidate.maybe_false_positive = True

        logger.info(
            "Cliff at frame %d (drop %.3f, left_first=%s, right_first=%s, maybe_fp=%s)",
            index,
            candidate.drop,
            candidate.left_emptied_first,
            candidate.right_emptied_first,
            candidate.maybe_false_positive,
        )
        return candidate
