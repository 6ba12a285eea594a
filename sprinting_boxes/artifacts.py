"""
Persisted run artifacts: the feature table, raw cliff candidates and the audit state.

Layout of a run directory::

    features.csv   one row per sampled frame, appended by the Finalizer
    points.csv     one row per detected cliff, appended by the Finalizer
    audit.json     reviewed cliffs plus audit settings
    complete.json  present once every sampled frame has been persisted

Floats are written with ``repr`` so every value read back is bit-identical
to the value written; empty cells stand for ``None``.
"""

from __future__ import annotations

import csv
import json
import logging
import os
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from .data_structures import (
    FEATURE_COLUMNS,
    AuditSettings,
    AuditState,
    CliffCandidate,
    CliffData,
    CliffStatus,
    FeatureRow,
)

logger = logging.getLogger(__name__)

FEATURES_FILE = "features.csv"
POINTS_FILE = "points.csv"
AUDIT_FILE = "audit.json"
PLAYLIST_FILE = "playlist.m3u"
COMPLETE_FILE = "complete.json"

POINT_COLUMNS: List[str] = [
    "frame_index",
    "timestamp_s",
    "left_emptied_first",
    "right_emptied_first",
    "maybe_false_positive",
    "drop",
]


def _to_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y"}


def _fmt_float(value: Optional[float]) -> str:
    return "" if value is None else repr(float(value))


def _parse_float(value: Optional[str]) -> Optional[float]:
    if value is None or value.strip() == "":
        return None
    return float(value)


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _needs_header(path: Path) -> bool:
    return not path.exists() or path.stat().st_size == 0


def _complete_lines(path: Path) -> List[str]:
    """
    Lines of ``path`` that end in a newline.

    The Finalizer may be appending while a reader looks at the file, and a
    crash can leave half a row behind; an unterminated last line is never
    parsed.
    """
    with path.open("r", newline="", encoding="utf-8") as f:
        lines = f.readlines()
    if lines and not lines[-1].endswith("\n"):
        logger.debug("Ignoring unterminated last line of %s", path)
        lines.pop()
    return lines


def _truncate_partial_line(path: Path) -> bool:
    """
    Cut an unterminated last line off ``path``. Returns True when something was cut.
    """
    if not path.exists():
        return False
    with path.open("rb+") as f:
        data = f.read()
        if not data or data.endswith(b"\n"):
            return False
        keep = data.rfind(b"\n") + 1
        f.truncate(keep)
    logger.warning("Dropped %d bytes of a partial row at the end of %s", len(data) - keep, path)
    return True


@dataclass
class FeatureTable:
    """
    ``features.csv`` of one run.

    Attributes:
        path: CSV file location.
    """

    path: Path

    def append(self, rows: Iterable[FeatureRow]) -> int:
        """
        Append rows (already in frame order). Returns the number written.
        """
        rows = list(rows)
        if not rows:
            return 0
        _ensure_parent(self.path)
        header = _needs_header(self.path)
        with self.path.open("a", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=FEATURE_COLUMNS)
            if header:
                writer.writeheader()
            for row in rows:
                writer.writerow(
                    {
                        "frame_index": row.frame_index,
                        "left_count": _fmt_float(row.left_count),
                        "right_count": _fmt_float(row.right_count),
                        "field_count": _fmt_float(row.field_count),
                        "pre_point_score": _fmt_float(row.pre_point_score),
                        "is_cliff": int(bool(row.is_cliff)),
                        "com_x": _fmt_float(row.com_x),
                        "com_y": _fmt_float(row.com_y),
                        "distribution_std_dev": _fmt_float(row.distribution_std_dev),
                        "com_delta_x": _fmt_float(row.com_delta_x),
                        "com_delta_y": _fmt_float(row.com_delta_y),
                        "std_dev_delta": _fmt_float(row.std_dev_delta),
                    }
                )
            f.flush()
            os.fsync(f.fileno())
        return len(rows)

    def read(self) -> List[FeatureRow]:
        """
        Load all rows, sorted by frame index. A missing file yields no rows.
        """
        if not self.path.exists():
            return []
        rows: List[FeatureRow] = []
        for raw in csv.DictReader(_complete_lines(self.path)):
            rows.append(
                FeatureRow(
                    frame_index=int(raw["frame_index"]),
                    left_count=float(raw["left_count"]),
                    right_count=float(raw["right_count"]),
                    field_count=float(raw["field_count"]),
                    pre_point_score=float(raw["pre_point_score"]),
                    is_cliff=_to_bool(raw.get("is_cliff", "0")),
                    com_x=_parse_float(raw.get("com_x")),
                    com_y=_parse_float(raw.get("com_y")),
                    distribution_std_dev=_parse_float(raw.get("distribution_std_dev")),
                    com_delta_x=_parse_float(raw.get("com_delta_x")),
                    com_delta_y=_parse_float(raw.get("com_delta_y")),
                    std_dev_delta=_parse_float(raw.get("std_dev_delta")),
                )
            )
        rows.sort(key=lambda r: r.frame_index)
        return rows

    def last_frame_index(self) -> Optional[int]:
        rows = self.read()
        return rows[-1].frame_index if rows else None

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


@dataclass
class CandidateTable:
    """
    ``points.csv`` of one run: raw cliff candidates in frame order.
    """

    path: Path

    def append(self, candidates: Iterable[CliffCandidate]) -> int:
        candidates = list(candidates)
        if not candidates:
            return 0
        _ensure_parent(self.path)
        header = _needs_header(self.path)
        with self.path.open("a", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=POINT_COLUMNS)
            if header:
                writer.writeheader()
            for c in candidates:
                writer.writerow(
                    {
                        "frame_index": c.frame_index,
                        "timestamp_s": _fmt_float(c.timestamp_s),
                        "left_emptied_first": int(c.left_emptied_first),
                        "right_emptied_first": int(c.right_emptied_first),
                        "maybe_false_positive": int(c.maybe_false_positive),
                        "drop": _fmt_float(c.drop),
                    }
                )
            f.flush()
            os.fsync(f.fileno())
        return len(candidates)

    def read(self) -> List[CliffCandidate]:
        if not self.path.exists():
            return []
        out: List[CliffCandidate] = []
        for raw in csv.DictReader(_complete_lines(self.path)):
            out.append(
                CliffCandidate(
                    frame_index=int(raw["frame_index"]),
                    timestamp_s=_parse_float(raw.get("timestamp_s")) or 0.0,
                    left_emptied_first=_to_bool(raw.get("left_emptied_first", "0")),
                    right_emptied_first=_to_bool(raw.get("right_emptied_first", "0")),
                    maybe_false_positive=_to_bool(raw.get("maybe_false_positive", "0")),
                    drop=_parse_float(raw.get("drop")) or 0.0,
                )
            )
        out.sort(key=lambda c: c.frame_index)
        return out

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


@dataclass
class AuditStore:
    """
    ``audit.json`` of one run.
    """

    path: Path

    def load(self) -> Optional[AuditState]:
        if not self.path.exists():
            return None
        with self.path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        return AuditState.from_dict(data)

    def save(self, state: AuditState) -> None:
        """
        Write atomically (temp file + rename) so readers never see a partial file.
        """
        _ensure_parent(self.path)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(state.to_dict(), f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


@dataclass
class CompletionMarker:
    """
    ``complete.json``: written once every sampled frame has been persisted.

    ``audit.json`` alone says nothing about completion because operator
    edits create it on stopped runs too.
    """

    path: Path

    def mark(self, total_frames: int) -> None:
        _ensure_parent(self.path)
        data = {
            "total_frames": int(total_frames),
            "completed_at": datetime.now(timezone.utc).isoformat(),
        }
        with self.path.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    def load(self) -> Optional[int]:
        """
        ``total_frames`` of the completed run, or None when the run never completed.
        """
        if not self.path.exists():
            return None
        with self.path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        return int(data.get("total_frames", 0))

    @property
    def is_complete(self) -> bool:
        return self.path.exists()

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


def merge_candidates(
    candidates: Sequence[CliffCandidate],
    existing: Optional[AuditState],
    default_settings: Optional[AuditSettings] = None,
) -> AuditState:
    """
    Combine detected candidates with an existing audit state.

    Cliffs already present keep their operator input (status and overrides)
    but take the detector flags of the matching candidate, so a restarted run
    never leaves stale ``*_emptied_first`` or ``maybe_false_positive`` values
    behind. New candidates enter as ``Unconfirmed``. Nothing is ever dropped.
    """
    settings = existing.settings if existing is not None else (default_settings or AuditSettings())
    by_index: Dict[int, CliffData] = {}
    if existing is not None:
        for cliff in existing.cliffs:
            by_index[cliff.frame_index] = cliff
    for cand in candidates:
        known = by_index.get(cand.frame_index)
        if known is not None:
            by_index[cand.frame_index] = replace(
                known,
                left_emptied_first=cand.left_emptied_first,
                right_emptied_first=cand.right_emptied_first,
                maybe_false_positive=cand.maybe_false_positive,
            )
            continue
        by_index[cand.frame_index] = CliffData(
            frame_index=cand.frame_index,
            left_emptied_first=cand.left_emptied_first,
            right_emptied_first=cand.right_emptied_first,
            maybe_false_positive=cand.maybe_false_positive,
            status=CliffStatus.UNCONFIRMED,
        )
    cliffs = sorted(by_index.values(), key=lambda c: c.frame_index)
    return AuditState(cliffs=cliffs, settings=settings)


@dataclass
class RunArtifacts:
    """
    All artifact files of a run directory.
    """

    run_dir: Path

    @property
    def features(self) -> FeatureTable:
        return FeatureTable(self.run_dir / FEATURES_FILE)

    @property
    def candidates(self) -> CandidateTable:
        return CandidateTable(self.run_dir / POINTS_FILE)

    @property
    def audit(self) -> AuditStore:
        return AuditStore(self.run_dir / AUDIT_FILE)

    @property
    def completion(self) -> CompletionMarker:
        return CompletionMarker(self.run_dir / COMPLETE_FILE)

    @property
    def playlist_path(self) -> Path:
        return self.run_dir / PLAYLIST_FILE

    def reset_outputs(self) -> None:
        """
        Remove pipeline outputs so the next run starts from frame 0.

        Reviewed cliffs in ``audit.json`` are kept.
        """
        logger.info("Clearing pipeline outputs in %s", self.run_dir)
        self.features.clear()
        self.candidates.clear()
        self.completion.clear()

    def repair(self) -> None:
        """
        Drop partial trailing rows (left by a crash) before appending again.
        """
        _truncate_partial_line(self.features.path)
        _truncate_partial_line(self.candidates.path)
