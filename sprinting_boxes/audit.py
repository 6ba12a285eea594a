"""
Audit engine: turns reviewed cliffs into team assignments and a running score.

Conventions (ultimate frisbee):
- Teams swap ends after every point, so the color occupying the left end
  zone alternates from one valid point to the next.
- The team that pulls is the team that just scored; the pulling team's
  end zone empties first. Every pull after the first one therefore adds a
  point to the pulling team.
- A "break" is flagged when the same team pulls twice in a row.

The first valid cliff puts the light team on the left unless the operator
overrode its colors. That default is a convention, not something derived
from the footage.

:func:`recompute` is pure, total and idempotent: it only reads operator
input (status, side/color overrides, detector flags) and fully rewrites the
derived fields.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from enum import Enum
from typing import Dict, List, Optional, Sequence

from .data_structures import (
    DARK,
    LEFT,
    LIGHT,
    RIGHT,
    AuditSettings,
    CliffData,
    CliffStatus,
    opposite_color,
)
from .errors import CliffNotFound

logger = logging.getLogger(__name__)


class CliffAction(str, Enum):
    """
    Operator mutations accepted by :func:`apply_action`.
    """

    CONFIRM = "confirm"
    REJECT = "reject"
    TOGGLE_SIDE = "toggle_side"
    TOGGLE_COLORS = "toggle_colors"


def parse_duration(text: str) -> float:
    """
    Parse "HH:MM:SS", "MM:SS" or "SS" into seconds; anything unparsable is 0.
    """
    parts = (text or "").strip().split(":")
    if not parts or len(parts) > 3:
        return 0.0
    total = 0.0
    for part in parts:
        try:
            value = float(part)
        except ValueError:
            return 0.0
        total = total * 60.0 + value
    return max(total, 0.0)


def format_timestamp(frame_index: int, sample_rate: float, offset_secs: float = 0.0) -> str:
    """
    "HH:MM:SS" label of a sampled frame.
    """
    rate = sample_rate if sample_rate > 0 else 1.0
    total = max(int(frame_index / rate + offset_secs), 0)
    hours, rem = divmod(total, 3600)
    minutes, seconds = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def timestamp_offset(settings: AuditSettings) -> float:
    """
    Seconds added to every frame time: game clock at video start plus the manual offset.
    """
    return parse_duration(settings.video_start_time) + float(settings.time_offset_secs or 0.0)


def resolve_pull_side(cliff: CliffData) -> Optional[str]:
    """
    Pulling side: operator override, else the side that emptied first, else None.
    """
    if cliff.manual_side_override in (LEFT, RIGHT):
        return cliff.manual_side_override
    if cliff.left_emptied_first:
        return LEFT
    if cliff.right_emptied_first:
        return RIGHT
    return None


def pulling_color(cliff: CliffData) -> Optional[str]:
    """
    Color of the pulling team, using the cliff's (derived) side colors.
    """
    side = resolve_pull_side(cliff)
    if side == LEFT:
        return cliff.left_team_color
    if side == RIGHT:
        return cliff.right_team_color
    return None


def _normalize(cliffs: Sequence[CliffData]) -> List[CliffData]:
    # Stable sort; a repeated frame_index keeps its last occurrence.
    by_index: Dict[int, CliffData] = {}
    for cliff in cliffs:
        by_index[cliff.frame_index] = cliff
    return sorted(by_index.values(), key=lambda c: c.frame_index)


def recompute(
    cliffs: Sequence[CliffData],
    settings: AuditSettings,
    sample_rate: Optional[float] = None,
) -> List[CliffData]:
    """
    Recompute colors, running scores and break flags.

    Args:
        cliffs: Cliffs in any order; duplicates by frame_index are collapsed.
        settings: Initial scores and timestamp offsets.
        sample_rate: When given, timestamps are re-derived from frame_index.

    Returns:
        New CliffData objects sorted by frame_index. Inputs are not modified.
    """
    ordered = _normalize(cliffs)
    offset = timestamp_offset(settings)
    score_light = int(settings.initial_score_light)
    score_dark = int(settings.initial_score_dark)
    last_valid_left: Optional[str] = None

    result: List[CliffData] = []
    for i, cliff in enumerate(ordered):
        timestamp = (
            format_timestamp(cliff.frame_index, sample_rate, offset)
            if sample_rate
            else cliff.timestamp
        )
        status = CliffStatus.parse(getattr(cliff.status, "value", cliff.status))
        if status == CliffStatus.FALSE_POSITIVE:
            result.append(
                replace(
                    cliff,
                    status=status,
                    timestamp=timestamp,
                    left_team_color=None,
                    right_team_color=None,
                    score_light=score_light,
                    score_dark=score_dark,
                    is_break=False,
                )
            )
            continue

        if cliff.manual_color_override in (LIGHT, DARK):
            left = cliff.manual_color_override
        elif last_valid_left is None:
            left = LIGHT
        else:
            left = opposite_color(last_valid_left)
        right = opposite_color(left)
        last_valid_left = left

        updated = replace(
            cliff,
            status=status,
            timestamp=timestamp,
            left_team_color=left,
            right_team_color=right,
            is_break=False,
        )
        if i > 0:
            color = pulling_color(updated)
            if color == LIGHT:
                score_light += 1
            elif color == DARK:
                score_dark += 1

        updated.score_light = score_light
        updated.score_dark = score_dark
        result.append(updated)

    valid = [c for c in result if c.is_valid]
    for cur, nxt in zip(valid, valid[1:]):
        cur_color = pulling_color(cur)
        if cur_color is not None and cur_color == pulling_color(nxt):
            cur.is_break = True
    return result


def apply_action(
    cliffs: Sequence[CliffData],
    frame_index: int,
    action: CliffAction | str,
) -> List[CliffData]:
    """
    Apply an operator mutation to the cliff at ``frame_index``.

    Returns a new list; run :func:`recompute` afterwards.

    Raises:
        CliffNotFound: When no cliff has ``frame_index``.
        ValueError: For unknown actions.
    """
    action = CliffAction(action)
    updated = [replace(c) for c in _normalize(cliffs)]
    target = next((c for c in updated if c.frame_index == frame_index), None)
    if target is None:
        raise CliffNotFound(f"No cliff at frame {frame_index}")

    if action is CliffAction.CONFIRM:
        target.status = CliffStatus.CONFIRMED
    elif action is CliffAction.REJECT:
        target.status = CliffStatus.FALSE_POSITIVE
    elif action is CliffAction.TOGGLE_SIDE:
        current = resolve_pull_side(target)
        target.manual_side_override = RIGHT if current == LEFT else LEFT
    elif action is CliffAction.TOGGLE_COLORS:
        current_left = target.left_team_color or LIGHT
        target.manual_color_override = opposite_color(current_left)
        for cliff in updated:
            if cliff.frame_index > frame_index:
                cliff.manual_color_override = None

    logger.info("Applied %s to cliff at frame %d", action.value, frame_index)
    return updated


def point_description(cliff: CliffData, point_number: int, settings: AuditSettings) -> str:
    """
    Human readable label, e.g. ``Point 3 - Team B Pull 🔥 Break (Team A 1 - Team B 2)``.
    """
    description = f"Point {point_number}"
    side = resolve_pull_side(cliff)
    if side is not None:
        if side == LEFT:
            color = cliff.left_team_color or LIGHT
        else:
            color = cliff.right_team_color or DARK
        team = settings.light_team_name if color == LIGHT else settings.dark_team_name
        description += f" - {team} Pull"
    if cliff.is_break:
        description += " 🔥 Break"
    description += (
        f" ({settings.light_team_name} {cliff.score_light}"
        f" - {settings.dark_team_name} {cliff.score_dark})"
    )
    return description


def confirmed_points(
    cliffs: Sequence[CliffData], settings: AuditSettings, sample_rate: float
) -> List[CliffData]:
    return [
        c for c in recompute(cliffs, settings, sample_rate) if c.status == CliffStatus.CONFIRMED
    ]


def youtube_chapters(
    cliffs: Sequence[CliffData], settings: AuditSettings, sample_rate: float
) -> str:
    """
    YouTube chapter list: a ``00:00 Video Start`` line plus one line per confirmed point.
    """
    lines = ["00:00 Video Start"]
    offset = timestamp_offset(settings)
    for number, cliff in enumerate(confirmed_points(cliffs, settings, sample_rate), start=1):
        stamp = format_timestamp(cliff.frame_index, sample_rate, offset)
        lines.append(f"{stamp} {point_description(cliff, number, settings)}")
    return "\n".join(lines) + "\n"


def vlc_playlist(
    cliffs: Sequence[CliffData],
    settings: AuditSettings,
    sample_rate: float,
    video_path: str,
    video_duration_s: float,
) -> str:
    """
    M3U playlist with one entry per confirmed point, each clipped to the next point.
    """
    rate = sample_rate if sample_rate > 0 else 1.0
    offset = timestamp_offset(settings)
    points = confirmed_points(cliffs, settings, rate)
    lines = ["#EXTM3U"]
    for i, cliff in enumerate(points):
        start = cliff.frame_index / rate + offset
        if i + 1 < len(points):
            stop = points[i + 1].frame_index / rate + offset
        else:
            stop = video_duration_s + offset
        duration = max(int(stop - start), 0)
        lines.append(f"#EXTVLCOPT:start-time={start:.3f}")
        lines.append(f"#EXTVLCOPT:stop-time={stop:.3f}")
        lines.append(f"#EXTINF:{duration},{point_description(cliff, i + 1, settings)}")
        lines.append(video_path)
    return "\n".join(lines) + "\n"
