"""
Run metadata (``metadata.json``) and per-run prerequisites.

A run is a directory under the output root named after the video stem. It
holds the metadata written at creation time, the calibration artifacts and
every pipeline output.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Tuple

from .crop_config import (
    CROPS_FILE,
    FIELD_BOUNDARIES_FILE,
    CropConfig,
    compute_crop_config,
    load_crop_config,
    load_field_boundaries,
    save_crop_config,
)
from .errors import PreconditionFailed, RunNotFound

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"


@dataclass
class RunDependency:
    """
    One prerequisite artifact and whether it is present.
    """

    artifact_name: str
    message: str
    valid: bool


@dataclass
class RunContext:
    """
    Metadata of one analysis run.

    Attributes:
        original_name: Video path as given at creation (absolute when resolvable).
        display_name: Free-form label.
        created_at: ISO-8601 creation time (UTC).
        run_id: Directory name under the output root.
        team_size: Players per team on the field.
        light_team_name: Default light team name for the audit.
        dark_team_name: Default dark team name for the audit.
        tags: Free-form tags.
        sample_rate: Samples per second analysed by the pipeline.
        output_dir: Run directory (not serialized).
    """

    original_name: str
    display_name: str
    created_at: str
    run_id: str
    team_size: int = 7
    light_team_name: str = "Light"
    dark_team_name: str = "Dark"
    tags: List[str] = field(default_factory=list)  # type: ignore[misc]
    sample_rate: float = 1.0
    output_dir: Path = field(default=Path("."), compare=False)

    @classmethod
    def new(cls, video_name: str, run_id: str, output_dir: Path) -> "RunContext":
        return cls(
            original_name=video_name,
            display_name=run_id,
            created_at=datetime.now(timezone.utc).isoformat(),
            run_id=run_id,
            output_dir=output_dir,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("output_dir", None)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], output_dir: Path) -> "RunContext":
        sample_rate = float(data.get("sample_rate", 1.0) or 1.0)
        return cls(
            original_name=str(data["original_name"]),
            display_name=str(data.get("display_name", output_dir.name)),
            created_at=str(data.get("created_at", "")),
            # The directory name is the source of truth for the run id.
            run_id=output_dir.name,
            team_size=int(data.get("team_size", 7)),
            light_team_name=str(data.get("light_team_name", "Light")),
            dark_team_name=str(data.get("dark_team_name", "Dark")),
            tags=[str(t) for t in data.get("tags", []) or []],
            sample_rate=sample_rate if sample_rate > 0 else 1.0,
            output_dir=output_dir,
        )

    @classmethod
    def load(cls, run_dir: Path) -> "RunContext":
        """
        Load ``metadata.json`` from ``run_dir``.

        Raises:
            RunNotFound: When the directory has no metadata.
        """
        path = run_dir / METADATA_FILE
        if not path.exists():
            raise RunNotFound(f"No run at {run_dir}")
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        return cls.from_dict(data, run_dir)

    def save(self) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        with (self.output_dir / METADATA_FILE).open("w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

    def resolve_video_path(self, video_root: Path) -> Path:
        """
        Locate the source video.

        Tries, in order: the stored absolute path, ``video_root / original_name``,
        the bare filename under ``video_root`` and the stored path relative
        to the working directory. Falls back to the joined path so the error
        message points somewhere sensible.
        """
        original = Path(self.original_name)
        if original.is_absolute():
            return original
        joined = video_root / original
        if joined.exists():
            return joined
        by_name = video_root / original.name
        if by_name.exists():
            return by_name
        if original.exists():
            return original
        return joined

    @property
    def field_boundaries_path(self) -> Path:
        return self.output_dir / FIELD_BOUNDARIES_FILE

    @property
    def crops_path(self) -> Path:
        return self.output_dir / CROPS_FILE

    def validate_dependencies(self) -> List[RunDependency]:
        """
        Check the calibration artifacts needed before processing.
        """
        boundaries_ok = self.field_boundaries_path.exists()
        crops_ok = self.crops_path.exists()
        return [
            RunDependency(
                artifact_name=FIELD_BOUNDARIES_FILE,
                message=(
                    "Field boundaries defined."
                    if boundaries_ok
                    else "Field boundaries must be defined before processing."
                ),
                valid=boundaries_ok,
            ),
            RunDependency(
                artifact_name=CROPS_FILE,
                message=(
                    "Crop configurations generated."
                    if crops_ok
                    else "Crop configurations must be generated before processing."
                ),
                valid=crops_ok,
            ),
        ]

    def load_crop_config(self) -> CropConfig:
        return load_crop_config(self.crops_path)

    def compute_and_save_crop_config(self) -> CropConfig:
        """
        Derive ``crops.json`` from ``field_boundaries.json``.
        """
        boundaries = load_field_boundaries(self.field_boundaries_path)
        crops = compute_crop_config(boundaries)
        save_crop_config(crops, self.crops_path)
        logger.info("Saved crop config for run %s", self.run_id)
        return crops


def create_run(output_root: Path, video_root: Path, video_name: str) -> RunContext:
    """
    Initialize a new run directory for ``video_name``.

    Raises:
        PreconditionFailed: When a run for the same video stem already exists.
    """
    stem = Path(video_name).stem
    if not stem:
        raise ValueError(f"Invalid video name: {video_name}")
    output_dir = output_root / stem
    if output_dir.exists():
        raise PreconditionFailed(f"Output directory already exists for: {stem}")
    full_path = video_root / video_name
    try:
        absolute = full_path.resolve(strict=True)
    except FileNotFoundError:
        absolute = full_path
    context = RunContext.new(str(absolute), stem, output_dir)
    context.save()
    logger.info("Created run %s for %s", stem, absolute)
    return context


def list_runs(output_root: Path) -> List[Tuple[str, RunContext]]:
    """
    All runs under ``output_root`` as ``(run_id, context)`` pairs, sorted by id.
    """
    runs: List[Tuple[str, RunContext]] = []
    if not output_root.exists():
        return runs
    for path in sorted(output_root.iterdir()):
        if path.is_dir() and (path / METADATA_FILE).exists():
            runs.append((path.name, RunContext.load(path)))
    return runs
