"""
Command line entry point.

Typical session:

    python -m sprinting_boxes.main create --video_name game.mp4
    # save field_boundaries.json in outputs/game/ (calibration UI), then:
    python -m sprinting_boxes.main compute-crops --run_id game
    python -m sprinting_boxes.main process --run_id game --tile_size 640
    python -m sprinting_boxes.main cliffs --run_id game --frame_index 812 --action confirm
    python -m sprinting_boxes.main chapters --run_id game

Defaults come from ``config.py``; a YAML file passed with ``--config`` (or
``config.yaml`` in the working directory) overrides them, and CLI flags
override both.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .audit import CliffAction
from .config import STAGE_NAMES, Config, load_config
from .data_structures import KeepAlive, ProgressSnapshot, RunState
from .errors import SprintingBoxesError
from .run_context import RunContext, create_run, list_runs
from .service import PipelineService

logger = logging.getLogger(__name__)


def build_config_from_args(args: argparse.Namespace) -> Config:
    """
    Construct a :class:`Config` from code defaults, optional YAML and CLI flags.
    """
    default_config_path = Path("config.yaml")
    config_path = Path(args.config) if args.config is not None else default_config_path
    config = load_config(config_path if config_path.exists() else None)

    if args.video_root is not None:
        config.video_root = Path(args.video_root)
    if args.output_root is not None:
        config.output_root = Path(args.output_root)
    if getattr(args, "model_path", None) is not None:
        config.detector.model_path = Path(args.model_path)
    if getattr(args, "sample_rate", None) is not None:
        config.sample_rate = float(args.sample_rate)
    if getattr(args, "frame_stride", None) is not None:
        config.frame_stride = max(1, int(args.frame_stride))
    if getattr(args, "tile_size", None) is not None:
        config.detector.slicing.tile_size = max(0, int(args.tile_size))
    if getattr(args, "clahe", False):
        config.detector.enable_clahe = True
    for item in getattr(args, "workers", None) or []:
        stage, _, count = item.partition("=")
        if stage not in STAGE_NAMES or not count.isdigit():
            raise ValueError(f"--workers expects STAGE=N with STAGE in {STAGE_NAMES}, got '{item}'")
        config.pipeline.initial_workers[stage] = int(count)
    return config


def _format_progress(snapshot: ProgressSnapshot) -> str:
    parts = [f"[{snapshot.state.value}]"]
    for name, stage in snapshot.stages.items():
        parts.append(f"{name} {stage.current}/{stage.total} x{stage.workers}")
    parts.append(f"{snapshot.fps:.1f} fps")
    if snapshot.error:
        parts.append(f"error: {snapshot.error}")
    return " | ".join(parts)


def cmd_create(config: Config, args: argparse.Namespace) -> int:
    config.ensure_output_dirs()
    context = create_run(config.output_root, config.video_root, args.video_name)
    print(f"Created run {context.run_id} in {context.output_dir}")
    return 0


def cmd_list(config: Config, args: argparse.Namespace) -> int:
    for run_id, context in list_runs(config.output_root):
        print(f"{run_id}\t{context.created_at}\t{context.original_name}")
    return 0


def cmd_compute_crops(config: Config, args: argparse.Namespace) -> int:
    context = RunContext.load(config.run_dir(args.run_id))
    crops = context.compute_and_save_crop_config()
    for name, zone in crops.zones.items():
        print(f"{name}: x={zone.bbox.x:.3f} y={zone.bbox.y:.3f} w={zone.bbox.w:.3f} h={zone.bbox.h:.3f}")
    return 0


def cmd_process(config: Config, args: argparse.Namespace) -> int:
    service = PipelineService(config)
    service.start(args.run_id, backend_hint=args.backend, restart=args.restart)
    subscription = service.subscribe_progress(args.run_id)
    last: Optional[ProgressSnapshot] = None
    try:
        for event in subscription:
            if isinstance(event, KeepAlive):
                continue
            last = event
            print(_format_progress(event), flush=True)
    except KeyboardInterrupt:
        print("Stopping; waiting for in-flight frames to drain...", flush=True)
        service.stop(args.run_id)
        service.wait(args.run_id)
        last = service.get_progress(args.run_id)
        print(_format_progress(last), flush=True)
    service.wait(args.run_id)
    last = service.get_progress(args.run_id)
    if last.state == RunState.FAILED:
        logger.error("Run %s failed: %s", args.run_id, last.error)
        return 1
    return 0


def cmd_cliffs(config: Config, args: argparse.Namespace) -> int:
    service = PipelineService(config)
    if args.action is not None:
        if args.frame_index is None:
            raise ValueError("--action requires --frame_index")
        state = service.mutate_cliff(args.run_id, args.frame_index, args.action)
    else:
        state = service.get_cliffs(args.run_id)
    if args.json:
        print(json.dumps(state.to_dict(), indent=2, ensure_ascii=False))
        return 0
    for cliff in state.cliffs:
        colors = f"{cliff.left_team_color or '-'}/{cliff.right_team_color or '-'}"
        flags = "".join(
            flag
            for flag, on in (
                ("L", cliff.left_emptied_first),
                ("R", cliff.right_emptied_first),
                ("?", cliff.maybe_false_positive),
                ("B", cliff.is_break),
            )
            if on
        )
        print(
            f"{cliff.frame_index:>7} {cliff.timestamp} {cliff.status.value:<13} "
            f"{colors:<11} {cliff.score_light}-{cliff.score_dark} {flags}"
        )
    return 0


def cmd_chapters(config: Config, args: argparse.Namespace) -> int:
    print(PipelineService(config).export_chapters(args.run_id), end="")
    return 0


def cmd_playlist(config: Config, args: argparse.Namespace) -> int:
    print(PipelineService(config).export_playlist(args.run_id, save=args.save), end="")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Detect point transitions in ultimate frisbee footage and audit the score.",
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Optional path to YAML config file (defaults to ./config.yaml if present).",
    )
    parser.add_argument("--video_root", type=str, help="Directory containing source videos.")
    parser.add_argument("--output_root", type=str, help="Directory containing run directories.")
    parser.add_argument(
        "--log_level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create", help="Create a run directory for a video.")
    p.add_argument("--video_name", type=str, required=True, help="Video path relative to video_root.")
    p.set_defaults(func=cmd_create)

    p = sub.add_parser("list", help="List runs.")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("compute-crops", help="Derive crops.json from field_boundaries.json.")
    p.add_argument("--run_id", type=str, required=True)
    p.set_defaults(func=cmd_compute_crops)

    p = sub.add_parser("process", help="Run (or resume) the detection pipeline.")
    p.add_argument("--run_id", type=str, required=True)
    p.add_argument("--backend", type=str, help="Decode backend: opencv, auto, ffmpeg, gstreamer, avfoundation.")
    p.add_argument("--restart", action="store_true", help="Discard persisted features and start over.")
    p.add_argument("--model_path", type=str, help="Path to YOLO model weights file.")
    p.add_argument("--sample_rate", type=float, help="Samples per second (overrides metadata.json).")
    p.add_argument("--frame_stride", type=int, help="Use every N-th source frame instead of a sample rate.")
    p.add_argument("--tile_size", type=int, help="Tile size for sliced detection (0 disables).")
    p.add_argument("--clahe", action="store_true", help="Enhance crop contrast before detection.")
    p.add_argument(
        "--workers",
        type=str,
        nargs="*",
        help="Initial workers per stage, e.g. detect=4 crop=2.",
    )
    p.set_defaults(func=cmd_process)

    p = sub.add_parser("cliffs", help="Show or edit reviewed cliffs.")
    p.add_argument("--run_id", type=str, required=True)
    p.add_argument("--frame_index", type=int, help="Cliff to edit.")
    p.add_argument("--action", type=str, choices=[a.value for a in CliffAction])
    p.add_argument("--json", action="store_true", help="Print audit.json content instead of a table.")
    p.set_defaults(func=cmd_cliffs)

    p = sub.add_parser("chapters", help="Print YouTube chapters of confirmed points.")
    p.add_argument("--run_id", type=str, required=True)
    p.set_defaults(func=cmd_chapters)

    p = sub.add_parser("playlist", help="Print a VLC playlist of confirmed points.")
    p.add_argument("--run_id", type=str, required=True)
    p.add_argument("--save", action="store_true", help="Also write playlist.m3u in the run directory.")
    p.set_defaults(func=cmd_playlist)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entrypoint.

    Use ``python -m sprinting_boxes.main --help`` for available options.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
    )
    try:
        config = build_config_from_args(args)
        return int(args.func(config, args))
    except (SprintingBoxesError, ValueError, LookupError) as exc:
        logger.error("%s", exc)
        return 2


if __name__ == "__main__":
    sys.exit(main())
