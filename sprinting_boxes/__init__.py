"""
Top-level package for the sprinting-boxes point detection project.

This package provides a staged pipeline for:
- Decoding sampled frames from a fixed-camera ultimate frisbee video.
- Cropping the calibrated end zones and field.
- Detecting players per zone (optionally with tiled detection).
- Deriving per-frame occupancy features and candidate point transitions.
- Auditing the candidates into a consistent running score.

See :mod:`sprinting_boxes.service` for the run-level entrypoints and
:mod:`sprinting_boxes.main` for the command line interface.
"""

__version__ = "0.3.0"
