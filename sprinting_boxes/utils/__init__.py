"""
Shared helpers (geometry) used by calibration and the pipeline stages.
"""
