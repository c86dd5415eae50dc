"""
Centralized configuration for the tiered background removal pipeline.

Ground rules:
- Constants live here; runtime knobs come from the environment with safe defaults.
- Every tier runs the same refinement chain, only its parameters differ.
"""

from __future__ import annotations

import os

# Decode boundary
MAX_INPUT_BYTES = 10 * 1024 * 1024
ACCEPTED_MIME_TYPES = ("image/jpeg", "image/png")
OUTPUT_PREFIX = "removed_bg_"

# Feature analysis
ANALYSIS_MAX_SIZE = 300
SKIN_RATIO_THRESHOLD = 0.05
COLOR_BUCKET = 32
EDGE_THRESHOLD = 30.0
TEXTURE_STRIDE = 8
COMPLEXITY_WEIGHTS = (0.4, 0.4, 0.2)  # edge density, color variance, texture
PRECISE_COMPLEXITY = 0.7
BALANCED_COMPLEXITY = 0.4

# Fast segmentation
BORDER_SAMPLE_STRIDE = 5
BORDER_BUCKET = 16
BACKGROUND_COLOR_COUNT = 3
NEAR_EDGE_RADIUS = 2
NEAR_EDGE_DISTANCE = 40.0
FAR_EDGE_DISTANCE = 60.0
FALLOFF_DISTANCE = 3.0
FALLOFF_STRENGTH = 50.0
ERODE_MIN_NEIGHBORS = 5
DILATE_MIN_NEIGHBORS = 6

# Probabilistic variant
TRIMAP_BORDER = 20

# Refinement
FOREGROUND_ALPHA = 128
MIN_REGION_PIXELS = 50
MIN_REGION_FRACTION = 1.0 / 1000.0
BILATERAL_DIAMETER = 11
BILATERAL_SIGMA_SPACE = 5.0
BILATERAL_SIGMA_RANGE = 50.0

# Model providers
# NOTE: BiRefNet internally splits into patches; this size must be divisible by
# its patching grid. 1088 is the closest "1080-class" square that works reliably.
MATTE_TARGET_SIZE = 1088
PERSON_TARGET_SIZE = 520
PAD_COLOR = 127
IMAGENET_MEAN = [0.485, 0.456, 0.406]
IMAGENET_STD = [0.229, 0.224, 0.225]
PASCAL_PERSON_CLASS = 15
MIN_SUBJECT_FRACTION = 0.001
DEFAULT_MATTE_MODEL = "hf:ZhengPeng7/BiRefNet"

# Optional output crop around the subject.
CROP_PADDING = 50


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def get_load_timeout_s() -> float:
    return _env_float("CUTOUT_LOAD_TIMEOUT_S", 5.0)


def get_infer_timeout_s() -> float:
    return _env_float("CUTOUT_INFER_TIMEOUT_S", 10.0)


def get_max_workers() -> int:
    workers = _env_int("CUTOUT_MAX_WORKERS", min(4, os.cpu_count() or 1))
    return max(1, workers)


def get_matte_model() -> str:
    return os.getenv("CUTOUT_MATTE_MODEL", DEFAULT_MATTE_MODEL)


def get_remote_endpoint() -> str:
    return os.getenv("CUTOUT_REMOTE_ENDPOINT", "").rstrip("/")


def get_remote_api_key() -> str:
    return os.getenv("CUTOUT_REMOTE_API_KEY", "")


def get_fast_variant() -> str:
    return os.getenv("CUTOUT_FAST_VARIANT", "baseline").strip().lower()
