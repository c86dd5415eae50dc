"""
Model-free foreground segmentation for the fast tier.

Baseline algorithm (FastSegmenter):
  1) Sample border pixels, keep the most frequent quantized colors as background
  2) Sobel edge map on luminance
  3) Color-distance classification, stricter next to edges
  4) Soft alpha falloff close to edges
  5) 3x3 erosion/dilation pair to drop speckle

ProbabilisticSegmenter is an alternative with the same contract, driven by
per-region Gaussian color models seeded from a fixed trimap.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .config import (
    BACKGROUND_COLOR_COUNT,
    BORDER_BUCKET,
    BORDER_SAMPLE_STRIDE,
    DILATE_MIN_NEIGHBORS,
    EDGE_THRESHOLD,
    ERODE_MIN_NEIGHBORS,
    FALLOFF_DISTANCE,
    FALLOFF_STRENGTH,
    FAR_EDGE_DISTANCE,
    FOREGROUND_ALPHA,
    NEAR_EDGE_DISTANCE,
    NEAR_EDGE_RADIUS,
    TRIMAP_BORDER,
)
from .exceptions import SegmentationError
from .logging_setup import get_logger
from .raster import AlphaMask, Image, edge_map, luminance

logger = get_logger(__name__)

TRIMAP_BACKGROUND = 0
TRIMAP_UNKNOWN = 128
TRIMAP_FOREGROUND = 255


def _check_size(image: Image) -> None:
    if image.width < 3 or image.height < 3:
        raise SegmentationError(f"Image too small to segment: {image.width}x{image.height}")


def border_sample_points(width: int, height: int, stride: int = BORDER_SAMPLE_STRIDE) -> List[Tuple[int, int]]:
    """(x, y) points along the four edges; top/bottom rows first, then left/right columns."""
    points = []
    for x in range(0, width, stride):
        points.append((x, 0))
        points.append((x, height - 1))
    for y in range(0, height, stride):
        points.append((0, y))
        points.append((width - 1, y))
    return points


def detect_background_colors(
    rgb: np.ndarray,
    count: int = BACKGROUND_COLOR_COUNT,
    stride: int = BORDER_SAMPLE_STRIDE,
) -> np.ndarray:
    """Most frequent quantized border colors, shape (k, 3); ties keep first-seen order."""
    h, w = rgb.shape[:2]
    points = border_sample_points(w, h, stride)
    xs = np.array([p[0] for p in points], dtype=np.intp)
    ys = np.array([p[1] for p in points], dtype=np.intp)
    samples = (rgb[ys, xs] // BORDER_BUCKET) * BORDER_BUCKET

    freq = Counter(tuple(int(c) for c in px) for px in samples)
    top = [color for color, _n in freq.most_common(count)]
    return np.array(top, dtype=np.float64).reshape(-1, 3)


def _box_any(binary: np.ndarray, radius: int) -> np.ndarray:
    """True where any pixel in the (2r+1)^2 window is set; outside the image counts as unset."""
    k = 2 * radius + 1
    kernel = np.ones((k, k), np.uint8)
    grown = cv2.dilate(
        binary.astype(np.uint8),
        kernel,
        borderType=cv2.BORDER_CONSTANT,
        borderValue=0,
    )
    return grown > 0


def nearest_edge_distance(edges: np.ndarray, max_distance: float = FALLOFF_DISTANCE) -> np.ndarray:
    """
    Euclidean distance to the closest edge pixel, only resolved below max_distance.

    Pixels with no edge that close get +inf.
    """
    h, w = edges.shape
    r = int(np.ceil(max_distance))
    padded = np.pad(edges, r, mode="constant", constant_values=False)
    dist = np.full((h, w), np.inf, dtype=np.float64)

    for dy in range(-r, r + 1):
        for dx in range(-r, r + 1):
            d = float(np.hypot(dx, dy))
            if d >= max_distance:
                continue
            shifted = padded[r + dy : r + dy + h, r + dx : r + dx + w]
            np.minimum(dist, np.where(shifted, d, np.inf), out=dist)
    return dist


def neighbor_count(binary: np.ndarray) -> np.ndarray:
    """Set pixels in each 3x3 window (center included); border positions are left at 0."""
    h, w = binary.shape
    counts = np.zeros((h, w), dtype=np.int32)
    if h < 3 or w < 3:
        return counts
    b = binary.astype(np.int32)
    inner = counts[1:-1, 1:-1]
    for dy in (0, 1, 2):
        for dx in (0, 1, 2):
            inner += b[dy : dy + h - 2, dx : dx + w - 2]
    return counts


def remove_noise(alpha: np.ndarray) -> np.ndarray:
    """
    Erode isolated foreground, then restore pixels surrounded by foreground.

    Only interior pixels are touched. Restored pixels take their pre-erosion alpha.
    """
    original = alpha.copy()
    h, w = alpha.shape
    interior = np.zeros((h, w), dtype=bool)
    interior[1:-1, 1:-1] = True

    fg = original > FOREGROUND_ALPHA
    eroded = original.copy()
    eroded[interior & fg & (neighbor_count(fg) < ERODE_MIN_NEIGHBORS)] = 0

    eroded_fg = eroded > FOREGROUND_ALPHA
    restore = interior & (eroded == 0) & (neighbor_count(eroded_fg) >= DILATE_MIN_NEIGHBORS)
    out = eroded.copy()
    out[restore] = original[restore]
    return out


class FastSegmenter:
    """Border-color + edge-map segmentation. Always succeeds for images of at least 3x3."""

    name = "baseline"

    def segment(self, image: Image) -> AlphaMask:
        _check_size(image)
        rgb = image.rgb
        rgb_f = rgb.astype(np.float64)

        bg_colors = detect_background_colors(rgb)
        edges = edge_map(luminance(rgb), EDGE_THRESHOLD)
        near_edge = _box_any(edges, NEAR_EDGE_RADIUS)

        threshold = np.where(near_edge, NEAR_EDGE_DISTANCE, FAR_EDGE_DISTANCE)
        background = np.zeros(edges.shape, dtype=bool)
        for color in bg_colors:
            dist = np.sqrt(((rgb_f - color) ** 2).sum(axis=2))
            background |= dist < threshold

        alpha = image.alpha.astype(np.float64)
        d = nearest_edge_distance(edges, FALLOFF_DISTANCE)
        soft = ~background & np.isfinite(d)
        alpha[soft] = np.maximum(0.0, alpha[soft] - FALLOFF_STRENGTH * (FALLOFF_DISTANCE - d[soft]) / FALLOFF_DISTANCE)
        alpha[background] = 0.0

        alpha_u8 = np.clip(np.rint(alpha), 0, 255).astype(np.uint8)
        logger.debug(
            "fast segmentation: %d background colors, %.1f%% background",
            len(bg_colors),
            100.0 * float(background.mean()),
        )
        return AlphaMask(values=remove_noise(alpha_u8))


@dataclass(frozen=True)
class ColorModel:
    mean: Tuple[float, float, float]
    variance: Tuple[float, float, float]

    def likelihood(self, rgb: np.ndarray) -> np.ndarray:
        """Unnormalized Gaussian likelihood per pixel, rgb float (..., 3)."""
        mean = np.asarray(self.mean, dtype=np.float64)
        var = np.asarray(self.variance, dtype=np.float64)
        exponent = (((rgb - mean) ** 2) / (2.0 * var + 1.0)).sum(axis=-1)
        return np.exp(-exponent)


def create_trimap(width: int, height: int, border: int = TRIMAP_BORDER) -> np.ndarray:
    """Border band is background, a central disc is foreground, the rest unknown."""
    ys, xs = np.mgrid[0:height, 0:width]
    cx, cy = width / 2.0, height / 2.0
    max_radius = min(width, height) / 3.0
    distance = np.sqrt((xs - cx) ** 2 + (ys - cy) ** 2)

    trimap = np.full((height, width), TRIMAP_UNKNOWN, dtype=np.uint8)
    trimap[distance < max_radius / 2.0] = TRIMAP_FOREGROUND
    band = (xs < border) | (xs >= width - border) | (ys < border) | (ys >= height - border)
    trimap[band] = TRIMAP_BACKGROUND
    return trimap


def build_color_model(rgb: np.ndarray, trimap: np.ndarray, label: int) -> Optional[ColorModel]:
    colors = rgb[trimap == label].astype(np.float64)
    if colors.shape[0] == 0:
        return None
    mean = colors.mean(axis=0)
    variance = ((colors - mean) ** 2).mean(axis=0)
    return ColorModel(mean=tuple(float(v) for v in mean), variance=tuple(float(v) for v in variance))


class ProbabilisticSegmenter:
    """Trimap-seeded color model classification; same contract as FastSegmenter."""

    name = "probabilistic"

    def segment(self, image: Image) -> AlphaMask:
        _check_size(image)
        rgb = image.rgb.astype(np.float64)
        trimap = create_trimap(image.width, image.height)

        fg_model = build_color_model(image.rgb, trimap, TRIMAP_FOREGROUND)
        bg_model = build_color_model(image.rgb, trimap, TRIMAP_BACKGROUND)

        fg_prob = fg_model.likelihood(rgb) if fg_model else np.full(trimap.shape, 0.5)
        bg_prob = bg_model.likelihood(rgb) if bg_model else np.full(trimap.shape, 0.5)

        values = np.where(fg_prob > bg_prob, 255, 0).astype(np.uint8)
        return AlphaMask(values=values)


def get_segmenter(variant: str = "baseline"):
    if variant == ProbabilisticSegmenter.name:
        return ProbabilisticSegmenter()
    if variant == FastSegmenter.name:
        return FastSegmenter()
    raise ValueError(f"Unknown fast segmenter variant: {variant!r}")
