"""
Heuristic image analysis used to pick a processing tier.

All measurements run on a copy downscaled to ANALYSIS_MAX_SIZE on the long edge,
so the cost is bounded regardless of the input resolution.
"""

from __future__ import annotations

from typing import Optional

import cv2
import numpy as np

from .config import (
    ANALYSIS_MAX_SIZE,
    BALANCED_COMPLEXITY,
    COLOR_BUCKET,
    COMPLEXITY_WEIGHTS,
    EDGE_THRESHOLD,
    PRECISE_COMPLEXITY,
    SKIN_RATIO_THRESHOLD,
    TEXTURE_STRIDE,
)
from .contracts import FeatureVector, ImageSize, Recommendation, Tier
from .raster import Image, luminance, sobel_magnitude

# LBP neighbor order: bit i is set when neighbor i is at least as bright as the center.
_LBP_OFFSETS = ((-1, -1), (0, -1), (1, -1), (1, 0), (-1, 0), (1, 1), (0, 1), (-1, 1))

_MODE_NAMES = {
    Tier.FAST: "fast mode",
    Tier.BALANCED: "balanced mode",
    Tier.PRECISE: "precise mode",
}


def downscale_for_analysis(rgb: np.ndarray, max_size: int = ANALYSIS_MAX_SIZE) -> np.ndarray:
    """Shrink so the long edge is at most max_size. Smaller inputs are returned as-is."""
    h, w = rgb.shape[:2]
    scale = min(1.0, float(max_size) / float(max(h, w)))
    if scale >= 1.0:
        return rgb
    new_w = max(1, int(w * scale))
    new_h = max(1, int(h * scale))
    return cv2.resize(np.ascontiguousarray(rgb), (new_w, new_h), interpolation=cv2.INTER_AREA)


def skin_mask(rgb: np.ndarray) -> np.ndarray:
    r = rgb[..., 0].astype(np.int16)
    g = rgb[..., 1].astype(np.int16)
    b = rgb[..., 2].astype(np.int16)
    spread = np.maximum(np.maximum(r, g), b) - np.minimum(np.minimum(r, g), b)

    chromatic = (
        (r > 95) & (g > 40) & (b > 20)
        & (r > g) & (r > b)
        & (np.abs(r - g) > 15)
        & (spread > 15)
    )
    pale = (
        (r > 220) & (g > 210) & (b > 170)
        & (np.abs(r - g) <= 15)
        & (r > b) & (g > b)
    )
    return chromatic | pale


def skin_ratio(rgb: np.ndarray) -> float:
    total = rgb.shape[0] * rgb.shape[1]
    if total == 0:
        return 0.0
    return float(np.count_nonzero(skin_mask(rgb))) / float(total)


def color_variance(rgb: np.ndarray) -> float:
    """Distinct 32-level color buckets over the 512 possible."""
    q = (rgb.reshape(-1, 3) // COLOR_BUCKET).astype(np.int32)
    levels = 256 // COLOR_BUCKET
    codes = (q[:, 0] * levels + q[:, 1]) * levels + q[:, 2]
    return float(np.unique(codes).size) / float(levels ** 3)


def edge_density(rgb: np.ndarray) -> float:
    mag = sobel_magnitude(luminance(rgb))
    if mag.size == 0:
        return 0.0
    return float(np.count_nonzero(mag > EDGE_THRESHOLD)) / float(mag.size)


def lbp_transitions(codes: np.ndarray) -> np.ndarray:
    """Circular 0/1 transitions in each 8-bit code."""
    bits = (codes[:, None].astype(np.int32) >> np.arange(8)) & 1
    return np.count_nonzero(bits != np.roll(bits, -1, axis=1), axis=1)


def texture_complexity(rgb: np.ndarray, stride: int = TEXTURE_STRIDE) -> float:
    gray = luminance(rgb)
    h, w = gray.shape
    ys = np.arange(stride, h - stride, stride)
    xs = np.arange(stride, w - stride, stride)
    if ys.size == 0 or xs.size == 0:
        return 0.0

    yy, xx = np.meshgrid(ys, xs, indexing="ij")
    yy = yy.ravel()
    xx = xx.ravel()
    center = gray[yy, xx]

    codes = np.zeros(center.shape, dtype=np.int32)
    for bit, (dx, dy) in enumerate(_LBP_OFFSETS):
        codes |= (gray[yy + dy, xx + dx] >= center).astype(np.int32) << bit

    return float(lbp_transitions(codes).mean()) / 255.0


def composite_complexity(edge: float, color: float, texture: float) -> float:
    w_edge, w_color, w_texture = COMPLEXITY_WEIGHTS
    score = edge * w_edge + color * w_color + texture * w_texture
    return min(1.0, max(0.0, score))


def image_statistics(rgb: np.ndarray) -> tuple:
    """(brightness, contrast), both normalized to [0, 1]."""
    if rgb.size == 0:
        return 0.0, 0.0
    brightness = rgb.astype(np.float64).sum(axis=2) / 3.0
    return float(brightness.mean() / 255.0), float(brightness.std() / 255.0)


def analyze(image: Image, file_size: Optional[int] = None) -> FeatureVector:
    rgb = downscale_for_analysis(image.rgb)

    edge = edge_density(rgb)
    color = color_variance(rgb)
    texture = texture_complexity(rgb)
    brightness, contrast = image_statistics(rgb)

    return FeatureVector(
        skin_ratio=skin_ratio(rgb),
        color_variance=color,
        edge_density=edge,
        texture_complexity=texture,
        complexity=composite_complexity(edge, color, texture),
        brightness=brightness,
        contrast=contrast,
        size=ImageSize(width=image.width, height=image.height, file_size=file_size),
    )


def complexity(image: Image) -> float:
    rgb = downscale_for_analysis(image.rgb)
    return composite_complexity(edge_density(rgb), color_variance(rgb), texture_complexity(rgb))


def has_human(image: Image) -> bool:
    return skin_ratio(downscale_for_analysis(image.rgb)) > SKIN_RATIO_THRESHOLD


def recommend_tier(has_human: bool, complexity: float) -> Tier:
    if has_human and complexity > PRECISE_COMPLEXITY:
        return Tier.PRECISE
    if has_human or complexity > BALANCED_COMPLEXITY:
        return Tier.BALANCED
    return Tier.FAST


def explain(features: FeatureVector, tier: Tier) -> str:
    reasons = []
    if features.has_human:
        reasons.append("person detected")
    if features.complexity > PRECISE_COMPLEXITY:
        reasons.append("complex background")
    elif features.complexity > BALANCED_COMPLEXITY:
        reasons.append("moderately complex background")
    else:
        reasons.append("simple background")
    return f"Smart analysis: {', '.join(reasons)}; recommended {_MODE_NAMES[tier]}"


def analyze_and_recommend(image: Image, file_size: Optional[int] = None) -> Recommendation:
    features = analyze(image, file_size=file_size)
    tier = recommend_tier(features.has_human, features.complexity)
    return Recommendation(features=features, tier=tier, reason=explain(features, tier))
