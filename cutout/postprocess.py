from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from .config import (
    BILATERAL_DIAMETER,
    BILATERAL_SIGMA_RANGE,
    BILATERAL_SIGMA_SPACE,
    FOREGROUND_ALPHA,
    MIN_REGION_FRACTION,
    MIN_REGION_PIXELS,
)
from .contracts import Tier
from .logging_setup import get_logger

logger = get_logger(__name__)

_FOUR_NEIGHBORS = ((0, -1), (0, 1), (-1, 0), (1, 0))
_EIGHT_NEIGHBORS = ((-1, -1), (-1, 0), (-1, 1), (0, -1), (0, 1), (1, -1), (1, 0), (1, 1))
_FEATHER_CHUNK = 16384


@dataclass(frozen=True)
class RefineParams:
    """
    Knobs of the refinement chain.

    Stage order is fixed (median -> open -> feather -> prune); params only switch
    stages on or off and tune the feathering.
    """

    bilateral: bool = False
    median: bool = True
    morph_open: bool = True
    feather: bool = True
    edge_connectivity: int = 4
    edge_jump: float = 100.0
    adaptive_sigma: bool = False
    sigma: float = 1.0
    radius: int = 2
    prune: bool = True


TIER_REFINE_PARAMS = {
    Tier.FAST: RefineParams(prune=False),
    Tier.BALANCED: RefineParams(),
    Tier.PRECISE: RefineParams(bilateral=True, edge_connectivity=8, edge_jump=50.0, adaptive_sigma=True),
}


def _interior_only(original: np.ndarray, filtered: np.ndarray) -> np.ndarray:
    """Keep filtered values on interior pixels, original values on the 1px border."""
    out = original.copy()
    if original.shape[0] > 2 and original.shape[1] > 2:
        out[1:-1, 1:-1] = filtered[1:-1, 1:-1]
    return out


def median_filter(alpha: np.ndarray) -> np.ndarray:
    """3x3 median on interior pixels."""
    return _interior_only(alpha, cv2.medianBlur(alpha, 3))


def morph_open(alpha: np.ndarray) -> np.ndarray:
    """3x3 erosion then 3x3 dilation, interior pixels only."""
    kernel = np.ones((3, 3), np.uint8)
    eroded = _interior_only(alpha, cv2.erode(alpha, kernel))
    return _interior_only(eroded, cv2.dilate(eroded, kernel))


def bilateral_smooth(alpha: np.ndarray) -> np.ndarray:
    return cv2.bilateralFilter(alpha, BILATERAL_DIAMETER, BILATERAL_SIGMA_RANGE, BILATERAL_SIGMA_SPACE)


def _max_neighbor_diff(alpha: np.ndarray, connectivity: int) -> np.ndarray:
    """Largest absolute alpha difference to any in-bounds neighbor."""
    a = alpha.astype(np.int16)
    h, w = a.shape
    padded = np.pad(a, 1, mode="edge")
    offsets = _FOUR_NEIGHBORS if connectivity == 4 else _EIGHT_NEIGHBORS
    diff = np.zeros((h, w), dtype=np.int16)
    for dy, dx in offsets:
        # edge padding makes out-of-bounds neighbors equal to the center, so they never count
        neighbor = padded[1 + dy : 1 + dy + h, 1 + dx : 1 + dx + w]
        np.maximum(diff, np.abs(a - neighbor), out=diff)
    return diff


def feather_edges(
    alpha: np.ndarray,
    edge_jump: float = 100.0,
    connectivity: int = 4,
    sigma: float = 1.0,
    radius: int = 2,
    adaptive_sigma: bool = False,
) -> np.ndarray:
    """
    Gaussian-average alpha on silhouette edges only.

    Edge pixels have a neighbor whose alpha differs by more than edge_jump. With
    adaptive_sigma, sigma = clamp(strength / 50, 0.5, 2.0) and radius = ceil(2 * sigma),
    strength being the largest neighbor difference. Windows are clipped to the image;
    the result divides by the accumulated weight, which includes the center weight 1.
    """
    h, w = alpha.shape
    strength = _max_neighbor_diff(alpha, connectivity)
    ys, xs = np.nonzero(strength > edge_jump)
    if ys.size == 0:
        return alpha.copy()

    if adaptive_sigma:
        sigmas = np.clip(strength[ys, xs].astype(np.float64) / 50.0, 0.5, 2.0)
        radii = np.ceil(sigmas * 2.0).astype(np.int64)
    else:
        sigmas = np.full(ys.shape, float(sigma))
        radii = np.full(ys.shape, int(radius), dtype=np.int64)

    r_max = int(radii.max())
    k = 2 * r_max + 1
    src = np.pad(alpha.astype(np.float64), r_max, mode="constant", constant_values=0.0)
    valid = np.pad(np.ones((h, w), dtype=np.float64), r_max, mode="constant", constant_values=0.0)

    src_windows = sliding_window_view(src, (k, k))
    valid_windows = sliding_window_view(valid, (k, k))

    offs = np.arange(-r_max, r_max + 1)
    dy, dx = np.meshgrid(offs, offs, indexing="ij")
    dist2 = (dx * dx + dy * dy).astype(np.float64)
    cheb = np.maximum(np.abs(dx), np.abs(dy))

    out = alpha.copy()
    for start in range(0, ys.size, _FEATHER_CHUNK):
        sl = slice(start, start + _FEATHER_CHUNK)
        cy, cx = ys[sl], xs[sl]
        s = sigmas[sl][:, None, None]

        weights = np.exp(-dist2[None, :, :] / (2.0 * s * s))
        weights *= cheb[None, :, :] <= radii[sl][:, None, None]
        weights *= valid_windows[cy, cx]

        weight_sum = weights.sum(axis=(1, 2))
        alpha_sum = (weights * src_windows[cy, cx]).sum(axis=(1, 2))
        out[cy, cx] = np.clip(np.rint(alpha_sum / weight_sum), 0, 255).astype(np.uint8)
    return out


def min_region_size(width: int, height: int) -> float:
    return max(float(MIN_REGION_PIXELS), width * height * MIN_REGION_FRACTION)


def prune_small_regions(alpha: np.ndarray) -> np.ndarray:
    """
    Zero 4-connected foreground components smaller than min_region_size().

    The soft fringe around a pruned component (low alpha, 8-connected to it) goes
    with it unless it also touches a component that is kept.
    """
    h, w = alpha.shape
    core = (alpha > FOREGROUND_ALPHA).astype(np.uint8)
    num_labels, labels, stats, _centroids = cv2.connectedComponentsWithStats(core, connectivity=4)
    if num_labels <= 1:
        return alpha.copy()

    limit = min_region_size(w, h)
    areas = stats[1:, cv2.CC_STAT_AREA]
    small = np.flatnonzero(areas < limit) + 1
    if small.size == 0:
        return alpha.copy()

    pruned_core = np.isin(labels, small)
    kept_core = (labels > 0) & ~pruned_core

    support = (alpha > 0).astype(np.uint8)
    _n, support_labels = cv2.connectedComponents(support, connectivity=8)
    doomed = np.setdiff1d(
        np.unique(support_labels[pruned_core]),
        np.unique(support_labels[kept_core]),
    )
    doomed = doomed[doomed > 0]

    out = alpha.copy()
    out[pruned_core] = 0
    out[np.isin(support_labels, doomed)] = 0
    logger.debug("pruned %d of %d regions below %.0f px", small.size, num_labels - 1, limit)
    return out


def refine(alpha: np.ndarray, width: int, height: int, params: RefineParams = RefineParams()) -> np.ndarray:
    """
    Shared refinement chain applied to every raw mask.

    Returns a new uint8 (height, width) array; the input is left untouched.
    """
    if alpha.shape != (height, width):
        raise ValueError(f"Alpha shape {alpha.shape} does not match {(height, width)}")
    a = np.clip(alpha, 0, 255).astype(np.uint8, copy=True)

    if params.bilateral:
        a = bilateral_smooth(a)
    if params.median:
        a = median_filter(a)
    if params.morph_open:
        a = morph_open(a)
    if params.feather:
        a = feather_edges(
            a,
            edge_jump=params.edge_jump,
            connectivity=params.edge_connectivity,
            sigma=params.sigma,
            radius=params.radius,
            adaptive_sigma=params.adaptive_sigma,
        )
    if params.prune:
        a = prune_small_regions(a)
    return a


def foreground_ratio_step(ratio: np.ndarray) -> np.ndarray:
    out = np.zeros(ratio.shape, dtype=np.float32)
    out[ratio > 0.2] = 0.2
    out[ratio > 0.4] = 0.5
    out[ratio > 0.6] = 0.8
    out[ratio > 0.8] = 1.0
    return out


def confidence_to_alpha(confidence: np.ndarray, radius: int = 2) -> np.ndarray:
    """
    Convert a provider confidence map in [0, 1] into a raw uint8 alpha mask.

    Below 0.5 is background. Foreground pixels are scaled by how much of their
    (2r+1)^2 neighborhood (in-bounds pixels only) is foreground as well.
    """
    if confidence.ndim != 2:
        raise ValueError(f"Expected 2D confidence map, got shape={confidence.shape}")
    conf = np.nan_to_num(confidence.astype(np.float32, copy=False), nan=0.0)
    fg = (conf >= 0.5).astype(np.float32)

    k = 2 * radius + 1
    fg_count = cv2.boxFilter(fg, -1, (k, k), normalize=False, borderType=cv2.BORDER_CONSTANT)
    total = cv2.boxFilter(np.ones_like(fg), -1, (k, k), normalize=False, borderType=cv2.BORDER_CONSTANT)
    factor = foreground_ratio_step(fg_count / total)

    alpha = np.where(fg > 0, 255.0 * factor, 0.0)
    return np.clip(np.rint(alpha), 0, 255).astype(np.uint8)
