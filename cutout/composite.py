from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .config import CROP_PADDING
from .exceptions import CompositingError
from .raster import Image


@dataclass(frozen=True)
class CropMeta:
    x0: int
    y0: int
    x1: int
    y1: int


def inject_alpha(image: Image, alpha: np.ndarray) -> Image:
    """
    New RGBA Image: source RGB, alpha = source alpha scaled by the mask.

    The source Image is not modified.
    """
    if alpha.ndim != 2 or alpha.shape != (image.height, image.width):
        raise CompositingError(f"Alpha shape {alpha.shape} does not match image {(image.height, image.width)}")
    a = alpha.astype(np.float64)
    if not np.isfinite(a).all():
        raise CompositingError("Non-finite values in alpha mask")

    out = np.array(image.pixels, copy=True)
    combined = image.alpha.astype(np.float64) * np.clip(a, 0.0, 255.0) / 255.0
    out[..., 3] = np.clip(np.rint(combined), 0, 255).astype(np.uint8)
    return Image(pixels=out)


def crop_to_content(alpha: np.ndarray, threshold: int = 0, padding: int = CROP_PADDING) -> CropMeta:
    """
    Compute a padded bounding box around alpha > threshold.

    An empty mask keeps the full frame.
    """
    h, w = alpha.shape[:2]
    ys, xs = np.where(alpha > threshold)
    if ys.size == 0 or xs.size == 0:
        return CropMeta(x0=0, y0=0, x1=w, y1=h)

    x0 = max(0, int(xs.min()) - int(padding))
    y0 = max(0, int(ys.min()) - int(padding))
    x1 = min(w, int(xs.max()) + int(padding) + 1)
    y1 = min(h, int(ys.max()) + int(padding) + 1)
    return CropMeta(x0=x0, y0=y0, x1=x1, y1=y1)


def apply_crop(image: Image, crop: CropMeta) -> Image:
    return Image(pixels=image.pixels[crop.y0 : crop.y1, crop.x0 : crop.x1].copy())


def composite(image: Image, alpha: np.ndarray, crop: bool = False) -> Image:
    out = inject_alpha(image, alpha)
    if crop:
        out = apply_crop(out, crop_to_content(out.alpha))
    return out
