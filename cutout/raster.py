from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class Image:
    """
    Decoded RGBA pixel grid, uint8 ndarray of shape (H, W, 4).

    The array is marked read-only; stages that need to write take a copy.
    """

    pixels: np.ndarray

    def __post_init__(self) -> None:
        px = self.pixels
        if px.ndim != 3 or px.shape[2] != 4:
            raise ValueError(f"Expected RGBA image (H,W,4), got shape={px.shape}")
        if px.dtype != np.uint8:
            raise ValueError(f"Expected uint8 pixels, got dtype={px.dtype}")
        if px.flags.writeable:
            px = px.copy()
            px.setflags(write=False)
            object.__setattr__(self, "pixels", px)

    @classmethod
    def from_rgb(cls, rgb: np.ndarray) -> "Image":
        """Wrap an RGB uint8 array with a fully opaque alpha channel."""
        if rgb.ndim != 3 or rgb.shape[2] != 3:
            raise ValueError(f"Expected RGB image (H,W,3), got shape={rgb.shape}")
        alpha = np.full(rgb.shape[:2] + (1,), 255, dtype=np.uint8)
        return cls(pixels=np.concatenate([rgb.astype(np.uint8, copy=False), alpha], axis=2))

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def rgb(self) -> np.ndarray:
        return self.pixels[..., :3]

    @property
    def alpha(self) -> np.ndarray:
        return self.pixels[..., 3]


@dataclass
class AlphaMask:
    """Single-channel foreground confidence, uint8 (H, W); 255 = foreground."""

    values: np.ndarray

    def __post_init__(self) -> None:
        if self.values.ndim != 2:
            raise ValueError(f"Expected 2D mask, got shape={self.values.shape}")
        if self.values.dtype != np.uint8:
            self.values = np.clip(np.rint(self.values), 0, 255).astype(np.uint8)

    @property
    def width(self) -> int:
        return int(self.values.shape[1])

    @property
    def height(self) -> int:
        return int(self.values.shape[0])

    def matches(self, image: Image) -> bool:
        return self.values.shape == (image.height, image.width)


def luminance(rgb: np.ndarray) -> np.ndarray:
    """ITU-R 601 luma as float64 (H, W)."""
    rgb_f = rgb.astype(np.float64)
    return 0.299 * rgb_f[..., 0] + 0.587 * rgb_f[..., 1] + 0.114 * rgb_f[..., 2]


def sobel_magnitude(gray: np.ndarray) -> np.ndarray:
    """
    3x3 Sobel gradient magnitude over interior pixels.

    Returns an array of shape (H-2, W-2); empty when the image has no interior.
    """
    h, w = gray.shape
    if h < 3 or w < 3:
        return np.zeros((max(0, h - 2), max(0, w - 2)), dtype=np.float64)

    tl, tc, tr = gray[:-2, :-2], gray[:-2, 1:-1], gray[:-2, 2:]
    ml, mr = gray[1:-1, :-2], gray[1:-1, 2:]
    bl, bc, br = gray[2:, :-2], gray[2:, 1:-1], gray[2:, 2:]

    gx = (tr + 2.0 * mr + br) - (tl + 2.0 * ml + bl)
    gy = (bl + 2.0 * bc + br) - (tl + 2.0 * tc + tr)
    return np.sqrt(gx * gx + gy * gy)


def edge_map(gray: np.ndarray, threshold: float) -> np.ndarray:
    """Boolean (H, W) map of interior pixels whose Sobel magnitude exceeds threshold."""
    edges = np.zeros(gray.shape, dtype=bool)
    mag = sobel_magnitude(gray)
    if mag.size:
        edges[1:-1, 1:-1] = mag > threshold
    return edges
