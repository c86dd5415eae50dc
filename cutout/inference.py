from __future__ import annotations

from typing import Optional, Tuple

import cv2
import numpy as np
import torch

from .config import IMAGENET_MEAN, IMAGENET_STD, MATTE_TARGET_SIZE, PASCAL_PERSON_CLASS, PERSON_TARGET_SIZE
from .model import forward_model

_OUTPUT_KEYS = ("logits", "pred", "alpha", "mask", "out")


def normalize(img: np.ndarray) -> torch.Tensor:
    """
    uint8 RGB (H, W, 3) -> ImageNet-normalized float32 tensor (1, 3, H, W).
    """
    if img.ndim != 3 or img.shape[2] != 3:
        raise ValueError(f"Expected RGB image (H,W,3), got {img.shape}")
    mean = np.asarray(IMAGENET_MEAN, dtype=np.float32)
    std = np.asarray(IMAGENET_STD, dtype=np.float32)
    chw = ((img.astype(np.float32) / 255.0 - mean) / std).transpose(2, 0, 1)
    return torch.from_numpy(np.ascontiguousarray(chw)).unsqueeze(0)


def _first_tensor(y) -> Optional[torch.Tensor]:
    """
    Pick the prediction out of whatever a model returns.

    Matting models return a tensor or a list of side outputs (final stage last);
    torchvision / transformers segmenters return a dict or ModelOutput.
    """
    if isinstance(y, torch.Tensor):
        return y
    if isinstance(y, (list, tuple)):
        return next((t for t in reversed(y) if isinstance(t, torch.Tensor)), None)
    if isinstance(y, dict):
        for k in _OUTPUT_KEYS:
            if isinstance(y.get(k), torch.Tensor):
                return y[k]
        return next((v for v in y.values() if isinstance(v, torch.Tensor)), None)
    return None


def _run(model: torch.nn.Module, x: torch.Tensor, device: torch.device) -> torch.Tensor:
    y = _first_tensor(forward_model(model, x.float().to(device)))
    if y is None:
        raise RuntimeError("Model output carries no tensor")
    return y


def _to_numpy(p: torch.Tensor) -> np.ndarray:
    if torch.isnan(p).any():
        raise RuntimeError("NaNs detected in model output.")
    return np.clip(p.detach().to("cpu").numpy().astype(np.float32, copy=False), 0.0, 1.0)


def _resize_plane(plane: torch.Tensor, size: Tuple[int, int]) -> torch.Tensor:
    """Bilinear resize of a (H, W) or (1, 1, H, W) tensor to (1, 1, *size)."""
    while plane.ndim < 4:
        plane = plane.unsqueeze(0)
    if tuple(plane.shape[-2:]) == size:
        return plane
    return torch.nn.functional.interpolate(plane, size=size, mode="bilinear", align_corners=False)


def predict_matte(
    model: torch.nn.Module,
    x: torch.Tensor,
    device: torch.device,
    target_size: int = MATTE_TARGET_SIZE,
) -> np.ndarray:
    """
    Salient-object matte for a padded square input.

    Output: float32 (target_size, target_size) in [0, 1].
    """
    if x.ndim != 4 or x.shape[0] != 1:
        raise ValueError(f"Expected input tensor (1,3,H,W), got {tuple(x.shape)}")

    y = _run(model, x, device)
    if y.ndim == 4:
        y = y[0, 0]
    elif y.ndim == 3:
        y = y[0]
    elif y.ndim != 2:
        raise RuntimeError(f"Unexpected output tensor shape: {tuple(y.shape)}")

    # matting heads emit logits
    logits = _resize_plane(y.float(), (target_size, target_size))[0, 0]
    return _to_numpy(torch.sigmoid(logits))


def predict_person(
    model: torch.nn.Module,
    rgb: np.ndarray,
    device: torch.device,
    target_size: int = PERSON_TARGET_SIZE,
) -> np.ndarray:
    """
    Person probability from a Pascal VOC semantic segmenter, at the input resolution.

    The long edge is resized to target_size; no padding is needed since the
    network is fully convolutional.
    """
    h, w = rgb.shape[:2]
    scale = float(target_size) / float(max(h, w))
    small = cv2.resize(
        np.ascontiguousarray(rgb),
        (max(1, int(round(w * scale))), max(1, int(round(h * scale)))),
        interpolation=cv2.INTER_AREA if scale < 1 else cv2.INTER_LINEAR,
    )

    logits = _run(model, normalize(small), device)
    if logits.ndim != 4 or logits.shape[1] <= PASCAL_PERSON_CLASS:
        raise RuntimeError(f"Unexpected segmentation output shape: {tuple(logits.shape)}")

    person = torch.softmax(logits.float(), dim=1)[:, PASCAL_PERSON_CLASS : PASCAL_PERSON_CLASS + 1]
    return _to_numpy(_resize_plane(person, (h, w))[0, 0])
