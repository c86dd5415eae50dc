from __future__ import annotations

import os
from typing import Any, Tuple

import torch

from .config import DEFAULT_MATTE_MODEL
from .logging_setup import get_logger

logger = get_logger(__name__)


def get_device() -> torch.device:
    """Apple MPS when present, then CUDA, then CPU."""
    if torch.backends.mps.is_available():
        return torch.device("mps")
    if torch.cuda.is_available():
        return torch.device("cuda")
    return torch.device("cpu")


def _prepare(model: torch.nn.Module, device: torch.device) -> torch.nn.Module:
    """Inference mode, no grads, float32 weights on the target device."""
    model.eval()
    for p in model.parameters():
        p.requires_grad_(False)
    return model.to(dtype=torch.float32).to(device)


def load_torchscript_matting_model(model_path: str, device: torch.device | None = None) -> torch.nn.Module:
    """
    Matting model exported with torch.jit.save (any extension).

    state_dict checkpoints are not accepted: they need the network's source code.
    """
    device = device or get_device()
    if not os.path.exists(model_path):
        raise FileNotFoundError(f"Model not found: {model_path}")

    torch.set_default_dtype(torch.float32)
    try:
        # deform_conv2d and friends are registered on torchvision import
        import torchvision  # noqa: F401

        # float64 attributes cannot go to MPS directly, so load on CPU first
        scripted = torch.jit.load(model_path, map_location="cpu")
    except Exception as e:  # noqa: BLE001 - surface a helpful error
        raise RuntimeError(
            f"Could not load {model_path} as TorchScript. Export the matting model with torch.jit.save() first."
        ) from e

    logger.debug("TorchScript matte model loaded from %s", model_path)
    return _prepare(scripted, device)


def load_birefnet_hf(hf_repo: str, device: torch.device | None = None) -> torch.nn.Module:
    """
    BiRefNet-compatible matting model from the Hugging Face hub (trust_remote_code).

    low_cpu_mem_usage stays off: BiRefNet calls `.item()` while building its backbone,
    which fails on meta tensors.
    """
    device = device or get_device()
    try:
        from transformers import AutoModelForImageSegmentation
    except ImportError as e:
        raise RuntimeError("transformers is not installed. Run: pip install transformers") from e

    torch.set_default_dtype(torch.float32)
    net = AutoModelForImageSegmentation.from_pretrained(
        hf_repo,
        trust_remote_code=True,
        low_cpu_mem_usage=False,
        device_map=None,
    )
    logger.debug("Hugging Face matte model %s loaded", hf_repo)
    return _prepare(net, device)


def load_person_segmenter(device: torch.device | None = None) -> torch.nn.Module:
    """DeepLabV3 (MobileNetV3-Large) trained on Pascal VOC labels; class 15 is "person"."""
    device = device or get_device()
    try:
        from torchvision.models.segmentation import (
            DeepLabV3_MobileNet_V3_Large_Weights,
            deeplabv3_mobilenet_v3_large,
        )
    except ImportError as e:
        raise RuntimeError("torchvision is not installed. Run: pip install torchvision") from e

    return _prepare(deeplabv3_mobilenet_v3_large(weights=DeepLabV3_MobileNet_V3_Large_Weights.DEFAULT), device)


def load_matte_model(model_spec: str) -> Tuple[torch.nn.Module, torch.device]:
    """
    model_spec forms:
      "hf:<repo>"   Hugging Face repo (BiRefNet-compatible)
      "birefnet"    the default BiRefNet repo
      <path>        TorchScript file
    """
    device = get_device()
    if model_spec == "birefnet":
        model_spec = DEFAULT_MATTE_MODEL
    if model_spec.startswith("hf:"):
        return load_birefnet_hf(model_spec[len("hf:") :], device=device), device
    return load_torchscript_matting_model(model_spec, device=device), device


def forward_model(model: torch.nn.Module, x: torch.Tensor) -> Any:
    with torch.no_grad():
        return model(x)
