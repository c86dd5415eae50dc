"""
Model-backed mask providers for the balanced and precise tiers.

A provider has two blocking halves: `load()` builds a handle (model, session, ...)
and `infer(handle, image)` returns a float32 confidence map matching the image.
Both run off the event loop. Loaded handles are cached per process behind a
single-flight loader, so concurrent requests share one initialization.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import numpy as np
import requests

from .config import (
    MIN_SUBJECT_FRACTION,
    get_infer_timeout_s,
    get_load_timeout_s,
    get_matte_model,
    get_remote_api_key,
    get_remote_endpoint,
)
from .exceptions import NoSubjectDetected, ProviderUnavailable, SegmentationTimeout
from .io import image_to_base64_png, mask_from_base64_png
from .logging_setup import get_logger
from .preprocess import resize_mask, resize_with_padding, restore_mask_to_original
from .raster import Image

logger = get_logger(__name__)


class MaskProvider:
    name = "provider"

    @property
    def cache_key(self) -> str:
        return self.name

    def load(self) -> Any:
        raise NotImplementedError

    def infer(self, handle: Any, image: Image) -> np.ndarray:
        raise NotImplementedError


def require_subject(confidence: np.ndarray, provider: str) -> np.ndarray:
    if confidence.size == 0 or float((confidence >= 0.5).mean()) < MIN_SUBJECT_FRACTION:
        raise NoSubjectDetected(f"{provider}: no subject detected", provider)
    return confidence


class SingleFlightLoader:
    """
    One pending load per provider; every caller awaits the same future.

    A caller timing out does not cancel the shared load (it is shielded), and a
    failed load is forgotten so the next request can retry.
    """

    def __init__(self, name: str, load_fn):
        self.name = name
        self._load_fn = load_fn
        self._value: Any = None
        self._loaded = False
        self._pending: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.load_attempts = 0

    @property
    def status(self) -> str:
        if self._loaded:
            return "ready"
        if self._pending is not None and not self._pending.done():
            return "loading"
        return "not_loaded"

    async def get(self, timeout_s: float) -> Any:
        if self._loaded:
            return self._value

        loop = asyncio.get_running_loop()
        if self._pending is None or self._loop is not loop:
            self._loop = loop
            self._pending = loop.create_task(self._load())
            self._pending.add_done_callback(self._consume_failure)

        try:
            return await asyncio.wait_for(asyncio.shield(self._pending), timeout_s)
        except asyncio.TimeoutError as e:
            raise SegmentationTimeout(
                f"{self.name}: initialization timed out after {timeout_s:.1f}s", self.name
            ) from e

    def _consume_failure(self, task: asyncio.Task) -> None:
        # callers may all have timed out before the load failed
        if not task.cancelled() and task.exception() is not None:
            logger.debug("%s load failed after its callers gave up: %s", self.name, task.exception())

    async def _load(self) -> Any:
        self.load_attempts += 1
        logger.info("Loading %s", self.name)
        try:
            value = await asyncio.to_thread(self._load_fn)
        except ProviderUnavailable:
            self._pending = None
            raise
        except Exception as e:  # noqa: BLE001 - third-party loaders raise anything
            self._pending = None
            raise ProviderUnavailable(f"{self.name}: failed to load ({type(e).__name__}: {e})", self.name) from e

        self._value = value
        self._loaded = True
        logger.info("%s ready", self.name)
        return value


_LOADERS: Dict[str, SingleFlightLoader] = {}


def get_loader(provider: MaskProvider) -> SingleFlightLoader:
    loader = _LOADERS.get(provider.cache_key)
    if loader is None:
        loader = SingleFlightLoader(provider.name, provider.load)
        _LOADERS[provider.cache_key] = loader
    return loader


def reset_loaders() -> None:
    """Forget every cached model (used by tests and long-running hosts)."""
    _LOADERS.clear()


async def request_mask(
    provider: MaskProvider,
    image: Image,
    load_timeout_s: Optional[float] = None,
    infer_timeout_s: Optional[float] = None,
) -> np.ndarray:
    """
    Load (once) and run a provider under timeouts.

    Raises ProviderUnavailable (or one of its subclasses) on any failure.
    """
    load_timeout_s = get_load_timeout_s() if load_timeout_s is None else load_timeout_s
    infer_timeout_s = get_infer_timeout_s() if infer_timeout_s is None else infer_timeout_s

    handle = await get_loader(provider).get(load_timeout_s)
    try:
        confidence = await asyncio.wait_for(asyncio.to_thread(provider.infer, handle, image), infer_timeout_s)
    except asyncio.TimeoutError as e:
        raise SegmentationTimeout(
            f"{provider.name}: inference timed out after {infer_timeout_s:.1f}s", provider.name
        ) from e
    except ProviderUnavailable:
        raise
    except Exception as e:  # noqa: BLE001 - providers are pluggable
        raise ProviderUnavailable(
            f"{provider.name}: inference failed ({type(e).__name__}: {e})", provider.name
        ) from e

    if not isinstance(confidence, np.ndarray):
        raise ProviderUnavailable(
            f"{provider.name}: expected a confidence array, got {type(confidence).__name__}", provider.name
        )
    if confidence.shape != (image.height, image.width):
        raise ProviderUnavailable(
            f"{provider.name}: mask shape {confidence.shape} does not match image {(image.height, image.width)}",
            provider.name,
        )
    return confidence


class DeepMatteProvider(MaskProvider):
    """Salient-object matting (BiRefNet or a TorchScript matting model)."""

    name = "deep-matte"

    def __init__(self, model_spec: Optional[str] = None):
        self.model_spec = model_spec or get_matte_model()

    @property
    def cache_key(self) -> str:
        return f"{self.name}:{self.model_spec}"

    def load(self) -> Any:
        from .model import load_matte_model

        return load_matte_model(self.model_spec)

    def infer(self, handle: Any, image: Image) -> np.ndarray:
        from .inference import normalize, predict_matte

        model, device = handle
        try:
            padded, meta = resize_with_padding(image.rgb)
            matte = predict_matte(model, normalize(padded), device, target_size=meta.target_size)
            confidence = restore_mask_to_original(matte, meta)
        except Exception as e:  # noqa: BLE001 - torch/model errors vary
            raise ProviderUnavailable(f"{self.name}: inference failed ({type(e).__name__}: {e})", self.name) from e
        return require_subject(confidence, self.name)


class PersonSegmentationProvider(MaskProvider):
    """Semantic person segmentation (DeepLabV3, Pascal VOC person class)."""

    name = "person-segmentation"

    def load(self) -> Any:
        from .model import get_device, load_person_segmenter

        device = get_device()
        return load_person_segmenter(device=device), device

    def infer(self, handle: Any, image: Image) -> np.ndarray:
        from .inference import predict_person

        model, device = handle
        try:
            confidence = predict_person(model, image.rgb, device)
        except Exception as e:  # noqa: BLE001
            raise ProviderUnavailable(f"{self.name}: inference failed ({type(e).__name__}: {e})", self.name) from e
        return require_subject(confidence, self.name)


class RemoteMaskProvider(MaskProvider):
    """
    Hosted segmentation endpoint.

    POST {"image": <base64 PNG>} -> {"mask": <base64 grayscale PNG>}
    """

    name = "remote"

    def __init__(
        self,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ):
        self.endpoint = endpoint if endpoint is not None else get_remote_endpoint()
        self.api_key = api_key if api_key is not None else get_remote_api_key()
        self.timeout_s = timeout_s if timeout_s is not None else get_infer_timeout_s()

    @property
    def cache_key(self) -> str:
        return f"{self.name}:{self.endpoint}"

    def load(self) -> Dict[str, str]:
        if not self.endpoint:
            raise ProviderUnavailable("Missing CUTOUT_REMOTE_ENDPOINT", self.name)
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def infer(self, handle: Any, image: Image) -> np.ndarray:
        payload = {"image": image_to_base64_png(image)}
        try:
            resp = requests.post(self.endpoint, headers=handle, json=payload, timeout=self.timeout_s)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise ProviderUnavailable(f"{self.name}: request failed ({type(e).__name__}: {e})", self.name) from e

        mask_b64 = (data or {}).get("mask") if isinstance(data, dict) else None
        if not (isinstance(mask_b64, str) and mask_b64):
            raise ProviderUnavailable(f"{self.name}: response carries no mask", self.name)

        try:
            confidence = mask_from_base64_png(mask_b64)
        except (OSError, ValueError) as e:
            raise ProviderUnavailable(f"{self.name}: undecodable mask ({e})", self.name) from e

        confidence = resize_mask(confidence, image.width, image.height)
        return require_subject(confidence, self.name)
