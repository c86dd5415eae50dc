from __future__ import annotations

import asyncio
import base64
import gc
import io
import threading
import time

import numpy as np
import pytest
from PIL import Image as PILImage

from cutout import providers as providers_mod
from cutout.exceptions import NoSubjectDetected, ProviderUnavailable, SegmentationTimeout
from cutout.providers import (
    MaskProvider,
    RemoteMaskProvider,
    SingleFlightLoader,
    get_loader,
    request_mask,
    require_subject,
    reset_loaders,
)
from cutout.raster import Image


@pytest.fixture(autouse=True)
def _fresh_loaders():
    reset_loaders()
    yield
    reset_loaders()


def _image(h: int = 32, w: int = 32) -> Image:
    return Image.from_rgb(np.full((h, w, 3), 120, dtype=np.uint8))


class _FakeResp:
    def __init__(self, payload: dict):
        self._payload = payload

    def raise_for_status(self) -> None:
        return None

    def json(self) -> dict:
        return self._payload


def _b64_mask(w: int, h: int) -> str:
    mask = PILImage.new("L", (w, h), 0)
    for y in range(h // 4, 3 * h // 4):
        for x in range(w // 4, 3 * w // 4):
            mask.putpixel((x, y), 255)
    buf = io.BytesIO()
    mask.save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("utf-8")


class _CountingProvider(MaskProvider):
    name = "counting"

    def __init__(self, load_delay_s: float = 0.0, infer_delay_s: float = 0.0):
        self.load_delay_s = load_delay_s
        self.infer_delay_s = infer_delay_s
        self.loads = 0
        self._lock = threading.Lock()

    def load(self):
        with self._lock:
            self.loads += 1
        time.sleep(self.load_delay_s)
        return "handle"

    def infer(self, handle, image: Image) -> np.ndarray:
        time.sleep(self.infer_delay_s)
        return np.ones((image.height, image.width), dtype=np.float32)


def test_single_flight_loads_once_for_concurrent_callers():
    provider = _CountingProvider(load_delay_s=0.05)

    async def _run():
        return await asyncio.gather(*(request_mask(provider, _image(), 2.0, 2.0) for _ in range(5)))

    results = asyncio.run(_run())
    assert len(results) == 5
    assert provider.loads == 1
    assert get_loader(provider).status == "ready"
    assert get_loader(provider).load_attempts == 1


def test_load_timeout_raises_segmentation_timeout():
    provider = _CountingProvider(load_delay_s=0.5)

    async def _run():
        await request_mask(provider, _image(), load_timeout_s=0.05, infer_timeout_s=1.0)

    with pytest.raises(SegmentationTimeout):
        asyncio.run(_run())


def test_infer_timeout_raises_segmentation_timeout():
    provider = _CountingProvider(infer_delay_s=0.5)

    async def _run():
        await request_mask(provider, _image(), load_timeout_s=1.0, infer_timeout_s=0.05)

    with pytest.raises(SegmentationTimeout):
        asyncio.run(_run())


def test_failed_load_is_retried_on_next_request():
    calls = {"n": 0}

    def _flaky():
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("weights missing")
        return "ok"

    loader = SingleFlightLoader("flaky", _flaky)

    async def _run():
        with pytest.raises(ProviderUnavailable, match="weights missing"):
            await loader.get(1.0)
        assert loader.status == "not_loaded"
        return await loader.get(1.0)

    assert asyncio.run(_run()) == "ok"
    assert loader.load_attempts == 2
    assert loader.status == "ready"


def test_shape_mismatch_is_provider_error():
    class _Wrong(_CountingProvider):
        name = "wrong-shape"

        def infer(self, handle, image):
            return np.ones((3, 3), dtype=np.float32)

    with pytest.raises(ProviderUnavailable, match="does not match"):
        asyncio.run(request_mask(_Wrong(), _image(), 1.0, 1.0))


def test_infer_exception_becomes_provider_error():
    class _Oom(_CountingProvider):
        name = "oom"

        def infer(self, handle, image):
            raise RuntimeError("CUDA out of memory")

    with pytest.raises(ProviderUnavailable, match=r"inference failed \(RuntimeError: CUDA out of memory\)"):
        asyncio.run(request_mask(_Oom(), _image(), 1.0, 1.0))


def test_non_array_confidence_is_provider_error():
    class _Nothing(_CountingProvider):
        name = "nothing"

        def infer(self, handle, image):
            return None

    with pytest.raises(ProviderUnavailable, match="expected a confidence array"):
        asyncio.run(request_mask(_Nothing(), _image(), 1.0, 1.0))


def test_load_failure_after_every_caller_timed_out_is_consumed():
    def _late_failure():
        time.sleep(0.2)
        raise RuntimeError("weights corrupt")

    loader = SingleFlightLoader("late", _late_failure)
    unhandled = []

    async def _run():
        asyncio.get_running_loop().set_exception_handler(lambda loop, ctx: unhandled.append(ctx))
        with pytest.raises(SegmentationTimeout):
            await loader.get(0.02)
        while loader.status == "loading":
            await asyncio.sleep(0.05)
        await asyncio.sleep(0.05)
        gc.collect()

    asyncio.run(_run())
    assert loader.status == "not_loaded"
    assert loader.load_attempts == 1
    assert unhandled == []


def test_require_subject():
    with pytest.raises(NoSubjectDetected):
        require_subject(np.zeros((50, 50), dtype=np.float32), "p")
    conf = np.zeros((50, 50), dtype=np.float32)
    conf[10:20, 10:20] = 0.9
    assert require_subject(conf, "p") is conf


def test_remote_provider_posts_image_and_decodes_mask(monkeypatch):
    seen = {}

    def _fake_post(url, headers=None, json=None, timeout=None):
        seen.update(url=url, headers=headers, json=json, timeout=timeout)
        return _FakeResp({"mask": _b64_mask(16, 16)})

    monkeypatch.setattr(providers_mod.requests, "post", _fake_post)

    provider = RemoteMaskProvider(endpoint="http://mask.local/segment", api_key="k", timeout_s=3.0)
    conf = provider.infer(provider.load(), _image(32, 32))

    assert seen["url"] == "http://mask.local/segment"
    assert seen["headers"]["Authorization"] == "Bearer k"
    assert seen["timeout"] == 3.0
    assert isinstance(seen["json"]["image"], str)
    assert conf.shape == (32, 32)
    assert conf[16, 16] > 0.9
    assert conf[0, 0] < 0.1


def test_remote_provider_without_endpoint_is_unavailable(monkeypatch):
    monkeypatch.delenv("CUTOUT_REMOTE_ENDPOINT", raising=False)
    provider = RemoteMaskProvider()
    with pytest.raises(ProviderUnavailable):
        provider.load()


def test_remote_provider_without_mask_is_unavailable(monkeypatch):
    monkeypatch.setattr(providers_mod.requests, "post", lambda *a, **k: _FakeResp({"error": "busy"}))
    provider = RemoteMaskProvider(endpoint="http://mask.local", timeout_s=1.0)
    with pytest.raises(ProviderUnavailable, match="no mask"):
        provider.infer(provider.load(), _image())


def test_remote_provider_wraps_request_errors(monkeypatch):
    def _boom(*args, **kwargs):
        raise providers_mod.requests.ConnectionError("refused")

    monkeypatch.setattr(providers_mod.requests, "post", _boom)
    provider = RemoteMaskProvider(endpoint="http://mask.local", timeout_s=1.0)
    with pytest.raises(ProviderUnavailable, match="request failed"):
        provider.infer(provider.load(), _image())
