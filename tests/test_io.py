from __future__ import annotations

import io
import json
from pathlib import Path

import numpy as np
import pytest
from PIL import Image as PILImage

from cutout import io as io_mod
from cutout.composite import composite, crop_to_content, inject_alpha
from cutout.config import MAX_INPUT_BYTES
from cutout.contracts import ManifestRecord, Tier
from cutout.exceptions import CompositingError, DecodeError
from cutout.io import (
    append_jsonl,
    decode_image,
    encode_png,
    image_to_base64_png,
    load_image,
    mask_from_base64_png,
    mime_type_for_path,
    output_filename,
)
from cutout.raster import Image


def _png_bytes(img: PILImage.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def _jpeg_bytes(img: PILImage.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=95)
    return buf.getvalue()


def test_decode_png_is_opaque_rgba():
    blob = _png_bytes(PILImage.new("RGB", (32, 24), (10, 20, 30)))
    img = decode_image(blob, mime_type="image/png")
    assert (img.width, img.height) == (32, 24)
    assert img.pixels.shape == (24, 32, 4)
    assert (img.alpha == 255).all()
    assert tuple(img.rgb[0, 0]) == (10, 20, 30)


def test_decode_accepts_jpg_alias():
    blob = _jpeg_bytes(PILImage.new("RGB", (16, 16), (200, 200, 200)))
    img = decode_image(blob, mime_type="image/jpg")
    assert (img.width, img.height) == (16, 16)


def test_transparent_png_is_flattened_to_white():
    blob = _png_bytes(PILImage.new("RGBA", (8, 8), (255, 0, 0, 0)))
    img = decode_image(blob, mime_type="image/png")
    assert tuple(img.rgb[4, 4]) == (255, 255, 255)
    assert (img.alpha == 255).all()


def test_decode_rejects_wrong_type():
    blob = _png_bytes(PILImage.new("RGB", (8, 8)))
    with pytest.raises(DecodeError):
        decode_image(blob, mime_type="image/gif", source_name="a.gif")


def test_decode_rejects_declared_oversize_before_decoding():
    with pytest.raises(DecodeError, match="too large"):
        decode_image(b"not even an image", declared_size=MAX_INPUT_BYTES + 1, mime_type="image/png")


def test_decode_rejects_oversized_payload():
    with pytest.raises(DecodeError, match="too large"):
        decode_image(b"\0" * (MAX_INPUT_BYTES + 1), mime_type="image/jpeg")


def test_decode_rejects_garbage_and_empty():
    with pytest.raises(DecodeError):
        decode_image(b"definitely not a png", mime_type="image/png")
    with pytest.raises(DecodeError):
        decode_image(b"", mime_type="image/png")


def test_decode_rejects_format_mismatch():
    buf = io.BytesIO()
    PILImage.new("RGB", (8, 8)).save(buf, format="BMP")
    with pytest.raises(DecodeError, match="Unsupported encoded format"):
        decode_image(buf.getvalue(), mime_type="image/png")


def test_load_image_from_disk(tmp_path: Path):
    p = tmp_path / "shot.png"
    PILImage.new("RGB", (12, 7), (1, 2, 3)).save(str(p), format="PNG")
    img = load_image(str(p))
    assert (img.width, img.height) == (12, 7)
    with pytest.raises(DecodeError):
        load_image(str(tmp_path / "missing.png"))


def test_mime_type_for_path():
    assert mime_type_for_path("a/b/C.JPG") == "image/jpeg"
    assert mime_type_for_path("x.png") == "image/png"
    assert mime_type_for_path("x.webp") == "application/octet-stream"


def test_output_filename():
    assert output_filename("portrait.jpg") == "removed_bg_portrait.png"
    assert output_filename("dir/sub/cat.photo.png") == "removed_bg_cat.photo.png"


def test_png_encode_keeps_alpha():
    px = np.zeros((4, 5, 4), dtype=np.uint8)
    px[..., 0] = 200
    px[1, 2, 3] = 77
    out = PILImage.open(io.BytesIO(encode_png(Image(pixels=px))))
    assert out.mode == "RGBA"
    arr = np.asarray(out)
    assert arr[1, 2, 3] == 77
    assert arr[0, 0, 0] == 200


def test_mask_from_base64_png():
    mask = PILImage.new("L", (6, 4), 0)
    mask.putpixel((2, 1), 255)
    conf = mask_from_base64_png(image_to_base64_png(Image.from_rgb(np.asarray(mask.convert("RGB")))))
    assert conf.shape == (4, 6)
    assert conf.dtype == np.float32
    assert conf[1, 2] == pytest.approx(1.0)
    assert conf[0, 0] == 0.0


def test_inject_alpha_leaves_source_untouched():
    src = Image.from_rgb(np.full((6, 6, 3), 90, dtype=np.uint8))
    alpha = np.zeros((6, 6), dtype=np.uint8)
    alpha[2:4, 2:4] = 255
    out = inject_alpha(src, alpha)
    assert (src.alpha == 255).all()
    np.testing.assert_array_equal(out.alpha, alpha)
    np.testing.assert_array_equal(out.rgb, src.rgb)


def test_inject_alpha_rejects_mismatch_and_nan():
    src = Image.from_rgb(np.zeros((6, 6, 3), dtype=np.uint8))
    with pytest.raises(CompositingError):
        inject_alpha(src, np.zeros((5, 6), dtype=np.uint8))
    bad = np.zeros((6, 6), dtype=np.float32)
    bad[0, 0] = np.nan
    with pytest.raises(CompositingError):
        inject_alpha(src, bad)


def test_crop_to_content():
    alpha = np.zeros((300, 400), dtype=np.uint8)
    alpha[100:120, 200:210] = 255
    crop = crop_to_content(alpha)
    assert (crop.x0, crop.y0, crop.x1, crop.y1) == (150, 50, 260, 170)

    empty = crop_to_content(np.zeros((10, 20), dtype=np.uint8))
    assert (empty.x0, empty.y0, empty.x1, empty.y1) == (0, 0, 20, 10)

    src = Image.from_rgb(np.zeros((300, 400, 3), dtype=np.uint8))
    out = composite(src, alpha, crop=True)
    assert (out.width, out.height) == (110, 120)


def test_load_image_checks_type_and_size_before_reading(tmp_path: Path, monkeypatch):
    p = tmp_path / "huge.png"
    p.write_bytes(b"\0" * 16)
    monkeypatch.setattr(io_mod, "MAX_INPUT_BYTES", 8)

    def _no_read(self):
        raise AssertionError("file must not be read")

    monkeypatch.setattr(Path, "read_bytes", _no_read)
    with pytest.raises(DecodeError, match="too large") as exc:
        load_image(str(p), source_name="nested/huge.png")
    assert exc.value.source_name == "nested/huge.png"

    gif = tmp_path / "anim.gif"
    gif.write_bytes(b"GIF89a")
    with pytest.raises(DecodeError, match="Unsupported image type"):
        load_image(str(gif))


def test_append_jsonl_writes_pydantic_records_and_dict_models():
    class _LegacyModel:
        def dict(self):
            return {"source_image": "old.png", "status": "done"}

    fp = io.StringIO()
    append_jsonl(
        fp,
        ManifestRecord(source_image="a.png", requested_tier=Tier.PRECISE, tier_used=Tier.FAST, status="done"),
    )
    append_jsonl(fp, _LegacyModel())

    first, second = [json.loads(line) for line in fp.getvalue().splitlines()]
    assert first["tier_used"] == "fast"
    assert first["requested_tier"] == "precise"
    assert first["degradations"] == []
    assert second == {"source_image": "old.png", "status": "done"}
