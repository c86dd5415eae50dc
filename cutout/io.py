from __future__ import annotations

import base64
import io
import json
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np
from PIL import Image as PILImage
from PIL import UnidentifiedImageError

from .config import ACCEPTED_MIME_TYPES, MAX_INPUT_BYTES, OUTPUT_PREFIX
from .exceptions import DecodeError
from .raster import Image

_SUFFIX_MIME = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
}
_MIME_FORMAT = {"image/jpeg": "JPEG", "image/png": "PNG"}


def mime_type_for_path(path: str) -> str:
    """Best-effort MIME type from the file suffix; unknown suffixes map to octet-stream."""
    return _SUFFIX_MIME.get(Path(path).suffix.lower(), "application/octet-stream")


def _flatten_alpha_to_white(img: PILImage.Image) -> PILImage.Image:
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        bg = PILImage.new("RGBA", rgba.size, (255, 255, 255, 255))
        comp = PILImage.alpha_composite(bg, rgba)
        return comp.convert("RGB")
    return img.convert("RGB")


def check_input(mime_type: str, size: int, source_name: Optional[str] = None) -> None:
    """Reject unsupported types and oversized payloads without touching the bytes."""
    mime = (mime_type or "").lower()
    if mime == "image/jpg":
        mime = "image/jpeg"
    if mime not in ACCEPTED_MIME_TYPES:
        raise DecodeError(f"Unsupported image type: {mime_type!r}", source_name)
    if size > MAX_INPUT_BYTES:
        raise DecodeError(f"Image too large: {size} bytes (limit {MAX_INPUT_BYTES})", source_name)


def decode_image(
    blob: bytes,
    declared_size: Optional[int] = None,
    mime_type: str = "image/png",
    source_name: Optional[str] = None,
) -> Image:
    """
    Decode a JPEG/PNG blob into an opaque RGBA Image.

    Size and type are checked before any decoding work happens.
    """
    size = len(blob) if declared_size is None else int(declared_size)
    check_input(mime_type, max(size, len(blob)), source_name)
    if not blob:
        raise DecodeError("Empty image payload", source_name)

    try:
        img = PILImage.open(io.BytesIO(blob))
        img.load()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise DecodeError(f"Could not decode image: {e}", source_name) from e

    if img.format not in _MIME_FORMAT.values():
        raise DecodeError(f"Unsupported encoded format: {img.format}", source_name)

    rgb = np.asarray(_flatten_alpha_to_white(img), dtype=np.uint8)
    if rgb.ndim != 3 or rgb.shape[2] != 3 or rgb.shape[0] == 0 or rgb.shape[1] == 0:
        raise DecodeError(f"Unexpected decoded shape: {rgb.shape}", source_name)
    return Image.from_rgb(rgb)


def load_image(path: str, source_name: Optional[str] = None) -> Image:
    """
    Read and decode an image file through the same checks as in-memory blobs.

    Type and on-disk size are checked before the file is read.
    """
    p = Path(path)
    name = source_name or p.name
    mime = mime_type_for_path(path)
    if not p.is_file():
        raise DecodeError(f"Could not read image: {path}", name)
    try:
        size = p.stat().st_size
        check_input(mime, size, name)
        blob = p.read_bytes()
    except OSError as e:
        raise DecodeError(f"Could not read image: {path} ({e})", name) from e
    return decode_image(blob, declared_size=size, mime_type=mime, source_name=name)


def to_pil(image: Image) -> PILImage.Image:
    return PILImage.fromarray(np.ascontiguousarray(image.pixels))


def encode_png(image: Image) -> bytes:
    """Lossless RGBA PNG bytes."""
    buf = io.BytesIO()
    to_pil(image).save(buf, format="PNG", optimize=False)
    return buf.getvalue()


def output_filename(source_name: str) -> str:
    """removed_bg_<stem>.png"""
    stem = Path(source_name).stem or "image"
    return f"{OUTPUT_PREFIX}{stem}.png"


def image_to_base64_png(image: Image) -> str:
    return base64.b64encode(encode_png(image)).decode("utf-8")


def mask_from_base64_png(data: str) -> np.ndarray:
    """Decode a base64 PNG into a float32 confidence map in [0, 1]."""
    raw = base64.b64decode(data)
    img = PILImage.open(io.BytesIO(raw))
    img.load()
    gray = np.asarray(img.convert("L"), dtype=np.float32)
    return gray / 255.0


def write_json(path: str, data: Dict[str, Any]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")


def save_png(data: bytes, path: str) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(data)


def append_jsonl(fp, record) -> None:
    """Append one pydantic record as a JSON line and flush it."""
    payload = record.model_dump() if hasattr(record, "model_dump") else record.dict()
    fp.write(json.dumps(payload, sort_keys=True) + "\n")
    fp.flush()
