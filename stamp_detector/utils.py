"""
stamp_detector.utils — Shared raster helpers for the detection engine.

Provides:

* **Decoding**: ``decode_image`` (bytes → RGB ``uint8``), with alpha
  composited onto white.
* **Colour**: ``to_gray_u8``, ``ensure_rgb``.
* **Geometry**: ``resize_cover``, ``resize_fill``, ``crop_rgb``.
* **Scalars**: ``clamp01``, ``finite_or_zero``.
* **Serialisation**: ``json_sanitize``.
* **JPEG round-trip**: ``pil_jpeg_bytes``, ``pil_load_jpeg_bytes``.

Every image in the engine is an ``(H, W, 3)`` RGB ``uint8`` NumPy array.
"""

from __future__ import annotations

import io
import math
from dataclasses import asdict
from pathlib import Path
from typing import Any, Tuple

import cv2
import numpy as np
from PIL import Image


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def pil_to_rgb(img: Image.Image) -> np.ndarray:
    """Convert any Pillow image mode to an RGB ``uint8`` array.

    Alpha channels (``RGBA``, ``LA`` and palette transparency) are
    composited onto a white background so that transparent regions of a
    stamp scan become paper-white rather than black.
    """
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        img = img.convert("RGBA")
        background = Image.new("RGB", img.size, (255, 255, 255))
        background.paste(img, mask=img.split()[-1])
        img = background
    elif img.mode != "RGB":
        img = img.convert("RGB")
    return np.array(img, dtype=np.uint8)


def decode_image(data: bytes) -> np.ndarray:
    """Decode an encoded raster (PNG, JPEG, WEBP, ...) into RGB ``uint8``.

    Parameters
    ----------
    data : bytes
        Encoded image bytes.

    Returns
    -------
    np.ndarray
        Array of shape ``(H, W, 3)`` with dtype ``uint8``.

    Raises
    ------
    PIL.UnidentifiedImageError
        If the bytes cannot be decoded as an image.
    """
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        return pil_to_rgb(img)


def load_image_rgb(path: str | Path) -> np.ndarray:
    """Read an image file from disk as RGB ``uint8``."""
    return decode_image(Path(path).read_bytes())


def ensure_rgb(arr: np.ndarray) -> np.ndarray:
    """Coerce a grey, grey+alpha, RGB or RGBA array into 3-channel ``uint8``."""
    arr = np.asarray(arr)
    if arr.dtype != np.uint8:
        arr = np.clip(arr, 0, 255).astype(np.uint8)
    if arr.ndim == 2:
        return cv2.cvtColor(arr, cv2.COLOR_GRAY2RGB)
    channels = arr.shape[2]
    if channels == 3:
        return arr
    if channels == 1:
        return cv2.cvtColor(np.ascontiguousarray(arr[..., 0]), cv2.COLOR_GRAY2RGB)
    if channels == 2:
        return cv2.cvtColor(np.ascontiguousarray(arr[..., 0]), cv2.COLOR_GRAY2RGB)
    if channels == 4:
        return cv2.cvtColor(arr, cv2.COLOR_RGBA2RGB)
    raise ValueError(f"Unsupported channel count: {channels}")


def to_gray_u8(rgb: np.ndarray) -> np.ndarray:
    """Convert an RGB ``uint8`` image to single-channel greyscale."""
    if rgb.ndim == 2:
        return rgb
    return cv2.cvtColor(rgb, cv2.COLOR_RGB2GRAY)


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------

def _interpolation(src_w: int, src_h: int, dst_w: int, dst_h: int) -> int:
    # INTER_AREA only behaves well when shrinking
    if dst_w <= src_w and dst_h <= src_h:
        return cv2.INTER_AREA
    return cv2.INTER_LINEAR


def resize_fill(img: np.ndarray, width: int, height: int) -> np.ndarray:
    """Resize to exactly ``width x height``, ignoring aspect ratio."""
    h, w = img.shape[:2]
    return cv2.resize(img, (int(width), int(height)),
                      interpolation=_interpolation(w, h, width, height))


def resize_cover(img: np.ndarray, width: int, height: int) -> np.ndarray:
    """Resize so the image covers ``width x height``, centre-cropping the excess.

    Matches the "cover" fit used by most raster codecs: the image is scaled
    so that both sides are at least the target size, then the central
    region of the target size is kept.
    """
    h, w = img.shape[:2]
    if h == 0 or w == 0:
        raise ValueError("Cannot resize an empty image")
    target_aspect = width / float(height)
    aspect = w / float(h)
    if aspect > target_aspect:
        crop_w = max(1, int(round(h * target_aspect)))
        x0 = (w - crop_w) // 2
        img = img[:, x0:x0 + crop_w]
    elif aspect < target_aspect:
        crop_h = max(1, int(round(w / target_aspect)))
        y0 = (h - crop_h) // 2
        img = img[y0:y0 + crop_h, :]
    return resize_fill(img, width, height)


def crop_rgb(rgb: np.ndarray, bbox: Tuple[int, int, int, int]) -> np.ndarray:
    """Crop ``(x, y, w, h)`` from an image.

    Raises
    ------
    ValueError
        If the box is not fully inside the image or is empty.
    """
    x, y, w, h = (int(v) for v in bbox)
    H, W = rgb.shape[:2]
    if w <= 0 or h <= 0 or x < 0 or y < 0 or x + w > W or y + h > H:
        raise ValueError(f"Crop {bbox} out of range for image {W}x{H}")
    return rgb[y:y + h, x:x + w].copy()


# ---------------------------------------------------------------------------
# Scalars
# ---------------------------------------------------------------------------

def finite_or_zero(x: float) -> float:
    x = float(x)
    if math.isnan(x) or math.isinf(x):
        return 0.0
    return x


def clamp01(x: float) -> float:
    """Clamp a scalar to ``[0.0, 1.0]``; non-finite input becomes ``0.0``."""
    x = finite_or_zero(x)
    if x < 0.0:
        return 0.0
    if x > 1.0:
        return 1.0
    return x


# ---------------------------------------------------------------------------
# JSON serialisation
# ---------------------------------------------------------------------------

def json_sanitize(obj: Any) -> Any:
    """Recursively convert an object tree into JSON-safe Python types.

    Handles ``numpy`` scalars/arrays, ``Path`` objects, dataclass instances,
    ``NaN``/``Inf`` floats (mapped to ``None``), and nested dicts/lists.
    """
    if obj is None:
        return None
    if isinstance(obj, Path):
        return str(obj)
    if hasattr(obj, "__dataclass_fields__"):
        return {k: json_sanitize(v) for k, v in asdict(obj).items()}
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return json_sanitize(float(obj))
    if isinstance(obj, np.ndarray):
        return json_sanitize(obj.tolist())
    if isinstance(obj, (list, tuple)):
        return [json_sanitize(x) for x in obj]
    if isinstance(obj, dict):
        return {str(k): json_sanitize(v) for k, v in obj.items()}
    if isinstance(obj, (int, float, str, bool)):
        if isinstance(obj, float) and (math.isnan(obj) or math.isinf(obj)):
            return None
        return obj
    return str(obj)


# ---------------------------------------------------------------------------
# JPEG round-trip helpers
# ---------------------------------------------------------------------------

def pil_jpeg_bytes(rgb: np.ndarray, quality: int) -> bytes:
    """Compress an RGB array to JPEG bytes in memory."""
    img = Image.fromarray(rgb.astype(np.uint8))
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=int(quality))
    return buf.getvalue()


def pil_load_jpeg_bytes(jpeg_bytes: bytes) -> np.ndarray:
    """Decode in-memory JPEG bytes back to an RGB NumPy array."""
    return decode_image(jpeg_bytes)


def png_bytes(rgb: np.ndarray) -> bytes:
    """Encode an RGB array as PNG bytes."""
    buf = io.BytesIO()
    Image.fromarray(rgb.astype(np.uint8)).save(buf, format="PNG")
    return buf.getvalue()
