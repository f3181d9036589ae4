"""
stamp_detector.features — Pixel and feature primitives.

Every function here is pure: it takes RGB ``uint8`` arrays (or feature
vectors) and returns new values without touching shared state.

Descriptors
-----------
perceptual_hash     64-bit dHash over a 9x8 greyscale grid.
edge_descriptor     L2-normalised Sobel gradient-magnitude vector over a
                    fixed ``size x size`` grid.
color_histogram     Normalised 2-D hue/saturation histogram.

Similarities
------------
hash_similarity       Matching bits / 64.
cosine_similarity     Dot product over norms, in ``[-1, 1]``.
histogram_similarity  Bhattacharyya coefficient, in ``[0, 1]``.
ssim                  Single-window global SSIM, clamped to ``[0, 1]``.
ncc                   Zero-mean NCC of two edge descriptors, clamped to
                      ``[0, 1]``.

All descriptors are computed after a fixed-size resize, so feature vectors
from a 300 px stamp and a 3000 px scan are directly comparable.
"""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from .utils import clamp01, resize_cover, resize_fill, to_gray_u8

EDGE_SIZE = 128
HIST_SIZE = 128
SSIM_SIZE = 128
HUE_BINS = 16
SAT_BINS = 8

# Sobel is evaluated in float32, so the response is already centred on zero.
SOBEL_BIAS = 0.0

_EPS = 1e-8


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------

def resize_normalize(rgb: np.ndarray, max_dim: int = 1600) -> np.ndarray:
    """Bound the longer side of an image to *max_dim*, never upscaling.

    Parameters
    ----------
    rgb : np.ndarray
        Input image of shape ``(H, W, 3)``, dtype ``uint8``.
    max_dim : int
        Maximum allowed length of the longer side.

    Returns
    -------
    np.ndarray
        The input itself when it already fits, otherwise a downscaled copy
        with the aspect ratio preserved.
    """
    h, w = rgb.shape[:2]
    longer = max(h, w)
    if longer <= max_dim:
        return rgb
    scale = max_dim / float(longer)
    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))
    return cv2.resize(rgb, (new_w, new_h), interpolation=cv2.INTER_AREA)


# ---------------------------------------------------------------------------
# Perceptual hash (dHash)
# ---------------------------------------------------------------------------

def perceptual_hash(rgb: np.ndarray) -> int:
    """Compute a 64-bit difference hash.

    The image is squashed to 9x8 greyscale; for each of the 8 rows, each of
    the 8 adjacent horizontal pairs contributes one bit (1 if left > right).
    Bits are packed row-major, most significant first.
    """
    grid = resize_fill(to_gray_u8(rgb), 9, 8).astype(np.int16)
    bits = (grid[:, :-1] > grid[:, 1:]).ravel()
    value = 0
    for b in bits:
        value = (value << 1) | int(b)
    return value


def hash_similarity(a: int, b: int) -> float:
    """Fraction of equal bits between two 64-bit hashes."""
    diff = bin((int(a) ^ int(b)) & 0xFFFFFFFFFFFFFFFF).count("1")
    return (64 - diff) / 64.0


# ---------------------------------------------------------------------------
# Edge descriptor
# ---------------------------------------------------------------------------

def edge_descriptor(rgb: np.ndarray, size: int = EDGE_SIZE) -> np.ndarray:
    """Unit-norm Sobel gradient-magnitude descriptor.

    Parameters
    ----------
    rgb : np.ndarray
        Input image (RGB or greyscale).
    size : int
        Side of the square grid the image is cover-resized to.

    Returns
    -------
    np.ndarray
        ``float32`` vector of length ``size * size``.  A flat image yields
        the zero vector.
    """
    gray = resize_cover(to_gray_u8(rgb), size, size).astype(np.float32)
    gx = cv2.Sobel(gray, cv2.CV_32F, 1, 0, ksize=3)
    gy = cv2.Sobel(gray, cv2.CV_32F, 0, 1, ksize=3)
    mag = np.hypot(gx - SOBEL_BIAS, gy - SOBEL_BIAS).ravel()
    norm = float(np.sqrt(np.dot(mag, mag))) + _EPS
    return (mag / norm).astype(np.float32)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine of the angle between two vectors, in ``[-1, 1]``.

    Callers that use it as a similarity score clamp it to ``[0, 1]``.
    """
    n = min(a.size, b.size)
    a = a.ravel()[:n].astype(np.float64)
    b = b.ravel()[:n].astype(np.float64)
    dot = float(np.dot(a, b))
    denom = float(np.sqrt(np.dot(a, a)) * np.sqrt(np.dot(b, b))) + _EPS
    return max(-1.0, min(1.0, dot / denom))


# ---------------------------------------------------------------------------
# Colour histogram
# ---------------------------------------------------------------------------

def color_histogram(
    rgb: np.ndarray,
    hue_bins: int = HUE_BINS,
    sat_bins: int = SAT_BINS,
) -> np.ndarray:
    """Normalised hue/saturation histogram, flattened as ``hue * sat_bins + sat``.

    Hue is taken in ``[0, 360)`` and saturation in ``[0, 1]`` from the float
    HSV conversion so that bin edges do not depend on 8-bit quantisation.
    """
    small = resize_cover(rgb, HIST_SIZE, HIST_SIZE).astype(np.float32) / 255.0
    hsv = cv2.cvtColor(small, cv2.COLOR_RGB2HSV)
    h = hsv[..., 0].ravel() / 360.0
    s = hsv[..., 1].ravel()
    hi = np.minimum(hue_bins - 1, np.floor(h * hue_bins)).astype(np.int64)
    si = np.minimum(sat_bins - 1, np.floor(s * sat_bins)).astype(np.int64)
    hi = np.clip(hi, 0, hue_bins - 1)
    si = np.clip(si, 0, sat_bins - 1)
    hist = np.bincount(hi * sat_bins + si, minlength=hue_bins * sat_bins).astype(np.float64)
    return (hist / (hist.sum() + _EPS)).astype(np.float32)


def histogram_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Bhattacharyya coefficient ``sum(sqrt(a_i * b_i))``; 1 means identical."""
    n = min(a.size, b.size)
    prod = np.clip(a.ravel()[:n].astype(np.float64), 0.0, None) * \
        np.clip(b.ravel()[:n].astype(np.float64), 0.0, None)
    return clamp01(float(np.sqrt(prod).sum()))


# ---------------------------------------------------------------------------
# SSIM
# ---------------------------------------------------------------------------

def ssim_plane(rgb: np.ndarray, size: int = SSIM_SIZE) -> np.ndarray:
    """Greyscale ``size x size`` plane used by :func:`ssim_planes`."""
    return resize_cover(to_gray_u8(rgb), size, size).astype(np.float64)


def ssim_planes(a: np.ndarray, b: np.ndarray) -> float:
    """Global SSIM of two equally sized greyscale planes, clamped to ``[0, 1]``."""
    n = a.size
    if n < 2 or n != b.size:
        return 0.0
    L, k1, k2 = 255.0, 0.01, 0.03
    c1 = (k1 * L) ** 2
    c2 = (k2 * L) ** 2
    mean_a = float(a.mean())
    mean_b = float(b.mean())
    da = a - mean_a
    db = b - mean_b
    var_a = float((da * da).sum()) / (n - 1)
    var_b = float((db * db).sum()) / (n - 1)
    cov = float((da * db).sum()) / (n - 1)
    num = (2.0 * mean_a * mean_b + c1) * (2.0 * cov + c2)
    den = (mean_a ** 2 + mean_b ** 2 + c1) * (var_a + var_b + c2) + _EPS
    return clamp01(num / den)


def ssim(a: np.ndarray, b: np.ndarray) -> float:
    """Structural similarity of two images after a 128x128 greyscale resize."""
    return ssim_planes(ssim_plane(a), ssim_plane(b))


# ---------------------------------------------------------------------------
# NCC on edge descriptors
# ---------------------------------------------------------------------------

def edge_ncc(a: np.ndarray, b: np.ndarray) -> float:
    """Zero-mean normalised cross-correlation of two vectors, clamped to ``[0, 1]``."""
    n = min(a.size, b.size)
    if n == 0:
        return 0.0
    pa = a.ravel()[:n].astype(np.float64)
    pb = b.ravel()[:n].astype(np.float64)
    pa = pa - pa.mean()
    pb = pb - pb.mean()
    num = float(np.dot(pa, pb))
    den = float(np.sqrt(np.dot(pa, pa) * np.dot(pb, pb))) + _EPS
    return clamp01(num / den)


def ncc(patch_a: np.ndarray, patch_b: np.ndarray, size: int = EDGE_SIZE) -> float:
    """NCC of two image patches, computed on their edge descriptors."""
    return edge_ncc(edge_descriptor(patch_a, size), edge_descriptor(patch_b, size))


# ---------------------------------------------------------------------------
# Feature triplet
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FeatureTriplet:
    """Hash, colour histogram and edge descriptor of one image."""
    hash: int
    histogram: np.ndarray
    edge: np.ndarray

    def compare(self, other: "FeatureTriplet") -> dict:
        """Component similarities against *other* (edge clamped to ``[0, 1]``)."""
        return {
            "edge": clamp01(cosine_similarity(self.edge, other.edge)),
            "color": histogram_similarity(self.histogram, other.histogram),
            "hash": hash_similarity(self.hash, other.hash),
        }


def _frozen(arr: np.ndarray) -> np.ndarray:
    arr.setflags(write=False)
    return arr


def compute_triplet(rgb: np.ndarray) -> FeatureTriplet:
    return FeatureTriplet(
        hash=perceptual_hash(rgb),
        histogram=_frozen(color_histogram(rgb)),
        edge=_frozen(edge_descriptor(rgb)),
    )
