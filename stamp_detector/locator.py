"""
stamp_detector.locator — Multi-scale sliding-window locator and patch verifier.

The winning page is downsampled to ``loc_ds_width``; square windows of
``max(64, round(loc_base * s))`` pixels for each scale ``s`` are slid at
``loc_stride`` and scored by edge-descriptor cosine against the stamp's
unperturbed edge descriptor.  The best ``loc_topk`` windows are mapped back
to page resolution and clamped inside the page; the highest-scoring one is
the bounding box.

:func:`verify_patch` then crops the full-resolution page at that box and
measures NCC and SSIM against the stamp's base image.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .budget import TimeBudget
from .config import StampConfig
from .features import cosine_similarity, edge_descriptor, ncc, ssim
from .utils import clamp01, crop_rgb

logger = logging.getLogger(__name__)

MIN_WINDOW = 64


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box in page pixel coordinates."""
    x: int
    y: int
    width: int
    height: int

    def clamped(self, page_w: int, page_h: int) -> "BoundingBox":
        """Shift and shrink the box so it lies fully inside the page."""
        x = max(0, min(int(self.x), page_w - 1))
        y = max(0, min(int(self.y), page_h - 1))
        w = max(1, min(int(self.width), page_w - x))
        h = max(1, min(int(self.height), page_h - y))
        return BoundingBox(x, y, w, h)

    def contained_in(self, page_w: int, page_h: int) -> bool:
        return (
            self.x >= 0 and self.y >= 0 and self.width > 0 and self.height > 0
            and self.x + self.width <= page_w and self.y + self.height <= page_h
        )

    def as_tuple(self) -> Tuple[int, int, int, int]:
        return (self.x, self.y, self.width, self.height)

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "w": self.width, "h": self.height}


@dataclass
class LocatorResult:
    bbox: Optional[BoundingBox] = None
    score: float = 0.0
    evaluated: int = 0
    budget_exhausted: bool = False


@dataclass(frozen=True)
class PatchVerification:
    ncc: float
    ssim: float


def _window_sizes(config: StampConfig) -> List[int]:
    return [max(MIN_WINDOW, int(round(config.loc_base * s))) for s in config.loc_scales]


def locate_stamp(
    page_rgb: np.ndarray,
    stamp_edge: np.ndarray,
    budget: TimeBudget,
    config: Optional[StampConfig] = None,
) -> LocatorResult:
    """Find the page region that best resembles the stamp.

    Parameters
    ----------
    page_rgb : np.ndarray
        Normalised page, ``(H, W, 3)`` ``uint8``.
    stamp_edge : np.ndarray
        Edge descriptor of the stamp's unperturbed base image.
    budget : TimeBudget
        Polled once per window; the scan stops early and keeps what it has.
    config : StampConfig, optional

    Returns
    -------
    LocatorResult
        ``bbox`` is ``None`` when no window fits on the page or none was
        scored before the budget ran out.
    """
    config = config or StampConfig()
    result = LocatorResult()
    src_h, src_w = page_rgb.shape[:2]
    if src_w <= 0 or src_h <= 0:
        return result

    if src_w > config.loc_ds_width:
        ds_w = int(config.loc_ds_width)
        ds_h = max(1, int(round(src_h * ds_w / float(src_w))))
        small = cv2.resize(page_rgb, (ds_w, ds_h), interpolation=cv2.INTER_AREA)
    else:
        ds_w, ds_h = src_w, src_h
        small = page_rgb
    inv = src_w / float(ds_w)

    # (score, -order, x, y, size): min-heap keeps the best loc_topk windows
    heap: List[Tuple[float, int, int, int, int]] = []
    stride = int(config.loc_stride)

    for size in _window_sizes(config):
        if result.evaluated >= config.loc_max_patches or result.budget_exhausted:
            break
        for y in range(0, ds_h - size + 1, stride):
            if result.evaluated >= config.loc_max_patches or result.budget_exhausted:
                break
            for x in range(0, ds_w - size + 1, stride):
                if result.evaluated >= config.loc_max_patches:
                    break
                if budget.over():
                    result.budget_exhausted = True
                    break
                patch = small[y:y + size, x:x + size]
                score = cosine_similarity(stamp_edge, edge_descriptor(patch))
                item = (score, -result.evaluated, x, y, size)
                if len(heap) < config.loc_topk:
                    heapq.heappush(heap, item)
                else:
                    heapq.heappushpop(heap, item)
                result.evaluated += 1

    if not heap:
        return result

    best_score = -1.0
    best_box: Optional[BoundingBox] = None
    for score, _order, x, y, size in sorted(heap, reverse=True):
        side = int(round(size * inv))
        box = BoundingBox(int(round(x * inv)), int(round(y * inv)), side, side).clamped(src_w, src_h)
        if score > best_score:
            best_score, best_box = score, box

    result.bbox = best_box
    result.score = clamp01(best_score)
    logger.debug("Locator: %d windows, best=%.3f at %s", result.evaluated, result.score, best_box)
    return result


def verify_patch(page_rgb: np.ndarray, bbox: BoundingBox, stamp_base: np.ndarray) -> PatchVerification:
    """NCC and SSIM of the page crop at *bbox* against the stamp image.

    Raises
    ------
    ValueError
        If the crop is empty or falls outside the page.
    """
    patch = crop_rgb(page_rgb, bbox.as_tuple())
    return PatchVerification(ncc=ncc(patch, stamp_base), ssim=ssim(patch, stamp_base))
