"""
stamp_detector.references — Reference stamp library.

A :class:`StampStore` is built once from a directory of stamp images and is
immutable afterwards; concurrent detections share it without locking.
Reloading means building a new store.

For every stamp file the store keeps the normalised base image plus a list
of :class:`~stamp_detector.features.FeatureTriplet` variants:

* ``variants[0]``: the unperturbed base (always present),
* Gaussian-blurred copy (``aug_blur_sigma``),
* JPEG round-tripped copy (``aug_jpeg_quality``),
* greyscale copy with a mild linear contrast stretch (``aug_grayscale``).

Matching takes the best score across variants, so a stamp matches if any
plausible degradation of it matches.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

import cv2
import numpy as np

from .config import StampConfig
from .features import FeatureTriplet, compute_triplet, resize_normalize, ssim_plane
from .utils import load_image_rgb, pil_jpeg_bytes, pil_load_jpeg_bytes, to_gray_u8

logger = logging.getLogger(__name__)

STAMP_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp"}


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StampReference:
    """One reference stamp and its precomputed variants."""
    name: str
    base_image: np.ndarray
    variants: Tuple[FeatureTriplet, ...]
    ssim_plane: np.ndarray

    @property
    def primary(self) -> FeatureTriplet:
        """Features of the unperturbed base image."""
        return self.variants[0]


@dataclass(frozen=True)
class StampStore:
    """Immutable, shareable collection of reference stamps."""
    stamps: Tuple[StampReference, ...] = ()
    directory: Optional[str] = None

    @classmethod
    def empty(cls, directory: Optional[str] = None) -> "StampStore":
        return cls((), directory)

    @property
    def names(self) -> List[str]:
        return [s.name for s in self.stamps]

    def get(self, name: str) -> Optional[StampReference]:
        for s in self.stamps:
            if s.name == name:
                return s
        return None

    def __len__(self) -> int:
        return len(self.stamps)

    def __iter__(self) -> Iterator[StampReference]:
        return iter(self.stamps)


# ---------------------------------------------------------------------------
# Variant construction
# ---------------------------------------------------------------------------

def _blurred(base: np.ndarray, sigma: float) -> np.ndarray:
    return cv2.GaussianBlur(base, (0, 0), sigmaX=float(sigma))


def _recompressed(base: np.ndarray, quality: int) -> np.ndarray:
    return pil_load_jpeg_bytes(pil_jpeg_bytes(base, quality=quality))


def _gray_contrast(base: np.ndarray) -> np.ndarray:
    g = to_gray_u8(base).astype(np.float32) * 1.05 - 5.0
    g = np.clip(np.round(g), 0, 255).astype(np.uint8)
    return cv2.cvtColor(g, cv2.COLOR_GRAY2RGB)


def build_variants(base: np.ndarray, config: StampConfig) -> Tuple[FeatureTriplet, ...]:
    """Feature triplets for *base* and, if enabled, its perturbed copies.

    A perturbation that fails is logged and left out; the base triplet is
    always first.
    """
    variants = [compute_triplet(base)]
    if not config.robust_augmentations:
        return tuple(variants)

    perturbations = [
        ("blur", lambda: _blurred(base, config.aug_blur_sigma)),
        ("jpeg", lambda: _recompressed(base, config.aug_jpeg_quality)),
    ]
    if config.aug_grayscale:
        perturbations.append(("gray", lambda: _gray_contrast(base)))

    for label, make in perturbations:
        try:
            variants.append(compute_triplet(make()))
        except Exception as exc:
            logger.warning("Stamp variant %s failed: %s", label, exc)
    return tuple(variants)


def build_reference(name: str, image: np.ndarray, config: StampConfig) -> StampReference:
    """Normalise *image* and precompute everything matching needs."""
    base = resize_normalize(image, config.max_dim)
    base.setflags(write=False)
    plane = ssim_plane(base)
    plane.setflags(write=False)
    return StampReference(
        name=name,
        base_image=base,
        variants=build_variants(base, config),
        ssim_plane=plane,
    )


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def list_stamp_files(directory: Union[str, Path], limit: int) -> List[Path]:
    d = Path(directory)
    files = sorted(
        p for p in d.iterdir()
        if p.is_file() and p.suffix.lower() in STAMP_EXTENSIONS
    )
    return files[:limit]


def load_references(directory: Union[str, Path], config: Optional[StampConfig] = None) -> StampStore:
    """Build a :class:`StampStore` from the image files in *directory*.

    A missing directory yields an empty store (logged), so detection
    degrades to "no stamps loaded" instead of failing.  Unreadable files
    are skipped.
    """
    config = config or StampConfig()
    d = Path(directory)
    if not d.is_dir():
        logger.warning("No stamps directory: %s", d)
        return StampStore.empty(str(d))

    files = list_stamp_files(d, config.max_stamps)
    logger.info("Loading %d stamp(s) from %s ...", len(files), d)

    refs: List[StampReference] = []
    for p in files:
        try:
            refs.append(build_reference(p.name, load_image_rgb(p), config))
        except Exception as exc:
            logger.warning("Skipping stamp %s: %s", p.name, exc)

    logger.info("Loaded %d stamp(s).", len(refs))
    return StampStore(tuple(refs), str(d))
