"""
StampConfig: every tunable of the stamp detector, with defaults.

Values come from three layers, later ones winning:
  1. dataclass defaults (the production-tuned values),
  2. ``configs/stamp_detector.yaml`` (grouped sections, flattened),
  3. environment variables (``THRESHOLD_HI``, ``TIME_BUDGET_MS``, ...).

Usage:
    cfg = load_config()                       # defaults + YAML + env
    cfg = StampConfig.from_yaml("my.yaml")    # YAML only
    cfg = replace(cfg, time_budget_ms=2000)   # ad-hoc override
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).parent.parent / "configs" / "stamp_detector.yaml"

# YAML sections are purely organisational; keys inside them map 1:1 to fields.
YAML_SECTIONS = ("augmentation", "decision", "budget", "pdf", "limits", "locator", "runtime")

# Environment variable → field name
ENV_OVERRIDES: Dict[str, str] = {
    "ROBUST_STAMP_AUGS": "robust_augmentations",
    "AUG_BLUR_SIGMA": "aug_blur_sigma",
    "AUG_JPEG_Q": "aug_jpeg_quality",
    "AUG_GRAYSCALE": "aug_grayscale",
    "THRESHOLD_HI": "threshold_hi",
    "THRESHOLD_LO": "threshold_lo",
    "MARGIN_MIN": "margin_min",
    "MARGIN_LO": "margin_lo",
    "NCC_BAND": "ncc_band",
    "SSIM_BAND": "ssim_band",
    "TIME_BUDGET_MS": "time_budget_ms",
    "PDF_RENDER_ALWAYS": "pdf_render_always",
    "PDF_RENDER_FALLBACK": "pdf_render_fallback",
    "PDF_RENDER_DPI": "pdf_render_dpi",
    "PDF_RENDER_TOP_PAGES": "pdf_render_top_pages",
    "MAX_PAGES": "max_pages",
    "MAX_STAMPS": "max_stamps",
    "MAX_DIM": "max_dim",
    "PRELOC_THRESHOLD": "preloc_threshold",
    "COARSE_TOPK_SSIM": "coarse_topk_ssim",
    "LOC_DS_WIDTH": "loc_ds_width",
    "LOC_BASE": "loc_base",
    "LOC_SCALES": "loc_scales",
    "LOC_STRIDE": "loc_stride",
    "LOC_MAX_PATCHES": "loc_max_patches",
    "LOC_TOPK": "loc_topk",
    "STAMP_MAX_WORKERS": "max_workers",
    "STAMPS_DIR": "stamps_dir",
}


@dataclass(frozen=True)
class StampConfig:
    """Immutable detector configuration."""

    # ── Robustness augmentation of reference stamps ─────────────────────────
    robust_augmentations: bool = True
    aug_blur_sigma: float = 0.8
    aug_jpeg_quality: int = 60
    aug_grayscale: bool = True

    # ── Decision policy ─────────────────────────────────────────────────────
    threshold_hi: float = 0.88
    threshold_lo: float = 0.80
    margin_min: float = 0.07
    margin_lo: float = 0.05
    ncc_band: float = 0.10
    ssim_band: float = 0.25
    ncc_strong: float = 0.68
    ssim_strong: float = 0.62

    # ── Time budget ─────────────────────────────────────────────────────────
    time_budget_ms: float = 8000.0
    locator_min_remaining_ms: float = 300.0
    second_pass_min_remaining_ms: float = 600.0

    # ── PDF handling ────────────────────────────────────────────────────────
    pdf_render_always: bool = True
    pdf_render_fallback: bool = True
    pdf_render_dpi: int = 144
    pdf_render_top_pages: int = 3

    # ── Limits ──────────────────────────────────────────────────────────────
    max_pages: int = 12
    max_stamps: int = 64
    max_dim: int = 1600
    preloc_threshold: float = 0.80
    coarse_topk_ssim: int = 6

    # ── Spatial locator ─────────────────────────────────────────────────────
    loc_ds_width: int = 900
    loc_base: int = 160
    loc_scales: Tuple[float, ...] = (0.6, 0.8, 1.0, 1.25)
    loc_stride: int = 28
    loc_max_patches: int = 360
    loc_topk: int = 6

    # ── Runtime ─────────────────────────────────────────────────────────────
    max_workers: int = 4
    stamps_dir: str = "stamps"

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StampConfig":
        """Build a config from a flat or section-grouped mapping."""
        flat: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            if key in YAML_SECTIONS and isinstance(value, Mapping):
                flat.update(value)
            else:
                flat[key] = value

        known = {f.name: f for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in flat.items():
            if key not in known:
                logger.warning("Ignoring unknown stamp config key: %s", key)
                continue
            kwargs[key] = _coerce(cls.__dataclass_fields__[key].default, value)
        cfg = cls(**kwargs)
        cfg.validate()
        return cfg

    @classmethod
    def from_yaml(cls, path: str | Path = CONFIG_PATH) -> "StampConfig":
        with open(path, encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
        return cls.from_dict(cfg)

    def with_env(self, environ: Optional[Mapping[str, str]] = None) -> "StampConfig":
        """Return a copy with environment-variable overrides applied.

        Unparsable values keep the current setting rather than failing.
        """
        environ = os.environ if environ is None else environ
        updates: Dict[str, Any] = {}
        for env_name, field_name in ENV_OVERRIDES.items():
            raw = environ.get(env_name)
            if raw is None or raw == "":
                continue
            current = getattr(self, field_name)
            try:
                updates[field_name] = _coerce(current, raw)
            except ValueError:
                logger.warning("Ignoring invalid %s=%r", env_name, raw)
        if not updates:
            return self
        cfg = replace(self, **updates)
        cfg.validate()
        return cfg

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> None:
        """Raise ``ValueError`` if any value is out of range."""
        for name in ("threshold_hi", "threshold_lo", "margin_min", "margin_lo",
                     "ncc_band", "ssim_band", "ncc_strong", "ssim_strong",
                     "preloc_threshold"):
            v = getattr(self, name)
            if not 0.0 <= v <= 1.0:
                raise ValueError(f"{name} must be in [0, 1], got {v}")
        if self.threshold_lo > self.threshold_hi:
            raise ValueError("threshold_lo must not exceed threshold_hi")
        for name in ("max_pages", "max_stamps", "max_dim", "coarse_topk_ssim",
                     "loc_ds_width", "loc_base", "loc_stride", "loc_max_patches",
                     "loc_topk", "pdf_render_dpi", "pdf_render_top_pages", "max_workers"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if not 1 <= self.aug_jpeg_quality <= 100:
            raise ValueError(f"aug_jpeg_quality must be in [1, 100], got {self.aug_jpeg_quality}")
        if self.aug_blur_sigma <= 0:
            raise ValueError("aug_blur_sigma must be positive")
        if self.time_budget_ms < 0:
            raise ValueError("time_budget_ms must not be negative")
        if not self.loc_scales or any(s <= 0 for s in self.loc_scales):
            raise ValueError("loc_scales must be a non-empty list of positive factors")


def _coerce(default: Any, value: Any) -> Any:
    """Convert *value* to the type of *default* (YAML or env string input)."""
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        s = str(value).strip().lower()
        if s in ("1", "true", "yes", "on"):
            return True
        if s in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"Not a boolean: {value!r}")
    if isinstance(default, tuple):
        if isinstance(value, str):
            value = [v for v in value.replace(";", ",").split(",") if v.strip()]
        return tuple(float(v) for v in value)
    if isinstance(default, int):
        return int(float(value))
    if isinstance(default, float):
        return float(value)
    return str(value)


def load_config(
    path: Optional[str | Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> StampConfig:
    """Defaults, then YAML (if the file exists), then environment overrides."""
    cfg_path = Path(path) if path is not None else CONFIG_PATH
    if cfg_path.exists():
        cfg = StampConfig.from_yaml(cfg_path)
    else:
        if path is not None:
            logger.warning("Stamp config %s not found, using defaults", cfg_path)
        cfg = StampConfig()
    return cfg.with_env(environ)


__all__ = ["StampConfig", "load_config", "CONFIG_PATH", "ENV_OVERRIDES"]
