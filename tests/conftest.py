"""Shared fixtures: synthetic stamp images and stamp directories."""

from dataclasses import replace
from pathlib import Path

import cv2
import numpy as np
import pytest
from PIL import Image

from stamp_detector.config import StampConfig
from stamp_detector.references import load_references


def make_round_stamp(size: int = 400) -> np.ndarray:
    """Red circular stamp: double ring, inner rings and a text line."""
    img = np.full((size, size, 3), 255, dtype=np.uint8)
    c = size // 2
    red = (200, 30, 40)
    cv2.circle(img, (c, c), int(size * 0.45), red, max(4, size // 28))
    cv2.circle(img, (c, c), int(size * 0.36), red, max(2, size // 60))
    for r in range(int(size * 0.08), int(size * 0.30), max(6, size // 25)):
        cv2.circle(img, (c, c), r, red, 2)
    cv2.putText(img, "APPROVED", (int(size * 0.14), int(size * 0.56)),
                cv2.FONT_HERSHEY_SIMPLEX, size / 320.0, red, max(2, size // 80))
    return img


def make_rect_stamp(size: int = 400) -> np.ndarray:
    """Blue rectangular stamp: thick frame, grid and a diagonal cross."""
    img = np.full((size, size, 3), 255, dtype=np.uint8)
    blue = (30, 60, 210)
    m = int(size * 0.06)
    cv2.rectangle(img, (m, m), (size - m, size - m), blue, max(4, size // 28))
    for v in range(int(size * 0.2), int(size * 0.8), max(8, size // 12)):
        cv2.line(img, (v, int(size * 0.2)), (v, int(size * 0.8)), blue, 2)
    cv2.line(img, (m, m), (size - m, size - m), blue, max(3, size // 50))
    cv2.line(img, (size - m, m), (m, size - m), blue, max(3, size // 50))
    cv2.putText(img, "PAID", (int(size * 0.30), int(size * 0.92)),
                cv2.FONT_HERSHEY_SIMPLEX, size / 300.0, blue, max(2, size // 80))
    return img


def save_png(arr: np.ndarray, path: Path) -> Path:
    Image.fromarray(arr).save(path)
    return path


@pytest.fixture
def config() -> StampConfig:
    return StampConfig()


@pytest.fixture
def round_stamp() -> np.ndarray:
    return make_round_stamp()


@pytest.fixture
def rect_stamp() -> np.ndarray:
    return make_rect_stamp()


@pytest.fixture
def stamps_dir(tmp_path, round_stamp, rect_stamp) -> Path:
    d = tmp_path / "stamps"
    d.mkdir()
    save_png(round_stamp, d / "round_red.png")
    save_png(rect_stamp, d / "rect_blue.png")
    return d


@pytest.fixture
def store(stamps_dir, config):
    return load_references(stamps_dir, config)


@pytest.fixture
def no_render_config(config) -> StampConfig:
    return replace(config, pdf_render_always=False, pdf_render_fallback=False)
