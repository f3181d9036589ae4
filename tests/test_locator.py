"""Tests for the sliding-window locator and patch verifier."""

from dataclasses import replace

import numpy as np
import pytest

from stamp_detector.budget import TimeBudget
from stamp_detector.features import edge_descriptor
from stamp_detector.locator import BoundingBox, locate_stamp, verify_patch
from conftest import make_rect_stamp, make_round_stamp


def _page_with(stamp: np.ndarray, x: int, y: int, w: int = 600, h: int = 400) -> np.ndarray:
    page = np.full((h, w, 3), 255, dtype=np.uint8)
    sh, sw = stamp.shape[:2]
    page[y:y + sh, x:x + sw] = stamp
    return page


@pytest.mark.parametrize("box,page_w,page_h", [
    (BoundingBox(-10, -5, 50, 50), 100, 100),
    (BoundingBox(90, 90, 50, 50), 100, 100),
    (BoundingBox(200, 10, 30, 30), 100, 100),
    (BoundingBox(0, 0, 500, 500), 120, 80),
])
def test_clamped_box_is_inside_page(box, page_w, page_h):
    c = box.clamped(page_w, page_h)
    assert c.contained_in(page_w, page_h)
    assert c.x >= 0 and c.y >= 0
    assert c.x + c.width <= page_w and c.y + c.height <= page_h


def test_finds_exact_window(config):
    stamp = make_round_stamp(160)
    page = _page_with(stamp, 200, 140)
    cfg = replace(config, loc_scales=(1.0,), loc_stride=20, loc_max_patches=5000)
    res = locate_stamp(page, edge_descriptor(stamp), TimeBudget(20000), cfg)
    assert res.bbox == BoundingBox(200, 140, 160, 160)
    assert res.score == pytest.approx(1.0, abs=1e-4)
    assert res.bbox.to_dict() == {"x": 200, "y": 140, "w": 160, "h": 160}


@pytest.mark.parametrize("w,h", [(1800, 1200), (950, 2400), (300, 5000)])
def test_downsampled_boxes_stay_inside_page(config, w, h):
    rng = np.random.default_rng(w)
    page = rng.integers(0, 256, (h, w, 3), dtype=np.uint8)
    res = locate_stamp(page, edge_descriptor(make_rect_stamp(200)), TimeBudget(20000), config)
    assert res.bbox is not None
    assert res.bbox.contained_in(w, h)
    assert res.evaluated <= config.loc_max_patches


def test_page_smaller_than_window_yields_no_box(config):
    page = np.full((50, 50, 3), 255, dtype=np.uint8)
    res = locate_stamp(page, edge_descriptor(make_round_stamp(64)), TimeBudget(20000), config)
    assert res.bbox is None
    assert res.evaluated == 0


def test_exhausted_budget_stops_scan(config):
    page = _page_with(make_round_stamp(160), 100, 100)
    res = locate_stamp(page, edge_descriptor(make_round_stamp(160)), TimeBudget(0), config)
    assert res.budget_exhausted
    assert res.bbox is None


def test_verify_patch_confirms_stamp():
    stamp = make_round_stamp(160)
    page = _page_with(stamp, 200, 140)
    v = verify_patch(page, BoundingBox(200, 140, 160, 160), stamp)
    assert v.ncc == pytest.approx(1.0, abs=1e-4)
    assert v.ssim == pytest.approx(1.0, abs=1e-4)

    other = verify_patch(page, BoundingBox(200, 140, 160, 160), make_rect_stamp(160))
    assert other.ncc < v.ncc and other.ssim < v.ssim


def test_verify_patch_out_of_range_raises():
    page = np.full((100, 100, 3), 255, dtype=np.uint8)
    with pytest.raises(ValueError):
        verify_patch(page, BoundingBox(90, 90, 50, 50), make_round_stamp(64))
