"""Tests for the two-tier decision policy."""

import numpy as np
import pytest

from stamp_detector.config import StampConfig
from stamp_detector.decision import BANDED, NO_MATCH, STRONG, compute_margin, decide
from stamp_detector.locator import PatchVerification

CFG = StampConfig()


def test_strong_match():
    d = decide(0.93, 0.2, None, CFG)
    assert d.match and d.reason == STRONG


def test_strong_needs_margin():
    d = decide(0.95, 0.03, None, CFG)
    assert not d.match and d.reason == NO_MATCH


def test_banded_needs_local_confirmation():
    assert decide(0.84, 0.06, None, CFG).reason == NO_MATCH
    assert decide(0.84, 0.06, PatchVerification(0.05, 0.10), CFG).reason == NO_MATCH
    assert decide(0.84, 0.06, PatchVerification(0.12, 0.0), CFG).reason == BANDED
    assert decide(0.84, 0.06, PatchVerification(0.0, 0.7), CFG).reason == BANDED


def test_banded_needs_margin_lo():
    assert not decide(0.84, 0.04, PatchVerification(0.9, 0.9), CFG).match


def test_below_threshold_lo_is_no_match():
    assert not decide(0.79, 0.5, PatchVerification(1.0, 1.0), CFG).match


def test_no_candidate():
    d = decide(None, 0.0, None, CFG)
    assert not d.match and d.reason == NO_MATCH


def test_non_finite_score_is_no_match():
    assert not decide(float("nan"), 0.5, PatchVerification(1.0, 1.0), CFG).match


def test_compute_margin():
    assert compute_margin(0.9, 0.7) == pytest.approx(0.2)
    assert compute_margin(0.9, None) == pytest.approx(0.9)
    assert compute_margin(None, None) == 0.0


@pytest.mark.parametrize("margin", [0.0, 0.04, 0.05, 0.06, 0.07, 0.2, 1.0])
@pytest.mark.parametrize("verification", [
    None,
    PatchVerification(0.0, 0.0),
    PatchVerification(0.11, 0.0),
    PatchVerification(0.7, 0.7),
])
def test_raising_top_score_never_loses_a_match(margin, verification):
    matched = False
    for score in np.linspace(0.0, 1.0, 201):
        d = decide(float(score), margin, verification, CFG)
        if matched:
            assert d.match, f"match lost at score={score:.3f}"
        matched = d.match
