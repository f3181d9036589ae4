"""Tests for the two-stage coarse matcher."""

from dataclasses import replace

import pytest

from stamp_detector.budget import TimeBudget
from stamp_detector.documents import RasterImage
from stamp_detector.matcher import (
    MatchCandidate,
    MatchRanking,
    compute_page_features,
    match_pages,
    quick_fused,
    refined_fused,
)
from conftest import make_rect_stamp, make_round_stamp


def _pages(*arrays):
    return [RasterImage(a, "image") for a in arrays]


def test_fusion_weights():
    comps = {"edge": 1.0, "color": 1.0, "hash": 1.0, "ssim": 1.0}
    assert quick_fused(comps) == pytest.approx(1.0)
    assert refined_fused(comps) == pytest.approx(1.0)
    assert quick_fused({"edge": 1.0}) == pytest.approx(0.42)
    assert refined_fused({"ssim": 1.0}) == pytest.approx(0.20)


def test_page_features_keep_page_order():
    feats = compute_page_features(_pages(make_round_stamp(200), make_rect_stamp(200), make_round_stamp(150)),
                                  TimeBudget(10000), max_workers=3)
    assert [f.index for f in feats] == [0, 1, 2]


def test_page_features_with_exhausted_budget():
    assert compute_page_features(_pages(make_round_stamp(100)), TimeBudget(0)) == []


def test_identical_page_ranks_its_stamp_first(store, config):
    pages = _pages(make_rect_stamp(300), make_round_stamp())
    feats = compute_page_features(pages, TimeBudget(10000))
    ranking = match_pages(feats, store, TimeBudget(10000), config)

    assert ranking.refined
    assert ranking.quick_evaluated == 4
    top = ranking.top
    assert (top.page_index, top.stamp_name) == (1, "round_red.png")
    assert top.fused_score >= 0.99
    assert set(top.component_scores) == {"edge", "color", "hash", "ssim"}
    scores = [c.fused_score for c in ranking.candidates]
    assert scores == sorted(scores, reverse=True)


def test_runner_up_is_a_different_stamp(store, config):
    pages = _pages(make_round_stamp(), make_round_stamp(380))
    ranking = match_pages(compute_page_features(pages, TimeBudget(10000)), store, TimeBudget(10000), config)
    assert ranking.top.stamp_name == "round_red.png"
    assert ranking.runner_up.stamp_name == "rect_blue.png"
    assert ranking.runner_up.fused_score < ranking.top.fused_score


def test_refine_short_list_is_capped(store, config):
    pages = _pages(*[make_round_stamp(200 + 10 * i) for i in range(4)])
    feats = compute_page_features(pages, TimeBudget(10000))
    ranking = match_pages(feats, store, TimeBudget(10000), replace(config, coarse_topk_ssim=3))
    assert ranking.quick_evaluated == 8
    # three round pages plus the best rect candidate as competitor
    assert len(ranking.candidates) == 4
    assert sorted(c.stamp_name for c in ranking.candidates).count("rect_blue.png") == 1


def test_competitor_kept_when_one_stamp_fills_the_short_list(store, config):
    pages = _pages(*[make_round_stamp() for _ in range(config.coarse_topk_ssim + 1)])
    feats = compute_page_features(pages, TimeBudget(10000))
    ranking = match_pages(feats, store, TimeBudget(10000), config)
    assert ranking.top.stamp_name == "round_red.png"
    assert ranking.runner_up is not None
    assert ranking.runner_up.stamp_name == "rect_blue.png"
    assert "ssim" in ranking.runner_up.component_scores


def test_exhausted_budget_returns_empty_partial_ranking(store, config):
    feats = compute_page_features(_pages(make_round_stamp()), TimeBudget(10000))
    ranking = match_pages(feats, store, TimeBudget(0), config)
    assert ranking.budget_exhausted
    assert not ranking.refined
    assert ranking.top is None
    assert ranking.runner_up is None


def test_ranking_without_competitor_has_no_runner_up():
    ranking = MatchRanking([MatchCandidate(0, "a.png", 0.9), MatchCandidate(1, "a.png", 0.8)])
    assert ranking.top.page_index == 0
    assert ranking.runner_up is None
