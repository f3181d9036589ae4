"""
stamp_detector.matcher — Two-stage coarse matcher (pages × stamps).

Stage 1 (quick) scores every (page, stamp) pair with a cheap fusion of
edge, colour and hash similarity, taking the best score over the stamp's
variants.  Stage 2 (refine) adds global SSIM against the stamp's base image
for the top ``coarse_topk_ssim`` pairs only (plus the best pair of another
stamp, if none made the cut) and re-ranks them.

Per-page and per-stamp failures are logged and the pair is left out of the
ranking; the budget is polled between pairs and a partial ranking is
returned when it runs out.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from .budget import TimeBudget
from .config import StampConfig
from .documents import RasterImage
from .features import FeatureTriplet, compute_triplet, ssim_plane, ssim_planes
from .references import StampReference, StampStore

logger = logging.getLogger(__name__)

# Fusion weights
QUICK_WEIGHTS = {"edge": 0.42, "color": 0.38, "hash": 0.20}
REFINED_WEIGHTS = {"edge": 0.35, "color": 0.25, "hash": 0.20, "ssim": 0.20}


@dataclass(frozen=True)
class PageFeatures:
    """Precomputed features of one normalised page."""
    index: int
    triplet: FeatureTriplet
    ssim_plane: np.ndarray
    source: str = "image"


@dataclass
class MatchCandidate:
    """A scored (page, stamp) pair."""
    page_index: int
    stamp_name: str
    fused_score: float
    component_scores: Dict[str, float] = field(default_factory=dict)


@dataclass
class MatchRanking:
    """Candidates sorted by descending fused score."""
    candidates: List[MatchCandidate] = field(default_factory=list)
    quick_evaluated: int = 0
    refined: bool = False
    budget_exhausted: bool = False

    @property
    def top(self) -> Optional[MatchCandidate]:
        return self.candidates[0] if self.candidates else None

    @property
    def runner_up(self) -> Optional[MatchCandidate]:
        """Best candidate for a stamp other than the top one.

        The same stamp seen on a second page (e.g. the embedded image and
        the rendered page it sits on) is not a competing interpretation.
        """
        top = self.top
        if top is None:
            return None
        for c in self.candidates[1:]:
            if c.stamp_name != top.stamp_name:
                return c
        return None


# ---------------------------------------------------------------------------
# Page features
# ---------------------------------------------------------------------------

def _page_features(index: int, page: RasterImage) -> PageFeatures:
    plane = ssim_plane(page.pixels)
    plane.setflags(write=False)
    return PageFeatures(index, compute_triplet(page.pixels), plane, page.source)


def compute_page_features(
    pages: Sequence[RasterImage],
    budget: TimeBudget,
    max_workers: int = 4,
) -> List[PageFeatures]:
    """Compute features of every page concurrently, in page order.

    Pages whose computation fails, or that were not started before the
    budget ran out, are skipped.
    """
    if not pages:
        return []
    results: Dict[int, PageFeatures] = {}
    workers = max(1, min(max_workers, len(pages)))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {}
        for i, page in enumerate(pages):
            if budget.over():
                logger.warning("Budget exhausted before features of page %d", i)
                break
            futures[executor.submit(_page_features, i, page)] = i
        for fut in as_completed(futures):
            i = futures[fut]
            try:
                results[i] = fut.result()
            except Exception as exc:
                logger.warning("Feature extraction failed for page %d: %s", i, exc)
    return [results[i] for i in sorted(results)]


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def quick_fused(components: Dict[str, float]) -> float:
    return sum(w * components.get(k, 0.0) for k, w in QUICK_WEIGHTS.items())


def refined_fused(components: Dict[str, float]) -> float:
    return sum(w * components.get(k, 0.0) for k, w in REFINED_WEIGHTS.items())


def best_over_variants(page: PageFeatures, stamp: StampReference) -> MatchCandidate:
    """Quick-stage candidate for *stamp* on *page*, best over its variants."""
    best: Optional[MatchCandidate] = None
    for variant in stamp.variants:
        comps = page.triplet.compare(variant)
        score = quick_fused(comps)
        if best is None or score > best.fused_score:
            best = MatchCandidate(page.index, stamp.name, score, comps)
    if best is None:
        raise ValueError(f"Stamp {stamp.name} has no variants")
    return best


def _sort_key(c: MatchCandidate):
    # Ties resolve to the earlier page, then the stamp name.
    return (-c.fused_score, c.page_index, c.stamp_name)


def _short_list(quick: List[MatchCandidate], k: int) -> List[MatchCandidate]:
    """Top *k* quick candidates, plus the best one of a competing stamp.

    When the top *k* all name the same stamp (the same stamp on many pages),
    the best candidate of any other stamp is appended so the margin is still
    measured against a real competitor.
    """
    short = quick[:k]
    if not short:
        return short
    leader = short[0].stamp_name
    if any(c.stamp_name != leader for c in short):
        return short
    for c in quick[k:]:
        if c.stamp_name != leader:
            return short + [c]
    return short


def match_pages(
    page_features: Sequence[PageFeatures],
    store: StampStore,
    budget: TimeBudget,
    config: Optional[StampConfig] = None,
) -> MatchRanking:
    """Rank every (page, stamp) pair.

    Returns
    -------
    MatchRanking
        ``refined`` is ``True`` when stage 2 scored at least one candidate;
        in that case ``candidates`` holds only the refined short list.
        Otherwise the quick-stage short list is returned as is.
    """
    config = config or StampConfig()
    ranking = MatchRanking()
    quick: List[MatchCandidate] = []

    # Stage 1
    for page in page_features:
        if ranking.budget_exhausted:
            break
        for stamp in store:
            if budget.over():
                ranking.budget_exhausted = True
                break
            try:
                quick.append(best_over_variants(page, stamp))
            except Exception as exc:
                logger.warning("Quick match failed (page=%d, stamp=%s): %s",
                               page.index, stamp.name, exc)
    ranking.quick_evaluated = len(quick)
    quick.sort(key=_sort_key)
    short_list = _short_list(quick, config.coarse_topk_ssim)

    # Stage 2
    by_index = {p.index: p for p in page_features}
    refined: List[MatchCandidate] = []
    for cand in short_list:
        if budget.over():
            ranking.budget_exhausted = True
            break
        stamp = store.get(cand.stamp_name)
        try:
            comps = dict(cand.component_scores)
            comps["ssim"] = ssim_planes(by_index[cand.page_index].ssim_plane, stamp.ssim_plane)
            refined.append(MatchCandidate(cand.page_index, cand.stamp_name, refined_fused(comps), comps))
        except Exception as exc:
            logger.warning("Refine failed (page=%d, stamp=%s): %s",
                           cand.page_index, cand.stamp_name, exc)

    if refined:
        refined.sort(key=_sort_key)
        ranking.candidates = refined
        ranking.refined = True
    else:
        ranking.candidates = short_list
    return ranking
