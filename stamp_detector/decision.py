"""
Decision policy: turns the ranked candidates and optional patch verification
into a match / no-match verdict.

=== Two-tier thresholds ===

  1. Strong:  top >= threshold_hi  and  margin >= margin_min
              → match, reason "strong-coarse"
  2. Banded:  top >= threshold_lo  and  margin >= margin_lo
              and the located patch confirms it, either strongly
              (ncc >= ncc_strong or ssim >= ssim_strong) or weakly
              (ncc >= ncc_band or ssim >= ssim_band)
              → match, reason "banded-with-refine"
  3. Otherwise → no match, reason "no-match"

margin = top − runner_up, where runner_up is 0 when there is none.

Both tiers are lower bounds on the top score, so for fixed margin and
verification raising the top score never turns a match into a no-match.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .config import StampConfig
from .locator import PatchVerification
from .utils import finite_or_zero

STRONG = "strong-coarse"
BANDED = "banded-with-refine"
NO_MATCH = "no-match"


@dataclass(frozen=True)
class Decision:
    match: bool
    reason: str              # "strong-coarse" | "banded-with-refine" | "no-match"
    margin: float


def compute_margin(top: Optional[float], runner_up: Optional[float]) -> float:
    return finite_or_zero(top or 0.0) - finite_or_zero(runner_up or 0.0)


def _confirmed(verification: Optional[PatchVerification], config: StampConfig) -> bool:
    if verification is None:
        return False
    strong = verification.ncc >= config.ncc_strong or verification.ssim >= config.ssim_strong
    weak = verification.ncc >= config.ncc_band or verification.ssim >= config.ssim_band
    return strong or weak


def decide(
    top_score: Optional[float],
    margin: float,
    verification: Optional[PatchVerification] = None,
    config: Optional[StampConfig] = None,
) -> Decision:
    """Apply the two-tier policy.

    Args:
        top_score: fused score of the best candidate, ``None`` if there is none.
        margin: ``top − runner_up``.
        verification: patch NCC/SSIM, ``None`` if localization did not run
            or produced no box.
    """
    config = config or StampConfig()
    if top_score is None:
        return Decision(False, NO_MATCH, margin)
    top = finite_or_zero(top_score)

    if top >= config.threshold_hi and margin >= config.margin_min:
        return Decision(True, STRONG, margin)
    if top >= config.threshold_lo and margin >= config.margin_lo and _confirmed(verification, config):
        return Decision(True, BANDED, margin)
    return Decision(False, NO_MATCH, margin)
