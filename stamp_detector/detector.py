"""
stamp_detector.detector — Detection facade.

Control flow of one call::

    bytes ─► normalize_to_images ─► compute_page_features ─► match_pages
          ─► locate_stamp / verify_patch (best candidate only) ─► decide
          ─► [PDF only] second pass over rendered pages ─► DetectionResult

A :class:`~stamp_detector.budget.TimeBudget` is created at the start of
:meth:`StampDetector.detect` and threaded through every stage.

The module also owns the process-wide stamp store handle used by
:func:`detect_stamp_on_buffer`: :func:`init_stamps` builds it once,
reloading swaps in a freshly built store.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .budget import TimeBudget
from .config import StampConfig, load_config
from .decision import NO_MATCH, Decision, compute_margin, decide
from .documents import RasterImage
from .errors import StampDetectionError
from .locator import BoundingBox, PatchVerification, locate_stamp, verify_patch
from .matcher import MatchCandidate, MatchRanking, compute_page_features, match_pages
from .normalizer import is_pdf_kind, normalize_to_images, render_document_pages, sniff_container
from .references import StampStore, load_references
from .utils import json_sanitize

logger = logging.getLogger(__name__)

NOTE_NO_STAMPS = "No stamps loaded."
NOTE_NO_IMAGES = "No images found in document."
NOTE_BUDGET = "Time budget exhausted before a confident conclusion; retry with a larger budget."


def _r3(x: Optional[float]) -> Optional[float]:
    return None if x is None else round(float(x), 3)


def pass_label(pages: List[RasterImage]) -> str:
    """Source tag shared by all *pages*, or ``"hybrid"`` for a mixed list."""
    sources = {p.source for p in pages}
    return sources.pop() if len(sources) == 1 else "hybrid"


@dataclass
class DetectionResult:
    """Outcome of one detection call.

    ``success`` is ``False`` only for hard failures (unsupported or
    unreadable input).  Every soft outcome (no stamps, no images, budget
    exhausted, no match) is ``success=True, match=False`` with a ``note``.
    """

    success: bool = True
    match: bool = False
    score: float = 0.0
    page: Optional[int] = None          # 1-based position in the page list
    stamp: Optional[str] = None
    margin: float = 0.0
    bbox: Optional[BoundingBox] = None
    ncc: Optional[float] = None
    ssim: Optional[float] = None
    note: str = ""
    reason: str = NO_MATCH
    source: Optional[str] = None        # "image" | "embedded" | "rendered" | "package"
    time_ms: int = 0
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str, time_ms: int) -> "DetectionResult":
        return cls(success=False, error=error, time_ms=time_ms, note=error)

    @classmethod
    def soft(cls, note: str, time_ms: int) -> "DetectionResult":
        return cls(success=True, match=False, note=note, time_ms=time_ms)

    def to_dict(self) -> Dict[str, Any]:
        if not self.success:
            return {"success": False, "error": self.error, "time_ms": self.time_ms}
        return json_sanitize({
            "success": True,
            "match": self.match,
            "score": _r3(self.score),
            "page": self.page,
            "stamp": self.stamp,
            "margin": _r3(self.margin),
            "bbox": self.bbox.to_dict() if self.bbox else None,
            "ncc": _r3(self.ncc),
            "ssim": _r3(self.ssim),
            "note": self.note,
            "reason": self.reason,
            "source": self.source,
            "time_ms": self.time_ms,
        })


@dataclass
class PassOutcome:
    """Everything one detection pass over a page list produced."""
    label: str
    pages: List[RasterImage]
    ranking: MatchRanking = field(default_factory=MatchRanking)
    decision: Decision = field(default_factory=lambda: Decision(False, NO_MATCH, 0.0))
    bbox: Optional[BoundingBox] = None
    verification: Optional[PatchVerification] = None

    @property
    def top(self) -> Optional[MatchCandidate]:
        return self.ranking.top

    @property
    def top_score(self) -> float:
        return self.top.fused_score if self.top else 0.0


class StampDetector:
    """Runs detections against one immutable :class:`StampStore`.

    Args:
        config: detector settings; defaults + YAML + environment if omitted.
        store: reference stamps; an empty store makes every call return
            "No stamps loaded."
    """

    def __init__(self, config: Optional[StampConfig] = None, store: Optional[StampStore] = None):
        self.config = config or load_config()
        self.store = store if store is not None else StampStore.empty()

    def detect(self, buffer: bytes, mime_type: Optional[str] = None) -> DetectionResult:
        budget = TimeBudget(self.config.time_budget_ms)

        if not len(self.store):
            return DetectionResult.soft(NOTE_NO_STAMPS, budget.elapsed_ms())

        try:
            sniff_container(buffer, mime_type)
            if budget.over():
                return DetectionResult.soft(NOTE_BUDGET, budget.elapsed_ms())

            pages = normalize_to_images(buffer, mime_type, budget, self.config)
            if not pages:
                return DetectionResult.soft(NOTE_NO_IMAGES, budget.elapsed_ms())

            best = self._run_pass(pass_label(pages), pages, budget)
            if not best.decision.match and self._wants_second_pass(buffer, mime_type, budget):
                second = self._second_pass(buffer, pages, budget)
                if second is not None and second.top_score > best.top_score:
                    best = second
        except StampDetectionError as exc:
            logger.warning("Detection failed: %s", exc)
            return DetectionResult.failure(str(exc), budget.elapsed_ms())
        except Exception as exc:
            logger.exception("Unexpected detection error")
            return DetectionResult.failure(f"{type(exc).__name__}: {exc}", budget.elapsed_ms())

        return self._to_result(best, budget)

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def _run_pass(self, label: str, pages: List[RasterImage], budget: TimeBudget) -> PassOutcome:
        outcome = PassOutcome(label=label, pages=pages)
        feats = compute_page_features(pages, budget, self.config.max_workers)
        if not feats:
            return outcome

        outcome.ranking = match_pages(feats, self.store, budget, self.config)
        top = outcome.ranking.top
        if top is None:
            return outcome

        if (top.fused_score >= self.config.preloc_threshold
                and budget.remaining_ms() > self.config.locator_min_remaining_ms):
            self._localize(outcome, top, budget)

        runner_up = outcome.ranking.runner_up
        margin = compute_margin(top.fused_score, runner_up.fused_score if runner_up else None)
        outcome.decision = decide(top.fused_score, margin, outcome.verification, self.config)
        logger.debug("Pass %s: top=%s/%d %.3f margin=%.3f → %s", label, top.stamp_name,
                     top.page_index, top.fused_score, margin, outcome.decision.reason)
        return outcome

    def _localize(self, outcome: PassOutcome, top: MatchCandidate, budget: TimeBudget) -> None:
        stamp = self.store.get(top.stamp_name)
        page = outcome.pages[top.page_index].pixels
        try:
            loc = locate_stamp(page, stamp.primary.edge, budget, self.config)
        except Exception as exc:
            logger.warning("Localization skipped: %s", exc)
            return
        if loc.bbox is None:
            return
        try:
            outcome.verification = verify_patch(page, loc.bbox, stamp.base_image)
            outcome.bbox = loc.bbox
        except ValueError as exc:
            logger.warning("Patch verification skipped: %s", exc)

    def _wants_second_pass(self, buffer: bytes, mime_type: Optional[str], budget: TimeBudget) -> bool:
        if not (self.config.pdf_render_always or self.config.pdf_render_fallback):
            return False
        if not is_pdf_kind(buffer, mime_type):
            return False
        return budget.remaining_ms() > self.config.second_pass_min_remaining_ms

    def _second_pass(self, buffer: bytes, pages: List[RasterImage], budget: TimeBudget) -> Optional[PassOutcome]:
        rendered = [p for p in pages if p.source == "rendered"]
        if not rendered:
            try:
                rendered = render_document_pages(buffer, self.config)
            except StampDetectionError as exc:
                logger.warning("Rendered pass skipped: %s", exc)
                return None
        if not rendered:
            return None
        return self._run_pass("rendered", rendered, budget)

    # ------------------------------------------------------------------
    # Result
    # ------------------------------------------------------------------

    def _to_result(self, outcome: PassOutcome, budget: TimeBudget) -> DetectionResult:
        top = outcome.top
        decision = outcome.decision
        if not decision.match and budget.exhausted:
            note = NOTE_BUDGET
        else:
            note = (f"{decision.reason} | pass={outcome.label} | "
                    f"th_hi={self.config.threshold_hi} th_lo={self.config.threshold_lo}")

        result = DetectionResult(
            success=True,
            match=decision.match,
            margin=decision.margin,
            note=note,
            reason=decision.reason,
            time_ms=budget.elapsed_ms(),
        )
        if top is not None:
            result.score = top.fused_score
            result.page = top.page_index + 1
            result.stamp = top.stamp_name
            result.source = outcome.pages[top.page_index].source
        if outcome.verification is not None:
            result.bbox = outcome.bbox
            result.ncc = outcome.verification.ncc
            result.ssim = outcome.verification.ssim
        return result


# ---------------------------------------------------------------------------
# Process-wide stamp store
# ---------------------------------------------------------------------------

_STORE: Optional[StampStore] = None
_STORE_LOCK = threading.Lock()


def init_stamps(
    directory: Optional[Union[str, Path]] = None,
    config: Optional[StampConfig] = None,
    force: bool = False,
) -> StampStore:
    """Build the shared stamp store once.

    Subsequent calls return the existing store unless *force* is set.
    Failures are logged and leave an empty store behind.
    """
    global _STORE
    with _STORE_LOCK:
        if _STORE is not None and not force:
            return _STORE
        config = config or load_config()
        directory = directory if directory is not None else config.stamps_dir
        try:
            store = load_references(directory, config)
        except Exception as exc:
            logger.error("Failed to load stamps from %s: %s", directory, exc)
            store = StampStore.empty(str(directory))
        _STORE = store
        return store


def current_store() -> StampStore:
    return _STORE if _STORE is not None else StampStore.empty()


def reset_stamps() -> None:
    global _STORE
    with _STORE_LOCK:
        _STORE = None


def detect_stamp_on_buffer(
    file_buffer: bytes,
    mime_type: Optional[str] = None,
    config: Optional[StampConfig] = None,
    store: Optional[StampStore] = None,
) -> DetectionResult:
    """Detect a reference stamp in a document.

    Uses the shared store (initialising it on first use) unless *store* is
    given.
    """
    config = config or load_config()
    if store is None:
        store = _STORE if _STORE is not None else init_stamps(config=config)
    return StampDetector(config, store).detect(file_buffer, mime_type)
