"""
stamp_detector.budget — Cooperative wall-clock deadline for one detection.

A ``TimeBudget`` is created once at the start of a detection call and
passed explicitly into every stage.  Loops poll :meth:`TimeBudget.over`
and return their best partial result instead of raising, so an exceeded
budget degrades to a soft "no match" rather than an error.
"""

from __future__ import annotations

import time


def now_ms() -> float:
    return time.monotonic() * 1000.0


class TimeBudget:
    """Deadline computed at construction time.

    Parameters
    ----------
    budget_ms : float
        Total wall-clock allowance in milliseconds.  ``0`` (or a negative
        value) yields a budget that is already over.
    """

    def __init__(self, budget_ms: float):
        self.budget_ms = max(0.0, float(budget_ms))
        self.started_ms = now_ms()
        self.deadline_ms = self.started_ms + self.budget_ms
        self.exhausted = False

    def over(self) -> bool:
        """Return ``True`` once the deadline has passed.

        The first ``True`` also sets the sticky :attr:`exhausted` flag, which
        the detector uses to tell budget exhaustion apart from a genuine
        no-match.
        """
        if now_ms() >= self.deadline_ms:
            self.exhausted = True
        return self.exhausted

    def remaining_ms(self) -> float:
        return max(0.0, self.deadline_ms - now_ms())

    def elapsed_ms(self) -> int:
        return int(round(now_ms() - self.started_ms))

    def __repr__(self) -> str:
        return (
            f"TimeBudget(budget_ms={self.budget_ms:.0f}, "
            f"remaining_ms={self.remaining_ms():.0f}, exhausted={self.exhausted})"
        )
