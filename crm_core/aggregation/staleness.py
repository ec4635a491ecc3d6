"""
Freshness tracking for composed views.
"""

from typing import Optional


class StalenessTracker:
    """Holds the instant a view was last made fresh.

    ``is_stale`` is a pure function of ``last_fresh``, ``now`` and the
    threshold: stale before the first ``mark_fresh`` and again once
    ``now - last_fresh >= max_age_seconds``.
    """

    def __init__(self) -> None:
        self._last_fresh: Optional[float] = None

    @property
    def last_fresh(self) -> Optional[float]:
        return self._last_fresh

    def mark_fresh(self, at: float) -> None:
        self._last_fresh = at

    def reset(self) -> None:
        """Forget freshness, e.g. after the query behind the view changed."""
        self._last_fresh = None

    def age(self, now: float) -> Optional[float]:
        if self._last_fresh is None:
            return None
        return now - self._last_fresh

    def is_stale(self, now: float, max_age_seconds: float) -> bool:
        if self._last_fresh is None:
            return True
        return now - self._last_fresh >= max_age_seconds
