"""Primary / secondary language detection from a byte-count breakdown.

Pure and deterministic: no I/O, ties broken by language name.
"""

from __future__ import annotations

from fractions import Fraction
from typing import Mapping

from app.models.enrichment.results import LanguageDetection, LanguageShare

DEFAULT_SECONDARY_RATIO = 0.5


def _share(name: str, count: int, total: int) -> LanguageShare:
    return LanguageShare(name=name, bytes=count, percentage=round(count * 100 / total, 2))


def detect_languages(
    byte_counts: Mapping[str, int],
    secondary_ratio: float = DEFAULT_SECONDARY_RATIO,
) -> LanguageDetection:
    """Return the primary language and, if it is significant enough, a secondary one.

    The primary language is the one with the most bytes.  The runner-up is
    reported as secondary only when its share is at least
    ``secondary_ratio`` times the primary's share; the boundary itself
    qualifies.  With the default ratio of 0.5, ``{"Go": 700, "Python": 300}``
    has no secondary while ``{"Go": 550, "Python": 450}`` and
    ``{"Go": 600, "Python": 300}`` do.

    Comparisons use exact fractions so the boundary does not depend on
    floating point rounding.  Entries with non-positive counts are ignored.
    """
    counts = {name: int(count) for name, count in byte_counts.items() if count and count > 0}
    total = sum(counts.values())
    if total == 0:
        return LanguageDetection()

    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    primary_name, primary_bytes = ranked[0]
    detection = LanguageDetection(primary=_share(primary_name, primary_bytes, total))

    if len(ranked) > 1:
        runner_name, runner_bytes = ranked[1]
        # shares have the same denominator, so compare the byte counts
        if Fraction(runner_bytes) >= Fraction(str(secondary_ratio)) * primary_bytes:
            detection.secondary = _share(runner_name, runner_bytes, total)
    return detection
