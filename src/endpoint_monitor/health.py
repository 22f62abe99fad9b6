from __future__ import annotations

from typing import Optional

from . import config
from .models import Health, WindowSummary


def _within(value: Optional[float], limit: float) -> bool:
    return value is not None and value <= limit


def _within_or_missing(value: Optional[float], limit: float) -> bool:
    return value is None or value <= limit


def classify(
    success_rate: Optional[float], average: Optional[float], p90: Optional[float]
) -> Health:
    """Map window statistics to a health category; the first matching tier wins.

    Optimal and great need latency data within bounds. Good also accepts a
    missing average or p90, so a target with no successful probe yet can
    still be told apart from worse tiers by success rate alone.
    """
    if success_rate is None:
        return Health.UNKNOWN

    rate, avg_max, p90_max = config.OPTIMAL_TIER
    if success_rate >= rate and _within(average, avg_max) and _within(p90, p90_max):
        return Health.OPTIMAL

    rate, avg_max, p90_max = config.GREAT_TIER
    if success_rate >= rate and _within(average, avg_max) and _within(p90, p90_max):
        return Health.GREAT

    rate, avg_max, p90_max = config.GOOD_TIER
    if (
        success_rate >= rate
        and _within_or_missing(average, avg_max)
        and _within_or_missing(p90, p90_max)
    ):
        return Health.GOOD

    if success_rate >= config.WARN_MIN_SUCCESS:
        return Health.WARN
    if success_rate >= config.BAD_MIN_SUCCESS:
        return Health.BAD
    return Health.DOWN


def classify_summary(summary: WindowSummary) -> Health:
    return classify(summary.success_rate, summary.average, summary.p90)
