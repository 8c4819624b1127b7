"""Split a date range into calendar periods and compute per-period cycle time trends."""

from __future__ import annotations

import logging
from datetime import date, timedelta, timezone
from typing import Dict, List, Optional, Sequence

from .config import DEFAULT_MAX_PERIODS, DEFAULT_MIN_CONFIDENT_SAMPLES, TREND_GRANULARITIES
from .errors import InputValidationError, PeriodCountExceededError
from .models import CycleTimeMetrics, Period, PeriodChange, TotalCycleStats, TrendPeriod
from .stats import (
    classify_tier,
    round_one_decimal,
    stage_statistics_or_empty,
    total_statistics,
)

logger = logging.getLogger(__name__)

WEEKLY_MAX_DAYS = 84
MONTHLY_MAX_DAYS = 365

_SUGGESTIONS: Dict[str, str] = {
    "weekly": "Shorten the range to 12 weeks or use --granularity monthly.",
    "monthly": "Shorten the range to 12 months or use --granularity quarterly.",
    "quarterly": "Shorten the range to 12 quarters (3 years).",
}


def auto_select_granularity(start: date, end: date) -> str:
    """Pick weekly up to 84 days, monthly up to 365 days, quarterly beyond."""
    days = (end - start).days
    if days <= WEEKLY_MAX_DAYS:
        return "weekly"
    if days <= MONTHLY_MAX_DAYS:
        return "monthly"
    return "quarterly"


def _month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year, 12, 31)
    return date(year, month + 1, 1) - timedelta(days=1)


def _weekly(start: date, end: date) -> List[Period]:
    periods: List[Period] = []
    current = start - timedelta(days=start.weekday())
    while current <= end:
        iso_year, iso_week, _ = current.isocalendar()
        periods.append(Period(current, current + timedelta(days=6), f"{iso_year}-W{iso_week:02d}"))
        current += timedelta(days=7)
    return periods


def _monthly(start: date, end: date) -> List[Period]:
    periods: List[Period] = []
    year, month = start.year, start.month
    while date(year, month, 1) <= end:
        periods.append(Period(date(year, month, 1), _month_end(year, month), f"{year}-{month:02d}"))
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    return periods


def _quarterly(start: date, end: date) -> List[Period]:
    periods: List[Period] = []
    year, quarter = start.year, (start.month - 1) // 3 + 1
    while date(year, quarter * 3 - 2, 1) <= end:
        periods.append(
            Period(
                date(year, quarter * 3 - 2, 1),
                _month_end(year, quarter * 3),
                f"Q{quarter} {year}",
            )
        )
        year, quarter = (year + 1, 1) if quarter == 4 else (year, quarter + 1)
    return periods


def _split(start: date, end: date, granularity: str) -> List[Period]:
    if granularity == "weekly":
        return _weekly(start, end)
    if granularity == "monthly":
        return _monthly(start, end)
    if granularity == "quarterly":
        return _quarterly(start, end)
    raise InputValidationError(
        f"Unknown granularity '{granularity}': expected one of {', '.join(TREND_GRANULARITIES)}."
    )


def split_periods(
    start: date,
    end: date,
    granularity: Optional[str] = None,
    max_periods: int = DEFAULT_MAX_PERIODS,
) -> List[Period]:
    """Split ``start``..``end`` (inclusive) into contiguous calendar periods.

    Weeks start on Monday. The first and last period cover whole calendar
    units, so they may extend beyond the requested range.

    Args:
        start: First day of the range.
        end: Last day of the range.
        granularity: ``weekly``, ``monthly`` or ``quarterly``. When omitted it
            is chosen from the span length and stepped up to a coarser unit
            while the period count would exceed ``max_periods``.
        max_periods: Upper bound on the number of periods.

    Returns:
        Periods in chronological order.

    Raises:
        InputValidationError: If ``start`` is after ``end`` or the granularity is unknown.
        PeriodCountExceededError: If more than ``max_periods`` periods would be produced.
    """
    if start > end:
        raise InputValidationError(
            f"Invalid date range: start {start.isoformat()} is after end {end.isoformat()}."
        )

    if granularity is None:
        # An automatic choice moves to a coarser unit instead of exceeding the cap.
        first = TREND_GRANULARITIES.index(auto_select_granularity(start, end))
        for granularity in TREND_GRANULARITIES[first:]:
            periods = _split(start, end, granularity)
            if len(periods) <= max_periods:
                break
    else:
        periods = _split(start, end, granularity)

    if len(periods) > max_periods:
        raise PeriodCountExceededError(len(periods), max_periods, _SUGGESTIONS[granularity])

    logger.debug(
        "Split date range into periods",
        extra={"granularity": granularity, "periods": len(periods)},
    )
    return periods


def _merge_date(sample: CycleTimeMetrics) -> Optional[date]:
    if sample.merged_at is None:
        return None
    return sample.merged_at.astimezone(timezone.utc).date()


def _in_period(sample: CycleTimeMetrics, period: Period) -> bool:
    merged = _merge_date(sample)
    return merged is not None and period.start <= merged <= period.end


def _change(previous_mean: float, current_mean: float) -> PeriodChange:
    delta = current_mean - previous_mean
    percentage = delta / previous_mean * 100 if previous_mean > 0 else 0.0
    return PeriodChange(
        cycle_time_hours=round_one_decimal(delta),
        percentage=round_one_decimal(percentage),
    )


def analyze_trend(
    samples: Sequence[CycleTimeMetrics],
    periods: Sequence[Period],
    min_confident_samples: int = DEFAULT_MIN_CONFIDENT_SAMPLES,
) -> List[TrendPeriod]:
    """Compute cycle time statistics for every period.

    Samples are assigned to the period containing their merge date (UTC);
    unmerged samples are ignored. Periods without samples are still returned
    with zeroed statistics and no tier.
    """
    trend: List[TrendPeriod] = []
    previous_mean: Optional[float] = None

    for period in periods:
        bucket = [sample for sample in samples if _in_period(sample, period)]

        if bucket:
            total = total_statistics(bucket)
            tier = classify_tier(total.mean)
        else:
            total = TotalCycleStats(mean=0.0, median=0.0, p75=0.0, p90=0.0)
            tier = None

        trend.append(
            TrendPeriod(
                period_start=period.start,
                period_end=period.end,
                label=period.label,
                mr_count=len(bucket),
                stages=stage_statistics_or_empty(bucket),
                total_cycle_time=total,
                tier=tier,
                change_from_previous=_change(previous_mean, total.mean) if previous_mean is not None else None,
                is_low_confidence=len(bucket) < min_confident_samples,
            )
        )
        previous_mean = total.mean

    logger.debug(
        "Computed trend periods",
        extra={
            "periods": len(trend),
            "samples": len(samples),
            "low_confidence": sum(1 for item in trend if item.is_low_confidence),
        },
    )
    return trend
