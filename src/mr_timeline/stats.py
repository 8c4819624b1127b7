"""Statistics helpers for merge request cycle time reporting.

This module provides utilities for:
- Computing linear-interpolation percentiles from pre-sorted samples.
- Aggregating per-stage statistics (mean, median, P75, P90, min, max).
- Locating the bottleneck stage and the performance tier.
- Formatting second-based durations as ``HH:MM:SS``.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional, Sequence, Union

from .errors import DataUnavailableError
from .models import (
    STAGE_NAMES,
    CycleTimeAnalysis,
    CycleTimeMetrics,
    DataQualitySummary,
    PerformanceTier,
    StageAvailable,
    StageStatistics,
    StageUnavailable,
    TotalCycleStats,
)

logger = logging.getLogger(__name__)

ELITE_THRESHOLD_HOURS = 26
HIGH_THRESHOLD_HOURS = 168
MEDIUM_THRESHOLD_HOURS = 720

StageOutcome = Union[StageAvailable, StageUnavailable]


def round_one_decimal(value: float) -> float:
    """Round half away from zero to one decimal place."""
    return math.copysign(math.floor(abs(value) * 10 + 0.5) / 10, value)


def calculate_percentile(sorted_values: List[float], p: float) -> Optional[float]:
    """Calculate a percentile using linear interpolation.

    The input sequence is expected to already be sorted in ascending order.
    - Empty input returns ``None``.
    - ``p <= 0`` returns the first value.
    - ``p >= 100`` returns the last value.
    - Otherwise, percentile is linearly interpolated between adjacent ranks.

    Args:
        sorted_values: Sorted numeric samples.
        p: Percentile in the inclusive range ``[0, 100]``.

    Returns:
        Percentile value as ``float`` or ``None`` when input is empty.

    Raises:
        ValueError: If ``p`` is outside ``[0, 100]``.
    """
    if not 0 <= p <= 100:
        raise ValueError("Percentile 'p' must be in the range [0, 100].")

    if not sorted_values:
        return None

    if p <= 0:
        return sorted_values[0]

    if p >= 100:
        return sorted_values[-1]

    position = (len(sorted_values) - 1) * (p / 100.0)
    lower_index = math.floor(position)
    upper_index = math.ceil(position)

    if lower_index == upper_index:
        return sorted_values[int(position)]

    lower_value = sorted_values[lower_index]
    upper_value = sorted_values[upper_index]
    return lower_value + (upper_value - lower_value) * (position - lower_index)


def calculate_median(sorted_values: List[float]) -> Optional[float]:
    """Median of pre-sorted samples; the mean of the middle pair for even counts."""
    if not sorted_values:
        return None
    middle = len(sorted_values) // 2
    if len(sorted_values) % 2:
        return sorted_values[middle]
    return (sorted_values[middle - 1] + sorted_values[middle]) / 2


def _valid_hours(samples: Sequence[CycleTimeMetrics], stage: str) -> List[float]:
    values: List[float] = []
    for sample in samples:
        hours = sample.stage_hours(stage)
        if hours is None or math.isnan(hours) or hours < 0:
            continue
        values.append(hours)
    return sorted(values)


def _summarize(stage: str, values: List[float]) -> StageStatistics:
    return StageStatistics(
        stage_name=stage,
        mean=round_one_decimal(sum(values) / len(values)),
        median=round_one_decimal(calculate_median(values) or 0.0),
        p75=round_one_decimal(calculate_percentile(values, 75) or 0.0),
        p90=round_one_decimal(calculate_percentile(values, 90) or 0.0),
        min=round_one_decimal(values[0]),
        max=round_one_decimal(values[-1]),
        sample_count=len(values),
    )


def empty_stage_statistics(stage: str) -> StageStatistics:
    """Zero-valued statistics for a stage without samples."""
    return StageStatistics(
        stage_name=stage,
        mean=0.0,
        median=0.0,
        p75=0.0,
        p90=0.0,
        min=0.0,
        max=0.0,
        sample_count=0,
    )


def stage_outcome(samples: Sequence[CycleTimeMetrics], stage: str) -> StageOutcome:
    """Compute statistics for one stage, or explain why none exist.

    Samples with a missing (``None``), NaN or negative value for ``stage`` are
    ignored.
    """
    if stage not in STAGE_NAMES:
        raise ValueError(f"Unknown stage '{stage}'; expected one of {', '.join(STAGE_NAMES)}.")
    values = _valid_hours(samples, stage)
    if not values:
        logger.debug("No valid samples for stage", extra={"stage": stage, "samples": len(samples)})
        return StageUnavailable(stage_name=stage, reason=f"No merge requests with {stage} time")
    return StageAvailable(statistics=_summarize(stage, values))


def stage_statistics(samples: Sequence[CycleTimeMetrics], stage: str) -> StageStatistics:
    """Compute statistics for one stage.

    Raises:
        DataUnavailableError: If no sample has a valid value for ``stage``.
        ValueError: If ``stage`` is not a known stage name.
    """
    outcome = stage_outcome(samples, stage)
    if isinstance(outcome, StageUnavailable):
        raise DataUnavailableError(outcome.reason, stage=stage)
    return outcome.statistics


def all_stage_outcomes(samples: Sequence[CycleTimeMetrics]) -> Dict[str, StageOutcome]:
    return {stage: stage_outcome(samples, stage) for stage in STAGE_NAMES}


def rank_stages(stages: Dict[str, StageStatistics]) -> Dict[str, StageStatistics]:
    """Attach percentages and the bottleneck flag to per-stage statistics.

    Percentages are each stage's share of the sum of stage means. Exactly one
    stage is the bottleneck: the highest percentage, ties resolved in
    coding, pickup, review, merge order. When every mean is zero no stage is
    flagged.
    """
    total_mean = sum(stages[stage].mean for stage in STAGE_NAMES)
    percentages = {
        stage: round_one_decimal(stages[stage].mean / total_mean * 100) if total_mean > 0 else 0.0
        for stage in STAGE_NAMES
    }

    bottleneck: Optional[str] = None
    if total_mean > 0:
        bottleneck = STAGE_NAMES[0]
        for stage in STAGE_NAMES[1:]:
            if percentages[stage] > percentages[bottleneck]:
                bottleneck = stage

    ranked: Dict[str, StageStatistics] = {}
    for stage in STAGE_NAMES:
        base = stages[stage]
        ranked[stage] = StageStatistics(
            stage_name=base.stage_name,
            mean=base.mean,
            median=base.median,
            p75=base.p75,
            p90=base.p90,
            min=base.min,
            max=base.max,
            sample_count=base.sample_count,
            percentage=percentages[stage],
            is_bottleneck=stage == bottleneck,
        )
    return ranked


def all_stage_statistics(samples: Sequence[CycleTimeMetrics]) -> Dict[str, StageStatistics]:
    """Compute statistics for the four stages with percentages and the bottleneck.

    Raises:
        DataUnavailableError: If any stage has no valid samples.
    """
    return rank_stages({stage: stage_statistics(samples, stage) for stage in STAGE_NAMES})


def stage_statistics_or_empty(samples: Sequence[CycleTimeMetrics]) -> Dict[str, StageStatistics]:
    """Like :func:`all_stage_statistics`, with zeroed statistics for unavailable stages."""
    stages: Dict[str, StageStatistics] = {}
    for stage, outcome in all_stage_outcomes(samples).items():
        if isinstance(outcome, StageAvailable):
            stages[stage] = outcome.statistics
        else:
            stages[stage] = empty_stage_statistics(stage)
    return rank_stages(stages)


def classify_tier(mean_hours: float) -> PerformanceTier:
    """Map a mean total cycle time in hours to its industry benchmark tier."""
    if mean_hours < ELITE_THRESHOLD_HOURS:
        return PerformanceTier.ELITE
    if mean_hours < HIGH_THRESHOLD_HOURS:
        return PerformanceTier.HIGH
    if mean_hours < MEDIUM_THRESHOLD_HOURS:
        return PerformanceTier.MEDIUM
    return PerformanceTier.LOW


def total_statistics(samples: Sequence[CycleTimeMetrics]) -> TotalCycleStats:
    """Compute mean, median, P75 and P90 of total cycle time in hours.

    Raises:
        DataUnavailableError: If ``samples`` holds no valid total.
    """
    values = sorted(
        sample.total_hours
        for sample in samples
        if not math.isnan(sample.total_hours) and sample.total_hours >= 0
    )
    if not values:
        raise DataUnavailableError("No merge requests with a total cycle time", stage="total")

    return TotalCycleStats(
        mean=round_one_decimal(sum(values) / len(values)),
        median=round_one_decimal(calculate_median(values) or 0.0),
        p75=round_one_decimal(calculate_percentile(values, 75) or 0.0),
        p90=round_one_decimal(calculate_percentile(values, 90) or 0.0),
    )


def summarize_data_quality(samples: Sequence[CycleTimeMetrics]) -> DataQualitySummary:
    """Count samples whose stage values are zeroed, missing or clamped."""
    return DataQualitySummary(
        zero_coding_time_count=sum(1 for sample in samples if sample.coding_hours == 0),
        zero_merge_time_count=sum(1 for sample in samples if sample.merge_hours == 0),
        no_review_count=sum(1 for sample in samples if not sample.has_review),
        clamped_count=sum(
            1
            for sample in samples
            if any(flag.endswith("_clamped") for flag in sample.data_quality_flags)
        ),
        total_count=len(samples),
    )


def analyze_cycle_time(samples: Sequence[CycleTimeMetrics]) -> CycleTimeAnalysis:
    """Build the complete cycle time analysis for a set of merge requests.

    Stages without samples (for example when no MR was reviewed) are reported
    with zeroed statistics and a sample count of 0.

    Raises:
        DataUnavailableError: If ``samples`` is empty.
    """
    if not samples:
        raise DataUnavailableError("No merged merge requests to analyze")

    stages = stage_statistics_or_empty(samples)
    total = total_statistics(samples)
    bottleneck = next((stage for stage in STAGE_NAMES if stages[stage].is_bottleneck), None)

    return CycleTimeAnalysis(
        mr_count=len(samples),
        stages=stages,
        total_cycle_time=total,
        tier=classify_tier(total.mean),
        bottleneck_stage=bottleneck,
        data_quality=summarize_data_quality(samples),
    )


def format_duration(seconds: Optional[float]) -> str:
    """Format seconds as ``HH:MM:SS``.

    Args:
        seconds: Duration in seconds.

    Returns:
        ``"n/a"`` when ``seconds`` is ``None``; otherwise a rounded
        ``HH:MM:SS`` string.
    """
    if seconds is None:
        return "n/a"

    total_seconds = int(round(seconds))
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    remaining_seconds = total_seconds % 60
    return f"{hours:02d}:{minutes:02d}:{remaining_seconds:02d}"
