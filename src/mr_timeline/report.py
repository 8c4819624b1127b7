"""Text and JSON rendering of timeline, batch, cycle time and trend results."""

from __future__ import annotations

import dataclasses
import json
from datetime import date, datetime
from enum import Enum
from typing import Any, List, Mapping, Sequence

from .errors import BatchItemError
from .models import (
    STAGE_NAMES,
    BatchResult,
    CycleTimeAnalysis,
    MRTimeline,
    StageStatistics,
    TrendPeriod,
)
from .stats import format_duration


def to_jsonable(value: Any) -> Any:
    """Convert result dataclasses into JSON-compatible structures."""
    if isinstance(value, BatchItemError):
        return {
            "index": value.index,
            "item_id": to_jsonable(value.item_id),
            "error": str(value.error),
            "error_type": type(value.error).__name__,
        }
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {field.name: to_jsonable(getattr(value, field.name)) for field in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(to_jsonable(key)): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return value


def render_json(value: Any) -> str:
    return json.dumps(to_jsonable(value), indent=2, ensure_ascii=False)


def _hours(value: float) -> str:
    return f"{value:.1f}h"


def _stage_line(stats: StageStatistics) -> str:
    marker = "  <- bottleneck" if stats.is_bottleneck else ""
    return (
        f"   {stats.stage_name:<8} mean={_hours(stats.mean)} median={_hours(stats.median)}"
        f" p75={_hours(stats.p75)} p90={_hours(stats.p90)}"
        f" ({stats.percentage:.1f}%, n={stats.sample_count}){marker}"
    )


def format_timeline(timeline: MRTimeline) -> str:
    """Render one merge request timeline as a text report."""
    mr = timeline.merge_request
    summary = timeline.summary
    lines = [
        f"MR !{mr.iid}: {mr.title}",
        f"Author: {timeline.author.display_name} (@{timeline.author.username})",
        f"Branch: {mr.source_branch} -> {mr.target_branch}",
        f"Cycle time: {format_duration(timeline.cycle_time_seconds)}",
        "",
        "Events",
    ]
    for event in timeline.events:
        interval = (
            f" +{format_duration(event.interval_to_next_seconds)}"
            if event.interval_to_next_seconds is not None
            else ""
        )
        lines.append(
            f"   {event.sequence:>3}. {event.timestamp.isoformat()} {event.event_type.value:<22}"
            f" {event.actor.username} [{event.actor.role.value}]{interval}"
        )

    lines.extend(["", "Phases"])
    for phase_segment in timeline.phase_segments:
        duration = format_duration(phase_segment.duration_seconds) if phase_segment.is_available else "n/a"
        lines.append(f"   {phase_segment.phase.value:<7} {duration:>9} {phase_segment.percentage:5.1f}%")

    if timeline.segments:
        lines.extend(["", "Segments"])
        for time_segment in timeline.segments:
            lines.append(
                f"   {time_segment.from_state.value} -> {time_segment.to_state.value}:"
                f" {format_duration(time_segment.duration_seconds)} ({time_segment.percentage:.1f}%)"
            )

    lines.extend(
        [
            "",
            "Summary",
            f"   Commits: {summary.commits}",
            f"   AI reviews: {summary.ai_reviews}",
            f"   Human comments: {summary.human_comments}",
            f"   Pipelines: {summary.system_events}",
            f"   Reviewers: {', '.join(actor.username for actor in summary.reviewers) or 'none'}",
        ]
    )
    if timeline.data_quality_flags:
        lines.append(f"   Data quality: {', '.join(timeline.data_quality_flags)}")

    return "\n".join(lines)


def format_batch(result: BatchResult[MRTimeline]) -> str:
    """Render a batch of timelines as a comparison table."""
    lines = [
        f"Analyzed {result.processed} of {result.total} merge requests"
        f" ({result.success_count} succeeded, {result.failure_count} failed)"
        + (", cancelled" if result.cancelled else ""),
        "",
        f"   {'MR':<8} {'Cycle':>9} {'Dev':>9} {'Wait':>9} {'Review':>9} {'Merge':>9}",
    ]
    for success in result.successes:
        timeline = success.value
        durations = [
            format_duration(item.duration_seconds) if item.is_available else "n/a"
            for item in timeline.phase_segments
        ]
        lines.append(
            f"   {'!' + str(timeline.merge_request.iid):<8} {format_duration(timeline.cycle_time_seconds):>9} "
            + " ".join(f"{duration:>9}" for duration in durations)
        )

    if result.failures:
        lines.extend(["", "Failures"])
        for failure in result.failures:
            lines.append(f"   {failure}")

    return "\n".join(lines)


def format_cycle_time(analysis: CycleTimeAnalysis) -> str:
    """Render a cycle time analysis as a text report."""
    total = analysis.total_cycle_time
    quality = analysis.data_quality
    lines = [
        f"Cycle time over {analysis.mr_count} merged merge requests",
        f"Performance tier: {analysis.tier.value}",
        f"Bottleneck: {analysis.bottleneck_stage or 'none'}",
        "",
        "Stages",
    ]
    lines.extend(_stage_line(analysis.stages[stage]) for stage in STAGE_NAMES)
    lines.extend(
        [
            "",
            "Total cycle time",
            f"   mean={_hours(total.mean)} median={_hours(total.median)}"
            f" p75={_hours(total.p75)} p90={_hours(total.p90)}",
            "",
            "Data quality",
            f"   Zero coding time: {quality.zero_coding_time_count}/{quality.total_count}",
            f"   Zero merge time: {quality.zero_merge_time_count}/{quality.total_count}",
            f"   No review: {quality.no_review_count}/{quality.total_count}",
            f"   Clamped: {quality.clamped_count}/{quality.total_count}",
        ]
    )
    return "\n".join(lines)


def format_trend(periods: Sequence[TrendPeriod]) -> str:
    """Render trend periods as a text table."""
    lines: List[str] = [
        f"   {'Period':<10} {'MRs':>4} {'Mean':>8} {'Median':>8} {'Tier':<7} {'Change':>9}",
    ]
    for period in periods:
        change = ""
        if period.change_from_previous is not None:
            change = f"{period.change_from_previous.percentage:+.1f}%"
        tier = period.tier.value if period.tier is not None else "-"
        flag = "  (low confidence)" if period.is_low_confidence else ""
        lines.append(
            f"   {period.label:<10} {period.mr_count:>4} {_hours(period.total_cycle_time.mean):>8}"
            f" {_hours(period.total_cycle_time.median):>8} {tier:<7} {change:>9}{flag}"
        )
    return "\n".join(lines)
