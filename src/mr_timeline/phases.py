"""Phase segmentation of an ordered merge request timeline.

Cycle time is partitioned into four consecutive phases:

- Dev: branch creation (or MR creation) until the MR is ready for review
- Wait: ready until the first review
- Review: first review until approval
- Merge: approval until merge

The phase boundaries form a chain. A phase whose starting boundary never
happened is reported with zero duration and ``is_available=False``; the time it
would have covered stays with the preceding phase, so the four durations always
add up to the cycle time.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Sequence, Tuple

from .models import ActivityBucket, EventType, MREvent, Phase, PhaseSegment

logger = logging.getLogger(__name__)

PHASE_ORDER: Tuple[Phase, ...] = (Phase.DEV, Phase.WAIT, Phase.REVIEW, Phase.MERGE)
DEFAULT_ACTIVITY_BUCKETS = 5

BOUNDARY_CLAMPED = "boundary_clamped"

_REVIEW_EVENTS = (EventType.AI_REVIEW_STARTED, EventType.HUMAN_REVIEW_STARTED)


@dataclass(frozen=True)
class PhaseBoundaries:
    """Key events delimiting the four phases, before gap filling."""

    start: MREvent
    mr_created: Optional[MREvent]
    ready: MREvent
    first_review: Optional[MREvent]
    approved: Optional[MREvent]
    merged: Optional[MREvent]
    end: MREvent


def _first(events: Sequence[MREvent], event_type: EventType) -> Optional[MREvent]:
    return next((event for event in events if event.event_type is event_type), None)


def _last(events: Sequence[MREvent], event_type: EventType) -> Optional[MREvent]:
    return next((event for event in reversed(events) if event.event_type is event_type), None)


def resolve_boundaries(events: Sequence[MREvent]) -> Optional[PhaseBoundaries]:
    """Locate the boundary events for ``events`` (already in timeline order).

    Returns ``None`` for an empty timeline.
    """
    if not events:
        return None

    mr_created = _first(events, EventType.MR_CREATED)
    start = _first(events, EventType.BRANCH_CREATED) or mr_created or events[0]

    ready = mr_created or start
    latest_ready = _last(events, EventType.MARKED_AS_READY)
    if latest_ready is not None and latest_ready.timestamp > ready.timestamp:
        ready = latest_ready

    created_at = mr_created.timestamp if mr_created is not None else start.timestamp
    first_review = next(
        (
            event
            for event in events
            if event.event_type in _REVIEW_EVENTS and event.timestamp > created_at
        ),
        None,
    )

    # A review that arrives while the MR is still a draft ends development at creation.
    if first_review is not None and mr_created is not None and first_review.timestamp < ready.timestamp:
        ready = mr_created

    merged = _first(events, EventType.MERGED)
    approvals = [
        event
        for event in events
        if event.event_type is EventType.APPROVED
        and (merged is None or event.timestamp <= merged.timestamp)
    ]
    approved = approvals[-1] if approvals else None

    return PhaseBoundaries(
        start=start,
        mr_created=mr_created,
        ready=ready,
        first_review=first_review,
        approved=approved,
        merged=merged,
        end=merged or events[-1],
    )


@dataclass(frozen=True)
class _Chain:
    events: Tuple[MREvent, ...]
    offsets: Tuple[int, ...]
    available: Tuple[bool, ...]
    clamped: Tuple[bool, ...]


def _build_chain(boundaries: PhaseBoundaries) -> _Chain:
    merge_available = boundaries.approved is not None and boundaries.merged is not None
    points: List[Optional[MREvent]] = [
        boundaries.start,
        boundaries.ready,
        boundaries.first_review,
        boundaries.approved if merge_available else None,
        boundaries.end,
    ]
    available = (True, True, points[2] is not None, points[3] is not None)

    # Missing boundaries collapse onto the next one present.
    for index in range(len(points) - 2, -1, -1):
        if points[index] is None:
            points[index] = points[index + 1]

    chain_events = tuple(point for point in points if point is not None)
    origin = boundaries.start.timestamp
    offsets: List[int] = []
    clamped: List[bool] = [False] * len(PHASE_ORDER)
    for index, event in enumerate(chain_events):
        raw = int(round((event.timestamp - origin).total_seconds()))
        if index > 0 and raw < offsets[-1]:
            clamped[index - 1] = available[index - 1]
            raw = offsets[-1]
        offsets.append(raw)

    return _Chain(
        events=chain_events,
        offsets=tuple(offsets),
        available=available,
        clamped=tuple(clamped),
    )


def cycle_time_seconds(events: Sequence[MREvent]) -> int:
    """Total elapsed seconds from branch (or MR) creation until merge or the last event."""
    boundaries = resolve_boundaries(events)
    if boundaries is None:
        return 0
    return _build_chain(boundaries).offsets[-1]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def distribute_percentages(durations: Sequence[int]) -> Tuple[float, ...]:
    """Turn phase durations into whole percentages that add up to exactly 100.

    Every phase but the last is rounded half-up; the last phase receives the
    remainder. When rounding overshoots, the excess is taken back from the
    largest of the other phases so no percentage goes negative.
    """
    total = sum(durations)
    if total <= 0:
        return tuple(0.0 for _ in durations)

    rounded = [_round_half_up(duration / total * 100) for duration in durations[:-1]]
    remainder = 100 - sum(rounded)
    while remainder < 0:
        largest = max(range(len(rounded)), key=lambda index: (rounded[index], -index))
        rounded[largest] -= 1
        remainder += 1

    return tuple(float(value) for value in rounded + [remainder])


def _activity_buckets(
    events: Sequence[MREvent],
    chain: _Chain,
    index: int,
    bucket_count: int,
) -> Tuple[ActivityBucket, ...]:
    start_offset = chain.offsets[index]
    duration = chain.offsets[index + 1] - start_offset
    if bucket_count <= 0 or duration <= 0:
        return ()

    origin = chain.events[0].timestamp
    phase_start = origin + timedelta(seconds=start_offset)
    phase_end = origin + timedelta(seconds=chain.offsets[index + 1])
    width = duration / bucket_count

    counts = [0] * bucket_count
    for event in events:
        if not phase_start <= event.timestamp <= phase_end:
            continue
        position = int((event.timestamp - phase_start).total_seconds() // width)
        counts[min(position, bucket_count - 1)] += 1

    peak = max(counts)
    return tuple(
        ActivityBucket(
            start=phase_start + timedelta(seconds=width * bucket),
            end=phase_start + timedelta(seconds=width * (bucket + 1)),
            event_count=count,
            intensity=round(count / peak, 2) if peak else 0.0,
        )
        for bucket, count in enumerate(counts)
    )


def segment(
    events: Sequence[MREvent],
    activity_buckets: int = DEFAULT_ACTIVITY_BUCKETS,
) -> Tuple[PhaseSegment, ...]:
    """Partition an ordered timeline into the four lifecycle phases.

    Args:
        events: Timeline events in timeline order.
        activity_buckets: Number of intensity buckets per phase; ``0`` disables them.

    Returns:
        Exactly four ``PhaseSegment`` values in Dev, Wait, Review, Merge order.
        Durations add up to :func:`cycle_time_seconds` and percentages to 100
        whenever the cycle time is positive.
    """
    boundaries = resolve_boundaries(events)
    if boundaries is None:
        return tuple(
            PhaseSegment(phase=phase, duration_seconds=0, percentage=0.0, is_available=False)
            for phase in PHASE_ORDER
        )

    chain = _build_chain(boundaries)
    durations = [chain.offsets[index + 1] - chain.offsets[index] for index in range(len(PHASE_ORDER))]
    percentages = distribute_percentages(durations)

    segments: List[PhaseSegment] = []
    for index, phase in enumerate(PHASE_ORDER):
        flags: Tuple[str, ...] = ()
        if chain.clamped[index]:
            flags = (BOUNDARY_CLAMPED,)
            logger.debug(
                "Clamped phase boundary forward to keep durations non-negative",
                extra={"phase": phase.value, "sequence": chain.events[index].sequence},
            )

        if not chain.available[index]:
            segments.append(
                PhaseSegment(
                    phase=phase,
                    duration_seconds=0,
                    percentage=percentages[index],
                    is_available=False,
                    data_quality_flags=flags,
                )
            )
            continue

        segments.append(
            PhaseSegment(
                phase=phase,
                duration_seconds=durations[index],
                percentage=percentages[index],
                is_available=True,
                from_event=chain.events[index],
                to_event=chain.events[index + 1],
                activity=_activity_buckets(events, chain, index, activity_buckets),
                data_quality_flags=flags,
            )
        )

    return tuple(segments)
