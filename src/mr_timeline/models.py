"""Domain models for GitLab merge request timeline analysis.

The raw record dataclasses model only the subset of GitLab API payload fields
that are required to rebuild a merge request lifecycle. Everything derived from
them (events, segments, statistics, trends) is frozen: entities are created per
analysis run and never mutated afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Dict, Generic, List, Mapping, Optional, Tuple, TypeVar

from .errors import BatchItemError

T = TypeVar("T")


class ActorRole(str, Enum):
    """Role an actor plays within a single merge request."""

    AUTHOR = "Author"
    HUMAN_REVIEWER = "Human Reviewer"
    AI_REVIEWER = "AI Reviewer"
    CI_BOT = "CI Bot"


class EventType(str, Enum):
    """Canonical merge request lifecycle event kinds."""

    BRANCH_CREATED = "Branch Created"
    CODE_COMMITTED = "Code Committed"
    MR_CREATED = "MR Created"
    MARKED_AS_DRAFT = "Marked as Draft"
    MARKED_AS_READY = "Marked as Ready"
    COMMIT_PUSHED = "Commit Pushed"
    AI_REVIEW_STARTED = "AI Review Started"
    HUMAN_REVIEW_STARTED = "Human Review Started"
    CI_BOT_RESPONSE = "CI Bot Response"
    AUTHOR_RESPONSE = "Author Response"
    APPROVED = "Approved"
    MERGED = "Merged"
    PIPELINE_SUCCESS = "Pipeline Success"
    PIPELINE_FAILED = "Pipeline Failed"


# Tie-break order for events sharing a timestamp (lower sorts first).
EVENT_TYPE_PRIORITY: Dict[EventType, int] = {
    EventType.BRANCH_CREATED: 1,
    EventType.CODE_COMMITTED: 2,
    EventType.MR_CREATED: 3,
    EventType.MARKED_AS_DRAFT: 4,
    EventType.MARKED_AS_READY: 5,
    EventType.COMMIT_PUSHED: 6,
    EventType.AI_REVIEW_STARTED: 7,
    EventType.HUMAN_REVIEW_STARTED: 8,
    EventType.CI_BOT_RESPONSE: 9,
    EventType.AUTHOR_RESPONSE: 10,
    EventType.APPROVED: 11,
    EventType.MERGED: 12,
    EventType.PIPELINE_SUCCESS: 13,
    EventType.PIPELINE_FAILED: 14,
}

_unprioritized = set(EventType) - set(EVENT_TYPE_PRIORITY)
if _unprioritized:
    raise RuntimeError(
        "Every EventType needs an ordering priority; missing: "
        + ", ".join(sorted(event_type.name for event_type in _unprioritized))
    )


class Phase(str, Enum):
    """High-level lifecycle phases partitioning cycle time."""

    DEV = "Dev"
    WAIT = "Wait"
    REVIEW = "Review"
    MERGE = "Merge"


class KeyState(str, Enum):
    """Key lifecycle states used to build fine-grained time segments."""

    MR_CREATED = "MR Created"
    MARKED_AS_READY = "Marked as Ready"
    FIRST_COMMIT = "Code Updated"
    FIRST_AI_REVIEW = "First AI Review"
    FIRST_HUMAN_REVIEW = "First Human Review"
    APPROVED = "Approved"
    MERGED = "Merged"
    CURRENT = "Current"


class PerformanceTier(str, Enum):
    """Industry benchmark tier for mean cycle time."""

    ELITE = "Elite"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


# Fixed stage order; also the bottleneck tie-break order.
STAGE_NAMES: Tuple[str, ...] = ("coding", "pickup", "review", "merge")

STAGE_PHASES: Dict[str, Phase] = {
    "coding": Phase.DEV,
    "pickup": Phase.WAIT,
    "review": Phase.REVIEW,
    "merge": Phase.MERGE,
}


# ---------------------------------------------------------------------------
# Raw records consumed from the collector
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class User:
    """Represents a GitLab user reference embedded in API payloads."""

    id: int
    username: str
    name: str


@dataclass(frozen=True, slots=True)
class MergeRequest:
    """Represents the merge request metadata required for timeline analysis."""

    iid: int
    project_id: int
    title: str
    is_draft: bool
    author: User
    created_at: datetime
    merged_at: Optional[datetime]
    source_branch: str
    target_branch: str
    web_url: str
    merged_by: Optional[User] = None


@dataclass(frozen=True, slots=True)
class Commit:
    """Represents one commit in the merge request."""

    id: str
    authored_date: datetime
    author_name: str
    author_email: str
    title: str = ""


@dataclass(frozen=True, slots=True)
class Note:
    """Represents a merge request note (comment or system note)."""

    id: int
    body: str
    author: User
    created_at: datetime
    is_system: bool


@dataclass(frozen=True, slots=True)
class Pipeline:
    """Represents a pipeline run attached to the merge request."""

    id: int
    status: str
    created_at: datetime
    finished_at: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class AwardEmoji:
    """Represents an emoji reaction placed on a note."""

    name: str
    user: User
    created_at: datetime
    target_note_id: int


@dataclass(frozen=True, slots=True)
class MRRecords:
    """Bundle of every raw record fetched for one merge request."""

    merge_request: MergeRequest
    commits: Tuple[Commit, ...] = ()
    notes: Tuple[Note, ...] = ()
    pipelines: Tuple[Pipeline, ...] = ()
    emojis: Tuple[AwardEmoji, ...] = ()


# ---------------------------------------------------------------------------
# Timeline entities
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Actor:
    """An individual (or bot) performing a merge request event."""

    id: int
    username: str
    display_name: str
    role: ActorRole
    is_ai_bot: bool


@dataclass(frozen=True, slots=True)
class EmojiReaction:
    """An emoji reaction attached to a review event."""

    emoji: str
    username: str
    name: str
    created_at: datetime


@dataclass(frozen=True, slots=True)
class EventDetails:
    """Optional details carried by specific event kinds."""

    commit_sha: Optional[str] = None
    pipeline_id: Optional[int] = None
    note_id: Optional[int] = None
    branch_name: Optional[str] = None
    message: Optional[str] = None
    emoji_reactions: Tuple[EmojiReaction, ...] = ()


@dataclass(frozen=True, slots=True)
class MREvent:
    """A single event in the merge request timeline."""

    sequence: int
    timestamp: datetime
    actor: Actor
    event_type: EventType
    details: EventDetails = field(default_factory=EventDetails)
    interval_to_next_seconds: Optional[int] = None
    data_quality_flags: Tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class TimeSegment:
    """Time between two adjacent key lifecycle states."""

    from_state: KeyState
    to_state: KeyState
    from_event: MREvent
    to_event: MREvent
    duration_seconds: int
    percentage: float


@dataclass(frozen=True, slots=True)
class ActivityBucket:
    """Event density within an equal slice of a phase (visualization only)."""

    start: datetime
    end: datetime
    event_count: int
    intensity: float


@dataclass(frozen=True, slots=True)
class PhaseSegment:
    """One of the four lifecycle phases with its share of cycle time."""

    phase: Phase
    duration_seconds: int
    percentage: float
    is_available: bool
    from_event: Optional[MREvent] = None
    to_event: Optional[MREvent] = None
    activity: Tuple[ActivityBucket, ...] = ()
    data_quality_flags: Tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class CommentBreakdown:
    """Comment counts split by who wrote them."""

    human_review_comments: int = 0
    ai_comments: int = 0
    author_responses: int = 0
    ci_bot_comments: int = 0


@dataclass(frozen=True, slots=True)
class MRSummary:
    """Activity counts for a merge request, actors deduplicated by id."""

    commits: int
    ai_reviews: int
    human_comments: int
    system_events: int
    total_events: int
    contributors: Tuple[Actor, ...]
    reviewers: Tuple[Actor, ...]
    comment_breakdown: CommentBreakdown


@dataclass(frozen=True, slots=True)
class MRTimeline:
    """Complete single merge request analysis result."""

    merge_request: MergeRequest
    author: Actor
    events: Tuple[MREvent, ...]
    segments: Tuple[TimeSegment, ...]
    phase_segments: Tuple[PhaseSegment, ...]
    summary: MRSummary
    cycle_time_seconds: int
    data_quality_flags: Tuple[str, ...] = ()

    def phase(self, phase: Phase) -> PhaseSegment:
        """Return the segment for ``phase``."""
        for segment in self.phase_segments:
            if segment.phase is phase:
                return segment
        raise KeyError(phase)


# ---------------------------------------------------------------------------
# Statistics entities
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CycleTimeMetrics:
    """Per-MR stage durations in hours, the input sample for statistics.

    ``None`` marks a stage that never happened for this MR (for example no
    review). Zeroed values caused by history rewrites are listed in
    ``data_quality_flags``.
    """

    iid: int
    title: str
    author: str
    web_url: str
    created_at: datetime
    merged_at: Optional[datetime]
    coding_hours: Optional[float]
    pickup_hours: Optional[float]
    review_hours: Optional[float]
    merge_hours: Optional[float]
    total_hours: float
    data_quality_flags: Tuple[str, ...] = ()

    def stage_hours(self, stage: str) -> Optional[float]:
        """Return the duration for ``stage`` (one of ``STAGE_NAMES``)."""
        if stage not in STAGE_PHASES:
            raise ValueError(f"Unknown stage '{stage}'; expected one of {', '.join(STAGE_NAMES)}.")
        return getattr(self, f"{stage}_hours")

    @property
    def has_review(self) -> bool:
        return self.review_hours is not None

    @property
    def coding_time_clamped(self) -> bool:
        return "coding_time_clamped" in self.data_quality_flags


@dataclass(frozen=True, slots=True)
class StageStatistics:
    """Aggregated statistics for one stage across samples, in hours."""

    stage_name: str
    mean: float
    median: float
    p75: float
    p90: float
    min: float
    max: float
    sample_count: int
    percentage: float = 0.0
    is_bottleneck: bool = False


@dataclass(frozen=True, slots=True)
class StageAvailable:
    """A stage with at least one valid sample."""

    statistics: StageStatistics


@dataclass(frozen=True, slots=True)
class StageUnavailable:
    """A stage with zero valid samples."""

    stage_name: str
    reason: str


@dataclass(frozen=True, slots=True)
class TotalCycleStats:
    """Total cycle time statistics in hours."""

    mean: float
    median: float
    p75: float
    p90: float


@dataclass(frozen=True, slots=True)
class DataQualitySummary:
    """Counts of samples whose values are zeroed or missing."""

    zero_coding_time_count: int
    zero_merge_time_count: int
    no_review_count: int
    clamped_count: int
    total_count: int


@dataclass(frozen=True)
class CycleTimeAnalysis:
    """Full cycle-time analysis over a set of merge requests."""

    mr_count: int
    stages: Mapping[str, StageStatistics]
    total_cycle_time: TotalCycleStats
    tier: PerformanceTier
    bottleneck_stage: Optional[str]
    data_quality: DataQualitySummary


@dataclass(frozen=True, slots=True)
class Period:
    """A calendar-aligned date range (both ends inclusive)."""

    start: date
    end: date
    label: str


@dataclass(frozen=True, slots=True)
class PeriodChange:
    """Change of mean total cycle time against the previous period."""

    cycle_time_hours: float
    percentage: float


@dataclass(frozen=True)
class TrendPeriod:
    """Statistics for one trend period."""

    period_start: date
    period_end: date
    label: str
    mr_count: int
    stages: Mapping[str, StageStatistics]
    total_cycle_time: TotalCycleStats
    tier: Optional[PerformanceTier]
    change_from_previous: Optional[PeriodChange] = None
    is_low_confidence: bool = False


# ---------------------------------------------------------------------------
# Batch entities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BatchSuccess(Generic[T]):
    """A successful batch item tagged with its original position."""

    index: int
    item_id: object
    value: T


@dataclass(frozen=True)
class BatchResult(Generic[T]):
    """Outcome of a batch run, ordered by original input index."""

    successes: List[BatchSuccess[T]]
    failures: List[BatchItemError]
    total: int
    processed: int
    cancelled: bool = False

    @property
    def success_count(self) -> int:
        return len(self.successes)

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    @property
    def values(self) -> List[T]:
        return [success.value for success in self.successes]
