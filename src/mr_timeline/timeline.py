"""Build an ordered merge request timeline from raw GitLab records."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .actor_classifier import (
    ActorClassifier,
    CommentProfile,
    ReviewContext,
    build_comment_profiles,
    is_ci_bot_comment,
)
from .errors import InputValidationError
from .models import (
    EVENT_TYPE_PRIORITY,
    Actor,
    ActorRole,
    AwardEmoji,
    Commit,
    CommentBreakdown,
    CycleTimeMetrics,
    EmojiReaction,
    EventDetails,
    EventType,
    KeyState,
    MergeRequest,
    MREvent,
    MRRecords,
    MRSummary,
    MRTimeline,
    Note,
    Phase,
    Pipeline,
    TimeSegment,
    User,
)
from .phases import BOUNDARY_CLAMPED, cycle_time_seconds, segment

logger = logging.getLogger(__name__)

# Clock skew allowed between commit author dates and MR creation.
COMMIT_CLOCK_TOLERANCE = timedelta(seconds=5)
MAX_MESSAGE_LENGTH = 100
SEGMENT_PERCENTAGE_TOLERANCE = 1.0

APPROVED_NOTE = "approved this merge request"
READY_MARKERS = ("marked as ready", "marked this merge request as ready")
DRAFT_MARKERS = ("marked as draft", "marked this merge request as draft", "marked as a draft")

BRANCH_AFTER_MR_CREATED = "branch_created_after_mr_created"
COMMIT_AFTER_MERGE = "commit_after_merge"
CODING_TIME_CLAMPED = "coding_time_clamped"
MERGE_TIME_CLAMPED = "merge_time_clamped"

PIPELINE_USER = User(id=0, username="gitlab-ci", name="GitLab CI")

_KEY_STATE_EVENTS: Dict[EventType, KeyState] = {
    EventType.MR_CREATED: KeyState.MR_CREATED,
    EventType.MARKED_AS_READY: KeyState.MARKED_AS_READY,
    EventType.COMMIT_PUSHED: KeyState.FIRST_COMMIT,
    EventType.AI_REVIEW_STARTED: KeyState.FIRST_AI_REVIEW,
    EventType.HUMAN_REVIEW_STARTED: KeyState.FIRST_HUMAN_REVIEW,
    EventType.APPROVED: KeyState.APPROVED,
    EventType.MERGED: KeyState.MERGED,
}

# Key states that keep the first occurrence; the others keep the latest one.
_FIRST_OCCURRENCE_STATES = {
    KeyState.FIRST_COMMIT,
    KeyState.FIRST_AI_REVIEW,
    KeyState.FIRST_HUMAN_REVIEW,
}

_REVIEW_EVENTS = (EventType.AI_REVIEW_STARTED, EventType.HUMAN_REVIEW_STARTED)


@dataclass(frozen=True)
class _PendingEvent:
    timestamp: datetime
    actor: Actor
    event_type: EventType
    details: EventDetails
    flags: Tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _require_aware(value: object, what: str) -> None:
    if not isinstance(value, datetime):
        raise InputValidationError(f"{what} must be a datetime, got {type(value).__name__}.")
    if value.tzinfo is None or value.utcoffset() is None:
        raise InputValidationError(f"{what} must be timezone-aware: {value.isoformat()}.")


def _require_id(value: object, what: str) -> None:
    if value is None or value == "" or isinstance(value, bool):
        raise InputValidationError(f"{what} is missing.")


def validate_records(records: MRRecords) -> None:
    """Check raw records for missing ids and naive or malformed timestamps.

    Raises:
        InputValidationError: On the first invalid field found.
    """
    mr = records.merge_request
    _require_id(mr.iid, "Merge request iid")
    _require_id(mr.author.id, "Merge request author id")
    _require_aware(mr.created_at, f"MR !{mr.iid} created_at")
    if mr.merged_at is not None:
        _require_aware(mr.merged_at, f"MR !{mr.iid} merged_at")

    for commit in records.commits:
        _require_id(commit.id, "Commit id")
        _require_aware(commit.authored_date, f"Commit {commit.id} authored_date")

    for note in records.notes:
        _require_id(note.id, "Note id")
        _require_aware(note.created_at, f"Note {note.id} created_at")

    for pipeline in records.pipelines:
        _require_id(pipeline.id, "Pipeline id")
        _require_aware(pipeline.created_at, f"Pipeline {pipeline.id} created_at")
        if pipeline.finished_at is not None:
            _require_aware(pipeline.finished_at, f"Pipeline {pipeline.id} finished_at")

    for emoji in records.emojis:
        _require_aware(emoji.created_at, f"Award emoji on note {emoji.target_note_id} created_at")


# ---------------------------------------------------------------------------
# Event construction
# ---------------------------------------------------------------------------


class _EventFactory:
    """Creates actors and pending events for one merge request."""

    def __init__(
        self,
        mr: MergeRequest,
        classifier: ActorClassifier,
        profiles: Dict[str, CommentProfile],
    ) -> None:
        self._mr = mr
        self._classifier = classifier
        self._profiles = profiles

    def is_ai_bot(self, username: str) -> bool:
        profile = self._profiles.get(username)
        if profile is None:
            return self._classifier.is_ai_bot(username)
        return self._classifier.is_ai_bot(username, profile.average_length, profile.samples)

    def actor(self, user: User, role: ActorRole) -> Actor:
        return Actor(
            id=user.id,
            username=user.username,
            display_name=user.name,
            role=role,
            is_ai_bot=self.is_ai_bot(user.username),
        )

    def context(
        self,
        user: User,
        event_time: datetime,
        reference_time: datetime,
        has_earlier_ai_review: bool,
        is_burst_review: bool,
    ) -> ReviewContext:
        profile = self._profiles.get(user.username)
        return ReviewContext(
            is_author=user.id == self._mr.author.id,
            event_time=event_time,
            reference_time=reference_time,
            has_earlier_ai_review=has_earlier_ai_review,
            is_burst_review=is_burst_review,
            average_comment_length=profile.average_length if profile else None,
            sample_comments=profile.samples if profile else (),
        )


def _commit_user(commit: Commit, author: User) -> User:
    """Map a commit to the MR author when the e-mail local part matches the username."""
    local_part = (commit.author_email or "").lower().split("@")[0]
    if local_part and local_part == author.username.lower():
        return author
    name = commit.author_name or "unknown"
    return User(id=-1, username=name, name=commit.author_name or "Unknown")


def _reactions_by_note(emojis: Iterable[AwardEmoji]) -> Dict[int, Tuple[EmojiReaction, ...]]:
    grouped: Dict[int, List[AwardEmoji]] = {}
    for emoji in emojis:
        grouped.setdefault(emoji.target_note_id, []).append(emoji)
    return {
        note_id: tuple(
            EmojiReaction(
                emoji=item.name,
                username=item.user.username,
                name=item.user.name,
                created_at=item.created_at,
            )
            for item in sorted(items, key=lambda item: (item.created_at, item.name, item.user.username))
        )
        for note_id, items in grouped.items()
    }


def _commit_events(
    mr: MergeRequest,
    commits: Sequence[Commit],
    factory: _EventFactory,
) -> List[_PendingEvent]:
    if not commits:
        return []

    pending: List[_PendingEvent] = []
    earliest = min(commits, key=lambda commit: (commit.authored_date, commit.id))
    flags: Tuple[str, ...] = ()
    if earliest.authored_date > mr.created_at + COMMIT_CLOCK_TOLERANCE:
        flags = (BRANCH_AFTER_MR_CREATED,)
    pending.append(
        _PendingEvent(
            timestamp=earliest.authored_date,
            actor=factory.actor(_commit_user(earliest, mr.author), ActorRole.AUTHOR),
            event_type=EventType.BRANCH_CREATED,
            details=EventDetails(branch_name=mr.source_branch or "unknown"),
            flags=flags,
        )
    )

    for commit in commits:
        if commit.authored_date + COMMIT_CLOCK_TOLERANCE < mr.created_at:
            event_type = EventType.CODE_COMMITTED
        else:
            event_type = EventType.COMMIT_PUSHED
        commit_flags: Tuple[str, ...] = ()
        if mr.merged_at is not None and commit.authored_date > mr.merged_at:
            commit_flags = (COMMIT_AFTER_MERGE,)
            logger.debug(
                "Commit authored after merge",
                extra={"iid": mr.iid, "commit": commit.id},
            )
        pending.append(
            _PendingEvent(
                timestamp=commit.authored_date,
                actor=factory.actor(_commit_user(commit, mr.author), ActorRole.AUTHOR),
                event_type=event_type,
                details=EventDetails(commit_sha=commit.id, message=commit.title[:MAX_MESSAGE_LENGTH] or None),
                flags=commit_flags,
            )
        )
    return pending


def _system_note_event(note: Note, factory: _EventFactory) -> Optional[_PendingEvent]:
    if note.body.strip() == APPROVED_NOTE:
        role = ActorRole.AI_REVIEWER if factory.is_ai_bot(note.author.username) else ActorRole.HUMAN_REVIEWER
        return _PendingEvent(
            timestamp=note.created_at,
            actor=factory.actor(note.author, role),
            event_type=EventType.APPROVED,
            details=EventDetails(note_id=note.id),
        )

    cleaned = note.body.replace("**", "").lower()
    if any(marker in cleaned for marker in READY_MARKERS):
        event_type = EventType.MARKED_AS_READY
    elif any(marker in cleaned for marker in DRAFT_MARKERS):
        event_type = EventType.MARKED_AS_DRAFT
    else:
        return None

    return _PendingEvent(
        timestamp=note.created_at,
        actor=factory.actor(note.author, ActorRole.AUTHOR),
        event_type=event_type,
        details=EventDetails(note_id=note.id),
    )


def _latest_commit_at_or_before(commit_times: Sequence[datetime], moment: datetime) -> Optional[datetime]:
    candidates = [timestamp for timestamp in commit_times if timestamp <= moment]
    return max(candidates) if candidates else None


def _note_events(
    mr: MergeRequest,
    notes: Sequence[Note],
    commits: Sequence[Commit],
    emojis: Sequence[AwardEmoji],
    classifier: ActorClassifier,
    factory: _EventFactory,
) -> List[_PendingEvent]:
    pending: List[_PendingEvent] = []
    burst_ids = classifier.detect_review_bursts(notes)
    reactions = _reactions_by_note(emojis)
    commit_times = sorted(commit.authored_date for commit in commits)
    first_ai_review: Optional[datetime] = None

    # Earlier-review checks rely on chronological processing.
    for note in sorted(notes, key=lambda item: (item.created_at, item.id)):
        if note.is_system:
            event = _system_note_event(note, factory)
            if event is not None:
                pending.append(event)
            continue

        reference = mr.created_at
        latest_commit = _latest_commit_at_or_before(commit_times, note.created_at)
        if latest_commit is not None and latest_commit > reference:
            reference = latest_commit

        context = factory.context(
            note.author,
            event_time=note.created_at,
            reference_time=reference,
            has_earlier_ai_review=first_ai_review is not None and first_ai_review < note.created_at,
            is_burst_review=note.id in burst_ids,
        )
        role = classifier.classify(note.author, context)

        if is_ci_bot_comment(note.body) or role is ActorRole.CI_BOT:
            event_type = EventType.CI_BOT_RESPONSE
            role = ActorRole.CI_BOT
        elif role is ActorRole.AI_REVIEWER:
            event_type = EventType.AI_REVIEW_STARTED
            if first_ai_review is None and not classifier.is_hybrid_reviewer(note.author.username):
                first_ai_review = note.created_at
        elif role is ActorRole.AUTHOR:
            event_type = EventType.AUTHOR_RESPONSE
        else:
            event_type = EventType.HUMAN_REVIEW_STARTED

        pending.append(
            _PendingEvent(
                timestamp=note.created_at,
                actor=factory.actor(note.author, role),
                event_type=event_type,
                details=EventDetails(
                    note_id=note.id if note.id > 0 else None,
                    message=note.body[:MAX_MESSAGE_LENGTH],
                    emoji_reactions=reactions.get(note.id, ()),
                ),
            )
        )
    return pending


def _pipeline_events(pipelines: Sequence[Pipeline], factory: _EventFactory) -> List[_PendingEvent]:
    pending: List[_PendingEvent] = []
    for pipeline in pipelines:
        if pipeline.status == "success":
            event_type = EventType.PIPELINE_SUCCESS
        elif pipeline.status == "failed":
            event_type = EventType.PIPELINE_FAILED
        else:
            continue
        pending.append(
            _PendingEvent(
                timestamp=pipeline.finished_at or pipeline.created_at,
                actor=factory.actor(PIPELINE_USER, ActorRole.CI_BOT),
                event_type=event_type,
                details=EventDetails(pipeline_id=pipeline.id, message=f"Pipeline #{pipeline.id}"),
            )
        )
    return pending


def _finalize(pending: Sequence[_PendingEvent]) -> Tuple[MREvent, ...]:
    """Sort, de-duplicate, renumber and attach intervals."""
    ordered = sorted(
        pending,
        key=lambda item: (item.timestamp, EVENT_TYPE_PRIORITY[item.event_type]),
    )

    seen: Set[Tuple[datetime, EventType, int]] = set()
    unique: List[_PendingEvent] = []
    for item in ordered:
        key = (item.timestamp, item.event_type, item.actor.id)
        if key in seen:
            continue
        seen.add(key)
        unique.append(item)

    events: List[MREvent] = []
    for index, item in enumerate(unique):
        interval: Optional[int] = None
        if index + 1 < len(unique):
            interval = int(round((unique[index + 1].timestamp - item.timestamp).total_seconds()))
        events.append(
            MREvent(
                sequence=index + 1,
                timestamp=item.timestamp,
                actor=item.actor,
                event_type=item.event_type,
                details=item.details,
                interval_to_next_seconds=interval,
                data_quality_flags=item.flags,
            )
        )
    return tuple(events)


def build_events(
    mr: MergeRequest,
    commits: Sequence[Commit],
    notes: Sequence[Note],
    pipelines: Sequence[Pipeline],
    emojis: Sequence[AwardEmoji],
    classifier: Optional[ActorClassifier] = None,
) -> Tuple[MREvent, ...]:
    """Turn raw merge request records into ordered, numbered timeline events.

    Args:
        mr: Merge request metadata.
        commits: Commits of the merge request in any order.
        notes: Notes (comments and system notes) in any order.
        pipelines: Pipelines run for the merge request.
        emojis: Award emoji placed on notes.
        classifier: Actor classifier; an unconfigured one is used when omitted.

    Returns:
        Events sorted by timestamp and type priority, duplicates removed and
        sequences numbered from 1.
    """
    classifier = classifier or ActorClassifier()
    profiles = build_comment_profiles(notes)
    factory = _EventFactory(mr, classifier, profiles)

    pending: List[_PendingEvent] = []
    pending.extend(_commit_events(mr, commits, factory))
    pending.append(
        _PendingEvent(
            timestamp=mr.created_at,
            actor=factory.actor(mr.author, ActorRole.AUTHOR),
            event_type=EventType.MR_CREATED,
            details=EventDetails(branch_name=mr.source_branch or None),
        )
    )
    pending.extend(_note_events(mr, notes, commits, emojis, classifier, factory))
    pending.extend(_pipeline_events(pipelines, factory))
    if mr.merged_at is not None:
        pending.append(
            _PendingEvent(
                timestamp=mr.merged_at,
                actor=factory.actor(mr.merged_by or mr.author, ActorRole.AUTHOR),
                event_type=EventType.MERGED,
                details=EventDetails(branch_name=mr.target_branch or None),
            )
        )

    events = _finalize(pending)
    logger.debug(
        "Built merge request events",
        extra={"iid": mr.iid, "raw_events": len(pending), "events": len(events)},
    )
    return events


# ---------------------------------------------------------------------------
# Key-state segments and summary
# ---------------------------------------------------------------------------


def _key_state_events(events: Sequence[MREvent]) -> Dict[KeyState, MREvent]:
    states: Dict[KeyState, MREvent] = {}
    for event in events:
        state = _KEY_STATE_EVENTS.get(event.event_type)
        if state is None:
            continue
        if state in _FIRST_OCCURRENCE_STATES and state in states:
            continue
        states[state] = event
    return states


def build_segments(events: Sequence[MREvent], total_seconds: int) -> Tuple[TimeSegment, ...]:
    """Build time segments between key lifecycle states in chronological order.

    Unmerged merge requests get a final segment up to the last event, labelled
    ``Current``. Percentages are relative to ``total_seconds`` and rescaled
    when they drift more than one point away from 100.
    """
    if not events or total_seconds <= 0:
        return ()

    states = _key_state_events(events)
    occurred = sorted(states.items(), key=lambda item: (item[1].timestamp, item[1].sequence))

    raw: List[Tuple[KeyState, KeyState, MREvent, MREvent, int]] = []
    for (from_state, from_event), (to_state, to_event) in zip(occurred, occurred[1:]):
        duration = int(round((to_event.timestamp - from_event.timestamp).total_seconds()))
        raw.append((from_state, to_state, from_event, to_event, max(duration, 0)))

    last_event = events[-1]
    if KeyState.MERGED not in states and occurred:
        last_state, last_state_event = occurred[-1]
        if last_state_event.timestamp != last_event.timestamp:
            duration = int(round((last_event.timestamp - last_state_event.timestamp).total_seconds()))
            raw.append((last_state, KeyState.CURRENT, last_state_event, last_event, max(duration, 0)))

    percentages = [duration / total_seconds * 100 for *_, duration in raw]
    total_percentage = sum(percentages)
    if total_percentage > 0 and abs(total_percentage - 100) > SEGMENT_PERCENTAGE_TOLERANCE:
        factor = 100 / total_percentage
        percentages = [value * factor for value in percentages]

    return tuple(
        TimeSegment(
            from_state=from_state,
            to_state=to_state,
            from_event=from_event,
            to_event=to_event,
            duration_seconds=duration,
            percentage=round(percentage, 1),
        )
        for (from_state, to_state, from_event, to_event, duration), percentage in zip(raw, percentages)
    )


def _dedupe_actors(actors: Iterable[Actor]) -> Tuple[Actor, ...]:
    seen: Dict[int, Actor] = {}
    for actor in actors:
        seen.setdefault(actor.id, actor)
    return tuple(seen.values())


def build_summary(events: Sequence[MREvent], author_id: int) -> MRSummary:
    """Count merge request activity.

    Review events after the approval (or, without approval, the merge) are
    left out of the counts; they do not represent review work.
    """
    cutoff_event = next((event for event in events if event.event_type is EventType.APPROVED), None)
    if cutoff_event is None:
        cutoff_event = next((event for event in events if event.event_type is EventType.MERGED), None)
    cutoff = cutoff_event.timestamp if cutoff_event is not None else None

    commits = ai_reviews = human_comments = system_events = 0
    human_review_comments = author_responses = ci_bot_comments = 0

    for event in events:
        if event.event_type in _REVIEW_EVENTS and cutoff is not None and event.timestamp > cutoff:
            continue
        if event.event_type in (EventType.CODE_COMMITTED, EventType.COMMIT_PUSHED):
            commits += 1
        elif event.event_type is EventType.AI_REVIEW_STARTED:
            ai_reviews += 1
        elif event.event_type is EventType.HUMAN_REVIEW_STARTED:
            human_comments += 1
            human_review_comments += 1
        elif event.event_type is EventType.AUTHOR_RESPONSE:
            human_comments += 1
            author_responses += 1
        elif event.event_type is EventType.CI_BOT_RESPONSE:
            ci_bot_comments += 1
        elif event.event_type in (EventType.PIPELINE_SUCCESS, EventType.PIPELINE_FAILED):
            system_events += 1

    contributors = _dedupe_actors(event.actor for event in events)
    reviewers = tuple(
        actor
        for actor in contributors
        if actor.role in (ActorRole.HUMAN_REVIEWER, ActorRole.AI_REVIEWER) and actor.id != author_id
    )

    return MRSummary(
        commits=commits,
        ai_reviews=ai_reviews,
        human_comments=human_comments,
        system_events=system_events,
        total_events=len(events),
        contributors=contributors,
        reviewers=reviewers,
        comment_breakdown=CommentBreakdown(
            human_review_comments=human_review_comments,
            ai_comments=ai_reviews,
            author_responses=author_responses,
            ci_bot_comments=ci_bot_comments,
        ),
    )


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------


def build_timeline(records: MRRecords, classifier: Optional[ActorClassifier] = None) -> MRTimeline:
    """Analyze one merge request end to end.

    Raises:
        InputValidationError: If the records carry naive timestamps or missing ids.
    """
    validate_records(records)
    classifier = classifier or ActorClassifier()
    mr = records.merge_request

    events = build_events(
        mr,
        records.commits,
        records.notes,
        records.pipelines,
        records.emojis,
        classifier,
    )
    phase_segments = segment(events)
    total_seconds = cycle_time_seconds(events)

    flags: List[str] = []
    for event in events:
        flags.extend(event.data_quality_flags)
    for phase_segment in phase_segments:
        if BOUNDARY_CLAMPED in phase_segment.data_quality_flags:
            if phase_segment.phase is Phase.DEV:
                flags.append(CODING_TIME_CLAMPED)
            elif phase_segment.phase is Phase.MERGE:
                flags.append(MERGE_TIME_CLAMPED)
            else:
                flags.append(BOUNDARY_CLAMPED)

    author_profile = build_comment_profiles(records.notes).get(mr.author.username)
    author = Actor(
        id=mr.author.id,
        username=mr.author.username,
        display_name=mr.author.name,
        role=ActorRole.AUTHOR,
        is_ai_bot=classifier.is_ai_bot(
            mr.author.username,
            author_profile.average_length if author_profile else None,
            author_profile.samples if author_profile else (),
        ),
    )

    return MRTimeline(
        merge_request=mr,
        author=author,
        events=events,
        segments=build_segments(events, total_seconds),
        phase_segments=phase_segments,
        summary=build_summary(events, mr.author.id),
        cycle_time_seconds=total_seconds,
        data_quality_flags=tuple(dict.fromkeys(flags)),
    )


def _hours(seconds: int) -> float:
    return seconds / 3600


def to_cycle_time_metrics(timeline: MRTimeline) -> CycleTimeMetrics:
    """Reduce a timeline to per-stage hours for statistics.

    Pickup and review are ``None`` when nobody reviewed the merge request, and
    merge is ``None`` when it was never approved and merged.
    """
    dev = timeline.phase(Phase.DEV)
    wait = timeline.phase(Phase.WAIT)
    review = timeline.phase(Phase.REVIEW)
    merge = timeline.phase(Phase.MERGE)
    mr = timeline.merge_request

    return CycleTimeMetrics(
        iid=mr.iid,
        title=mr.title,
        author=mr.author.username,
        web_url=mr.web_url,
        created_at=mr.created_at,
        merged_at=mr.merged_at,
        coding_hours=_hours(dev.duration_seconds),
        pickup_hours=_hours(wait.duration_seconds) if review.is_available else None,
        review_hours=_hours(review.duration_seconds) if review.is_available else None,
        merge_hours=_hours(merge.duration_seconds) if merge.is_available else None,
        total_hours=_hours(timeline.cycle_time_seconds),
        data_quality_flags=timeline.data_quality_flags,
    )
