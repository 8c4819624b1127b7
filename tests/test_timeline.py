"""Tests for building merge request timelines from raw records."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mr_timeline.actor_classifier import ActorClassifier
from mr_timeline.config import HybridReviewerConfig
from mr_timeline.errors import InputValidationError
from mr_timeline.models import (
    ActorRole,
    AwardEmoji,
    Commit,
    EventType,
    KeyState,
    MergeRequest,
    MRRecords,
    Note,
    Phase,
    Pipeline,
    User,
)
from mr_timeline.timeline import build_events, build_timeline, to_cycle_time_metrics

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)

ALICE = User(id=1, username="alice", name="Alice")
BOB = User(id=2, username="bob", name="Bob")
RABBIT = User(id=3, username="coderabbit", name="CodeRabbit")


def _at(hours: float) -> datetime:
    return T0 + timedelta(hours=hours)


def _mr(created: float = 1, merged=10.0, iid: int = 42) -> MergeRequest:
    return MergeRequest(
        iid=iid,
        project_id=7,
        title="Add timeline",
        is_draft=False,
        author=ALICE,
        created_at=_at(created),
        merged_at=_at(merged) if merged is not None else None,
        source_branch="feature/timeline",
        target_branch="main",
        web_url=f"https://gitlab.example.com/group/project/-/merge_requests/{iid}",
    )


def _commit(sha: str, hours: float, email: str = "alice@example.com") -> Commit:
    return Commit(id=sha, authored_date=_at(hours), author_name="Alice", author_email=email, title=f"commit {sha}")


def _note(note_id: int, author: User, hours: float, body: str, system: bool = False) -> Note:
    return Note(id=note_id, body=body, author=author, created_at=_at(hours), is_system=system)


def _standard_records() -> MRRecords:
    return MRRecords(
        merge_request=_mr(),
        commits=(_commit("c1", 0), _commit("c2", 2)),
        notes=(
            _note(10, BOB, 3, "Please rename this"),
            _note(11, ALICE, 4, "Done"),
            _note(12, BOB, 5, "approved this merge request", system=True),
            _note(13, RABBIT, 1.5, "## Summary\nLooks fine"),
        ),
        pipelines=(
            Pipeline(id=100, status="success", created_at=_at(2), finished_at=_at(2 + 10 / 60)),
            Pipeline(id=101, status="running", created_at=_at(3)),
        ),
        emojis=(AwardEmoji(name="thumbsup", user=ALICE, created_at=_at(3.1), target_note_id=10),),
    )


def test_build_timeline_orders_events_and_numbers_sequences():
    """Verify events are sorted chronologically with sequences numbered from one."""
    timeline = build_timeline(_standard_records())

    assert [event.event_type for event in timeline.events] == [
        EventType.BRANCH_CREATED,
        EventType.CODE_COMMITTED,
        EventType.MR_CREATED,
        EventType.AI_REVIEW_STARTED,
        EventType.COMMIT_PUSHED,
        EventType.PIPELINE_SUCCESS,
        EventType.HUMAN_REVIEW_STARTED,
        EventType.AUTHOR_RESPONSE,
        EventType.APPROVED,
        EventType.MERGED,
    ]
    assert [event.sequence for event in timeline.events] == list(range(1, 11))
    timestamps = [event.timestamp for event in timeline.events]
    assert timestamps == sorted(timestamps)


def test_build_timeline_sets_intervals_between_events():
    """Verify each event carries the seconds until the next one and the last has none."""
    timeline = build_timeline(_standard_records())

    assert timeline.events[0].interval_to_next_seconds == 0
    assert timeline.events[1].interval_to_next_seconds == 3600
    assert timeline.events[-1].interval_to_next_seconds is None


def test_build_timeline_assigns_actor_roles():
    """Verify authors, AI bots, human reviewers and CI are recognised."""
    timeline = build_timeline(_standard_records())
    roles = {event.event_type: event.actor.role for event in timeline.events}

    assert roles[EventType.MR_CREATED] is ActorRole.AUTHOR
    assert roles[EventType.AI_REVIEW_STARTED] is ActorRole.AI_REVIEWER
    assert roles[EventType.HUMAN_REVIEW_STARTED] is ActorRole.HUMAN_REVIEWER
    assert roles[EventType.PIPELINE_SUCCESS] is ActorRole.CI_BOT
    assert timeline.author.username == "alice"


def test_build_timeline_attaches_emoji_reactions_to_review_event():
    """Verify emoji placed on a note end up on the event built from that note."""
    timeline = build_timeline(_standard_records())
    review = next(event for event in timeline.events if event.event_type is EventType.HUMAN_REVIEW_STARTED)

    assert review.details.note_id == 10
    assert [reaction.emoji for reaction in review.details.emoji_reactions] == ["thumbsup"]
    assert review.details.emoji_reactions[0].username == "alice"


def test_build_timeline_phase_durations_and_percentages():
    """Verify the four phases partition the cycle time."""
    timeline = build_timeline(_standard_records())

    assert timeline.cycle_time_seconds == 10 * 3600
    assert [segment.duration_seconds for segment in timeline.phase_segments] == [3600, 1800, 12600, 18000]
    assert [segment.percentage for segment in timeline.phase_segments] == [10.0, 5.0, 35.0, 50.0]
    assert sum(segment.duration_seconds for segment in timeline.phase_segments) == timeline.cycle_time_seconds
    assert all(segment.is_available for segment in timeline.phase_segments)


def test_build_timeline_summary_counts():
    """Verify summary counts commits, reviews, comments and pipelines."""
    summary = build_timeline(_standard_records()).summary

    assert summary.commits == 2
    assert summary.ai_reviews == 1
    assert summary.human_comments == 2
    assert summary.system_events == 1
    assert summary.total_events == 10
    assert summary.comment_breakdown.author_responses == 1
    assert {actor.username for actor in summary.reviewers} == {"bob", "coderabbit"}


def test_build_timeline_summary_excludes_reviews_after_approval():
    """Verify review comments left after approval are not counted as review work."""
    records = _standard_records()
    records = MRRecords(
        merge_request=records.merge_request,
        commits=records.commits,
        notes=records.notes + (_note(14, BOB, 6, "Nit for later"),),
        pipelines=records.pipelines,
    )

    summary = build_timeline(records).summary

    assert summary.human_comments == 2
    assert summary.total_events == 11


def test_build_timeline_key_state_segments_are_chronological():
    """Verify key-state segments follow actual event order and sum to about 100%."""
    timeline = build_timeline(_standard_records())

    assert timeline.segments[0].from_state is KeyState.MR_CREATED
    assert timeline.segments[0].to_state is KeyState.FIRST_AI_REVIEW
    assert timeline.segments[-1].to_state is KeyState.MERGED
    assert sum(segment.percentage for segment in timeline.segments) == pytest.approx(100, abs=0.5)


def test_build_events_without_commits_has_no_branch_created():
    """Verify an empty merge request starts at MR creation."""
    events = build_events(_mr(), (), (), (), ())

    assert [event.event_type for event in events] == [EventType.MR_CREATED, EventType.MERGED]


def test_build_events_commit_within_clock_tolerance_counts_as_pushed():
    """Verify commits authored a few seconds before MR creation are treated as pushed."""
    mr = _mr(created=1)
    commit = Commit(
        id="c1",
        authored_date=_at(1) - timedelta(seconds=3),
        author_name="Alice",
        author_email="alice@example.com",
    )

    events = build_events(mr, (commit,), (), (), ())

    assert EventType.COMMIT_PUSHED in [event.event_type for event in events]
    assert EventType.CODE_COMMITTED not in [event.event_type for event in events]


def test_build_events_matches_commit_author_by_email_local_part():
    """Verify commits are attributed to the MR author only when the e-mail matches."""
    events = build_events(
        _mr(),
        (_commit("c1", 0), _commit("c2", 0.5, email="carol@example.com")),
        (),
        (),
        (),
    )
    committed = [event for event in events if event.event_type is EventType.CODE_COMMITTED]

    assert committed[0].actor.id == ALICE.id
    assert committed[1].actor.id == -1
    assert committed[1].actor.display_name == "Alice"


def test_build_events_recognises_markdown_ready_and_draft_markers():
    """Verify system notes with markdown emphasis are matched as draft transitions."""
    notes = (
        _note(20, ALICE, 1.5, "marked this merge request as **draft**", system=True),
        _note(21, ALICE, 2.5, "marked this merge request as **ready**", system=True),
        _note(22, ALICE, 2.6, "changed the description", system=True),
    )

    events = build_events(_mr(), (), notes, (), ())
    types = [event.event_type for event in events]

    assert EventType.MARKED_AS_DRAFT in types
    assert EventType.MARKED_AS_READY in types
    assert len(events) == 4


def test_build_events_classifies_ci_comments():
    """Verify CI notification bodies become CI bot responses."""
    notes = (_note(30, BOB, 2, "Pipeline #123 passed"),)

    events = build_events(_mr(), (), notes, (), ())
    ci_event = next(event for event in events if event.event_type is EventType.CI_BOT_RESPONSE)

    assert ci_event.actor.role is ActorRole.CI_BOT


def test_build_events_removes_exact_duplicates():
    """Verify events with identical timestamp, type and actor are kept once."""
    notes = (
        _note(40, BOB, 2, "First comment"),
        _note(41, BOB, 2, "Same second"),
    )

    events = build_events(_mr(), (), notes, (), ())

    reviews = [event for event in events if event.event_type is EventType.HUMAN_REVIEW_STARTED]
    assert len(reviews) == 1
    assert [event.sequence for event in events] == list(range(1, len(events) + 1))


def test_build_events_uses_hybrid_reviewer_configuration():
    """Verify a hybrid reviewer is AI when fast and human when slow."""
    classifier = ActorClassifier(hybrid_reviewers=(HybridReviewerConfig(username="bob", time_threshold_seconds=480),))
    notes = (
        _note(50, BOB, 1 + 5 / 60, "Quick check"),
        _note(51, BOB, 4, "Thorough review"),
    )

    events = build_events(_mr(), (), notes, (), (), classifier)
    by_note = {event.details.note_id: event for event in events if event.details.note_id}

    assert by_note[50].event_type is EventType.AI_REVIEW_STARTED
    assert by_note[51].event_type is EventType.HUMAN_REVIEW_STARTED


def test_build_events_hybrid_reference_time_uses_latest_commit():
    """Verify response time is measured from the latest commit pushed before the review."""
    classifier = ActorClassifier(hybrid_reviewers=(HybridReviewerConfig(username="bob", time_threshold_seconds=480),))
    notes = (_note(60, BOB, 5 + 2 / 60, "Looked at the new commit"),)

    events = build_events(_mr(), (_commit("c1", 5),), notes, (), (), classifier)
    review = next(event for event in events if event.details.note_id == 60)

    assert review.event_type is EventType.AI_REVIEW_STARTED


def test_build_timeline_draft_ready_transition_moves_dev_end():
    """Verify development ends at the latest ready marker when no review preceded it."""
    records = MRRecords(
        merge_request=_mr(),
        commits=(_commit("c1", 0),),
        notes=(
            _note(20, ALICE, 2.5, "marked this merge request as ready", system=True),
            _note(21, BOB, 3, "Looks good"),
            _note(22, BOB, 5, "approved this merge request", system=True),
        ),
    )

    timeline = build_timeline(records)

    assert timeline.phase(Phase.DEV).duration_seconds == int(2.5 * 3600)
    assert timeline.phase(Phase.WAIT).duration_seconds == int(0.5 * 3600)


def test_build_timeline_review_before_ready_resets_dev_end_to_creation():
    """Verify a review on a draft MR ends development at MR creation."""
    records = MRRecords(
        merge_request=_mr(),
        commits=(_commit("c1", 0),),
        notes=(
            _note(20, BOB, 1.5, "Early feedback"),
            _note(21, ALICE, 2.5, "marked this merge request as ready", system=True),
        ),
    )

    timeline = build_timeline(records)

    assert timeline.phase(Phase.DEV).duration_seconds == 3600
    assert timeline.phase(Phase.WAIT).duration_seconds == 1800


def test_build_timeline_without_review_marks_review_unavailable():
    """Verify missing reviews give an unavailable review phase with time kept in wait."""
    records = MRRecords(
        merge_request=_mr(),
        commits=(_commit("c1", 0),),
        notes=(_note(22, BOB, 5, "approved this merge request", system=True),),
    )

    timeline = build_timeline(records)
    review = timeline.phase(Phase.REVIEW)

    assert review.is_available is False
    assert review.duration_seconds == 0
    assert timeline.phase(Phase.WAIT).duration_seconds == 4 * 3600
    assert timeline.phase(Phase.MERGE).duration_seconds == 5 * 3600
    assert sum(segment.duration_seconds for segment in timeline.phase_segments) == timeline.cycle_time_seconds


def test_build_timeline_unmerged_mr_ends_at_last_event():
    """Verify an open MR measures cycle time up to its last event."""
    records = MRRecords(
        merge_request=_mr(merged=None),
        commits=(_commit("c1", 0),),
        notes=(_note(21, BOB, 3, "Needs work"),),
    )

    timeline = build_timeline(records)

    assert timeline.cycle_time_seconds == 3 * 3600
    assert timeline.phase(Phase.MERGE).is_available is False
    assert timeline.segments[-1].to_state is KeyState.FIRST_HUMAN_REVIEW


def test_build_timeline_clamps_rewritten_history_instead_of_failing():
    """Verify commits rewritten after the merge yield zeroed durations and flags."""
    records = MRRecords(
        merge_request=_mr(created=1, merged=1.5),
        commits=(_commit("c1", 2),),
    )

    timeline = build_timeline(records)

    assert timeline.cycle_time_seconds == 0
    assert all(segment.duration_seconds >= 0 for segment in timeline.phase_segments)
    assert all(segment.percentage == 0 for segment in timeline.phase_segments)
    assert "coding_time_clamped" in timeline.data_quality_flags
    assert "branch_created_after_mr_created" in timeline.data_quality_flags
    assert "commit_after_merge" in timeline.data_quality_flags
    assert to_cycle_time_metrics(timeline).coding_time_clamped is True


def test_build_timeline_rejects_naive_timestamps():
    """Verify naive datetimes are rejected with InputValidationError."""
    mr = _mr()
    naive = MergeRequest(
        iid=mr.iid,
        project_id=mr.project_id,
        title=mr.title,
        is_draft=False,
        author=ALICE,
        created_at=datetime(2025, 1, 6, 10, 0),
        merged_at=None,
        source_branch="a",
        target_branch="b",
        web_url="",
    )

    with pytest.raises(InputValidationError):
        build_timeline(MRRecords(merge_request=naive))


def test_build_timeline_rejects_missing_note_id():
    """Verify notes without an id are rejected."""
    records = MRRecords(merge_request=_mr(), notes=(Note(id=None, body="x", author=BOB, created_at=_at(2), is_system=False),))

    with pytest.raises(InputValidationError):
        build_timeline(records)


def test_to_cycle_time_metrics_converts_phases_to_hours():
    """Verify stage hours come from the phase durations."""
    metrics = to_cycle_time_metrics(build_timeline(_standard_records()))

    assert metrics.iid == 42
    assert metrics.author == "alice"
    assert metrics.coding_hours == pytest.approx(1.0)
    assert metrics.pickup_hours == pytest.approx(0.5)
    assert metrics.review_hours == pytest.approx(3.5)
    assert metrics.merge_hours == pytest.approx(5.0)
    assert metrics.total_hours == pytest.approx(10.0)
    assert metrics.has_review is True


def test_to_cycle_time_metrics_without_review_leaves_pickup_and_review_empty():
    """Verify unreviewed merge requests have no pickup or review sample."""
    records = MRRecords(
        merge_request=_mr(),
        commits=(_commit("c1", 0),),
        notes=(_note(22, BOB, 5, "approved this merge request", system=True),),
    )

    metrics = to_cycle_time_metrics(build_timeline(records))

    assert metrics.pickup_hours is None
    assert metrics.review_hours is None
    assert metrics.merge_hours == pytest.approx(5.0)
