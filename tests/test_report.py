"""Tests for text and JSON report rendering."""

import json
import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mr_timeline.errors import ApiError, BatchItemError
from mr_timeline.models import (
    BatchResult,
    BatchSuccess,
    CommentBreakdown,
    CycleTimeMetrics,
    MergeRequest,
    MRRecords,
    Note,
    PeriodChange,
    User,
)
from mr_timeline.report import (
    format_batch,
    format_cycle_time,
    format_timeline,
    format_trend,
    render_json,
    to_jsonable,
)
from mr_timeline.stats import analyze_cycle_time
from mr_timeline.timeline import build_timeline
from mr_timeline.trend import analyze_trend, split_periods

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)
ALICE = User(id=1, username="alice", name="Alice")
BOB = User(id=2, username="bob", name="Bob")


def _timeline():
    merge_request = MergeRequest(
        iid=12,
        project_id=7,
        title="Render reports",
        is_draft=False,
        author=ALICE,
        created_at=T0,
        merged_at=T0 + timedelta(hours=6),
        source_branch="feature/report",
        target_branch="main",
        web_url="https://gitlab.example.com/group/app/-/merge_requests/12",
    )
    notes = (
        Note(id=1, body="Nice", author=BOB, created_at=T0 + timedelta(hours=2), is_system=False),
        Note(
            id=2,
            body="approved this merge request",
            author=BOB,
            created_at=T0 + timedelta(hours=3),
            is_system=True,
        ),
    )
    return build_timeline(MRRecords(merge_request=merge_request, notes=notes))


def _sample(iid, total):
    return CycleTimeMetrics(
        iid=iid,
        title=f"MR {iid}",
        author="alice",
        web_url="",
        created_at=T0,
        merged_at=T0 + timedelta(days=iid),
        coding_hours=total / 2,
        pickup_hours=total / 4,
        review_hours=total / 4,
        merge_hours=0.0,
        total_hours=total,
    )


def test_to_jsonable_converts_enums_dates_and_dataclasses():
    """Verify dataclasses, enums and datetimes become plain JSON values."""
    payload = to_jsonable(
        {
            "change": PeriodChange(cycle_time_hours=1.5, percentage=10.0),
            "day": date(2025, 1, 6),
            "breakdown": CommentBreakdown(ai_comments=2),
        }
    )

    assert payload == {
        "change": {"cycle_time_hours": 1.5, "percentage": 10.0},
        "day": "2025-01-06",
        "breakdown": {
            "human_review_comments": 0,
            "ai_comments": 2,
            "author_responses": 0,
            "ci_bot_comments": 0,
        },
    }


def test_render_json_timeline_is_valid_json():
    """Verify a full timeline renders as parseable JSON with enum values."""
    payload = json.loads(render_json(_timeline()))

    assert payload["merge_request"]["iid"] == 12
    assert payload["events"][0]["event_type"] == "MR Created"
    assert payload["events"][0]["timestamp"] == "2025-01-06T09:00:00+00:00"
    assert [item["phase"] for item in payload["phase_segments"]] == ["Dev", "Wait", "Review", "Merge"]


def test_render_json_batch_includes_failures():
    """Verify batch failures are rendered with their index and error details."""
    result = BatchResult(
        successes=[BatchSuccess(index=0, item_id=12, value=_timeline())],
        failures=[BatchItemError(1, 13, ApiError("not found"))],
        total=2,
        processed=2,
    )

    payload = json.loads(render_json(result))

    assert payload["failures"] == [
        {"index": 1, "item_id": 13, "error": "not found", "error_type": "ApiError"}
    ]
    assert payload["successes"][0]["value"]["cycle_time_seconds"] == 6 * 3600


def test_format_timeline_lists_events_and_phases():
    """Verify the text timeline includes header, events and phase rows."""
    output = format_timeline(_timeline())

    assert "MR !12: Render reports" in output
    assert "Cycle time: 06:00:00" in output
    assert "Human Review Started" in output
    assert "Review" in output
    assert "Reviewers: bob" in output


def test_format_batch_lists_failures():
    """Verify the batch table reports counts and failures."""
    result = BatchResult(
        successes=[BatchSuccess(index=0, item_id=12, value=_timeline())],
        failures=[BatchItemError(1, 13, ApiError("not found"))],
        total=2,
        processed=2,
    )

    output = format_batch(result)

    assert "Analyzed 2 of 2 merge requests (1 succeeded, 1 failed)" in output
    assert "!12" in output
    assert "not found" in output


def test_format_cycle_time_marks_bottleneck():
    """Verify the cycle time report names tier and bottleneck."""
    output = format_cycle_time(analyze_cycle_time([_sample(1, 8.0), _sample(2, 12.0)]))

    assert "Cycle time over 2 merged merge requests" in output
    assert "Performance tier: Elite" in output
    assert "Bottleneck: coding" in output
    assert "<- bottleneck" in output


def test_format_trend_flags_low_confidence():
    """Verify trend rows show labels, change and confidence."""
    periods = split_periods(date(2025, 1, 6), date(2025, 1, 19), "weekly")
    trend = analyze_trend([_sample(1, 8.0), _sample(8, 12.0)], periods)

    output = format_trend(trend)

    assert "2025-W02" in output
    assert "2025-W03" in output
    assert "+50.0%" in output
    assert "(low confidence)" in output
