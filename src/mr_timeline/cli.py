"""Command-line argument parsing for the GitLab MR timeline analyzer."""

from __future__ import annotations

import argparse
import os
from datetime import date
from typing import Optional, Sequence

from .config import DEFAULT_BATCH_SIZE, DEFAULT_GITLAB_URL, TREND_GRANULARITIES


def _positive_int(value: str) -> int:
    """Parse and validate a positive integer CLI value.

    Args:
        value: Raw command-line argument value.

    Returns:
        The validated positive integer.

    Raises:
        argparse.ArgumentTypeError: If value is not a positive integer.
    """
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("must be an integer") from exc

    if parsed <= 0:
        raise argparse.ArgumentTypeError("must be greater than 0")

    return parsed


def _iso_date(value: str) -> date:
    """Parse a ``YYYY-MM-DD`` CLI value."""
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("must be a date in YYYY-MM-DD format") from exc


def _common_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--gitlab-url",
        default=os.getenv("GITLAB_URL", DEFAULT_GITLAB_URL),
        help=f"GitLab instance base URL (default: $GITLAB_URL or {DEFAULT_GITLAB_URL}).",
    )
    common.add_argument(
        "--project",
        default=os.getenv("GITLAB_PROJECT"),
        required=os.getenv("GITLAB_PROJECT") is None,
        help="Project id or 'namespace/project' path (default: $GITLAB_PROJECT).",
    )
    common.add_argument(
        "--ai-bot",
        action="append",
        default=[],
        metavar="USERNAME",
        help="Username of an AI review bot (repeatable). Disables content-based detection.",
    )
    common.add_argument(
        "--hybrid-reviewers",
        default=None,
        metavar="PATH",
        help="JSON file listing reviewers who review both with and without AI assistance.",
    )
    common.add_argument(
        "--batch-size",
        type=_positive_int,
        default=DEFAULT_BATCH_SIZE,
        help=f"Maximum number of merge requests fetched concurrently (default: {DEFAULT_BATCH_SIZE}).",
    )
    common.add_argument(
        "--format",
        choices=("text", "json"),
        default="text",
        help="Output format (default: text).",
    )
    common.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    return common


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments for timeline analysis.

    Args:
        argv: Arguments to parse; ``sys.argv[1:]`` when omitted.

    Returns:
        Parsed CLI arguments; ``command`` names the selected subcommand.
    """
    common = _common_options()
    parser = argparse.ArgumentParser(
        prog="gitlab-mr-timeline",
        description=(
            "Analyze GitLab merge request timelines: lifecycle events, phase "
            "durations, cycle time statistics and trends."
        ),
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    timeline = subparsers.add_parser(
        "timeline",
        parents=[common],
        help="Show the event timeline and phase breakdown of one merge request.",
    )
    timeline.add_argument("iid", type=_positive_int, help="Merge request iid.")

    batch = subparsers.add_parser(
        "batch",
        parents=[common],
        help="Compare the phase breakdown of several merge requests.",
    )
    batch.add_argument("iids", type=_positive_int, nargs="+", help="Merge request iids.")
    batch.add_argument(
        "--fail-fast",
        action="store_true",
        help="Stop at the first merge request that cannot be analyzed.",
    )

    cycle_time = subparsers.add_parser(
        "cycle-time",
        parents=[common],
        help="Stage statistics for merge requests merged in a date range.",
    )
    trend = subparsers.add_parser(
        "trend",
        parents=[common],
        help="Cycle time trend per week, month or quarter.",
    )
    for command in (cycle_time, trend):
        command.add_argument("--since", type=_iso_date, required=True, help="First merge date (YYYY-MM-DD).")
        command.add_argument("--until", type=_iso_date, required=True, help="Last merge date (YYYY-MM-DD).")

    trend.add_argument(
        "--granularity",
        choices=TREND_GRANULARITIES,
        default=None,
        help="Period size; picked from the range length when omitted.",
    )

    return parser.parse_args(argv)
