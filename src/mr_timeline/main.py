"""Application entry point for the GitLab MR timeline analyzer."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence, Tuple

from .actor_classifier import ActorClassifier
from .analysis import analyze_many, analyze_merge_request, run_cycle_time_analysis, run_trend_analysis
from .cli import parse_args
from .config import (
    AnalysisConfig,
    Config,
    HybridReviewerConfig,
    build_analysis_config,
    load_config,
    load_hybrid_reviewers,
)
from .errors import (
    ApiError,
    AuthenticationError,
    BatchItemError,
    ConfigurationError,
    DataUnavailableError,
    InputValidationError,
    PeriodCountExceededError,
    TimelineError,
)
from .gitlab_client import GitLabClient
from .report import format_batch, format_cycle_time, format_timeline, format_trend, render_json

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_INVALID_INPUT = 2
EXIT_AUTHENTICATION = 3
EXIT_API = 4
EXIT_NO_DATA = 5


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _exit_code_for(error: BaseException) -> int:
    if isinstance(error, BatchItemError):
        return _exit_code_for(error.error)
    if isinstance(error, (ConfigurationError, InputValidationError)):
        return EXIT_INVALID_INPUT
    if isinstance(error, AuthenticationError):
        return EXIT_AUTHENTICATION
    if isinstance(error, ApiError):
        return EXIT_API
    if isinstance(error, (DataUnavailableError, PeriodCountExceededError)):
        return EXIT_NO_DATA
    return EXIT_UNEXPECTED


def _build_config(args: argparse.Namespace) -> Config:
    hybrid_reviewers: Tuple[HybridReviewerConfig, ...] = ()
    if args.hybrid_reviewers:
        hybrid_reviewers = load_hybrid_reviewers(Path(args.hybrid_reviewers))

    analysis = build_analysis_config(
        ai_bot_usernames=args.ai_bot,
        hybrid_reviewers=hybrid_reviewers,
        batch_size=args.batch_size,
        trend_granularity=getattr(args, "granularity", None),
    )
    return load_config(gitlab_url=args.gitlab_url, project=args.project, analysis=analysis)


def _print_progress(processed: int, total: int) -> None:
    print(f"Analyzed {processed}/{total} merge requests...", file=sys.stderr)


def run_command(args: argparse.Namespace, client: GitLabClient, analysis: AnalysisConfig) -> str:
    """Execute the selected subcommand and render its output."""
    as_json = args.format == "json"

    if args.command == "timeline":
        timeline = analyze_merge_request(client, args.iid, ActorClassifier.from_config(analysis))
        return render_json(timeline) if as_json else format_timeline(timeline)

    if args.command == "batch":
        result = asyncio.run(
            analyze_many(
                client,
                args.iids,
                analysis,
                error_handling="throw" if args.fail_fast else "skip",
                on_progress=None if as_json else _print_progress,
            )
        )
        return render_json(result) if as_json else format_batch(result)

    if args.command == "cycle-time":
        cycle_time = run_cycle_time_analysis(client, args.since, args.until, analysis)
        return render_json(cycle_time) if as_json else format_cycle_time(cycle_time)

    if args.command == "trend":
        periods = run_trend_analysis(client, args.since, args.until, analysis)
        return render_json(periods) if as_json else format_trend(periods)

    raise InputValidationError(f"Unknown command '{args.command}'.")


def orchestrate_timeline_analysis(argv: Optional[Sequence[str]] = None) -> int:
    """Run the analyzer and map failures to process exit codes.

    Returns:
        ``0`` on success, ``2`` for invalid configuration or input, ``3`` for
        authentication failures, ``4`` for GitLab API failures, ``5`` when no
        data is available or the trend range is too long, ``1`` otherwise.
    """
    try:
        args = parse_args(argv)
        _configure_logging(args.verbose)
        config = _build_config(args)
        client = GitLabClient(config=config)
        output = run_command(args, client, config.analysis)
    except TimelineError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return _exit_code_for(exc)
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"ERROR: Unexpected failure: {exc}", file=sys.stderr)
        return EXIT_UNEXPECTED

    print(output)
    return EXIT_OK


def main() -> int:
    return orchestrate_timeline_analysis()


if __name__ == "__main__":
    raise SystemExit(main())
