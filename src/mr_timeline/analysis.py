"""Collection workflows tying the GitLab client to timeline, statistics and trend analysis."""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import List, Optional, Sequence

from .actor_classifier import ActorClassifier
from .batch import ProgressCallback, run_batch
from .config import AnalysisConfig
from .errors import DataUnavailableError
from .gitlab_client import GitLabClient
from .models import BatchResult, CycleTimeAnalysis, CycleTimeMetrics, MRTimeline, TrendPeriod
from .stats import analyze_cycle_time
from .timeline import build_timeline, to_cycle_time_metrics
from .trend import analyze_trend, split_periods

logger = logging.getLogger(__name__)


def analyze_merge_request(
    client: GitLabClient,
    iid: int,
    classifier: ActorClassifier,
) -> MRTimeline:
    """Fetch one merge request and build its timeline."""
    records = client.fetch_records(iid)
    return build_timeline(records, classifier)


async def analyze_many(
    client: GitLabClient,
    iids: Sequence[int],
    analysis: AnalysisConfig,
    error_handling: str = "skip",
    on_progress: Optional[ProgressCallback] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> BatchResult[MRTimeline]:
    """Build timelines for many merge requests with bounded concurrency.

    The blocking HTTP client runs in worker threads; at most
    ``analysis.batch_size`` merge requests are fetched at the same time.
    """
    classifier = ActorClassifier.from_config(analysis)

    async def analyze_one(iid: object) -> MRTimeline:
        return await asyncio.to_thread(analyze_merge_request, client, int(iid), classifier)

    return await run_batch(
        list(iids),
        analyze_one,
        batch_size=analysis.batch_size,
        error_handling=error_handling,
        on_progress=on_progress,
        cancel_event=cancel_event,
        max_items=analysis.max_batch_items,
    )


def collect_cycle_time_samples(
    client: GitLabClient,
    since: date,
    until: date,
    analysis: AnalysisConfig,
) -> List[CycleTimeMetrics]:
    """Build per-MR stage samples for every merge request merged in the range.

    Merge requests that fail to load are logged and left out.
    """
    merge_requests = client.list_merged_merge_requests(since, until)
    if not merge_requests:
        raise DataUnavailableError(
            f"No merge requests were merged between {since.isoformat()} and {until.isoformat()}."
        )

    result = asyncio.run(analyze_many(client, [mr.iid for mr in merge_requests], analysis))
    for failure in result.failures:
        logger.warning(
            "Skipping merge request that could not be analyzed",
            extra={"iid": failure.item_id, "error": str(failure.error)},
        )

    samples = [to_cycle_time_metrics(timeline) for timeline in result.values]
    logger.info(
        "Collected cycle time samples",
        extra={"merged": len(merge_requests), "samples": len(samples), "failed": result.failure_count},
    )
    return samples


def run_cycle_time_analysis(
    client: GitLabClient,
    since: date,
    until: date,
    analysis: AnalysisConfig,
) -> CycleTimeAnalysis:
    """Cycle time statistics for merge requests merged between ``since`` and ``until``."""
    return analyze_cycle_time(collect_cycle_time_samples(client, since, until, analysis))


def run_trend_analysis(
    client: GitLabClient,
    since: date,
    until: date,
    analysis: AnalysisConfig,
) -> List[TrendPeriod]:
    """Per-period cycle time trend between ``since`` and ``until``.

    Periods are validated before any data is fetched.
    """
    periods = split_periods(
        since,
        until,
        granularity=analysis.trend_granularity,
        max_periods=analysis.max_periods,
    )
    samples = collect_cycle_time_samples(client, since, until, analysis)
    return analyze_trend(samples, periods, min_confident_samples=analysis.min_confident_samples)
