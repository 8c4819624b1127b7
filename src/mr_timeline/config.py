"""Configuration parsing and validation for the GitLab MR timeline analyzer."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

from .errors import AuthenticationError, ConfigurationError

DEFAULT_AI_RESPONSE_THRESHOLD_SECONDS = 480
DEFAULT_BATCH_SIZE = 10
DEFAULT_MAX_BATCH_ITEMS = 200
DEFAULT_MAX_PERIODS = 12
DEFAULT_MIN_CONFIDENT_SAMPLES = 3
DEFAULT_GITLAB_URL = "https://gitlab.com"

TREND_GRANULARITIES = ("weekly", "monthly", "quarterly")


@dataclass(frozen=True)
class BurstDetectionConfig:
    """Rapid consecutive reviews by one actor that indicate automation."""

    min_review_count: int
    time_window_seconds: int


@dataclass(frozen=True)
class HybridReviewerConfig:
    """Reviewer whose comments may be either AI-assisted or manual.

    Reviews answered within ``time_threshold_seconds`` are treated as
    AI-assisted, slower ones as human.
    """

    username: str
    time_threshold_seconds: int = DEFAULT_AI_RESPONSE_THRESHOLD_SECONDS
    treat_as_human_if_other_ai_review_exists: bool = False
    burst_detection: Optional[BurstDetectionConfig] = None
    description: str = ""


@dataclass(frozen=True)
class AnalysisConfig:
    """Read-only settings shared by every analysis in a run."""

    ai_bot_usernames: Tuple[str, ...] = ()
    hybrid_reviewers: Tuple[HybridReviewerConfig, ...] = ()
    batch_size: int = DEFAULT_BATCH_SIZE
    max_batch_items: int = DEFAULT_MAX_BATCH_ITEMS
    trend_granularity: Optional[str] = None
    max_periods: int = DEFAULT_MAX_PERIODS
    min_confident_samples: int = DEFAULT_MIN_CONFIDENT_SAMPLES


@dataclass(frozen=True)
class Config:
    """Validated runtime settings used by the analyzer."""

    gitlab_url: str
    project: str
    token: str
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)


def _require_positive(name: str, value: int) -> int:
    if value <= 0:
        raise ConfigurationError(f"Invalid value for '{name}': expected an integer greater than 0.")
    return value


def build_analysis_config(
    ai_bot_usernames: Iterable[str] = (),
    hybrid_reviewers: Iterable[HybridReviewerConfig] = (),
    batch_size: int = DEFAULT_BATCH_SIZE,
    max_batch_items: int = DEFAULT_MAX_BATCH_ITEMS,
    trend_granularity: Optional[str] = None,
    max_periods: int = DEFAULT_MAX_PERIODS,
    min_confident_samples: int = DEFAULT_MIN_CONFIDENT_SAMPLES,
) -> AnalysisConfig:
    """Validate analysis settings and freeze them into an ``AnalysisConfig``.

    Raises:
        ConfigurationError: If a numeric limit is not positive, the trend
            granularity is unknown, or a hybrid reviewer is configured twice.
    """
    _require_positive("batch_size", batch_size)
    _require_positive("max_batch_items", max_batch_items)
    _require_positive("max_periods", max_periods)
    _require_positive("min_confident_samples", min_confident_samples)

    if trend_granularity is not None and trend_granularity not in TREND_GRANULARITIES:
        raise ConfigurationError(
            f"Invalid trend granularity '{trend_granularity}': expected one of "
            f"{', '.join(TREND_GRANULARITIES)}."
        )

    reviewers = tuple(hybrid_reviewers)
    usernames = [reviewer.username for reviewer in reviewers]
    duplicates = sorted({name for name in usernames if usernames.count(name) > 1})
    if duplicates:
        raise ConfigurationError(f"Hybrid reviewers configured more than once: {', '.join(duplicates)}.")

    bots = tuple(dict.fromkeys(name.strip() for name in ai_bot_usernames if name.strip()))

    return AnalysisConfig(
        ai_bot_usernames=bots,
        hybrid_reviewers=reviewers,
        batch_size=batch_size,
        max_batch_items=max_batch_items,
        trend_granularity=trend_granularity,
        max_periods=max_periods,
        min_confident_samples=min_confident_samples,
    )


def parse_hybrid_reviewer(item: Dict[str, Any]) -> HybridReviewerConfig:
    """Build a ``HybridReviewerConfig`` from one decoded JSON object.

    Raises:
        ConfigurationError: If required fields are missing or invalid.
    """
    username = str(item.get("username") or "").strip()
    if not username:
        raise ConfigurationError("Hybrid reviewer entry is missing 'username'.")

    threshold = item.get("timeThresholdSeconds", DEFAULT_AI_RESPONSE_THRESHOLD_SECONDS)
    if not isinstance(threshold, int) or threshold < 0:
        raise ConfigurationError(
            f"Hybrid reviewer '{username}': 'timeThresholdSeconds' must be a non-negative integer."
        )

    burst: Optional[BurstDetectionConfig] = None
    raw_burst = item.get("burstDetection")
    if raw_burst is not None:
        try:
            burst = BurstDetectionConfig(
                min_review_count=int(raw_burst["minReviewCount"]),
                time_window_seconds=int(raw_burst["timeWindowSeconds"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(
                f"Hybrid reviewer '{username}': 'burstDetection' needs integer "
                "'minReviewCount' and 'timeWindowSeconds'."
            ) from exc
        if burst.min_review_count < 2 or burst.time_window_seconds <= 0:
            raise ConfigurationError(
                f"Hybrid reviewer '{username}': a burst needs at least 2 reviews and a positive window."
            )

    return HybridReviewerConfig(
        username=username,
        time_threshold_seconds=threshold,
        treat_as_human_if_other_ai_review_exists=bool(item.get("treatAsHumanIfOtherAIReviewExists", False)),
        burst_detection=burst,
        description=str(item.get("description") or ""),
    )


def load_hybrid_reviewers(path: Path) -> Tuple[HybridReviewerConfig, ...]:
    """Load hybrid reviewer settings from a JSON file holding a list of objects."""
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigurationError(f"Cannot read hybrid reviewer file '{path}': {exc}") from exc
    except ValueError as exc:
        raise ConfigurationError(f"Hybrid reviewer file '{path}' is not valid JSON.") from exc

    if not isinstance(payload, list):
        raise ConfigurationError(f"Hybrid reviewer file '{path}' must contain a JSON list.")

    return tuple(parse_hybrid_reviewer(item) for item in payload)


def load_config(
    gitlab_url: str,
    project: str,
    analysis: Optional[AnalysisConfig] = None,
) -> Config:
    """Build and validate application configuration.

    Args:
        gitlab_url: Base URL of the GitLab instance.
        project: Numeric project id or URL-encoded ``namespace/project`` path.
        analysis: Validated analysis settings; defaults are used when omitted.

    Returns:
        A validated ``Config`` instance.

    Raises:
        ConfigurationError: If the URL or project is empty.
        AuthenticationError: If ``GITLAB_TOKEN`` is not configured.
    """
    url = gitlab_url.strip().rstrip("/")
    if not url.startswith(("http://", "https://")):
        raise ConfigurationError(f"Invalid GitLab URL '{gitlab_url}': expected an http(s) URL.")

    if not project.strip():
        raise ConfigurationError("Invalid value for 'project': expected a project id or path.")

    token: str = os.getenv("GITLAB_TOKEN", "").strip()
    if not token:
        raise AuthenticationError(
            "Missing required GitLab access token. "
            "Set the 'GITLAB_TOKEN' environment variable before running the analyzer."
        )

    return Config(
        gitlab_url=url,
        project=project.strip(),
        token=token,
        analysis=analysis or AnalysisConfig(),
    )
