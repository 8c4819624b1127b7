"""Tests for configuration loading and validation."""

import json
import sys
from pathlib import Path

import pytest

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mr_timeline.config import (
    DEFAULT_AI_RESPONSE_THRESHOLD_SECONDS,
    AnalysisConfig,
    HybridReviewerConfig,
    build_analysis_config,
    load_config,
    load_hybrid_reviewers,
    parse_hybrid_reviewer,
)
from mr_timeline.errors import AuthenticationError, ConfigurationError


def test_load_config_reads_token_and_normalizes_url(monkeypatch):
    """Verify the token comes from the environment and the URL loses its trailing slash."""
    monkeypatch.setenv("GITLAB_TOKEN", " glpat-123 ")

    config = load_config(gitlab_url="https://gitlab.example.com/", project="group/app")

    assert config.gitlab_url == "https://gitlab.example.com"
    assert config.project == "group/app"
    assert config.token == "glpat-123"
    assert config.analysis == AnalysisConfig()


def test_load_config_missing_token_raises_authentication_error(monkeypatch):
    """Verify a missing token is reported as an authentication problem."""
    monkeypatch.delenv("GITLAB_TOKEN", raising=False)

    with pytest.raises(AuthenticationError):
        load_config(gitlab_url="https://gitlab.example.com", project="group/app")


@pytest.mark.parametrize(
    "gitlab_url, project",
    [("gitlab.example.com", "group/app"), ("https://gitlab.example.com", "  ")],
)
def test_load_config_rejects_invalid_url_or_project(monkeypatch, gitlab_url, project):
    """Verify malformed URLs and blank projects are configuration errors."""
    monkeypatch.setenv("GITLAB_TOKEN", "glpat-123")

    with pytest.raises(ConfigurationError):
        load_config(gitlab_url=gitlab_url, project=project)


def test_build_analysis_config_deduplicates_bot_names():
    """Verify configured bot usernames are trimmed and deduplicated in order."""
    analysis = build_analysis_config(ai_bot_usernames=["review-bot", " review-bot ", "", "helper"])

    assert analysis.ai_bot_usernames == ("review-bot", "helper")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"batch_size": 0},
        {"max_batch_items": -1},
        {"max_periods": 0},
        {"trend_granularity": "daily"},
        {"hybrid_reviewers": [HybridReviewerConfig("dana"), HybridReviewerConfig("dana")]},
    ],
)
def test_build_analysis_config_rejects_invalid_values(kwargs):
    """Verify invalid analysis settings raise ConfigurationError."""
    with pytest.raises(ConfigurationError):
        build_analysis_config(**kwargs)


def test_parse_hybrid_reviewer_reads_camel_case_fields():
    """Verify hybrid reviewer JSON objects map onto the typed config."""
    reviewer = parse_hybrid_reviewer(
        {
            "username": "dana",
            "timeThresholdSeconds": 300,
            "treatAsHumanIfOtherAIReviewExists": True,
            "burstDetection": {"minReviewCount": 3, "timeWindowSeconds": 120},
            "description": "Uses an assistant for first passes",
        }
    )

    assert reviewer.username == "dana"
    assert reviewer.time_threshold_seconds == 300
    assert reviewer.treat_as_human_if_other_ai_review_exists is True
    assert reviewer.burst_detection.min_review_count == 3
    assert reviewer.burst_detection.time_window_seconds == 120


def test_parse_hybrid_reviewer_defaults():
    """Verify omitted optional fields fall back to defaults."""
    reviewer = parse_hybrid_reviewer({"username": "dana"})

    assert reviewer.time_threshold_seconds == DEFAULT_AI_RESPONSE_THRESHOLD_SECONDS
    assert reviewer.treat_as_human_if_other_ai_review_exists is False
    assert reviewer.burst_detection is None


@pytest.mark.parametrize(
    "item",
    [
        {},
        {"username": "dana", "timeThresholdSeconds": -5},
        {"username": "dana", "burstDetection": {"minReviewCount": 3}},
        {"username": "dana", "burstDetection": {"minReviewCount": 1, "timeWindowSeconds": 60}},
    ],
)
def test_parse_hybrid_reviewer_rejects_invalid_entries(item):
    """Verify incomplete or out-of-range reviewer entries are rejected."""
    with pytest.raises(ConfigurationError):
        parse_hybrid_reviewer(item)


def test_load_hybrid_reviewers_from_file(tmp_path):
    """Verify reviewer settings are loaded from a JSON list file."""
    path = tmp_path / "reviewers.json"
    path.write_text(json.dumps([{"username": "dana"}, {"username": "erin", "timeThresholdSeconds": 60}]))

    reviewers = load_hybrid_reviewers(path)

    assert [reviewer.username for reviewer in reviewers] == ["dana", "erin"]
    assert reviewers[1].time_threshold_seconds == 60


def test_load_hybrid_reviewers_invalid_file(tmp_path):
    """Verify unreadable, malformed and non-list files are configuration errors."""
    not_json = tmp_path / "broken.json"
    not_json.write_text("{not json")
    not_list = tmp_path / "object.json"
    not_list.write_text(json.dumps({"username": "dana"}))

    for path in (tmp_path / "missing.json", not_json, not_list):
        with pytest.raises(ConfigurationError):
            load_hybrid_reviewers(path)
