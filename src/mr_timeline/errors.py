"""Custom exception types for the GitLab MR timeline analyzer."""

from __future__ import annotations

from typing import Optional


class TimelineError(Exception):
    """Base exception for all recoverable timeline analyzer errors."""


class ConfigurationError(TimelineError):
    """Raised when runtime configuration values are missing or invalid."""


class AuthenticationError(TimelineError):
    """Raised when GitLab authentication credentials are unavailable or invalid."""


class ApiError(TimelineError):
    """Raised when a GitLab API request fails or returns an unexpected response."""


class InputValidationError(TimelineError):
    """Raised when raw records or request parameters do not meet expected constraints.

    Covers malformed timestamps and ids, inverted date ranges and batch runs
    that exceed the configured item limit.
    """


class DataUnavailableError(TimelineError):
    """Raised when a statistic is requested over zero valid samples."""

    def __init__(self, message: str, stage: Optional[str] = None) -> None:
        super().__init__(message)
        self.stage = stage


class BatchItemError(TimelineError):
    """Wraps a single per-MR failure with the index and id it originated from."""

    def __init__(self, index: int, item_id: object, error: BaseException) -> None:
        super().__init__(f"Item #{index} ({item_id!r}) failed: {error}")
        self.index = index
        self.item_id = item_id
        self.error = error


class PeriodCountExceededError(TimelineError):
    """Raised when a trend split would produce more periods than allowed."""

    def __init__(self, count: int, limit: int, suggestion: str) -> None:
        super().__init__(
            f"Trend range produces {count} periods, exceeding the limit of {limit}. {suggestion}"
        )
        self.count = count
        self.limit = limit
        self.suggestion = suggestion
