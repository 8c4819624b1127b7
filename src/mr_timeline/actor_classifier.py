"""Actor role classification for merge request events.

Roles are decided per event from the actor's username, the event context and
the injected reviewer configuration:

- CI/system originated events belong to ``CI_BOT``.
- The merge request author is always ``AUTHOR``, even when the account is a bot.
- Configured hybrid reviewers are resolved to AI or human per review using
  burst detection, earlier AI reviews and response time.
- Remaining actors are ``AI_REVIEWER`` when they look like an AI bot, otherwise
  ``HUMAN_REVIEWER``.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Iterable, List, Optional, Pattern, Sequence, Tuple

from .config import AnalysisConfig, BurstDetectionConfig, HybridReviewerConfig
from .models import ActorRole, Note, User

logger = logging.getLogger(__name__)

CI_BOT_USERNAMES: Tuple[str, ...] = (
    "gitlab ci bot",
    "gitlab-bot",
    "gitlab-ci",
    "jenkins",
    "ci-bot",
    "build bot",
)

AI_BOT_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"(?:^|[-_])bot(?:[-_]|$)", re.IGNORECASE),
    re.compile(r"[-_]ai[-_]", re.IGNORECASE),
    re.compile(r"^ai[-_]", re.IGNORECASE),
    re.compile(r"[-_]ai$", re.IGNORECASE),
    re.compile(r"\bautomated\b", re.IGNORECASE),
    re.compile(r"auto-review", re.IGNORECASE),
    re.compile(r"code-review-bot", re.IGNORECASE),
    re.compile(r"coderabbit", re.IGNORECASE),
    re.compile(r"copilot", re.IGNORECASE),
    re.compile(r"dependabot", re.IGNORECASE),
    re.compile(r"renovate", re.IGNORECASE),
)

AI_COMMENT_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"^\s*📋\s*Code\s+Review", re.MULTILINE),
    re.compile(r"^\s*##\s+", re.MULTILINE),
    re.compile(r"\|\s*\*\*.*\*\*\s*\|", re.MULTILINE),
    re.compile(r"📁|🟡|🟢|💡|⚠️|🐛|🔧|🎨"),
)

CI_COMMENT_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"\*\*Jenkins says:\*\*", re.IGNORECASE),
    re.compile(r"CI (started|passed|failed)", re.IGNORECASE),
    re.compile(r"Build number \d+", re.IGNORECASE),
    re.compile(r"LGTM\s*:[+\-]1:"),
    re.compile(r"\[Build\s+#\d+\]", re.IGNORECASE),
    re.compile(r"Pipeline\s+#\d+", re.IGNORECASE),
    re.compile(r"pipeline\s+(passed|failed|succeeded|running)", re.IGNORECASE),
    re.compile(r"Coverage:\s+\d+", re.IGNORECASE),
    re.compile(r"successfully deployed", re.IGNORECASE),
    re.compile(r"\bCI/CD\b", re.IGNORECASE),
    re.compile(r"^added\s+\d+\s+commit", re.IGNORECASE),
    re.compile(r"^Pipeline for \w+", re.IGNORECASE),
)

COMMENT_LENGTH_THRESHOLD = 300
AI_PATTERN_RATIO_THRESHOLD = 0.5
MAX_SAMPLE_COMMENTS = 5


@dataclass(frozen=True)
class ReviewContext:
    """Facts about a single event needed to classify its actor."""

    is_author: bool = False
    is_system: bool = False
    event_time: Optional[datetime] = None
    reference_time: Optional[datetime] = None
    has_earlier_ai_review: bool = False
    is_burst_review: bool = False
    average_comment_length: Optional[float] = None
    sample_comments: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CommentProfile:
    """Aggregated comment data for one username."""

    average_length: float
    samples: Tuple[str, ...]


def is_ci_bot_comment(body: str) -> bool:
    """Return whether a note body looks like an automated CI notification."""
    return any(pattern.search(body) for pattern in CI_COMMENT_PATTERNS)


def build_comment_profiles(notes: Iterable[Note]) -> Dict[str, CommentProfile]:
    """Aggregate average comment length and sample bodies per username."""
    bodies: Dict[str, List[str]] = defaultdict(list)
    for note in notes:
        if note.is_system:
            continue
        bodies[note.author.username].append(note.body)

    return {
        username: CommentProfile(
            average_length=sum(len(body) for body in texts) / len(texts),
            samples=tuple(texts[:MAX_SAMPLE_COMMENTS]),
        )
        for username, texts in bodies.items()
    }


class ActorClassifier:
    """Classifies actors into roles using injected, immutable configuration."""

    def __init__(
        self,
        ai_bot_usernames: Iterable[str] = (),
        hybrid_reviewers: Iterable[HybridReviewerConfig] = (),
    ) -> None:
        self._configured_bots: FrozenSet[str] = frozenset(ai_bot_usernames)
        self._hybrid: Dict[str, HybridReviewerConfig] = {
            reviewer.username: reviewer for reviewer in hybrid_reviewers
        }

    @classmethod
    def from_config(cls, config: AnalysisConfig) -> "ActorClassifier":
        return cls(config.ai_bot_usernames, config.hybrid_reviewers)

    @staticmethod
    def is_ci_bot(username: str) -> bool:
        lowered = username.lower()
        return any(ci_name in lowered for ci_name in CI_BOT_USERNAMES)

    def is_ai_bot(
        self,
        username: str,
        average_comment_length: Optional[float] = None,
        sample_comments: Sequence[str] = (),
    ) -> bool:
        """Detect AI bot accounts.

        CI bots are excluded first because their names often contain ``bot``.
        Then the configured list and username patterns apply. Comment content
        and comment length are only consulted when no explicit bot list is
        configured.
        """
        if self.is_ci_bot(username):
            return False

        if username in self._configured_bots:
            return True

        if any(pattern.search(username) for pattern in AI_BOT_PATTERNS):
            return True

        if self._configured_bots:
            return False

        if sample_comments:
            matching = sum(
                1
                for comment in sample_comments
                if any(pattern.search(comment) for pattern in AI_COMMENT_PATTERNS)
            )
            if matching / len(sample_comments) > AI_PATTERN_RATIO_THRESHOLD:
                return True

        return (
            average_comment_length is not None
            and average_comment_length >= COMMENT_LENGTH_THRESHOLD
        )

    def hybrid_config(self, username: str) -> Optional[HybridReviewerConfig]:
        return self._hybrid.get(username)

    def is_hybrid_reviewer(self, username: str) -> bool:
        return username in self._hybrid

    def should_classify_as_ai_review(
        self,
        username: str,
        response_time_seconds: float,
        has_earlier_ai_review: bool,
        is_burst_review: bool = False,
    ) -> bool:
        """Resolve a hybrid reviewer's review to AI (``True``) or human (``False``).

        A burst always wins. Otherwise an earlier AI review turns this one
        into a human verification when so configured, and finally the response
        time is compared against the reviewer's threshold. Unconfigured
        usernames return ``False`` so callers fall back to the base rule.
        """
        config = self._hybrid.get(username)
        if config is None:
            return False

        if is_burst_review:
            return True

        if config.treat_as_human_if_other_ai_review_exists and has_earlier_ai_review:
            return False

        return response_time_seconds <= config.time_threshold_seconds

    def classify(self, user: Optional[User], context: ReviewContext) -> ActorRole:
        """Assign a role to ``user`` for the event described by ``context``."""
        if user is None or not user.id or context.is_system or self.is_ci_bot(user.username):
            return ActorRole.CI_BOT

        if context.is_author:
            return ActorRole.AUTHOR

        if self.is_hybrid_reviewer(user.username):
            response_time = 0.0
            if context.event_time is not None and context.reference_time is not None:
                response_time = (context.event_time - context.reference_time).total_seconds()
            is_ai = self.should_classify_as_ai_review(
                user.username,
                response_time,
                context.has_earlier_ai_review,
                context.is_burst_review,
            )
            logger.debug(
                "Resolved hybrid reviewer",
                extra={
                    "username": user.username,
                    "response_time_seconds": response_time,
                    "is_burst_review": context.is_burst_review,
                    "has_earlier_ai_review": context.has_earlier_ai_review,
                    "classified_ai": is_ai,
                },
            )
            return ActorRole.AI_REVIEWER if is_ai else ActorRole.HUMAN_REVIEWER

        if self.is_ai_bot(user.username, context.average_comment_length, context.sample_comments):
            return ActorRole.AI_REVIEWER

        return ActorRole.HUMAN_REVIEWER

    def detect_review_bursts(self, notes: Iterable[Note]) -> FrozenSet[int]:
        """Return ids of hybrid-reviewer notes that belong to a review burst.

        A burst is at least ``min_review_count`` non-system notes by the same
        reviewer whose timestamps fit inside ``time_window_seconds`` starting
        at any one of them.
        """
        by_author: Dict[str, Tuple[BurstDetectionConfig, List[Note]]] = {}
        for note in notes:
            if note.is_system:
                continue
            config = self._hybrid.get(note.author.username)
            if config is None or config.burst_detection is None:
                continue
            by_author.setdefault(note.author.username, (config.burst_detection, []))[1].append(note)

        burst_ids = set()
        for burst, author_notes in by_author.values():
            ordered = sorted(author_notes, key=lambda item: (item.created_at, item.id))
            window = timedelta(seconds=burst.time_window_seconds)

            for start_index, start_note in enumerate(ordered):
                window_end = start_note.created_at + window
                in_window = [
                    note.id
                    for note in ordered[start_index:]
                    if note.created_at <= window_end
                ]
                if len(in_window) >= burst.min_review_count:
                    burst_ids.update(in_window)

        return frozenset(burst_ids)
