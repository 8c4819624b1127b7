"""GitLab REST API client for merge request timeline data retrieval."""

from __future__ import annotations

import logging
import time
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from .config import Config
from .errors import ApiError, AuthenticationError
from .models import AwardEmoji, Commit, MergeRequest, MRRecords, Note, Pipeline, User

logger = logging.getLogger(__name__)


class GitLabClient:
    """Small, typed client for the GitLab merge request APIs."""

    _PAGE_SIZE = 100
    _MAX_RETRIES = 5
    _MAX_BACKOFF_SECONDS = 30

    def __init__(self, config: Config, timeout_seconds: int = 30) -> None:
        """Initialize an authenticated GitLab API client.

        Args:
            config: Validated runtime configuration including URL, project and token.
            timeout_seconds: Per-request timeout in seconds.
        """
        self._config = config
        self._timeout_seconds = timeout_seconds
        project_ref = quote(config.project, safe="")
        self._base_url = f"{config.gitlab_url}/api/v4/projects/{project_ref}"

        self._session = requests.Session()
        self._session.headers.update(
            {
                "Accept": "application/json",
                "PRIVATE-TOKEN": config.token,
            }
        )

    def _build_url(self, path: str) -> str:
        """Build a fully qualified API URL from a path below the project."""
        return f"{self._base_url}/{path.lstrip('/')}"

    def _format_datetime(self, value: datetime) -> str:
        """Format a datetime as UTC ISO8601 suitable for GitLab query params."""
        utc_value = value.astimezone(timezone.utc)
        return utc_value.isoformat().replace("+00:00", "Z")

    def _parse_datetime(self, value: Optional[str]) -> Optional[datetime]:
        """Parse GitLab ISO8601 timestamps into timezone-aware datetimes."""
        if not value:
            return None

        normalized = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError as exc:
            raise ApiError(f"GitLab API returned a malformed timestamp: {value!r}") from exc
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _require_datetime(self, value: Optional[str], what: str) -> datetime:
        parsed = self._parse_datetime(value)
        if parsed is None:
            raise ApiError(f"GitLab payload is missing required timestamp '{what}'.")
        return parsed

    def _parse_user(self, item: Optional[Dict[str, Any]]) -> User:
        item = item or {}
        return User(
            id=int(item.get("id") or 0),
            username=str(item.get("username") or "unknown"),
            name=str(item.get("name") or item.get("username") or "Unknown"),
        )

    def _extract_backoff_seconds(self, response: requests.Response, attempt: int) -> int:
        """Compute exponential backoff seconds, honoring Retry-After when available."""
        retry_after_header = response.headers.get("Retry-After")
        if retry_after_header:
            try:
                retry_after_seconds = int(retry_after_header)
                return min(self._MAX_BACKOFF_SECONDS, max(1, retry_after_seconds))
            except ValueError:
                pass

        return min(self._MAX_BACKOFF_SECONDS, 2 ** (attempt - 1))

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        """Execute a GET request with retry logic for 429/5xx responses.

        Raises:
            AuthenticationError: If GitLab rejects the token (401/403).
            ApiError: If the request repeatedly fails or returns HTTP >= 400.
        """
        url = self._build_url(path)
        query = dict(params or {})

        last_error: Optional[Exception] = None

        for attempt in range(1, self._MAX_RETRIES + 1):
            try:
                response = self._session.get(url, params=query, timeout=self._timeout_seconds)
            except requests.RequestException as exc:
                last_error = exc
                if attempt == self._MAX_RETRIES:
                    raise ApiError(f"GitLab request failed after retries: GET {url}") from exc
                time.sleep(min(self._MAX_BACKOFF_SECONDS, 2 ** (attempt - 1)))
                continue

            status_code = response.status_code
            is_retryable = status_code == 429 or 500 <= status_code <= 599

            if is_retryable and attempt < self._MAX_RETRIES:
                backoff = self._extract_backoff_seconds(response, attempt)
                logger.debug(
                    "Retrying GitLab request",
                    extra={"url": url, "status_code": status_code, "attempt": attempt, "backoff": backoff},
                )
                time.sleep(backoff)
                continue

            if status_code in (401, 403):
                raise AuthenticationError(
                    f"GitLab rejected the access token: GET {url} returned {status_code}. "
                    "Check that 'GITLAB_TOKEN' is valid and has the read_api scope."
                )

            if status_code >= 400:
                raise ApiError(
                    "GitLab API request failed: "
                    f"GET {url} returned {status_code} - {response.text}"
                )

            return response

        raise ApiError(f"GitLab request failed after retries: GET {url}") from last_error

    def _decode(self, response: requests.Response, path: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise ApiError(f"GitLab API returned invalid JSON: GET {path}") from exc

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Fetch a single JSON object."""
        payload = self._decode(self._get(path, params), path)
        if not isinstance(payload, dict):
            raise ApiError(f"GitLab API returned unexpected payload shape: GET {path}")
        return payload

    def _get_paginated(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Fetch every page of a list endpoint by following ``X-Next-Page``."""
        items: List[Dict[str, Any]] = []
        page: Optional[str] = "1"

        while page:
            query = dict(params or {})
            query.update({"per_page": self._PAGE_SIZE, "page": page})
            response = self._get(path, query)
            payload = self._decode(response, path)
            if not isinstance(payload, list):
                raise ApiError(f"GitLab API returned unexpected payload shape: GET {path}")
            items.extend(payload)
            page = (response.headers.get("X-Next-Page") or "").strip() or None

        return items

    def _to_merge_request(self, item: Dict[str, Any]) -> MergeRequest:
        iid = item.get("iid")
        if iid is None or not item.get("author"):
            raise ApiError(f"GitLab merge request payload is missing required fields: payload={item}")

        return MergeRequest(
            iid=int(iid),
            project_id=int(item.get("project_id") or 0),
            title=str(item.get("title") or ""),
            is_draft=bool(item.get("draft") or item.get("work_in_progress")),
            author=self._parse_user(item.get("author")),
            created_at=self._require_datetime(item.get("created_at"), "created_at"),
            merged_at=self._parse_datetime(item.get("merged_at")),
            source_branch=str(item.get("source_branch") or ""),
            target_branch=str(item.get("target_branch") or ""),
            web_url=str(item.get("web_url") or ""),
            merged_by=self._parse_user(item["merged_by"]) if item.get("merged_by") else None,
        )

    def get_merge_request(self, iid: int) -> MergeRequest:
        """Fetch merge request metadata by project-scoped iid."""
        return self._to_merge_request(self._get_json(f"merge_requests/{iid}"))

    def list_commits(self, iid: int) -> List[Commit]:
        """List the commits of a merge request."""
        commits: List[Commit] = []
        for item in self._get_paginated(f"merge_requests/{iid}/commits"):
            commit_id = item.get("id")
            if not commit_id:
                continue
            commits.append(
                Commit(
                    id=str(commit_id),
                    authored_date=self._require_datetime(
                        item.get("authored_date") or item.get("created_at"), "authored_date"
                    ),
                    author_name=str(item.get("author_name") or ""),
                    author_email=str(item.get("author_email") or ""),
                    title=str(item.get("title") or ""),
                )
            )
        return commits

    def list_notes(self, iid: int) -> List[Note]:
        """List merge request notes, oldest first."""
        notes: List[Note] = []
        params = {"sort": "asc", "order_by": "created_at"}
        for item in self._get_paginated(f"merge_requests/{iid}/notes", params):
            note_id = item.get("id")
            if note_id is None:
                continue
            notes.append(
                Note(
                    id=int(note_id),
                    body=str(item.get("body") or ""),
                    author=self._parse_user(item.get("author")),
                    created_at=self._require_datetime(item.get("created_at"), "created_at"),
                    is_system=bool(item.get("system")),
                )
            )
        notes.sort(key=lambda note: (note.created_at, note.id))
        return notes

    def list_pipelines(self, iid: int) -> List[Pipeline]:
        """List pipelines run for a merge request."""
        pipelines: List[Pipeline] = []
        for item in self._get_paginated(f"merge_requests/{iid}/pipelines"):
            pipeline_id = item.get("id")
            if pipeline_id is None:
                continue
            pipelines.append(
                Pipeline(
                    id=int(pipeline_id),
                    status=str(item.get("status") or ""),
                    created_at=self._require_datetime(item.get("created_at"), "created_at"),
                    finished_at=self._parse_datetime(item.get("finished_at") or item.get("updated_at")),
                )
            )
        return pipelines

    def list_note_award_emoji(self, iid: int, note_id: int) -> List[AwardEmoji]:
        """List emoji reactions placed on one merge request note."""
        emojis: List[AwardEmoji] = []
        for item in self._get_paginated(f"merge_requests/{iid}/notes/{note_id}/award_emoji"):
            emojis.append(
                AwardEmoji(
                    name=str(item.get("name") or ""),
                    user=self._parse_user(item.get("user")),
                    created_at=self._require_datetime(item.get("created_at"), "created_at"),
                    target_note_id=note_id,
                )
            )
        return emojis

    def list_merged_merge_requests(self, since: date, until: date) -> List[MergeRequest]:
        """List merge requests merged between ``since`` and ``until`` (inclusive days, UTC).

        GitLab cannot filter on merge time directly, so merge requests updated
        since ``since`` are fetched and filtered on ``merged_at`` locally.
        """
        start = datetime(since.year, since.month, since.day, tzinfo=timezone.utc)
        params = {
            "state": "merged",
            "updated_after": self._format_datetime(start),
            "order_by": "updated_at",
            "sort": "asc",
        }

        merge_requests: List[MergeRequest] = []
        for item in self._get_paginated("merge_requests", params):
            merge_request = self._to_merge_request(item)
            if merge_request.merged_at is None:
                continue
            merged_on = merge_request.merged_at.astimezone(timezone.utc).date()
            if since <= merged_on <= until:
                merge_requests.append(merge_request)

        merge_requests.sort(key=lambda mr: (mr.merged_at, mr.iid))
        logger.info(
            "Listed merged merge requests",
            extra={"project": self._config.project, "count": len(merge_requests)},
        )
        return merge_requests

    def fetch_records(self, iid: int) -> MRRecords:
        """Fetch every raw record needed to build the timeline of one merge request."""
        merge_request = self.get_merge_request(iid)
        commits = self.list_commits(iid)
        notes = self.list_notes(iid)
        pipelines = self.list_pipelines(iid)

        emojis: List[AwardEmoji] = []
        for note in notes:
            if not note.is_system:
                emojis.extend(self.list_note_award_emoji(iid, note.id))

        logger.info(
            "Fetched merge request records",
            extra={
                "iid": iid,
                "commits": len(commits),
                "notes": len(notes),
                "pipelines": len(pipelines),
                "emojis": len(emojis),
            },
        )
        return MRRecords(
            merge_request=merge_request,
            commits=tuple(commits),
            notes=tuple(notes),
            pipelines=tuple(pipelines),
            emojis=tuple(emojis),
        )
