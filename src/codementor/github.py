"""
GitHub REST client used as the remote repository host.

The client is synchronous (built on requests) and is driven from the
async pipeline through worker threads. HTTP failures are mapped onto the
error taxonomy so callers can tell missing content, throttling, denied
access and transient faults apart.
"""

import base64
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol
from urllib.parse import quote

import requests

from .config import Settings
from .errors import (
    AccessDeniedError,
    InvalidInputError,
    NotFoundError,
    RateLimitedError,
    TransientHostError,
)
from .logging import get_logger

logger = get_logger("github")

GOOD_FIRST_ISSUE_LABEL = "good first issue"

_GITHUB_URL = re.compile(
    r"^(?:https?://)?(?:www\.)?github\.com/([A-Za-z0-9_.-]+)/([A-Za-z0-9_.-]+)(?:/.*)?$"
)


def parse_github_url(url: str) -> tuple[str, str]:
    """Split a GitHub repository URL into owner and repository name.

    Args:
        url: URL such as ``https://github.com/owner/repo`` or ``github.com/owner/repo.git``

    Returns:
        Tuple of (owner, repo)

    Raises:
        InvalidInputError: If the URL does not point at a GitHub repository
    """
    if not url or not isinstance(url, str):
        raise InvalidInputError("Repository URL is required")

    match = _GITHUB_URL.match(url.strip().rstrip("/"))
    if not match:
        raise InvalidInputError(f"Invalid GitHub URL: {url}")

    owner, repo = match.group(1), match.group(2)
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    if not repo or owner in (".", "..") or repo in (".", ".."):
        raise InvalidInputError(f"Invalid GitHub URL: {url}")
    return owner, repo


def canonical_repo_url(owner: str, repo: str) -> str:
    """Canonical URL used as the repository record key."""
    return f"https://github.com/{owner}/{repo}"


@dataclass
class RepositoryMetadata:
    """Repository-level facts reported by the host."""

    owner: str
    name: str
    description: str | None = None
    stars: int = 0
    default_branch: str = "main"
    languages: list[str] = field(default_factory=list)


@dataclass
class TreeEntry:
    """One row of a recursive tree listing."""

    path: str
    type: str  # "file" or "folder"
    size: int = 0


@dataclass
class FileContent:
    """A contents-API entry for a single path."""

    path: str
    type: str
    size: int = 0
    content: str | None = None
    encoding: str | None = None

    def decode(self) -> str:
        """Return the entry's text, decoding base64 payloads."""
        if self.content is None:
            return ""
        if self.encoding == "base64":
            raw = base64.b64decode(self.content)
            return raw.decode("utf-8", errors="replace")
        return self.content


@dataclass
class Issue:
    """An open issue suitable for newcomers."""

    number: int
    title: str
    url: str
    labels: list[str] = field(default_factory=list)
    created_at: str | None = None


@dataclass
class RateLimit:
    """Remaining core API quota."""

    remaining: int
    limit: int
    reset_at: datetime | None = None


class RepositoryHost(Protocol):
    """Operations the pipeline needs from a repository host."""

    def get_repository_metadata(self, owner: str, repo: str) -> RepositoryMetadata:
        ...

    def get_languages(self, owner: str, repo: str) -> list[str]:
        ...

    def get_tree(self, owner: str, repo: str, branch: str) -> list[TreeEntry]:
        ...

    def get_file_content(
        self, owner: str, repo: str, path: str, ref: str
    ) -> FileContent | list[FileContent]:
        ...

    def list_open_issues(self, owner: str, repo: str, label: str) -> list[Issue]:
        ...

    def get_rate_limit(self) -> RateLimit:
        ...


class GitHubClient:
    """Thin wrapper around the GitHub REST API v3."""

    def __init__(self, settings: Settings, session: requests.Session | None = None):
        """Initialize the client.

        Args:
            settings: Runtime settings (token, base URL, timeout)
            session: Optional pre-built requests session
        """
        self.base_url = settings.github_api_base_url.rstrip("/")
        self.timeout = settings.host_timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Accept": "application/vnd.github+json",
                "User-Agent": "codementor",
            }
        )
        if settings.github_token:
            self.session.headers["Authorization"] = f"token {settings.github_token}"

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.Timeout as e:
            raise TransientHostError(f"GitHub request timed out: {path}") from e
        except requests.RequestException as e:
            raise TransientHostError(f"GitHub request failed: {str(e)}") from e

        if response.status_code >= 400:
            raise self._error_for(response, path)

        try:
            return response.json()
        except ValueError as e:
            raise TransientHostError(f"Invalid JSON from GitHub for {path}") from e

    def _error_for(self, response: requests.Response, path: str) -> Exception:
        status = response.status_code
        message = _error_message(response) or response.reason or "error"

        if status == 404:
            return NotFoundError(f"Not found: {path}", status=status)
        if status == 429 or (
            status == 403
            and (
                response.headers.get("X-RateLimit-Remaining") == "0"
                or "rate limit" in message.lower()
            )
        ):
            return RateLimitedError(
                "GitHub API rate limit exceeded. Please try again later.",
                status=status,
            )
        if status == 403:
            return AccessDeniedError(f"Access denied: {path} ({message})", status=status)
        return TransientHostError(
            f"GitHub returned {status} for {path}: {message}", status=status
        )

    def get_repository_metadata(self, owner: str, repo: str) -> RepositoryMetadata:
        """Fetch description, star count and default branch."""
        data = self._get(f"/repos/{owner}/{repo}")
        return RepositoryMetadata(
            owner=owner,
            name=data.get("name") or repo,
            description=data.get("description"),
            stars=int(data.get("stargazers_count") or 0),
            default_branch=data.get("default_branch") or "main",
        )

    def get_languages(self, owner: str, repo: str) -> list[str]:
        """Top ten languages by byte count."""
        data = self._get(f"/repos/{owner}/{repo}/languages")
        ranked = sorted(data.items(), key=lambda item: item[1], reverse=True)
        return [language for language, _ in ranked[:10]]

    def get_tree(self, owner: str, repo: str, branch: str) -> list[TreeEntry]:
        """Recursive tree listing of a branch, as a flat list."""
        branch_ref = quote(branch, safe="/")
        data = self._get(
            f"/repos/{owner}/{repo}/git/trees/{branch_ref}", params={"recursive": 1}
        )
        if data.get("truncated"):
            logger.warning("Tree listing for %s/%s was truncated by GitHub", owner, repo)

        entries = []
        for item in data.get("tree", []):
            kind = item.get("type")
            if kind == "blob":
                entry_type = "file"
            elif kind == "tree":
                entry_type = "folder"
            else:
                # Submodules ("commit") have no content to index
                continue
            entries.append(
                TreeEntry(path=item["path"], type=entry_type, size=int(item.get("size") or 0))
            )
        return entries

    def get_file_content(
        self, owner: str, repo: str, path: str, ref: str
    ) -> FileContent | list[FileContent]:
        """Contents-API lookup; directories come back as a list of entries."""
        data = self._get(
            f"/repos/{owner}/{repo}/contents/{quote(path, safe='/')}",
            params={"ref": ref},
        )
        if isinstance(data, list):
            return [
                FileContent(
                    path=item.get("path", ""),
                    type=item.get("type", "file"),
                    size=int(item.get("size") or 0),
                )
                for item in data
            ]
        return FileContent(
            path=data.get("path", path),
            type=data.get("type", "file"),
            size=int(data.get("size") or 0),
            content=data.get("content"),
            encoding=data.get("encoding"),
        )

    def list_open_issues(
        self, owner: str, repo: str, label: str = GOOD_FIRST_ISSUE_LABEL
    ) -> list[Issue]:
        """Open issues carrying a label, newest first, at most 20."""
        data = self._get(
            f"/repos/{owner}/{repo}/issues",
            params={"labels": label, "state": "open", "per_page": 20},
        )
        issues = []
        for item in data:
            if "pull_request" in item:
                continue
            issues.append(
                Issue(
                    number=int(item["number"]),
                    title=item.get("title", ""),
                    url=item.get("html_url", ""),
                    labels=[lbl.get("name", "") for lbl in item.get("labels", [])],
                    created_at=item.get("created_at"),
                )
            )
        return issues

    def get_rate_limit(self) -> RateLimit:
        """Current core API quota."""
        data = self._get("/rate_limit")
        core = data.get("resources", {}).get("core") or data.get("rate", {})
        reset = core.get("reset")
        return RateLimit(
            remaining=int(core.get("remaining", 0)),
            limit=int(core.get("limit", 0)),
            reset_at=(
                datetime.fromtimestamp(int(reset), tz=timezone.utc) if reset else None
            ),
        )

    def close(self) -> None:
        self.session.close()


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return ""
    if isinstance(body, dict):
        return str(body.get("message") or "")
    return ""
