"""
In-memory stand-ins for the remote repository host and completion backend.

Everything else in the tests runs against real SQLite databases.
"""

import base64
import threading
from datetime import datetime, timezone

from codementor.errors import NotFoundError
from codementor.github import FileContent, Issue, RateLimit, RepositoryMetadata, TreeEntry


class FakeHost:
    """Repository host serving a fixed set of files."""

    def __init__(
        self,
        files: dict[str, str] | None = None,
        *,
        name: str = "demo",
        description: str | None = "A demo repository",
        stars: int = 42,
        default_branch: str = "main",
        languages: list[str] | None = None,
        folders: tuple[str, ...] = (),
        sizes: dict[str, int] | None = None,
        failures: dict[str, Exception] | None = None,
        rate_remaining: int = 5000,
        metadata_error: Exception | None = None,
        tree_error: Exception | None = None,
        issues: list[Issue] | None = None,
    ):
        self.files = dict(files or {})
        self.name = name
        self.description = description
        self.stars = stars
        self.default_branch = default_branch
        self.languages = languages if languages is not None else ["Python"]
        self.folders = folders
        self.sizes = dict(sizes or {})
        self.failures = dict(failures or {})
        self.rate_remaining = rate_remaining
        self.metadata_error = metadata_error
        self.tree_error = tree_error
        self.issues = list(issues or [])
        self.calls: list[tuple] = []
        self._lock = threading.Lock()

    def _record(self, *call) -> None:
        with self._lock:
            self.calls.append(call)

    def count(self, method: str, path: str | None = None) -> int:
        """Number of recorded calls to a method, optionally for one path."""
        return sum(
            1
            for call in self.calls
            if call[0] == method and (path is None or call[1] == path)
        )

    def get_repository_metadata(self, owner: str, repo: str) -> RepositoryMetadata:
        self._record("metadata", owner, repo)
        if self.metadata_error is not None:
            raise self.metadata_error
        return RepositoryMetadata(
            owner=owner,
            name=self.name,
            description=self.description,
            stars=self.stars,
            default_branch=self.default_branch,
        )

    def get_languages(self, owner: str, repo: str) -> list[str]:
        self._record("languages", owner, repo)
        return list(self.languages)

    def get_tree(self, owner: str, repo: str, branch: str) -> list[TreeEntry]:
        self._record("tree", owner, repo, branch)
        if self.tree_error is not None:
            raise self.tree_error
        entries = [TreeEntry(path=folder, type="folder") for folder in self.folders]
        for path, content in self.files.items():
            entries.append(
                TreeEntry(path=path, type="file", size=self._size(path, content))
            )
        return entries

    def _size(self, path: str, content: str) -> int:
        return self.sizes.get(path, len(content.encode("utf-8")))

    def get_file_content(
        self, owner: str, repo: str, path: str, ref: str
    ) -> FileContent | list[FileContent]:
        self._record("content", path, ref)
        if path in self.failures:
            raise self.failures[path]
        if path in self.folders:
            return [
                FileContent(path=child, type="file", size=0)
                for child in self.files
                if child.startswith(path + "/")
            ]
        if path not in self.files:
            raise NotFoundError(f"Not found: {path}", status=404)

        content = self.files[path]
        return FileContent(
            path=path,
            type="file",
            size=self._size(path, content),
            content=base64.b64encode(content.encode("utf-8")).decode("ascii"),
            encoding="base64",
        )

    def list_open_issues(self, owner: str, repo: str, label: str) -> list[Issue]:
        self._record("issues", owner, repo, label)
        return list(self.issues)

    def get_rate_limit(self) -> RateLimit:
        self._record("rate_limit")
        return RateLimit(
            remaining=self.rate_remaining,
            limit=5000,
            reset_at=datetime(2030, 1, 1, tzinfo=timezone.utc),
        )


class FakeBackend:
    """Completion backend returning a canned reply."""

    def __init__(self, reply: str = "", error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.prompts: list[str] = []

    def complete(self, prompt: str, context=None) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply
