"""
Content fetcher for individual repository files.

Retrieves file text from the repository host with retry and backoff,
rejecting directories, non-files, oversize and binary content by
returning None instead of raising.
"""

import asyncio
import binascii
from dataclasses import dataclass

from .config import DEFAULT_BRANCH, MAX_FILE_SIZE
from .errors import HostError, NotFoundError
from .github import FileContent, RepositoryHost
from .limiter import ConcurrencyLimiter
from .logging import get_logger
from .retry import RetryPolicy

logger = get_logger("fetcher")


@dataclass
class FetchedContent:
    """Decoded text of one repository file."""

    path: str
    content: str
    size: int


class ContentFetcher:
    """Fetches raw file content through the host client."""

    def __init__(
        self,
        host: RepositoryHost,
        limiter: ConcurrencyLimiter | None = None,
        retry_policy: RetryPolicy | None = None,
        max_file_size: int = MAX_FILE_SIZE,
        fallback_branch: str = DEFAULT_BRANCH,
    ):
        self.host = host
        self.limiter = limiter or ConcurrencyLimiter()
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay=0.4)
        self.max_file_size = max_file_size
        self.fallback_branch = fallback_branch
        self._default_branches: dict[tuple[str, str], str] = {}

    def remember_default_branch(self, owner: str, repo: str, branch: str) -> None:
        """Seed the branch cache, e.g. from already-fetched metadata."""
        self._default_branches[(owner, repo)] = branch

    async def resolve_ref(self, owner: str, repo: str) -> str:
        """Default branch of a repository, looked up once and cached.

        Falls back to the fixed branch name when the lookup fails.
        """
        key = (owner, repo)
        if key not in self._default_branches:
            try:
                metadata = await asyncio.to_thread(
                    self.host.get_repository_metadata, owner, repo
                )
                branch = metadata.default_branch or self.fallback_branch
            except Exception as e:
                logger.warning(
                    "Could not resolve default branch for %s/%s, using %s: %s",
                    owner,
                    repo,
                    self.fallback_branch,
                    e,
                )
                branch = self.fallback_branch
            self._default_branches[key] = branch
        return self._default_branches[key]

    async def fetch_raw_content(
        self, owner: str, repo: str, path: str, ref: str | None = None
    ) -> FetchedContent | None:
        """Fetch one file's text.

        Args:
            owner: Repository owner
            repo: Repository name
            path: POSIX path of the file
            ref: Branch, tag or commit; defaults to the repository's default branch

        Returns:
            FetchedContent, or None when the path is a directory, not a plain
            file, larger than the size ceiling, binary, missing (404) or
            forbidden (403)

        Raises:
            HostError: When a transient fault persists after all attempts or
                the host is throttling with a 429
        """
        if ref is None:
            ref = await self.resolve_ref(owner, repo)

        async def attempt() -> FileContent | list[FileContent]:
            return await asyncio.to_thread(
                self.host.get_file_content, owner, repo, path, ref
            )

        try:
            entry = await self.retry_policy.acall(attempt, f"Fetching {path}")
        except NotFoundError:
            logger.debug("File not found: %s", path)
            return None
        except HostError as e:
            if e.status == 403:
                logger.debug("File unavailable (403): %s", path)
                return None
            raise

        if isinstance(entry, list) or entry.type != "file":
            return None
        if entry.size > self.max_file_size:
            logger.debug("Skipping %s: %d bytes exceeds limit", path, entry.size)
            return None
        if entry.content is None or entry.encoding == "none":
            return None

        try:
            text = entry.decode()
        except (binascii.Error, ValueError) as e:
            logger.warning("Could not decode %s: %s", path, e)
            return None

        if "\x00" in text:
            logger.debug("Skipping binary file %s", path)
            return None

        return FetchedContent(path=path, content=text, size=entry.size or len(text))

    async def fetch_limited(
        self, owner: str, repo: str, path: str, ref: str | None = None
    ) -> FetchedContent | None:
        """Same as :meth:`fetch_raw_content`, admitted through the limiter."""
        return await self.limiter.limit(
            lambda: self.fetch_raw_content(owner, repo, path, ref)
        )
