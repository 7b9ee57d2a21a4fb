"""
Indexing orchestrator.

Drives one repository through ``pending -> indexing -> completed | failed``:
metadata, tree listing, concurrency-limited file fetching, search-index
writes, insights, verification. Every state change is emitted as a
ProgressEvent and persisted through the cache store before listeners see it.
"""

import asyncio
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from .completion import CompletionBackend
from .config import PLACEHOLDER_CONTENT, Settings
from .errors import (
    CodeMentorError,
    IndexingError,
    PersistenceError,
    RateLimitedError,
)
from .fetcher import ContentFetcher
from .github import (
    RepositoryHost,
    RepositoryMetadata,
    canonical_repo_url,
    parse_github_url,
)
from .insights import detect_language, find_readme, generate_insights
from .logging import get_logger
from .models import FileType, IndexStatus, Repository
from .retry import RetryPolicy
from .search import SearchIndex
from .store import TERMINAL_STATUSES, CacheStore, ProgressEvent
from .tree import flatten_for_fetch

logger = get_logger("orchestrator")

ProgressListener = Callable[[ProgressEvent], None]

FILE_PHASE_START = 40
FILE_PHASE_SPAN = 50
FILE_PHASE_END = 90
PROGRESS_BATCH = 2


def file_phase_progress(processed: int, total: int) -> int:
    """Progress within the file phase: 40 at the start, capped at 90."""
    if total <= 0:
        return FILE_PHASE_START
    return min(FILE_PHASE_START + (processed * FILE_PHASE_SPAN) // total, FILE_PHASE_END)


def placeholder_for(path: str) -> str:
    """Visible stand-in indexed when a file's content cannot be fetched."""
    return f"// File: {path}\n{PLACEHOLDER_CONTENT}"


@dataclass
class StartResult:
    """Outcome of an indexing request."""

    started: bool
    reason: str  # "started", "in_progress" or "cached"
    repository: Repository
    status: dict[str, Any] = field(default_factory=dict)


@dataclass
class FileBatchResult:
    total: int = 0
    indexed: int = 0
    failed: int = 0
    processed: int = 0


class IndexingOrchestrator:
    """Runs indexing pipelines, at most one per repository URL."""

    def __init__(
        self,
        host: RepositoryHost,
        fetcher: ContentFetcher,
        search: SearchIndex,
        store: CacheStore,
        settings: Settings | None = None,
        backend: CompletionBackend | None = None,
        listeners: Iterable[ProgressListener] = (),
        retry_policy: RetryPolicy | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            host: Repository host client
            fetcher: Content fetcher (carries the concurrency limiter)
            search: Full-text search index
            store: Progress/cache store
            settings: Runtime settings
            backend: Optional completion backend used for insights
            listeners: Callables notified of every persisted progress event
            retry_policy: Policy for metadata and tree fetches
        """
        self.host = host
        self.fetcher = fetcher
        self.search = search
        self.store = store
        self.settings = settings or Settings()
        self.backend = backend
        self.listeners = list(listeners)
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=self.settings.fetch_retry.max_attempts,
            base_delay=self.settings.fetch_retry.base_delay,
        )
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: dict[str, asyncio.Task[Repository]] = {}
        self._last_progress: dict[int, int] = {}
        self._finished: set[int] = set()

    def add_listener(self, listener: ProgressListener) -> None:
        self.listeners.append(listener)

    async def start_indexing(self, repo_url: str) -> StartResult:
        """Start a run unless one is in progress or the cache is valid.

        Raises:
            InvalidInputError: If the URL is malformed (before any I/O)
            PersistenceError: If the repository record cannot be read or created
        """
        owner, name = parse_github_url(repo_url)
        url = canonical_repo_url(owner, name)
        lock = self._locks.setdefault(url, asyncio.Lock())

        async with lock:
            running = self._tasks.get(url)
            record = await asyncio.to_thread(self.store.get_by_url, url)
            created = False

            if running is not None and not running.done() and record is not None:
                logger.info("Indexing already running for %s", url)
                return await self._result(False, "in_progress", record)

            if record is None:
                record = await asyncio.to_thread(self.store.create, url, owner, name)
                created = True
            elif record.is_cache_hit(self.store.clock()):
                logger.info("Cache hit for %s", url)
                record = await self._record_access(record)
                return await self._result(False, "cached", record)
            elif record.status == IndexStatus.INDEXING:
                stale = await asyncio.to_thread(self.store.is_run_stale, record.id)
                if not stale:
                    logger.info("Indexing in progress for %s", url)
                    return await self._result(False, "in_progress", record)
                logger.warning("Restarting abandoned indexing run for %s", url)

            if not created:
                record = await self._reset(record)

            self._last_progress[record.id] = 0
            self._finished.discard(record.id)
            self._tasks[url] = asyncio.create_task(self._run(record, owner, name))
            logger.info("Started indexing %s", url)
            return await self._result(True, "started", record)

    async def index_repository(self, repo_url: str) -> Repository:
        """Start (or join) a run and wait for the repository's final state."""
        result = await self.start_indexing(repo_url)
        if result.reason == "cached":
            return result.repository
        return await self.wait(repo_url) or result.repository

    async def wait(self, repo_url: str) -> Repository | None:
        """Wait for the in-process run for a URL, if there is one."""
        owner, name = parse_github_url(repo_url)
        task = self._tasks.get(canonical_repo_url(owner, name))
        if task is None:
            return None
        return await task

    async def get_status(self, repo_url: str) -> dict[str, Any] | None:
        """Polling status surface for a URL, or None if it was never requested."""
        owner, name = parse_github_url(repo_url)
        record = await asyncio.to_thread(
            self.store.get_by_url, canonical_repo_url(owner, name)
        )
        if record is None:
            return None
        return await asyncio.to_thread(self.store.get_status, record.id)

    async def clear_cache(self, repo_url: str) -> bool:
        """Delete a repository's record, files, progress and search documents.

        Returns:
            True if a repository was removed, False if it was never indexed

        Raises:
            IndexingError: If a run for the repository is still in flight
        """
        owner, name = parse_github_url(repo_url)
        url = canonical_repo_url(owner, name)
        running = self._tasks.get(url)
        if running is not None and not running.done():
            raise IndexingError(f"Cannot clear {url} while it is being indexed")

        record = await asyncio.to_thread(self.store.get_by_url, url)
        if record is None:
            return False

        removed = await asyncio.to_thread(self.store.clear_cache, record.id)
        try:
            await asyncio.to_thread(self.search.delete_repository, record.id)
        except CodeMentorError as e:
            logger.warning("Could not remove %s from the search index: %s", url, e)
        self._last_progress.pop(record.id, None)
        self._finished.discard(record.id)
        self._tasks.pop(url, None)
        return removed

    async def _result(
        self, started: bool, reason: str, record: Repository
    ) -> StartResult:
        status = await asyncio.to_thread(self.store.get_status, record.id)
        return StartResult(started=started, reason=reason, repository=record, status=status)

    async def _record_access(self, record: Repository) -> Repository:
        try:
            return await asyncio.to_thread(self.store.update_access, record.id)
        except PersistenceError as e:
            logger.warning("Could not record access for %s: %s", record.repo_url, e)
            return record

    async def _reset(self, record: Repository) -> Repository:
        """Drop the previous run's files and documents, then queue a new run."""
        removed = await asyncio.to_thread(self.store.clear_files, record.id)
        documents = await asyncio.to_thread(self.search.delete_repository, record.id)
        logger.info(
            "Cleared %d files and %d search documents of %s before reindexing",
            removed,
            documents,
            record.repo_url,
        )
        await asyncio.to_thread(
            self.store.update_status,
            record.id,
            IndexStatus.PENDING,
            0,
            "Queued",
            None,
            0,
            0,
        )
        return await asyncio.to_thread(self.store.get, record.id)

    async def _emit(
        self,
        repo_id: int,
        status: IndexStatus,
        progress: int,
        step: str,
        error: str | None = None,
        total_files: int | None = None,
        indexed_files: int | None = None,
    ) -> ProgressEvent | None:
        if status == IndexStatus.INDEXING:
            if repo_id in self._finished:
                logger.debug("Dropping progress after the run ended: %s", step)
                return None
            # Never report a lower percentage within one run
            progress = max(progress, self._last_progress.get(repo_id, 0))
        elif status in TERMINAL_STATUSES:
            self._finished.add(repo_id)
        self._last_progress[repo_id] = progress

        event = ProgressEvent(
            repo_id=repo_id,
            status=status,
            progress=progress,
            step=step,
            error=error,
            total_files=total_files,
            indexed_files=indexed_files,
        )
        await asyncio.to_thread(self.store.record, event)
        logger.debug("%s %d%% %s", status.value, progress, step)

        for listener in self.listeners:
            try:
                listener(event)
            except Exception as e:
                logger.warning("Progress listener failed: %s", e)
        return event

    async def _run(self, record: Repository, owner: str, name: str) -> Repository:
        repo_id = record.id
        try:
            await self._emit(
                repo_id, IndexStatus.INDEXING, 5, "Fetching repository data from GitHub..."
            )
            await self._check_rate_limit()
            metadata = await self._fetch_metadata(owner, name)
            record = await asyncio.to_thread(self.store.update_metadata, repo_id, metadata)
            self.fetcher.remember_default_branch(owner, name, metadata.default_branch)

            await self._emit(
                repo_id, IndexStatus.INDEXING, 20, "Analyzing repository structure..."
            )
            entries = await self.retry_policy.acall(
                lambda: asyncio.to_thread(
                    self.host.get_tree, owner, name, metadata.default_branch
                ),
                f"Fetching tree of {owner}/{name}",
            )
            paths = flatten_for_fetch(entries)
            total = len(paths)

            await self._emit(
                repo_id,
                IndexStatus.INDEXING,
                30,
                f"Found {total} files to index...",
                total_files=total,
                indexed_files=0,
            )

            await asyncio.to_thread(
                self.search.index_repository,
                repo_id,
                record.repo_url,
                owner,
                name,
                record.description,
                record.languages,
            )
            await self._emit(repo_id, IndexStatus.INDEXING, 40, "Building search index...")

            batch = await self._index_files(
                repo_id, owner, name, metadata.default_branch, paths
            )
            logger.info(
                "File indexing for %s/%s: %d indexed, %d failed",
                owner,
                name,
                batch.indexed,
                batch.failed,
            )
            await self._emit(
                repo_id,
                IndexStatus.INDEXING,
                FILE_PHASE_END,
                "Fetched file contents from GitHub",
                indexed_files=batch.indexed,
            )

            await self._emit(
                repo_id, IndexStatus.INDEXING, 92, "Generating repository insights..."
            )
            await self._generate_insights(record, owner, name, paths)

            await self._emit(
                repo_id, IndexStatus.INDEXING, 95, "Verifying indexing results..."
            )
            if batch.indexed == 0:
                raise IndexingError("No files were successfully indexed")
            await self._smoke_test(repo_id)

            await self._emit(
                repo_id,
                IndexStatus.COMPLETED,
                100,
                "Repository ready!",
                total_files=total,
                indexed_files=batch.indexed,
            )
            logger.info("Indexed %s/%s: %d of %d files", owner, name, batch.indexed, total)

        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.error("Indexing %s/%s failed: %s", owner, name, message)
            try:
                await self._emit(
                    repo_id, IndexStatus.FAILED, 0, "Indexing failed", error=message
                )
            except CodeMentorError as update_error:
                logger.error(
                    "Could not record failure for %s/%s: %s", owner, name, update_error
                )

        return await asyncio.to_thread(self.store.get, repo_id)

    async def _check_rate_limit(self) -> None:
        try:
            rate = await asyncio.to_thread(self.host.get_rate_limit)
        except RateLimitedError:
            raise
        except CodeMentorError as e:
            logger.warning("Could not read rate limit, continuing: %s", e)
            return

        if rate.remaining < self.settings.rate_limit_floor:
            reset = f" Resets at {rate.reset_at.isoformat()}." if rate.reset_at else ""
            raise RateLimitedError(
                f"GitHub API rate limit exceeded ({rate.remaining} requests left).{reset}"
            )

    async def _fetch_metadata(self, owner: str, name: str) -> RepositoryMetadata:
        metadata = await self.retry_policy.acall(
            lambda: asyncio.to_thread(self.host.get_repository_metadata, owner, name),
            f"Fetching metadata of {owner}/{name}",
        )
        try:
            metadata.languages = await asyncio.to_thread(
                self.host.get_languages, owner, name
            )
        except CodeMentorError as e:
            logger.warning("Could not fetch languages of %s/%s: %s", owner, name, e)
            metadata.languages = []
        return metadata

    async def _index_files(
        self, repo_id: int, owner: str, name: str, ref: str, paths: list[str]
    ) -> FileBatchResult:
        batch = FileBatchResult(total=len(paths))
        progress_lock = asyncio.Lock()
        aborted = asyncio.Event()

        async def process(path: str) -> None:
            if aborted.is_set():
                return
            succeeded = True
            try:
                fetched = await self.fetcher.fetch_limited(owner, name, path, ref)
            except Exception as e:
                logger.warning("Fetching %s failed, indexing placeholder: %s", path, e)
                fetched = None
                succeeded = False
            if aborted.is_set():
                return

            content = fetched.content if fetched is not None else placeholder_for(path)
            size = fetched.size if fetched is not None else len(content)
            language = detect_language(path)
            try:
                await asyncio.to_thread(
                    self.search.index_file, repo_id, path, content, size, language
                )
                await asyncio.to_thread(
                    self.store.save_file,
                    repo_id,
                    path,
                    content,
                    size,
                    language,
                    FileType.FILE,
                )
            except CodeMentorError as e:
                logger.warning("Indexing %s failed: %s", path, e)
                succeeded = False

            async with progress_lock:
                if aborted.is_set():
                    return
                batch.processed += 1
                if succeeded:
                    batch.indexed += 1
                else:
                    batch.failed += 1
                if batch.processed % PROGRESS_BATCH == 0 or batch.processed == batch.total:
                    await self._emit(
                        repo_id,
                        IndexStatus.INDEXING,
                        file_phase_progress(batch.processed, batch.total),
                        f"Indexing files... {batch.processed}/{batch.total}",
                        total_files=batch.total,
                        indexed_files=batch.indexed,
                    )

        async def guarded(path: str) -> None:
            try:
                await process(path)
            except Exception:
                aborted.set()
                raise

        # Submitted in listing order; completion order is unconstrained.
        # Every task settles before the first error propagates.
        results = await asyncio.gather(
            *(guarded(path) for path in paths), return_exceptions=True
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return batch

    async def _generate_insights(
        self, record: Repository, owner: str, name: str, paths: list[str]
    ) -> None:
        try:
            readme = None
            readme_path = find_readme(paths)
            if readme_path:
                fetched = await self.fetcher.fetch_limited(
                    owner, name, readme_path, record.default_branch
                )
                readme = fetched.content if fetched is not None else None

            insights = await asyncio.to_thread(
                generate_insights,
                record.name,
                paths,
                readme,
                self.backend,
                record.languages,
                record.description,
            )
            await asyncio.to_thread(
                self.store.update_insights, record.id, **insights.to_dict()
            )
        except CodeMentorError as e:
            logger.warning("Skipping insights for %s/%s: %s", owner, name, e)

    async def _smoke_test(self, repo_id: int) -> None:
        try:
            hits = await asyncio.to_thread(self.search.search_files, repo_id, "test", 5)
            logger.debug("Search smoke test returned %d hits", len(hits))
        except CodeMentorError as e:
            logger.warning("Search smoke test failed (non-fatal): %s", e)
