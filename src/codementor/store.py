"""
Progress and cache store.

This module persists repository records, indexed files and the latest
indexing progress line, and computes cache staleness. Every mutating
operation runs under the persistence retry policy so a transient datastore
fault does not leave the progress log a polling client reads half-written.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from .config import Settings
from .database import Database
from .errors import (
    CodeMentorError,
    PersistenceError,
    RepositoryAlreadyExistsError,
    RepositoryNotFoundError,
)
from .github import RepositoryMetadata
from .logging import get_logger
from .models import (
    FileType,
    IndexedFile,
    IndexingProgress,
    IndexStatus,
    Repository,
    utcnow,
)
from .retry import RetryPolicy

T = TypeVar("T")

logger = get_logger("store")

TERMINAL_STATUSES = (IndexStatus.COMPLETED, IndexStatus.FAILED)


def is_cache_valid(
    indexed_at: datetime | None, ttl_hours: int, now: datetime | None = None
) -> bool:
    """True strictly before ``indexed_at + ttl_hours``; never without indexed_at."""
    if indexed_at is None:
        return False
    return (now or utcnow()) < indexed_at + timedelta(hours=ttl_hours)


@dataclass
class ProgressEvent:
    """One serializable status line emitted by an indexing run."""

    repo_id: int
    status: IndexStatus
    progress: int
    step: str
    error: str | None = None
    total_files: int | None = None
    indexed_files: int | None = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "repoId": self.repo_id,
            "status": self.status.value,
            "progress": self.progress,
            "currentStep": self.step,
            "errorMessage": self.error,
            "totalFiles": self.total_files,
            "indexedFiles": self.indexed_files,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class CacheCheck:
    """Outcome of a cache lookup for one repository URL."""

    cached: bool = False
    indexing: bool = False
    completed: bool = False
    expires_at: datetime | None = None
    record: Repository | None = None


class CacheStore:
    """Repository, file and progress persistence on top of a Database."""

    def __init__(
        self,
        database: Database,
        retry_policy: RetryPolicy | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the store.

        Args:
            database: Relational datastore handle
            retry_policy: Policy applied to every mutation
            settings: Runtime settings (TTL, popularity threshold)
            clock: Source of "now", injectable for tests
        """
        self.database = database
        self.settings = settings or Settings()
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=self.settings.persistence_retry.max_attempts,
            base_delay=self.settings.persistence_retry.base_delay,
        )
        self.clock = clock

    def _run(
        self, description: str, operation: Callable[[], T], retry: bool = True
    ) -> T:
        def guarded() -> T:
            try:
                return operation()
            except CodeMentorError:
                raise
            except SQLAlchemyError as e:
                raise PersistenceError(f"Failed to {description}: {str(e)}") from e

        if retry:
            return self.retry_policy.call(guarded, description)
        return guarded()

    @staticmethod
    def _load(session: Session, repo_id: int) -> Repository:
        repository = session.get(Repository, repo_id)
        if repository is None:
            raise RepositoryNotFoundError(f"Repository {repo_id} not found")
        return repository

    # Repository records

    def get_by_url(self, repo_url: str) -> Repository | None:
        """Look up a repository record by its URL."""

        def operation() -> Repository | None:
            with self.database.session() as session:
                statement = select(Repository).where(Repository.repo_url == repo_url)
                return session.exec(statement).first()

        return self._run(f"get repository '{repo_url}'", operation, retry=False)

    def get(self, repo_id: int) -> Repository:
        """Get a repository record by id.

        Raises:
            RepositoryNotFoundError: If no such record exists
            PersistenceError: If the datastore fails
        """

        def operation() -> Repository:
            with self.database.session() as session:
                return self._load(session, repo_id)

        return self._run(f"get repository {repo_id}", operation, retry=False)

    def create(
        self, repo_url: str, owner: str, name: str, cache_ttl_hours: int | None = None
    ) -> Repository:
        """Create a pending repository record and its progress row.

        Raises:
            RepositoryAlreadyExistsError: If a record for the URL exists
            PersistenceError: If the datastore fails after retries
        """

        def operation() -> Repository:
            with self.database.session() as session:
                statement = select(Repository).where(Repository.repo_url == repo_url)
                if session.exec(statement).first() is not None:
                    raise RepositoryAlreadyExistsError(
                        f"Repository '{repo_url}' already exists"
                    )

                now = self.clock()
                repository = Repository(
                    repo_url=repo_url,
                    owner=owner,
                    name=name,
                    status=IndexStatus.PENDING,
                    progress=0,
                    cache_ttl_hours=cache_ttl_hours or self.settings.cache_ttl_hours,
                    created_at=now,
                    updated_at=now,
                )
                session.add(repository)
                try:
                    session.flush()
                except IntegrityError as e:
                    raise RepositoryAlreadyExistsError(
                        f"Repository '{repo_url}' already exists"
                    ) from e

                session.add(
                    IndexingProgress(
                        repo_id=repository.id,
                        status=IndexStatus.PENDING,
                        progress=0,
                        current_step="Queued",
                        started_at=now,
                        updated_at=now,
                    )
                )
                session.commit()
                session.refresh(repository)
                return repository

        return self._run(f"create repository '{repo_url}'", operation)

    def update_metadata(self, repo_id: int, metadata: RepositoryMetadata) -> Repository:
        """Store host metadata; popularity is derived from the star count."""

        def operation() -> Repository:
            with self.database.session() as session:
                repository = self._load(session, repo_id)
                repository.description = metadata.description
                repository.stars = metadata.stars
                repository.default_branch = metadata.default_branch
                repository.languages = list(metadata.languages)
                repository.is_popular = (
                    metadata.stars > self.settings.popular_star_threshold
                )
                repository.updated_at = self.clock()
                session.add(repository)
                session.commit()
                session.refresh(repository)
                return repository

        return self._run(f"update metadata of repository {repo_id}", operation)

    # Progress

    def update_status(
        self,
        repo_id: int,
        status: IndexStatus,
        progress: int,
        step: str,
        error: str | None = None,
        total_files: int | None = None,
        indexed_files: int | None = None,
    ) -> IndexingProgress:
        """Update the repository state and upsert its progress row.

        Entering ``indexing`` from any other state starts a new run:
        ``started_at`` is reset and any previous error is cleared.
        ``completed`` forces progress to 100 and stamps ``indexed_at``.

        Raises:
            ValueError: If progress is outside 0-100
            RepositoryNotFoundError: If the repository does not exist
            PersistenceError: If the datastore fails after retries
        """
        if not 0 <= progress <= 100:
            raise ValueError(f"progress must be between 0 and 100, got {progress}")
        if status == IndexStatus.COMPLETED:
            progress = 100

        def operation() -> IndexingProgress:
            with self.database.session() as session:
                now = self.clock()
                repository = self._load(session, repo_id)
                new_run = (
                    status == IndexStatus.INDEXING
                    and repository.status != IndexStatus.INDEXING
                )

                repository.status = status
                repository.progress = progress
                if error is not None:
                    repository.error_message = error
                elif new_run or status == IndexStatus.COMPLETED:
                    repository.error_message = None
                if total_files is not None:
                    repository.total_files = total_files
                if indexed_files is not None:
                    repository.indexed_files = indexed_files
                if status == IndexStatus.COMPLETED:
                    repository.indexed_at = now
                repository.updated_at = now
                session.add(repository)

                statement = select(IndexingProgress).where(
                    IndexingProgress.repo_id == repo_id
                )
                row = session.exec(statement).first()
                if row is None:
                    row = IndexingProgress(repo_id=repo_id, started_at=now)
                if new_run:
                    row.started_at = now
                    row.completed_at = None
                row.status = status
                row.progress = progress
                row.current_step = step
                row.error_message = repository.error_message
                row.total_files = repository.total_files
                row.indexed_files = repository.indexed_files
                if status in TERMINAL_STATUSES:
                    row.completed_at = now
                row.updated_at = now
                session.add(row)

                session.commit()
                session.refresh(row)
                return row

        return self._run(f"update status of repository {repo_id}", operation)

    def record(self, event: ProgressEvent) -> IndexingProgress:
        """Persist one progress event."""
        return self.update_status(
            event.repo_id,
            event.status,
            event.progress,
            event.step,
            error=event.error,
            total_files=event.total_files,
            indexed_files=event.indexed_files,
        )

    def get_progress(self, repo_id: int) -> IndexingProgress | None:
        def operation() -> IndexingProgress | None:
            with self.database.session() as session:
                statement = select(IndexingProgress).where(
                    IndexingProgress.repo_id == repo_id
                )
                return session.exec(statement).first()

        return self._run(f"get progress of repository {repo_id}", operation, retry=False)

    def get_status(self, repo_id: int) -> dict[str, Any]:
        """Polling status surface, reflecting the latest progress row.

        Raises:
            RepositoryNotFoundError: If the repository does not exist
        """
        row = self.get_progress(repo_id)
        if row is not None:
            return row.to_status()

        repository = self.get(repo_id)
        return {
            "status": repository.status.value,
            "progress": repository.progress,
            "currentStep": "",
            "totalFiles": repository.total_files,
            "indexedFiles": repository.indexed_files,
            "errorMessage": repository.error_message,
            "startedAt": None,
            "completedAt": None,
        }

    def is_run_stale(
        self, repo_id: int, window_minutes: int | None = None
    ) -> bool:
        """Whether an ``indexing`` run has stopped reporting progress.

        A run is stale when its progress row has not been updated within
        the stale-run window, which is what a crashed process leaves behind.
        """
        window = timedelta(
            minutes=window_minutes or self.settings.stale_run_minutes
        )
        row = self.get_progress(repo_id)
        if row is None:
            repository = self.get(repo_id)
            last_update = repository.updated_at
        else:
            last_update = row.updated_at
        return self.clock() - last_update >= window

    # Cache bookkeeping

    def update_access(self, repo_id: int) -> Repository:
        """Bump ``last_accessed_at`` and ``access_count``."""

        def operation() -> Repository:
            with self.database.session() as session:
                repository = self._load(session, repo_id)
                repository.last_accessed_at = self.clock()
                repository.access_count += 1
                session.add(repository)
                session.commit()
                session.refresh(repository)
                return repository

        return self._run(f"update access of repository {repo_id}", operation)

    def check_cache(self, repo_url: str) -> CacheCheck:
        """Cache lookup for the read path.

        Datastore failures degrade to a cache miss. Access is only counted
        for valid, completed hits.
        """
        try:
            repository = self.get_by_url(repo_url)
        except PersistenceError as e:
            logger.warning("Cache check failed for %s, treating as miss: %s", repo_url, e)
            return CacheCheck()

        if repository is None:
            return CacheCheck()

        now = self.clock()
        valid = is_cache_valid(repository.indexed_at, repository.cache_ttl_hours, now)
        completed = repository.status == IndexStatus.COMPLETED
        check = CacheCheck(
            cached=valid and completed,
            indexing=repository.status == IndexStatus.INDEXING,
            completed=completed,
            expires_at=repository.cache_expires_at,
            record=repository,
        )

        if check.cached:
            try:
                check.record = self.update_access(repository.id)
            except PersistenceError as e:
                logger.warning("Could not record access for %s: %s", repo_url, e)

        return check

    def clear_cache(self, repo_id: int) -> bool:
        """Delete a repository with its files and progress row.

        Returns:
            True if the repository was removed, False if it didn't exist
        """

        def operation() -> bool:
            with self.database.session() as session:
                repository = session.get(Repository, repo_id)
                if repository is None:
                    return False

                # Children first, due to foreign key constraints
                files = session.exec(
                    select(IndexedFile).where(IndexedFile.repo_id == repo_id)
                ).all()
                for indexed_file in files:
                    session.delete(indexed_file)

                progress = session.exec(
                    select(IndexingProgress).where(IndexingProgress.repo_id == repo_id)
                ).all()
                for row in progress:
                    session.delete(row)

                session.flush()
                session.delete(repository)
                session.commit()
                return True

        return self._run(f"clear cache of repository {repo_id}", operation)

    def clear_files(self, repo_id: int) -> int:
        """Delete every indexed file of a repository, keeping the record.

        Returns:
            Number of file rows removed
        """

        def operation() -> int:
            with self.database.session() as session:
                files = session.exec(
                    select(IndexedFile).where(IndexedFile.repo_id == repo_id)
                ).all()
                for indexed_file in files:
                    session.delete(indexed_file)
                session.commit()
                return len(files)

        return self._run(f"clear files of repository {repo_id}", operation)

    def list_repositories(self, limit: int | None = None) -> list[Repository]:
        """Repositories ordered by most recent access, never-accessed last."""

        def operation() -> list[Repository]:
            with self.database.session() as session:
                statement = select(Repository).order_by(
                    Repository.last_accessed_at.is_(None),
                    Repository.last_accessed_at.desc(),
                    Repository.repo_url,
                )
                if limit is not None:
                    statement = statement.limit(limit)
                return list(session.exec(statement).all())

        return self._run("list repositories", operation, retry=False)

    # Insights

    def get_insights(self, repo_id: int) -> dict[str, str | None] | None:
        """Summary, quickstart and contribution guide, or None if none exist."""
        repository = self.get(repo_id)
        insights = {
            "summary": repository.summary,
            "quickstart": repository.quickstart,
            "contribution_guide": repository.contribution_guide,
        }
        if not any(insights.values()):
            return None
        return insights

    def update_insights(
        self,
        repo_id: int,
        summary: str | None = None,
        quickstart: str | None = None,
        contribution_guide: str | None = None,
    ) -> Repository:
        """Store insight sections; None leaves the existing value untouched."""

        def operation() -> Repository:
            with self.database.session() as session:
                repository = self._load(session, repo_id)
                if summary is not None:
                    repository.summary = summary
                if quickstart is not None:
                    repository.quickstart = quickstart
                if contribution_guide is not None:
                    repository.contribution_guide = contribution_guide
                repository.updated_at = self.clock()
                session.add(repository)
                session.commit()
                session.refresh(repository)
                return repository

        return self._run(f"update insights of repository {repo_id}", operation)

    # Indexed files

    def save_file(
        self,
        repo_id: int,
        file_path: str,
        content: str,
        size: int | None = None,
        language: str | None = None,
        file_type: FileType = FileType.FILE,
    ) -> IndexedFile:
        """Insert or replace the record for ``(repo_id, file_path)``."""

        def operation() -> IndexedFile:
            with self.database.session() as session:
                statement = select(IndexedFile).where(
                    IndexedFile.repo_id == repo_id, IndexedFile.file_path == file_path
                )
                indexed_file = session.exec(statement).first()
                if indexed_file is None:
                    indexed_file = IndexedFile(repo_id=repo_id, file_path=file_path)
                indexed_file.content = content
                indexed_file.size = size if size is not None else len(content)
                indexed_file.language = language
                indexed_file.type = file_type
                indexed_file.indexed_at = self.clock()
                session.add(indexed_file)
                session.commit()
                session.refresh(indexed_file)
                return indexed_file

        return self._run(f"save file '{file_path}'", operation)

    def get_file(self, repo_id: int, file_path: str) -> IndexedFile | None:
        def operation() -> IndexedFile | None:
            with self.database.session() as session:
                statement = select(IndexedFile).where(
                    IndexedFile.repo_id == repo_id, IndexedFile.file_path == file_path
                )
                return session.exec(statement).first()

        return self._run(f"get file '{file_path}'", operation, retry=False)

    def list_files(self, repo_id: int) -> list[IndexedFile]:
        """Indexed files of a repository, ordered by path."""

        def operation() -> list[IndexedFile]:
            with self.database.session() as session:
                statement = (
                    select(IndexedFile)
                    .where(IndexedFile.repo_id == repo_id)
                    .order_by(IndexedFile.file_path)
                )
                return list(session.exec(statement).all())

        return self._run(f"list files of repository {repo_id}", operation, retry=False)
