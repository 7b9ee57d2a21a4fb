"""
Tests for the progress and cache store.
"""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from codementor.config import Settings
from codementor.database import Database
from codementor.errors import (
    PersistenceError,
    RepositoryAlreadyExistsError,
    RepositoryNotFoundError,
)
from codementor.github import RepositoryMetadata
from codementor.models import IndexedFile, IndexingProgress, IndexStatus
from codementor.retry import RetryPolicy
from codementor.store import CacheStore, ProgressEvent, is_cache_valid
from sqlmodel import select

URL = "https://github.com/octo/demo"


class Clock:
    """Manually advanced clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class TestIsCacheValid:
    def test_never_valid_without_indexed_at(self):
        assert not is_cache_valid(None, 24)

    def test_boundary_is_exclusive(self):
        indexed_at = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        assert is_cache_valid(indexed_at, 24, indexed_at + timedelta(hours=23, minutes=59))
        assert not is_cache_valid(indexed_at, 24, indexed_at + timedelta(hours=24))
        assert not is_cache_valid(indexed_at, 24, indexed_at + timedelta(hours=25))


class TestCacheStore:
    """Test persistence of records, progress and files."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.database = Database(Path(self.temp_dir) / "test.sqlite")
        self.database.create_tables()
        self.clock = Clock(datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc))
        self.store = CacheStore(
            self.database,
            retry_policy=RetryPolicy(max_attempts=3, base_delay=0),
            settings=Settings(home_dir=Path(self.temp_dir)),
            clock=self.clock,
        )

    def teardown_method(self):
        self.database.dispose()

    def _completed_repository(self):
        repository = self.store.create(URL, "octo", "demo")
        self.store.update_status(repository.id, IndexStatus.INDEXING, 5, "Fetching")
        self.store.update_status(repository.id, IndexStatus.COMPLETED, 100, "Repository ready!")
        return repository

    # Records

    def test_create_and_get(self):
        repository = self.store.create(URL, "octo", "demo")

        assert repository.id is not None
        assert repository.status == IndexStatus.PENDING
        assert repository.progress == 0
        assert repository.cache_ttl_hours == 24

        fetched = self.store.get(repository.id)
        assert fetched.repo_url == URL
        assert self.store.get_by_url(URL).id == repository.id

    def test_timestamps_round_trip_as_aware_utc(self):
        repository = self.store.create(URL, "octo", "demo")
        self.store.update_status(repository.id, IndexStatus.INDEXING, 5, "Fetching")
        self.store.update_status(repository.id, IndexStatus.COMPLETED, 100, "done")

        fetched = self.store.get(repository.id)
        row = self.store.get_progress(repository.id)
        for moment in (fetched.created_at, fetched.indexed_at, row.started_at, row.completed_at):
            assert moment.tzinfo is not None
            assert moment.utcoffset() == timedelta(0)
        assert fetched.indexed_at == self.clock.now
        assert fetched.is_cache_hit(self.clock.now)

    def test_default_clock_writes_and_compares(self):
        store = CacheStore(
            self.database,
            retry_policy=RetryPolicy(max_attempts=1, base_delay=0),
            settings=Settings(home_dir=Path(self.temp_dir)),
        )
        repository = store.create(URL, "octo", "demo")
        store.update_status(repository.id, IndexStatus.INDEXING, 5, "Fetching")
        store.update_status(repository.id, IndexStatus.COMPLETED, 100, "done")

        assert store.check_cache(URL).cached
        assert not store.is_run_stale(repository.id)
        assert store.get(repository.id).access_count == 1

    def test_offset_datetimes_normalized_to_utc(self):
        offset = timezone(timedelta(hours=2))
        self.clock.now = datetime(2024, 1, 1, 14, 0, 0, tzinfo=offset)
        repository = self.store.create(URL, "octo", "demo")

        created_at = self.store.get(repository.id).created_at
        assert created_at == datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        assert created_at.tzinfo == timezone.utc

    def test_create_adds_queued_progress_row(self):
        repository = self.store.create(URL, "octo", "demo")
        row = self.store.get_progress(repository.id)

        assert row is not None
        assert row.status == IndexStatus.PENDING
        assert row.current_step == "Queued"

    def test_create_duplicate_rejected(self):
        self.store.create(URL, "octo", "demo")
        with pytest.raises(RepositoryAlreadyExistsError):
            self.store.create(URL, "octo", "demo")

    def test_get_missing(self):
        with pytest.raises(RepositoryNotFoundError):
            self.store.get(999)
        assert self.store.get_by_url("https://github.com/nobody/nothing") is None

    def test_update_metadata_derives_popularity(self):
        repository = self.store.create(URL, "octo", "demo")

        updated = self.store.update_metadata(
            repository.id,
            RepositoryMetadata(
                owner="octo",
                name="demo",
                description="Demo",
                stars=1500,
                default_branch="develop",
                languages=["Python", "Shell"],
            ),
        )
        assert updated.is_popular is True
        assert updated.languages == ["Python", "Shell"]
        assert updated.default_branch == "develop"

        updated = self.store.update_metadata(
            repository.id, RepositoryMetadata(owner="octo", name="demo", stars=1000)
        )
        assert updated.is_popular is False

    # Status

    def test_update_status_upserts_single_progress_row(self):
        repository = self.store.create(URL, "octo", "demo")

        self.store.update_status(repository.id, IndexStatus.INDEXING, 5, "Fetching")
        self.store.update_status(
            repository.id, IndexStatus.INDEXING, 30, "Found 3 files to index...", total_files=3
        )

        with self.database.session() as session:
            rows = session.exec(
                select(IndexingProgress).where(IndexingProgress.repo_id == repository.id)
            ).all()
        assert len(rows) == 1
        assert rows[0].progress == 30
        assert rows[0].total_files == 3

        status = self.store.get_status(repository.id)
        assert status["status"] == "indexing"
        assert status["currentStep"] == "Found 3 files to index..."
        assert status["totalFiles"] == 3

    def test_update_status_rejects_out_of_range_progress(self):
        repository = self.store.create(URL, "octo", "demo")
        with pytest.raises(ValueError):
            self.store.update_status(repository.id, IndexStatus.INDEXING, 101, "x")
        with pytest.raises(ValueError):
            self.store.update_status(repository.id, IndexStatus.INDEXING, -1, "x")

    def test_update_status_missing_repository(self):
        with pytest.raises(RepositoryNotFoundError):
            self.store.update_status(42, IndexStatus.INDEXING, 5, "x")

    def test_completed_forces_full_progress_and_stamps_indexed_at(self):
        repository = self.store.create(URL, "octo", "demo")
        self.store.update_status(repository.id, IndexStatus.INDEXING, 5, "Fetching")
        row = self.store.update_status(repository.id, IndexStatus.COMPLETED, 90, "done")

        assert row.progress == 100
        assert row.completed_at == self.clock.now
        fetched = self.store.get(repository.id)
        assert fetched.progress == 100
        assert fetched.indexed_at == self.clock.now

    def test_new_run_clears_previous_error(self):
        repository = self.store.create(URL, "octo", "demo")
        self.store.update_status(
            repository.id, IndexStatus.FAILED, 0, "Indexing failed", error="boom"
        )
        assert self.store.get(repository.id).error_message == "boom"

        self.clock.advance(minutes=5)
        row = self.store.update_status(repository.id, IndexStatus.INDEXING, 5, "Fetching")

        assert row.error_message is None
        assert row.completed_at is None
        assert row.started_at == self.clock.now
        assert self.store.get(repository.id).error_message is None

    def test_record_event(self):
        repository = self.store.create(URL, "octo", "demo")
        event = ProgressEvent(
            repo_id=repository.id,
            status=IndexStatus.INDEXING,
            progress=40,
            step="Building search index...",
            total_files=10,
            indexed_files=0,
        )
        self.store.record(event)

        status = self.store.get_status(repository.id)
        assert status["progress"] == 40
        assert event.to_dict()["currentStep"] == "Building search index..."

    def test_is_run_stale(self):
        repository = self.store.create(URL, "octo", "demo")
        self.store.update_status(repository.id, IndexStatus.INDEXING, 50, "Halfway")

        self.clock.advance(minutes=29)
        assert not self.store.is_run_stale(repository.id)

        self.clock.advance(minutes=1)
        assert self.store.is_run_stale(repository.id)
        assert not self.store.is_run_stale(repository.id, window_minutes=60)

    # Cache

    def test_check_cache_miss(self):
        check = self.store.check_cache(URL)
        assert not check.cached
        assert check.record is None

    def test_check_cache_hit_counts_access(self):
        repository = self._completed_repository()

        check = self.store.check_cache(URL)

        assert check.cached
        assert check.completed
        assert check.expires_at == self.clock.now + timedelta(hours=24)
        assert check.record.access_count == 1
        assert self.store.get(repository.id).last_accessed_at == self.clock.now

    def test_check_cache_expired_does_not_count_access(self):
        repository = self._completed_repository()
        self.clock.advance(hours=24)

        check = self.store.check_cache(URL)

        assert not check.cached
        assert check.completed
        assert self.store.get(repository.id).access_count == 0

    def test_check_cache_indexing(self):
        repository = self.store.create(URL, "octo", "demo")
        self.store.update_status(repository.id, IndexStatus.INDEXING, 50, "Halfway")

        check = self.store.check_cache(URL)

        assert not check.cached
        assert check.indexing
        assert self.store.get(repository.id).access_count == 0

    def test_check_cache_degrades_to_miss(self, monkeypatch):
        self._completed_repository()

        def broken(repo_url):
            raise PersistenceError("database is locked")

        monkeypatch.setattr(self.store, "get_by_url", broken)
        check = self.store.check_cache(URL)

        assert not check.cached
        assert check.record is None

    def test_clear_cache_removes_children(self):
        repository = self._completed_repository()
        self.store.save_file(repository.id, "a.py", "print(1)")
        self.store.save_file(repository.id, "b.py", "print(2)")

        assert self.store.clear_cache(repository.id) is True

        assert self.store.get_by_url(URL) is None
        assert self.store.get_progress(repository.id) is None
        with self.database.session() as session:
            assert session.exec(select(IndexedFile)).all() == []

        assert self.store.clear_cache(repository.id) is False

    def test_clear_files_keeps_record(self):
        repository = self._completed_repository()
        other = self.store.create("https://github.com/octo/other", "octo", "other")
        self.store.save_file(repository.id, "a.py", "print(1)")
        self.store.save_file(repository.id, "b.py", "print(2)")
        self.store.save_file(other.id, "c.py", "print(3)")

        assert self.store.clear_files(repository.id) == 2

        assert self.store.list_files(repository.id) == []
        assert [f.file_path for f in self.store.list_files(other.id)] == ["c.py"]
        assert self.store.get(repository.id).status == IndexStatus.COMPLETED

    def test_list_repositories_by_recent_access(self):
        first = self.store.create("https://github.com/octo/first", "octo", "first")
        second = self.store.create("https://github.com/octo/second", "octo", "second")
        self.store.create("https://github.com/octo/never", "octo", "never")

        self.store.update_access(first.id)
        self.clock.advance(minutes=1)
        self.store.update_access(second.id)

        names = [repo.name for repo in self.store.list_repositories()]
        assert names == ["second", "first", "never"]
        assert len(self.store.list_repositories(limit=1)) == 1

    # Insights

    def test_insights_round_trip(self):
        repository = self.store.create(URL, "octo", "demo")
        assert self.store.get_insights(repository.id) is None

        self.store.update_insights(
            repository.id, summary="A demo", quickstart="pip install demo"
        )
        self.store.update_insights(repository.id, contribution_guide="Open a PR")

        assert self.store.get_insights(repository.id) == {
            "summary": "A demo",
            "quickstart": "pip install demo",
            "contribution_guide": "Open a PR",
        }

    # Files

    def test_save_file_upserts(self):
        repository = self.store.create(URL, "octo", "demo")

        self.store.save_file(repository.id, "src/app.py", "v1", language="Python")
        self.store.save_file(repository.id, "src/app.py", "version two", language="Python")

        files = self.store.list_files(repository.id)
        assert len(files) == 1
        assert files[0].content == "version two"
        assert files[0].size == len("version two")
        assert self.store.get_file(repository.id, "src/app.py").language == "Python"
        assert self.store.get_file(repository.id, "missing.py") is None

    def test_list_files_ordered_by_path(self):
        repository = self.store.create(URL, "octo", "demo")
        for path in ["z.py", "a.py", "m/b.py"]:
            self.store.save_file(repository.id, path, "x")

        assert [f.file_path for f in self.store.list_files(repository.id)] == [
            "a.py",
            "m/b.py",
            "z.py",
        ]
