"""
Database models for CodeMentor using SQLModel.

This module defines the persisted state of the indexing pipeline:
repository records, the files indexed for them and the latest
indexing progress line a polling client reads.
Uses SQLModel for type-safe ORM with SQLite backend.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, Relationship, SQLModel


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Aware UTC datetimes stored in SQLite's naive DATETIME format.

    Values are normalized to UTC on the way in (naive values are taken as
    UTC) and come back with ``tzinfo=timezone.utc``.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class IndexStatus(str, Enum):
    """Lifecycle states of a repository indexing run."""

    PENDING = "pending"
    INDEXING = "indexing"
    COMPLETED = "completed"
    FAILED = "failed"


class FileType(str, Enum):
    """Node kinds in a repository tree."""

    FILE = "file"
    FOLDER = "folder"


class Repository(SQLModel, table=True):
    """
    Repository record for one remote repository.

    Holds host metadata, the current indexing state, cache bookkeeping
    and the optional insights generated after file indexing.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    repo_url: str = Field(
        index=True, unique=True, description="Canonical repository URL"
    )
    owner: str = Field(description="Repository owner on the host")
    name: str = Field(description="Repository name on the host")
    description: Optional[str] = Field(default=None)
    stars: int = Field(default=0)
    languages: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    default_branch: str = Field(default="main")

    status: IndexStatus = Field(default=IndexStatus.PENDING, index=True)
    progress: int = Field(default=0, description="Indexing progress, 0-100")
    total_files: int = Field(default=0)
    indexed_files: int = Field(default=0)
    error_message: Optional[str] = Field(default=None)

    indexed_at: Optional[datetime] = Field(
        default=None,
        sa_type=UTCDateTime,
        description="When the last successful run completed",
    )
    last_accessed_at: Optional[datetime] = Field(
        default=None, index=True, sa_type=UTCDateTime
    )
    access_count: int = Field(default=0)
    cache_ttl_hours: int = Field(default=24)
    is_popular: bool = Field(default=False)

    summary: Optional[str] = Field(default=None)
    quickstart: Optional[str] = Field(default=None)
    contribution_guide: Optional[str] = Field(default=None)

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    # Relationship: one repository owns many indexed files
    files: list["IndexedFile"] = Relationship(back_populates="repository")

    @property
    def cache_expires_at(self) -> Optional[datetime]:
        """Instant at which a completed cache entry becomes stale."""
        if self.indexed_at is None:
            return None
        return self.indexed_at + timedelta(hours=self.cache_ttl_hours)

    def is_cache_valid(self, now: Optional[datetime] = None) -> bool:
        """Whether the cache window is still open.

        The window is half-open: valid strictly before
        ``indexed_at + cache_ttl_hours``.
        """
        expires_at = self.cache_expires_at
        if expires_at is None:
            return False
        return (now or utcnow()) < expires_at

    def is_cache_hit(self, now: Optional[datetime] = None) -> bool:
        """A cache hit needs a completed run inside the TTL window."""
        return self.status == IndexStatus.COMPLETED and self.is_cache_valid(now)


class IndexedFile(SQLModel, table=True):
    """
    A file (or folder) indexed for a repository.

    Identified by the owning repository and its path, and deleted
    together with the repository when the cache is cleared.
    """

    __table_args__ = (UniqueConstraint("repo_id", "file_path"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    repo_id: int = Field(
        foreign_key="repository.id",
        index=True,
        description="Reference to parent repository",
    )
    file_path: str = Field(
        index=True, description="POSIX path of the file within the repository"
    )
    content: str = Field(default="", description="Full text, bounded by fetch size")
    size: int = Field(default=0)
    language: Optional[str] = Field(default=None)
    type: FileType = Field(default=FileType.FILE)
    indexed_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    # Relationship: each indexed file belongs to one repository
    repository: Optional[Repository] = Relationship(back_populates="files")

    @property
    def path(self) -> str:
        return self.file_path


class IndexingProgress(SQLModel, table=True):
    """
    Latest observable status line of a repository's indexing run.

    Exactly one row per repository; every progress event overwrites it.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    repo_id: int = Field(foreign_key="repository.id", unique=True, index=True)
    status: IndexStatus = Field(default=IndexStatus.PENDING)
    progress: int = Field(default=0)
    current_step: str = Field(default="Starting...")
    total_files: int = Field(default=0)
    indexed_files: int = Field(default=0)
    error_message: Optional[str] = Field(default=None)
    started_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    def to_status(self) -> dict:
        """Serialize for the polling status surface."""
        return {
            "status": self.status.value,
            "progress": self.progress,
            "currentStep": self.current_step,
            "totalFiles": self.total_files,
            "indexedFiles": self.indexed_files,
            "errorMessage": self.error_message,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
        }
