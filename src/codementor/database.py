"""
Database initialization and session management for CodeMentor.

This module handles SQLite database setup, table creation, and provides
session management for the relational datastore. A ``Database`` is
constructed once per process and handed to the services that need it.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine.base import Engine
from sqlmodel import Session, SQLModel, create_engine, text

# Import models so they are registered with SQLModel metadata
from . import models  # noqa: F401


class DatabaseConfig:
    """Configuration for database setup."""

    def __init__(self, db_path: str | Path | None = None):
        """Initialize database configuration.

        Args:
            db_path: Optional custom database path. Defaults to ~/.codementor/db.sqlite
        """
        if db_path is None:
            home = Path.home()
            self.codementor_dir = home / ".codementor"
            self.db_path = self.codementor_dir / "db.sqlite"
        else:
            self.db_path = Path(db_path)
            self.codementor_dir = self.db_path.parent

        self.database_url = f"sqlite:///{self.db_path}"


def _enable_sqlite_pragmas(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_sqlite_engine(db_path: str | Path) -> Engine:
    """Create a SQLite engine in WAL mode with foreign keys enforced.

    Args:
        db_path: Database file location; parent directories are created

    Returns:
        SQLAlchemy engine instance
    """
    config = DatabaseConfig(db_path)
    config.codementor_dir.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        config.database_url,
        echo=False,
        connect_args={"check_same_thread": False},  # sessions open in worker threads
    )
    event.listen(engine, "connect", _enable_sqlite_pragmas)

    with engine.connect() as connection:
        connection.execute(text("PRAGMA journal_mode=WAL"))
        connection.commit()

    return engine


class Database:
    """Handle on the relational datastore."""

    def __init__(self, db_path: str | Path | None = None):
        """Initialize the handle and create the engine.

        Args:
            db_path: Optional custom database path
        """
        self.config = DatabaseConfig(db_path)
        self.engine: Engine = create_sqlite_engine(self.config.db_path)

    def create_tables(self) -> None:
        """Create all tables that do not exist yet."""
        SQLModel.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Get a database session context manager.

        Objects stay readable after commit so they can be returned to
        callers once the session is closed.

        Yields:
            SQLModel Session instance

        Example:
            with database.session() as session:
                session.add(Repository(repo_url=url, owner="o", name="r"))
                session.commit()
        """
        with Session(self.engine, expire_on_commit=False) as session:
            try:
                yield session
            except Exception:
                session.rollback()
                raise

    def info(self) -> dict[str, str | bool | float]:
        """Get database information and status.

        Returns:
            Dictionary with database information
        """
        db_path = self.config.db_path
        info: dict[str, str | bool | float] = {
            "database_path": str(db_path),
            "database_exists": db_path.exists(),
            "codementor_dir": str(self.config.codementor_dir),
            "dir_exists": self.config.codementor_dir.exists(),
        }

        if db_path.exists():
            size_bytes = db_path.stat().st_size
            info["size_mb"] = round(size_bytes / (1024 * 1024), 2)

        return info

    def dispose(self) -> None:
        """Close all pooled connections.

        Useful in tests when database files must be removed or replaced.
        """
        self.engine.dispose()
