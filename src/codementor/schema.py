"""
Database schema validation and maintenance utilities.

This module provides utilities for validating datastore schema integrity,
gathering statistics for the admin surface, and repairing rows left
behind by interrupted cache-clear operations.
"""

from sqlalchemy import text

from .database import Database

# Current schema version - increment when making schema changes
SCHEMA_VERSION = 1

REQUIRED_TABLES = ["repository", "indexedfile", "indexingprogress"]


class SchemaError(Exception):
    """Base exception for schema operations."""

    pass


class SchemaValidationError(SchemaError):
    """Raised when schema validation fails."""

    pass


def get_schema_version(database: Database) -> int:
    """Get current database schema version.

    Args:
        database: Datastore handle

    Returns:
        Schema version number (0 if not set)

    Raises:
        SchemaError: If unable to determine schema version
    """
    try:
        with database.engine.connect() as connection:
            exists = connection.execute(
                text(
                    "SELECT name FROM sqlite_master WHERE type='table' "
                    "AND name='schema_version'"
                )
            ).first()

            if not exists:
                # No schema_version table, assume version 0 (pre-versioning)
                return 0

            version = connection.execute(
                text("SELECT version FROM schema_version ORDER BY id DESC LIMIT 1")
            ).scalar()
            return int(version) if version is not None else 0

    except Exception as e:
        raise SchemaError(f"Failed to get schema version: {str(e)}") from e


def set_schema_version(database: Database, version: int = SCHEMA_VERSION) -> None:
    """Record a database schema version.

    Args:
        database: Datastore handle
        version: Schema version to set

    Raises:
        SchemaError: If unable to set schema version
    """
    try:
        with database.engine.begin() as connection:
            connection.execute(
                text(
                    """
                CREATE TABLE IF NOT EXISTS schema_version (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    version INTEGER NOT NULL,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                )
            """
                )
            )
            connection.execute(
                text("INSERT INTO schema_version (version) VALUES (:version)"),
                {"version": version},
            )

    except Exception as e:
        raise SchemaError(f"Failed to set schema version: {str(e)}") from e


def ensure_schema_version(database: Database) -> int:
    """Stamp the current schema version on a database that has none.

    Returns:
        The schema version recorded after the call
    """
    current = get_schema_version(database)
    if current == 0:
        set_schema_version(database, SCHEMA_VERSION)
        return SCHEMA_VERSION
    return current


def _count_orphans(connection, table: str) -> int:
    result = connection.execute(
        text(
            f"SELECT COUNT(*) FROM {table} "
            "WHERE repo_id NOT IN (SELECT id FROM repository)"
        )
    ).scalar()
    return int(result or 0)


def validate_schema(database: Database) -> dict[str, bool | str | int | list[str]]:
    """Validate database schema integrity.

    Args:
        database: Datastore handle

    Returns:
        Dictionary with validation results

    Raises:
        SchemaValidationError: If the database cannot be inspected
    """
    try:
        db_path = database.config.db_path
        validation_results: dict[str, bool | str | int | list[str]] = {
            "database_exists": db_path.exists(),
            "schema_version": 0,
            "tables_exist": False,
            "foreign_keys_enabled": False,
            "indexes_exist": False,
            "data_integrity": False,
        }

        if not db_path.exists():
            return validation_results

        validation_results["schema_version"] = get_schema_version(database)

        with database.engine.connect() as connection:
            existing_tables = []
            for table in REQUIRED_TABLES:
                result = connection.execute(
                    text(
                        "SELECT name FROM sqlite_master WHERE type='table' "
                        "AND name=:table"
                    ),
                    {"table": table},
                ).first()
                if result:
                    existing_tables.append(table)

            validation_results["tables_exist"] = len(existing_tables) == len(
                REQUIRED_TABLES
            )
            validation_results["existing_tables"] = existing_tables

            fk_result = connection.execute(text("PRAGMA foreign_keys")).first()
            validation_results["foreign_keys_enabled"] = (
                bool(fk_result[0]) if fk_result else False
            )

            index_result = connection.execute(
                text(
                    "SELECT name FROM sqlite_master WHERE type='index' "
                    "AND name NOT LIKE 'sqlite_%'"
                )
            ).all()
            validation_results["indexes_exist"] = len(index_result) > 0

            if validation_results["tables_exist"]:
                orphaned_files = _count_orphans(connection, "indexedfile")
                orphaned_progress = _count_orphans(connection, "indexingprogress")
                validation_results["orphaned_files"] = orphaned_files
                validation_results["orphaned_progress"] = orphaned_progress
                validation_results["data_integrity"] = (
                    orphaned_files == 0 and orphaned_progress == 0
                )

        return validation_results

    except Exception as e:
        raise SchemaValidationError(f"Schema validation failed: {str(e)}") from e


def check_migration_needed(database: Database) -> tuple[bool, int, int]:
    """Check if database migration is needed.

    Returns:
        Tuple of (migration_needed, current_version, target_version)
    """
    current_version = get_schema_version(database)
    return current_version < SCHEMA_VERSION, current_version, SCHEMA_VERSION


def get_database_statistics(database: Database) -> dict[str, int | float]:
    """Get database statistics and health information.

    Args:
        database: Datastore handle

    Returns:
        Dictionary with repository, file and run counts

    Raises:
        SchemaError: If unable to gather statistics
    """
    try:
        db_path = database.config.db_path
        stats: dict[str, int | float] = {
            "database_size_mb": 0.0,
            "repository_count": 0,
            "indexed_file_count": 0,
            "completed_repository_count": 0,
            "indexing_repository_count": 0,
            "failed_repository_count": 0,
        }

        if not db_path.exists():
            return stats

        size_bytes = db_path.stat().st_size
        stats["database_size_mb"] = round(size_bytes / (1024 * 1024), 2)

        with database.engine.connect() as connection:
            stats["repository_count"] = int(
                connection.execute(text("SELECT COUNT(*) FROM repository")).scalar()
                or 0
            )
            stats["indexed_file_count"] = int(
                connection.execute(text("SELECT COUNT(*) FROM indexedfile")).scalar()
                or 0
            )

            rows = connection.execute(
                text("SELECT status, COUNT(*) FROM repository GROUP BY status")
            ).all()
            by_status = {str(status).lower(): int(count) for status, count in rows}
            # Enum columns may be stored by name or by value
            for status in ("completed", "indexing", "failed"):
                stats[f"{status}_repository_count"] = by_status.get(status, 0)

        return stats

    except Exception as e:
        raise SchemaError(f"Failed to get database statistics: {str(e)}") from e


def repair_database(database: Database) -> dict[str, bool | int]:
    """Attempt to repair common database issues.

    Removes file and progress rows whose repository no longer exists and
    records the schema version if it was never set.

    Args:
        database: Datastore handle

    Returns:
        Dictionary with repair results

    Raises:
        SchemaError: If repair fails
    """
    try:
        repair_results: dict[str, bool | int] = {
            "orphaned_files_removed": 0,
            "orphaned_progress_removed": 0,
            "schema_version_set": False,
        }

        with database.engine.begin() as connection:
            files = connection.execute(
                text(
                    "DELETE FROM indexedfile "
                    "WHERE repo_id NOT IN (SELECT id FROM repository)"
                )
            )
            repair_results["orphaned_files_removed"] = files.rowcount or 0

            progress = connection.execute(
                text(
                    "DELETE FROM indexingprogress "
                    "WHERE repo_id NOT IN (SELECT id FROM repository)"
                )
            )
            repair_results["orphaned_progress_removed"] = progress.rowcount or 0

        if get_schema_version(database) == 0:
            set_schema_version(database, SCHEMA_VERSION)
            repair_results["schema_version_set"] = True

        return repair_results

    except SchemaError:
        raise
    except Exception as e:
        raise SchemaError(f"Database repair failed: {str(e)}") from e
