"""
Full-text search index for CodeMentor using SQLite FTS5.

This module keeps one document per indexed file, scoped by repository id,
plus one metadata document per repository. Queries are ranked by BM25
with path matches weighted above content matches.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar, Union

from rich.panel import Panel
from rich.syntax import Syntax
from rich.text import Text
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .database import create_sqlite_engine
from .errors import PersistenceError
from .logging import get_logger
from .retry import RetryPolicy

T = TypeVar("T")

logger = get_logger("search")

# Column order of file_documents: repo_id, path, content, size, language, type
_BM25 = "bm25(file_documents, 0.0, 2.0, 1.0, 0.0, 0.0, 0.0)"

_SYNTAX_LANGUAGES = {
    "javascript": "javascript",
    "typescript": "typescript",
    "python": "python",
    "java": "java",
    "cpp": "cpp",
    "c": "c",
    "csharp": "csharp",
    "php": "php",
    "ruby": "ruby",
    "go": "go",
    "rust": "rust",
    "swift": "swift",
    "kotlin": "kotlin",
    "scala": "scala",
    "html": "html",
    "css": "css",
    "scss": "scss",
    "json": "json",
    "xml": "xml",
    "yaml": "yaml",
    "markdown": "markdown",
}


@dataclass
class SearchHit:
    """A file document returned by the search index."""

    path: str
    content: str = ""
    size: int = 0
    language: str | None = None
    type: str = "file"
    score: float = 0.0

    @property
    def basename(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def has_content(self) -> bool:
        return bool(self.content)

    def to_rich_panel(self, max_lines: int = 20) -> Panel:
        """Create a rich panel previewing this hit."""
        preview = "\n".join(self.content.splitlines()[:max_lines])
        lexer = _SYNTAX_LANGUAGES.get(self.language or "")

        renderable: Union[Syntax, Text]
        if lexer and preview:
            renderable = Syntax(preview, lexer, line_numbers=True)
        else:
            renderable = Text(preview or "(no content)")

        title = (
            f"[bold blue]{self.path}[/bold blue] "
            f"[dim]score {self.score:.2f}[/dim]"
        )
        return Panel(renderable, title=title, border_style="cyan")

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "content": self.content,
            "size": self.size,
            "language": self.language,
            "type": self.type,
            "score": self.score,
        }


def build_match_expression(query: str) -> str | None:
    """Turn free text into an FTS5 OR-query of quoted word tokens."""
    tokens = re.findall(r"[^\W_]+", query.lower())
    if not tokens:
        return None
    unique = list(dict.fromkeys(tokens))
    return " OR ".join(f'"{token}"' for token in unique)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SearchIndex:
    """SQLite FTS5 search engine scoped by repository."""

    def __init__(self, db_path: str | Path, retry_policy: RetryPolicy | None = None):
        """Initialize the index.

        Args:
            db_path: Location of the search database file
            retry_policy: Policy applied to document writes
        """
        self.db_path = Path(db_path)
        self.engine = create_sqlite_engine(self.db_path)
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay=1.0)

    def _run(self, description: str, operation: Callable[[], T], retry: bool = False) -> T:
        def guarded() -> T:
            try:
                return operation()
            except SQLAlchemyError as e:
                raise PersistenceError(f"Search index failed to {description}: {str(e)}") from e

        if retry:
            return self.retry_policy.call(guarded, description)
        return guarded()

    def initialize(self) -> None:
        """Create the document tables if they do not exist."""

        def operation() -> None:
            with self.engine.begin() as connection:
                connection.execute(
                    text(
                        """
                    CREATE TABLE IF NOT EXISTS repository_documents (
                        repo_id INTEGER PRIMARY KEY,
                        repo_url TEXT NOT NULL,
                        owner TEXT,
                        name TEXT,
                        description TEXT,
                        languages TEXT
                    )
                """
                    )
                )
                connection.execute(
                    text(
                        """
                    CREATE VIRTUAL TABLE IF NOT EXISTS file_documents USING fts5(
                        repo_id UNINDEXED,
                        path,
                        content,
                        size UNINDEXED,
                        language UNINDEXED,
                        type UNINDEXED
                    )
                """
                    )
                )

        self._run("initialize", operation)

    def index_repository(
        self,
        repo_id: int,
        repo_url: str,
        owner: str,
        name: str,
        description: str | None = None,
        languages: list[str] | None = None,
    ) -> None:
        """Write (or replace) the repository metadata document."""

        def operation() -> None:
            with self.engine.begin() as connection:
                connection.execute(
                    text(
                        """
                    INSERT OR REPLACE INTO repository_documents
                        (repo_id, repo_url, owner, name, description, languages)
                    VALUES (:repo_id, :repo_url, :owner, :name, :description, :languages)
                """
                    ),
                    {
                        "repo_id": repo_id,
                        "repo_url": repo_url,
                        "owner": owner,
                        "name": name,
                        "description": description,
                        "languages": ",".join(languages or []),
                    },
                )

        self._run(f"index repository {repo_id}", operation, retry=True)

    def index_file(
        self,
        repo_id: int,
        path: str,
        content: str,
        size: int | None = None,
        language: str | None = None,
        file_type: str = "file",
    ) -> None:
        """Write (or replace) the document for ``(repo_id, path)``."""

        def operation() -> None:
            with self.engine.begin() as connection:
                connection.execute(
                    text(
                        "DELETE FROM file_documents "
                        "WHERE repo_id = :repo_id AND path = :path"
                    ),
                    {"repo_id": repo_id, "path": path},
                )
                connection.execute(
                    text(
                        """
                    INSERT INTO file_documents
                        (repo_id, path, content, size, language, type)
                    VALUES (:repo_id, :path, :content, :size, :language, :type)
                """
                    ),
                    {
                        "repo_id": repo_id,
                        "path": path,
                        "content": content,
                        "size": size if size is not None else len(content),
                        "language": language,
                        "type": file_type,
                    },
                )

        self._run(f"index file '{path}'", operation, retry=True)

    @staticmethod
    def _hit(row: Any, score: float | None = None) -> SearchHit:
        return SearchHit(
            path=row.path,
            content=row.content or "",
            size=int(row.size or 0),
            language=row.language,
            type=row.type or "file",
            score=float(score if score is not None else row.score),
        )

    def search_files(self, repo_id: int, query: str, limit: int = 20) -> list[SearchHit]:
        """Free-text query scoped to one repository.

        An empty query or ``"*"`` lists the repository's files by path
        with a score of zero.

        Returns:
            Hits ordered by relevance, highest first
        """
        expression = None if query.strip() in ("", "*") else build_match_expression(query)
        if expression is None:
            return self.list_files(repo_id, limit=limit)

        def operation() -> list[SearchHit]:
            with self.engine.connect() as connection:
                rows = connection.execute(
                    text(
                        f"""
                    SELECT path, content, size, language, type, -{_BM25} AS score
                    FROM file_documents
                    WHERE file_documents MATCH :expression AND repo_id = :repo_id
                    ORDER BY score DESC, length(path), path
                    LIMIT :limit
                """
                    ),
                    {"expression": expression, "repo_id": repo_id, "limit": limit},
                ).all()
                return [self._hit(row) for row in rows]

        return self._run(f"search '{query}'", operation)

    def list_files(self, repo_id: int, limit: int | None = None) -> list[SearchHit]:
        """All file documents of a repository, ordered by path."""

        def operation() -> list[SearchHit]:
            with self.engine.connect() as connection:
                rows = connection.execute(
                    text(
                        """
                    SELECT path, content, size, language, type
                    FROM file_documents
                    WHERE repo_id = :repo_id
                    ORDER BY path
                    LIMIT :limit
                """
                    ),
                    {"repo_id": repo_id, "limit": limit if limit is not None else -1},
                ).all()
                return [self._hit(row, score=0.0) for row in rows]

        return self._run(f"list files of repository {repo_id}", operation)

    def find_by_filename(
        self, repo_id: int, filename: str, limit: int = 20
    ) -> list[SearchHit]:
        """Files whose path contains ``filename``, case-insensitively."""
        pattern = f"%{_escape_like(filename.lower())}%"

        def operation() -> list[SearchHit]:
            with self.engine.connect() as connection:
                rows = connection.execute(
                    text(
                        """
                    SELECT path, content, size, language, type
                    FROM file_documents
                    WHERE repo_id = :repo_id AND lower(path) LIKE :pattern ESCAPE '\\'
                    ORDER BY length(path), path
                    LIMIT :limit
                """
                    ),
                    {"repo_id": repo_id, "pattern": pattern, "limit": limit},
                ).all()
                return [self._hit(row, score=0.0) for row in rows]

        return self._run(f"find '{filename}'", operation)

    def get_file(self, repo_id: int, path: str) -> SearchHit | None:
        def operation() -> SearchHit | None:
            with self.engine.connect() as connection:
                row = connection.execute(
                    text(
                        """
                    SELECT path, content, size, language, type
                    FROM file_documents
                    WHERE repo_id = :repo_id AND path = :path
                    LIMIT 1
                """
                    ),
                    {"repo_id": repo_id, "path": path},
                ).first()
                return self._hit(row, score=0.0) if row is not None else None

        return self._run(f"get file '{path}'", operation)

    def count_files(self, repo_id: int) -> int:
        def operation() -> int:
            with self.engine.connect() as connection:
                result = connection.execute(
                    text("SELECT COUNT(*) FROM file_documents WHERE repo_id = :repo_id"),
                    {"repo_id": repo_id},
                ).scalar()
                return int(result or 0)

        return self._run(f"count files of repository {repo_id}", operation)

    def delete_repository(self, repo_id: int) -> int:
        """Delete the repository document and all its file documents.

        Returns:
            Number of file documents removed
        """

        def operation() -> int:
            with self.engine.begin() as connection:
                # rowcount is unreliable for virtual tables
                removed = connection.execute(
                    text("SELECT COUNT(*) FROM file_documents WHERE repo_id = :repo_id"),
                    {"repo_id": repo_id},
                ).scalar()
                connection.execute(
                    text("DELETE FROM file_documents WHERE repo_id = :repo_id"),
                    {"repo_id": repo_id},
                )
                connection.execute(
                    text("DELETE FROM repository_documents WHERE repo_id = :repo_id"),
                    {"repo_id": repo_id},
                )
                return int(removed or 0)

        return self._run(f"delete repository {repo_id}", operation, retry=True)

    def stats(self) -> dict[str, int | float | str]:
        """Document counts and file size of the index."""

        def operation() -> dict[str, int | float | str]:
            with self.engine.connect() as connection:
                repositories = connection.execute(
                    text("SELECT COUNT(*) FROM repository_documents")
                ).scalar()
                files = connection.execute(
                    text("SELECT COUNT(*) FROM file_documents")
                ).scalar()

            size_mb = 0.0
            if self.db_path.exists():
                size_mb = round(self.db_path.stat().st_size / (1024 * 1024), 2)
            return {
                "search_path": str(self.db_path),
                "repository_documents": int(repositories or 0),
                "file_documents": int(files or 0),
                "size_mb": size_mb,
            }

        return self._run("gather statistics", operation)

    def dispose(self) -> None:
        self.engine.dispose()
