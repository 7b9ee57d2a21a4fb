"""
Runtime configuration for CodeMentor.

Settings are read from the environment (optionally seeded from a ``.env``
file) and passed explicitly to every service that needs them.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_API_BASE_URL = "https://api.github.com"
DEFAULT_BRANCH = "main"

MAX_FILE_SIZE = 256 * 1024
DEFAULT_CONCURRENCY = 5
DEFAULT_CACHE_TTL_HOURS = 24
DEFAULT_HOST_TIMEOUT = 15.0
POPULAR_STAR_THRESHOLD = 1000
RATE_LIMIT_FLOOR = 5
STALE_RUN_MINUTES = 30

MAX_RELEVANT_FILES = 8
MAX_CONTEXT_CHARS = 3000

PLACEHOLDER_CONTENT = "// Content unavailable"


@dataclass
class RetrySettings:
    """Attempt ceiling and base delay (seconds) for a retry policy."""

    max_attempts: int = 3
    base_delay: float = 1.0


@dataclass
class Settings:
    """All tunables for a CodeMentor process."""

    github_token: str | None = None
    github_api_base_url: str = DEFAULT_API_BASE_URL
    home_dir: Path = field(default_factory=lambda: Path.home() / ".codementor")
    concurrency: int = DEFAULT_CONCURRENCY
    max_file_size: int = MAX_FILE_SIZE
    host_timeout: float = DEFAULT_HOST_TIMEOUT
    cache_ttl_hours: int = DEFAULT_CACHE_TTL_HOURS
    popular_star_threshold: int = POPULAR_STAR_THRESHOLD
    rate_limit_floor: int = RATE_LIMIT_FLOOR
    stale_run_minutes: int = STALE_RUN_MINUTES
    max_relevant_files: int = MAX_RELEVANT_FILES
    max_context_chars: int = MAX_CONTEXT_CHARS
    fetch_retry: RetrySettings = field(
        default_factory=lambda: RetrySettings(max_attempts=3, base_delay=0.4)
    )
    persistence_retry: RetrySettings = field(
        default_factory=lambda: RetrySettings(max_attempts=3, base_delay=1.0)
    )

    @property
    def db_path(self) -> Path:
        """Relational datastore file."""
        return self.home_dir / "db.sqlite"

    @property
    def search_db_path(self) -> Path:
        """Full-text search index file."""
        return self.home_dir / "search.sqlite"

    @classmethod
    def from_env(cls, env_file: str | None = None) -> "Settings":
        """Build settings from environment variables.

        Args:
            env_file: Optional ``.env`` file to load before reading the
                environment. Existing variables are never overridden.

        Returns:
            Populated Settings instance
        """
        load_dotenv(env_file, override=False)

        settings = cls(
            github_token=os.environ.get("GITHUB_TOKEN") or None,
            github_api_base_url=os.environ.get(
                "GITHUB_API_BASE_URL", DEFAULT_API_BASE_URL
            ),
        )

        home = os.environ.get("CODEMENTOR_HOME")
        if home:
            settings.home_dir = Path(home).expanduser()

        settings.concurrency = _env_int("CODEMENTOR_CONCURRENCY", settings.concurrency)
        settings.cache_ttl_hours = _env_int(
            "CODEMENTOR_CACHE_TTL_HOURS", settings.cache_ttl_hours
        )
        settings.host_timeout = _env_float(
            "CODEMENTOR_HOST_TIMEOUT", settings.host_timeout
        )
        return settings


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value
