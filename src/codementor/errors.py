"""
Error taxonomy for CodeMentor.

Every failure that crosses a module boundary is raised as one of these
types so callers can decide between retrying, degrading and failing a run.
"""

from sqlalchemy.exc import OperationalError


class CodeMentorError(Exception):
    """Base exception for CodeMentor operations."""

    pass


class InvalidInputError(CodeMentorError):
    """Raised when a repository reference is malformed.

    Always raised before any network or storage call is made.
    """

    pass


class HostError(CodeMentorError):
    """Base exception for failures reported by the repository host."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class NotFoundError(HostError):
    """Raised when the host entity does not exist. Never retried."""

    pass


class RateLimitedError(HostError):
    """Raised when the host is throttling requests."""

    pass


class AccessDeniedError(HostError):
    """Raised on HTTP 403 responses that are not rate limits."""

    pass


class TransientHostError(HostError):
    """Raised for timeouts, 5xx responses and other unexpected host faults."""

    pass


class PersistenceError(CodeMentorError):
    """Raised when the datastore or the search index fails."""

    pass


class RepositoryAlreadyExistsError(PersistenceError):
    """Raised when creating a second record for the same repository URL."""

    pass


class RepositoryNotFoundError(CodeMentorError):
    """Raised when a repository record is not present in the store."""

    pass


class IndexingError(CodeMentorError):
    """Raised for run-level indexing failures such as zero indexed files."""

    pass


def is_retryable(error: BaseException) -> bool:
    """Return True when an error is worth another attempt.

    Only host faults, datastore faults and SQLite lock or I/O errors are
    retried. Programming errors and terminal host answers are not.
    """
    if isinstance(error, RepositoryAlreadyExistsError):
        return False
    return isinstance(error, (TransientHostError, PersistenceError, OperationalError))
