"""
Domain errors for blobwiki.

Every failure surfaced to callers is one of the classes below. Raw store
errors are translated once, at the store-access boundary (see
``retry.classify_error``); code above that boundary matches on the class
or on the stable ``code`` tag only.
"""

from typing import Any, Optional


class WikiError(Exception):
    """Base class for all blobwiki errors."""

    code = "UNKNOWN"
    retryable = False

    def __init__(self, message: str, *, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class NotFound(WikiError):
    """The page, file or object does not exist."""

    code = "NOT_FOUND"


class AlreadyExists(WikiError):
    """Creation target is already present."""

    code = "ALREADY_EXISTS"


class EditConflict(WikiError):
    """
    Optimistic-lock mismatch on a document.

    ``conflict_data`` carries the concurrently committed document (when it
    could be read back) so the caller can merge. Never retried automatically.
    """

    code = "EDIT_CONFLICT"

    def __init__(
        self,
        message: str,
        *,
        conflict_data: Optional[Any] = None,
        details: Any = None,
    ):
        super().__init__(message, details=details)
        self.conflict_data = conflict_data


class IndexConflict(WikiError):
    """Metadata index update gave up after its bounded retries."""

    code = "INDEX_CONFLICT"


class IndexUnreadable(IndexConflict):
    """
    The index object exists but does not parse.

    Mutations refuse to build on it; only a full rebuild replaces it.
    """

    code = "INDEX_UNREADABLE"


class AccessDenied(WikiError):
    """The store refused the operation for the current credentials."""

    code = "ACCESS_DENIED"


class AuthenticationFailed(AccessDenied):
    """Credentials are invalid or expired; refresh happens outside blobwiki."""

    code = "AUTH_FAILED"


class InvalidInput(WikiError):
    """Validation failure. Raised before any I/O and never retried."""

    code = "INVALID_INPUT"


class NetworkError(WikiError):
    """Transient connectivity, timeout or service-availability failure."""

    code = "NETWORK_ERROR"
    retryable = True


class Unknown(WikiError):
    """Anything the classifier could not place."""

    code = "UNKNOWN"
