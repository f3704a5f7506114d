"""
blobwiki: a multi-writer markdown wiki on a plain object store.

Pages, attachments and the page index live as objects in one bucket.
Concurrent clients coordinate through conditional writes only.
"""

from .errors import (
    AccessDenied,
    AlreadyExists,
    AuthenticationFailed,
    EditConflict,
    IndexConflict,
    InvalidInput,
    NetworkError,
    NotFound,
    Unknown,
    WikiError,
)
from .config import WikiSettings, load_or_create_settings, load_settings, save_settings
from .retry import RetryPolicy, classify_error
from .types import Attachment, DeletionResult, Document, PageMeta, PageNode
from .wiki import Wiki

__version__ = "0.1.0"

__all__ = [
    "Wiki",
    "WikiSettings",
    "load_settings",
    "save_settings",
    "load_or_create_settings",
    "RetryPolicy",
    "classify_error",
    "Document",
    "PageMeta",
    "PageNode",
    "Attachment",
    "DeletionResult",
    "WikiError",
    "NotFound",
    "AlreadyExists",
    "EditConflict",
    "IndexConflict",
    "AccessDenied",
    "AuthenticationFailed",
    "InvalidInput",
    "NetworkError",
    "Unknown",
]
