"""
Data types for the wiki core.

Documents, attachments and index entries are plain dataclasses. The
metadata index and the attachment index are stored as JSON with camelCase
keys so that every client sharing a bucket reads the same shape.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .errors import InvalidInput


CONTENT_EXTENSION = ".md"

# Characters never allowed in a page path or a stored filename
_PATH_BLOCKED_RE = re.compile(r'[<>:"|?*\\\x00-\x1f\x7f]')
_FILENAME_UNSAFE_RE = re.compile(r'[<>:"|?*/\\\x00-\x1f\x7f]')

MAX_PATH_LENGTH = 1024

# Executable and script types refused at upload
DANGEROUS_EXTENSIONS = frozenset({
    ".exe", ".bat", ".cmd", ".com", ".pif", ".scr", ".vbs", ".js",
})

IMAGE_EXTENSIONS = frozenset({
    ".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp", ".bmp", ".ico",
})


def utc_now() -> str:
    """Current UTC timestamp in canonical format: YYYY-MM-DDTHH:MM:SS.

    All timestamps are UTC, stored without timezone suffix.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Accepts the canonical format as well as values written by other
    clients with milliseconds, 'Z' or '+00:00' suffixes.
    """
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def timestamp_sort_key(ts: Optional[str]) -> float:
    """Epoch seconds for a stored timestamp; unparseable values sort oldest."""
    if not ts:
        return 0.0
    try:
        return parse_utc_timestamp(ts).timestamp()
    except (ValueError, OverflowError):
        return 0.0


def file_extension(name: str) -> str:
    """Lowercased extension including the dot, or '' when there is none."""
    dot = name.rfind(".")
    if dot == -1:
        return ""
    return name[dot:].lower()


# ---------------------------------------------------------------------------
# Validation and derivation helpers
# ---------------------------------------------------------------------------

def validate_page_path(path: str, extension: str = CONTENT_EXTENSION) -> None:
    """Validate a page path before any I/O.

    Raises:
        InvalidInput: empty path, wrong extension, disallowed characters,
            absolute path or traversal segments
    """
    if not path or not path.strip():
        raise InvalidInput("Page path cannot be empty")
    if len(path) > MAX_PATH_LENGTH:
        raise InvalidInput(f"Page path must be at most {MAX_PATH_LENGTH} characters")
    if not path.endswith(extension):
        raise InvalidInput(f"Page path must end with {extension} extension: {path!r}")
    if _PATH_BLOCKED_RE.search(path):
        raise InvalidInput(f"Page path contains invalid characters: {path!r}")
    if path.startswith("/"):
        raise InvalidInput(f"Page path cannot be absolute: {path!r}")
    segments = path.split("/")
    if any(seg in ("", ".", "..") for seg in segments):
        raise InvalidInput(f"Page path cannot contain relative or empty segments: {path!r}")


def sanitize_filename(filename: str) -> str:
    """Normalize an uploaded filename for use in a storage id.

    Deterministic and idempotent: unsafe characters become '_', runs of
    whitespace and underscores collapse to one '_', leading/trailing
    underscores are trimmed and the result is lowercased.
    """
    name = _FILENAME_UNSAFE_RE.sub("_", filename)
    name = re.sub(r"\s+", "_", name)
    name = re.sub(r"_{2,}", "_", name)
    return name.strip("_").lower()


def validate_upload(filename: str, size: int, max_size: int) -> None:
    """Validate an upload before it is stored.

    Raises:
        InvalidInput: oversize file, missing name or dangerous extension
    """
    if size > max_size:
        raise InvalidInput(
            f"File size ({size / (1024 * 1024):.1f}MB) exceeds maximum allowed "
            f"size of {max_size / (1024 * 1024):.1f}MB",
            details={"size": size, "max_size": max_size},
        )
    if not filename or not filename.strip():
        raise InvalidInput("File must have a valid name")
    ext = file_extension(filename)
    if ext in DANGEROUS_EXTENSIONS:
        raise InvalidInput(f"File type {ext} is not allowed for security reasons")


def extract_title(content: str) -> Optional[str]:
    """First top-level '# ' heading in markdown content, if any."""
    for line in content.split("\n"):
        stripped = line.strip()
        if stripped.startswith("# "):
            title = stripped[2:].strip()
            if title:
                return title
    return None


def title_from_path(path: str, extension: str = CONTENT_EXTENSION) -> str:
    """Readable title from the final path segment: 'my-page.md' -> 'my page'."""
    filename = path.rsplit("/", 1)[-1] or path
    if filename.endswith(extension):
        filename = filename[: -len(extension)]
    return filename.replace("-", " ").replace("_", " ")


def extract_tags(content: str) -> list[str]:
    """Tags from a 'tags: a, b, c' line (first such line wins)."""
    for line in content.split("\n"):
        stripped = line.strip()
        if stripped.lower().startswith("tags:"):
            raw = stripped[5:].strip()
            return [tag.strip() for tag in raw.split(",") if tag.strip()]
    return []


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

@dataclass
class PageMetadata:
    """
    Per-document metadata kept in the object's metadata sidecar.

    ``version`` starts at 1 and grows by exactly one per committed update.
    """
    created_at: str
    updated_at: str
    author: str
    version: int = 1
    tags: list[str] = field(default_factory=list)

    def to_object_metadata(self, title: str) -> dict[str, str]:
        """Flatten to the string map stored alongside the object."""
        meta = {
            "created-at": self.created_at,
            "updated-at": self.updated_at,
            "author": self.author,
            "version": str(self.version),
            "title": title,
        }
        if self.tags:
            meta["tags"] = ",".join(self.tags)
        return meta

    @classmethod
    def from_object_metadata(cls, meta: dict[str, str]) -> "PageMetadata":
        now = utc_now()
        try:
            version = int(meta.get("version", "1"))
        except ValueError:
            version = 1
        tags_raw = meta.get("tags", "")
        return cls(
            created_at=meta.get("created-at") or now,
            updated_at=meta.get("updated-at") or now,
            author=meta.get("author") or "unknown",
            version=version,
            tags=[t for t in tags_raw.split(",") if t] if tags_raw else [],
        )


@dataclass
class PageMeta:
    """Lightweight page summary: one entry of the metadata index."""
    path: str
    title: str
    created_at: str
    updated_at: str
    author: str
    tags: list[str] = field(default_factory=list)

    @property
    def depth(self) -> int:
        return len(self.path.split("/"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "title": self.title,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "author": self.author,
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PageMeta":
        return cls(
            path=data["path"],
            title=data.get("title") or title_from_path(data["path"]),
            created_at=data.get("createdAt", ""),
            updated_at=data.get("updatedAt", ""),
            author=data.get("author", "unknown"),
            tags=list(data.get("tags") or []),
        )


@dataclass
class Document:
    """
    A markdown document.

    Attributes:
        path: Unique, slash-hierarchical key ending with the content extension
        title: From the first '# ' heading, else from the filename
        content: Markdown text
        metadata: Timestamps, author, version counter and tags
        version_token: Opaque store token of the committed state this
            object was read from; required for updates
    """
    path: str
    title: str
    content: str
    metadata: PageMetadata
    version_token: Optional[str] = None

    @property
    def version(self) -> int:
        return self.metadata.version

    def to_meta(self) -> PageMeta:
        return PageMeta(
            path=self.path,
            title=self.title,
            created_at=self.metadata.created_at,
            updated_at=self.metadata.updated_at,
            author=self.metadata.author,
            tags=list(self.metadata.tags),
        )


@dataclass
class MetadataIndex:
    """Decoded contents of the aggregated page index."""
    pages: list[PageMeta] = field(default_factory=list)
    version: int = 0
    version_token: Optional[str] = None

    def find(self, path: str) -> Optional[PageMeta]:
        for page in self.pages:
            if page.path == path:
                return page
        return None


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------

@dataclass
class Attachment:
    """
    An uploaded binary file. Never mutated: only created or deleted.

    ``id`` is ``<upload-timestamp-ms>-<sanitized-filename>`` and doubles as
    the key suffix under the files prefix.
    """
    id: str
    original_filename: str
    size: int
    content_type: str
    uploaded_at: str
    url: str

    @property
    def is_image(self) -> bool:
        return file_extension(self.original_filename) in IMAGE_EXTENSIONS

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "originalFilename": self.original_filename,
            "size": self.size,
            "contentType": self.content_type,
            "uploadedAt": self.uploaded_at,
            "url": self.url,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Attachment":
        return cls(
            id=data["id"],
            original_filename=data.get("originalFilename") or data.get("filename") or data["id"],
            size=int(data.get("size") or 0),
            content_type=data.get("contentType") or "application/octet-stream",
            uploaded_at=data.get("uploadedAt", ""),
            url=data.get("url", ""),
        )


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class PageNode:
    """Folder or page node of the navigation tree. Pages have no children."""
    path: str
    title: str
    is_folder: bool
    children: Optional[list["PageNode"]] = None


@dataclass
class DeletionResult:
    """Outcome of deleting a page."""
    deleted_page: str
    orphaned_files: list[Attachment] = field(default_factory=list)

    @property
    def confirmation_required(self) -> bool:
        return bool(self.orphaned_files)


@dataclass
class DeletionCheck:
    """Pre-flight report for a page deletion."""
    can_delete: bool
    orphaned_files: list[Attachment] = field(default_factory=list)
    referencing_pages: list[PageMeta] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class FileUsageStats:
    total_files: int = 0
    total_size: int = 0
    image_files: int = 0
    document_files: int = 0
    orphaned_files: int = 0
