"""
Shared wiki configuration stored in the bucket.

Unlike the client settings in ``config.py``, this object is read by every
client: ``<config-prefix>/wiki.json``. An absent object reads as the
defaults. Writes are validated first and overwrite unconditionally
(last writer wins). Reads are cached for five minutes.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Any, Optional

from .cache import ConfigCache
from .errors import InvalidInput, NotFound
from .protocol import ObjectStoreProtocol
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

VALID_THEMES = ("default", "dark", "light")
MAX_TITLE_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500
CACHE_KEY = "site"


@dataclass
class SiteFeatures:
    file_upload: bool = True
    user_management: bool = True
    search: bool = True
    page_history: bool = True


@dataclass
class SiteLimits:
    max_file_size: int = 10 * 1024 * 1024
    max_pages: int = 1000
    max_files_per_page: int = 50


@dataclass
class SiteConfig:
    title: str = "blobwiki"
    description: str = "A serverless markdown wiki"
    allow_guest_access: bool = True
    theme: str = "default"
    features: SiteFeatures = field(default_factory=SiteFeatures)
    limits: SiteLimits = field(default_factory=SiteLimits)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "allowGuestAccess": self.allow_guest_access,
            "theme": self.theme,
            "features": {
                "fileUpload": self.features.file_upload,
                "userManagement": self.features.user_management,
                "search": self.features.search,
                "pageHistory": self.features.page_history,
            },
            "limits": {
                "maxFileSize": self.limits.max_file_size,
                "maxPages": self.limits.max_pages,
                "maxFilesPerPage": self.limits.max_files_per_page,
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SiteConfig":
        """Missing keys take their defaults."""
        default = cls()
        f = data.get("features") or {}
        lim = data.get("limits") or {}
        return cls(
            title=data.get("title", default.title),
            description=data.get("description", default.description),
            allow_guest_access=data.get("allowGuestAccess", default.allow_guest_access),
            theme=data.get("theme", default.theme),
            features=SiteFeatures(
                file_upload=f.get("fileUpload", default.features.file_upload),
                user_management=f.get("userManagement", default.features.user_management),
                search=f.get("search", default.features.search),
                page_history=f.get("pageHistory", default.features.page_history),
            ),
            limits=SiteLimits(
                max_file_size=lim.get("maxFileSize", default.limits.max_file_size),
                max_pages=lim.get("maxPages", default.limits.max_pages),
                max_files_per_page=lim.get("maxFilesPerPage", default.limits.max_files_per_page),
            ),
        )


def validate_site_config(config: SiteConfig) -> list[str]:
    """Problems with ``config``; empty when it is valid."""
    errors = []
    if not isinstance(config.title, str) or not config.title.strip():
        errors.append("title is required")
    elif len(config.title) > MAX_TITLE_LENGTH:
        errors.append(f"title must be at most {MAX_TITLE_LENGTH} characters")
    if not isinstance(config.description, str):
        errors.append("description must be a string")
    elif len(config.description) > MAX_DESCRIPTION_LENGTH:
        errors.append(f"description must be at most {MAX_DESCRIPTION_LENGTH} characters")
    if config.theme not in VALID_THEMES:
        errors.append(f"theme must be one of {', '.join(VALID_THEMES)}")
    if not isinstance(config.allow_guest_access, bool):
        errors.append("allow_guest_access must be a boolean")
    for name, value in vars(config.features).items():
        if not isinstance(value, bool):
            errors.append(f"features.{name} must be a boolean")
    for name, value in vars(config.limits).items():
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            errors.append(f"limits.{name} must be a positive integer")
    return errors


class SiteConfigService:
    """Cached access to the shared wiki configuration."""

    def __init__(
        self,
        store: ObjectStoreProtocol,
        policy: RetryPolicy,
        *,
        key: str = "config/wiki.json",
        cache: Optional[ConfigCache] = None,
    ):
        self._store = store
        self._policy = policy
        self.key = key
        self._cache = cache if cache is not None else ConfigCache()

    async def load(self) -> SiteConfig:
        cached = self._cache.get(CACHE_KEY)
        if cached is not None:
            return cached
        try:
            obj = await self._policy.run(partial(self._store.get, self.key), description=f"read {self.key}")
        except NotFound:
            config = SiteConfig()
        else:
            try:
                config = SiteConfig.from_dict(json.loads(obj.body))
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning("Site config %s is unreadable, using defaults: %s", self.key, e)
                config = SiteConfig()
        self._cache.set(CACHE_KEY, config)
        return config

    async def exists(self) -> bool:
        try:
            await self._policy.run(partial(self._store.head, self.key), description=f"head {self.key}")
        except NotFound:
            return False
        return True

    async def save(self, config: SiteConfig) -> SiteConfig:
        """
        Raises:
            InvalidInput: the configuration failed validation
        """
        errors = validate_site_config(config)
        if errors:
            raise InvalidInput(f"Invalid configuration: {', '.join(errors)}", details={"errors": errors})
        put = partial(
            self._store.put,
            self.key,
            json.dumps(config.to_dict(), indent=2),
            content_type="application/json",
        )
        await self._policy.run(put, description=f"write {self.key}")
        self._cache.set(CACHE_KEY, config)
        logger.info("Saved site config %s", self.key)
        return config

    async def update_title(self, title: str) -> SiteConfig:
        if not title.strip():
            raise InvalidInput("Wiki title cannot be empty")
        return await self.save(replace(await self.load(), title=title.strip()))

    async def update_description(self, description: str) -> SiteConfig:
        return await self.save(replace(await self.load(), description=description.strip()))

    async def update_guest_access(self, allow: bool) -> SiteConfig:
        return await self.save(replace(await self.load(), allow_guest_access=allow))

    async def update_features(self, **features: bool) -> SiteConfig:
        current = await self.load()
        unknown = set(features) - set(vars(current.features))
        if unknown:
            raise InvalidInput(f"Unknown features: {', '.join(sorted(unknown))}")
        return await self.save(replace(current, features=replace(current.features, **features)))

    async def reset_to_defaults(self) -> SiteConfig:
        return await self.save(SiteConfig())

    def clear_cache(self) -> None:
        self._cache.delete(CACHE_KEY)
