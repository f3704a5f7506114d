"""
Pluggable object store factory.

Creates the object store a wiki runs on, based on settings. Built-in
backends are ``memory`` (in-process) and ``http`` (S3-compatible REST over
httpx). Other backends register via the ``blobwiki.stores`` entry point
group.

External backend packages provide a factory function::

    def create_store(settings: WikiSettings) -> ObjectStoreProtocol:
        ...

and register it in their pyproject.toml::

    [project.entry-points."blobwiki.stores"]
    my-store = "my_package.store:create_store"
"""

from .config import WikiSettings
from .protocol import ObjectStoreProtocol


def create_store(settings: WikiSettings) -> ObjectStoreProtocol:
    """
    Create the object store named by ``settings.store.backend``.

    For ``memory``, a fresh empty in-process store. For ``http``, an
    ``HttpObjectStore`` on the configured endpoint and bucket. For other
    values, loads the backend via the ``blobwiki.stores`` entry point group.
    """
    backend = settings.store.backend
    if backend == "memory":
        from .stores.memory import MemoryObjectStore
        return MemoryObjectStore(**settings.store.params)
    if backend == "http":
        return _create_http_store(settings)
    return _load_backend(backend, settings)


def _create_http_store(settings: WikiSettings) -> ObjectStoreProtocol:
    from .stores.http import HttpObjectStore

    store = settings.store
    return HttpObjectStore(
        store.endpoint,
        store.bucket,
        token=store.token,
        timeout=settings.retry.timeout or None,
    )


def _load_backend(name: str, settings: WikiSettings) -> ObjectStoreProtocol:
    """Load a backend by entry point name."""
    from importlib.metadata import entry_points

    eps = entry_points(group="blobwiki.stores")
    for ep in eps:
        if ep.name == name:
            factory = ep.load()
            return factory(settings)

    available = [ep.name for ep in eps]
    if available:
        raise ValueError(
            f"Unknown backend: {name!r}. Available: {available}"
        )
    raise ValueError(
        f"Unknown backend: {name!r}. No backends registered. "
        f"Use 'memory' or 'http', or install a store backend package."
    )
