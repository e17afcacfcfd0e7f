"""Backend discovery via Python entry points."""

from importlib.metadata import entry_points
from typing import Any

from kv_gateway.exceptions import ConfigError
from kv_gateway.protocols import Database, KVStorage

BACKEND_GROUPS = {
    "storage": "kv_gateway.backends.storage",
    "database": "kv_gateway.backends.database",
}


def discover_backends(group: str) -> dict[str, Any]:
    """Discover all registered backends for a given group.

    Args:
        group: The backend group name (storage, database)

    Returns:
        Dictionary mapping backend names to their classes
    """
    full_group = BACKEND_GROUPS.get(group, group)
    eps = entry_points(group=full_group)
    return {ep.name: ep.load() for ep in eps}


def get_backend(group: str, name: str) -> Any:
    """Get a specific backend class by group and name.

    Args:
        group: The backend group name (storage, database)
        name: The backend name (e.g., "relational", "cloudflare_kv")

    Returns:
        The backend class

    Raises:
        ConfigError: If the backend is not registered
    """
    backends = discover_backends(group)
    if name not in backends:
        available = ", ".join(sorted(backends.keys())) or "(none)"
        raise ConfigError(
            f"Backend '{name}' not found in group '{group}'. Available: {available}"
        )
    return backends[name]


def create_storage(backend: str, **kwargs: Any) -> KVStorage:
    """Create a KVStorage instance.

    Args:
        backend: The backend name (e.g., "memory", "relational", "cloudflare_kv")
        **kwargs: Backend-specific configuration

    Returns:
        A KVStorage implementation
    """
    cls = get_backend("storage", backend)
    return cls(**kwargs)


def create_database(backend: str, **kwargs: Any) -> Database:
    """Create a Database instance.

    Args:
        backend: The backend name (e.g., "sqlite", "cloudflare_d1")
        **kwargs: Backend-specific configuration

    Returns:
        A Database implementation
    """
    cls = get_backend("database", backend)
    return cls(**kwargs)
