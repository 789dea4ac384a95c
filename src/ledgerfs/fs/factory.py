"""Build a storage backend from configuration."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .config import DriveConfig, LocalConfig, StorageConfig, load_config
from .drive import DriveBackend
from .exceptions import ConfigurationError
from .local_disk import LocalDiskBackend

if TYPE_CHECKING:
    from pathlib import Path

    import httpx

    from .drive_auth import TokenProvider
    from .protocol import StorageBackend


def create_backend(
    config: StorageConfig | None = None,
    *,
    token_provider: TokenProvider | None = None,
    client: httpx.AsyncClient | None = None,
) -> StorageBackend:
    """Return an uninitialized backend for ``config.provider``."""
    config = config or StorageConfig()
    if config.provider == "local":
        return LocalDiskBackend(config.local or LocalConfig())
    if config.provider == "google_drive":
        return DriveBackend(
            config.google_drive or DriveConfig(),
            token_provider=token_provider,
            client=client,
        )
    raise ConfigurationError(f"Unknown storage provider: {config.provider}")


async def create_initialized_backend(
    config: StorageConfig | str | Path | None = None,
    **kwargs: object,
) -> StorageBackend:
    """Create and initialize a backend from a config object or INI path."""
    if config is None or not isinstance(config, StorageConfig):
        config = load_config(config)
    backend = create_backend(config, **kwargs)  # type: ignore[arg-type]
    await backend.initialize()
    return backend
