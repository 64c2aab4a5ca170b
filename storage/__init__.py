"""
Object storage abstraction for raw source datasets.

Usage:
    from storage import get_storage

    storage = get_storage()
    info = storage.upload_stream("hts-raw", "usitc/2025_revision_1.json", chunks, "application/json")
    for chunk in storage.download_stream("hts-raw", "usitc/2025_revision_1.json"):
        ...

Backends are selected by ``settings.storage_backend``: "local" (default) or "s3".
"""

import logging
from typing import Optional

from core.config import settings
from core.exceptions import StorageError

from .base import StorageBackend
from .local import LocalStorage

logger = logging.getLogger(__name__)

# Singleton instance (lazy initialization)
_storage_instance: Optional[StorageBackend] = None


def get_storage() -> StorageBackend:
    """
    Get the configured storage backend (singleton).

    Raises:
        StorageError: If an unknown backend is configured
    """
    global _storage_instance

    if _storage_instance is not None:
        return _storage_instance

    backend = settings.storage_backend.lower()
    if backend == "local":
        _storage_instance = LocalStorage(settings.storage_path)
    elif backend == "s3":
        from .s3 import S3Storage

        _storage_instance = S3Storage(region_name=settings.aws_region)
    else:
        raise StorageError(f"Unknown storage backend: {settings.storage_backend}")

    logger.info(f"Initialized {backend} storage backend")
    return _storage_instance


def reset_storage() -> None:
    """Reset the singleton (for tests)."""
    global _storage_instance
    _storage_instance = None


__all__ = ["StorageBackend", "LocalStorage", "get_storage", "reset_storage"]
