"""
Abstract Storage Backend

Defines the interface for object storage backends (local filesystem, S3).
"""

import hashlib
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Iterator, Tuple

DEFAULT_CHUNK_SIZE = 1024 * 1024


class StorageBackend(ABC):
    """Abstract base class for object storage backends."""

    SCHEME: str = ""

    @abstractmethod
    def exists(self, bucket: str, key: str) -> bool:
        """Check if an object exists."""

    @abstractmethod
    def upload_stream(
        self,
        bucket: str,
        key: str,
        chunks: Iterable[bytes],
        content_type: str = "application/octet-stream",
    ) -> Dict[str, Any]:
        """
        Store a stream of byte chunks.

        Args:
            bucket: Bucket (or top-level directory) name
            key: Object key (e.g., "usitc/2025_revision_1.json")
            chunks: Iterable of byte chunks, consumed once
            content_type: MIME type recorded with the object

        Returns:
            {"sha256": hex digest, "size": byte count, "uri": object URI}
        """

    @abstractmethod
    def download_stream(self, bucket: str, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        """
        Yield the object's bytes in chunks.

        Raises:
            StorageError: If the object doesn't exist or can't be read
        """

    @abstractmethod
    def get_metadata(self, bucket: str, key: str) -> Dict[str, Any]:
        """Return {"size", "content_type", "sha256"} for an object."""

    def read_bytes(self, bucket: str, key: str) -> bytes:
        return b"".join(self.download_stream(bucket, key))

    def uri(self, bucket: str, key: str) -> str:
        return f"{self.SCHEME}://{bucket}/{key}"


def hashing_stream(chunks: Iterable[bytes]) -> Tuple[Iterator[bytes], Dict[str, Any]]:
    """
    Wrap a chunk iterable so SHA-256 and size are computed while it is consumed.

    Returns:
        (iterator, stats) where stats holds "sha256" and "size" once the iterator is exhausted
    """
    digest = hashlib.sha256()
    stats: Dict[str, Any] = {"sha256": None, "size": 0}

    def _iterate() -> Iterator[bytes]:
        for chunk in chunks:
            if not chunk:
                continue
            digest.update(chunk)
            stats["size"] += len(chunk)
            yield chunk
        stats["sha256"] = digest.hexdigest()

    return _iterate(), stats
