"""
Local Filesystem Storage Backend

Stores objects on the local filesystem with an S3-like bucket/key layout:
    data/raw/
        hts-raw/
            usitc/
                2025_revision_1.json
                2025_revision_1.json.meta.json
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator

from core.exceptions import StorageError

from .base import DEFAULT_CHUNK_SIZE, StorageBackend, hashing_stream

META_SUFFIX = ".meta.json"


class LocalStorage(StorageBackend):
    """Local filesystem storage (S3-compatible interface)."""

    SCHEME = "local"

    def __init__(self, base_path: str = "storage"):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path(self, bucket: str, key: str) -> Path:
        path = (self.base_path / bucket / key).resolve()
        if not str(path).startswith(str(self.base_path.resolve())):
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    def exists(self, bucket: str, key: str) -> bool:
        return self._path(bucket, key).is_file()

    def upload_stream(
        self,
        bucket: str,
        key: str,
        chunks: Iterable[bytes],
        content_type: str = "application/octet-stream",
    ) -> Dict[str, Any]:
        path = self._path(bucket, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".part")
        stream, stats = hashing_stream(chunks)
        try:
            with open(tmp_path, "wb") as handle:
                for chunk in stream:
                    handle.write(chunk)
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(f"Failed to write {bucket}/{key}: {e}") from e

        metadata = {"size": stats["size"], "content_type": content_type, "sha256": stats["sha256"]}
        path.with_name(path.name + META_SUFFIX).write_text(json.dumps(metadata))
        return {"sha256": stats["sha256"], "size": stats["size"], "uri": self.uri(bucket, key)}

    def download_stream(self, bucket: str, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        path = self._path(bucket, key)
        if not path.is_file():
            raise StorageError(f"Object not found: {bucket}/{key}")
        with open(path, "rb") as handle:
            while True:
                chunk = handle.read(chunk_size)
                if not chunk:
                    break
                yield chunk

    def get_metadata(self, bucket: str, key: str) -> Dict[str, Any]:
        path = self._path(bucket, key)
        if not path.is_file():
            raise StorageError(f"Object not found: {bucket}/{key}")
        meta_path = path.with_name(path.name + META_SUFFIX)
        if meta_path.is_file():
            return json.loads(meta_path.read_text())
        return {"size": path.stat().st_size, "content_type": None, "sha256": None}
