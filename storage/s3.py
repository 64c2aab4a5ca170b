"""
S3 Storage Backend

Streams objects to and from S3 with boto3. The SHA-256 of uploaded content is
stored as object metadata ("sha256") so later runs can verify a cached download.
"""

import logging
from typing import Any, Dict, Iterable, Iterator, Optional

import boto3
from botocore.exceptions import ClientError

from core.exceptions import StorageError

from .base import DEFAULT_CHUNK_SIZE, StorageBackend, hashing_stream

logger = logging.getLogger(__name__)


class _ChunkReader:
    """File-like adapter so boto3 can read from a chunk iterator."""

    def __init__(self, chunks: Iterator[bytes]):
        self._chunks = chunks
        self._buffer = b""

    def read(self, size: int = -1) -> bytes:
        while size < 0 or len(self._buffer) < size:
            try:
                self._buffer += next(self._chunks)
            except StopIteration:
                break
        if size < 0:
            data, self._buffer = self._buffer, b""
        else:
            data, self._buffer = self._buffer[:size], self._buffer[size:]
        return data


class S3Storage(StorageBackend):
    SCHEME = "s3"

    def __init__(self, region_name: Optional[str] = None, client: Any = None):
        self.client = client or boto3.client("s3", region_name=region_name)

    def exists(self, bucket: str, key: str) -> bool:
        try:
            self.client.head_object(Bucket=bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(f"S3 head_object failed for {bucket}/{key}: {e}") from e

    def upload_stream(
        self,
        bucket: str,
        key: str,
        chunks: Iterable[bytes],
        content_type: str = "application/octet-stream",
    ) -> Dict[str, Any]:
        stream, stats = hashing_stream(chunks)
        try:
            self.client.upload_fileobj(
                _ChunkReader(stream), bucket, key, ExtraArgs={"ContentType": content_type}
            )
            # Metadata can only be set at write time; copy in place to attach the digest.
            self.client.copy_object(
                Bucket=bucket,
                Key=key,
                CopySource={"Bucket": bucket, "Key": key},
                Metadata={"sha256": stats["sha256"]},
                MetadataDirective="REPLACE",
                ContentType=content_type,
            )
        except ClientError as e:
            raise StorageError(f"S3 upload failed for {bucket}/{key}: {e}") from e
        logger.info(f"Uploaded s3://{bucket}/{key} ({stats['size']} bytes)")
        return {"sha256": stats["sha256"], "size": stats["size"], "uri": self.uri(bucket, key)}

    def download_stream(self, bucket: str, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        try:
            response = self.client.get_object(Bucket=bucket, Key=key)
        except ClientError as e:
            raise StorageError(f"S3 download failed for {bucket}/{key}: {e}") from e
        yield from response["Body"].iter_chunks(chunk_size=chunk_size)

    def get_metadata(self, bucket: str, key: str) -> Dict[str, Any]:
        try:
            head = self.client.head_object(Bucket=bucket, Key=key)
        except ClientError as e:
            raise StorageError(f"S3 head_object failed for {bucket}/{key}: {e}") from e
        return {
            "size": head.get("ContentLength"),
            "content_type": head.get("ContentType"),
            "sha256": (head.get("Metadata") or {}).get("sha256"),
        }
