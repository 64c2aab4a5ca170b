# WORKFLOW: USITC source fetcher streaming the HTS JSON export into object storage.
# Used by: Import orchestrator (DOWNLOADING stage), CLI (--latest), API (create import)
# Functions:
# 1. get_download_url() / version_for() / parse_version() - URL and version string helpers
# 2. url_exists() - HEAD probe for a revision
# 3. find_latest_version() - Probe revisions of the current year, then the previous year
# 4. check_for_updates() - Is a newer revision (or next year) published?
# 5. download_to_storage() - Stream download into storage with SHA-256, retry with backoff
# 6. load_records() - Read the stored JSON and flatten chapter groupings
#
# Fetch flow: Version -> URL -> httpx stream -> Storage upload (hashing) -> {sha256, size}
# Download retries wait 2s, 4s, 8s; the last failure raises FetchError.

"""
USITC HTS source fetcher.
"""

import json
import logging
import re
import time
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from core.exceptions import FetchError, StorageError
from storage.base import StorageBackend

logger = logging.getLogger(__name__)

VERSION_PATTERN = re.compile(r'^(\d{4})_revision_(\d+)$')


def version_for(year: int, revision: int) -> str:
    return f"{year}_revision_{revision}"


def parse_version(version: str) -> Tuple[int, int]:
    """
    Split a version string into (year, revision).

    Raises:
        ValueError: If the string is not "{year}_revision_{n}"
    """
    match = VERSION_PATTERN.match(version or "")
    if not match:
        raise ValueError(f"Invalid HTS version: {version}")
    return int(match.group(1)), int(match.group(2))


class UsitcFetcher:
    """Downloads HTS JSON exports published by the USITC."""

    def __init__(
        self,
        storage: StorageBackend,
        client: Optional[httpx.Client] = None,
        base_url: str = "https://www.usitc.gov/sites/default/files/tata/hts",
        timeout: float = 60.0,
        max_retries: int = 3,
        backoff_base: float = 2.0,
        revision_probe_limit: int = 50,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.storage = storage
        self.client = client or httpx.Client(timeout=timeout, follow_redirects=True)
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.revision_probe_limit = revision_probe_limit
        self.sleep = sleep

    def get_download_url(self, year: int, revision: int) -> str:
        return f"{self.base_url}/hts_{year}_revision_{revision}_json.json"

    def url_for_version(self, version: str) -> str:
        year, revision = parse_version(version)
        return self.get_download_url(year, revision)

    def url_exists(self, url: str) -> bool:
        try:
            response = self.client.head(url)
        except httpx.HTTPError as e:
            logger.debug(f"HEAD {url} failed: {e}")
            return False
        return response.status_code == 200

    def _latest_revision(self, year: int) -> Optional[int]:
        latest = None
        for revision in range(1, self.revision_probe_limit + 1):
            if not self.url_exists(self.get_download_url(year, revision)):
                break
            latest = revision
        return latest

    def find_latest_version(self, today: Optional[date] = None) -> Dict[str, Any]:
        """
        Find the newest published revision.

        Revisions are probed sequentially from 1 and the first missing one ends the search.
        The previous year is tried when the current year has nothing published yet.

        Returns:
            {"year", "revision", "version", "url"}

        Raises:
            FetchError: If no revision is found in either year
        """
        year = (today or date.today()).year
        for candidate in (year, year - 1):
            revision = self._latest_revision(candidate)
            if revision is not None:
                logger.info(f"Latest HTS version: {version_for(candidate, revision)}")
                return {
                    "year": candidate,
                    "revision": revision,
                    "version": version_for(candidate, revision),
                    "url": self.get_download_url(candidate, revision),
                }
        raise FetchError(f"No HTS revision found for {year} or {year - 1}")

    def check_for_updates(self, current_version: str) -> Dict[str, Any]:
        """
        Report whether a version newer than ``current_version`` is published.

        Returns:
            {"has_update", "current_version", "latest_version", "url"}
        """
        year, revision = parse_version(current_version)
        candidates = [(year, revision + 1), (year + 1, 1)]
        for candidate_year, candidate_revision in candidates:
            url = self.get_download_url(candidate_year, candidate_revision)
            if self.url_exists(url):
                return {
                    "has_update": True,
                    "current_version": current_version,
                    "latest_version": version_for(candidate_year, candidate_revision),
                    "url": url,
                }
        return {"has_update": False, "current_version": current_version, "latest_version": current_version, "url": None}

    def download_to_storage(
        self,
        url: str,
        bucket: str,
        key: str,
        expected_hash: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Stream a source file into object storage.

        Args:
            url: Source URL
            bucket: Storage bucket
            key: Storage key
            expected_hash: Hash recorded by a previous attempt; a stored object with the
                same hash is reused instead of downloaded again

        Returns:
            {"sha256", "size", "uri", "skipped"}

        Raises:
            FetchError: After the final failed attempt
        """
        if expected_hash and self.storage.exists(bucket, key):
            metadata = self.storage.get_metadata(bucket, key)
            if metadata.get("sha256") == expected_hash:
                logger.info(f"Reusing stored {bucket}/{key} ({expected_hash[:12]})")
                return {
                    "sha256": expected_hash,
                    "size": metadata.get("size"),
                    "uri": self.storage.uri(bucket, key),
                    "skipped": True,
                }

        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                with self.client.stream("GET", url) as response:
                    response.raise_for_status()
                    content_type = response.headers.get("content-type", "application/json")
                    result = self.storage.upload_stream(bucket, key, response.iter_bytes(), content_type)
                logger.info(f"Downloaded {url} -> {result['uri']} ({result['size']} bytes)")
                result["skipped"] = False
                return result
            except (httpx.HTTPError, StorageError) as e:
                last_error = e
                logger.warning(f"Download attempt {attempt}/{self.max_retries} failed for {url}: {e}")
                if attempt < self.max_retries:
                    self.sleep(self.backoff_base ** attempt)

        raise FetchError(
            f"Failed to download {url} after {self.max_retries} attempts: {last_error}",
            url=url,
            attempts=self.max_retries,
        )

    def load_records(self, bucket: str, key: str) -> List[Dict[str, Any]]:
        """
        Load source records from storage.

        The export is either a list of records or {"chapters": {"01": [...], ...}}.
        """
        try:
            data = json.loads(self.storage.read_bytes(bucket, key))
        except json.JSONDecodeError as e:
            raise FetchError(f"Stored source {bucket}/{key} is not valid JSON: {e}") from e
        return flatten_records(data)


def flatten_records(data: Any) -> List[Dict[str, Any]]:
    """Flatten the export payload into one list of record dicts."""
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    if isinstance(data, dict) and isinstance(data.get("chapters"), dict):
        records: List[Dict[str, Any]] = []
        for chapter in sorted(data["chapters"]):
            records.extend(item for item in data["chapters"][chapter] or [] if isinstance(item, dict))
        return records
    raise FetchError("Unsupported HTS export layout")
