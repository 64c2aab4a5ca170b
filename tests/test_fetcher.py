# WORKFLOW: Tests for the USITC fetcher and object storage backends.
# Test scenarios:
# 1. Version strings and download URLs
# 2. Latest-version discovery and update checks against a mocked USITC site
# 3. Streaming download with SHA-256, reuse of a stored object, retry with backoff
# 4. Record flattening and local storage layout

import hashlib
import json
from datetime import date

import httpx
import pytest

from core.exceptions import FetchError, StorageError
from etl.fetcher import UsitcFetcher, flatten_records, parse_version, version_for

BASE_URL = "https://hts.test/files"
PAYLOAD = json.dumps([{"htsno": "0101.21.00", "general": "Free"}]).encode()


def make_fetcher(storage, published, get_failures=0, sleeps=None):
    """Fetcher whose client serves ``published`` {(year, revision)} and fails the first GETs."""
    state = {"get_calls": 0}

    def handler(request):
        for year, revision in published:
            if request.url.path.endswith(f"hts_{year}_revision_{revision}_json.json"):
                break
        else:
            return httpx.Response(404)
        if request.method == "HEAD":
            return httpx.Response(200)
        state["get_calls"] += 1
        if state["get_calls"] <= get_failures:
            return httpx.Response(503)
        return httpx.Response(200, content=PAYLOAD, headers={"content-type": "application/json"})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    fetcher = UsitcFetcher(
        storage,
        client=client,
        base_url=BASE_URL,
        max_retries=3,
        sleep=(sleeps.append if sleeps is not None else lambda seconds: None),
    )
    return fetcher, state


def test_version_helpers():
    assert version_for(2025, 3) == "2025_revision_3"
    assert parse_version("2025_revision_3") == (2025, 3)
    with pytest.raises(ValueError):
        parse_version("2025-rev-3")


def test_download_url(storage):
    fetcher, _ = make_fetcher(storage, set())
    assert fetcher.url_for_version("2025_revision_2") == f"{BASE_URL}/hts_2025_revision_2_json.json"


class TestVersionDiscovery:
    def test_latest_revision_of_current_year(self, storage):
        fetcher, _ = make_fetcher(storage, {(2025, 1), (2025, 2), (2025, 3)})
        latest = fetcher.find_latest_version(today=date(2025, 6, 1))
        assert latest["version"] == "2025_revision_3"
        assert latest["url"].endswith("hts_2025_revision_3_json.json")

    def test_falls_back_to_previous_year(self, storage):
        fetcher, _ = make_fetcher(storage, {(2024, 1), (2024, 2)})
        assert fetcher.find_latest_version(today=date(2025, 1, 5))["version"] == "2024_revision_2"

    def test_nothing_published(self, storage):
        fetcher, _ = make_fetcher(storage, set())
        with pytest.raises(FetchError):
            fetcher.find_latest_version(today=date(2025, 1, 5))

    def test_check_for_updates(self, storage):
        fetcher, _ = make_fetcher(storage, {(2025, 1), (2025, 2), (2026, 1)})
        assert fetcher.check_for_updates("2025_revision_1")["latest_version"] == "2025_revision_2"
        assert fetcher.check_for_updates("2025_revision_2")["latest_version"] == "2026_revision_1"
        result = fetcher.check_for_updates("2026_revision_1")
        assert result["has_update"] is False


class TestDownload:
    def test_streams_into_storage_with_hash(self, storage):
        fetcher, _ = make_fetcher(storage, {(2025, 1)})
        result = fetcher.download_to_storage(fetcher.url_for_version("2025_revision_1"), "hts-raw", "usitc/a.json")

        assert result["sha256"] == hashlib.sha256(PAYLOAD).hexdigest()
        assert result["size"] == len(PAYLOAD)
        assert result["skipped"] is False
        assert storage.read_bytes("hts-raw", "usitc/a.json") == PAYLOAD
        assert fetcher.load_records("hts-raw", "usitc/a.json") == [{"htsno": "0101.21.00", "general": "Free"}]

    def test_matching_hash_skips_download(self, storage):
        fetcher, state = make_fetcher(storage, {(2025, 1)})
        url = fetcher.url_for_version("2025_revision_1")
        first = fetcher.download_to_storage(url, "hts-raw", "usitc/a.json")

        second = fetcher.download_to_storage(url, "hts-raw", "usitc/a.json", expected_hash=first["sha256"])

        assert second["skipped"] is True
        assert state["get_calls"] == 1

    def test_retries_with_exponential_backoff(self, storage):
        sleeps = []
        fetcher, state = make_fetcher(storage, {(2025, 1)}, get_failures=2, sleeps=sleeps)
        result = fetcher.download_to_storage(fetcher.url_for_version("2025_revision_1"), "hts-raw", "usitc/a.json")
        assert result["size"] == len(PAYLOAD)
        assert state["get_calls"] == 3
        assert sleeps == [2.0, 4.0]

    def test_final_failure_raises_fetch_error(self, storage):
        sleeps = []
        fetcher, _ = make_fetcher(storage, {(2025, 1)}, get_failures=10, sleeps=sleeps)
        with pytest.raises(FetchError) as excinfo:
            fetcher.download_to_storage(fetcher.url_for_version("2025_revision_1"), "hts-raw", "usitc/a.json")
        assert excinfo.value.attempts == 3
        assert sleeps == [2.0, 4.0]
        assert not storage.exists("hts-raw", "usitc/a.json")


def test_flatten_records():
    data = {"chapters": {"02": [{"htsno": "0201"}], "01": [{"htsno": "0101"}, "junk"]}}
    assert [record["htsno"] for record in flatten_records(data)] == ["0101", "0201"]
    with pytest.raises(FetchError):
        flatten_records({"rows": []})


class TestLocalStorage:
    def test_metadata_and_uri(self, storage):
        info = storage.upload_stream("hts-raw", "usitc/x.json", iter([b"ab", b"", b"cd"]), "application/json")
        assert info["size"] == 4
        assert info["uri"] == "local://hts-raw/usitc/x.json"
        metadata = storage.get_metadata("hts-raw", "usitc/x.json")
        assert metadata["sha256"] == hashlib.sha256(b"abcd").hexdigest()
        assert metadata["content_type"] == "application/json"

    def test_missing_object(self, storage):
        with pytest.raises(StorageError):
            list(storage.download_stream("hts-raw", "missing.json"))

    def test_key_cannot_escape_root(self, storage):
        with pytest.raises(StorageError):
            storage.exists("hts-raw", "../../etc/passwd")
