#!/usr/bin/env python3
"""
Key-Value Store Tests

Covers the typed accessors shared by every backend, the in-memory store,
the atomic JSON file store and the encrypted file store.
"""

import pytest
import json
import sys
import os
import stat

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from subscription.storage import (
    EncryptedJsonFileKeyValueStore,
    InMemoryKeyValueStore,
    JsonFileKeyValueStore,
)

# Keep key derivation fast in tests
TEST_ITERATIONS = 1000


@pytest.fixture(params=["memory", "file", "encrypted"])
def store(request, tmp_path):
    """Every backend, so the shared contract is tested once per store"""
    if request.param == "memory":
        return InMemoryKeyValueStore()
    if request.param == "file":
        return JsonFileKeyValueStore(tmp_path / "store.json")
    return EncryptedJsonFileKeyValueStore(
        tmp_path / "store.enc", secret="s3cret", salt="salt", iterations=TEST_ITERATIONS
    )


# ============================================================================
# SHARED CONTRACT
# ============================================================================

class TestKeyValueContract:
    """Tests run against every backend"""

    @pytest.mark.asyncio
    async def test_missing_key(self, store):
        assert await store.get("nope") is None
        assert await store.get_int("nope") is None
        assert not await store.contains_key("nope")

    @pytest.mark.asyncio
    async def test_int_round_trip(self, store):
        await store.set_int("count", 4)
        assert await store.get_int("count") == 4
        assert await store.contains_key("count")

    @pytest.mark.asyncio
    async def test_typed_getters_reject_other_types(self, store):
        await store.set_string("name", "luna")
        await store.set("flag", True)
        assert await store.get_int("name") is None
        assert await store.get_int("flag") is None
        assert await store.get_string_list("name") is None

    @pytest.mark.asyncio
    async def test_string_list(self, store):
        await store.set_string_list("tags", ["a", "b"])
        assert await store.get_string_list("tags") == ["a", "b"]

    @pytest.mark.asyncio
    async def test_json_blob(self, store):
        await store.set_json("history", {"readings": [1, 2]})
        assert await store.get_json("history") == {"readings": [1, 2]}
        assert isinstance(await store.get("history"), str)

    @pytest.mark.asyncio
    async def test_malformed_json_raises(self, store):
        await store.set_string("history", "{not json")
        with pytest.raises(ValueError):
            await store.get_json("history")

    @pytest.mark.asyncio
    async def test_remove_and_clear(self, store):
        await store.set_int("a", 1)
        await store.set_int("b", 2)
        await store.remove("a")
        await store.remove("missing")
        assert await store.keys() == ["b"]
        await store.clear()
        assert await store.keys() == []


# ============================================================================
# FILE BACKENDS
# ============================================================================

class TestJsonFileStore:
    """Tests for the plain JSON file store"""

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "store.json"
        await JsonFileKeyValueStore(path).set_int("usage_count_readings", 2)

        reopened = JsonFileKeyValueStore(path)
        assert await reopened.get_int("usage_count_readings") == 2
        assert json.loads(path.read_text()) == {"usage_count_readings": 2}

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, tmp_path):
        store = JsonFileKeyValueStore(tmp_path / "store.json")
        await store.set_int("a", 1)
        await store.set_int("b", 2)
        assert [p.name for p in tmp_path.iterdir()] == ["store.json"]

    @pytest.mark.asyncio
    async def test_corrupt_file_reads_as_empty(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("[1, 2, 3")
        store = JsonFileKeyValueStore(path)
        assert await store.keys() == []

    @pytest.mark.asyncio
    async def test_reload_picks_up_external_changes(self, tmp_path):
        path = tmp_path / "store.json"
        store = JsonFileKeyValueStore(path)
        await store.set_int("a", 1)
        path.write_text(json.dumps({"a": 5}))
        assert await store.get_int("a") == 1
        await store.reload()
        assert await store.get_int("a") == 5

    @pytest.mark.asyncio
    async def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "store.json"
        await JsonFileKeyValueStore(path).set_string("k", "v")
        assert path.exists()


class TestEncryptedStore:
    """Tests for the Fernet-encrypted store"""

    def _store(self, path, secret="s3cret"):
        return EncryptedJsonFileKeyValueStore(path, secret=secret, salt="salt", iterations=TEST_ITERATIONS)

    @pytest.mark.asyncio
    async def test_contents_not_plaintext(self, tmp_path):
        path = tmp_path / "store.enc"
        await self._store(path).set_string("cached_subscription_status", "oracle")

        raw = path.read_text()
        assert raw.startswith("v2:")
        assert "oracle" not in raw
        assert await self._store(path).get_string("cached_subscription_status") == "oracle"

    @pytest.mark.asyncio
    async def test_wrong_secret_reads_as_empty(self, tmp_path):
        path = tmp_path / "store.enc"
        await self._store(path).set_int("a", 1)
        assert await self._store(path, secret="other").keys() == []

    @pytest.mark.asyncio
    async def test_legacy_plaintext_reads_as_empty(self, tmp_path):
        path = tmp_path / "store.enc"
        path.write_text(json.dumps({"a": 1}))
        assert await self._store(path).get("a") is None

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions only")
    @pytest.mark.asyncio
    async def test_file_permissions_restricted(self, tmp_path):
        path = tmp_path / "store.enc"
        await self._store(path).set_int("a", 1)
        mode = stat.S_IMODE(path.stat().st_mode)
        assert mode == stat.S_IRUSR | stat.S_IWUSR

    def test_secret_required(self, tmp_path):
        with pytest.raises(ValueError):
            EncryptedJsonFileKeyValueStore(tmp_path / "store.enc", secret="", salt="salt")


class TestInMemoryStore:

    @pytest.mark.asyncio
    async def test_initial_and_snapshot(self):
        store = InMemoryKeyValueStore({"a": 1})
        await store.set_int("b", 2)
        snapshot = store.snapshot()
        snapshot["c"] = 3
        assert store.snapshot() == {"a": 1, "b": 2}
