#!/usr/bin/env python3
"""
Test suite for snapshot_store.py module.

Tests the filesystem blob store and the snapshot naming policy.
"""

import pytest

from snapshot_store import LocalBlobStore, ObjectNotFoundError, SnapshotStore, StorageError


@pytest.fixture
def local_store(tmp_path):
    return LocalBlobStore(tmp_path / "storage", public_base_url="https://bench.example.com/")


class TestLocalBlobStore:
    """Test cases for LocalBlobStore class."""

    def test_write_then_read(self, local_store):
        local_store.write("bucket", "org/proj/benchmarks/latest", b"BenchmarkFoo-8 120 ns/op", public=False)

        assert local_store.exists("bucket", "org/proj/benchmarks/latest")
        assert local_store.read("bucket", "org/proj/benchmarks/latest") == b"BenchmarkFoo-8 120 ns/op"

    def test_overwrite_replaces_content(self, local_store):
        local_store.write("bucket", "key", b"old", public=False)
        local_store.write("bucket", "key", b"new", public=False)

        assert local_store.read("bucket", "key") == b"new"
        assert not (local_store.root / "bucket" / "key.tmp").exists()

    def test_missing_object(self, local_store):
        assert not local_store.exists("bucket", "nothing")
        with pytest.raises(ObjectNotFoundError):
            local_store.read("bucket", "nothing")

    def test_public_objects_get_http_url(self, local_store):
        """Public objects are addressed under the public base URL."""
        url = local_store.write("bucket", "org/proj/benchmarks/latest", b"x", public=True)

        assert url == "https://bench.example.com/bucket/org/proj/benchmarks/latest"
        assert local_store.is_public("bucket", "org/proj/benchmarks/latest")

    def test_private_objects_get_file_uri(self, local_store):
        url = local_store.write("bucket", "org/proj/benchmarks/latest", b"x", public=False)

        assert url.startswith("file://")
        assert url.endswith("/bucket/org/proj/benchmarks/latest")
        assert not local_store.is_public("bucket", "org/proj/benchmarks/latest")

    def test_without_public_base_url_everything_is_file_uri(self, tmp_path):
        store = LocalBlobStore(tmp_path)

        assert store.write("bucket", "key", b"x", public=True).startswith("file://")

    @pytest.mark.parametrize("key", ["../outside", "a/../../outside", ""])
    def test_keys_cannot_escape_bucket(self, local_store, key):
        with pytest.raises(StorageError, match="escapes bucket"):
            local_store.write("bucket", key, b"x", public=False)


class TestSnapshotStore:
    """Test cases for SnapshotStore class."""

    def test_put_uses_snapshot_key_path(self, snapshot_store, blob_store):
        locator = snapshot_store.put("github.com/org/proj", "2026-3-7/1772886600", b"data", public=True)

        assert locator == "mem://bench-bucket/github.com/org/proj/benchmarks/2026-3-7/1772886600"
        assert blob_store.public[("bench-bucket", "github.com/org/proj/benchmarks/2026-3-7/1772886600")] is True

    def test_exists_checks_latest_only(self, snapshot_store):
        """A timestamped copy alone does not count as a baseline."""
        snapshot_store.put("github.com/org/proj", "2026-3-7/1772886600", b"data", public=False)
        assert not snapshot_store.exists("github.com/org/proj")

        snapshot_store.put("github.com/org/proj", "latest", b"data", public=False)
        assert snapshot_store.exists("github.com/org/proj")

    def test_read_latest(self, snapshot_store):
        snapshot_store.put("github.com/org/proj", "latest", b"baseline", public=False)

        assert snapshot_store.read_latest("github.com/org/proj") == b"baseline"

    def test_repositories_are_isolated(self, snapshot_store):
        snapshot_store.put("github.com/org/a", "latest", b"a", public=False)

        assert not snapshot_store.exists("github.com/org/b")

    def test_on_local_store(self, tmp_path):
        store = SnapshotStore(LocalBlobStore(tmp_path), "bucket")
        store.put("github.com/org/proj", "latest", b"baseline", public=False)

        assert (tmp_path / "bucket" / "github.com/org/proj/benchmarks/latest").read_bytes() == b"baseline"
        assert store.exists("github.com/org/proj")
