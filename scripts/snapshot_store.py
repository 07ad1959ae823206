#!/usr/bin/env python3
"""
snapshot_store.py - Versioned benchmark snapshot storage

This module provides:
- BlobStore: the bucket/object storage interface the pipeline relies on
- LocalBlobStore: a filesystem-backed BlobStore with per-object visibility
- SnapshotStore: the naming policy for benchmark snapshots, a mutable
  "latest" pointer plus immutable time-stamped copies
"""

import json
import logging
from pathlib import Path
from typing import Protocol
from urllib.parse import quote

try:
    # When executed as a script from scripts/
    from benchmark_models import LATEST_VARIANT, SnapshotKey  # type: ignore[no-redef]
except ModuleNotFoundError:
    # When imported as a module (e.g., scripts.snapshot_store)
    from scripts.benchmark_models import LATEST_VARIANT, SnapshotKey  # type: ignore[no-redef]

logger = logging.getLogger(__name__)

ACL_DIR = ".acl"


class StorageError(Exception):
    """Raised when a storage operation fails."""


class ObjectNotFoundError(StorageError):
    """Raised when a requested object does not exist."""


class BlobStore(Protocol):
    """Bucket/object storage used for snapshots."""

    def exists(self, bucket: str, key: str) -> bool: ...

    def read(self, bucket: str, key: str) -> bytes: ...

    def write(self, bucket: str, key: str, data: bytes, public: bool) -> str: ...


class LocalBlobStore:
    """Store objects as files under ``<root>/<bucket>/<key>``."""

    def __init__(self, root: Path, public_base_url: str | None = None):
        self.root = root
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

    def _object_path(self, bucket: str, key: str) -> Path:
        bucket_dir = (self.root / bucket).resolve()
        path = (bucket_dir / key).resolve()
        if path == bucket_dir or bucket_dir not in path.parents:
            msg = f"Object key escapes bucket {bucket!r}: {key!r}"
            raise StorageError(msg)
        return path

    def _acl_path(self, bucket: str, key: str) -> Path:
        return self.root / bucket / ACL_DIR / f"{key}.json"

    def ensure_bucket(self, bucket: str) -> Path:
        """Create the bucket directory if it does not exist yet."""
        bucket_dir = self.root / bucket
        try:
            bucket_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            msg = f"Cannot create bucket {bucket!r}: {e}"
            raise StorageError(msg) from e
        return bucket_dir

    def exists(self, bucket: str, key: str) -> bool:
        return self._object_path(bucket, key).is_file()

    def read(self, bucket: str, key: str) -> bytes:
        path = self._object_path(bucket, key)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            msg = f"Object not found: {bucket}/{key}"
            raise ObjectNotFoundError(msg) from e
        except OSError as e:
            msg = f"Cannot read {bucket}/{key}: {e}"
            raise StorageError(msg) from e

    def write(self, bucket: str, key: str, data: bytes, public: bool) -> str:
        self.ensure_bucket(bucket)
        path = self._object_path(bucket, key)
        acl_path = self._acl_path(bucket, key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Write to a sibling temp file first so readers never see a partial object
            tmp_path = path.with_name(path.name + ".tmp")
            tmp_path.write_bytes(data)
            tmp_path.replace(path)

            acl_path.parent.mkdir(parents=True, exist_ok=True)
            with acl_path.open("w", encoding="utf-8") as f:
                json.dump({"public": public}, f)
        except OSError as e:
            msg = f"Cannot write {bucket}/{key}: {e}"
            raise StorageError(msg) from e

        logger.debug("Wrote %d bytes to %s/%s (public=%s)", len(data), bucket, key, public)
        return self.object_url(bucket, key)

    def is_public(self, bucket: str, key: str) -> bool:
        """Return the visibility recorded for an object (False when unknown)."""
        try:
            with self._acl_path(bucket, key).open(encoding="utf-8") as f:
                return bool(json.load(f).get("public", False))
        except (FileNotFoundError, json.JSONDecodeError):
            return False

    def object_url(self, bucket: str, key: str) -> str:
        """
        Resolve the locator of an object.

        Public objects get an HTTP URL when a public base URL is configured;
        everything else is addressed by its file URI.
        """
        if self.public_base_url and self.is_public(bucket, key):
            return f"{self.public_base_url}/{quote(bucket)}/{quote(key)}"
        return self._object_path(bucket, key).as_uri()


class SnapshotStore:
    """Naming policy for benchmark snapshots on top of a BlobStore."""

    def __init__(self, blob_store: BlobStore, bucket: str):
        self.blob_store = blob_store
        self.bucket = bucket

    def exists(self, repository: str) -> bool:
        """Whether a baseline was ever recorded, judged by the raw "latest" key only."""
        return self.blob_store.exists(self.bucket, SnapshotKey.latest(repository).path)

    def read(self, key: SnapshotKey) -> bytes:
        return self.blob_store.read(self.bucket, key.path)

    def read_latest(self, repository: str) -> bytes:
        return self.read(SnapshotKey(repository, LATEST_VARIANT))

    def put(self, repository: str, variant: str, data: bytes, public: bool) -> str:
        """
        Write one snapshot.

        Args:
            repository: Repository reference
            variant: Snapshot variant, e.g. "latest" or "2026-10-18/1792300000"
            data: Snapshot content
            public: Whether the object is publicly link-accessible

        Returns:
            Locator of the stored object
        """
        key = SnapshotKey(repository, variant)
        return self.blob_store.write(self.bucket, key.path, data, public)
