"""
Shared pytest fixtures and utilities for test modules.

Provides in-memory stand-ins for the pipeline collaborators (benchmark
runner, comparator, blob store, notifier) so the orchestration can be tested
without Go, a real store or e-mail delivery.
"""

import sys
from datetime import datetime
from pathlib import Path

import pytest

# Ensure `scripts/` is on sys.path for test imports
# This must be done before importing any local modules
_scripts = Path(__file__).resolve().parents[1]
if str(_scripts) not in sys.path:
    sys.path.insert(0, str(_scripts))

from benchmark_models import ComparisonRow, ComparisonTable, MeasurementSet, Metrics  # noqa: E402
from comparison_utils import ChangeFilter  # noqa: E402
from snapshot_store import SnapshotStore, StorageError  # noqa: E402

FIXED_NOW = datetime(2026, 3, 7, 12, 30, 0)  # noqa: DTZ001


class StaticRunner:
    """Runner returning canned output, or raising a canned error."""

    def __init__(self, output: bytes = b"", error: Exception | None = None):
        self.output = output
        self.error = error
        self.calls: list[str] = []

    def run(self, repository, cancel_event=None):
        self.calls.append(repository)
        if self.error is not None:
            raise self.error
        return MeasurementSet(self.output)


class InMemoryBlobStore:
    """BlobStore keeping objects in a dict; can be told to fail on given keys."""

    def __init__(self):
        self.objects: dict[tuple[str, str], bytes] = {}
        self.public: dict[tuple[str, str], bool] = {}
        self.writes: list[str] = []
        self.fail_writes_on: set[str] = set()
        self.fail_reads = False
        self.fail_exists = False

    def exists(self, bucket, key):
        if self.fail_exists:
            msg = "exists check failed"
            raise StorageError(msg)
        return (bucket, key) in self.objects

    def read(self, bucket, key):
        if self.fail_reads:
            msg = f"read of {key} failed"
            raise StorageError(msg)
        return self.objects[(bucket, key)]

    def write(self, bucket, key, data, public):
        if key in self.fail_writes_on:
            msg = f"write of {key} failed"
            raise StorageError(msg)
        self.objects[(bucket, key)] = bytes(data)
        self.public[(bucket, key)] = public
        self.writes.append(key)
        return f"mem://{bucket}/{key}"


class ScriptedComparator:
    """Comparator that classifies rows with a callback on (before, after) bytes."""

    def __init__(self, classify):
        self.classify = classify
        self.calls: list[tuple[bytes, bytes]] = []

    def compare(self, before, after, config):
        self.calls.append((before, after))
        return self.classify(before, after)


def make_row(name: str, old: float, new: float, change: int, unit: str = "ns/op") -> ComparisonRow:
    """Build a ComparisonRow with single-sample metrics."""
    before = Metrics(unit=unit, values=[old], retained=[old], mean=old, minimum=old, maximum=old)
    after = Metrics(unit=unit, values=[new], retained=[new], mean=new, minimum=new, maximum=new)
    pct = (new / old - 1) * 100 if change else 0.0
    delta = f"{pct:+.2f}%" if change else "~"
    return ComparisonRow(benchmark=name, before=before, after=after, delta=delta, pct_delta=pct, p_value=0.01 if change else 0.8, change=change)


def make_table(rows: list[ComparisonRow], metric: str = "time/op", unit: str = "ns/op", **dimensions: str) -> ComparisonTable:
    return ComparisonTable(metric=metric, unit=unit, dimensions=dict(dimensions), rows=rows)


def threshold_classifier(before: bytes, after: bytes) -> list[ComparisonTable]:
    """Treat a change of more than 100% in the first ns/op value as significant."""

    def first_value(blob: bytes) -> float:
        fields = blob.decode().split()
        return float(fields[fields.index("ns/op") - 1])

    old, new = first_value(before), first_value(after)
    change = -1 if new > old * 2 else 1 if new < old / 2 else 0
    return [make_table([make_row("BenchmarkFoo-8", old, new, change)])]


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def snapshot_store(blob_store):
    return SnapshotStore(blob_store, "bench-bucket")


@pytest.fixture
def threshold_filter():
    return ChangeFilter(ScriptedComparator(threshold_classifier))


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW
