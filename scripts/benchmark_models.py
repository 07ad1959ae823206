#!/usr/bin/env python3
"""benchmark_models.py - Data models and utilities for benchmark processing.

This module contains the data models shared by the bencher pipeline:
measurement sets produced by a benchmark run, comparison rows and tables
produced by the statistical comparison, snapshot keys used for versioned
storage, and the result of a pipeline invocation.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

# Prefix that marks a measurement line in benchmark output
MEASUREMENT_PREFIX = "Benchmark"

# Change value for rows that are statistically indistinguishable from baseline
UNCHANGED = 0

# Variant names of the mutable snapshot pointers
LATEST_VARIANT = "latest"
RESULTS_SUFFIX = "-results"

# Configuration lines emitted by `go test -bench`, e.g. "goos: linux"
_CONFIG_LINE_RE = re.compile(r"^([a-z][a-zA-Z0-9_-]*):\s*(.*)$")


@dataclass(frozen=True)
class MeasurementSet:
    """Raw output of one benchmark run, kept as an immutable byte buffer."""

    content: bytes

    @classmethod
    def from_text(cls, text: str) -> "MeasurementSet":
        return cls(text.encode("utf-8"))

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def measurement_lines(self) -> list[str]:
        """Return the stripped lines recognised as measurements."""
        return [line.strip() for line in self.text.splitlines() if line.strip().startswith(MEASUREMENT_PREFIX)]

    def is_valid(self) -> bool:
        """A set is valid when it holds at least one measurement line."""
        return bool(self.measurement_lines())

    def __len__(self) -> int:
        return len(self.content)


@dataclass
class BenchmarkResult:
    """A single parsed benchmark line with its metrics keyed by unit."""

    name: str
    iterations: int
    metrics: dict[str, float] = field(default_factory=dict)


def parse_benchmark_line(line: str) -> BenchmarkResult | None:
    """
    Parse a Go benchmark line into a BenchmarkResult.

    Args:
        line: Line such as "BenchmarkFoo-8  1000000  120 ns/op  16 B/op"

    Returns:
        BenchmarkResult or None if the line is not a well-formed measurement
    """
    fields = line.split()
    if len(fields) < 2 or not fields[0].startswith(MEASUREMENT_PREFIX):
        return None

    name = fields[0]
    # Older outputs omit the iteration count ("BenchmarkFoo-8 120 ns/op")
    rest = fields[1:]
    iterations = 1
    if len(rest) % 2 == 1:
        try:
            iterations = int(rest[0])
        except ValueError:
            return None
        rest = rest[1:]

    metrics: dict[str, float] = {}
    for value_str, unit in zip(rest[0::2], rest[1::2], strict=True):
        try:
            metrics[unit] = float(value_str)
        except ValueError:
            return None

    if not metrics:
        return None
    return BenchmarkResult(name=name, iterations=iterations, metrics=metrics)


def parse_config_line(line: str) -> tuple[str, str] | None:
    """
    Parse a benchmark configuration line ("key: value").

    Args:
        line: Input line potentially containing configuration

    Returns:
        Tuple of (key, value) or None if no match
    """
    match = _CONFIG_LINE_RE.match(line.strip())
    if match:
        return match.group(1), match.group(2).strip()
    return None


def extract_benchmark_results(measurements: MeasurementSet) -> list[tuple[dict[str, str], BenchmarkResult]]:
    """
    Extract benchmark results together with the configuration in effect.

    Configuration lines apply to every measurement line that follows them
    until the same key is set again.

    Args:
        measurements: MeasurementSet to parse

    Returns:
        List of (configuration snapshot, BenchmarkResult) pairs in input order
    """
    results = []
    config: dict[str, str] = {}

    for raw_line in measurements.text.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        if line.startswith(MEASUREMENT_PREFIX):
            result = parse_benchmark_line(line)
            if result:
                results.append((dict(config), result))
            continue

        parsed = parse_config_line(line)
        if parsed:
            key, value = parsed
            config[key] = value

    return results


@dataclass
class Metrics:
    """Samples of one metric for one benchmark on one side of a comparison."""

    unit: str
    values: list[float] = field(default_factory=list)
    retained: list[float] = field(default_factory=list)  # values left after outlier removal
    mean: float = 0.0
    minimum: float = 0.0
    maximum: float = 0.0

    @property
    def spread_pct(self) -> float:
        """Largest deviation of a retained value from the mean, in percent."""
        if self.mean == 0:
            return 0.0
        return max(self.maximum - self.mean, self.mean - self.minimum) / self.mean * 100


@dataclass
class ComparisonRow:
    """Before/after statistics of one benchmark case."""

    benchmark: str
    before: Metrics
    after: Metrics
    delta: str = "~"
    pct_delta: float = 0.0
    p_value: float = 1.0
    change: int = UNCHANGED
    note: str = ""

    @property
    def changed(self) -> bool:
        return self.change != UNCHANGED


@dataclass
class ComparisonTable:
    """Rows of one metric within one dimension group (package/OS/architecture)."""

    metric: str
    unit: str
    dimensions: dict[str, str] = field(default_factory=dict)
    rows: list[ComparisonRow] = field(default_factory=list)

    @property
    def group_key(self) -> str:
        """Human readable dimension label, e.g. "pkg: foo goos: linux"."""
        return " ".join(f"{key}: {value}" for key, value in self.dimensions.items() if value)


def timestamp_variant(when: datetime) -> str:
    """
    Build the time-derived snapshot variant for an invocation.

    Month and day are not zero padded, e.g. "2026-3-7/1772870400".

    Args:
        when: Invocation time

    Returns:
        Variant string "<year>-<month>-<day>/<unix timestamp>"
    """
    return f"{when.year}-{when.month}-{when.day}/{int(when.timestamp())}"


def results_variant(variant: str) -> str:
    """Return the results variant paired with a raw measurement variant."""
    return variant + RESULTS_SUFFIX


@dataclass(frozen=True)
class SnapshotKey:
    """Object key of one stored snapshot: {repository}/benchmarks/{variant}."""

    repository: str
    variant: str

    @property
    def path(self) -> str:
        return f"{self.repository}/benchmarks/{self.variant}"

    @classmethod
    def latest(cls, repository: str) -> "SnapshotKey":
        return cls(repository, LATEST_VARIANT)

    def __str__(self) -> str:
        return self.path


class Outcome(Enum):
    """Terminal outcome of a pipeline invocation."""

    FIRST_BASELINE = "first_baseline"
    NO_CHANGE_DETECTED = "no_change_detected"
    CHANGED = "changed"


@dataclass
class PipelineResult:
    """Outcome of a pipeline invocation, its snapshot locators and its reports."""

    outcome: Outcome
    urls: dict[str, str] = field(default_factory=dict)
    benchmarks: str = ""
    html_benchmarks: str = ""

    @property
    def no_change(self) -> bool:
        return self.outcome is Outcome.NO_CHANGE_DETECTED

    def to_dict(self) -> dict[str, object]:
        """Serialize to the response body shape of the benchmark endpoint."""
        return {
            "outcome": self.outcome.value,
            "URLs": dict(self.urls),
            "Benchmarks": self.benchmarks,
            "HTMLBenchmarks": self.html_benchmarks,
        }
