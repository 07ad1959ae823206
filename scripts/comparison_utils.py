#!/usr/bin/env python3
"""
comparison_utils.py - Statistical comparison of benchmark measurement sets

This module provides:
- UTestComparator: a benchstat-style comparator that groups benchmark samples
  by metric and configuration, discards outliers and classifies every
  before/after delta with a two-sided Mann-Whitney U test
- ChangeFilter: the policy layer on top of a comparator that keeps only the
  rows whose change is statistically significant
"""

import logging
import math
from dataclasses import dataclass, replace
from typing import Protocol

import numpy as np
from scipy import stats

try:
    # When executed as a script from scripts/
    from benchmark_models import (  # type: ignore[no-redef]
        UNCHANGED,
        ComparisonRow,
        ComparisonTable,
        MeasurementSet,
        Metrics,
        extract_benchmark_results,
    )
except ModuleNotFoundError:
    # When imported as a module (e.g., scripts.comparison_utils)
    from scripts.benchmark_models import (  # type: ignore[no-redef]
        UNCHANGED,
        ComparisonRow,
        ComparisonTable,
        MeasurementSet,
        Metrics,
        extract_benchmark_results,
    )

logger = logging.getLogger(__name__)

UTEST = "utest"

# Display names for the units emitted by `go test -bench`
METRIC_NAMES = {
    "ns/op": "time/op",
    "B/op": "alloc/op",
    "allocs/op": "allocs/op",
    "MB/s": "speed",
}

GEOMEAN_ROW = "[Geo mean]"


@dataclass(frozen=True)
class ComparisonConfig:
    """Settings handed to a Comparator."""

    alpha: float = 0.05
    add_geomean: bool = False
    split_by: tuple[str, ...] = ("pkg", "goos", "goarch")
    delta_test: str = UTEST


# Fixed configuration used by the change filter
DEFAULT_CONFIG = ComparisonConfig()


class Comparator(Protocol):
    """Statistical comparison of two measurement blobs."""

    def compare(self, before: bytes, after: bytes, config: ComparisonConfig) -> list[ComparisonTable]: ...


def metric_name(unit: str) -> str:
    """Return the display name of a benchmark unit."""
    return METRIC_NAMES.get(unit, unit)


def higher_is_better(unit: str) -> bool:
    """Throughput-style units (".../s") improve upwards; per-op costs improve downwards."""
    return unit.endswith("/s")


def summarize(unit: str, values: list[float]) -> Metrics:
    """
    Compute outlier-filtered statistics for a list of samples.

    Values outside [Q1 - 1.5*IQR, Q3 + 1.5*IQR] are discarded before the mean
    is taken.

    Args:
        unit: Unit of the samples
        values: Raw sample values

    Returns:
        Metrics with retained values, mean, minimum and maximum
    """
    metrics = Metrics(unit=unit, values=list(values))
    if not values:
        return metrics

    samples = np.asarray(values, dtype=float)
    q1, q3 = np.percentile(samples, [25, 75])
    iqr = q3 - q1
    low, high = q1 - 1.5 * iqr, q3 + 1.5 * iqr
    retained = samples[(samples >= low) & (samples <= high)]

    metrics.retained = [float(v) for v in retained]
    metrics.mean = float(retained.mean())
    metrics.minimum = float(retained.min())
    metrics.maximum = float(retained.max())
    return metrics


def utest_p_value(before: list[float], after: list[float]) -> float:
    """
    Two-sided Mann-Whitney U test p-value.

    Returns 1.0 when every sample on both sides is equal, where the test is
    undefined.
    """
    if len(set(before) | set(after)) <= 1:
        return 1.0
    _, p_value = stats.mannwhitneyu(before, after, alternative="two-sided")
    if math.isnan(p_value):
        return 1.0
    return float(p_value)


class UTestComparator:
    """Compare measurement sets the way benchstat does, with a Mann-Whitney U delta test."""

    def compare(self, before: bytes, after: bytes, config: ComparisonConfig) -> list[ComparisonTable]:
        """
        Build comparison tables for two measurement blobs.

        Tables are ordered by first appearance of their unit, then of their
        dimension group; rows follow the order benchmarks first appear in.
        Benchmarks measured on only one side are left out.

        Args:
            before: Baseline measurement bytes
            after: New measurement bytes
            config: Comparison settings

        Returns:
            List of ComparisonTable objects, unfiltered
        """
        if config.delta_test != UTEST:
            msg = f"Unsupported delta test: {config.delta_test}"
            raise ValueError(msg)

        # (unit, group) -> benchmark name -> side -> samples
        samples: dict[tuple[str, tuple[tuple[str, str], ...]], dict[str, dict[str, list[float]]]] = {}

        for side, blob in (("before", before), ("after", after)):
            for config_values, result in extract_benchmark_results(MeasurementSet(blob)):
                group = tuple((key, config_values.get(key, "")) for key in config.split_by)
                for unit, value in result.metrics.items():
                    by_name = samples.setdefault((unit, group), {})
                    by_name.setdefault(result.name, {"before": [], "after": []})[side].append(value)

        tables = []
        for (unit, group), by_name in samples.items():
            table = ComparisonTable(metric=metric_name(unit), unit=unit, dimensions=dict(group))
            for name, sides in by_name.items():
                if not sides["before"] or not sides["after"]:
                    logger.debug("Skipping %s (%s): measured on one side only", name, unit)
                    continue
                table.rows.append(self._compare_row(name, unit, sides["before"], sides["after"], config.alpha))

            if not table.rows:
                continue
            if config.add_geomean:
                geomean = self._geomean_row(unit, table.rows)
                if geomean is not None:
                    table.rows.append(geomean)
            tables.append(table)

        return tables

    def _compare_row(self, name: str, unit: str, before: list[float], after: list[float], alpha: float) -> ComparisonRow:
        """Classify the delta of one benchmark."""
        old = summarize(unit, before)
        new = summarize(unit, after)
        row = ComparisonRow(benchmark=name, before=old, after=new)

        row.p_value = utest_p_value(old.retained, new.retained)
        row.note = f"(p={row.p_value:.3f} n={len(old.retained)}+{len(new.retained)})"

        if row.p_value >= alpha or old.mean == 0:
            return row

        row.pct_delta = (new.mean / old.mean - 1.0) * 100.0
        if row.pct_delta == 0:
            return row
        row.delta = f"{row.pct_delta:+.2f}%"
        improved = (row.pct_delta > 0) == higher_is_better(unit)
        row.change = 1 if improved else -1
        return row

    def _geomean_row(self, unit: str, rows: list[ComparisonRow]) -> ComparisonRow | None:
        """Geometric mean of the row means; informational only, never a change."""
        old_means = [r.before.mean for r in rows if r.before.mean > 0 and r.after.mean > 0]
        new_means = [r.after.mean for r in rows if r.before.mean > 0 and r.after.mean > 0]
        if not old_means:
            return None

        old = Metrics(unit=unit, mean=float(stats.gmean(old_means)))
        new = Metrics(unit=unit, mean=float(stats.gmean(new_means)))
        old.minimum = old.maximum = old.mean
        new.minimum = new.maximum = new.mean
        pct = (new.mean / old.mean - 1.0) * 100.0
        return ComparisonRow(benchmark=GEOMEAN_ROW, before=old, after=new, delta=f"{pct:+.2f}%", pct_delta=pct, change=UNCHANGED)


class ChangeFilter:
    """Keep only statistically changed rows of a comparison."""

    def __init__(self, comparator: Comparator, config: ComparisonConfig = DEFAULT_CONFIG):
        self.comparator = comparator
        self.config = config

    def compare(self, before: MeasurementSet, after: MeasurementSet) -> list[ComparisonTable]:
        """
        Compare two measurement sets and drop everything that did not change.

        Rows whose change equals UNCHANGED are removed, then tables left
        without rows are removed. The comparator's ordering is preserved and
        its tables are not modified.

        Args:
            before: Baseline measurements
            after: New measurements

        Returns:
            List of non-empty ComparisonTable objects with changed rows only
        """
        tables = self.comparator.compare(before.content, after.content, self.config)

        changed = []
        for table in tables:
            rows = [row for row in table.rows if row.change != UNCHANGED]
            if not rows:
                continue
            changed.append(replace(table, rows=rows))

        logger.debug("Change filter kept %d of %d tables", len(changed), len(tables))
        return changed
