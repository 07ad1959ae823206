#!/usr/bin/env python3
"""
report_utils.py - Text and HTML rendering of benchmark comparisons

Renders the filtered comparison tables as a fixed-width text report (stored
as the "-results" snapshot) and as an HTML report (e-mailed to recipients).
Rendering never filters: every row handed in is rendered.
"""

import html

try:
    # When executed as a script from scripts/
    from benchmark_models import ComparisonRow, ComparisonTable, Metrics, Outcome, PipelineResult  # type: ignore[no-redef]
except ModuleNotFoundError:
    # When imported as a module (e.g., scripts.report_utils)
    from scripts.benchmark_models import ComparisonRow, ComparisonTable, Metrics, Outcome, PipelineResult  # type: ignore[no-redef]

# Scaled units for the common Go benchmark metrics, largest first
_TIME_SCALES = [(1e9, "s"), (1e6, "ms"), (1e3, "µs"), (1.0, "ns")]
_BYTE_SCALES = [(1e9, "GB"), (1e6, "MB"), (1e3, "kB"), (1.0, "B")]


def _scaled(value: float, scales: list[tuple[float, str]]) -> str:
    # Pick the scale after rounding, so 999.6ns becomes 1.00µs
    for factor, suffix in scales:
        text = _significant(value / factor)
        if abs(float(text)) >= 1:
            return f"{text}{suffix}"
    return f"{_significant(value)}{scales[-1][1]}"


def _significant(value: float) -> str:
    """Format with three significant digits and no trailing exponent."""
    rounded = float(f"{value:.3g}")
    if rounded == 0:
        return "0"
    magnitude = abs(rounded)
    if magnitude >= 100:
        return f"{rounded:.0f}"
    if magnitude >= 10:
        return f"{rounded:.1f}"
    return f"{rounded:.2f}"


def format_metric_value(value: float, unit: str) -> str:
    """
    Format a metric mean with a unit-appropriate scale.

    Args:
        value: Mean value
        unit: Benchmark unit ("ns/op", "B/op", "allocs/op", "MB/s", ...)

    Returns:
        Formatted string such as "120ns", "1.50µs", "16.0kB" or "230MB/s"
    """
    if unit == "ns/op":
        return _scaled(value, _TIME_SCALES)
    if unit == "B/op":
        return _scaled(value, _BYTE_SCALES)
    if unit == "allocs/op":
        return f"{value:.0f}" if value >= 1 or value == 0 else _significant(value)
    return f"{_significant(value)}{unit}"


def format_metrics(metrics: Metrics) -> str:
    """Format a metric with its spread, e.g. "120ns ± 2%"."""
    return f"{format_metric_value(metrics.mean, metrics.unit)} ± {metrics.spread_pct:.0f}%"


def _row_cells(row: ComparisonRow) -> list[str]:
    return [row.benchmark, format_metrics(row.before), format_metrics(row.after), row.delta, row.note]


def format_text(tables: list[ComparisonTable]) -> str:
    """
    Render comparison tables as aligned plain text.

    Each table is preceded by its dimension header (when any dimension is
    set) and a column header "name  old <metric>  new <metric>  delta".

    Args:
        tables: Comparison tables to render

    Returns:
        Plain-text report ending with a newline, or "" for no tables
    """
    blocks = []
    for table in tables:
        header = ["name", f"old {table.metric}", f"new {table.metric}", "delta", ""]
        body = [_row_cells(row) for row in table.rows]

        widths = [max(len(cells[i]) for cells in [header, *body]) for i in range(len(header))]

        lines = []
        if table.group_key:
            lines.append(table.group_key)
        for cells in [header, *body]:
            padded = [cell.ljust(widths[i]) for i, cell in enumerate(cells)]
            lines.append("  ".join(padded).rstrip())
        blocks.append("\n".join(lines))

    if not blocks:
        return ""
    return "\n\n".join(blocks) + "\n"


def format_html(tables: list[ComparisonTable]) -> str:
    """
    Render comparison tables as HTML.

    Rows are tagged with the "better" or "worse" class depending on the
    direction of the change.

    Args:
        tables: Comparison tables to render

    Returns:
        HTML fragment, or "" for no tables
    """
    if not tables:
        return ""

    lines = ['<table class="benchstat">']
    for table in tables:
        lines.append("<tbody>")
        if table.group_key:
            lines.append(f'<tr class="configs"><th colspan="5">{html.escape(table.group_key)}</th></tr>')
        lines.append(
            f"<tr><th>name</th><th>old {html.escape(table.metric)}</th><th>new {html.escape(table.metric)}</th><th>delta</th><th></th></tr>"
        )
        for row in table.rows:
            css = "better" if row.change > 0 else "worse" if row.change < 0 else "unchanged"
            lines.append(
                f'<tr class="{css}">'
                f"<td>{html.escape(row.benchmark)}</td>"
                f"<td>{html.escape(format_metrics(row.before))}</td>"
                f"<td>{html.escape(format_metrics(row.after))}</td>"
                f'<td class="delta">{html.escape(row.delta)}</td>'
                f'<td class="note">{html.escape(row.note)}</td>'
                "</tr>"
            )
        lines.append('<tr><td colspan="5">&nbsp;</td></tr>')
        lines.append("</tbody>")
    lines.append("</table>")
    return "\n".join(lines) + "\n"


def render(tables: list[ComparisonTable]) -> tuple[str, str]:
    """Render tables as (plain text, HTML)."""
    return format_text(tables), format_html(tables)


def render_email(result: PipelineResult) -> str:
    """
    Build the HTML body of the notification e-mail for a pipeline result.

    A first baseline has no comparison, so its raw measurements are shown
    instead. The snapshot locators are listed at the end.

    Args:
        result: Result of a pipeline invocation

    Returns:
        HTML e-mail body
    """
    parts = []
    if result.html_benchmarks:
        parts.append(result.html_benchmarks)
    elif result.outcome is Outcome.FIRST_BASELINE and result.benchmarks:
        parts.append("<p>First recorded benchmarks:</p>")
        parts.append(f"<pre>{html.escape(result.benchmarks)}</pre>")

    parts.append("<br />")
    if result.urls:
        parts.append("The respective URLs are:")
        parts.append("<br />")
        for variant, url in sorted(result.urls.items()):
            parts.append(f"{html.escape(variant)} : {html.escape(url)}")
            parts.append("<br />")

    return "\n".join(parts) + "\n"
