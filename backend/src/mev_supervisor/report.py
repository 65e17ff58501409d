"""Operator-facing rendering of metrics reports and balance deltas."""

from decimal import Decimal
from typing import List, Optional

from .models import MarkerClass, MetricsReport

NA = "N/A"

COUNT_LABELS = [
    (MarkerClass.OPPORTUNITY_DETECTED, "Opportunities detected"),
    (MarkerClass.PROFIT_ESTIMATE, "Profit estimates"),
    (MarkerClass.OPPORTUNITY_UNPROFITABLE, "Unprofitable opportunities"),
    (MarkerClass.EXECUTION_SKIPPED_UNPROFITABLE, "Skipped opportunities"),
    (MarkerClass.TRANSACTION_DETECTED, "Transactions detected"),
    (MarkerClass.PROFITABILITY_CHECK, "Profitability checks"),
    (MarkerClass.EXECUTION_ATTEMPT, "Frontruns executed"),
    (MarkerClass.EXECUTION_SUCCESS, "Frontruns successful"),
    (MarkerClass.EXECUTION_FAILURE, "Frontruns failed"),
    (MarkerClass.TRANSACTION_SEND_FAILURE, "Transaction send failures"),
    (MarkerClass.BUNDLE_ATTEMPT, "Jito bundle attempts"),
    (MarkerClass.BUNDLE_SUCCESS, "Jito bundles sent"),
    (MarkerClass.BUNDLE_FAILURE, "Jito bundle errors"),
    (MarkerClass.TIP_TRANSACTION, "Tip transactions created"),
    (MarkerClass.LOW_BALANCE_WARNING, "Low balance alerts"),
    (MarkerClass.CONNECTION_ERROR, "WebSocket errors"),
    (MarkerClass.SLOT_MONITORING, "Slot checks"),
]

RATE_LABELS = [
    ("execution_success_per_opportunity", "Success rate over opportunities"),
    ("skip_rate", "Skip rate"),
    ("execution_success_per_attempt", "Success rate over attempts"),
    ("execution_failure_per_attempt", "Failure rate over attempts"),
    ("bundle_success_rate", "Jito success rate"),
]


def format_rate(rate: Optional[Decimal]) -> str:
    if rate is None:
        return NA
    return f"{rate * 100:.2f}%"


def format_sol(value: Optional[Decimal]) -> str:
    if value is None:
        return NA
    return f"{value:.6f} SOL"


def format_balance_delta(initial: Optional[Decimal], final: Optional[Decimal]) -> str:
    """``+0.050000 SOL (+5.00%)``, or N/A when a snapshot is missing."""
    if initial is None or final is None:
        return f"{NA} (balance unavailable)"
    delta = final - initial
    if initial <= 0:
        return f"{delta:+.6f} SOL ({NA})"
    pct = delta / initial * 100
    return f"{delta:+.6f} SOL ({pct:+.2f}%)"


def render_report(report: MetricsReport) -> str:
    lines: List[str] = [
        "=" * 60,
        "  METRICS REPORT",
        "=" * 60,
        f"Log file: {report.log_path}",
        f"Size: {report.size_bytes} bytes ({report.lines_scanned} lines)",
        "",
        "Counts:",
    ]
    for marker_class, label in COUNT_LABELS:
        lines.append(f"  {label}: {report.count(marker_class)}")

    for marker_class, title in (
        (MarkerClass.PROFIT_ESTIMATE, "Estimated profit"),
        (MarkerClass.OPPORTUNITY_UNPROFITABLE, "Unprofitable net profit"),
    ):
        agg = report.aggregates.get(marker_class)
        if agg is None:
            continue
        lines.append("")
        lines.append(f"{title} ({agg.n} values):")
        lines.append(f"  Mean: {format_sol(agg.mean)}")
        lines.append(f"  Max: {format_sol(agg.max)}")
        lines.append(f"  Min: {format_sol(agg.min)}")
        lines.append(f"  Total: {format_sol(agg.sum if agg.n else None)}")
    if report.malformed_numeric:
        lines.append(f"  Malformed numeric tokens skipped: {report.malformed_numeric}")

    lines.append("")
    lines.append("Rates:")
    for name, label in RATE_LABELS:
        lines.append(f"  {label}: {format_rate(report.rates.get(name))}")

    lines.append("")
    lines.append("Operating time:")
    if report.session_duration is None:
        lines.append(f"  Duration: {NA}")
    else:
        seconds = int(report.session_duration.total_seconds())
        lines.append(f"  Duration: {seconds / 3600:.2f} hours ({seconds // 60} minutes)")
        lines.append(f"  Start: {report.first_timestamp}")
        lines.append(f"  End: {report.last_timestamp}")
    lines.append("=" * 60)
    return "\n".join(lines)


def render_balance_summary(initial: Optional[Decimal], final: Optional[Decimal]) -> str:
    return "\n".join([
        "BALANCE SUMMARY:",
        f"  Initial balance: {format_sol(initial)}",
        f"  Final balance: {format_sol(final)}",
        f"  Profit/Loss: {format_balance_delta(initial, final)}",
    ])
