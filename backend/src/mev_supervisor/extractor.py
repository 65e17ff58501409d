"""Log Metrics Extractor - turns a session log artifact into a MetricsReport.

One forward pass, line by line. Each line is matched against the marker
vocabulary (case-sensitive substring, first match wins for counting). Numeric
payloads are pulled independently of classification: any line carrying a
numeric marker contributes its token to that marker's aggregate, even if the
line was counted under an earlier class.

The artifact is only ever read. Scanning the same bytes twice yields equal
reports.
"""

import logging
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import LogArtifactMissing, MalformedNumericToken
from .models import Aggregate, LogEvent, MarkerClass, MetricsReport

logger = logging.getLogger("mev_supervisor.extractor")

# (marker class, patterns, carries numeric payload). Order is match priority.
# Patterns must stay byte-identical to what the worker prints; historical
# logs are scanned with the same table.
MARKER_VOCABULARY: List[Tuple[MarkerClass, Tuple[str, ...], bool]] = [
    (MarkerClass.OPPORTUNITY_DETECTED, ("OPPORTUNITY",), False),
    (MarkerClass.PROFIT_ESTIMATE, ("Final estimated profit potential:", "Estimated profit potential:"), True),
    (MarkerClass.EXECUTION_SUCCESS, ("Frontrun successful",), False),
    (
        MarkerClass.EXECUTION_SKIPPED_UNPROFITABLE,
        ("Skipping opportunity with no positive profit", "Skipping unprofitable"),
        False,
    ),
    (MarkerClass.BUNDLE_ATTEMPT, ("Sending bundle via Jito",), False),
    (MarkerClass.BUNDLE_SUCCESS, ("Jito bundle sent successfully",), False),
    (MarkerClass.BUNDLE_FAILURE, ("Failed to send Jito bundle",), False),
    (MarkerClass.LOW_BALANCE_WARNING, ("Balance too low",), False),
    (MarkerClass.CONNECTION_ERROR, ("WebSocket error",), False),
    (MarkerClass.TRANSACTION_DETECTED, ("Transaction detected:",), False),
    (MarkerClass.EXECUTION_ATTEMPT, ("Frontrun executed for transaction",), False),
    (MarkerClass.EXECUTION_FAILURE, ("Frontrun failed for transaction",), False),
    (MarkerClass.OPPORTUNITY_UNPROFITABLE, ("Opportunity not profitable:",), True),
    (MarkerClass.TRANSACTION_SEND_FAILURE, ("Failed to send frontrun transaction",), False),
    (MarkerClass.TIP_TRANSACTION, ("Tip transaction created",), False),
    (MarkerClass.PROFITABILITY_CHECK, ("Analyzing profitability for transaction",), False),
    (MarkerClass.SLOT_MONITORING, ("Monitoring Solana",), False),
]

# rate name -> (numerator, denominator)
RATE_DEFINITIONS: Dict[str, Tuple[MarkerClass, MarkerClass]] = {
    "execution_success_per_opportunity": (MarkerClass.EXECUTION_SUCCESS, MarkerClass.OPPORTUNITY_DETECTED),
    "skip_rate": (MarkerClass.EXECUTION_SKIPPED_UNPROFITABLE, MarkerClass.OPPORTUNITY_DETECTED),
    "execution_success_per_attempt": (MarkerClass.EXECUTION_SUCCESS, MarkerClass.EXECUTION_ATTEMPT),
    "execution_failure_per_attempt": (MarkerClass.EXECUTION_FAILURE, MarkerClass.EXECUTION_ATTEMPT),
    "bundle_success_rate": (MarkerClass.BUNDLE_SUCCESS, MarkerClass.BUNDLE_ATTEMPT),
}

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
TIMESTAMP_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}[ T]\d{2}:\d{2}:\d{2}(?:\.\d{1,6})?")
_TOKEN_TRAILING = ",;"


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE.sub("", text)


def classify_line(line: str) -> Optional[MarkerClass]:
    """Return the first marker class whose pattern occurs in ``line``."""
    for marker_class, patterns, _numeric in MARKER_VOCABULARY:
        for pattern in patterns:
            if pattern in line:
                return marker_class
    return None


def parse_numeric_token(line: str, pattern: str) -> Decimal:
    """Parse the whitespace-delimited token right after ``pattern``.

    Raises:
        MalformedNumericToken: token missing, not a number, or not finite
    """
    idx = line.find(pattern)
    if idx < 0:
        raise MalformedNumericToken(f"Marker {pattern!r} not in line", line=line)
    tokens = line[idx + len(pattern):].split()
    if not tokens:
        raise MalformedNumericToken(f"No token after {pattern!r}", line=line)
    token = tokens[0].rstrip(_TOKEN_TRAILING)
    try:
        value = Decimal(token)
    except InvalidOperation:
        raise MalformedNumericToken(f"Non-numeric token {token!r} after {pattern!r}", line=line)
    if not value.is_finite():
        raise MalformedNumericToken(f"Non-finite token {token!r} after {pattern!r}", line=line)
    return value


def extract_numeric_events(line: str) -> List[LogEvent]:
    """Numeric payloads carried by ``line``, one per numeric marker class present.

    Lines whose token is malformed come back with ``numeric_payload=None``.
    """
    events = []
    for marker_class, patterns, numeric in MARKER_VOCABULARY:
        if not numeric:
            continue
        for pattern in patterns:
            if pattern not in line:
                continue
            try:
                payload: Optional[Decimal] = parse_numeric_token(line, pattern)
            except MalformedNumericToken as e:
                logger.debug("[extractor] %s", e)
                payload = None
            events.append(LogEvent(marker_class=marker_class, raw_line=line, numeric_payload=payload))
            break
    return events


def _parse_timestamp(token: Optional[str]) -> Optional[datetime]:
    if token is None:
        return None
    base, _, fraction = token.replace("T", " ").partition(".")
    try:
        parsed = datetime.strptime(base, "%Y-%m-%d %H:%M:%S")
    except ValueError:
        return None
    if fraction:
        parsed = parsed.replace(microsecond=int(fraction.ljust(6, "0")))
    return parsed


def compute_rates(counts: Dict[MarkerClass, int]) -> Dict[str, Optional[Decimal]]:
    """Ratios for RATE_DEFINITIONS; None where the denominator is zero."""
    rates: Dict[str, Optional[Decimal]] = {}
    for name, (numerator, denominator) in RATE_DEFINITIONS.items():
        denom = counts.get(denominator, 0)
        if denom > 0:
            rates[name] = Decimal(counts.get(numerator, 0)) / Decimal(denom)
        else:
            rates[name] = None
    return rates


def scan_lines(lines: Iterable[str], log_path: Path, size_bytes: int = 0) -> MetricsReport:
    """Build a MetricsReport from already-decoded lines."""
    counts: Dict[MarkerClass, int] = {mc: 0 for mc, _, _ in MARKER_VOCABULARY}
    aggregates: Dict[MarkerClass, Aggregate] = {mc: Aggregate() for mc, _, numeric in MARKER_VOCABULARY if numeric}
    first_ts: Optional[str] = None
    last_ts: Optional[str] = None
    lines_scanned = 0
    malformed = 0

    for raw in lines:
        lines_scanned += 1
        line = strip_ansi(raw.rstrip("\r\n"))

        stamps = TIMESTAMP_PATTERN.findall(line)
        if stamps:
            if first_ts is None:
                first_ts = stamps[0]
            last_ts = stamps[-1]

        marker_class = classify_line(line)
        if marker_class is not None:
            counts[marker_class] += 1

        for event in extract_numeric_events(line):
            if event.numeric_payload is None:
                malformed += 1
                continue
            aggregates[event.marker_class].add(event.numeric_payload)

    first_dt = _parse_timestamp(first_ts)
    last_dt = _parse_timestamp(last_ts)
    duration = None
    if first_dt is not None and last_dt is not None:
        duration = last_dt - first_dt

    return MetricsReport(
        log_path=log_path,
        size_bytes=size_bytes,
        lines_scanned=lines_scanned,
        counts=counts,
        aggregates=aggregates,
        rates=compute_rates(counts),
        malformed_numeric=malformed,
        first_timestamp=first_dt,
        last_timestamp=last_dt,
        session_duration=duration,
    )


def extract_metrics(log_path: Path) -> MetricsReport:
    """Scan a log artifact and return its MetricsReport.

    Raises:
        LogArtifactMissing: path is absent, not a file, or unreadable
    """
    log_path = Path(log_path)
    if not log_path.is_file():
        raise LogArtifactMissing(f"Log artifact not found: {log_path}", path=str(log_path))

    try:
        size_bytes = log_path.stat().st_size
        with log_path.open("r", encoding="utf-8", errors="replace") as f:
            report = scan_lines(f, log_path, size_bytes=size_bytes)
    except OSError as e:
        raise LogArtifactMissing(f"Log artifact unreadable: {log_path} ({e})", path=str(log_path)) from e

    logger.info(
        "[extractor] Scanned %s: %d lines, %d opportunities, %d malformed numeric tokens",
        log_path, report.lines_scanned, report.count(MarkerClass.OPPORTUNITY_DETECTED), report.malformed_numeric,
    )
    return report


def find_latest_artifact(log_dir: Path, pattern: str = "mev_bot_*.log") -> Path:
    """Most recently created artifact in ``log_dir`` matching ``pattern``.

    Raises:
        LogArtifactMissing: no matching artifact
    """
    log_dir = Path(log_dir)
    candidates = [p for p in log_dir.glob(pattern) if p.is_file()] if log_dir.is_dir() else []
    if not candidates:
        raise LogArtifactMissing(f"No log artifacts matching {pattern} in {log_dir}", path=str(log_dir))
    return max(candidates, key=lambda p: (p.stat().st_mtime, p.name))
