"""Data models for the supervisor and the log metrics extractor."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import SessionStateError, SupervisorError


class SupervisorPhase(Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    CANCELLING = "cancelling"
    FINALIZING = "finalizing"
    TERMINATED = "terminated"


class MarkerClass(Enum):
    """Categories of worker log lines, named after what the worker reported."""
    OPPORTUNITY_DETECTED = "opportunity-detected"
    PROFIT_ESTIMATE = "profit-estimate"
    EXECUTION_SUCCESS = "execution-success"
    EXECUTION_SKIPPED_UNPROFITABLE = "execution-skipped-unprofitable"
    BUNDLE_ATTEMPT = "bundle-attempt"
    BUNDLE_SUCCESS = "bundle-success"
    BUNDLE_FAILURE = "bundle-failure"
    LOW_BALANCE_WARNING = "low-balance-warning"
    CONNECTION_ERROR = "connection-error"
    TRANSACTION_DETECTED = "transaction-detected"
    EXECUTION_ATTEMPT = "execution-attempt"
    EXECUTION_FAILURE = "execution-failure"
    OPPORTUNITY_UNPROFITABLE = "opportunity-unprofitable"
    TRANSACTION_SEND_FAILURE = "transaction-send-failure"
    TIP_TRANSACTION = "tip-transaction"
    PROFITABILITY_CHECK = "profitability-check"
    SLOT_MONITORING = "slot-monitoring"


@dataclass
class Session:
    """One supervised lifetime of log bookkeeping, possibly many worker runs."""
    id: str
    log_path: Path
    started_at: datetime
    ended_at: Optional[datetime] = None
    initial_balance: Optional[Decimal] = None
    final_balance: Optional[Decimal] = None
    runs: int = 0

    @property
    def is_sealed(self) -> bool:
        return self.ended_at is not None

    def seal(self, ended_at: Optional[datetime] = None) -> None:
        if self.is_sealed:
            raise SessionStateError(f"Session {self.id} already finalized")
        self.ended_at = ended_at or datetime.now()


@dataclass
class LogEvent:
    """A classified line. Lives only for the duration of one scan pass."""
    marker_class: MarkerClass
    raw_line: str
    numeric_payload: Optional[Decimal] = None


@dataclass
class Aggregate:
    """Running sum/min/max over valid numeric payloads of one marker class."""
    n: int = 0
    sum: Decimal = Decimal("0")
    min: Optional[Decimal] = None
    max: Optional[Decimal] = None

    def add(self, value: Decimal) -> None:
        # min/max seed from the first value, never from zero
        if self.n == 0:
            self.min = value
            self.max = value
        else:
            if value < self.min:
                self.min = value
            if value > self.max:
                self.max = value
        self.sum += value
        self.n += 1

    @property
    def mean(self) -> Optional[Decimal]:
        if self.n == 0:
            return None
        return self.sum / self.n


@dataclass
class MetricsReport:
    """Output of one extractor pass over a log artifact."""
    log_path: Path
    size_bytes: int
    lines_scanned: int
    counts: Dict[MarkerClass, int]
    aggregates: Dict[MarkerClass, Aggregate]
    rates: Dict[str, Optional[Decimal]]
    malformed_numeric: int = 0
    first_timestamp: Optional[datetime] = None
    last_timestamp: Optional[datetime] = None
    session_duration: Optional[timedelta] = None

    def count(self, marker_class: MarkerClass) -> int:
        return self.counts.get(marker_class, 0)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view; decimals become strings to keep precision."""
        def dec(value: Optional[Decimal]) -> Optional[str]:
            return None if value is None else str(value)

        return {
            "log_path": str(self.log_path),
            "size_bytes": self.size_bytes,
            "lines_scanned": self.lines_scanned,
            "counts": {mc.value: n for mc, n in self.counts.items()},
            "aggregates": {
                mc.value: {
                    "n": agg.n,
                    "sum": dec(agg.sum),
                    "min": dec(agg.min),
                    "max": dec(agg.max),
                    "mean": dec(agg.mean),
                }
                for mc, agg in self.aggregates.items()
            },
            "rates": {name: dec(rate) for name, rate in self.rates.items()},
            "malformed_numeric": self.malformed_numeric,
            "first_timestamp": self.first_timestamp.isoformat() if self.first_timestamp else None,
            "last_timestamp": self.last_timestamp.isoformat() if self.last_timestamp else None,
            "session_duration_seconds": (
                self.session_duration.total_seconds() if self.session_duration is not None else None
            ),
        }


@dataclass
class WorkerExit:
    """How one worker run ended."""
    run_number: int
    returncode: int
    spawn_failed: bool = False
    cancelled: bool = False
    error: Optional[SupervisorError] = None

    @property
    def clean(self) -> bool:
        return self.returncode == 0 and not self.spawn_failed


@dataclass
class SessionSummary:
    """What the supervisor hands back after finalization."""
    session: Session
    report: Optional[MetricsReport]
    exits: List[WorkerExit] = field(default_factory=list)

    @property
    def restarts(self) -> int:
        return max(0, self.session.runs - 1)
