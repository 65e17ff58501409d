"""Persistent JSONL ledger of finalized sessions.

One record per supervised session is appended to ``<log_dir>/sessions.jsonl``
so balance deltas and headline metrics can be compared across runs without
rescanning old artifacts.
"""

import json
import logging
import time
from pathlib import Path
from typing import Optional

from .models import MetricsReport, Session

logger = logging.getLogger("mev_supervisor.ledger")


class SessionLedger:
    """Append-only JSONL record of finalized sessions."""

    def __init__(self, path: Path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def log_session(self, session: Session, report: Optional[MetricsReport], restarts: int = 0) -> None:
        record = {
            "session_id": session.id,
            "log_path": str(session.log_path),
            "started_at": session.started_at.isoformat(),
            "ended_at": session.ended_at.isoformat() if session.ended_at else None,
            "runs": session.runs,
            "restarts": restarts,
            "initial_balance": str(session.initial_balance) if session.initial_balance is not None else None,
            "final_balance": str(session.final_balance) if session.final_balance is not None else None,
            "logged_at": time.time(),
        }
        if report is not None:
            summary = report.to_dict()
            record["counts"] = summary["counts"]
            record["rates"] = summary["rates"]
            record["session_duration_seconds"] = summary["session_duration_seconds"]
        self._append_jsonl(self._path, record)

    @staticmethod
    def _append_jsonl(filepath: Path, record: dict) -> None:
        """Append a JSON record to a JSONL file."""
        try:
            filepath.parent.mkdir(parents=True, exist_ok=True)
            with filepath.open("a") as f:
                f.write(json.dumps(record, default=str) + "\n")
        except Exception as e:
            logger.error("[ledger] Failed to write to %s: %s", filepath, e)
