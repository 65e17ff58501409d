"""Tests for the finalized-session JSONL ledger."""

import json
from datetime import datetime
from decimal import Decimal

from mev_supervisor.extractor import scan_lines
from mev_supervisor.ledger import SessionLedger
from mev_supervisor.models import Session


def make_session(tmp_path):
    session = Session(
        id="20260101_100000",
        log_path=tmp_path / "mev_bot_20260101_100000.log",
        started_at=datetime(2026, 1, 1, 10, 0, 0),
        initial_balance=Decimal("1.000000"),
        runs=3,
    )
    session.seal(datetime(2026, 1, 1, 11, 0, 0))
    return session


def test_appends_one_record_per_session(tmp_path):
    ledger = SessionLedger(tmp_path / "logs" / "sessions.jsonl")
    session = make_session(tmp_path)
    report = scan_lines(["OPPORTUNITY", "Frontrun successful"], session.log_path)

    ledger.log_session(session, report, restarts=2)
    ledger.log_session(session, None)

    records = [json.loads(line) for line in ledger.path.read_text().splitlines()]
    assert len(records) == 2
    assert records[0]["session_id"] == "20260101_100000"
    assert records[0]["initial_balance"] == "1.000000"
    assert records[0]["final_balance"] is None
    assert records[0]["restarts"] == 2
    assert records[0]["counts"]["opportunity-detected"] == 1
    assert records[0]["rates"]["execution_success_per_opportunity"] == "1"
    assert "counts" not in records[1]


def test_write_failure_is_not_raised(tmp_path):
    # Path is a directory, so the append fails
    ledger = SessionLedger(tmp_path)
    ledger.log_session(make_session(tmp_path), None)
