"""
Tests for the process supervisor.

Workers are short Python subprocesses so restart, crash, spawn failure and
cancellation paths run against real child processes.
"""

import asyncio
import errno
import io
import json
import os
import signal
import sys
from decimal import Decimal
from pathlib import Path

import pytest

from mev_supervisor.config import SupervisorConfig
from mev_supervisor.errors import (
    BalanceUnavailable,
    SessionArtifactError,
    SessionStateError,
    WorkerCrash,
    WorkerSpawnFailure,
)
from mev_supervisor.models import MarkerClass, SupervisorPhase
from mev_supervisor.recorder import SessionRecorder
from mev_supervisor.supervisor import SPAWN_FAILURE_RETURNCODE, ProcessSupervisor


class FakeBalanceProvider:
    """Returns queued balances in order; exceptions in the queue are raised."""

    def __init__(self, *results):
        self._results = list(results)
        self.calls = 0

    async def query(self, credential_ref):
        self.calls += 1
        result = self._results.pop(0) if self._results else BalanceUnavailable("no more balances")
        if isinstance(result, Exception):
            raise result
        return result


def python_worker(code):
    return [sys.executable, "-c", code]


def worker_lines(log_path: Path, line: str) -> int:
    return sum(1 for l in log_path.read_text(encoding="utf-8").splitlines() if l == line)


@pytest.fixture
def make_supervisor(tmp_path):
    def _make(worker_command, balances=(), on_exit=None, **config_kwargs):
        settings = dict(
            worker_command=worker_command,
            worker_cwd=tmp_path,
            log_dir=tmp_path / "logs",
            restart_delay=0.01,
            terminate_grace=5.0,
            keypair_path=tmp_path / "solana-keypair.json",
            balance_timeout=1.0,
        )
        settings.update(config_kwargs)
        config = SupervisorConfig(**settings)
        out = io.StringIO()
        supervisor = ProcessSupervisor(
            config,
            balance_provider=FakeBalanceProvider(*balances),
            recorder=SessionRecorder(config.log_dir, config.log_prefix, terminal=io.BytesIO()),
            out=out,
            on_exit=on_exit,
        )
        return supervisor, out
    return _make


class TestRestartPolicy:

    @pytest.mark.asyncio
    async def test_crashing_worker_restarts_into_same_artifact(self, make_supervisor, tmp_path):
        exits = []
        sizes = []
        holder = {}

        def on_exit(worker_exit):
            exits.append(worker_exit)
            sizes.append(holder["sup"].session.log_path.stat().st_size)
            if len(exits) == 5:
                holder["sup"].request_cancel("test")

        supervisor, _ = make_supervisor(
            python_worker("import sys; print('tick', flush=True); sys.exit(1)"),
            on_exit=on_exit,
        )
        holder["sup"] = supervisor

        summary = await asyncio.wait_for(supervisor.run(), timeout=60)

        assert len(summary.exits) == 5
        assert all(e.returncode == 1 for e in summary.exits)
        assert all(isinstance(e.error, WorkerCrash) for e in summary.exits)
        assert summary.session.runs == 5
        assert summary.restarts == 4
        assert worker_lines(summary.session.log_path, "tick") == 5
        assert sizes == sorted(sizes) and len(set(sizes)) == 5
        assert len(list((tmp_path / "logs").glob("mev_bot_*.log"))) == 1

    @pytest.mark.asyncio
    async def test_clean_exit_also_restarts(self, make_supervisor):
        holder = {}

        def on_exit(worker_exit):
            if worker_exit.run_number == 2:
                holder["sup"].request_cancel("test")

        supervisor, _ = make_supervisor(python_worker("print('done', flush=True)"), on_exit=on_exit)
        holder["sup"] = supervisor

        summary = await asyncio.wait_for(supervisor.run(), timeout=30)

        assert [e.returncode for e in summary.exits] == [0, 0]
        assert all(e.clean and e.error is None for e in summary.exits)

    @pytest.mark.asyncio
    async def test_spawn_failure_restarts(self, make_supervisor):
        holder = {}

        def on_exit(worker_exit):
            if worker_exit.run_number == 3:
                holder["sup"].request_cancel("test")

        supervisor, _ = make_supervisor(["/nonexistent/mev-worker"], on_exit=on_exit)
        holder["sup"] = supervisor

        summary = await asyncio.wait_for(supervisor.run(), timeout=30)

        assert len(summary.exits) == 3
        assert all(e.spawn_failed for e in summary.exits)
        assert all(e.returncode == SPAWN_FAILURE_RETURNCODE for e in summary.exits)
        assert all(isinstance(e.error, WorkerSpawnFailure) for e in summary.exits)
        assert summary.report is not None
        assert supervisor.phase == SupervisorPhase.TERMINATED

    @pytest.mark.asyncio
    async def test_cancel_during_restart_delay(self, make_supervisor):
        holder = {}

        def on_exit(worker_exit):
            holder["sup"].request_cancel("test")

        supervisor, _ = make_supervisor(python_worker("import sys; sys.exit(2)"), on_exit=on_exit, restart_delay=3600)
        holder["sup"] = supervisor

        summary = await asyncio.wait_for(supervisor.run(), timeout=30)

        assert len(summary.exits) == 1


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_stops_running_worker_and_finalizes_once(self, make_supervisor):
        supervisor, out = make_supervisor(
            python_worker("import time; print('ready', flush=True); time.sleep(60)"),
        )
        task = asyncio.create_task(supervisor.run())

        for _ in range(200):
            await asyncio.sleep(0.05)
            session = supervisor.session
            if session is not None and session.log_path.exists() and worker_lines(session.log_path, "ready"):
                break
        else:
            pytest.fail("worker never became ready")

        pid = supervisor.process.pid
        supervisor.request_cancel("test")
        summary = await asyncio.wait_for(task, timeout=30)

        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)
        assert supervisor.process is None
        assert len(summary.exits) == 1
        assert summary.exits[0].cancelled
        assert summary.exits[0].error is None
        assert summary.session.runs == 1
        assert summary.session.is_sealed
        assert out.getvalue().count("METRICS REPORT") == 1
        assert supervisor.phase == SupervisorPhase.TERMINATED

    @pytest.mark.asyncio
    async def test_worker_ignoring_sigterm_is_killed(self, make_supervisor):
        code = (
            "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
            "print('stubborn', flush=True); time.sleep(60)"
        )
        supervisor, _ = make_supervisor(python_worker(code), terminate_grace=0.5)
        task = asyncio.create_task(supervisor.run())

        for _ in range(200):
            await asyncio.sleep(0.05)
            session = supervisor.session
            if session is not None and session.log_path.exists() and worker_lines(session.log_path, "stubborn"):
                break
        else:
            pytest.fail("worker never started")

        supervisor.request_cancel("test")
        summary = await asyncio.wait_for(task, timeout=30)

        assert summary.exits[0].cancelled
        assert summary.exits[0].returncode != 0

    @pytest.mark.asyncio
    async def test_cancel_before_first_run(self, make_supervisor):
        supervisor, out = make_supervisor(python_worker("print('never')"))
        supervisor.request_cancel("test")

        summary = await asyncio.wait_for(supervisor.run(), timeout=30)

        assert summary.exits == []
        assert summary.session.runs == 0
        assert "METRICS REPORT" in out.getvalue()


class TestFinalization:

    @pytest.mark.asyncio
    async def test_once_mode_reports_metrics_and_balance(self, make_supervisor, tmp_path):
        code = (
            "print('⚡ OPPORTUNITY on solana Tx: abc'); "
            "print('📊 Estimated profit potential: 0.02 SOL'); "
            "print('Frontrun successful')"
        )
        supervisor, out = make_supervisor(
            python_worker(code),
            balances=(Decimal("1.000000"), Decimal("1.050000")),
        )

        summary = await asyncio.wait_for(supervisor.run(once=True), timeout=30)
        report = summary.report

        assert len(summary.exits) == 1
        assert report.count(MarkerClass.OPPORTUNITY_DETECTED) == 1
        assert report.count(MarkerClass.EXECUTION_SUCCESS) == 1
        assert report.aggregates[MarkerClass.PROFIT_ESTIMATE].sum == Decimal("0.02")
        assert report.session_duration is not None
        assert summary.session.initial_balance == Decimal("1.000000")
        assert summary.session.final_balance == Decimal("1.050000")
        assert "+0.050000 SOL (+5.00%)" in out.getvalue()

        ledger = tmp_path / "logs" / "sessions.jsonl"
        record = json.loads(ledger.read_text().splitlines()[-1])
        assert record["session_id"] == summary.session.id
        assert record["final_balance"] == "1.050000"

    @pytest.mark.asyncio
    async def test_balance_unavailable_is_not_fatal(self, make_supervisor):
        supervisor, out = make_supervisor(
            python_worker("print('hi')"),
            balances=(BalanceUnavailable("rpc down"), BalanceUnavailable("rpc down")),
        )

        summary = await asyncio.wait_for(supervisor.run(once=True), timeout=30)

        assert summary.session.initial_balance is None
        assert summary.session.final_balance is None
        assert "N/A (balance unavailable)" in out.getvalue()

    @pytest.mark.asyncio
    async def test_worker_output_preserved_in_order(self, make_supervisor):
        code = "\n".join([
            "import sys",
            "for i in range(500):",
            "    print(f'line {i}')",
            "    if i % 50 == 0:",
            "        sys.stdout.flush()",
            "        print(f'err {i}', file=sys.stderr, flush=True)",
        ])
        supervisor, _ = make_supervisor(python_worker(code))

        summary = await asyncio.wait_for(supervisor.run(once=True), timeout=30)
        lines = summary.session.log_path.read_text().splitlines()
        numbered = [int(l.split()[1]) for l in lines if l.startswith("line ")]

        assert numbered == list(range(500))
        assert sum(1 for l in lines if l.startswith("err ")) == 10

    @pytest.mark.asyncio
    async def test_run_twice_raises(self, make_supervisor):
        supervisor, _ = make_supervisor(python_worker("pass"))
        await asyncio.wait_for(supervisor.run(once=True), timeout=30)

        with pytest.raises(SessionStateError):
            await supervisor.run(once=True)

    @pytest.mark.asyncio
    async def test_uncreatable_log_dir_halts(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("file")
        config = SupervisorConfig(
            worker_command=python_worker("pass"),
            log_dir=blocker / "logs",
            keypair_path=tmp_path / "missing.json",
        )
        supervisor = ProcessSupervisor(config, balance_provider=FakeBalanceProvider(), out=io.StringIO())

        with pytest.raises(SessionArtifactError):
            await supervisor.run()
        assert supervisor.process is None


class FailingArtifactRecorder(SessionRecorder):
    """Raises ENOSPC for artifact writes containing ``fail_on``."""

    def __init__(self, *args, fail_on: bytes, **kwargs):
        super().__init__(*args, **kwargs)
        self._fail_on = fail_on

    def _write_log(self, chunk):
        if self._fail_on in chunk:
            raise OSError(errno.ENOSPC, "No space left on device")
        super()._write_log(chunk)


def make_failing_supervisor(tmp_path, worker_command, fail_on, balances=(), **config_kwargs):
    settings = dict(
        worker_command=worker_command,
        worker_cwd=tmp_path,
        log_dir=tmp_path / "logs",
        restart_delay=0.01,
        terminate_grace=5.0,
        keypair_path=tmp_path / "solana-keypair.json",
        balance_timeout=1.0,
    )
    settings.update(config_kwargs)
    config = SupervisorConfig(**settings)
    recorder = FailingArtifactRecorder(config.log_dir, config.log_prefix, terminal=io.BytesIO(), fail_on=fail_on)
    out = io.StringIO()
    supervisor = ProcessSupervisor(
        config, balance_provider=FakeBalanceProvider(*balances), recorder=recorder, out=out,
    )
    return supervisor, recorder, out


class TestArtifactWriteFailures:

    @pytest.mark.asyncio
    async def test_failed_end_banner_still_reports(self, tmp_path):
        supervisor, recorder, out = make_failing_supervisor(
            tmp_path,
            python_worker("print('Jito bundle sent successfully', flush=True)"),
            fail_on=b"ended",
            balances=(Decimal("1.0"), Decimal("1.05")),
        )

        summary = await asyncio.wait_for(supervisor.run(once=True), timeout=30)

        assert summary.session.is_sealed
        assert summary.report is not None
        assert summary.report.count(MarkerClass.BUNDLE_SUCCESS) == 1
        assert summary.session.final_balance == Decimal("1.05")
        assert "METRICS REPORT" in out.getvalue()
        assert "+0.050000 SOL (+5.00%)" in out.getvalue()
        assert (tmp_path / "logs" / "sessions.jsonl").exists()
        assert supervisor.phase == SupervisorPhase.TERMINATED
        with pytest.raises(SessionStateError):
            recorder.write_banner("late")

    @pytest.mark.asyncio
    async def test_unloggable_output_stops_running_worker(self, tmp_path):
        pid_file = tmp_path / "worker.pid"
        code = (
            "import os, time\n"
            f"open({str(pid_file)!r}, 'w').write(str(os.getpid()))\n"
            "while True:\n"
            "    print('tick', flush=True)\n"
            "    time.sleep(0.01)\n"
        )
        supervisor, recorder, out = make_failing_supervisor(tmp_path, python_worker(code), fail_on=b"tick")

        with pytest.raises(SessionArtifactError):
            await asyncio.wait_for(supervisor.run(), timeout=30)

        pid = int(pid_file.read_text())
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)
        assert supervisor.process is None
        assert supervisor.phase == SupervisorPhase.TERMINATED
        assert "METRICS REPORT" not in out.getvalue()
        with pytest.raises(SessionStateError):
            recorder.write_banner("late")


class TestDetachedDescendants:

    @pytest.mark.asyncio
    async def test_pipe_held_by_new_session_does_not_hang(self, make_supervisor):
        code = (
            "import subprocess, sys\n"
            "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'], start_new_session=True)\n"
            "print('detached', child.pid, flush=True)\n"
        )
        supervisor, out = make_supervisor(python_worker(code), terminate_grace=0.3)

        try:
            summary = await asyncio.wait_for(supervisor.run(once=True), timeout=30)
        finally:
            session = supervisor.session
            for line in session.log_path.read_text().splitlines():
                if line.startswith("detached "):
                    try:
                        os.kill(int(line.split()[1]), signal.SIGKILL)
                    except ProcessLookupError:
                        pass

        assert summary.exits[0].returncode == 0
        assert summary.session.is_sealed
        assert "METRICS REPORT" in out.getvalue()
