"""Process Supervisor - keeps the MEV worker running until the operator stops it.

Lifecycle:
    IDLE -> STARTING -> RUNNING -> {EXITED | CANCELLING} -> (STARTING | FINALIZING) -> TERMINATED

Every worker exit (clean, crash, or failure to spawn) is followed by a fixed
restart delay and a new run appended to the same session artifact. Only the
cancellation token ends the loop. It is raced against every wait: child exit,
restart delay and termination grace period.

Usage:
    python -m mev_supervisor supervise
"""

import asyncio
import logging
import os
import shlex
import signal
import sys
from decimal import Decimal
from typing import Callable, List, Optional, TextIO

from .balance import BalanceProvider, SolanaCliBalanceProvider, snapshot_balance
from .config import SupervisorConfig
from .errors import (
    LogArtifactMissing,
    SessionArtifactError,
    SessionStateError,
    WorkerCrash,
    WorkerSpawnFailure,
)
from .extractor import extract_metrics
from .ledger import SessionLedger
from .models import Session, SessionSummary, SupervisorPhase, WorkerExit
from .recorder import SessionRecorder
from .report import format_balance_delta, render_balance_summary, render_report

logger = logging.getLogger("mev_supervisor.supervisor")

# Exit status recorded for a worker that never started (shell convention)
SPAWN_FAILURE_RETURNCODE = 127


class ProcessSupervisor:
    """Owns the worker process, the active session, and the restart loop."""

    def __init__(
        self,
        config: Optional[SupervisorConfig] = None,
        balance_provider: Optional[BalanceProvider] = None,
        recorder: Optional[SessionRecorder] = None,
        ledger: Optional[SessionLedger] = None,
        cancel_token: Optional[asyncio.Event] = None,
        out: Optional[TextIO] = None,
        on_exit: Optional[Callable[[WorkerExit], None]] = None,
    ):
        self._config = config or SupervisorConfig()
        self._balance = balance_provider or SolanaCliBalanceProvider(
            command=self._config.balance_command,
            timeout=self._config.balance_timeout,
        )
        self._recorder = recorder or SessionRecorder(self._config.log_dir, self._config.log_prefix)
        if ledger is None and self._config.ledger_enabled:
            ledger = SessionLedger(self._config.ledger_path)
        self._ledger = ledger
        self._cancel = cancel_token or asyncio.Event()
        self._out = out
        self._on_exit = on_exit

        self._phase = SupervisorPhase.IDLE
        self._process: Optional[asyncio.subprocess.Process] = None
        self._session: Optional[Session] = None
        self._exits: List[WorkerExit] = []

    @property
    def phase(self) -> SupervisorPhase:
        return self._phase

    @property
    def process(self) -> Optional[asyncio.subprocess.Process]:
        return self._process

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def request_cancel(self, reason: str = "operator") -> None:
        """Set the cancellation token. Safe to call from a signal handler."""
        if not self._cancel.is_set():
            logger.info("[supervisor] Interrupt received (%s), stopping worker...", reason)
        self._cancel.set()

    # ─── Main Loop ────────────────────────────────────────────

    async def run(self, once: bool = False) -> SessionSummary:
        """Supervise the worker until cancelled, then finalize the session.

        With ``once=True`` the worker is not restarted after it exits on its
        own; the session is finalized right away.

        Raises:
            SessionArtifactError: log directory/artifact cannot be created or written
        """
        if self._phase != SupervisorPhase.IDLE:
            raise SessionStateError(f"Supervisor already used (phase={self._phase.value})")

        self._phase = SupervisorPhase.STARTING
        session = self._recorder.open()
        self._session = session

        logger.info("=" * 60)
        logger.info("  MEV Supervisor Starting")
        logger.info("  Worker: %s", shlex.join(self._config.worker_command))
        logger.info("  Log file: %s", session.log_path)
        logger.info("=" * 60)

        logger.info("[supervisor] Fetching initial balance...")
        session.initial_balance = await self._snapshot_balance()

        try:
            while not self.cancelled:
                self._phase = SupervisorPhase.STARTING
                worker_exit = await self._run_worker(session)
                self._exits.append(worker_exit)
                if self._on_exit is not None:
                    self._on_exit(worker_exit)

                if worker_exit.cancelled or self.cancelled:
                    break
                self._phase = SupervisorPhase.EXITED
                self._report_exit(worker_exit, restarting=not once)
                if once:
                    break
                if await self._wait_for_cancel(self._config.restart_delay):
                    break
        except SessionArtifactError as e:
            logger.error("[supervisor] Session log failed, halting: %s", e)
            self._recorder.close()
            self._phase = SupervisorPhase.TERMINATED
            raise

        return await self._finalize(session)

    async def _run_worker(self, session: Session) -> WorkerExit:
        """Spawn one worker run and wait for it to exit or for cancellation."""
        session.runs += 1
        run_number = session.runs
        command = list(self._config.worker_command)
        self._write_banner(f"Worker run {run_number} starting")
        logger.info("[supervisor] Starting worker (run %d): %s", run_number, shlex.join(command))

        try:
            self._process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self._config.worker_cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            error = WorkerSpawnFailure(f"Failed to start worker {command[0]!r}: {e}", command=shlex.join(command))
            logger.error("[supervisor] %s", error)
            self._write_banner(f"Worker run {run_number} failed to start: {e}")
            return WorkerExit(run_number=run_number, returncode=SPAWN_FAILURE_RETURNCODE, spawn_failed=True, error=error)

        proc = self._process
        self._phase = SupervisorPhase.RUNNING
        logger.info("[supervisor] Worker running (PID %d)", proc.pid)

        tee_task = asyncio.create_task(self._recorder.tee(proc.stdout))
        wait_task = asyncio.create_task(proc.wait())
        cancel_task = asyncio.create_task(self._cancel.wait())
        cancelled = False
        try:
            watched = {wait_task, cancel_task, tee_task}
            while True:
                done, watched = await asyncio.wait(watched, return_when=asyncio.FIRST_COMPLETED)
                if tee_task in done and tee_task.exception() is not None:
                    # Worker must not keep running unlogged
                    logger.error("[supervisor] Log artifact write failed, stopping worker")
                    self._phase = SupervisorPhase.CANCELLING
                    await self._terminate_worker(proc)
                    break
                if wait_task in done:
                    break
                if cancel_task in done:
                    cancelled = True
                    self._phase = SupervisorPhase.CANCELLING
                    await self._terminate_worker(proc)
                    break
            returncode = await wait_task
        finally:
            cancel_task.cancel()
            if proc.returncode is None:
                await self._terminate_worker(proc)
            await self._drain_output(proc, tee_task)
            self._process = None

        self._write_banner(f"Worker run {run_number} exited with code {returncode}")
        error = None
        if returncode != 0 and not cancelled:
            error = WorkerCrash(f"Worker exited with code {returncode}", returncode=returncode)
        return WorkerExit(run_number=run_number, returncode=returncode, cancelled=cancelled, error=error)

    async def _drain_output(self, proc: asyncio.subprocess.Process, tee_task: asyncio.Task) -> None:
        """Wait until every byte the worker wrote is in the artifact.

        Leftover children that inherited the pipe are killed after the grace
        period so the copy can reach EOF. A descendant outside the process
        group can still hold the pipe; after a second grace period the copy
        is abandoned.
        """
        grace = self._config.terminate_grace
        try:
            try:
                await asyncio.wait_for(asyncio.shield(tee_task), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("[supervisor] Worker output still open after exit, killing process group")
                self._signal_group(proc, signal.SIGKILL)
                try:
                    await asyncio.wait_for(asyncio.shield(tee_task), timeout=grace)
                except asyncio.TimeoutError:
                    logger.error("[supervisor] Worker output held open by a detached process, abandoning copy")
                    tee_task.cancel()
                    await asyncio.wait({tee_task})
        except OSError as e:
            raise SessionArtifactError(f"Cannot write log artifact: {e}") from e

    async def _terminate_worker(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM the worker's process group, SIGKILL after the grace period."""
        if proc.returncode is not None:
            return
        logger.info("[supervisor] Sent SIGTERM to worker (PID %d)", proc.pid)
        self._signal_group(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._config.terminate_grace)
            logger.info("[supervisor] Worker %d stopped gracefully", proc.pid)
        except asyncio.TimeoutError:
            logger.warning("[supervisor] Worker %d didn't stop, sending SIGKILL", proc.pid)
            self._signal_group(proc, signal.SIGKILL)
            await proc.wait()

    @staticmethod
    def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass  # Already gone
        except PermissionError:
            try:
                proc.send_signal(sig)
            except ProcessLookupError:
                pass

    async def _wait_for_cancel(self, delay: float) -> bool:
        """Sleep ``delay`` seconds; True if cancellation arrived meanwhile."""
        if self.cancelled:
            return True
        try:
            await asyncio.wait_for(self._cancel.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    def _report_exit(self, worker_exit: WorkerExit, restarting: bool) -> None:
        suffix = f", restarting in {self._config.restart_delay:g} seconds..." if restarting else ""
        if worker_exit.spawn_failed:
            logger.error("[supervisor] Worker could not be started%s", suffix)
        elif worker_exit.clean:
            logger.info("[supervisor] Worker terminated normally%s", suffix)
        else:
            logger.warning(
                "[supervisor] Worker terminated unexpectedly (code %d)%s", worker_exit.returncode, suffix,
            )

    # ─── Finalization ─────────────────────────────────────────

    async def _finalize(self, session: Session) -> SessionSummary:
        """Seal the artifact, snapshot the balance, extract and print metrics."""
        self._phase = SupervisorPhase.FINALIZING
        try:
            self._recorder.seal()
            logger.info("[supervisor] Session %s sealed after %d run(s)", session.id, session.runs)
        except SessionArtifactError as e:
            # Artifact is closed; report on whatever reached it
            logger.error("[supervisor] %s", e)

        logger.info("[supervisor] Fetching final balance...")
        session.final_balance = await self._snapshot_balance()

        report = None
        try:
            report = extract_metrics(session.log_path)
        except LogArtifactMissing as e:
            logger.error("[supervisor] Could not extract metrics: %s", e)

        if report is not None:
            self._print(render_report(report))
        self._print(render_balance_summary(session.initial_balance, session.final_balance))

        summary = SessionSummary(session=session, report=report, exits=list(self._exits))
        if self._ledger is not None:
            self._ledger.log_session(session, report, restarts=summary.restarts)

        logger.info(
            "[supervisor] Supervisor stopped. Runs=%d, balance change: %s",
            session.runs, format_balance_delta(session.initial_balance, session.final_balance),
        )
        self._phase = SupervisorPhase.TERMINATED
        return summary

    # ─── Helpers ──────────────────────────────────────────────

    async def _snapshot_balance(self) -> Optional[Decimal]:
        # Outer bound a little above the provider's own timeout so it can clean up
        return await snapshot_balance(
            self._balance, self._config.keypair_path, timeout=self._config.balance_timeout + 1.0,
        )

    def _write_banner(self, text: str) -> None:
        try:
            self._recorder.write_banner(text)
        except OSError as e:
            raise SessionArtifactError(f"Cannot write log artifact: {e}") from e

    def _print(self, text: str) -> None:
        print(text, file=self._out or sys.stdout, flush=True)
