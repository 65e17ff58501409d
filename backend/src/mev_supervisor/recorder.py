"""Session Recorder - owns the log artifact for one supervised session.

Worker stdout/stderr (combined) is read in chunks and fanned out to two sink
tasks: one mirrors to the operator's terminal, the other appends to the
artifact. Each sink drains its own FIFO queue, so byte order within the
worker's stream is preserved in both places.
"""

import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Callable, Optional

from .errors import SessionArtifactError, SessionStateError
from .models import Session

logger = logging.getLogger("mev_supervisor.recorder")

CHUNK_SIZE = 4096
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
SESSION_ID_FORMAT = "%Y%m%d_%H%M%S"


class SessionRecorder:
    """Creates the session artifact and streams worker output into it."""

    def __init__(
        self,
        log_dir: Path,
        prefix: str = "mev_bot",
        terminal: Optional[BinaryIO] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._log_dir = Path(log_dir)
        self._prefix = prefix
        self._terminal = terminal
        self._clock = clock
        self._file: Optional[BinaryIO] = None
        self._session: Optional[Session] = None

    @property
    def session(self) -> Optional[Session]:
        return self._session

    def open(self) -> Session:
        """Create the log directory and a fresh artifact for a new session.

        Raises:
            SessionArtifactError: directory or file cannot be created
        """
        started_at = self._clock()
        session_id = started_at.strftime(SESSION_ID_FORMAT)
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
            log_path = self._log_dir / f"{self._prefix}_{session_id}.log"
            suffix = 1
            while log_path.exists():
                suffix += 1
                log_path = self._log_dir / f"{self._prefix}_{session_id}_{suffix}.log"
            if suffix > 1:
                session_id = f"{session_id}_{suffix}"
            self._file = log_path.open("xb")
        except OSError as e:
            raise SessionArtifactError(f"Cannot create log artifact in {self._log_dir}: {e}") from e

        self._session = Session(id=session_id, log_path=log_path, started_at=started_at)
        self.write_banner(f"Session {session_id} started")
        logger.info("[recorder] Log file: %s", log_path)
        return self._session

    def write_banner(self, text: str) -> None:
        """Append a timestamped supervisor line to the artifact."""
        self._require_open()
        stamp = self._clock().strftime(TIMESTAMP_FORMAT)
        self._write_log(f"[{stamp}] {text}\n".encode("utf-8"))

    async def tee(self, stream: asyncio.StreamReader) -> int:
        """Copy ``stream`` to the terminal and the artifact until EOF.

        Returns once both sinks have drained, i.e. every byte read has been
        written and flushed. Returns the number of bytes copied.

        Reading stops as soon as the artifact sink fails; its OSError is
        re-raised without waiting for the stream to end.
        """
        self._require_open()
        terminal_queue: asyncio.Queue = asyncio.Queue()
        log_queue: asyncio.Queue = asyncio.Queue()
        log_sink = asyncio.create_task(self._drain(log_queue, self._write_log))
        sinks = [asyncio.create_task(self._drain(terminal_queue, self._write_terminal)), log_sink]
        total = 0
        reader: Optional[asyncio.Future] = None
        try:
            while True:
                reader = asyncio.ensure_future(stream.read(CHUNK_SIZE))
                await asyncio.wait({reader, log_sink}, return_when=asyncio.FIRST_COMPLETED)
                if log_sink.done():
                    break  # artifact sink died
                chunk = reader.result()
                reader = None
                if not chunk:
                    break
                total += len(chunk)
                terminal_queue.put_nowait(chunk)
                log_queue.put_nowait(chunk)
        finally:
            if reader is not None:
                reader.cancel()
            terminal_queue.put_nowait(None)
            log_queue.put_nowait(None)
            await asyncio.wait(sinks)
        log_sink.result()
        return total

    def seal(self) -> Session:
        """Write the closing banner, flush and close. No writes after this.

        The file is closed and the session sealed even when the closing
        banner cannot be written.

        Raises:
            SessionArtifactError: closing banner or flush failed
        """
        session = self._require_open()
        ended_at = self._clock()
        error: Optional[OSError] = None
        try:
            self.write_banner(f"Session {session.id} ended")
            self._file.flush()
        except OSError as e:
            error = e
        self.close()
        session.seal(ended_at)
        if error is not None:
            raise SessionArtifactError(f"Cannot finish log artifact {session.log_path}: {error}") from error
        return session

    def close(self) -> None:
        """Close the artifact without a closing banner. Safe to call twice."""
        if self._file is None:
            return
        f, self._file = self._file, None
        try:
            f.close()
        except OSError as e:
            logger.warning("[recorder] Closing %s failed: %s", self._session.log_path, e)

    @staticmethod
    async def _drain(queue: asyncio.Queue, write: Callable[[bytes], None]) -> None:
        while True:
            chunk = await queue.get()
            if chunk is None:
                return
            write(chunk)

    def _write_log(self, chunk: bytes) -> None:
        self._file.write(chunk)
        self._file.flush()

    def _write_terminal(self, chunk: bytes) -> None:
        terminal = self._terminal if self._terminal is not None else sys.stdout.buffer
        try:
            terminal.write(chunk)
            terminal.flush()
        except (OSError, ValueError) as e:
            # A closed terminal must not stop the artifact copy
            logger.debug("[recorder] Terminal mirror write failed: %s", e)

    def _require_open(self) -> Session:
        if self._session is None or self._file is None:
            raise SessionStateError("Session log is not open")
        return self._session
