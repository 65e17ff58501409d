"""Error hierarchy for the supervisor and the log metrics extractor.

Everything inherits from SupervisorError so callers can catch the whole
family, while the supervisor loop recovers from the specific failure modes
that are not allowed to stop it.
"""


class SupervisorError(Exception):
    """Base exception for all supervisor errors."""
    pass


class WorkerSpawnFailure(SupervisorError):
    """Worker command is missing or cannot be executed."""

    def __init__(self, message: str, command: str = ""):
        super().__init__(message)
        self.command = command


class WorkerCrash(SupervisorError):
    """Worker exited with a non-zero status."""

    def __init__(self, message: str, returncode: int = 1):
        super().__init__(message)
        self.returncode = returncode


class BalanceUnavailable(SupervisorError):
    """Balance query failed, timed out, or returned something unparseable."""
    pass


class LogArtifactMissing(SupervisorError):
    """Session log artifact does not exist or cannot be read."""

    def __init__(self, message: str, path: str = ""):
        super().__init__(message)
        self.path = path


class MalformedNumericToken(SupervisorError):
    """Expected numeric token next to a marker is missing or not a number."""

    def __init__(self, message: str, line: str = ""):
        super().__init__(message)
        self.line = line


class SessionArtifactError(SupervisorError):
    """Log directory or artifact could not be created. Fatal to supervision."""
    pass


class SessionStateError(SupervisorError):
    """Session used after it was sealed, or finalized twice."""
    pass
