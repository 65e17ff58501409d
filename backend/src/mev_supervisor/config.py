"""Supervisor configuration.

Loads from environment variables with sensible defaults. The CLI calls
``load_dotenv()`` first, so a ``.env`` file next to the worker works too.
"""

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

logger = logging.getLogger("mev_supervisor.config")

DEFAULT_WORKER_COMMAND = "cargo run --color=always"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class SupervisorConfig:
    """Configuration for the supervisor and extractor."""

    # Worker
    worker_command: List[str] = field(default_factory=lambda: shlex.split(DEFAULT_WORKER_COMMAND))
    worker_cwd: Path = field(default_factory=Path.cwd)

    # Session artifacts
    log_dir: Path = Path("logs")
    log_prefix: str = "mev_bot"

    # Timing (seconds)
    restart_delay: float = 5.0
    terminate_grace: float = 10.0

    # Balance snapshots
    balance_command: List[str] = field(default_factory=lambda: ["solana"])
    keypair_path: Path = Path("solana-keypair.json")
    balance_timeout: float = 10.0

    # Finalization
    ledger_enabled: bool = True

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "SupervisorConfig":
        """Build a config from ``MEV_*`` environment variables."""
        worker_command = shlex.split(os.environ.get("MEV_WORKER_COMMAND", DEFAULT_WORKER_COMMAND))
        worker_cwd = Path(os.environ.get("MEV_WORKER_CWD", os.getcwd()))
        log_dir = Path(os.environ.get("MEV_LOG_DIR", "logs"))
        log_prefix = os.environ.get("MEV_LOG_PREFIX", "mev_bot")
        restart_delay = float(os.environ.get("MEV_RESTART_DELAY", "5.0"))
        terminate_grace = float(os.environ.get("MEV_TERMINATE_GRACE", "10.0"))
        balance_command = shlex.split(os.environ.get("MEV_BALANCE_COMMAND", "solana"))
        keypair_path = Path(os.environ.get("MEV_KEYPAIR_PATH", "solana-keypair.json"))
        balance_timeout = float(os.environ.get("MEV_BALANCE_TIMEOUT", "10.0"))
        ledger_enabled = _env_bool("MEV_LEDGER_ENABLED", True)
        log_level = os.environ.get("MEV_LOG_LEVEL", "INFO")

        return cls(
            worker_command=worker_command,
            worker_cwd=worker_cwd,
            log_dir=log_dir,
            log_prefix=log_prefix,
            restart_delay=restart_delay,
            terminate_grace=terminate_grace,
            balance_command=balance_command,
            keypair_path=keypair_path,
            balance_timeout=balance_timeout,
            ledger_enabled=ledger_enabled,
            log_level=log_level,
        )

    def validate(self) -> bool:
        """Validate configuration values.

        Raises:
            ValueError: If a value is out of range
        """
        if not self.worker_command:
            raise ValueError("Worker command is empty")
        if not self.balance_command:
            raise ValueError("Balance command is empty")
        if self.restart_delay < 0:
            raise ValueError(f"Invalid restart delay: {self.restart_delay}s")
        if self.terminate_grace <= 0:
            raise ValueError(f"Invalid terminate grace period: {self.terminate_grace}s")
        if self.balance_timeout <= 0:
            raise ValueError(f"Invalid balance timeout: {self.balance_timeout}s")
        if not self.log_prefix:
            raise ValueError("Log prefix is empty")
        return True

    @property
    def log_glob(self) -> str:
        return f"{self.log_prefix}_*.log"

    @property
    def ledger_path(self) -> Path:
        return self.log_dir / "sessions.jsonl"


def load_config() -> SupervisorConfig:
    """Load and validate configuration from the environment."""
    config = SupervisorConfig.from_env()
    config.validate()
    logger.debug("Loaded config: %s", config)
    return config
