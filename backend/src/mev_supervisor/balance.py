"""Balance Snapshot Provider.

The supervisor only needs one number before and one after a session. The
default provider shells out to ``solana balance --keypair <path>`` and reads
the leading decimal of its output (``"1.234567 SOL"``).
"""

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import List, Optional, Protocol

from .errors import BalanceUnavailable

logger = logging.getLogger("mev_supervisor.balance")


class BalanceProvider(Protocol):
    async def query(self, credential_ref: Path) -> Decimal:
        """Return the balance for ``credential_ref`` or raise BalanceUnavailable."""
        ...


def parse_balance_output(output: str) -> Decimal:
    """Leading decimal token of balance CLI output."""
    tokens = output.strip().split()
    if not tokens:
        raise BalanceUnavailable("Empty balance output")
    try:
        value = Decimal(tokens[0])
    except InvalidOperation:
        raise BalanceUnavailable(f"Unparseable balance output: {output.strip()[:80]!r}")
    if not value.is_finite():
        raise BalanceUnavailable(f"Non-finite balance: {tokens[0]!r}")
    return value


class SolanaCliBalanceProvider:
    """Query a keypair's balance through the ``solana`` CLI."""

    def __init__(self, command: Optional[List[str]] = None, timeout: float = 10.0):
        self._command = list(command) if command else ["solana"]
        self._timeout = timeout

    async def query(self, credential_ref: Path) -> Decimal:
        credential_ref = Path(credential_ref)
        if not credential_ref.is_file():
            raise BalanceUnavailable(f"Keypair file not found: {credential_ref}")

        argv = [*self._command, "balance", "--keypair", str(credential_ref)]
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise BalanceUnavailable(f"Cannot run {argv[0]!r}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            await self._reap(proc)
            raise BalanceUnavailable(f"Balance query timed out after {self._timeout:.1f}s")
        except asyncio.CancelledError:
            # Caller gave up first; don't leave the CLI running
            await self._reap(proc)
            raise

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()[:200]
            raise BalanceUnavailable(f"Balance query exited with {proc.returncode}: {detail}")

        return parse_balance_output(stdout.decode("utf-8", errors="replace"))

    @staticmethod
    async def _reap(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        await proc.wait()


async def snapshot_balance(provider: BalanceProvider, credential_ref: Path, timeout: float) -> Optional[Decimal]:
    """Query ``provider`` with a hard timeout. Any failure yields None."""
    try:
        balance = await asyncio.wait_for(provider.query(credential_ref), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("[balance] Balance query timed out after %.1fs", timeout)
        return None
    except BalanceUnavailable as e:
        logger.warning("[balance] Balance unavailable: %s", e)
        return None
    except Exception as e:
        logger.warning("[balance] Balance provider error: %s", e, exc_info=True)
        return None
    logger.info("[balance] Balance: %s SOL", balance)
    return balance
