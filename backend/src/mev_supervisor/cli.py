"""Command line entry point.

    mev-supervisor supervise [--once] [-- worker args...]
    mev-supervisor extract [LOG_PATH] [--json]
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .config import SupervisorConfig, load_config
from .errors import LogArtifactMissing, SessionArtifactError
from .extractor import extract_metrics, find_latest_artifact
from .report import render_report
from .supervisor import ProcessSupervisor

logger = logging.getLogger("mev_supervisor.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mev-supervisor",
        description="Supervise the MEV worker and analyze its session logs",
    )
    parser.add_argument("--log-level", default=None, help="Log level (default: MEV_LOG_LEVEL or INFO)")
    parser.add_argument("--log-dir", type=Path, default=None, help="Session log directory")
    sub = parser.add_subparsers(dest="command", required=True)

    sup = sub.add_parser("supervise", help="Run the worker, restarting it until interrupted")
    sup.add_argument("--once", action="store_true", help="Do not restart; finalize when the worker exits")
    sup.add_argument("--restart-delay", type=float, default=None, help="Seconds between restarts")
    sup.add_argument("--keypair", type=Path, default=None, help="Keypair file used for balance snapshots")
    sup.add_argument("worker_args", nargs=argparse.REMAINDER, help="Extra arguments appended to the worker command")

    ext = sub.add_parser("extract", help="Print metrics for a session log")
    ext.add_argument("log_path", nargs="?", type=Path, default=None, help="Log file (default: most recent)")
    ext.add_argument("--json", action="store_true", help="Print the report as JSON")
    return parser


def _apply_overrides(config: SupervisorConfig, args: argparse.Namespace) -> SupervisorConfig:
    if args.log_dir is not None:
        config.log_dir = args.log_dir
    if args.log_level is not None:
        config.log_level = args.log_level
    if getattr(args, "restart_delay", None) is not None:
        config.restart_delay = args.restart_delay
    if getattr(args, "keypair", None) is not None:
        config.keypair_path = args.keypair
    worker_args = list(getattr(args, "worker_args", None) or [])
    if worker_args and worker_args[0] == "--":
        worker_args = worker_args[1:]
    if worker_args:
        config.worker_command = [*config.worker_command, *worker_args]
    config.validate()
    return config


async def supervise(config: SupervisorConfig, once: bool = False) -> int:
    supervisor = ProcessSupervisor(config)
    loop = asyncio.get_running_loop()
    signals = (signal.SIGINT, signal.SIGTERM)
    for sig in signals:
        loop.add_signal_handler(sig, supervisor.request_cancel, sig.name)
    try:
        await supervisor.run(once=once)
    except SessionArtifactError as e:
        logger.error("[cli] Supervision halted: %s", e)
        print(f"Cannot run without a session log: {e}", file=sys.stderr)
        return 1
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)
    print("Analysis complete")
    return 0


def extract(config: SupervisorConfig, log_path: Optional[Path], as_json: bool = False) -> int:
    try:
        if log_path is None:
            log_path = find_latest_artifact(config.log_dir, config.log_glob)
        report = extract_metrics(log_path)
    except LogArtifactMissing as e:
        print(f"File not found: {e.path or log_path}", file=sys.stderr)
        return 1

    if as_json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(render_report(report))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv()

    try:
        config = _apply_overrides(load_config(), args)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.command == "supervise":
        return asyncio.run(supervise(config, once=args.once))
    return extract(config, args.log_path, as_json=args.json)


if __name__ == "__main__":
    sys.exit(main())
