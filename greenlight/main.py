"""greenlight command-line entry point.

``greenlight converge`` drives the current repository (or every target in
``targets.yaml`` with ``--cross-repo``) until local checks and remote CI are
green.
"""

from __future__ import annotations

import argparse
import os
import signal
import sys
import time
from pathlib import Path

from greenlight.core.config import get_settings
from greenlight.core.controller import (
    EXIT_FATAL,
    ConvergeController,
    ConvergeOptions,
    overall_exit_code,
    run_cross_repo,
)
from greenlight.core.errors import ConfigurationError
from greenlight.core.logging import get_logger, setup_logging
from greenlight.core.shutdown import interrupt_agent_calls, request_shutdown
from infra.ci import CIAuthError
from infra.registry import TargetRegistry, load_targets

# A second Ctrl+C this soon after cancelling an agent call stops the run.
ESCALATE_SECONDS = 5.0


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"{value!r} is not an integer") from None
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="greenlight", description="Drive local checks and CI to green.")
    sub = parser.add_subparsers(dest="command", required=True)

    converge = sub.add_parser("converge", help="Fix, commit and push until local checks and CI pass")
    converge.add_argument("--repo", default=".", help="Repository root (default: current directory)")
    converge.add_argument("--cross-repo", action="store_true", help="Converge every target in targets.yaml")
    converge.add_argument("--targets", default=None, help="Targets file for --cross-repo")
    converge.add_argument(
        "--only", action="append", default=None, metavar="NAME", help="Limit --cross-repo to these targets (repeatable)"
    )
    converge.add_argument("--workers", type=_positive_int, default=3, help="Parallel targets in --cross-repo mode")
    converge.add_argument("--seq", action="store_true", help="Process targets one at a time")
    converge.add_argument(
        "--max-auto-fixes", type=_positive_int, default=None, help="Auto-fix attempts per failing check"
    )
    converge.add_argument("--max-retries", type=_positive_int, default=None, help="Whole-run CI fix attempts")
    converge.add_argument("--dry-run", action="store_true", help="Show what would run without changing anything")
    converge.add_argument("--no-verify", action="store_true", help="Pass --no-verify to git commit")
    converge.add_argument("--pre-commit-scan", action="store_true", help="Review staged changes before starting")
    converge.add_argument("--no-interactive", action="store_true", help="Stop for an operator instead of prompting")
    converge.add_argument("--resume", action="store_true", help="Resume from the last operator checkpoint")
    return parser


def _install_signal_handlers(logger) -> None:
    presses = 0
    last_cancel = float("-inf")

    def _handle_signal(signum, frame):
        nonlocal presses, last_cancel
        now = time.monotonic()
        if signum == signal.SIGINT and now - last_cancel > ESCALATE_SECONDS:
            cancelled = interrupt_agent_calls()
            if cancelled:
                last_cancel = now
                logger.info("Interrupt received - cancelled %d running agent call(s) (press again to stop)", cancelled)
                return
        presses += 1
        request_shutdown()
        if presses == 1:
            logger.info("Interrupt received - stopping after the current step (press again to force)")
        else:
            logger.warning("Second interrupt - forcing immediate exit")
            os._exit(130)

    signal.signal(signal.SIGINT, _handle_signal)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _handle_signal)


def _options(args: argparse.Namespace) -> ConvergeOptions:
    return ConvergeOptions(
        max_auto_fixes=args.max_auto_fixes,
        max_retries=args.max_retries,
        dry_run=args.dry_run,
        no_verify=args.no_verify,
        pre_commit_scan=args.pre_commit_scan,
        interactive=not args.no_interactive,
        resume=args.resume,
    )


def converge(args: argparse.Namespace) -> int:
    logger = get_logger("main")
    settings = get_settings()
    options = _options(args)

    try:
        if args.cross_repo:
            registry = load_targets(Path(args.targets) if args.targets else None)
            if args.only:
                registry = TargetRegistry([registry.resolve(name) for name in args.only])
            workers = 1 if args.seq else args.workers
            return overall_exit_code(run_cross_repo(registry, options, settings, workers=workers))
        return ConvergeController(args.repo, options, settings).run().exit_code
    except (ConfigurationError, CIAuthError) as exc:
        logger.error("Fatal: %s", exc)
        return EXIT_FATAL


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    logger = get_logger("main")
    _install_signal_handlers(logger)

    logger.info("=" * 60)
    logger.info("greenlight %s", args.command)
    logger.info("=" * 60)
    return converge(args)


if __name__ == "__main__":
    sys.exit(main())
