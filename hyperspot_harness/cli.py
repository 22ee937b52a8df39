from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

from hyperspot_harness.config import (
    DEFAULT_HEALTH_INTERVAL,
    DEFAULT_HEALTH_TIMEOUT,
    LOCAL_E2E_PORT,
    RunConfig,
    resolve_run_config,
)
from hyperspot_harness.errors import DEFAULT_HARNESS_EXIT_CODE, ConfigError, HarnessError, exit_code_for
from hyperspot_harness.launchers import launcher_for
from hyperspot_harness.orchestrator import Orchestrator, RunOutcome

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
HARNESS_LOG_NAME = "harness.log"

LOGGER = logging.getLogger("hyperspot.e2e")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hyperspot-e2e",
        description=(
            "Build hyperspot-server, start it on a dedicated E2E port (local process or docker), "
            "wait for /healthz, run the E2E suite against it and always tear it down."
        ),
        epilog=(
            "Environment: E2E_BASE_URL (local mode only), E2E_AUTH_TOKEN, E2E_HEALTH_TIMEOUT, "
            "E2E_HEALTH_INTERVAL, E2E_PORT, E2E_LOGS_DIR, E2E_STOP_GRACE, E2E_LOG_TAIL_LINES, E2E_LOG_LEVEL. "
            "Arguments after `--` are passed to the test runner."
        ),
    )
    parser.add_argument("--docker", action="store_true", help="Run the service in a container instead of a local process")
    parser.add_argument("--smoke", action="store_true", help="Only run tests marked as smoke")
    parser.add_argument(
        "--port",
        type=int,
        help=f"Host port for the service under test (default: {LOCAL_E2E_PORT} local, 8088 docker)",
    )
    parser.add_argument(
        "--health-timeout",
        type=float,
        help=f"Seconds to wait for /healthz before giving up (default: {DEFAULT_HEALTH_TIMEOUT:g})",
    )
    parser.add_argument(
        "--health-interval",
        type=float,
        help=f"Seconds between /healthz attempts (default: {DEFAULT_HEALTH_INTERVAL:g})",
    )
    parser.add_argument("--logs-dir", help="Directory for captured service output (default: logs/e2e)")
    parser.add_argument("--project-root", help="hyperspot checkout to build and run (default: current directory)")
    parser.add_argument(
        "--skip-build",
        action="store_true",
        help="Reuse an existing binary/image instead of invoking the build toolchain",
    )
    parser.add_argument(
        "--plan-only",
        action="store_true",
        help="Print the resolved configuration and planned steps, then exit without side effects",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every health attempt")
    parser.add_argument("test_args", nargs=argparse.REMAINDER, help=argparse.SUPPRESS)
    return parser


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    args = build_parser().parse_args(list(argv))
    if args.test_args and args.test_args[0] == "--":
        args.test_args = args.test_args[1:]
    return args


def configure_logging(log_dir: Path | None, *, verbose: bool = False) -> logging.Logger:
    """Log to stderr and, when ``log_dir`` is given, to ``harness.log`` inside it."""

    logger = logging.getLogger("hyperspot")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    level_name = "DEBUG" if verbose else os.getenv("E2E_LOG_LEVEL", "INFO").upper()
    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    file_handler_error: Exception | None = None
    log_path = log_dir / HARNESS_LOG_NAME if log_dir else None
    if log_path is not None:
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
        except OSError as exc:
            file_handler_error = exc
        else:
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    logger.setLevel(getattr(logging, level_name, logging.INFO))
    logger.propagate = False
    if file_handler_error:
        logger.warning("Falling back to stderr logging because %s could not be opened: %s", log_path, file_handler_error)
    return logger


def print_plan(config: RunConfig, orchestrator: Orchestrator) -> None:
    print("Plan-only mode: no commands will be executed.")
    for key, value in config.summary().items():
        print(f"[plan] {key}: {value}")
    for index, step in enumerate(orchestrator.plan(), start=1):
        print(f"[plan] step {index}: {step}")


def report(outcome: RunOutcome, config: RunConfig) -> None:
    if outcome.diagnostics:
        print(f"Service output (last {config.log_tail_lines} lines per stream):", file=sys.stderr)
        for line in outcome.diagnostics:
            print(line, file=sys.stderr)
    if outcome.succeeded:
        LOGGER.info("Logs: %s", config.logs_dir)
    elif outcome.harness_failure:
        LOGGER.error("Harness failure in %s phase (exit %s); logs in %s", outcome.failed_phase, outcome.exit_code, config.logs_dir)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    try:
        config = resolve_run_config(args)
    except ConfigError as exc:
        configure_logging(None)
        LOGGER.error("Configuration error: %s", exc)
        return DEFAULT_HARNESS_EXIT_CODE

    if config.plan_only:
        configure_logging(None, verbose=args.verbose)
        orchestrator = Orchestrator(config, launcher_for(config), handle_signals=False)
        try:
            print_plan(config, orchestrator)
        finally:
            orchestrator.prober.close()
        return 0

    configure_logging(config.logs_dir, verbose=args.verbose)
    LOGGER.info("E2E run: mode=%s smoke=%s base_url=%s", config.mode.value, config.smoke_only, config.base_url)
    orchestrator = Orchestrator(config, launcher_for(config))
    try:
        outcome = orchestrator.run()
    except HarnessError as exc:
        LOGGER.error("E2E harness aborted: %s", exc)
        return exit_code_for(exc, config)
    except Exception:
        LOGGER.exception("E2E harness aborted unexpectedly")
        return config.harness_exit_code
    report(outcome, config)
    return outcome.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
