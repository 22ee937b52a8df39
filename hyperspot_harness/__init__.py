"""Lifecycle harness that runs hyperspot-server for the end-to-end test suite."""

from __future__ import annotations

from hyperspot_harness.config import Mode, RunConfig, resolve_run_config
from hyperspot_harness.errors import (
    BuildError,
    ConfigError,
    HarnessError,
    HealthTimeoutError,
    LaunchError,
    RunInterrupted,
    TeardownError,
    TestRunnerError,
    TestRunnerUnavailable,
)
from hyperspot_harness.health import HealthCheckResult, HealthProber, ProbeError
from hyperspot_harness.instance import InstanceStatus, ServiceInstance
from hyperspot_harness.launchers import ContainerLauncher, Launcher, ProcessLauncher, launcher_for
from hyperspot_harness.logs import LogCollector, LogSinks
from hyperspot_harness.orchestrator import Orchestrator, OrchestratorState, RunOutcome

__all__ = [
    "BuildError",
    "ConfigError",
    "ContainerLauncher",
    "HarnessError",
    "HealthCheckResult",
    "HealthProber",
    "HealthTimeoutError",
    "InstanceStatus",
    "LaunchError",
    "Launcher",
    "LogCollector",
    "LogSinks",
    "Mode",
    "Orchestrator",
    "OrchestratorState",
    "ProbeError",
    "ProcessLauncher",
    "RunConfig",
    "RunInterrupted",
    "RunOutcome",
    "ServiceInstance",
    "TeardownError",
    "TestRunnerError",
    "TestRunnerUnavailable",
    "launcher_for",
    "resolve_run_config",
]
