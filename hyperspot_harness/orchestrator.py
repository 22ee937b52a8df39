"""Build → start → health-check → test → teardown state machine."""

from __future__ import annotations

import logging
import signal
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Tuple

from hyperspot_harness.builder import ArtifactBuilder
from hyperspot_harness.config import RunConfig
from hyperspot_harness.errors import (
    HarnessError,
    HealthTimeoutError,
    LaunchError,
    RunInterrupted,
    TestRunnerError,
    exit_code_for,
)
from hyperspot_harness.health import HealthProber
from hyperspot_harness.instance import InstanceStatus, ServiceInstance
from hyperspot_harness.launchers.base import Launcher
from hyperspot_harness.logs import LogCollector, LogSinks, format_tail
from hyperspot_harness.suite import TestRunner

LOGGER = logging.getLogger("hyperspot.e2e.orchestrator")


class OrchestratorState(Enum):
    IDLE = "idle"
    BUILDING = "building"
    STARTING = "starting"
    HEALTH_CHECKING = "health_checking"
    READY = "ready"
    RUNNING = "running"
    TEARING_DOWN = "tearing_down"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class RunOutcome:
    exit_code: int
    final_state: OrchestratorState
    instance_status: InstanceStatus
    final_status: InstanceStatus
    test_exit_code: int | None = None
    failed_phase: str | None = None
    error_message: str | None = None
    diagnostics: Tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.final_state is OrchestratorState.SUCCEEDED

    @property
    def harness_failure(self) -> bool:
        return self.failed_phase not in (None, "tests")


class Orchestrator:
    """Runs one end-to-end lifecycle of the service under test.

    Exactly one ``ServiceInstance`` is created per orchestrator, and teardown
    of that instance is attempted exactly once regardless of how the run
    ends (success, build/launch failure, health timeout, failing tests,
    SIGINT/SIGTERM or an unexpected exception).
    """

    def __init__(
        self,
        config: RunConfig,
        launcher: Launcher,
        *,
        builder: ArtifactBuilder | None = None,
        prober: HealthProber | None = None,
        test_runner: TestRunner | None = None,
        collector: LogCollector | None = None,
        handle_signals: bool = True,
    ):
        self.config = config
        self.launcher = launcher
        self.builder = builder or ArtifactBuilder(config)
        self._owns_prober = prober is None
        self.prober = prober or HealthProber(config)
        self.test_runner = test_runner or TestRunner(config)
        self.collector = collector or LogCollector(config.logs_dir)
        self.handle_signals = handle_signals
        self.instance = ServiceInstance()
        self.sinks: LogSinks | None = None
        self.state = OrchestratorState.IDLE
        self.history: List[OrchestratorState] = [OrchestratorState.IDLE]
        self._ran = False
        self._teardown_attempts = 0
        self._tearing_down = False
        self._interrupt: RunInterrupted | None = None
        self._original_signal_handlers: dict[int, Any] = {}

    # ----------------------------------------------------------------- planning
    def plan(self) -> List[str]:
        steps = []
        if self.config.skip_build:
            steps.append("build: skipped")
        else:
            steps.append(f"build: {' '.join(self.builder.command())}")
        steps.extend(f"start: {line}" for line in self.launcher.describe())
        steps.append(
            f"health: GET {self.config.health_url} every {self.config.health_poll_interval}s "
            f"for up to {self.config.health_timeout}s"
        )
        steps.append(f"tests: {' '.join(self.test_runner.command())}")
        steps.append(f"teardown: stop {self.launcher.name} instance, close logs in {self.config.logs_dir}")
        return steps

    # -------------------------------------------------------------------- run
    def _enter(self, state: OrchestratorState) -> None:
        LOGGER.debug("Orchestrator %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    @property
    def teardown_attempts(self) -> int:
        return self._teardown_attempts

    def run(self) -> RunOutcome:
        if self._ran:
            raise RuntimeError("Orchestrator instances are single-use; create a new one per run")
        self._ran = True
        if self.handle_signals:
            self._install_signal_handlers()
        try:
            return self._run()
        finally:
            if self.handle_signals:
                self._restore_signal_handlers()
            if self._owns_prober:
                self.prober.close()

    def _run(self) -> RunOutcome:
        error: HarnessError | None = None
        test_exit_code: int | None = None
        diagnostics: Tuple[str, ...] = ()
        try:
            self._enter(OrchestratorState.BUILDING)
            self.launcher.preflight()
            self.builder.build()

            self._enter(OrchestratorState.STARTING)
            self.sinks = self.collector.open(self.instance.instance_id)
            self.launcher.start(self.instance, self.sinks)

            self._enter(OrchestratorState.HEALTH_CHECKING)
            self.prober.wait_until_healthy(self.instance, alive=self._backend_alive)

            self._enter(OrchestratorState.READY)
            self._enter(OrchestratorState.RUNNING)
            test_exit_code = self.test_runner.run()
            if test_exit_code != 0:
                error = TestRunnerError(test_exit_code)
        except HarnessError as exc:
            error = exc
            if isinstance(exc, (LaunchError, HealthTimeoutError)):
                diagnostics = self._collect_diagnostics()
        except KeyboardInterrupt:
            error = self._interrupt or RunInterrupted(int(signal.SIGINT))
        finally:
            status_at_teardown = self.instance.status
            self._teardown(failed=error is not None and not isinstance(error, TestRunnerError))
        if self._interrupt is not None and error is None:
            error = self._interrupt

        if error is None:
            self._enter(OrchestratorState.SUCCEEDED)
            LOGGER.info("E2E run succeeded")
            return RunOutcome(
                exit_code=0,
                final_state=self.state,
                instance_status=status_at_teardown,
                final_status=self.instance.status,
                test_exit_code=test_exit_code,
            )
        self._enter(OrchestratorState.FAILED)
        exit_code = exit_code_for(error, self.config)
        if isinstance(error, TestRunnerError):
            LOGGER.error("E2E tests failed (exit code %s)", error.exit_code)
        else:
            LOGGER.error("E2E harness failed during %s phase: %s", error.phase, error)
        return RunOutcome(
            exit_code=exit_code,
            final_state=self.state,
            instance_status=status_at_teardown,
            final_status=self.instance.status,
            test_exit_code=test_exit_code,
            failed_phase=error.phase,
            error_message=str(error),
            diagnostics=diagnostics,
        )

    def _backend_alive(self) -> bool:
        return self.launcher.is_running(self.instance)

    def _collect_diagnostics(self) -> Tuple[str, ...]:
        if self.sinks is None:
            return ()
        return tuple(format_tail(self.sinks.tail(self.config.log_tail_lines)))

    # --------------------------------------------------------------- teardown
    def _teardown(self, *, failed: bool) -> None:
        if self._teardown_attempts:
            return
        self._teardown_attempts += 1
        self._tearing_down = True
        self._enter(OrchestratorState.TEARING_DOWN)
        stopped = True
        try:
            if self.instance.backend_handle is not None:
                stopped = self.launcher.stop(self.instance)
        except (HarnessError, OSError, subprocess.SubprocessError) as exc:
            stopped = False
            LOGGER.warning("Teardown of %s instance %s failed: %s", self.launcher.name, self.instance.backend_handle, exc)
        finally:
            status = self.instance.status
            if stopped and status in (InstanceStatus.HEALTHY, InstanceStatus.UNHEALTHY):
                self.instance.transition(InstanceStatus.STOPPED)
            elif not status.terminal and (failed or not stopped or self.instance.backend_handle is not None):
                # STARTING has no forward edge to STOPPED.
                self.instance.transition(InstanceStatus.FAILED)
            if self.sinks is not None:
                self.sinks.close()
            self._tearing_down = False
        if not stopped:
            LOGGER.warning("Backend %s may still be running; clean it up manually", self.instance.backend_handle)

    # ---------------------------------------------------------------- signals
    def _install_signal_handlers(self) -> None:
        for sig in (getattr(signal, "SIGINT", None), getattr(signal, "SIGTERM", None)):
            if sig is None:
                continue
            try:
                previous = signal.getsignal(sig)
                self._original_signal_handlers[sig] = previous
                signal.signal(sig, self._handle_signal)
            except (ValueError, OSError, RuntimeError):
                continue

    def _restore_signal_handlers(self) -> None:
        for sig, handler in self._original_signal_handlers.items():
            try:
                signal.signal(sig, handler)
            except (ValueError, OSError, RuntimeError, TypeError):
                continue
        self._original_signal_handlers = {}

    def _handle_signal(self, signum: int, frame: Any) -> None:
        if self._interrupt is not None:
            return
        self._interrupt = RunInterrupted(signum)
        LOGGER.warning("%s; tearing down the service instance…", self._interrupt)
        if self._tearing_down:
            return
        raise self._interrupt
