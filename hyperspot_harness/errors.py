from __future__ import annotations

import signal
from typing import TYPE_CHECKING, Any, List

if TYPE_CHECKING:  # pragma: no cover
    from hyperspot_harness.config import RunConfig

DEFAULT_HARNESS_EXIT_CODE = 70
INTERRUPT_EXIT_CODES = {
    int(signal.SIGINT): 130,
    int(getattr(signal, "SIGTERM", signal.SIGINT)): 143,
}


class HarnessError(RuntimeError):
    """Base class for orchestration-level failures."""

    phase = "harness"


class ConfigError(HarnessError):
    phase = "config"


class BuildError(HarnessError):
    phase = "build"


class LaunchError(HarnessError):
    phase = "launch"


class HealthTimeoutError(HarnessError):
    phase = "health"

    def __init__(self, message: str, attempts: List[Any] | None = None):
        super().__init__(message)
        self.attempts = list(attempts or [])


class TestRunnerError(HarnessError):
    """Non-zero exit from the test suite; not a harness defect."""

    phase = "tests"
    __test__ = False

    def __init__(self, exit_code: int):
        super().__init__(f"Test runner exited with code {exit_code}")
        self.exit_code = exit_code


class TestRunnerUnavailable(HarnessError):
    """The suite command could not be started, so no test ever ran."""

    phase = "test_runner"
    __test__ = False


class TeardownError(HarnessError):
    phase = "teardown"


class RunInterrupted(HarnessError):
    phase = "interrupted"

    def __init__(self, signum: int):
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        super().__init__(f"Received {name}")
        self.signum = signum


def exit_code_for(error: BaseException, config: "RunConfig | None" = None) -> int:
    """Map a run-terminating error to the process exit status."""

    if isinstance(error, TestRunnerError):
        return error.exit_code
    if isinstance(error, RunInterrupted):
        return INTERRUPT_EXIT_CODES.get(error.signum, 128 + error.signum)
    if config is not None:
        return config.harness_exit_code
    return DEFAULT_HARNESS_EXIT_CODE
