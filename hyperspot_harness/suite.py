from __future__ import annotations

import logging
from typing import Dict, List

from hyperspot_harness.config import SMOKE_MARKER, RunConfig
from hyperspot_harness.errors import TestRunnerUnavailable
from hyperspot_harness.runner import CommandRunner

LOGGER = logging.getLogger("hyperspot.e2e.tests")


class TestRunner:
    """Adapter around the external HTTP test suite."""

    __test__ = False

    def __init__(self, config: RunConfig, runner: CommandRunner | None = None):
        self.config = config
        self.runner = runner or CommandRunner(config.project_root)

    def command(self) -> List[str]:
        command = self.config.render(self.config.test_command)
        if self.config.smoke_only:
            command.extend(["-m", SMOKE_MARKER])
        command.extend(self.config.test_args)
        return command

    def environment(self) -> Dict[str, str]:
        env = {"E2E_BASE_URL": self.config.base_url}
        if self.config.auth_token:
            env["E2E_AUTH_TOKEN"] = self.config.auth_token
        return env

    def scrub_environment(self) -> List[str]:
        """Variables removed from the inherited environment before the run."""

        return [] if self.config.auth_token else ["E2E_AUTH_TOKEN"]

    def run(self) -> int:
        command = self.command()
        scope = "smoke subset" if self.config.smoke_only else "full suite"
        LOGGER.info("Running E2E tests (%s) against %s", scope, self.config.base_url)
        result = self.runner.run(
            command,
            env=self.environment(),
            unset=self.scrub_environment(),
            capture=False,
            check=False,
        )
        if result.returncode is None:
            raise TestRunnerUnavailable(f"Test runner `{command[0]}` could not be started: {result.output}")
        return result.returncode
