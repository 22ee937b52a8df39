from __future__ import annotations

import logging

from hyperspot_harness.config import RunConfig
from hyperspot_harness.errors import BuildError
from hyperspot_harness.runner import CommandFailed, CommandRunner

LOGGER = logging.getLogger("hyperspot.e2e.build")


class ArtifactBuilder:
    """Invokes the external build toolchain for the selected mode."""

    def __init__(self, config: RunConfig, runner: CommandRunner | None = None):
        self.config = config
        self.runner = runner or CommandRunner(config.project_root)

    def command(self) -> list[str]:
        return self.config.render(self.config.build_command)

    def build(self) -> None:
        if self.config.skip_build:
            LOGGER.info("Skipping artifact build (--skip-build)")
            return
        command = self.command()
        LOGGER.info("Building %s artifact…", self.config.mode.value)
        # Builder output streams to the terminal as-is.
        try:
            self.runner.run(command, capture=False)
        except CommandFailed as exc:
            raise BuildError(str(exc)) from exc
