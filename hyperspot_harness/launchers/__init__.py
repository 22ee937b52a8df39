from __future__ import annotations

from hyperspot_harness.config import Mode, RunConfig
from hyperspot_harness.launchers.base import Launcher
from hyperspot_harness.launchers.container import ContainerLauncher
from hyperspot_harness.launchers.process import ProcessLauncher

__all__ = ["ContainerLauncher", "Launcher", "ProcessLauncher", "launcher_for"]


def launcher_for(config: RunConfig) -> Launcher:
    if config.mode is Mode.DOCKER:
        return ContainerLauncher(config)
    return ProcessLauncher(config)
