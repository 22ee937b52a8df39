from __future__ import annotations

from abc import ABC, abstractmethod

from hyperspot_harness.config import RunConfig
from hyperspot_harness.errors import LaunchError
from hyperspot_harness.instance import ServiceInstance
from hyperspot_harness.logs import LogSinks
from hyperspot_harness.ports import describe_port_conflict, port_is_free


class Launcher(ABC):
    """Start/stop capability shared by the process and container backends."""

    name = "launcher"

    def __init__(self, config: RunConfig):
        self.config = config

    def preflight(self) -> None:
        """Fail fast with ``LaunchError`` when the backend cannot run at all."""

    def ensure_port_free(self) -> None:
        if not port_is_free(self.config.port):
            raise LaunchError(f"Cannot start {self.name} instance: {describe_port_conflict(self.config.port)}")

    @abstractmethod
    def start(self, instance: ServiceInstance, sinks: LogSinks) -> ServiceInstance:
        """Create the backend resource; leaves ``instance`` in STARTING."""

    @abstractmethod
    def is_running(self, instance: ServiceInstance) -> bool:
        ...

    @abstractmethod
    def exit_code(self, instance: ServiceInstance) -> int | None:
        ...

    @abstractmethod
    def stop(self, instance: ServiceInstance) -> bool:
        """Release the backend resource; ``False`` when the handle is not ours."""

    def owns(self, instance: ServiceInstance) -> bool:
        return False

    def describe(self) -> list[str]:
        return []
