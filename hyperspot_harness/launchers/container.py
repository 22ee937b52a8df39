from __future__ import annotations

import logging
import subprocess
from typing import Callable, Dict, Set

from hyperspot_harness.config import RunConfig
from hyperspot_harness.errors import LaunchError, TeardownError
from hyperspot_harness.instance import InstanceStatus, ServiceInstance
from hyperspot_harness.launchers.base import Launcher
from hyperspot_harness.logs import LogSinks
from hyperspot_harness.ports import LOOPBACK
from hyperspot_harness.runner import CommandFailed, CommandRunner

LOGGER = logging.getLogger("hyperspot.e2e.container")

CONTAINER_PREFIX = "hyperspot-e2e-"
FOLLOWER_WAIT = 5.0


class ContainerLauncher(Launcher):
    """Runs the service image through the docker CLI with the E2E port published."""

    name = "container"

    def __init__(
        self,
        config: RunConfig,
        runner: CommandRunner | None = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        docker_bin: str = "docker",
    ):
        super().__init__(config)
        self.runner = runner or CommandRunner(config.project_root)
        self._popen = popen
        self.docker = docker_bin
        self._containers: Dict[str, str] = {}
        self._followers: Dict[str, subprocess.Popen] = {}
        self._stopped: Set[str] = set()

    def _docker(self, *args: str, check: bool = True):
        return self.runner.run([self.docker, *args], check=check)

    def container_name(self, instance: ServiceInstance) -> str:
        return f"{CONTAINER_PREFIX}{instance.instance_id}"

    def describe(self) -> list[str]:
        return [
            f"docker run {self.config.image} publishing {LOOPBACK}:{self.config.port}->{self.config.container_port}",
        ]

    def preflight(self) -> None:
        try:
            self._docker("info", "--format", "{{.ServerVersion}}")
        except CommandFailed as exc:
            detail = exc.result.output.strip() or str(exc)
            raise LaunchError(f"Container runtime unavailable (is the docker engine running?): {detail}") from exc

    def start(self, instance: ServiceInstance, sinks: LogSinks) -> ServiceInstance:
        self.ensure_port_free()
        try:
            self._docker("image", "inspect", "--format", "{{.Id}}", self.config.image)
        except CommandFailed as exc:
            raise LaunchError(f"Image {self.config.image} is not available; build it first") from exc
        name = self.container_name(instance)
        publish = f"{LOOPBACK}:{self.config.port}:{self.config.container_port}"
        args = ["run", "-d", "--name", name, "-p", publish, "-e", f"E2E_PORT={self.config.container_port}"]
        args.append(self.config.image)
        args.extend(self.config.render(self.config.server_command))
        try:
            result = self._docker(*args)
        except CommandFailed as exc:
            detail = exc.result.output.strip() or str(exc)
            # A non-zero `docker run` can still leave the named container behind.
            self._docker("rm", "-f", name, check=False)
            raise LaunchError(f"docker run failed for {name}: {detail}") from exc
        container_id = result.output.strip().splitlines()[-1] if result.output.strip() else name
        self._containers[container_id] = name
        instance.backend = self.name
        instance.backend_handle = container_id
        instance.stdout_path = sinks.stdout_path
        instance.stderr_path = sinks.stderr_path
        instance.transition(InstanceStatus.STARTING)
        self._follow_logs(container_id, sinks)
        LOGGER.info("Container %s started (%s)", name, container_id[:12])
        return instance

    def _follow_logs(self, container_id: str, sinks: LogSinks) -> None:
        try:
            follower = self._popen(
                [self.docker, "logs", "--follow", container_id],
                stdin=subprocess.DEVNULL,
                stdout=sinks.stdout,
                stderr=sinks.stderr,
            )
        except OSError as exc:
            LOGGER.warning("Unable to stream logs for container %s: %s", container_id[:12], exc)
            return
        self._followers[container_id] = follower

    def _inspect(self, container_id: str, template: str) -> str | None:
        result = self._docker("inspect", "--format", template, container_id, check=False)
        if result.returncode != 0:
            return None
        return result.output.strip()

    def owns(self, instance: ServiceInstance) -> bool:
        handle = instance.backend_handle
        return handle is not None and (handle in self._containers or handle in self._stopped)

    def is_running(self, instance: ServiceInstance) -> bool:
        handle = instance.backend_handle
        if handle not in self._containers:
            return False
        return self._inspect(handle, "{{.State.Running}}") == "true"

    def exit_code(self, instance: ServiceInstance) -> int | None:
        handle = instance.backend_handle
        if handle not in self._containers:
            return instance.exit_code
        raw = self._inspect(handle, "{{.State.ExitCode}}")
        try:
            return int(raw) if raw is not None else None
        except ValueError:
            return None

    def stop(self, instance: ServiceInstance) -> bool:
        handle = instance.backend_handle
        if handle is None or handle in self._stopped:
            return True
        if handle not in self._containers:
            LOGGER.warning("Refusing to remove container %s: not started by this harness", handle)
            return False
        grace = max(0, int(round(self.config.stop_grace_period)))
        LOGGER.info("Stopping container %s (grace %ss)", self._containers[handle], grace)
        instance.exit_code = self.exit_code(instance)
        self._docker("stop", "-t", str(grace), handle, check=False)
        removed = self._docker("rm", "-f", handle, check=False)
        self._reap_follower(handle)
        if removed.returncode != 0 and self._inspect(handle, "{{.Id}}") is not None:
            raise TeardownError(f"Container {handle[:12]} could not be removed: {removed.output.strip()}")
        del self._containers[handle]
        self._stopped.add(handle)
        return True

    def _reap_follower(self, handle: str) -> None:
        follower = self._followers.pop(handle, None)
        if follower is None:
            return
        try:
            follower.wait(timeout=FOLLOWER_WAIT)
        except subprocess.TimeoutExpired:
            follower.kill()
            follower.wait()
