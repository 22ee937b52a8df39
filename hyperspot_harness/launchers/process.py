from __future__ import annotations

import logging
import os
import signal
import subprocess
from typing import Callable, Dict, Set

from hyperspot_harness.config import RunConfig
from hyperspot_harness.errors import LaunchError, TeardownError
from hyperspot_harness.instance import InstanceStatus, ServiceInstance
from hyperspot_harness.launchers.base import Launcher
from hyperspot_harness.logs import LogSinks

LOGGER = logging.getLogger("hyperspot.e2e.process")

STARTUP_GRACE = 0.2
KILL_WAIT = 5.0


class ProcessLauncher(Launcher):
    """Runs the built server binary as a child process on the E2E port."""

    name = "process"

    def __init__(
        self,
        config: RunConfig,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        startup_grace: float = STARTUP_GRACE,
    ):
        super().__init__(config)
        self._popen = popen
        self.startup_grace = startup_grace
        self._processes: Dict[str, subprocess.Popen] = {}
        self._stopped: Set[str] = set()

    def _child_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env["E2E_PORT"] = str(self.config.port)
        env.setdefault("RUST_BACKTRACE", "1")
        return env

    def describe(self) -> list[str]:
        return [f"spawn `{' '.join(self.config.render(self.config.server_command))}` on port {self.config.port}"]

    def start(self, instance: ServiceInstance, sinks: LogSinks) -> ServiceInstance:
        self.ensure_port_free()
        command = self.config.render(self.config.server_command)
        if not command:
            raise LaunchError("No server command configured for local mode")
        LOGGER.info("Starting %s (port %s)", " ".join(command), self.config.port)
        try:
            proc = self._popen(
                command,
                cwd=str(self.config.project_root),
                env=self._child_env(),
                stdin=subprocess.DEVNULL,
                stdout=sinks.stdout,
                stderr=sinks.stderr,
                start_new_session=os.name == "posix",
            )
        except OSError as exc:
            raise LaunchError(f"Failed to spawn {command[0]}: {exc}") from exc
        handle = str(proc.pid)
        self._processes[handle] = proc
        instance.backend = self.name
        instance.backend_handle = handle
        instance.stdout_path = sinks.stdout_path
        instance.stderr_path = sinks.stderr_path
        instance.transition(InstanceStatus.STARTING)
        try:
            code = proc.wait(timeout=self.startup_grace)
        except subprocess.TimeoutExpired:
            LOGGER.info("Service process started (pid %s)", handle)
            return instance
        instance.exit_code = code
        raise LaunchError(
            f"Service process {handle} exited immediately with code {code} "
            f"(port {self.config.port} may be in use; see {sinks.stderr_path})"
        )

    def owns(self, instance: ServiceInstance) -> bool:
        handle = instance.backend_handle
        return handle is not None and (handle in self._processes or handle in self._stopped)

    def is_running(self, instance: ServiceInstance) -> bool:
        proc = self._processes.get(instance.backend_handle or "")
        return proc is not None and proc.poll() is None

    def exit_code(self, instance: ServiceInstance) -> int | None:
        proc = self._processes.get(instance.backend_handle or "")
        if proc is None:
            return instance.exit_code
        return proc.poll()

    def _signal(self, proc: subprocess.Popen, sig: int) -> None:
        """Signal the process group this launcher created (pgid == pid on POSIX)."""

        if os.name == "posix":
            try:
                os.killpg(proc.pid, sig)
            except ProcessLookupError:
                pass
        elif sig == signal.SIGTERM:
            proc.terminate()
        else:
            proc.kill()

    def stop(self, instance: ServiceInstance) -> bool:
        handle = instance.backend_handle
        if handle is None:
            return True
        if handle in self._stopped:
            return True
        proc = self._processes.get(handle)
        if proc is None:
            LOGGER.warning("Refusing to stop pid %s: not started by this harness", handle)
            return False
        if proc.poll() is None:
            grace = self.config.stop_grace_period
            LOGGER.info("Stopping service process %s (grace %.1fs)", handle, grace)
            try:
                self._signal(proc, signal.SIGTERM)
                proc.wait(timeout=grace)
            except subprocess.TimeoutExpired:
                LOGGER.warning("Process %s ignored SIGTERM for %.1fs; killing", handle, grace)
                self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
                try:
                    proc.wait(timeout=KILL_WAIT)
                except subprocess.TimeoutExpired as exc:
                    raise TeardownError(f"Process {handle} still running after SIGKILL") from exc
        instance.exit_code = proc.returncode
        del self._processes[handle]
        self._stopped.add(handle)
        LOGGER.info("Service process %s exited with code %s", handle, proc.returncode)
        return True
