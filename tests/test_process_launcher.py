from __future__ import annotations

import os
import socket
import time
from pathlib import Path

import httpx
import pytest

from hyperspot_harness.errors import LaunchError
from hyperspot_harness.instance import InstanceStatus, ServiceInstance
from hyperspot_harness.launchers import ProcessLauncher, launcher_for
from hyperspot_harness.logs import LogCollector
from hyperspot_harness.ports import port_is_free

FAKE_SERVICE = Path(__file__).resolve().parent / "fake_service.py"


def _wait_for_health(url: str, timeout: float = 10.0) -> int | None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            return httpx.get(url, timeout=1.0).status_code
        except httpx.HTTPError:
            time.sleep(0.1)
    return None


def test_launcher_for_local_mode_is_process_launcher(make_config) -> None:
    assert isinstance(launcher_for(make_config()), ProcessLauncher)


def test_start_and_stop_owned_process(make_config) -> None:
    config = make_config()
    launcher = ProcessLauncher(config)
    instance = ServiceInstance()
    sinks = LogCollector(config.logs_dir).open(instance.instance_id)
    try:
        launcher.start(instance, sinks)
        assert instance.status is InstanceStatus.STARTING
        assert instance.backend == "process"
        assert launcher.owns(instance)
        assert launcher.is_running(instance)
        assert _wait_for_health(config.health_url) == 200
        assert launcher.stop(instance) is True
        assert not launcher.is_running(instance)
        assert instance.exit_code is not None
        # second stop is a no-op
        assert launcher.stop(instance) is True
    finally:
        launcher.stop(instance)
        sinks.close()
    assert "booting on port" in instance.stdout_path.read_text(encoding="utf-8")
    assert "stderr channel" in instance.stderr_path.read_text(encoding="utf-8")


def test_port_conflict_fails_before_spawning(make_config, free_port: int) -> None:
    config = make_config(port=free_port)
    spawned = []

    def popen(*args, **kwargs):
        spawned.append(args)
        raise AssertionError("must not spawn")

    launcher = ProcessLauncher(config, popen=popen)
    instance = ServiceInstance()
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as holder:
        holder.bind(("127.0.0.1", free_port))
        holder.listen(1)
        with LogCollector(config.logs_dir).open(instance.instance_id) as sinks:
            with pytest.raises(LaunchError, match=f"port {free_port}"):
                launcher.start(instance, sinks)
    assert spawned == []
    assert instance.status is InstanceStatus.NOT_STARTED
    assert instance.backend_handle is None


def test_immediate_exit_is_launch_error(make_config) -> None:
    config = make_config(server_command=("{python}", str(FAKE_SERVICE), "--port", "{port}", "--exit-code", "3"))
    launcher = ProcessLauncher(config, startup_grace=10.0)
    instance = ServiceInstance()
    with LogCollector(config.logs_dir).open(instance.instance_id) as sinks:
        with pytest.raises(LaunchError, match="exited immediately with code 3"):
            launcher.start(instance, sinks)
    assert instance.exit_code == 3
    assert instance.status is InstanceStatus.STARTING
    assert launcher.stop(instance) is True
    assert "exiting with 3" in instance.stderr_path.read_text(encoding="utf-8")


def test_missing_executable_is_launch_error(make_config) -> None:
    config = make_config(server_command=("definitely-not-a-hyperspot-binary", "--port", "{port}"))
    launcher = ProcessLauncher(config)
    instance = ServiceInstance()
    with LogCollector(config.logs_dir).open(instance.instance_id) as sinks:
        with pytest.raises(LaunchError, match="Failed to spawn"):
            launcher.start(instance, sinks)
    assert instance.backend_handle is None


def test_refuses_to_stop_foreign_handle(make_config) -> None:
    launcher = ProcessLauncher(make_config())
    instance = ServiceInstance(backend="process", backend_handle="424242")
    assert launcher.owns(instance) is False
    assert launcher.stop(instance) is False


def test_stop_without_handle_is_noop(make_config) -> None:
    assert ProcessLauncher(make_config()).stop(ServiceInstance()) is True


@pytest.mark.skipif(os.name != "posix", reason="process groups are POSIX-only")
def test_stop_takes_down_children_of_wrapper_command(make_config) -> None:
    wrapper = "import subprocess, sys; subprocess.Popen(sys.argv[1:]).wait()"
    config = make_config(server_command=("{python}", "-c", wrapper, "{python}", str(FAKE_SERVICE), "--port", "{port}"))
    launcher = ProcessLauncher(config)
    instance = ServiceInstance()
    with LogCollector(config.logs_dir).open(instance.instance_id) as sinks:
        try:
            launcher.start(instance, sinks)
            assert _wait_for_health(config.health_url) == 200
        finally:
            assert launcher.stop(instance) is True
    deadline = time.monotonic() + 5.0
    while not port_is_free(config.port) and time.monotonic() < deadline:
        time.sleep(0.1)
    assert port_is_free(config.port)
