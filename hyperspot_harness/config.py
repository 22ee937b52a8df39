from __future__ import annotations

import argparse
import os
import shutil
import sys
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Tuple

from hyperspot_harness.errors import DEFAULT_HARNESS_EXIT_CODE, ConfigError

DEV_PORT = 8087
LOCAL_E2E_PORT = 8086
DOCKER_E2E_PORT = 8088
CONTAINER_PORT = 8087
DEFAULT_HEALTH_TIMEOUT = 60.0
DEFAULT_HEALTH_INTERVAL = 0.5
DEFAULT_STOP_GRACE = 10.0
DEFAULT_LOG_TAIL_LINES = 50
DEFAULT_IMAGE = "hyperspot-server:e2e"
DEFAULT_DOCKERFILE = "testing/docker/hyperspot.Dockerfile"
HEALTH_PATH = "/healthz"
SMOKE_MARKER = "smoke"

LOCAL_BUILD_COMMAND: Tuple[str, ...] = ("cargo", "build", "--release", "--bin", "hyperspot-server")
LOCAL_SERVER_COMMAND: Tuple[str, ...] = (
    "target/release/hyperspot-server",
    "--config",
    "config/e2e-local.yaml",
    "run",
)
DOCKER_BUILD_COMMAND: Tuple[str, ...] = ("docker", "build", "-t", "{image}", "-f", "{dockerfile}", ".")
DEFAULT_TEST_COMMAND: Tuple[str, ...] = ("{python}", "-m", "pytest", "testing/e2e", "-v")


class Mode(Enum):
    LOCAL = "local"
    DOCKER = "docker"


@dataclass(frozen=True)
class RunConfig:
    """Immutable settings for one orchestration run."""

    mode: Mode
    port: int
    base_url: str
    project_root: Path
    logs_dir: Path
    smoke_only: bool = False
    auth_token: str | None = field(default=None, repr=False)
    health_timeout: float = DEFAULT_HEALTH_TIMEOUT
    health_poll_interval: float = DEFAULT_HEALTH_INTERVAL
    stop_grace_period: float = DEFAULT_STOP_GRACE
    log_tail_lines: int = DEFAULT_LOG_TAIL_LINES
    harness_exit_code: int = DEFAULT_HARNESS_EXIT_CODE
    build_command: Tuple[str, ...] = LOCAL_BUILD_COMMAND
    server_command: Tuple[str, ...] = LOCAL_SERVER_COMMAND
    test_command: Tuple[str, ...] = DEFAULT_TEST_COMMAND
    test_args: Tuple[str, ...] = ()
    image: str = DEFAULT_IMAGE
    dockerfile: str = DEFAULT_DOCKERFILE
    container_port: int = CONTAINER_PORT
    skip_build: bool = False
    plan_only: bool = False

    def __repr__(self) -> str:
        parts = []
        for item in fields(self):
            value = getattr(self, item.name)
            if item.name == "auth_token":
                value = "<redacted>" if value else None
            parts.append(f"{item.name}={value!r}")
        return f"RunConfig({', '.join(parts)})"

    @property
    def health_url(self) -> str:
        return self.base_url.rstrip("/") + HEALTH_PATH

    @property
    def placeholders(self) -> Dict[str, str]:
        return {
            "port": str(self.port),
            "base_url": self.base_url,
            "python": sys.executable,
            "image": self.image,
            "dockerfile": self.dockerfile,
            "container_port": str(self.container_port),
        }

    def render(self, command: Tuple[str, ...]) -> list[str]:
        """Expand ``{placeholder}`` tokens in a command template."""

        values = self.placeholders
        try:
            return [part.format(**values) for part in command]
        except (KeyError, IndexError, ValueError) as exc:
            raise ConfigError(f"Invalid command template {' '.join(command)!r}: {exc}") from exc

    def summary(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "smoke_only": self.smoke_only,
            "base_url": self.base_url,
            "port": self.port,
            "auth_token": "<redacted>" if self.auth_token else "<unset>",
            "health_timeout": self.health_timeout,
            "health_poll_interval": self.health_poll_interval,
            "stop_grace_period": self.stop_grace_period,
            "project_root": str(self.project_root),
            "logs_dir": str(self.logs_dir),
            "build_command": "<skipped>" if self.skip_build else " ".join(self.build_command),
            "server_command": " ".join(self.server_command),
            "test_command": " ".join(self.test_command + self.test_args),
            "image": self.image if self.mode is Mode.DOCKER else "<n/a>",
        }


def default_base_url(port: int) -> str:
    return f"http://127.0.0.1:{port}"


def _env_value(environ: Mapping[str, str], name: str) -> str | None:
    value = environ.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _env_float(environ: Mapping[str, str], name: str) -> float | None:
    raw = _env_value(environ, name)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def _env_int(environ: Mapping[str, str], name: str) -> int | None:
    raw = _env_value(environ, name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _check_prerequisite(command: Tuple[str, ...], which: Callable[[str], str | None], project_root: Path) -> None:
    executable = command[0]
    if "{" in executable:
        return
    candidate = Path(executable)
    if not candidate.is_absolute() and len(candidate.parts) > 1:
        candidate = project_root / candidate
        if candidate.exists():
            return
    elif which(executable):
        return
    raise ConfigError(f"Build prerequisite '{executable}' not found; install it or pass --skip-build")


def resolve_run_config(
    args: argparse.Namespace,
    environ: Mapping[str, str] | None = None,
    which: Callable[[str], str | None] = shutil.which,
) -> RunConfig:
    """Combine CLI flags and environment into a validated ``RunConfig``."""

    env = os.environ if environ is None else environ
    mode = Mode.DOCKER if getattr(args, "docker", False) else Mode.LOCAL
    base_url_override = _env_value(env, "E2E_BASE_URL")
    if mode is Mode.DOCKER and base_url_override:
        raise ConfigError("E2E_BASE_URL is a local-mode override and cannot be combined with --docker")

    project_root = Path(_first(getattr(args, "project_root", None), Path.cwd())).expanduser().resolve()
    default_port = DOCKER_E2E_PORT if mode is Mode.DOCKER else LOCAL_E2E_PORT
    port = _first(getattr(args, "port", None), _env_int(env, "E2E_PORT"), default_port)
    if not 0 < port < 65536:
        raise ConfigError(f"Port must be between 1 and 65535, got {port}")
    if port == DEV_PORT:
        raise ConfigError(f"Port {DEV_PORT} is reserved for the interactive development server; pick another E2E port")

    health_timeout = _first(
        getattr(args, "health_timeout", None), _env_float(env, "E2E_HEALTH_TIMEOUT"), DEFAULT_HEALTH_TIMEOUT
    )
    health_interval = _first(
        getattr(args, "health_interval", None), _env_float(env, "E2E_HEALTH_INTERVAL"), DEFAULT_HEALTH_INTERVAL
    )
    stop_grace = _first(_env_float(env, "E2E_STOP_GRACE"), DEFAULT_STOP_GRACE)
    tail_lines = _first(_env_int(env, "E2E_LOG_TAIL_LINES"), DEFAULT_LOG_TAIL_LINES)
    if health_timeout <= 0:
        raise ConfigError("Health timeout must be greater than zero")
    if health_interval <= 0:
        raise ConfigError("Health poll interval must be greater than zero")
    if stop_grace < 0:
        raise ConfigError("E2E_STOP_GRACE cannot be negative")
    if tail_lines < 0:
        raise ConfigError("E2E_LOG_TAIL_LINES cannot be negative")

    logs_dir_raw = _first(getattr(args, "logs_dir", None), _env_value(env, "E2E_LOGS_DIR"))
    logs_dir = Path(logs_dir_raw).expanduser() if logs_dir_raw else project_root / "logs" / "e2e"
    if not logs_dir.is_absolute():
        logs_dir = project_root / logs_dir

    base_url = base_url_override or default_base_url(port)
    if not base_url.startswith(("http://", "https://")):
        raise ConfigError(f"E2E_BASE_URL must be an http(s) URL, got {base_url!r}")

    build_command = DOCKER_BUILD_COMMAND if mode is Mode.DOCKER else LOCAL_BUILD_COMMAND
    skip_build = bool(getattr(args, "skip_build", False))
    plan_only = bool(getattr(args, "plan_only", False))
    if not skip_build and not plan_only:
        _check_prerequisite(build_command, which, project_root)
    if mode is Mode.DOCKER and not plan_only and not which("docker"):
        raise ConfigError("Docker mode requested but the 'docker' CLI is not on PATH")

    test_args = tuple(getattr(args, "test_args", None) or ())
    return RunConfig(
        mode=mode,
        port=port,
        base_url=base_url,
        project_root=project_root,
        logs_dir=logs_dir,
        smoke_only=bool(getattr(args, "smoke", False)),
        auth_token=_env_value(env, "E2E_AUTH_TOKEN"),
        health_timeout=float(health_timeout),
        health_poll_interval=float(health_interval),
        stop_grace_period=float(stop_grace),
        log_tail_lines=int(tail_lines),
        build_command=build_command,
        server_command=() if mode is Mode.DOCKER else LOCAL_SERVER_COMMAND,
        test_args=test_args,
        skip_build=skip_build,
        plan_only=plan_only,
    )
