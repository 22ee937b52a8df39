import socket
import sys
from pathlib import Path
from typing import Any, Callable

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest  # noqa: E402
from hyperspot_harness.config import Mode, RunConfig, default_base_url  # noqa: E402

TESTS_DIR = Path(__file__).resolve().parent
FAKE_SERVICE = TESTS_DIR / "fake_service.py"
FAKE_SUITE = TESTS_DIR / "fake_suite.py"


@pytest.fixture(autouse=True)
def reset_e2e_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Isolate E2E_* configuration between tests."""

    for var in (
        "E2E_BASE_URL",
        "E2E_AUTH_TOKEN",
        "E2E_HEALTH_TIMEOUT",
        "E2E_HEALTH_INTERVAL",
        "E2E_PORT",
        "E2E_LOGS_DIR",
        "E2E_STOP_GRACE",
        "E2E_LOG_TAIL_LINES",
        "E2E_LOG_LEVEL",
        "FAKE_SUITE_RECORD",
        "FAKE_SUITE_EXIT",
    ):
        monkeypatch.delenv(var, raising=False)


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def free_port() -> int:
    return _free_port()


@pytest.fixture
def make_config(tmp_path: Path, free_port: int) -> Callable[..., RunConfig]:
    """Build a local-mode ``RunConfig`` wired to the fake service and suite."""

    def factory(**overrides: Any) -> RunConfig:
        port = overrides.pop("port", free_port)
        values: dict[str, Any] = {
            "mode": Mode.LOCAL,
            "port": port,
            "base_url": default_base_url(port),
            "project_root": ROOT,
            "logs_dir": tmp_path / "logs",
            "health_timeout": 5.0,
            "health_poll_interval": 0.1,
            "stop_grace_period": 5.0,
            "log_tail_lines": 20,
            "build_command": ("{python}", "-c", "pass"),
            "server_command": ("{python}", str(FAKE_SERVICE), "--port", "{port}"),
            "test_command": ("{python}", str(FAKE_SUITE)),
        }
        values.update(overrides)
        return RunConfig(**values)

    return factory
