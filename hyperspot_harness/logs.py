"""Per-run stdout/stderr capture for the service under test."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Dict, List

LOGGER = logging.getLogger("hyperspot.e2e.logs")

STDOUT_LOG_NAME = "server.stdout.log"
STDERR_LOG_NAME = "server.stderr.log"


def tail_lines(path: Path, limit: int) -> List[str]:
    """Return the last ``limit`` lines of ``path`` (empty when missing)."""

    if limit <= 0 or not path.exists():
        return []
    lines: deque[str] = deque(maxlen=limit)
    try:
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            for raw in handle:
                lines.append(raw.rstrip("\n"))
    except OSError as exc:
        LOGGER.warning("Unable to read %s: %s", path, exc)
        return []
    return list(lines)


class LogSinks:
    """The two append-only sinks of one service instance."""

    def __init__(self, instance_id: str, stdout_path: Path, stderr_path: Path):
        self.instance_id = instance_id
        self.stdout_path = stdout_path
        self.stderr_path = stderr_path
        self.stdout: BinaryIO = stdout_path.open("wb")
        try:
            self.stderr: BinaryIO = stderr_path.open("wb")
        except OSError:
            self.stdout.close()
            raise
        self._closed = False
        started = datetime.now(timezone.utc).isoformat(timespec="seconds")
        for label, handle in (("stdout", self.stdout), ("stderr", self.stderr)):
            handle.write(f"# hyperspot e2e instance {instance_id} {label} opened {started}\n".encode("utf-8"))
            handle.flush()

    @property
    def closed(self) -> bool:
        return self._closed

    def flush(self) -> None:
        if self._closed:
            return
        for handle in (self.stdout, self.stderr):
            handle.flush()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for handle in (self.stdout, self.stderr):
            try:
                handle.flush()
            finally:
                handle.close()

    def tail(self, limit: int) -> Dict[str, List[str]]:
        self.flush()
        return {
            "stdout": tail_lines(self.stdout_path, limit),
            "stderr": tail_lines(self.stderr_path, limit),
        }

    def __enter__(self) -> "LogSinks":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class LogCollector:
    def __init__(self, logs_dir: Path):
        self.logs_dir = logs_dir

    def paths(self) -> tuple[Path, Path]:
        return self.logs_dir / STDOUT_LOG_NAME, self.logs_dir / STDERR_LOG_NAME

    def open(self, instance_id: str) -> LogSinks:
        """Create (or overwrite) the sink pair for ``instance_id``."""

        self.logs_dir.mkdir(parents=True, exist_ok=True)
        stdout_path, stderr_path = self.paths()
        sinks = LogSinks(instance_id, stdout_path, stderr_path)
        LOGGER.info("Capturing service output → %s, %s", stdout_path, stderr_path)
        return sinks


def format_tail(tails: Dict[str, List[str]]) -> List[str]:
    """Flatten sink tails into printable ``[label] line`` rows."""

    rows: List[str] = []
    for label, lines in tails.items():
        if not lines:
            continue
        rows.append(f"--- last {len(lines)} line(s) of {label} ---")
        rows.extend(f"[{label}] {line}" for line in lines)
    return rows
