from __future__ import annotations

import errno
import os
import re
import shutil
import socket
import subprocess

LOOPBACK = "127.0.0.1"


def port_is_free(port: int, host: str = LOOPBACK) -> bool:
    """Bind-probe ``host:port``; ``False`` when another socket already holds it."""

    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        if os.name == "posix":
            # Still fails against an active listener, but tolerates TIME_WAIT leftovers.
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError as exc:
        if exc.errno in (errno.EADDRINUSE, errno.EACCES, getattr(errno, "WSAEADDRINUSE", -1)):
            return False
        raise
    finally:
        sock.close()
    return True


def _command_output(command: list[str]) -> str:
    try:
        return subprocess.run(command, text=True, capture_output=True, check=False, timeout=5).stdout
    except (OSError, subprocess.TimeoutExpired):
        return ""


def listener_pids(port: int) -> list[int]:
    """Pids listening on ``port`` per ``ss``, falling back to ``lsof``; diagnostics only."""

    queries = (
        ("ss", lambda path: [path, "-ltnpH", f"sport = :{port}"], r"pid=(\d+)"),
        ("lsof", lambda path: [path, "-nP", "-t", f"-iTCP:{port}", "-sTCP:LISTEN"], r"^(\d+)$"),
    )
    for tool, argv, pattern in queries:
        path = shutil.which(tool)
        if not path:
            continue
        found = re.findall(pattern, _command_output(argv(path)), flags=re.MULTILINE)
        if found:
            return list(dict.fromkeys(int(pid) for pid in found))
    return []


def describe_port_conflict(port: int) -> str:
    pids = listener_pids(port)
    if not pids:
        return f"port {port} is already bound by another process"
    return f"port {port} is already bound by pid(s) {', '.join(map(str, pids))}"
