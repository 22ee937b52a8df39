from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Sequence

LOGGER = logging.getLogger("hyperspot.e2e.runner")


@dataclass
class CommandResult:
    command: List[str]
    status: str
    output: str
    returncode: int | None


class CommandFailed(RuntimeError):
    def __init__(self, result: CommandResult):
        cmd = " ".join(result.command)
        if result.returncode is None:
            super().__init__(f"Command '{cmd}' could not be started: {result.output}")
        else:
            super().__init__(f"Command '{cmd}' failed with exit code {result.returncode}")
        self.result = result


class CommandRunner:
    """Runs collaborator commands from the project root and logs their timing."""

    def __init__(self, cwd: Path, env: Mapping[str, str] | None = None):
        self.cwd = cwd
        self.env = dict(env) if env is not None else None

    def merged_env(self, env: Mapping[str, str] | None = None, unset: Sequence[str] = ()) -> dict[str, str]:
        merged = dict(self.env) if self.env is not None else os.environ.copy()
        if env:
            merged.update(env)
        for name in unset:
            merged.pop(name, None)
        return merged

    def run(
        self,
        command: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        unset: Sequence[str] = (),
        capture: bool = True,
        check: bool = True,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run ``command``; ``capture=False`` streams output straight to the terminal."""

        cmd_list = list(command)
        display = " ".join(cmd_list)
        LOGGER.info("$ %s", display)
        start = time.monotonic()
        try:
            proc = subprocess.run(
                cmd_list,
                cwd=self.cwd,
                capture_output=capture,
                text=True,
                env=self.merged_env(env, unset),
                check=False,
                timeout=timeout,
            )
        except (FileNotFoundError, PermissionError) as exc:
            result = CommandResult(command=cmd_list, status="failed", output=str(exc), returncode=None)
            LOGGER.info("[cmd] %s → not started (%s)", display, exc)
            if check:
                raise CommandFailed(result) from exc
            return result
        output = "".join(filter(None, [proc.stdout, proc.stderr])) if capture else ""
        status = "ok" if proc.returncode == 0 else "failed"
        result = CommandResult(command=cmd_list, status=status, output=output, returncode=proc.returncode)
        LOGGER.info("[cmd] %s → rc=%s in %.1fs", display, proc.returncode, time.monotonic() - start)
        if proc.returncode != 0 and check:
            raise CommandFailed(result)
        return result
