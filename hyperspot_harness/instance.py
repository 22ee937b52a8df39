from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet


class InstanceStatus(Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (InstanceStatus.STOPPED, InstanceStatus.FAILED)


_FORWARD: Dict[InstanceStatus, FrozenSet[InstanceStatus]] = {
    InstanceStatus.NOT_STARTED: frozenset({InstanceStatus.STARTING}),
    InstanceStatus.STARTING: frozenset({InstanceStatus.HEALTHY, InstanceStatus.UNHEALTHY}),
    InstanceStatus.HEALTHY: frozenset({InstanceStatus.STOPPED}),
    InstanceStatus.UNHEALTHY: frozenset({InstanceStatus.STOPPED}),
    InstanceStatus.STOPPED: frozenset(),
    InstanceStatus.FAILED: frozenset(),
}


def new_instance_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class ServiceInstance:
    """One service-under-test lifecycle, owned by a single orchestrator run."""

    instance_id: str = field(default_factory=new_instance_id)
    backend: str = ""
    backend_handle: str | None = None
    status: InstanceStatus = InstanceStatus.NOT_STARTED
    stdout_path: Path | None = None
    stderr_path: Path | None = None
    exit_code: int | None = None

    @property
    def log_paths(self) -> tuple[Path | None, Path | None]:
        return self.stdout_path, self.stderr_path

    def can_transition(self, target: InstanceStatus) -> bool:
        if target == self.status:
            return True
        if target is InstanceStatus.FAILED:
            return not self.status.terminal
        return target in _FORWARD[self.status]

    def transition(self, target: InstanceStatus) -> None:
        """Move the status forward; raises ``ValueError`` on a backward move."""

        if target == self.status:
            return
        if not self.can_transition(target):
            raise ValueError(
                f"Instance {self.instance_id}: illegal status transition {self.status.value} -> {target.value}"
            )
        self.status = target
