"""Readiness polling against the service's ``/healthz`` endpoint."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List

import httpx

from hyperspot_harness.config import RunConfig
from hyperspot_harness.errors import HealthTimeoutError
from hyperspot_harness.instance import InstanceStatus, ServiceInstance

LOGGER = logging.getLogger("hyperspot.e2e.health")

# Upper bound for a single probe; the remaining deadline may shorten it further.
MAX_REQUEST_TIMEOUT = 5.0


class ProbeError(Enum):
    CONNECTION_REFUSED = "connection_refused"
    TIMEOUT = "timeout"
    BAD_STATUS = "bad_status"
    TRANSPORT = "transport"


@dataclass(frozen=True)
class HealthCheckResult:
    succeeded: bool
    attempt_number: int
    elapsed_since_start: float
    http_status: int | None = None
    error: ProbeError | None = None
    detail: str = ""


class HealthProber:
    """Fixed-interval readiness loop bounded by ``RunConfig.health_timeout``."""

    def __init__(
        self,
        config: RunConfig,
        client: httpx.Client | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self._owns_client = client is None
        self.client = client or httpx.Client(follow_redirects=False)
        self.clock = clock
        self.sleep = sleep

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> "HealthProber":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def probe(self, attempt: int, started: float, request_timeout: float) -> HealthCheckResult:
        """Issue one readiness request and classify the outcome."""

        timeout = httpx.Timeout(request_timeout)
        try:
            response = self.client.get(self.config.health_url, timeout=timeout)
        except httpx.ConnectError as exc:
            return HealthCheckResult(False, attempt, self.clock() - started, error=ProbeError.CONNECTION_REFUSED, detail=str(exc))
        except httpx.TimeoutException as exc:
            return HealthCheckResult(False, attempt, self.clock() - started, error=ProbeError.TIMEOUT, detail=str(exc))
        except httpx.HTTPError as exc:
            return HealthCheckResult(False, attempt, self.clock() - started, error=ProbeError.TRANSPORT, detail=str(exc))
        elapsed = self.clock() - started
        if response.is_success:
            return HealthCheckResult(True, attempt, elapsed, http_status=response.status_code)
        return HealthCheckResult(
            False,
            attempt,
            elapsed,
            http_status=response.status_code,
            error=ProbeError.BAD_STATUS,
            detail=f"HTTP {response.status_code}",
        )

    def wait_until_healthy(
        self,
        instance: ServiceInstance,
        alive: Callable[[], bool] | None = None,
    ) -> List[HealthCheckResult]:
        """Poll until the first 2xx or the deadline; returns every attempt made.

        Marks ``instance`` HEALTHY on success. On timeout (or when ``alive``
        reports the backend already exited) marks it UNHEALTHY and raises
        ``HealthTimeoutError``.
        """

        timeout = self.config.health_timeout
        interval = self.config.health_poll_interval
        started = self.clock()
        deadline = started + timeout
        attempts: List[HealthCheckResult] = []
        LOGGER.info("Waiting up to %.1fs for %s", timeout, self.config.health_url)
        while True:
            remaining = deadline - self.clock()
            request_timeout = max(0.05, min(MAX_REQUEST_TIMEOUT, remaining))
            result = self.probe(len(attempts) + 1, started, request_timeout)
            attempts.append(result)
            if result.succeeded:
                instance.transition(InstanceStatus.HEALTHY)
                LOGGER.info(
                    "Service healthy after %d attempt(s) in %.2fs (HTTP %s)",
                    result.attempt_number,
                    result.elapsed_since_start,
                    result.http_status,
                )
                return attempts
            LOGGER.debug(
                "Health attempt %d not ready: %s %s",
                result.attempt_number,
                result.error.value if result.error else "unknown",
                result.detail,
            )
            if alive is not None and not alive():
                instance.transition(InstanceStatus.UNHEALTHY)
                raise HealthTimeoutError(
                    f"Service exited before becoming ready ({len(attempts)} health attempt(s))",
                    attempts,
                )
            remaining = deadline - self.clock()
            if remaining <= 0:
                break
            # The next pass probes once more even when this sleep reaches the deadline.
            self.sleep(min(interval, remaining))
        instance.transition(InstanceStatus.UNHEALTHY)
        last = attempts[-1]
        reason = last.detail or (last.error.value if last.error else "no response")
        raise HealthTimeoutError(
            f"{self.config.health_url} not healthy after {timeout:.1f}s "
            f"({len(attempts)} attempt(s); last: {reason})",
            attempts,
        )
