from __future__ import annotations

from typing import Callable, List

import httpx
import pytest

from hyperspot_harness.config import RunConfig
from hyperspot_harness.errors import HealthTimeoutError
from hyperspot_harness.health import HealthProber, ProbeError
from hyperspot_harness.instance import InstanceStatus, ServiceInstance


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _prober(config: RunConfig, handler: Callable[[httpx.Request], httpx.Response], clock: FakeClock) -> HealthProber:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HealthProber(config, client, clock=clock, sleep=clock.sleep)


def _starting_instance() -> ServiceInstance:
    instance = ServiceInstance()
    instance.transition(InstanceStatus.STARTING)
    return instance


def test_first_probe_success_needs_no_sleep(make_config) -> None:
    config = make_config(health_timeout=5.0, health_poll_interval=0.5)
    seen: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(204)

    clock = FakeClock()
    instance = _starting_instance()
    attempts = _prober(config, handler, clock).wait_until_healthy(instance)
    assert instance.status is InstanceStatus.HEALTHY
    assert len(attempts) == 1
    assert attempts[0].succeeded and attempts[0].http_status == 204
    assert clock.sleeps == []
    assert seen == [config.health_url]


def test_never_healthy_times_out_as_unhealthy(make_config) -> None:
    config = make_config(health_timeout=2.0, health_poll_interval=0.5)
    clock = FakeClock()
    instance = _starting_instance()
    prober = _prober(config, lambda request: httpx.Response(503), clock)
    with pytest.raises(HealthTimeoutError) as excinfo:
        prober.wait_until_healthy(instance)
    assert instance.status is InstanceStatus.UNHEALTHY
    attempts = excinfo.value.attempts
    assert len(attempts) == 5
    assert all(a.error is ProbeError.BAD_STATUS and a.http_status == 503 for a in attempts)
    assert [a.attempt_number for a in attempts] == [1, 2, 3, 4, 5]
    assert attempts[-1].elapsed_since_start == pytest.approx(2.0)
    assert clock.sleeps == [0.5, 0.5, 0.5, 0.5]
    assert "HTTP 503" in str(excinfo.value)


def test_sleep_is_clipped_to_remaining_deadline(make_config) -> None:
    config = make_config(health_timeout=1.0, health_poll_interval=0.75)
    clock = FakeClock()
    with pytest.raises(HealthTimeoutError):
        _prober(config, lambda request: httpx.Response(500), clock).wait_until_healthy(_starting_instance())
    assert clock.sleeps == [0.75, 0.25]


def test_service_ready_exactly_at_deadline_is_healthy(make_config) -> None:
    config = make_config(health_timeout=1.0, health_poll_interval=0.75)
    clock = FakeClock()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200 if clock.now >= 1.0 else 503)

    instance = _starting_instance()
    attempts = _prober(config, handler, clock).wait_until_healthy(instance)
    assert instance.status is InstanceStatus.HEALTHY
    assert [a.http_status for a in attempts] == [503, 503, 200]
    assert clock.sleeps == [0.75, 0.25]


def test_connection_errors_are_retried_until_ready(make_config) -> None:
    config = make_config(health_timeout=5.0, health_poll_interval=0.5)
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            raise httpx.ConnectError("connection refused", request=request)
        if calls["count"] == 2:
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200)

    clock = FakeClock()
    instance = _starting_instance()
    attempts = _prober(config, handler, clock).wait_until_healthy(instance)
    assert [a.error for a in attempts] == [ProbeError.CONNECTION_REFUSED, ProbeError.TIMEOUT, None]
    assert attempts[-1].elapsed_since_start == pytest.approx(1.0)
    assert instance.status is InstanceStatus.HEALTHY


def test_transport_errors_are_classified(make_config) -> None:
    config = make_config(health_timeout=0.5, health_poll_interval=0.5)

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.RemoteProtocolError("garbage", request=request)

    with pytest.raises(HealthTimeoutError) as excinfo:
        _prober(config, handler, FakeClock()).wait_until_healthy(_starting_instance())
    assert excinfo.value.attempts[0].error is ProbeError.TRANSPORT


def test_dead_backend_stops_polling_early(make_config) -> None:
    config = make_config(health_timeout=30.0, health_poll_interval=0.5)
    clock = FakeClock()
    instance = _starting_instance()
    prober = _prober(config, lambda request: httpx.Response(503), clock)
    with pytest.raises(HealthTimeoutError, match="exited before becoming ready") as excinfo:
        prober.wait_until_healthy(instance, alive=lambda: False)
    assert len(excinfo.value.attempts) == 1
    assert clock.sleeps == []
    assert instance.status is InstanceStatus.UNHEALTHY


def test_prober_closes_only_its_own_client(make_config) -> None:
    config = make_config()
    external = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    with HealthProber(config, external):
        pass
    assert not external.is_closed
    owned = HealthProber(config)
    owned.close()
    assert owned.client.is_closed
