"""Tests for the health monitor."""

from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from conftest import drain
from mcp_toolbox.events import EventBus, GroupHealthUpdated, HealthChanged, HealthChecked
from mcp_toolbox.exceptions import HealthCheckError
from mcp_toolbox.health.monitor import HealthMonitor, HealthRegistration, capabilities_match
from mcp_toolbox.models import CollectiveStatus, ContainerSpec, HealthStatus, TransportType


async def start_container(runtime, name, host_port=None, container_port="8080/tcp"):
    bindings = {container_port: [{"HostPort": host_port}]} if host_port else {}
    return await runtime.create_and_start(
        f"registry.local/{name}:1.0", name, ContainerSpec(image="img", name=name, port_bindings=bindings)
    )


@pytest_asyncio.fixture
async def make_monitor(settings, runtime):
    """Build monitors whose HTTP probes hit ``handler`` instead of the network."""
    created = []

    def _build(handler=None):
        handler = handler or (lambda request: httpx.Response(404))
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        monitor = HealthMonitor(runtime, events=EventBus(), settings=settings, http_client=http_client)
        created.append((monitor, http_client))
        return monitor

    yield _build

    for monitor, http_client in created:
        await monitor.shutdown()
        await http_client.aclose()


def test_capabilities_match():
    assert capabilities_match({}, {}) is True
    assert capabilities_match({"tools": True}, {}) is True
    assert capabilities_match({"tools": True, "extra": 1}, {"tools": True}) is True
    assert capabilities_match({"tools": False}, {"tools": True}) is False
    assert capabilities_match({}, {"tools": True}) is False


class TestStdioChecks:
    """Stdio servers have no endpoint; only the container state counts."""

    @pytest.mark.asyncio
    async def test_running_container_empty_expectations_is_healthy(self, make_monitor, runtime):
        monitor = make_monitor()
        handle = await start_container(runtime, "a")
        monitor.register("a", HealthRegistration(container_id=handle))

        result = await monitor.check("a")

        assert result.status == HealthStatus.HEALTHY
        assert result.container_running is True
        assert result.endpoint_reachable is True
        assert result.capabilities_match is True
        assert result.response_time_ms is not None

    @pytest.mark.asyncio
    async def test_expected_capabilities_always_mismatch(self, make_monitor, runtime):
        monitor = make_monitor()
        handle = await start_container(runtime, "a")
        monitor.register("a", HealthRegistration(container_id=handle, expected_capabilities={"tools": True}))

        result = await monitor.check("a")

        assert result.container_running is True
        assert result.capabilities_match is False
        assert result.status == HealthStatus.UNHEALTHY

    @pytest.mark.asyncio
    async def test_stopped_container_is_unhealthy(self, make_monitor, runtime):
        monitor = make_monitor()
        handle = await start_container(runtime, "a")
        runtime.containers[handle]["running"] = False
        monitor.register("a", HealthRegistration(container_id=handle))

        result = await monitor.check("a")

        assert result.status == HealthStatus.UNHEALTHY
        assert result.container_running is False
        assert result.container_status == "exited"
        assert "not running" in result.error_message

    @pytest.mark.asyncio
    async def test_missing_container_is_unhealthy(self, make_monitor):
        monitor = make_monitor()
        monitor.register("a", HealthRegistration(container_id="gone"))

        result = await monitor.check("a")

        assert result.status == HealthStatus.UNHEALTHY
        assert "No such container" in result.error_message

    @pytest.mark.asyncio
    async def test_daemon_failure_recorded_as_unhealthy(self, make_monitor, runtime):
        monitor = make_monitor()
        runtime.inspect = AsyncMock(side_effect=OSError("Cannot connect to Docker daemon socket"))
        monitor.register("a", HealthRegistration(container_id="c1", failure_threshold=2))
        queue = monitor.events.subscribe(HealthChanged)

        first = await monitor.check("a")
        await monitor.check("a")

        assert first.status == HealthStatus.UNHEALTHY
        assert "Cannot connect" in first.error_message
        assert len(monitor.get_server_health_history("a")) == 2
        assert monitor.get_failure_counts("a") == (2, 0)
        assert queue.get_nowait().failure_count == 2

    @pytest.mark.asyncio
    async def test_unregistered_name_raises(self, make_monitor):
        monitor = make_monitor()
        with pytest.raises(HealthCheckError):
            await monitor.check("nobody")


class TestNetworkProbes:
    """SSE and websocket endpoint probes."""

    @pytest.mark.asyncio
    async def test_sse_capabilities_endpoint(self, make_monitor, runtime):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200, json={"tools": True, "resources": False})

        monitor = make_monitor(handler)
        handle = await start_container(runtime, "a", host_port="40001")
        monitor.register("a", HealthRegistration(
            container_id=handle, transport=TransportType.SSE, expected_capabilities={"tools": True},
        ))

        result = await monitor.check("a")

        assert seen == ["http://localhost:40001/mcp/capabilities"]
        assert result.status == HealthStatus.HEALTHY
        assert result.observed_capabilities == {"tools": True, "resources": False}

    @pytest.mark.asyncio
    async def test_sse_non_200_is_unreachable(self, make_monitor, runtime):
        monitor = make_monitor(lambda request: httpx.Response(503))
        handle = await start_container(runtime, "a", host_port="40001")
        monitor.register("a", HealthRegistration(container_id=handle, transport=TransportType.SSE))

        result = await monitor.check("a")

        assert result.status == HealthStatus.UNHEALTHY
        assert result.endpoint_reachable is False
        assert result.error_message == "Endpoint unreachable: http://localhost:40001/mcp"

    @pytest.mark.asyncio
    async def test_connection_refused_is_unreachable(self, make_monitor, runtime):
        def handler(request):
            raise httpx.ConnectError("Connection refused", request=request)

        monitor = make_monitor(handler)
        handle = await start_container(runtime, "a", host_port="40001")
        monitor.register("a", HealthRegistration(container_id=handle, transport=TransportType.SSE))

        result = await monitor.check("a")

        assert result.status == HealthStatus.UNHEALTHY
        assert result.container_running is True
        assert result.endpoint_reachable is False

    @pytest.mark.asyncio
    async def test_probe_timeout_downgraded_to_unhealthy(self, make_monitor, runtime):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        monitor = make_monitor(handler)
        handle = await start_container(runtime, "a", host_port="40001")
        monitor.register("a", HealthRegistration(container_id=handle, transport=TransportType.SSE))

        result = await monitor.check("a")

        assert result.status == HealthStatus.UNHEALTHY
        assert "Endpoint probe failed" in result.error_message

    @pytest.mark.asyncio
    async def test_network_transport_without_ports(self, make_monitor, runtime):
        monitor = make_monitor()
        handle = await start_container(runtime, "a")
        monitor.register("a", HealthRegistration(container_id=handle, transport=TransportType.SSE))

        result = await monitor.check("a")

        assert result.status == HealthStatus.UNHEALTHY
        assert result.error_message == "No exposed ports found for MCP endpoint"

    @pytest.mark.asyncio
    async def test_websocket_health_endpoint(self, make_monitor, runtime):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, json={"status": "ok"})

        monitor = make_monitor(handler)
        handle = await start_container(runtime, "a", host_port="40002", container_port="3000/tcp")
        monitor.register("a", HealthRegistration(
            container_id=handle, transport=TransportType.WEBSOCKET, endpoint_path="/ws",
        ))

        result = await monitor.check("a")

        assert seen == ["/health"]
        assert result.status == HealthStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_websocket_falls_back_to_base_path(self, make_monitor, runtime):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            if request.url.path == "/health":
                return httpx.Response(404)
            return httpx.Response(200, text="ok")

        monitor = make_monitor(handler)
        handle = await start_container(runtime, "a", host_port="40002", container_port="3000/tcp")
        monitor.register("a", HealthRegistration(
            container_id=handle, transport=TransportType.WEBSOCKET, endpoint_path="/ws",
        ))

        result = await monitor.check("a")

        assert seen == ["/health", "/"]
        assert result.status == HealthStatus.HEALTHY
        assert result.observed_capabilities == {}


class TestThresholds:
    """Failure and recovery counters."""

    @pytest.mark.asyncio
    async def test_failure_notification_refires_at_threshold(self, make_monitor, runtime):
        monitor = make_monitor()
        handle = await start_container(runtime, "a")
        runtime.containers[handle]["running"] = False
        monitor.register("a", HealthRegistration(container_id=handle, failure_threshold=3))
        queue = monitor.events.subscribe(HealthChanged)

        for _ in range(4):
            await monitor.check("a")

        counts = []
        while not queue.empty():
            event = queue.get_nowait()
            assert event.health_status == HealthStatus.UNHEALTHY
            counts.append(event.failure_count)
        assert counts == [3, 4]
        assert monitor.get_failure_counts("a") == (4, 0)

    @pytest.mark.asyncio
    async def test_recovery_after_consecutive_healthy_checks(self, make_monitor, runtime):
        monitor = make_monitor()
        handle = await start_container(runtime, "a")
        monitor.register("a", HealthRegistration(container_id=handle, failure_threshold=2, recovery_threshold=2))
        runtime.containers[handle]["running"] = False
        await monitor.check("a")
        await monitor.check("a")
        queue = monitor.events.subscribe(HealthChanged)

        runtime.containers[handle]["running"] = True
        await monitor.check("a")
        assert queue.empty()
        assert monitor.get_failure_counts("a") == (2, 1)

        await monitor.check("a")
        event = queue.get_nowait()
        assert event.health_status == HealthStatus.HEALTHY
        assert event.recovery_count == 2
        assert monitor.get_failure_counts("a") == (0, 0)

    @pytest.mark.asyncio
    async def test_healthy_checks_without_failures_are_quiet(self, make_monitor, runtime):
        monitor = make_monitor()
        handle = await start_container(runtime, "a")
        monitor.register("a", HealthRegistration(container_id=handle))
        changes = monitor.events.subscribe(HealthChanged)
        checks = monitor.events.subscribe(HealthChecked)

        for _ in range(3):
            await monitor.check("a")

        assert changes.empty()
        assert checks.qsize() == 3

    @pytest.mark.asyncio
    async def test_failure_resets_recovery_count(self, make_monitor, runtime):
        monitor = make_monitor()
        handle = await start_container(runtime, "a")
        monitor.register("a", HealthRegistration(container_id=handle, recovery_threshold=3))
        container = runtime.containers[handle]

        container["running"] = False
        await monitor.check("a")
        container["running"] = True
        await monitor.check("a")
        await monitor.check("a")
        container["running"] = False
        await monitor.check("a")

        assert monitor.get_failure_counts("a") == (2, 0)


class TestHistoryAndRegistration:
    """History retention and timer ownership."""

    @pytest.mark.asyncio
    async def test_history_capped_at_configured_size(self, make_monitor, runtime):
        monitor = make_monitor()
        handle = await start_container(runtime, "a")
        monitor.register("a", HealthRegistration(container_id=handle))

        for _ in range(105):
            await monitor.check("a")

        history = monitor.get_server_health_history("a")
        assert len(history) == 100
        assert monitor.get_server_health_history("a", limit=5) == history[-5:]
        assert monitor.get_server_health("a") is history[-1]

    @pytest.mark.asyncio
    async def test_unregister_cancels_timer_and_drops_history(self, make_monitor, runtime):
        monitor = make_monitor()
        handle = await start_container(runtime, "a")
        monitor.register("a", HealthRegistration(container_id=handle))
        await monitor.check("a")
        assert monitor._timers.active("check:a")

        monitor.unregister("a")

        assert not monitor.is_registered("a")
        assert not monitor._timers.active("check:a")
        assert monitor.get_server_health("a") is None
        assert monitor.get_server_health_history("a") == []

    @pytest.mark.asyncio
    async def test_first_check_runs_after_initial_delay(self, settings, runtime):
        fast = settings.model_copy(update={"health_initial_delay": 0})
        monitor = HealthMonitor(runtime, events=EventBus(), settings=fast)
        handle = await start_container(runtime, "a")
        monitor.register("a", HealthRegistration(container_id=handle, interval=3600))

        await drain()
        history = monitor.get_server_health_history("a")
        await monitor.shutdown()

        assert len(history) == 1
        assert history[0].status == HealthStatus.HEALTHY
        assert not monitor.is_registered("a")

    def test_default_registration_uses_settings(self, settings, runtime):
        monitor = HealthMonitor(runtime, events=EventBus(), settings=settings)
        registration = monitor.default_registration("abc", transport=TransportType.SSE)
        assert registration.interval == settings.health_check_interval
        assert registration.timeout == settings.health_check_timeout
        assert registration.failure_threshold == 3
        assert registration.recovery_threshold == 2
        assert registration.transport == TransportType.SSE


class TestGroupHealth:
    """Group aggregation from each member's latest result."""

    async def _group(self, monitor, runtime, running_healthy):
        names = []
        for index, state in enumerate(running_healthy):
            name = f"m{index}"
            handle = await start_container(runtime, name)
            expected = {} if state == "healthy" else {"tools": True}
            monitor.register(name, HealthRegistration(container_id=handle, expected_capabilities=expected))
            if state == "stopped":
                runtime.containers[handle]["running"] = False
            await monitor.check(name)
            names.append(name)
        monitor.start_group_monitoring("g1", names)
        return names

    @pytest.mark.asyncio
    async def test_one_running_but_unhealthy_is_degraded(self, make_monitor, runtime):
        monitor = make_monitor()
        await self._group(monitor, runtime, ["healthy", "healthy", "unhealthy"])

        report = monitor.get_group_health("g1")

        assert report.overall_status == CollectiveStatus.DEGRADED
        assert (report.healthy_servers, report.degraded_servers, report.failed_servers) == (2, 1, 0)
        assert report.servers == {"m0": "healthy", "m1": "healthy", "m2": "degraded"}

    @pytest.mark.asyncio
    async def test_running_but_none_healthy_is_failed(self, make_monitor, runtime):
        monitor = make_monitor()
        await self._group(monitor, runtime, ["unhealthy", "unhealthy", "unhealthy"])

        report = monitor.get_group_health("g1")

        assert report.degraded_servers == 3
        assert report.overall_status == CollectiveStatus.FAILED

    @pytest.mark.asyncio
    async def test_nothing_running_is_failed(self, make_monitor, runtime):
        monitor = make_monitor()
        await self._group(monitor, runtime, ["stopped", "stopped", "stopped"])

        report = monitor.get_group_health("g1")

        assert report.failed_servers == 3
        assert report.overall_status == CollectiveStatus.FAILED

    @pytest.mark.asyncio
    async def test_all_healthy(self, make_monitor, runtime):
        monitor = make_monitor()
        await self._group(monitor, runtime, ["healthy", "healthy"])

        report = monitor.get_group_health("g1")

        assert report.overall_status == CollectiveStatus.HEALTHY
        assert report.average_response_time_ms is not None

    @pytest.mark.asyncio
    async def test_members_without_results_count_as_degraded(self, make_monitor):
        monitor = make_monitor()
        monitor.start_group_monitoring("g1", ["x", "y"])

        report = monitor.get_group_health("g1")

        assert report.degraded_servers == 2
        assert report.average_response_time_ms is None

    @pytest.mark.asyncio
    async def test_aggregation_publishes_report(self, make_monitor, runtime):
        monitor = make_monitor()
        await self._group(monitor, runtime, ["healthy", "stopped"])
        queue = monitor.events.subscribe(GroupHealthUpdated)

        monitor._aggregate("g1")

        event = queue.get_nowait()
        assert event.group_id == "g1"
        assert event.total_servers == 2
        assert event.healthy_servers == 1
        assert event.failed_servers == 1
        assert event.overall_status == CollectiveStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_stop_group_monitoring(self, make_monitor):
        monitor = make_monitor()
        monitor.start_group_monitoring("g1", ["x"])
        assert monitor._timers.active("group:g1")

        monitor.stop_group_monitoring("g1")

        assert not monitor._timers.active("group:g1")
        assert monitor.get_group_health("g1") is None
