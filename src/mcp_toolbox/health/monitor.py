"""Per-instance and per-group health monitoring for deployed MCP servers.

Each registered instance gets its own periodic check timer. Failure and
recovery counters give the status some hysteresis: a ``HealthChanged``
notification is published on every failed check at or above the failure
threshold, and once when enough consecutive healthy checks follow failures.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Tuple

import httpx

from ..config import Settings, get_settings
from ..events import EventBus, GroupHealthUpdated, HealthChanged, HealthChecked
from ..exceptions import HealthCheckError
from ..models import (
    CollectiveStatus,
    HealthCheckResult,
    HealthStatus,
    TransportType,
    collective_status,
    utc_now,
)
from ..observability.logging import set_log_context
from ..observability.metrics import record_health_check
from ..orchestration.base import ContainerRuntime
from ..timers import TimerRegistry

logger = logging.getLogger(__name__)


@dataclass
class HealthRegistration:
    """What the monitor needs to know to probe one instance."""
    container_id: str
    endpoint_path: str = "/mcp"
    transport: TransportType = TransportType.STDIO
    expected_capabilities: Dict[str, Any] = field(default_factory=dict)
    interval: float = 30.0
    timeout: float = 10.0
    failure_threshold: int = 3
    recovery_threshold: int = 2


@dataclass
class _Tracker:
    registration: HealthRegistration
    history: Deque[HealthCheckResult]
    failure_count: int = 0
    recovery_count: int = 0


@dataclass
class GroupHealthReport:
    """Aggregated view of a group's members at one instant."""
    group_id: str
    overall_status: CollectiveStatus
    total_servers: int = 0
    healthy_servers: int = 0
    degraded_servers: int = 0
    failed_servers: int = 0
    average_response_time_ms: Optional[float] = None
    servers: Dict[str, str] = field(default_factory=dict)
    last_updated: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "group_id": self.group_id,
            "overall_status": self.overall_status.value,
            "total_servers": self.total_servers,
            "healthy_servers": self.healthy_servers,
            "degraded_servers": self.degraded_servers,
            "failed_servers": self.failed_servers,
            "average_response_time_ms": self.average_response_time_ms,
            "servers": dict(self.servers),
            "last_updated": self.last_updated.isoformat(),
        }


def capabilities_match(observed: Dict[str, Any], expected: Dict[str, Any]) -> bool:
    """Every expected key must be observed with an equal value. Empty expectations always match."""
    if not expected:
        return True
    return all(key in observed and observed[key] == value for key, value in expected.items())


def _json_object(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class HealthMonitor:
    """Runs health checks and group aggregation on cancellable timers."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        events: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.runtime = runtime
        self.events = events or EventBus()
        self.settings = settings or get_settings()
        self._http = http_client
        self._owns_http = http_client is None
        self._trackers: Dict[str, _Tracker] = {}
        self._groups: Dict[str, List[str]] = {}
        self._timers = TimerRegistry("health")

    def _get_http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient()
        return self._http

    def default_registration(self, container_id: str, **kwargs) -> HealthRegistration:
        """Registration using the configured intervals and thresholds."""
        s = self.settings
        values = dict(
            interval=s.health_check_interval,
            timeout=s.health_check_timeout,
            failure_threshold=s.health_failure_threshold,
            recovery_threshold=s.health_recovery_threshold,
        )
        values.update(kwargs)
        return HealthRegistration(container_id=container_id, **values)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, name: str, registration: HealthRegistration):
        """Start monitoring ``name``. Re-registering replaces history and counters."""
        self._trackers[name] = _Tracker(
            registration=registration,
            history=deque(maxlen=self.settings.health_history_size),
        )
        self._timers.call_every(
            f"check:{name}",
            registration.interval,
            self._scheduled_check,
            name,
            first_delay=self.settings.health_initial_delay,
        )
        logger.info(f"Registered {name} for health monitoring ({registration.transport.value})")

    def unregister(self, name: str):
        self._timers.cancel(f"check:{name}")
        if self._trackers.pop(name, None) is not None:
            logger.info(f"Unregistered {name} from health monitoring")

    def is_registered(self, name: str) -> bool:
        return name in self._trackers

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def _scheduled_check(self, name: str):
        set_log_context(instance_name=name, operation="health_check")
        await self.check(name)

    async def check(self, name: str) -> HealthCheckResult:
        """Run one health check, record it and update the failure/recovery counters.

        Raises:
            HealthCheckError: if ``name`` is not registered
        """
        tracker = self._trackers.get(name)
        if tracker is None:
            raise HealthCheckError(f"MCP server {name} not registered for monitoring", instance_name=name)
        registration = tracker.registration

        started = time.perf_counter()
        result = HealthCheckResult(instance_name=name)
        try:
            await self._evaluate(result, registration)
        except Exception as e:
            result.status = HealthStatus.UNHEALTHY
            result.error_message = str(e)
            logger.warning(f"Health check failed for {name}: {e}")
        result.response_time_ms = round((time.perf_counter() - started) * 1000, 2)

        # Unregistered or re-registered while the probe was in flight
        if self._trackers.get(name) is not tracker:
            return result

        tracker.history.append(result)
        record_health_check(registration.transport.value, result.status.value)
        self.events.publish(HealthChecked(instance_name=name, result=result))
        self._track(name, tracker, result)
        return result

    async def _evaluate(self, result: HealthCheckResult, registration: HealthRegistration):
        inspection = await self.runtime.inspect(registration.container_id)
        result.container_running = inspection.running
        result.container_status = inspection.status
        if not inspection.running:
            result.status = HealthStatus.UNHEALTHY
            result.error_message = f"Container not running: {inspection.status}"
            return

        reachable, observed, error = await self._probe(registration, inspection.first_host_port)
        result.endpoint_reachable = reachable
        result.observed_capabilities = observed
        result.capabilities_match = capabilities_match(observed, registration.expected_capabilities)
        if error:
            result.error_message = error
        elif reachable and not result.capabilities_match:
            result.error_message = "Capabilities do not match expected set"

        healthy = result.container_running and result.endpoint_reachable and result.capabilities_match
        result.status = HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY

    async def _probe(
        self, registration: HealthRegistration, host_port: Optional[str]
    ) -> Tuple[bool, Dict[str, Any], Optional[str]]:
        if registration.transport == TransportType.STDIO:
            # No network surface to probe
            return True, {}, None

        if not host_port:
            return False, {}, "No exposed ports found for MCP endpoint"

        url = f"http://{self.settings.probe_host}:{host_port}{registration.endpoint_path}"
        try:
            if registration.transport == TransportType.SSE:
                reachable, observed = await self._probe_sse(url, registration.timeout)
            else:
                reachable, observed = await self._probe_websocket(url, registration.timeout)
        except httpx.HTTPError as e:
            raise HealthCheckError(f"Endpoint probe failed: {e}") from e
        return reachable, observed, None if reachable else f"Endpoint unreachable: {url}"

    async def _probe_sse(self, url: str, timeout: float) -> Tuple[bool, Dict[str, Any]]:
        try:
            response = await self._get_http().get(
                f"{url.rstrip('/')}/capabilities",
                headers={"Accept": "application/json"},
                timeout=timeout,
            )
        except httpx.ConnectError:
            return False, {}
        if response.status_code != 200:
            return False, {}
        return True, _json_object(response)

    async def _probe_websocket(self, url: str, timeout: float) -> Tuple[bool, Dict[str, Any]]:
        # Plain HTTP probes stand in for a websocket handshake.
        base = url[:-3] if url.endswith("/ws") else url.rstrip("/")
        client = self._get_http()
        try:
            response = await client.get(f"{base}/health", timeout=timeout)
            if response.status_code == 200:
                return True, _json_object(response)
        except httpx.HTTPError:
            pass

        try:
            response = await client.get(base or "/", timeout=timeout)
        except httpx.HTTPError:
            return False, {}
        return response.is_success, {}

    def _track(self, name: str, tracker: _Tracker, result: HealthCheckResult):
        registration = tracker.registration
        if result.status == HealthStatus.UNHEALTHY:
            tracker.failure_count += 1
            tracker.recovery_count = 0
            if tracker.failure_count >= registration.failure_threshold:
                logger.warning(f"{name} unhealthy ({tracker.failure_count} consecutive failures)")
                self.events.publish(HealthChanged(
                    instance_name=name,
                    health_status=HealthStatus.UNHEALTHY,
                    failure_count=tracker.failure_count,
                    result=result,
                ))
        elif result.status == HealthStatus.HEALTHY:
            tracker.recovery_count += 1
            if tracker.failure_count > 0 and tracker.recovery_count >= registration.recovery_threshold:
                recovered_after = tracker.recovery_count
                tracker.failure_count = 0
                tracker.recovery_count = 0
                logger.info(f"{name} recovered after {recovered_after} healthy checks")
                self.events.publish(HealthChanged(
                    instance_name=name,
                    health_status=HealthStatus.HEALTHY,
                    recovery_count=recovered_after,
                    result=result,
                ))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_server_health(self, name: str) -> Optional[HealthCheckResult]:
        tracker = self._trackers.get(name)
        if tracker is None or not tracker.history:
            return None
        return tracker.history[-1]

    def get_server_health_history(self, name: str, limit: Optional[int] = None) -> List[HealthCheckResult]:
        tracker = self._trackers.get(name)
        if tracker is None:
            return []
        history = list(tracker.history)
        return history[-limit:] if limit else history

    def get_failure_counts(self, name: str) -> Tuple[int, int]:
        """Current (failure, recovery) counters for ``name``."""
        tracker = self._trackers.get(name)
        if tracker is None:
            return 0, 0
        return tracker.failure_count, tracker.recovery_count

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def start_group_monitoring(self, group_id: str, names: List[str]):
        self._groups[group_id] = list(names)
        self._timers.call_every(
            f"group:{group_id}", self.settings.group_aggregation_interval, self._aggregate, group_id
        )
        logger.info(f"Started group health aggregation for {group_id} ({len(names)} servers)")

    def stop_group_monitoring(self, group_id: str):
        self._timers.cancel(f"group:{group_id}")
        if self._groups.pop(group_id, None) is not None:
            logger.info(f"Stopped group health aggregation for {group_id}")

    def get_group_health(self, group_id: str) -> Optional[GroupHealthReport]:
        """Recompute the group's health from each member's latest result."""
        names = self._groups.get(group_id)
        if names is None:
            return None

        healthy = degraded = failed = 0
        servers: Dict[str, str] = {}
        response_times = []
        for name in names:
            latest = self.get_server_health(name)
            if latest is None or latest.status == HealthStatus.UNKNOWN:
                state = "degraded"
            elif latest.status == HealthStatus.HEALTHY:
                state = "healthy"
            elif latest.container_running:
                state = "degraded"
            else:
                state = "failed"

            if state == "healthy":
                healthy += 1
            elif state == "degraded":
                degraded += 1
            else:
                failed += 1
            servers[name] = state
            if latest is not None and latest.response_time_ms is not None:
                response_times.append(latest.response_time_ms)

        total = len(names)
        return GroupHealthReport(
            group_id=group_id,
            overall_status=collective_status(total, healthy + degraded, healthy),
            total_servers=total,
            healthy_servers=healthy,
            degraded_servers=degraded,
            failed_servers=failed,
            average_response_time_ms=(
                round(sum(response_times) / len(response_times), 2) if response_times else None
            ),
            servers=servers,
        )

    def _aggregate(self, group_id: str):
        report = self.get_group_health(group_id)
        if report is None:
            return
        self.events.publish(GroupHealthUpdated(
            group_id=group_id,
            overall_status=report.overall_status,
            total_servers=report.total_servers,
            healthy_servers=report.healthy_servers,
            degraded_servers=report.degraded_servers,
            failed_servers=report.failed_servers,
            average_response_time_ms=report.average_response_time_ms,
        ))

    async def shutdown(self):
        """Cancel every check and aggregation timer."""
        await self._timers.shutdown()
        self._trackers.clear()
        self._groups.clear()
        if self._http is not None and self._owns_http:
            await self._http.aclose()
        self._http = None
        logger.info("Health monitor shut down")
