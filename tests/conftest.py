"""Test configuration and fixtures."""

import asyncio
import os
import random
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

# Set test environment variables BEFORE importing the package
os.environ["ENVIRONMENT"] = "test"

from mcp_toolbox.config import Settings, get_settings
from mcp_toolbox.credentials.client import CredentialIssuanceClient
from mcp_toolbox.credentials.injector import CredentialInjector
from mcp_toolbox.events import EventBus
from mcp_toolbox.exceptions import RuntimeOperationError
from mcp_toolbox.health.monitor import HealthMonitor
from mcp_toolbox.models import ServerSpec
from mcp_toolbox.orchestration.base import ContainerInspection, ContainerRuntime
from mcp_toolbox.orchestration.manager import DeploymentOrchestrator
from mcp_toolbox.orchestration.resolver import ConfigurationResolver


class FakeRuntime(ContainerRuntime):
    """In-memory container runtime that records every call."""

    def __init__(self):
        self.containers = {}
        self.calls = []
        self.pull_log = []
        self.fail_pull = set()
        self.fail_create = set()
        self.fail_stop = set()
        self.in_flight = 0
        self.max_in_flight = 0
        self._counter = 0

    async def pull(self, image):
        self.pull_log.append(("start", image))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            if image in self.fail_pull:
                raise RuntimeOperationError(f"pull access denied for {image}", operation="pull")
        finally:
            self.in_flight -= 1
            self.pull_log.append(("end", image))

    async def create_and_start(self, image, name, spec):
        self.calls.append(("create", name))
        if name in self.fail_create:
            raise RuntimeOperationError(f"Conflict: container name {name} in use", operation="create")
        self._counter += 1
        handle = f"container{self._counter:04d}abcdef"
        ports = {port: [b.get("HostPort", "") for b in bindings] for port, bindings in spec.port_bindings.items()}
        self.containers[handle] = {"name": name, "running": True, "ports": ports, "spec": spec}
        return handle

    async def stop(self, handle, timeout=None):
        self.calls.append(("stop", handle, timeout))
        container = self.containers.get(handle)
        if container and container["name"] in self.fail_stop:
            raise RuntimeOperationError("daemon timeout", operation="stop", handle=handle)
        if container:
            container["running"] = False

    async def remove(self, handle, force=False):
        self.calls.append(("remove", handle, force))
        self.containers.pop(handle, None)

    async def inspect(self, handle):
        container = self.containers.get(handle)
        if container is None:
            raise RuntimeOperationError("No such container", operation="inspect", handle=handle, status_code=404)
        return ContainerInspection(
            running=container["running"],
            status="running" if container["running"] else "exited",
            network_ports=container["ports"],
            handle=handle,
            name=container["name"],
        )

    async def list(self, all=False):
        return [await self.inspect(h) for h, c in self.containers.items() if all or c["running"]]

    async def logs(self, handle, tail=100):
        return f"log output of {handle} (tail={tail})\n"

    def handle_of(self, name):
        for handle, container in self.containers.items():
            if container["name"] == name:
                return handle
        return None


class FakeClock:
    """Manually advanced clock; works for monotonic floats and datetimes."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        if isinstance(self.now, datetime):
            self.now = self.now + timedelta(seconds=seconds)
        else:
            self.now += seconds


async def drain(rounds: int = 10):
    """Let queued callbacks and consumer tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_spec(name, **kwargs) -> ServerSpec:
    values = {"name": name, "image": f"registry.local/{name}:1.0", "account_id": f"acct-{name}"}
    values.update(kwargs)
    return ServerSpec(**values)


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings():
    """Settings with timers pushed far out so nothing fires unless a test asks."""
    return Settings(
        batch_pause_seconds=0,
        health_initial_delay=3600,
        health_check_interval=3600,
        group_aggregation_interval=3600,
        auto_restart_delay_seconds=3600,
        credential_service_token="test-token",
    )


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def issuance_client():
    client = AsyncMock(spec=CredentialIssuanceClient)
    client.issue.return_value = {}
    return client


@pytest.fixture
def wall_clock():
    return FakeClock(datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest_asyncio.fixture
async def build_orchestrator(settings, runtime, issuance_client):
    """Factory for orchestrators wired to the fake runtime; shuts them down afterwards."""
    created = []

    def _build(settings_override=None, clock=None, injector_clock=None):
        s = settings_override or settings
        events = EventBus()
        injector_kwargs = {"clock": injector_clock} if injector_clock else {}
        orchestrator = DeploymentOrchestrator(
            runtime=runtime,
            injector=CredentialInjector(client=issuance_client, events=events, settings=s, **injector_kwargs),
            resolver=ConfigurationResolver(settings=s, rng=random.Random(7)),
            monitor=HealthMonitor(runtime, events=events, settings=s),
            events=events,
            settings=s,
            **({"clock": clock} if clock else {}),
        )
        created.append(orchestrator)
        return orchestrator

    yield _build

    for orchestrator in created:
        await orchestrator.shutdown()
