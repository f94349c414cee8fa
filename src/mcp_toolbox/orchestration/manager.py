"""Deployment orchestrator for groups of MCP server containers.

Owns the group/instance state and composes the runtime, credential injector,
configuration resolver and health monitor:

    pull -> credentials -> resolve -> create+start -> register for health

Group operations never raise; they report a success flag plus a per-name
error map so callers can tell which members failed.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar, Union

from pydantic import ValidationError

from ..config import Settings, get_settings
from ..credentials.injector import CredentialInjector
from ..events import (
    CredentialEvent,
    CredentialRefreshRequired,
    EventBus,
    GroupStatusChanged,
    HealthChanged,
    HealthChecked,
    InstanceRestarted,
    InstanceStatusChanged,
)
from ..exceptions import ToolboxError
from ..health.monitor import GroupHealthReport, HealthMonitor
from ..models import (
    CollectiveStatus,
    Group,
    HealthStatus,
    Instance,
    InstanceStatus,
    ServerSpec,
    utc_now,
)
from ..observability.logging import set_log_context
from ..observability.metrics import record_deployment, record_restart, set_managed_instances
from ..timers import TimerRegistry
from .base import ContainerRuntime
from .resolver import ConfigurationResolver, ValidationReport
from .state import StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

SpecInput = Union[ServerSpec, Dict[str, Any]]


@dataclass
class DeploymentResult:
    success: bool
    deployed: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"success": self.success, "deployed": list(self.deployed), "errors": dict(self.errors)}


@dataclass
class RemovalResult:
    success: bool
    removed: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"success": self.success, "removed": list(self.removed), "errors": dict(self.errors)}


def order_by_dependencies(specs: Sequence[ServerSpec], dependency_order: Optional[Sequence[str]]) -> List[ServerSpec]:
    """Stable-sort specs by their position in ``dependency_order``.

    Specs not listed keep their relative order and come after all listed ones.
    """
    if not dependency_order:
        return list(specs)
    rank = {}
    for index, name in enumerate(dependency_order):
        rank.setdefault(name, index)
    unlisted = len(rank)
    return sorted(specs, key=lambda s: rank.get(s.name, unlisted))


def batched(items: Sequence[T], size: int) -> List[List[T]]:
    size = max(1, size)
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def _error_text(error: BaseException) -> str:
    return str(error) or error.__class__.__name__


class DeploymentOrchestrator:
    """Deploys, removes, restarts and reports on groups of MCP servers."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        injector: Optional[CredentialInjector] = None,
        resolver: Optional[ConfigurationResolver] = None,
        monitor: Optional[HealthMonitor] = None,
        events: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings or get_settings()
        self.events = events or EventBus()
        self.runtime = runtime
        self.injector = injector or CredentialInjector(events=self.events, settings=self.settings)
        self.resolver = resolver or ConfigurationResolver(settings=self.settings)
        self.monitor = monitor or HealthMonitor(runtime, events=self.events, settings=self.settings)
        self.state = StateStore()
        self._clock = clock
        self._timers = TimerRegistry("orchestrator")
        self._restarting: set = set()
        self._published_status: Dict[str, CollectiveStatus] = {}
        self._queue: Optional[asyncio.Queue] = None
        self._consumer_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Start consuming health and credential events."""
        if self._consumer_task is not None and not self._consumer_task.done():
            return
        self._queue = self.events.subscribe(HealthChecked, HealthChanged, CredentialEvent)
        self._consumer_task = asyncio.create_task(self._consume_events(), name="orchestrator-events")
        logger.info("Deployment orchestrator started")

    async def shutdown(self):
        """Remove every group, then stop all background work."""
        logger.info("Shutting down deployment orchestrator...")
        for group in self.state.groups():
            result = await self.remove_group(group.group_id, force_remove=True)
            if result.errors:
                logger.warning(f"Group {group.group_id} removal incomplete at shutdown: {result.errors}")

        if self._consumer_task and not self._consumer_task.done():
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass
        if self._queue is not None:
            self.events.unsubscribe(self._queue)
            self._queue = None

        await self._timers.shutdown()
        await self.monitor.shutdown()
        await self.injector.shutdown()
        await self.runtime.close()
        logger.info("Deployment orchestrator shut down")

    # ------------------------------------------------------------------
    # Deployment
    # ------------------------------------------------------------------

    def _coerce_specs(self, specs: Iterable[SpecInput], errors: Dict[str, str]) -> List[ServerSpec]:
        parsed: List[ServerSpec] = []
        seen = set()
        for index, raw in enumerate(specs):
            if isinstance(raw, ServerSpec):
                spec = raw
            else:
                try:
                    spec = ServerSpec.model_validate(raw)
                except ValidationError as e:
                    key = (raw.get("instanceNameOnToolbox") or raw.get("name")) if isinstance(raw, dict) else None
                    errors[key or f"spec[{index}]"] = f"Invalid server spec: {e.error_count()} validation error(s)"
                    logger.error(f"Invalid server spec at position {index}: {e}")
                    continue

            if spec.name in seen:
                errors[spec.name] = "Duplicate instance name in deployment request"
                continue
            owner = self.state.owner_of(spec.name)
            if owner is not None:
                errors[spec.name] = f"Instance {spec.name} already belongs to group {owner}"
                continue
            seen.add(spec.name)
            parsed.append(spec)
        return parsed

    async def deploy_group(
        self,
        group_id: str,
        specs: Iterable[SpecInput],
        shared_networking: bool = False,
        dependency_order: Optional[Sequence[str]] = None,
        max_concurrent: Optional[int] = None,
    ) -> DeploymentResult:
        """Deploy a group of MCP servers in bounded concurrent batches.

        Args:
            group_id: New group id
            specs: Server specs (models or raw mappings)
            shared_networking: Attach members to a per-group network
            dependency_order: Names to deploy first, in this order
            max_concurrent: Batch size, defaults to the configured value

        Returns:
            DeploymentResult; ``success`` is True when at least one server deployed
        """
        set_log_context(group_id=group_id, operation="deploy_group")
        if self.state.get_group(group_id) is not None:
            return DeploymentResult(False, errors={"group": f"Group {group_id} already exists"})

        errors: Dict[str, str] = {}
        parsed = self._coerce_specs(specs, errors)
        if not parsed:
            logger.error(f"No deployable servers for group {group_id}")
            return DeploymentResult(False, errors=errors or {"group": "No server specs provided"})

        group = self.state.add_group(Group(group_id=group_id, shared_networking=shared_networking))
        for spec in parsed:
            self.state.add_instance(group_id, Instance(spec=spec))
        set_managed_instances(len(self.state))

        ordered = order_by_dependencies(parsed, dependency_order)
        batches = batched(ordered, max_concurrent or self.settings.max_concurrent_deployments)
        logger.info(f"Deploying group {group_id}: {len(ordered)} servers in {len(batches)} batches")

        deployed: List[str] = []
        for number, batch in enumerate(batches, start=1):
            instances = [group.instances[spec.name] for spec in batch]
            outcomes = await asyncio.gather(
                *(self._deploy_instance(group, instance) for instance in instances),
                return_exceptions=True,
            )
            for instance, outcome in zip(instances, outcomes):
                if isinstance(outcome, BaseException):
                    errors[instance.name] = _error_text(outcome)
                else:
                    deployed.append(instance.name)

            if number < len(batches) and self.settings.batch_pause_seconds > 0:
                await asyncio.sleep(self.settings.batch_pause_seconds)

        self._publish_group_status(group, force=True)
        self.monitor.start_group_monitoring(group_id, list(group.instances))

        success = bool(deployed)
        logger.info(
            f"Group deployment {group_id} {'completed' if success else 'failed'}: "
            f"{len(deployed)}/{len(ordered)} servers deployed"
        )
        return DeploymentResult(success, deployed, errors)

    async def _deploy_instance(self, group: Group, instance: Instance) -> str:
        """Single-spec deploy path used by group deployment and restarts."""
        spec = instance.spec
        set_log_context(group_id=group.group_id, instance_name=spec.name, operation="deploy")
        started = time.perf_counter()
        handle: Optional[str] = None

        self._set_status(instance, InstanceStatus.PULLING)
        try:
            await self.runtime.pull(spec.image)

            injected: Dict[str, str] = {}
            if spec.required_oauth_providers:
                injected = await self.injector.prepare_credentials(
                    spec.account_id,
                    spec.required_oauth_providers,
                    {"group_id": group.group_id, "instance_name": spec.name},
                )

            container_spec = self.resolver.resolve(
                spec, injected, group_id=group.group_id, shared_networking=group.shared_networking
            )
            handle = await self.runtime.create_and_start(spec.image, spec.name, container_spec)

            self._set_status(instance, InstanceStatus.STARTING, container_id=handle)
            instance.started_at = self._clock()
            instance.health_status = HealthStatus.UNKNOWN
            instance.last_health_check = None

            self.monitor.register(spec.name, self.monitor.default_registration(
                handle,
                endpoint_path=spec.endpoint_path,
                transport=spec.transport,
                expected_capabilities=dict(spec.capabilities),
            ))
            self._set_status(instance, InstanceStatus.RUNNING)

        except Exception as e:
            logger.error(f"Failed to deploy MCP server {spec.name}: {e}")
            if handle is not None:
                self.monitor.unregister(spec.name)
                try:
                    await self.runtime.remove(handle, force=True)
                except Exception as cleanup_error:
                    logger.warning(f"Failed to clean up container for {spec.name}: {cleanup_error}")
            self._set_status(instance, InstanceStatus.ERROR, error=_error_text(e))
            record_deployment(spec.transport.value, "error", time.perf_counter() - started)
            raise

        record_deployment(spec.transport.value, "success", time.perf_counter() - started)
        logger.info(f"MCP server deployed: {spec.name} ({handle[:12]})")
        return handle

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    async def remove_group(
        self,
        group_id: str,
        force_remove: bool = False,
        graceful_timeout_ms: Optional[int] = None,
    ) -> RemovalResult:
        """Stop and remove every member, most recently added first.

        The group is dropped once all members are gone; members that failed to
        stop or remove stay in the group so the call can be retried.
        """
        set_log_context(group_id=group_id, operation="remove_group")
        group = self.state.get_group(group_id)
        if group is None:
            return RemovalResult(False, errors={"group": f"Group {group_id} not found"})

        timeout_ms = self.settings.graceful_timeout_ms if graceful_timeout_ms is None else graceful_timeout_ms
        self.monitor.stop_group_monitoring(group_id)
        logger.info(f"Removing group {group_id} ({group.total} servers)")

        removed: List[str] = []
        errors: Dict[str, str] = {}
        for instance in reversed(list(group.instances.values())):
            try:
                await self._remove_instance(instance, force_remove, timeout_ms / 1000)
                removed.append(instance.name)
            except Exception as e:
                errors[instance.name] = _error_text(e)
                instance.error_message = f"Removal failed: {_error_text(e)}"
                logger.error(f"Failed to remove MCP server {instance.name}: {e}")

        if not group.instances:
            self.state.remove_group(group_id)
            self.resolver.forget_network_configuration(group_id)
            self._published_status.pop(group_id, None)
        else:
            self._publish_group_status(group)
        set_managed_instances(len(self.state))

        logger.info(f"Group removal {group_id}: {len(removed)} removed, {len(errors)} failed")
        return RemovalResult(not errors, removed, errors)

    async def _remove_instance(self, instance: Instance, force: bool, timeout: float):
        name = instance.name
        set_log_context(instance_name=name, operation="remove")
        self._timers.cancel(f"restart:{name}")

        handle = instance.container_id
        if handle:
            self._set_status(instance, InstanceStatus.STOPPING)
            await self.runtime.stop(handle, timeout=timeout)
            await self.runtime.remove(handle, force=force)

        self.monitor.unregister(name)
        self._set_status(instance, InstanceStatus.STOPPED)
        self.state.remove_instance(name)

        spec = instance.spec
        if spec.required_oauth_providers and spec.account_id:
            still_used = any(i.spec.account_id == spec.account_id for i in self.state.instances())
            if not still_used:
                await self.injector.cleanup_credentials(spec.account_id)

    # ------------------------------------------------------------------
    # Restarts
    # ------------------------------------------------------------------

    async def restart_server(self, name: str) -> bool:
        """Redeploy one server from its stored spec.

        Returns False without changing state when the server is unknown, has
        used all restart attempts, is inside the cooldown window, or is
        already restarting.
        """
        set_log_context(instance_name=name, operation="restart")
        instance = self.state.get_instance(name)
        if instance is None:
            logger.error(f"MCP instance {name} not found for restart")
            record_restart("rejected")
            return False
        if instance.restart_count >= self.settings.max_restart_attempts:
            logger.error(f"Max restart attempts reached for {name}")
            record_restart("rejected")
            return False
        if instance.last_restart_time is not None:
            elapsed = (self._clock() - instance.last_restart_time).total_seconds()
            if elapsed < self.settings.restart_cooldown_seconds:
                logger.info(f"Restart cooldown in effect for {name}, skipping restart")
                record_restart("rejected")
                return False
        group = self.state.group_of(name)
        if group is None or name in self._restarting:
            record_restart("rejected")
            return False

        self._restarting.add(name)
        try:
            logger.info(f"Restarting MCP server {name} (attempt {instance.restart_count + 1})")
            self._timers.cancel(f"restart:{name}")
            self.monitor.unregister(name)
            if instance.container_id:
                try:
                    await self.runtime.remove(instance.container_id, force=True)
                except Exception as e:
                    logger.warning(f"Failed to remove existing container for {name}: {e}")

            try:
                await self._deploy_instance(group, instance)
            except Exception as e:
                instance.error_message = f"Restart failed: {_error_text(e)}"
                record_restart("failed")
                self.events.publish(InstanceRestarted(
                    instance_name=name, restart_count=instance.restart_count, success=False, error=_error_text(e)
                ))
                self._publish_group_status(group)
                return False

            instance.restart_count += 1
            instance.last_restart_time = self._clock()
            record_restart("success")
            self.events.publish(InstanceRestarted(instance_name=name, restart_count=instance.restart_count))
            self._publish_group_status(group)
            logger.info(f"MCP server {name} restarted successfully")
            return True
        finally:
            self._restarting.discard(name)

    async def _auto_restart(self, name: str):
        instance = self.state.get_instance(name)
        if instance is None or instance.status != InstanceStatus.RUNNING:
            return
        await self.restart_server(name)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _consume_events(self):
        while True:
            event = await self._queue.get()
            try:
                if isinstance(event, HealthChecked):
                    self._on_health_checked(event)
                elif isinstance(event, HealthChanged):
                    self._on_health_changed(event)
                elif isinstance(event, CredentialEvent):
                    self._on_credential_event(event)
            except Exception as e:
                logger.error(f"Failed to handle {event.kind} event: {e}", exc_info=True)

    def _on_health_checked(self, event: HealthChecked):
        instance = self.state.get_instance(event.instance_name)
        if instance is None:
            return
        instance.health_status = event.result.status
        instance.last_health_check = event.result.timestamp
        group = self.state.group_of(instance.name)
        if group is not None:
            self._publish_group_status(group)

    def _on_health_changed(self, event: HealthChanged):
        instance = self.state.get_instance(event.instance_name)
        if instance is None:
            return
        instance.health_status = event.health_status
        if event.result is not None:
            instance.last_health_check = event.result.timestamp

        key = f"restart:{instance.name}"
        if (
            event.health_status == HealthStatus.UNHEALTHY
            and instance.status == InstanceStatus.RUNNING
            and not self._timers.active(key)
            and instance.name not in self._restarting
        ):
            delay = self.settings.auto_restart_delay_seconds
            logger.warning(f"Scheduling restart of unhealthy server {instance.name} in {delay}s")
            self._timers.call_later(key, delay, self._auto_restart, instance.name)

        group = self.state.group_of(instance.name)
        if group is not None:
            self._publish_group_status(group)

    def _on_credential_event(self, event: CredentialEvent):
        if event.action != "updated":
            return
        refreshed = set(event.providers)
        for instance in self.state.instances():
            spec = instance.spec
            if spec.account_id == event.account_id and refreshed.intersection(spec.required_oauth_providers):
                logger.info(f"Credentials updated for {instance.name}; refresh required")
                self.events.publish(CredentialRefreshRequired(
                    instance_name=instance.name,
                    account_id=event.account_id,
                    providers=sorted(refreshed.intersection(spec.required_oauth_providers)),
                ))

    def _set_status(
        self,
        instance: Instance,
        status: InstanceStatus,
        container_id: Optional[str] = None,
        error: Optional[str] = None,
    ):
        self.state.set_status(instance, status, container_id=container_id, error=error)
        self.events.publish(InstanceStatusChanged(
            instance_name=instance.name,
            status=status,
            container_id=instance.container_id,
            error=error,
        ))

    def _publish_group_status(self, group: Group, force: bool = False):
        status = group.collective_status
        if not force and self._published_status.get(group.group_id) == status:
            return
        self._published_status[group.group_id] = status
        self.events.publish(GroupStatusChanged(
            group_id=group.group_id,
            collective_status=status,
            total_instances=group.total,
            running_instances=group.running,
            healthy_instances=group.healthy,
        ))

    # ------------------------------------------------------------------
    # Reads and pass-throughs
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of every group and instance."""
        groups = self.state.groups()
        return {
            "groups": {g.group_id: g.to_dict() for g in groups},
            "summary": {
                "total_groups": len(groups),
                "total_servers": sum(g.total for g in groups),
                "running_servers": sum(g.running for g in groups),
                "healthy_servers": sum(g.healthy for g in groups),
            },
        }

    async def get_server_logs(self, name: str, tail: int = 100) -> str:
        instance = self.state.get_instance(name)
        if instance is None:
            raise ToolboxError(f"MCP instance {name} not found", instance_name=name)
        if not instance.container_id:
            raise ToolboxError(f"MCP instance {name} has no container", instance_name=name)
        return await self.runtime.logs(instance.container_id, tail=tail)

    def validate_specs(self, specs: Iterable[SpecInput]) -> List[ValidationReport]:
        """Static pre-deployment check; touches neither the runtime nor state."""
        reports = []
        seen = set()
        for raw in specs:
            report = self.resolver.validate_spec(raw)
            name = report.instance_name
            if name:
                if name in seen:
                    report.errors.append("Duplicate instance name in request")
                    report.valid = False
                owner = self.state.owner_of(name)
                if owner is not None:
                    report.warnings.append(f"Instance name already deployed in group {owner}")
                seen.add(name)
            reports.append(report)
        return reports

    def list_config_templates(self) -> List[Dict[str, Any]]:
        return [t.to_dict() for t in self.resolver.list_templates()]

    def get_group_health(self, group_id: str) -> Optional[GroupHealthReport]:
        return self.monitor.get_group_health(group_id)

    async def refresh_credentials(self, name: str) -> bool:
        """Force a credential refresh for the server's account."""
        instance = self.state.get_instance(name)
        if instance is None or not instance.spec.required_oauth_providers:
            return False
        return await self.injector.force_refresh(instance.spec.account_id)
