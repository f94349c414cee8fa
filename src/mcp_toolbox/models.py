"""Data model for deployed MCP servers, groups, health results and credentials."""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TransportType(str, enum.Enum):
    """Protocol surface of an MCP server."""
    STDIO = "stdio"
    SSE = "sse"
    WEBSOCKET = "websocket"


class InstanceStatus(str, enum.Enum):
    """Lifecycle status of a deployed instance."""
    PENDING = "pending"
    PULLING = "pulling"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


# Statuses during which an instance owns a container handle.
HANDLE_STATUSES = frozenset({InstanceStatus.STARTING, InstanceStatus.RUNNING, InstanceStatus.STOPPING})


class HealthStatus(str, enum.Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class CollectiveStatus(str, enum.Enum):
    """Status of a group derived from its members."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"


def collective_status(total: int, running: int, healthy: int) -> CollectiveStatus:
    """Four-way rule shared by the orchestrator and the health monitor."""
    if running == 0:
        return CollectiveStatus.FAILED
    if healthy == total:
        return CollectiveStatus.HEALTHY
    if 0 < healthy < total:
        return CollectiveStatus.DEGRADED
    return CollectiveStatus.FAILED


# ---------------------------------------------------------------------------
# Override block
# ---------------------------------------------------------------------------

class _Override(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)


class ResourceOverride(_Override):
    memory: Optional[str] = Field(None, description="Memory limit, e.g. 512m or 2g")
    cpu: Optional[int] = Field(None, ge=2, description="Relative CPU shares")


class SecurityOverride(_Override):
    read_only_root_filesystem: Optional[bool] = Field(None, alias="readOnlyRootFilesystem")
    no_new_privileges: Optional[bool] = Field(None, alias="noNewPrivileges")
    cap_add: List[str] = Field(default_factory=list, alias="capAdd")
    seccomp_profile: Optional[str] = Field(None, alias="seccompProfile")
    apparmor_profile: Optional[str] = Field(None, alias="apparmorProfile")
    user: Optional[str] = None


class HostConfigOverride(_Override):
    """Host-level fields that may replace what the resolver computed."""

    memory: Optional[int] = Field(None, alias="Memory", ge=0)
    cpu_shares: Optional[int] = Field(None, alias="CpuShares", ge=0)
    network_mode: Optional[str] = Field(None, alias="NetworkMode")
    restart_policy: Optional[Dict[str, Any]] = Field(None, alias="RestartPolicy")
    readonly_rootfs: Optional[bool] = Field(None, alias="ReadonlyRootfs")
    port_bindings: Optional[Dict[str, List[Dict[str, str]]]] = Field(None, alias="PortBindings")
    tmpfs: Optional[Dict[str, str]] = Field(None, alias="Tmpfs")
    security_opt: Optional[List[str]] = Field(None, alias="SecurityOpt")


class ConfigOverride(_Override):
    """Caller-supplied partial container configuration, applied last.

    This is an escape hatch: ``host_config`` can undo networking, resource
    and security decisions made by the resolver.
    """

    env: List[str] = Field(default_factory=list, alias="Env")
    command: Optional[List[str]] = Field(None, alias="Cmd")
    working_dir: Optional[str] = Field(None, alias="WorkingDir")
    labels: Dict[str, str] = Field(default_factory=dict, alias="Labels")
    resources: Optional[ResourceOverride] = None
    security: Optional[SecurityOverride] = None
    host_config: Optional[HostConfigOverride] = Field(None, alias="HostConfig")

    @field_validator("env")
    @classmethod
    def validate_env_entries(cls, v):
        for entry in v:
            if "=" not in entry or entry.startswith("="):
                raise ValueError(f"Env override entries must be KEY=VALUE, got {entry!r}")
        return v


# ---------------------------------------------------------------------------
# Declarative server spec
# ---------------------------------------------------------------------------

def normalize_port_bindings(bindings: Dict[str, Any]) -> Dict[str, List[Dict[str, str]]]:
    """Normalize user port bindings to Docker's ``{"8080/tcp": [{"HostPort": "9000"}]}`` shape.

    Accepts shorthand such as ``{"8080": 9000}``.
    """
    normalized: Dict[str, List[Dict[str, str]]] = {}
    for container_port, host in bindings.items():
        key = str(container_port)
        if "/" not in key:
            key = f"{key}/tcp"
        if isinstance(host, list):
            entries = []
            for item in host:
                if isinstance(item, dict):
                    entries.append({k: str(v) for k, v in item.items()})
                else:
                    entries.append({"HostPort": str(item)})
            normalized[key] = entries
        elif isinstance(host, dict):
            normalized[key] = [{k: str(v) for k, v in host.items()}]
        elif host is None:
            normalized[key] = [{"HostPort": ""}]
        else:
            normalized[key] = [{"HostPort": str(host)}]
    return normalized


class ServerSpec(BaseModel):
    """Immutable declarative descriptor of one MCP server instance."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    name: str = Field(..., min_length=1, alias="instanceNameOnToolbox")
    image: str = Field(..., min_length=1, alias="dockerImageUrl")
    account_id: str = Field("", alias="accountToolInstanceId")
    group_id: Optional[str] = Field(None, alias="groupId")
    transport: TransportType = Field(TransportType.STDIO, alias="mcpTransportType")
    endpoint_path: str = Field("/mcp", alias="mcpEndpointPath")
    capabilities: Dict[str, Any] = Field(default_factory=dict, alias="mcpServerCapabilities")
    discovery_metadata: Dict[str, Any] = Field(default_factory=dict, alias="mcpDiscoveryMetadata")
    required_oauth_providers: List[str] = Field(default_factory=list, alias="requiredOAuthProviders")
    overrides: ConfigOverride = Field(default_factory=ConfigOverride, alias="baseConfigOverrideJson")
    port_bindings: Optional[Dict[str, List[Dict[str, str]]]] = Field(None, alias="portBindings")
    environment: Dict[str, str] = Field(default_factory=dict, alias="environmentVariables")

    @field_validator("port_bindings", mode="before")
    @classmethod
    def coerce_port_bindings(cls, v):
        if v is None:
            return None
        if not isinstance(v, dict):
            raise ValueError("port_bindings must be a mapping of container port to host binding")
        return normalize_port_bindings(v)

    @field_validator("overrides", mode="before")
    @classmethod
    def empty_overrides(cls, v):
        return ConfigOverride() if v is None else v

    @field_validator("environment", mode="before")
    @classmethod
    def stringify_environment(cls, v):
        if v is None:
            return {}
        return {str(k): str(val) for k, val in dict(v).items()}


# ---------------------------------------------------------------------------
# Runtime records
# ---------------------------------------------------------------------------

@dataclass
class Instance:
    """Mutable runtime record wrapping a ServerSpec."""
    spec: ServerSpec
    status: InstanceStatus = InstanceStatus.PENDING
    container_id: Optional[str] = None
    health_status: HealthStatus = HealthStatus.UNKNOWN
    last_health_check: Optional[datetime] = None
    started_at: Optional[datetime] = None
    restart_count: int = 0
    last_restart_time: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def name(self) -> str:
        return self.spec.name

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "health_status": self.health_status.value,
            "container_id": self.container_id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_health_check": self.last_health_check.isoformat() if self.last_health_check else None,
            "restart_count": self.restart_count,
            "last_restart_time": self.last_restart_time.isoformat() if self.last_restart_time else None,
            "error_message": self.error_message,
            "endpoint_path": self.spec.endpoint_path,
            "transport": self.spec.transport.value,
            "image": self.spec.image,
        }


@dataclass
class Group:
    """Instances sharing a deploy/remove/monitor lifecycle.

    Counters and status are always recomputed from the members.
    """
    group_id: str
    shared_networking: bool = False
    instances: Dict[str, Instance] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    @property
    def total(self) -> int:
        return len(self.instances)

    @property
    def running(self) -> int:
        return sum(1 for i in self.instances.values() if i.status == InstanceStatus.RUNNING)

    @property
    def healthy(self) -> int:
        return sum(
            1 for i in self.instances.values()
            if i.status == InstanceStatus.RUNNING and i.health_status == HealthStatus.HEALTHY
        )

    @property
    def collective_status(self) -> CollectiveStatus:
        return collective_status(self.total, self.running, self.healthy)

    def to_dict(self) -> dict:
        return {
            "collective_status": self.collective_status.value,
            "total_instances": self.total,
            "running_instances": self.running,
            "healthy_instances": self.healthy,
            "shared_networking": self.shared_networking,
            "instances": {name: inst.to_dict() for name, inst in self.instances.items()},
        }


@dataclass
class HealthCheckResult:
    """Point-in-time snapshot of one instance's health."""
    instance_name: str
    status: HealthStatus = HealthStatus.UNKNOWN
    timestamp: datetime = field(default_factory=utc_now)
    response_time_ms: Optional[float] = None
    container_running: bool = False
    endpoint_reachable: bool = False
    capabilities_match: bool = False
    observed_capabilities: Dict[str, Any] = field(default_factory=dict)
    container_status: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "instance_name": self.instance_name,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "response_time_ms": self.response_time_ms,
            "container_running": self.container_running,
            "endpoint_reachable": self.endpoint_reachable,
            "capabilities_match": self.capabilities_match,
            "container_status": self.container_status,
            "error_message": self.error_message,
        }


@dataclass
class OAuthCredential:
    """OAuth material for one provider. Only ever held in memory."""
    provider: str
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scopes: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:
        return f"OAuthCredential(provider={self.provider!r}, expires_at={self.expires_at!r}, scopes={self.scopes!r})"


@dataclass
class ContainerSpec:
    """Fully-resolved, runtime-ready container specification."""

    # Identity
    image: str
    name: str

    # Command and environment
    env: List[str] = field(default_factory=list)
    command: Optional[List[str]] = None
    working_dir: Optional[str] = None

    # Networking
    port_bindings: Dict[str, List[Dict[str, str]]] = field(default_factory=dict)
    network_mode: str = "bridge"
    network_aliases: Dict[str, List[str]] = field(default_factory=dict)

    # Resources
    memory: Optional[int] = None
    cpu_shares: Optional[int] = None

    # Restart policy
    restart_policy: Dict[str, Any] = field(default_factory=lambda: {"Name": "unless-stopped"})

    # Security
    cap_drop: List[str] = field(default_factory=list)
    cap_add: List[str] = field(default_factory=list)
    security_opt: List[str] = field(default_factory=list)
    readonly_rootfs: bool = False
    tmpfs: Dict[str, str] = field(default_factory=dict)
    user: Optional[str] = None

    # Logging and labels
    log_config: Dict[str, Any] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def exposed_ports(self) -> Dict[str, dict]:
        return {port: {} for port in self.port_bindings}

    def env_dict(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for entry in self.env:
            key, _, value = entry.partition("=")
            out[key] = value
        return out

    def to_docker_config(self) -> Dict[str, Any]:
        """Render the Docker Engine ``POST /containers/create`` body."""
        host_config: Dict[str, Any] = {
            "RestartPolicy": dict(self.restart_policy),
            "NetworkMode": self.network_mode,
            "CapDrop": list(self.cap_drop),
            "CapAdd": list(self.cap_add),
            "ReadonlyRootfs": self.readonly_rootfs,
        }
        if self.port_bindings:
            host_config["PortBindings"] = self.port_bindings
        if self.memory is not None:
            host_config["Memory"] = self.memory
        if self.cpu_shares is not None:
            host_config["CpuShares"] = self.cpu_shares
        if self.security_opt:
            host_config["SecurityOpt"] = list(self.security_opt)
        if self.tmpfs:
            host_config["Tmpfs"] = dict(self.tmpfs)
        if self.log_config:
            host_config["LogConfig"] = self.log_config

        config: Dict[str, Any] = {
            "Image": self.image,
            "Env": list(self.env),
            "Labels": dict(self.labels),
            "HostConfig": host_config,
        }
        if self.command:
            config["Cmd"] = list(self.command)
        if self.working_dir:
            config["WorkingDir"] = self.working_dir
        if self.user:
            config["User"] = self.user
        if self.port_bindings:
            config["ExposedPorts"] = self.exposed_ports
        if self.network_aliases:
            config["NetworkingConfig"] = {
                "EndpointsConfig": {
                    network: {"Aliases": list(aliases)}
                    for network, aliases in self.network_aliases.items()
                }
            }
        return config
