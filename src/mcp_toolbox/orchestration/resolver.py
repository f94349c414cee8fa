"""Turns a declarative server spec into a runtime-ready container spec.

Resolution is layered; every layer may override what the previous ones set:

1. identity (image, name, restart policy, labels)
2. environment
3. networking
4. resources
5. security
6. logging
7. caller override block
8. validation
"""

import json
import logging
import random
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from ..config import Settings, get_settings
from ..exceptions import ConfigurationError
from ..models import (
    ContainerSpec,
    ResourceOverride,
    ServerSpec,
    TransportType,
    normalize_port_bindings,
    utc_now,
)

logger = logging.getLogger(__name__)

_MEMORY_RE = re.compile(r"^(\d+)([kmgt]?)(b?)$", re.IGNORECASE)
_MEMORY_MULTIPLIERS = {
    "": 1,
    "k": 1024,
    "m": 1024 ** 2,
    "g": 1024 ** 3,
    "t": 1024 ** 4,
}

# Conventional container port per network transport.
TRANSPORT_PORTS = {
    TransportType.SSE: 8080,
    TransportType.WEBSOCKET: 3000,
}

EPHEMERAL_PORT_RANGE = (32768, 65535)
LOW_MEMORY_WARNING_BYTES = 64 * 1024 ** 2

WRITABLE_SCRATCH_MOUNTS = {
    "/tmp": "rw,noexec,nosuid,size=100m",
    "/var/run": "rw,noexec,nosuid,size=10m",
}


def parse_memory_limit(value: Union[str, int]) -> int:
    """Parse a memory limit such as ``512m`` or ``2GB`` into bytes.

    Raises:
        ConfigurationError: if the value does not match ``<int><k|m|g|t>[b]``
    """
    if isinstance(value, int) and not isinstance(value, bool):
        if value < 0:
            raise ConfigurationError(f"Invalid memory limit format: {value}")
        return value
    match = _MEMORY_RE.match(str(value).strip())
    if not match:
        raise ConfigurationError(f"Invalid memory limit format: {value}")
    return int(match.group(1)) * _MEMORY_MULTIPLIERS[match.group(2).lower()]


@dataclass(frozen=True)
class ConfigTemplate:
    name: str
    memory: str
    cpu: int
    description: str = ""

    def to_dict(self) -> dict:
        return {"name": self.name, "memory": self.memory, "cpu": self.cpu, "description": self.description}


DEFAULT_TEMPLATES = {
    t.name: t for t in (
        ConfigTemplate("standard", "512m", 1024, "Balanced defaults for most MCP servers"),
        ConfigTemplate("high-performance", "2g", 2048, "Large memory and CPU share for heavy servers"),
        ConfigTemplate("minimal", "128m", 512, "Smallest footprint for lightweight servers"),
    )
}


@dataclass
class NetworkConfiguration:
    """Shared network recorded for a group."""
    group_id: str
    network_name: str
    shared_networking: bool = True
    members: List[str] = field(default_factory=list)


@dataclass
class ValidationReport:
    """Static pre-deployment check result for one raw spec."""
    instance_name: Optional[str]
    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "instance_name": self.instance_name,
            "valid": self.valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


class ConfigurationResolver:
    """Builds ``ContainerSpec`` values from ``ServerSpec`` values."""

    def __init__(self, settings: Optional[Settings] = None, rng: Optional[random.Random] = None):
        self.settings = settings or get_settings()
        self._rng = rng or random.Random()
        self._templates: Dict[str, ConfigTemplate] = dict(DEFAULT_TEMPLATES)
        self._networks: Dict[str, NetworkConfiguration] = {}

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(
        self,
        spec: ServerSpec,
        injected_env: Optional[Mapping[str, str]] = None,
        group_id: Optional[str] = None,
        shared_networking: bool = False,
    ) -> ContainerSpec:
        """Resolve a container spec.

        Args:
            spec: Declarative server spec
            injected_env: OAuth environment variables from the credential injector
            group_id: Owning group; defaults to ``spec.group_id``
            shared_networking: Attach to the group's shared network

        Returns:
            Runtime-ready container spec

        Raises:
            ConfigurationError: if any layer or the final validation fails
        """
        group_id = group_id or spec.group_id or ""
        container = self._identity(spec, group_id)
        container.env = self._environment(spec, injected_env or {})
        self._networking(container, spec, group_id, shared_networking)
        self._resources(container, spec)
        self._security(container, spec)
        self._logging(container, spec)
        self._apply_overrides(container, spec)
        self._validate(container, spec)
        logger.debug(f"Resolved container spec for {spec.name}")
        return container

    def _identity(self, spec: ServerSpec, group_id: str) -> ContainerSpec:
        return ContainerSpec(
            image=spec.image,
            name=spec.name,
            restart_policy={
                "Name": "unless-stopped",
                "MaximumRetryCount": self.settings.restart_max_retries,
            },
            labels=self._labels(spec, group_id),
        )

    def _labels(self, spec: ServerSpec, group_id: str) -> Dict[str, str]:
        prefix = self.settings.label_prefix
        return {
            f"{prefix}.managed": "true",
            f"{prefix}.instance_name": spec.name,
            f"{prefix}.account_id": spec.account_id,
            f"{prefix}.transport": spec.transport.value,
            f"{prefix}.endpoint_path": spec.endpoint_path,
            f"{prefix}.group_id": group_id,
            f"{prefix}.deployed_at": utc_now().isoformat(),
        }

    def _environment(self, spec: ServerSpec, injected_env: Mapping[str, str]) -> List[str]:
        env = [
            f"MCP_ENDPOINT_PATH={spec.endpoint_path}",
            f"MCP_TRANSPORT_TYPE={spec.transport.value}",
            f"MCP_SERVER_NAME={spec.name}",
            f"MCP_ACCOUNT_TOOL_INSTANCE_ID={spec.account_id}",
        ]
        if spec.capabilities:
            env.append(f"MCP_CAPABILITIES={json.dumps(spec.capabilities)}")
        if spec.discovery_metadata:
            env.append(f"MCP_DISCOVERY_METADATA={json.dumps(spec.discovery_metadata)}")
        env.extend(f"{key}={value}" for key, value in injected_env.items())
        env.extend(f"{key}={value}" for key, value in spec.environment.items())
        env.extend([
            f"CONTAINER_NAME={spec.name}",
            f"DEPLOYMENT_TIMESTAMP={utc_now().isoformat()}",
            "NODE_ENV=production",
        ])
        return env

    def allocate_host_port(self) -> int:
        # No check against ports already bound on the host.
        low, high = EPHEMERAL_PORT_RANGE
        return self._rng.randint(low, high)

    def _port_bindings(self, spec: ServerSpec) -> Dict[str, List[Dict[str, str]]]:
        if spec.port_bindings:
            return {port: [dict(b) for b in bindings] for port, bindings in spec.port_bindings.items()}
        container_port = TRANSPORT_PORTS.get(spec.transport)
        if container_port is None:
            return {}
        return {f"{container_port}/tcp": [{"HostPort": str(self.allocate_host_port())}]}

    def _networking(self, container: ContainerSpec, spec: ServerSpec, group_id: str, shared: bool):
        container.port_bindings = self._port_bindings(spec)

        if shared and group_id:
            network_name = f"{self.settings.network_prefix}-{group_id}"
            network = self._networks.setdefault(
                group_id, NetworkConfiguration(group_id=group_id, network_name=network_name)
            )
            if spec.name not in network.members:
                network.members.append(spec.name)
            container.network_mode = network_name
            container.network_aliases = {network_name: [spec.name]}
        else:
            container.network_mode = "bridge"

    def _resources(self, container: ContainerSpec, spec: ServerSpec):
        container.memory = parse_memory_limit(self.settings.default_memory_limit)
        container.cpu_shares = self.settings.default_cpu_shares

        resources = spec.overrides.resources
        if resources:
            if resources.memory:
                container.memory = parse_memory_limit(resources.memory)
            if resources.cpu:
                container.cpu_shares = resources.cpu

    def _security(self, container: ContainerSpec, spec: ServerSpec):
        security = spec.overrides.security
        no_new_privileges = self.settings.no_new_privileges
        read_only = self.settings.read_only_root_filesystem
        seccomp = self.settings.seccomp_profile
        apparmor = self.settings.apparmor_profile
        cap_add = list(self.settings.default_cap_add)

        if security:
            if security.no_new_privileges is not None:
                no_new_privileges = security.no_new_privileges
            if security.read_only_root_filesystem is not None:
                read_only = security.read_only_root_filesystem
            seccomp = security.seccomp_profile or seccomp
            apparmor = security.apparmor_profile or apparmor
            cap_add.extend(c for c in security.cap_add if c not in cap_add)
            container.user = security.user

        container.cap_drop = ["ALL"]
        container.cap_add = cap_add

        opts = []
        if no_new_privileges:
            opts.append("no-new-privileges:true")
        if seccomp:
            opts.append(f"seccomp={seccomp}")
        if apparmor:
            opts.append(f"apparmor={apparmor}")
        container.security_opt = opts

        container.readonly_rootfs = read_only
        if read_only:
            container.tmpfs = dict(WRITABLE_SCRATCH_MOUNTS)

    def _logging(self, container: ContainerSpec, spec: ServerSpec):
        container.log_config = {
            "Type": "json-file",
            "Config": {
                "max-size": "10m",
                "max-file": "3",
                "labels": f"mcp_server,instance_name={spec.name}",
            },
        }

    def _apply_overrides(self, container: ContainerSpec, spec: ServerSpec):
        overrides = spec.overrides
        if overrides.env:
            container.env = container.env + list(overrides.env)
        if overrides.command:
            container.command = list(overrides.command)
        if overrides.working_dir:
            container.working_dir = overrides.working_dir
        if overrides.labels:
            container.labels.update(overrides.labels)

        host = overrides.host_config
        if host is None:
            return
        if host.memory is not None:
            container.memory = host.memory
        if host.cpu_shares is not None:
            container.cpu_shares = host.cpu_shares
        if host.network_mode is not None:
            container.network_mode = host.network_mode
        if host.restart_policy is not None:
            container.restart_policy = dict(host.restart_policy)
        if host.readonly_rootfs is not None:
            container.readonly_rootfs = host.readonly_rootfs
        if host.port_bindings is not None:
            container.port_bindings = normalize_port_bindings(host.port_bindings)
        if host.tmpfs is not None:
            container.tmpfs = dict(host.tmpfs)
        if host.security_opt is not None:
            container.security_opt = list(host.security_opt)

    def _validate(self, container: ContainerSpec, spec: ServerSpec):
        if not container.image:
            raise ConfigurationError("Container image is required", instance_name=spec.name)
        if not container.name:
            raise ConfigurationError("Container name is required", instance_name=spec.name)
        if spec.transport != TransportType.STDIO and not container.port_bindings:
            raise ConfigurationError(
                f"Port bindings required for transport type: {spec.transport.value}",
                instance_name=spec.name,
            )

        if container.memory is not None and container.memory < LOW_MEMORY_WARNING_BYTES:
            logger.warning(f"Memory limit very low for {spec.name}: {container.memory} bytes")

        for name in container.env_dict():
            upper = name.upper()
            if "PASSWORD" in upper and not upper.endswith(("_ID", "_REF")):
                logger.warning(f"Potential plain text password in environment variable {name} for {spec.name}")

    # ------------------------------------------------------------------
    # Static validation, templates and summaries
    # ------------------------------------------------------------------

    def validate_spec(self, raw: Union[ServerSpec, Mapping[str, Any]]) -> ValidationReport:
        """Check a raw spec without touching the runtime."""
        if isinstance(raw, ServerSpec):
            name = raw.name
            spec: Optional[ServerSpec] = raw
        else:
            name = raw.get("instanceNameOnToolbox") or raw.get("name")
            spec = None

        report = ValidationReport(instance_name=name)
        if spec is None:
            try:
                spec = ServerSpec.model_validate(raw)
            except ValidationError as e:
                for err in e.errors():
                    location = ".".join(str(part) for part in err["loc"]) or "spec"
                    report.errors.append(f"{location}: {err['msg']}")
                report.valid = False
                return report

        if not spec.account_id:
            report.warnings.append("account_id is empty; credentials cannot be injected")
        if spec.required_oauth_providers and not spec.account_id:
            report.errors.append("required_oauth_providers needs an account_id")

        resources = spec.overrides.resources
        if resources and resources.memory:
            try:
                if parse_memory_limit(resources.memory) < LOW_MEMORY_WARNING_BYTES:
                    report.warnings.append(f"Memory limit {resources.memory} is very low")
            except ConfigurationError as e:
                report.errors.append(str(e))

        if spec.transport == TransportType.STDIO and spec.port_bindings:
            report.warnings.append("port_bindings specified for stdio transport (no network surface)")
        if spec.transport != TransportType.STDIO and not spec.port_bindings:
            report.warnings.append("No port_bindings specified for network transport (will auto-assign)")

        report.valid = not report.errors
        return report

    def list_templates(self) -> List[ConfigTemplate]:
        return list(self._templates.values())

    def apply_template(self, spec: ServerSpec, template_name: str) -> ServerSpec:
        """Return a copy of ``spec`` with template resources under its own."""
        template = self._templates.get(template_name)
        if template is None:
            raise ConfigurationError(f"Configuration template not found: {template_name}", instance_name=spec.name)

        own = spec.overrides.resources
        resources = ResourceOverride(
            memory=(own.memory if own and own.memory else template.memory),
            cpu=(own.cpu if own and own.cpu else template.cpu),
        )
        overrides = spec.overrides.model_copy(update={"resources": resources})
        return spec.model_copy(update={"overrides": overrides})

    def get_network_configuration(self, group_id: str) -> Optional[NetworkConfiguration]:
        return self._networks.get(group_id)

    def forget_network_configuration(self, group_id: str):
        # The runtime network itself is left in place.
        self._networks.pop(group_id, None)

    @staticmethod
    def summarize(container: ContainerSpec) -> Dict[str, Any]:
        """Audit summary of a resolved container spec."""
        features = []
        if container.readonly_rootfs:
            features.append("read-only-root-filesystem")
        if "no-new-privileges:true" in container.security_opt:
            features.append("no-new-privileges")
        if any(opt.startswith("seccomp=") for opt in container.security_opt):
            features.append("seccomp-profile")
        if any(opt.startswith("apparmor=") for opt in container.security_opt):
            features.append("apparmor-profile")
        if "ALL" in container.cap_drop:
            features.append("capabilities-dropped")

        return {
            "security_features": features,
            "resource_limits": {"memory": container.memory, "cpu_shares": container.cpu_shares},
            "network_config": {
                "network_mode": container.network_mode,
                "port_bindings": container.port_bindings,
            },
            "environment_variable_count": len(container.env),
        }
