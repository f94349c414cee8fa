"""Docker runtime implementation backed by aiodocker."""

import asyncio
import json
import logging
from typing import Dict, List, Optional, Tuple

import aiodocker
import aiohttp
from aiodocker.exceptions import DockerError

from ..config import get_settings
from ..exceptions import RuntimeOperationError
from ..models import ContainerSpec
from .base import ContainerInspection, ContainerRuntime

logger = logging.getLogger(__name__)

# Network modes the daemon provides out of the box.
_BUILTIN_NETWORKS = {"bridge", "host", "none", "default"}

# Failures talking to the daemon socket itself rather than API errors.
_TRANSPORT_ERRORS = (aiohttp.ClientError, OSError)


def split_image_reference(image: str) -> Tuple[str, Optional[str]]:
    """Split ``repo[:tag|@digest]`` into repository and tag.

    A registry host with a port (``host:5000/img``) is not mistaken for a tag.
    Returns ``latest`` when no tag is present so a pull never fetches every tag.
    """
    if "@" in image:
        return image, None
    last_slash = image.rfind("/")
    last_colon = image.rfind(":")
    if last_colon > last_slash:
        return image[:last_colon], image[last_colon + 1:]
    return image, "latest"


class DockerRuntime(ContainerRuntime):
    """Container runtime talking to the local Docker daemon."""

    def __init__(self, url: Optional[str] = None, label_prefix: Optional[str] = None):
        settings = get_settings()
        self.url = url or settings.docker_url
        self.label_prefix = label_prefix or settings.label_prefix
        self.docker: Optional[aiodocker.Docker] = None
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._network_locks: Dict[str, asyncio.Lock] = {}

    async def _ensure_initialized(self):
        """Ensure Docker client is initialized."""
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            try:
                self.docker = aiodocker.Docker(url=self.url)
                # Test connection
                await self.docker.version()
                self._initialized = True
                logger.info("Docker client initialized successfully")

            except Exception as e:
                logger.error(f"Failed to initialize Docker client: {e}")
                if self.docker is not None:
                    await self.docker.close()
                    self.docker = None
                raise RuntimeOperationError(f"Docker daemon unavailable: {e}", operation="connect") from e

    @staticmethod
    def _wrap(e: Exception, operation: str, handle: Optional[str] = None) -> RuntimeOperationError:
        if isinstance(e, DockerError):
            return RuntimeOperationError(
                f"Docker {operation} failed: {e.message}",
                operation=operation,
                handle=handle,
                status_code=e.status,
            )
        return RuntimeOperationError(
            f"Docker {operation} failed: cannot reach daemon: {e}",
            operation=operation,
            handle=handle,
        )

    async def pull(self, image: str) -> None:
        await self._ensure_initialized()

        repo, tag = split_image_reference(image)
        logger.info(f"Pulling image {image}...")
        try:
            await self.docker.images.pull(repo, tag=tag)
        except (DockerError, *_TRANSPORT_ERRORS) as e:
            logger.error(f"Failed to pull image {image}: {e}")
            raise self._wrap(e, "pull") from e
        logger.info(f"Successfully pulled image {image}")

    async def create_and_start(self, image: str, name: str, spec: ContainerSpec) -> str:
        await self._ensure_initialized()

        config = spec.to_docker_config()
        config["Image"] = image

        try:
            if spec.network_mode not in _BUILTIN_NETWORKS:
                await self._ensure_network(spec.network_mode)

            container = await self.docker.containers.create(config=config, name=name)
        except (DockerError, *_TRANSPORT_ERRORS) as e:
            logger.error(f"Failed to create Docker container {name}: {e}")
            raise self._wrap(e, "create") from e

        try:
            await container.start()
        except (DockerError, *_TRANSPORT_ERRORS) as e:
            logger.error(f"Failed to start Docker container {name}: {e}")
            # Leave no half-created container behind
            try:
                await container.delete(force=True)
            except (DockerError, *_TRANSPORT_ERRORS) as cleanup_error:
                logger.warning(f"Failed to clean up container {name}: {cleanup_error}")
            raise self._wrap(e, "start", container.id) from e

        logger.info(f"Created and started Docker container {name} ({container.id[:12]})")
        return container.id

    async def stop(self, handle: str, timeout: Optional[float] = None) -> None:
        await self._ensure_initialized()

        try:
            container = await self.docker.containers.get(handle)
            if timeout is not None:
                await container.stop(t=max(0, int(timeout)))
            else:
                await container.stop()
            logger.info(f"Stopped Docker container {handle[:12]}")

        except DockerError as e:
            if e.status == 404:
                logger.warning(f"Container {handle[:12]} not found")
                return
            if e.status == 304:
                # Already stopped
                return
            raise self._wrap(e, "stop", handle) from e
        except _TRANSPORT_ERRORS as e:
            raise self._wrap(e, "stop", handle) from e

    async def remove(self, handle: str, force: bool = False) -> None:
        await self._ensure_initialized()

        try:
            container = await self.docker.containers.get(handle)
            await container.delete(force=force)
            logger.info(f"Removed Docker container {handle[:12]}")

        except DockerError as e:
            if e.status == 404:
                logger.warning(f"Container {handle[:12]} not found")
                return
            raise self._wrap(e, "remove", handle) from e
        except _TRANSPORT_ERRORS as e:
            raise self._wrap(e, "remove", handle) from e

    def _to_inspection(self, info: dict) -> ContainerInspection:
        state = info.get("State") or {}
        config = info.get("Config") or {}
        network_settings = info.get("NetworkSettings") or {}

        ports: Dict[str, List[str]] = {}
        for container_port, bindings in (network_settings.get("Ports") or {}).items():
            ports[container_port] = [b.get("HostPort", "") for b in (bindings or [])]

        return ContainerInspection(
            running=bool(state.get("Running")),
            status=state.get("Status", "unknown"),
            network_ports=ports,
            handle=info.get("Id"),
            name=(info.get("Name") or "").lstrip("/") or None,
            image=config.get("Image"),
            started_at=state.get("StartedAt"),
            restart_count=info.get("RestartCount", 0),
            message=state.get("Error") or None,
        )

    async def inspect(self, handle: str) -> ContainerInspection:
        await self._ensure_initialized()

        try:
            container = await self.docker.containers.get(handle)
            info = await container.show()
        except (DockerError, *_TRANSPORT_ERRORS) as e:
            raise self._wrap(e, "inspect", handle) from e
        return self._to_inspection(info)

    async def list(self, all: bool = False) -> List[ContainerInspection]:
        await self._ensure_initialized()

        filters = {"label": [f"{self.label_prefix}.managed=true"]}
        try:
            containers = await self.docker.containers.list(all=all, filters=json.dumps(filters))
            inspections = []
            for container in containers:
                info = await container.show()
                inspections.append(self._to_inspection(info))
            return inspections

        except (DockerError, *_TRANSPORT_ERRORS) as e:
            raise self._wrap(e, "list") from e

    async def logs(self, handle: str, tail: int = 100) -> str:
        await self._ensure_initialized()

        try:
            container = await self.docker.containers.get(handle)
            lines = await container.log(stdout=True, stderr=True, tail=tail)
            return "".join(lines)

        except (DockerError, *_TRANSPORT_ERRORS) as e:
            raise self._wrap(e, "logs", handle) from e

    async def _ensure_network(self, network_name: str):
        """Create a bridge network on first use. Networks are never removed here.

        Concurrent callers for one network are serialized, and a network created
        by someone else in the meantime (409) counts as success.
        """
        lock = self._network_locks.setdefault(network_name, asyncio.Lock())
        async with lock:
            try:
                await self.docker.networks.get(network_name)
                return
            except DockerError as e:
                if e.status != 404:
                    raise

            try:
                await self.docker.networks.create(
                    config={
                        "Name": network_name,
                        "Driver": "bridge",
                        "Labels": {f"{self.label_prefix}.managed": "true"},
                    }
                )
                logger.info(f"Created Docker network {network_name}")
            except DockerError as e:
                if e.status != 409:
                    raise
                logger.info(f"Docker network {network_name} already exists")

    async def close(self):
        """Close Docker client."""
        if self.docker:
            await self.docker.close()
            self.docker = None
            self._initialized = False
