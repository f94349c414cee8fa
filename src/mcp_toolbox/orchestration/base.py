"""Container runtime interface and data models."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..models import ContainerSpec


@dataclass
class ContainerInspection:
    """Point-in-time view of a container as reported by the runtime."""

    running: bool
    status: str
    # Container port ("8080/tcp") -> published host ports
    network_ports: Dict[str, List[str]] = field(default_factory=dict)
    handle: Optional[str] = None
    name: Optional[str] = None
    image: Optional[str] = None
    started_at: Optional[str] = None
    restart_count: int = 0
    message: Optional[str] = None

    @property
    def first_host_port(self) -> Optional[str]:
        for host_ports in self.network_ports.values():
            for port in host_ports:
                if port:
                    return port
        return None


class ContainerRuntime(ABC):
    """Abstract base class for the local container daemon client."""

    @abstractmethod
    async def pull(self, image: str) -> None:
        """Pull an image.

        Args:
            image: Image reference

        Raises:
            RuntimeOperationError: if the pull fails
        """
        pass

    @abstractmethod
    async def create_and_start(self, image: str, name: str, spec: ContainerSpec) -> str:
        """Create and start a container.

        Args:
            image: Image reference
            name: Container name
            spec: Resolved container specification

        Returns:
            Container handle (id)
        """
        pass

    @abstractmethod
    async def stop(self, handle: str, timeout: Optional[float] = None) -> None:
        """Stop a container.

        Args:
            handle: Container handle
            timeout: Seconds the runtime waits before killing, runtime default if None
        """
        pass

    @abstractmethod
    async def remove(self, handle: str, force: bool = False) -> None:
        """Remove a container.

        Args:
            handle: Container handle
            force: Kill a running container before removal
        """
        pass

    @abstractmethod
    async def inspect(self, handle: str) -> ContainerInspection:
        """Inspect a container.

        Args:
            handle: Container handle

        Returns:
            Container inspection
        """
        pass

    @abstractmethod
    async def list(self, all: bool = False) -> List[ContainerInspection]:
        """List containers managed by this toolbox.

        Args:
            all: Include stopped containers

        Returns:
            List of container inspections
        """
        pass

    @abstractmethod
    async def logs(self, handle: str, tail: int = 100) -> str:
        """Get container logs.

        Args:
            handle: Container handle
            tail: Number of lines to return from end

        Returns:
            Log output
        """
        pass

    async def close(self) -> None:
        """Release client resources."""
        return None
