"""Wires the orchestrator and its collaborators from settings."""

import logging
from typing import Optional

from ..config import Settings, get_settings
from ..credentials.client import CredentialIssuanceClient
from ..credentials.injector import CredentialInjector
from ..events import EventBus
from ..health.monitor import HealthMonitor
from ..observability.logging import configure_logging
from .base import ContainerRuntime
from .docker import DockerRuntime
from .manager import DeploymentOrchestrator
from .resolver import ConfigurationResolver

logger = logging.getLogger(__name__)


class OrchestratorFactory:
    """Builds a fully wired ``DeploymentOrchestrator`` and keeps one per process."""

    _instance: Optional[DeploymentOrchestrator] = None

    @classmethod
    def create(
        cls,
        settings: Optional[Settings] = None,
        runtime: Optional[ContainerRuntime] = None,
        setup_logging: bool = False,
    ) -> DeploymentOrchestrator:
        """Create an orchestrator.

        Args:
            settings: Settings to use, the cached settings if None
            runtime: Container runtime, a ``DockerRuntime`` if None
            setup_logging: Configure root logging from the settings first

        Returns:
            Orchestrator sharing one event bus with all of its components
        """
        settings = settings or get_settings()
        if setup_logging:
            configure_logging(environment=settings.environment, log_level=settings.log_level)

        events = EventBus()
        runtime = runtime or DockerRuntime(url=settings.docker_url, label_prefix=settings.label_prefix)
        injector = CredentialInjector(
            client=CredentialIssuanceClient(settings=settings),
            events=events,
            settings=settings,
        )
        orchestrator = DeploymentOrchestrator(
            runtime=runtime,
            injector=injector,
            resolver=ConfigurationResolver(settings=settings),
            monitor=HealthMonitor(runtime, events=events, settings=settings),
            events=events,
            settings=settings,
        )
        logger.info(f"Created {settings.app_name} orchestrator ({settings.environment})")
        return orchestrator

    @classmethod
    def get_instance(cls) -> DeploymentOrchestrator:
        if cls._instance is None:
            cls._instance = cls.create(setup_logging=True)
        return cls._instance

    @classmethod
    def reset(cls):
        """Reset singleton instance (useful for testing)."""
        cls._instance = None


def get_orchestrator() -> DeploymentOrchestrator:
    """Get the process-wide orchestrator instance."""
    return OrchestratorFactory.get_instance()
