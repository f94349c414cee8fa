"""Tests for orchestrator wiring."""

from unittest.mock import patch

from conftest import FakeRuntime
from mcp_toolbox.orchestration.docker import DockerRuntime
from mcp_toolbox.orchestration.factory import OrchestratorFactory, get_orchestrator


class TestOrchestratorFactory:
    """Test OrchestratorFactory."""

    def teardown_method(self):
        OrchestratorFactory.reset()

    def test_components_share_one_event_bus(self, settings):
        runtime = FakeRuntime()

        orchestrator = OrchestratorFactory.create(settings=settings, runtime=runtime)

        assert orchestrator.runtime is runtime
        assert orchestrator.injector.events is orchestrator.events
        assert orchestrator.monitor.events is orchestrator.events
        assert orchestrator.monitor.runtime is runtime
        assert orchestrator.injector.client.token == "test-token"
        assert orchestrator.resolver.settings is settings

    def test_default_runtime_is_docker(self, settings):
        orchestrator = OrchestratorFactory.create(settings=settings)
        assert isinstance(orchestrator.runtime, DockerRuntime)
        assert orchestrator.runtime.label_prefix == settings.label_prefix

    def test_singleton(self, settings):
        with patch("mcp_toolbox.orchestration.factory.get_settings", return_value=settings), \
                patch("mcp_toolbox.orchestration.factory.configure_logging") as configure:
            first = get_orchestrator()
            second = get_orchestrator()

        assert first is second
        configure.assert_called_once_with(environment=settings.environment, log_level=settings.log_level)

        OrchestratorFactory.reset()
        assert OrchestratorFactory._instance is None
