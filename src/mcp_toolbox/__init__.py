"""Host-local orchestrator for groups of containerized MCP servers."""

__version__ = "0.1.0"
