"""Orchestration module for deploying MCP server containers."""

from .base import ContainerInspection, ContainerRuntime
from .docker import DockerRuntime

__all__ = [
    "ContainerInspection",
    "ContainerRuntime",
    "DockerRuntime",
]
