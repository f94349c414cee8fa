"""Exception types raised inside the toolbox.

The orchestrator catches these per instance and records them in the
result's error map; none of them escape ``deploy_group`` / ``remove_group``.
"""

from typing import Optional


class ToolboxError(Exception):
    """Base exception for all toolbox errors."""

    def __init__(self, message: str, instance_name: str = ""):
        self.instance_name = instance_name
        super().__init__(message)


class ConfigurationError(ToolboxError):
    """Invalid server spec or failed pre-creation validation. Never retried."""

    pass


class RuntimeOperationError(ToolboxError):
    """A container runtime call (pull/create/start/stop/remove/inspect) failed."""

    def __init__(
        self,
        message: str,
        operation: str = "",
        handle: Optional[str] = None,
        status_code: int = 0,
        instance_name: str = "",
    ):
        self.operation = operation
        self.handle = handle
        self.status_code = status_code
        super().__init__(message, instance_name)


class CredentialRetrievalError(ToolboxError):
    """The credential issuance service failed or returned no usable credentials."""

    def __init__(self, message: str, account_id: str = "", status_code: int = 0):
        self.account_id = account_id
        self.status_code = status_code
        super().__init__(message)


class HealthCheckError(ToolboxError):
    """A health probe failed. Downgraded to an unhealthy result, never fatal."""

    pass
