"""
Metagraph Watchdog Error Hierarchy

Unified exception hierarchy for consistent error handling across the watchdog.
All custom exceptions inherit from WatchdogError for easy catching and filtering.

Usage:
    from metagraph_watchdog.errors import SSHError, GenesisNotReadyError

    try:
        await remote.docker_control(ip, "start", "ml0-0")
    except SSHError as e:
        logger.warning(f"Remote command failed: {e.message}, host: {e.context.get('host')}")
"""

from typing import Any

__all__ = [
    "CacheBackendError",
    "ClusterError",
    "ConfigurationError",
    "GenesisNotReadyError",
    "HealthSourceError",
    # Infrastructure errors
    "InfrastructureError",
    "NodeQueryError",
    "RestartError",
    # Retry/recovery errors
    "RetryableError",
    "SSHError",
    # Validation errors
    "ValidationError",
    # Base error
    "WatchdogError",
]


class WatchdogError(Exception):
    """Base exception for all watchdog errors.

    Attributes:
        code: Machine-readable error code for categorization
        message: Human-readable error description
        context: Additional context for debugging
    """
    code: str = "WATCHDOG_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"[{self.code}] {self.message} ({ctx})"
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
        }


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(WatchdogError):
    """Base class for validation errors."""
    code: str = "VALIDATION_ERROR"


class ConfigurationError(ValidationError):
    """Invalid configuration.

    Raised while loading or validating the watchdog configuration. This is
    the only error that is allowed to terminate the process at startup.
    """
    code: str = "CONFIGURATION_ERROR"

    def __init__(
        self,
        message: str,
        field: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        if field:
            self.context["field"] = field


# =============================================================================
# Infrastructure Errors
# =============================================================================


class InfrastructureError(WatchdogError):
    """Base class for infrastructure-related errors."""
    code: str = "INFRASTRUCTURE_ERROR"


class HealthSourceError(InfrastructureError):
    """A health data source could not produce usable data."""
    code: str = "HEALTH_SOURCE_ERROR"


class CacheBackendError(HealthSourceError):
    """The cached health store (Redis) is unreachable or returned garbage."""
    code: str = "CACHE_BACKEND_ERROR"


class ClusterError(InfrastructureError):
    """Error in metagraph cluster operations."""
    code: str = "CLUSTER_ERROR"


class RestartError(ClusterError):
    """A restart procedure could not be completed.

    Attributes:
        layer: Layer the procedure was operating on
        node_ip: Node the failing step targeted, if any
    """
    code: str = "RESTART_ERROR"

    def __init__(
        self,
        message: str,
        layer: str | None = None,
        node_ip: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        self.layer = layer
        self.node_ip = node_ip
        if layer:
            self.context["layer"] = layer
        if node_ip:
            self.context["node_ip"] = node_ip


class GenesisNotReadyError(RestartError):
    """Genesis node did not reach Ready within the allotted time."""
    code: str = "GENESIS_NOT_READY"


# =============================================================================
# Retry and Recovery Errors
# =============================================================================


class RetryableError(WatchdogError):
    """Error that can be retried (network issues, transient failures).

    Use this for errors where a retry may succeed, such as:
    - Network timeouts
    - SSH connection drops
    - Temporary node unavailability
    """
    code: str = "RETRYABLE_ERROR"


class SSHError(RetryableError):
    """SSH connection or command execution error.

    Raised when SSH commands fail, time out or connections drop.
    """
    code: str = "SSH_ERROR"

    def __init__(
        self,
        message: str,
        host: str | None = None,
        exit_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        if host:
            self.context["host"] = host
        if exit_code is not None:
            self.context["exit_code"] = exit_code


class NodeQueryError(RetryableError):
    """A node HTTP endpoint could not be queried."""
    code: str = "NODE_QUERY_ERROR"

    def __init__(
        self,
        message: str,
        host: str | None = None,
        port: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        if host:
            self.context["host"] = host
        if port is not None:
            self.context["port"] = port
