"""
Supervisor error taxonomy and exception handling decorators

Only BindError and RestartLimitExceeded are fatal to the process. Every other
error is contained where it happens, logged, and the gateway keeps serving.
"""

import asyncio
import functools
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class SupervisorError(Exception):
    """Base exception for supervisor-level errors"""

    def __init__(self, message: str, component: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.component = component
        self.error_code = error_code
        self.timestamp = datetime.now(timezone.utc)


class BindError(SupervisorError):
    """The public listening port could not be bound"""

    def __init__(self, address: str, port: int, reason: str):
        super().__init__(f"Cannot bind {address}:{port}: {reason}", "lifecycle", "BIND_FAILED")
        self.address = address
        self.port = port


class UpstreamLaunchError(SupervisorError):
    """A child process could not be spawned"""

    def __init__(self, role: str, reason: str):
        super().__init__(f"Failed to launch {role} upstream: {reason}", "process_manager", "LAUNCH_FAILED")
        self.role = role


class UpstreamCrashed(SupervisorError):
    """A child process exited without a stop request"""

    def __init__(self, role: str, exit_code: Optional[int]):
        super().__init__(f"{role} upstream exited unexpectedly with code {exit_code}",
                         "process_manager", "UPSTREAM_CRASHED")
        self.role = role
        self.exit_code = exit_code


class RestartLimitExceeded(SupervisorError):
    """A crashed upstream used up its restart budget"""

    def __init__(self, role: str, attempts: int):
        super().__init__(f"{role} upstream exceeded restart limit after {attempts} attempts",
                         "process_manager", "RESTART_LIMIT")
        self.role = role
        self.attempts = attempts


class ProxyError(SupervisorError):
    """Base class for forwarding failures. Carries the HTTP status to answer with."""

    status_code = 502

    def __init__(self, message: str, role: str, path: str, error_code: str):
        super().__init__(message, "proxy", error_code)
        self.role = role
        self.path = path


class ProxyTimeout(ProxyError):
    status_code = 504

    def __init__(self, role: str, path: str):
        super().__init__(f"Timed out forwarding {path} to {role}", role, path, "PROXY_TIMEOUT")


class ProxyConnectionRefused(ProxyError):
    status_code = 502

    def __init__(self, role: str, path: str, reason: str = "connection refused"):
        super().__init__(f"Cannot reach {role} upstream for {path}: {reason}", role, path, "PROXY_CONNECT")


class UpstreamUnavailable(ProxyError):
    status_code = 502

    def __init__(self, role: str, path: str):
        super().__init__(f"{role} upstream is not running; cannot serve {path}", role, path, "UPSTREAM_DOWN")


class AssetNotFound(SupervisorError):
    """Requested static file does not exist under the asset root"""

    def __init__(self, path: str):
        super().__init__(f"Asset not found: {path}", "static_assets", "ASSET_NOT_FOUND")
        self.path = path


class InvalidTransition(SupervisorError):
    """Illegal readiness phase transition"""

    def __init__(self, current: str, requested: str):
        super().__init__(f"Invalid phase transition {current} -> {requested}", "readiness", "INVALID_TRANSITION")
        self.current = current
        self.requested = requested


def handle_service_exceptions(service_name: str):
    """
    Decorator for background coroutines whose failures must not stop the gateway.

    Errors are logged with traceback and the coroutine returns None.
    Cancellation is always propagated.
    """
    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"{service_name} error in {func.__name__}: {e}", exc_info=True)
                return None

        return async_wrapper

    return decorator
