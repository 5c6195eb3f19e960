"""
Debug logging infrastructure for the gateway supervisor.

Provides:
- Function entry/exit tracing with timing (sync and async)
- Component state logging
- Milestone logging for lifecycle events

Usage:
    debug = DebugLogger("component_name")

    @debug.trace_function()
    async def my_function():
        debug.log_state("initialization", {"status": "starting"})
"""

import asyncio
import json
import logging
import threading
import time
import traceback
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Dict, Optional


SENSITIVE_KEYS = {'password', 'token', 'key', 'secret', 'auth', 'credential'}


class DebugLogger:
    """
    Debug logger for tracking component behavior.

    State and milestone records carry their payload in ``extra`` so that
    structured handlers can pick them up; the plain formatter shows the
    message only.
    """

    def __init__(self, module_name: str):
        """
        Args:
            module_name: Name of the component being traced
        """
        self.module_name = module_name
        self.logger = logging.getLogger(f"debug.{module_name}")

    def trace_function(self, func_name: Optional[str] = None) -> Callable:
        """
        Decorator to trace function entry/exit with timing and error handling.

        Works for plain functions and coroutine functions.
        """
        def decorator(func: Callable) -> Callable:
            name = func_name or f"{func.__module__}.{func.__name__}"

            if asyncio.iscoroutinefunction(func):
                @wraps(func)
                async def async_wrapper(*args, **kwargs):
                    start_time = time.monotonic()
                    self._log_enter(name, args, kwargs)
                    try:
                        result = await func(*args, **kwargs)
                    except asyncio.CancelledError:
                        raise
                    except Exception as e:
                        self._log_error(name, start_time, e, args, kwargs)
                        raise
                    self._log_exit(name, start_time, result)
                    return result

                return async_wrapper

            @wraps(func)
            def wrapper(*args, **kwargs):
                start_time = time.monotonic()
                self._log_enter(name, args, kwargs)
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    self._log_error(name, start_time, e, args, kwargs)
                    raise
                self._log_exit(name, start_time, result)
                return result

            return wrapper
        return decorator

    def _log_enter(self, name: str, args: tuple, kwargs: dict) -> None:
        self.logger.debug(f"ENTER {name}", extra={
            'function': name,
            'component': self.module_name,
            'args_count': len(args),
            'kwargs_keys': list(kwargs.keys()),
            'timestamp': self._now(),
            'thread_id': self._get_thread_id()
        })

    def _log_exit(self, name: str, start_time: float, result: Any) -> None:
        self.logger.debug(f"EXIT {name} [SUCCESS]", extra={
            'function': name,
            'component': self.module_name,
            'duration_ms': round((time.monotonic() - start_time) * 1000, 2),
            'result_type': type(result).__name__,
            'timestamp': self._now(),
            'thread_id': self._get_thread_id()
        })

    def _log_error(self, name: str, start_time: float, error: Exception, args: tuple, kwargs: dict) -> None:
        self.logger.error(f"EXIT {name} [ERROR] {type(error).__name__}: {error}", extra={
            'function': name,
            'component': self.module_name,
            'duration_ms': round((time.monotonic() - start_time) * 1000, 2),
            'error_type': type(error).__name__,
            'error_message': str(error),
            'traceback': traceback.format_exc(),
            'timestamp': self._now(),
            'thread_id': self._get_thread_id(),
            'args_count': len(args),
            'kwargs_keys': list(kwargs.keys())
        })

    def log_state(self, component: str, state: Dict[str, Any], level: str = "DEBUG") -> None:
        """
        Log component state.

        Args:
            component: Name of the component whose state is being logged
            state: Dictionary containing the current state information
            level: Log level (DEBUG, INFO, WARNING, ERROR)
        """
        log_level = getattr(logging, level.upper(), logging.DEBUG)
        sanitized = self.sanitize_state(state)

        self.logger.log(log_level, f"STATE {component} {json.dumps(sanitized, default=str)}", extra={
            'component': component,
            'state': sanitized,
            'timestamp': self._now(),
            'thread_id': self._get_thread_id()
        })

    def log_milestone(self, milestone: str, data: Optional[Dict[str, Any]] = None) -> None:
        """
        Log a lifecycle milestone (socket bound, upstreams launched, stopped).
        """
        milestone_logger = logging.getLogger("lifecycle.milestones")
        milestone_logger.info(f"MILESTONE {milestone}", extra={
            'milestone': milestone,
            'component': self.module_name,
            'data': self.sanitize_state(data or {}),
            'timestamp': self._now(),
            'thread_id': self._get_thread_id()
        })

    @staticmethod
    def sanitize_state(state: Dict[str, Any]) -> Dict[str, Any]:
        """
        Redact sensitive values and make the state JSON-safe.

        Nested dicts (env overlays) are sanitized recursively.
        """
        sanitized = {}

        for key, value in state.items():
            if any(sensitive in str(key).lower() for sensitive in SENSITIVE_KEYS):
                sanitized[key] = "[REDACTED]"
                continue

            if isinstance(value, dict):
                sanitized[key] = DebugLogger.sanitize_state(value)
                continue

            try:
                json.dumps(value)
                sanitized[key] = value
            except (TypeError, ValueError):
                sanitized[key] = str(type(value).__name__)

        return sanitized

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _get_thread_id() -> str:
        return str(threading.current_thread().ident)
