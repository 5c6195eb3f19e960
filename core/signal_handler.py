"""
SignalController - applies the configured signal policy

Each signal in the policy gets one handler on the event loop. Depending on
the policy a signal either starts a graceful shutdown or is logged and
ignored so the gateway keeps serving.
"""

import asyncio
import logging
import signal
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from config.models import SignalAction, SignalPolicy
from core.debug_logger import DebugLogger

logger = logging.getLogger(__name__)

ShutdownCallback = Callable[[str], None]


def signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"SIG{signum}"


class SignalHandlerInterface(ABC):
    """Abstract interface for signal handling"""

    @abstractmethod
    def register_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> bool:
        """Install one handler per signal in the policy"""
        pass

    @abstractmethod
    def dispatch(self, signum: int) -> Optional[SignalAction]:
        """Apply the policy action for a received signal"""
        pass

    @abstractmethod
    def restore(self) -> None:
        """Put back the handlers that were active before registration"""
        pass


class SignalController(SignalHandlerInterface):
    """
    Policy-driven signal handling for the supervisor.

    The policy is fixed at construction. Handlers run on the event loop
    (loop.add_signal_handler); where the loop cannot install them, a plain
    signal.signal handler forwards to the loop thread-safely.
    """

    def __init__(self, policy: SignalPolicy, on_shutdown: ShutdownCallback):
        self.policy = policy
        self.on_shutdown = on_shutdown
        self.debug = DebugLogger("signal_handler")

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._shutdown_requested = False
        self._original_handlers: Dict[int, Any] = {}
        self._loop_handlers: List[int] = []
        self._counts: Counter = Counter()
        self._last_signal: Optional[Dict[str, str]] = None

    @property
    def signal_counts(self) -> Dict[str, int]:
        return dict(self._counts)

    def is_shutdown_requested(self) -> bool:
        return self._shutdown_requested

    @DebugLogger("signal_handler").trace_function("register_handlers")
    def register_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> bool:
        """
        Register handlers for every signal in the policy.

        Returns:
            bool: True if every handler was installed
        """
        self._loop = loop or asyncio.get_running_loop()
        success = True

        for signum, action in self.policy.signals().items():
            name = signal_name(signum)
            try:
                self._original_handlers[signum] = signal.getsignal(signum)
                try:
                    self._loop.add_signal_handler(signum, self.dispatch, signum)
                    self._loop_handlers.append(signum)
                except NotImplementedError:
                    signal.signal(signum, self._forward_to_loop)

                logger.info(f"SIGNAL: {name} -> {action.value}")
                self.debug.log_state("signal_registered", {
                    'signal': name,
                    'signal_number': int(signum),
                    'action': action.value,
                })
            except (OSError, ValueError, RuntimeError) as e:
                self._original_handlers.pop(signum, None)
                success = False
                logger.error(f"SIGNAL: failed to register handler for {name}: {e}")

        return success

    def _forward_to_loop(self, signum: int, _frame: Any) -> None:
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self.dispatch, signum)
        else:
            self.dispatch(signum)

    def dispatch(self, signum: int) -> Optional[SignalAction]:
        """
        Apply the policy action for `signum`.

        graceful-shutdown triggers the shutdown callback once; later shutdown
        signals are logged and dropped. ignore-and-log keeps serving.
        """
        name = signal_name(signum)
        action = self.policy.action_for(signum)
        self._counts[name] += 1
        self._last_signal = {
            'signal': name,
            'received_at': datetime.now(timezone.utc).isoformat(),
        }

        if action is None:
            logger.warning(f"SIGNAL: received {name} with no configured action, ignoring")
            return None

        if action is SignalAction.IGNORE_AND_LOG:
            logger.warning(f"SIGNAL: received {name} (#{self._counts[name]}), ignoring per policy; still serving")
            return action

        if self._shutdown_requested:
            logger.info(f"SIGNAL: received {name} but shutdown is already in progress")
            return action

        self._shutdown_requested = True
        logger.warning(f"SIGNAL: received {name}, starting graceful shutdown")
        self.debug.log_milestone("shutdown_signal", {'signal': name})
        self.on_shutdown(f"signal {name}")
        return action

    def restore(self) -> None:
        """Restore original handlers. Safe to call more than once."""
        for signum, original in list(self._original_handlers.items()):
            try:
                if signum in self._loop_handlers and self._loop is not None and not self._loop.is_closed():
                    self._loop.remove_signal_handler(signum)
                signal.signal(signum, original if original is not None else signal.SIG_DFL)
            except (OSError, ValueError, RuntimeError) as e:
                logger.warning(f"SIGNAL: could not restore handler for {signal_name(signum)}: {e}")
        self._original_handlers.clear()
        self._loop_handlers.clear()

    def describe(self) -> Dict[str, Any]:
        return {
            'policy': {name: action.value for name, action in self.policy.actions.items()},
            'received': self.signal_counts,
            'last_signal': self._last_signal,
            'shutdown_requested': self._shutdown_requested,
        }
