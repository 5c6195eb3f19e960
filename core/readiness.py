"""
Readiness state for the gateway

Tracks the system phase and the state of each upstream role, and notifies
subscribers on every phase change. Reads are cheap: health probes call
snapshot() on every request.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Iterable

from config.models import UpstreamRole
from core.debug_logger import DebugLogger
from core.exception_handling import InvalidTransition

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    BINDING = "binding"
    SOCKET_BOUND = "socket_bound"
    INITIALIZING = "initializing"
    READY = "ready"
    DEGRADED = "degraded"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class UpstreamState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    Phase.BINDING: {Phase.SOCKET_BOUND, Phase.STOPPED},
    Phase.SOCKET_BOUND: {Phase.INITIALIZING, Phase.SHUTTING_DOWN},
    Phase.INITIALIZING: {Phase.READY, Phase.DEGRADED, Phase.SHUTTING_DOWN},
    Phase.READY: {Phase.DEGRADED, Phase.SHUTTING_DOWN},
    Phase.DEGRADED: {Phase.READY, Phase.SHUTTING_DOWN},
    Phase.SHUTTING_DOWN: {Phase.STOPPED},
    Phase.STOPPED: set(),
}

# Phases in which upstream events recompute the phase
_LIVE_PHASES = {Phase.INITIALIZING, Phase.READY, Phase.DEGRADED}

PhaseListener = Callable[[Phase, Phase], None]


@dataclass
class ReadinessSnapshot:
    phase: Phase
    ready: bool
    upstreams: Dict[str, str]
    uptime_seconds: float
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict:
        return {
            "phase": self.phase.value,
            "ready": self.ready,
            "upstreams": dict(self.upstreams),
            "uptime_seconds": self.uptime_seconds,
            "timestamp": self.timestamp,
        }


class ReadinessState:
    """
    Observable system phase plus per-role upstream state.

    Mutated only from the event loop thread; listeners run synchronously
    inside the mutating call and must not block.
    """

    def __init__(self, required_roles: Optional[Iterable[UpstreamRole]] = None):
        self._phase = Phase.BINDING
        self._upstreams: Dict[UpstreamRole, UpstreamState] = {}
        self._required = set(required_roles or ())
        self._listeners: List[PhaseListener] = []
        self._started = time.monotonic()
        self.debug = DebugLogger("readiness")

    @property
    def phase(self) -> Phase:
        return self._phase

    def transition(self, new_phase: Phase) -> None:
        """Move to `new_phase`. Re-entering the current phase is a no-op."""
        current = self._phase
        if new_phase == current:
            return
        if new_phase not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransition(current.value, new_phase.value)

        self._phase = new_phase
        logger.info(f"READINESS: phase {current.value} -> {new_phase.value}")
        self.debug.log_state("phase", {"from": current.value, "to": new_phase.value})
        self._notify(current, new_phase)

    def update_upstream(self, role: UpstreamRole, state: UpstreamState) -> None:
        """Record an upstream state change and recompute the phase"""
        previous = self._upstreams.get(role)
        self._upstreams[role] = state
        if previous != state:
            logger.debug(f"READINESS: upstream {role.value} {previous.value if previous else None} -> {state.value}")
        self._recompute()

    def report_crash(self, role: UpstreamRole, exit_code: Optional[int]) -> None:
        """Record a crashed upstream"""
        logger.warning(f"READINESS: {role.value} upstream crashed (exit code {exit_code})")
        self.update_upstream(role, UpstreamState.EXITED)

    def begin_initializing(self) -> None:
        """Enter INITIALIZING and settle immediately when there is nothing to wait for"""
        self.transition(Phase.INITIALIZING)
        self._recompute()

    def _recompute(self) -> None:
        if self._phase not in _LIVE_PHASES:
            return

        required_states = [self._upstreams.get(role) for role in self._required]
        if any(state in (UpstreamState.EXITED, UpstreamState.FAILED) for state in required_states):
            target = Phase.DEGRADED
        elif all(state == UpstreamState.RUNNING for state in required_states):
            target = Phase.READY
        else:
            # Still starting: INITIALIZING stays, DEGRADED persists until recovery
            return

        self.transition(target)

    def snapshot(self) -> ReadinessSnapshot:
        return ReadinessSnapshot(
            phase=self._phase,
            ready=self._phase == Phase.READY,
            upstreams={role.value: state.value for role, state in self._upstreams.items()},
            uptime_seconds=round(time.monotonic() - self._started, 3),
        )

    def subscribe(self, listener: PhaseListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: PhaseListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, old: Phase, new: Phase) -> None:
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception as e:
                logger.error(f"READINESS: listener {getattr(listener, '__name__', listener)!r} failed: {e}",
                             exc_info=True)

    async def wait_for(self, phase: Phase, timeout: Optional[float] = None) -> bool:
        """
        Wait until the phase equals `phase`.

        Returns False on timeout instead of raising.
        """
        if self._phase == phase:
            return True

        loop = asyncio.get_running_loop()
        reached = loop.create_future()

        def listener(_old: Phase, new: Phase) -> None:
            if new == phase and not reached.done():
                reached.set_result(True)

        self.subscribe(listener)
        try:
            await asyncio.wait_for(reached, timeout)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            self.unsubscribe(listener)
