"""
Upstream process manager

Spawns the frontend and backend child processes, republishes their output
through logging, tracks their state and applies the restart policy.
"""

import asyncio
import logging
import os
import re
import signal
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

import psutil

from config.models import RestartPolicy, UpstreamRole, UpstreamSpec
from core.debug_logger import DebugLogger
from core.exception_handling import RestartLimitExceeded, UpstreamCrashed, UpstreamLaunchError
from core.readiness import ReadinessState, UpstreamState

logger = logging.getLogger(__name__)

RECENT_OUTPUT_LINES = 50
KILL_WAIT_SECONDS = 5.0
OUTPUT_DRAIN_SECONDS = 1.0

FatalCallback = Callable[[RestartLimitExceeded], None]


@dataclass
class UpstreamProcess:
    """Runtime record of one supervised child process"""
    role: UpstreamRole
    spec: UpstreamSpec
    state: UpstreamState = UpstreamState.STARTING
    process: Optional[asyncio.subprocess.Process] = None
    pid: Optional[int] = None
    exit_code: Optional[int] = None
    started_at: Optional[float] = None
    restart_count: int = 0
    stop_requested: bool = False
    crashed: bool = False
    recent_output: Deque[str] = field(default_factory=lambda: deque(maxlen=RECENT_OUTPUT_LINES))
    tasks: List[asyncio.Task] = field(default_factory=list, repr=False)
    ready_timer: Optional[asyncio.Task] = field(default=None, repr=False)
    exit_task: Optional[asyncio.Task] = field(default=None, repr=False)
    restart_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def is_alive(self) -> bool:
        return self.process is not None and self.process.returncode is None

    @property
    def uptime_seconds(self) -> float:
        if self.started_at is None or not self.is_alive:
            return 0.0
        return round(time.monotonic() - self.started_at, 2)


class ProcessManagerInterface(ABC):
    """Abstract interface for upstream process management"""

    @abstractmethod
    async def launch(self, spec: UpstreamSpec) -> UpstreamProcess:
        """Spawn the child process described by `spec`"""
        pass

    @abstractmethod
    async def terminate(self, role: UpstreamRole, grace: float = 5.0) -> bool:
        """Stop a child gracefully, force killing after `grace` seconds"""
        pass

    @abstractmethod
    def monitor_health(self) -> Dict[str, Any]:
        """Get health information for all managed processes"""
        pass


class UpstreamProcessManager(ProcessManagerInterface):
    """
    Owns the role -> UpstreamProcess mapping.

    All methods run on the event loop. Output of each child is drained by its
    own tasks so a chatty child can never block the supervisor.
    """

    def __init__(
        self,
        readiness: Optional[ReadinessState] = None,
        restart_policy: Optional[RestartPolicy] = None,
        on_fatal: Optional[FatalCallback] = None,
    ):
        self.readiness = readiness
        self.restart_policy = restart_policy or RestartPolicy()
        self.on_fatal = on_fatal
        self.upstreams: Dict[UpstreamRole, UpstreamProcess] = {}
        self._closing = False
        self.debug = DebugLogger("process_manager")

        self.debug.log_state("process_manager_init", {
            'initialized_at': datetime.now(timezone.utc).isoformat(),
            'restart_enabled': self.restart_policy.enabled,
            'max_retries': self.restart_policy.max_retries,
        })

    def get(self, role: UpstreamRole) -> Optional[UpstreamProcess]:
        return self.upstreams.get(role)

    def is_available(self, role: UpstreamRole) -> bool:
        """False only when a managed upstream of this role is known to be down"""
        record = self.upstreams.get(role)
        if record is None:
            return True
        return record.state not in (UpstreamState.EXITED, UpstreamState.FAILED)

    def _set_state(self, record: UpstreamProcess, state: UpstreamState) -> None:
        record.state = state
        if self.readiness is not None:
            self.readiness.update_upstream(record.role, state)

    @DebugLogger("process_manager").trace_function("launch")
    async def launch(self, spec: UpstreamSpec) -> UpstreamProcess:
        """
        Spawn the upstream described by `spec`.

        Raises:
            UpstreamLaunchError: the command could not be started. The record
                is left in FAILED state and a restart is scheduled when the
                restart policy allows it.
        """
        record = self.upstreams.get(spec.role)
        if record is not None and record.is_alive:
            logger.warning(f"UPSTREAM: {spec.role.value} already running (pid {record.pid}), not relaunching")
            return record

        if record is None or record.spec != spec:
            record = UpstreamProcess(role=spec.role, spec=spec)
            self.upstreams[spec.role] = record

        record.stop_requested = False
        await self._spawn(record)
        return record

    def _child_env(self, spec: UpstreamSpec) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(spec.env)
        if spec.inject_port:
            env["PORT"] = str(spec.port)
        return env

    async def _spawn(self, record: UpstreamProcess) -> None:
        spec = record.spec
        record.exit_code = None
        record.crashed = False
        record.process = None
        record.pid = None
        self._set_state(record, UpstreamState.STARTING)

        self.debug.log_state("upstream_launch_attempt", {
            'role': spec.role.value,
            'command': [spec.command, *spec.args],
            'cwd': spec.cwd,
            'env': dict(spec.env),
            'port': spec.port,
            'attempt': record.restart_count,
        })

        try:
            process = await asyncio.create_subprocess_exec(
                spec.command,
                *spec.args,
                cwd=spec.cwd,
                env=self._child_env(spec),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            self._set_state(record, UpstreamState.FAILED)
            logger.error(f"UPSTREAM: failed to launch {spec.role.value} ({spec.command}): {e}")
            self._schedule_restart(record)
            raise UpstreamLaunchError(spec.role.value, str(e))

        record.process = process
        record.pid = process.pid
        record.started_at = time.monotonic()
        logger.info(f"UPSTREAM: launched {spec.role.value} pid={process.pid} "
                    f"command={' '.join([spec.command, *spec.args])} port={spec.port}")

        ready_pattern = re.compile(spec.ready_pattern) if spec.ready_pattern else None
        record.tasks = [
            asyncio.create_task(self._drain(record, process.stdout, "stdout", ready_pattern)),
            asyncio.create_task(self._drain(record, process.stderr, "stderr", ready_pattern)),
        ]
        record.ready_timer = asyncio.create_task(self._startup_timer(record, process))
        record.exit_task = asyncio.create_task(self._watch_exit(record, process))

    def _mark_running(self, record: UpstreamProcess, process: asyncio.subprocess.Process, reason: str) -> None:
        if record.process is not process or record.state != UpstreamState.STARTING:
            return
        if process.returncode is not None:
            return
        self._set_state(record, UpstreamState.RUNNING)
        logger.info(f"UPSTREAM: {record.role.value} is running ({reason})")

    async def _drain(self, record: UpstreamProcess, stream: asyncio.StreamReader, stream_name: str,
                     ready_pattern: Optional[re.Pattern]) -> None:
        role = record.role.value
        output_logger = logging.getLogger(f"upstream.{role}")
        process = record.process

        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line exceeded the stream buffer limit; the overflow was discarded
                output_logger.warning("[output line too long, truncated]",
                                      extra={"upstream_role": role, "stream": stream_name})
                continue
            if not raw:
                break

            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            record.recent_output.append(f"[{stream_name}] {line}")
            output_logger.info(line, extra={"upstream_role": role, "stream": stream_name})

            if ready_pattern is not None and ready_pattern.search(line):
                self._mark_running(record, process, f"matched ready pattern {ready_pattern.pattern!r}")

    async def _startup_timer(self, record: UpstreamProcess, process: asyncio.subprocess.Process) -> None:
        await asyncio.sleep(record.spec.startup_delay)
        self._mark_running(record, process, f"no exit within {record.spec.startup_delay}s")

    async def _watch_exit(self, record: UpstreamProcess, process: asyncio.subprocess.Process) -> None:
        exit_code = await process.wait()
        if record.ready_timer is not None:
            record.ready_timer.cancel()

        readers = [task for task in record.tasks if not task.done()]
        if readers:
            # Let buffered output reach the log before the exit is reported
            _done, pending = await asyncio.wait(readers, timeout=OUTPUT_DRAIN_SECONDS)
            for task in pending:
                task.cancel()

        if record.process is not process:
            return

        record.exit_code = exit_code
        record.process = None
        self._set_state(record, UpstreamState.EXITED)

        if record.stop_requested:
            logger.info(f"UPSTREAM: {record.role.value} stopped (exit code {exit_code})")
            return

        record.crashed = True
        crash = UpstreamCrashed(record.role.value, exit_code)
        logger.error(f"UPSTREAM: {crash}")
        for line in list(record.recent_output)[-5:]:
            logger.error(f"UPSTREAM: {record.role.value} last output: {line}")

        if self.readiness is not None:
            self.readiness.report_crash(record.role, exit_code)

        self._schedule_restart(record)

    def _schedule_restart(self, record: UpstreamProcess) -> None:
        if self._closing or record.stop_requested or not self.restart_policy.enabled:
            return

        if record.restart_count >= self.restart_policy.max_retries:
            error = RestartLimitExceeded(record.role.value, record.restart_count)
            logger.critical(f"UPSTREAM: {error}")
            if self.on_fatal is not None:
                self.on_fatal(error)
            return

        delay = self.restart_policy.backoff_for(record.restart_count)
        record.restart_count += 1
        logger.warning(f"UPSTREAM: restarting {record.role.value} in {delay:.2f}s "
                       f"(attempt {record.restart_count}/{self.restart_policy.max_retries})")
        record.restart_task = asyncio.create_task(self._restart_after(record, delay))

    async def _restart_after(self, record: UpstreamProcess, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._closing or record.stop_requested:
            return
        try:
            await self._spawn(record)
        except UpstreamLaunchError:
            # _spawn already logged and scheduled the next attempt
            pass

    async def launch_all(self, specs: Iterable[UpstreamSpec]) -> Dict[UpstreamRole, UpstreamProcess]:
        """Launch every spec. Launch failures are logged and left to the restart policy."""
        for spec in specs:
            try:
                await self.launch(spec)
            except UpstreamLaunchError as e:
                logger.error(f"UPSTREAM: {e}")
        return dict(self.upstreams)

    def _signal_group(self, process: asyncio.subprocess.Process, sig: int) -> None:
        if hasattr(os, "killpg"):
            # start_new_session makes the child its own process group leader
            os.killpg(process.pid, sig)
        elif sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()

    @DebugLogger("process_manager").trace_function("terminate")
    async def terminate(self, role: UpstreamRole, grace: float = 5.0) -> bool:
        """
        Stop an upstream: SIGTERM to its process group, then SIGKILL after `grace`.

        Returns:
            bool: True if the role was managed and is now stopped
        """
        record = self.upstreams.get(role)
        if record is None:
            return False

        record.stop_requested = True
        if record.restart_task is not None and not record.restart_task.done():
            record.restart_task.cancel()

        process = record.process
        if process is None or process.returncode is not None:
            if record.exit_task is not None:
                await asyncio.gather(record.exit_task, return_exceptions=True)
            return True

        self.debug.log_state("upstream_stop_attempt", {
            'role': role.value,
            'pid': process.pid,
            'grace': grace,
        })

        try:
            self._signal_group(process, signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=grace)
                logger.info(f"UPSTREAM: {role.value} exited after SIGTERM")
            except asyncio.TimeoutError:
                logger.warning(f"UPSTREAM: {role.value} ignored SIGTERM for {grace}s, sending SIGKILL")
                self._signal_group(process, getattr(signal, "SIGKILL", signal.SIGTERM))
                try:
                    await asyncio.wait_for(process.wait(), timeout=KILL_WAIT_SECONDS)
                except asyncio.TimeoutError:
                    logger.error(f"UPSTREAM: {role.value} (pid {process.pid}) could not be killed")
                    return False
        except ProcessLookupError:
            # Exited between the returncode check and the signal
            pass

        if record.exit_task is not None:
            await asyncio.gather(record.exit_task, return_exceptions=True)
        return True

    async def terminate_all(self, grace: float = 5.0) -> Dict[str, bool]:
        """Stop every upstream concurrently and disable further restarts"""
        self._closing = True
        roles = list(self.upstreams.keys())
        if not roles:
            return {}

        self.debug.log_state("terminate_all_start", {
            'roles': [role.value for role in roles],
            'grace': grace,
        })
        results = await asyncio.gather(
            *(self.terminate(role, grace) for role in roles),
            return_exceptions=True,
        )

        summary = {}
        for role, result in zip(roles, results):
            if isinstance(result, BaseException):
                logger.error(f"UPSTREAM: error stopping {role.value}: {result}")
                summary[role.value] = False
            else:
                summary[role.value] = bool(result)
        return summary

    def monitor_health(self) -> Dict[str, Any]:
        """
        Per-upstream health for the status endpoint.

        Returns:
            Dict with running/stopped counts and a per-role entry holding
            state, pid, uptime, exit code, restart count and, for live
            processes, CPU and memory usage.
        """
        health_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'total_processes': len(self.upstreams),
            'running_processes': 0,
            'stopped_processes': 0,
            'processes': {}
        }

        for role, record in self.upstreams.items():
            if record.is_alive:
                health_data['running_processes'] += 1
            else:
                health_data['stopped_processes'] += 1

            process_health = {
                'state': record.state.value,
                'pid': record.pid,
                'port': record.spec.port,
                'uptime_seconds': record.uptime_seconds,
                'command': ' '.join([record.spec.command, *record.spec.args]),
                'exit_code': record.exit_code,
                'restart_count': record.restart_count,
                'crashed': record.crashed,
            }

            if record.is_alive:
                try:
                    proc = psutil.Process(record.pid)
                    process_health.update({
                        'cpu_percent': round(proc.cpu_percent(), 2),
                        'memory_mb': round(proc.memory_info().rss / 1024 / 1024, 2),
                        'memory_percent': round(proc.memory_percent(), 2)
                    })
                except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                    process_health.update({
                        'cpu_percent': 0.0,
                        'memory_mb': 0.0,
                        'memory_percent': 0.0,
                        'monitoring_error': 'Process not accessible for monitoring'
                    })

            health_data['processes'][role.value] = process_health

        return health_data
