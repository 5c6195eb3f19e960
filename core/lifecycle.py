"""
Lifecycle controller for the gateway supervisor

Binds the public port first, installs the signal policy, starts serving and
only then runs the (slow) initializer that launches the upstreams. Shutdown
drains in-flight requests, stops the children and releases the socket.
"""

import asyncio
import contextlib
import logging
import socket
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Awaitable, Callable, Optional

import uvicorn

from config.models import ServerConfig
from core.debug_logger import DebugLogger
from core.exception_handling import BindError, InvalidTransition, handle_service_exceptions
from core.process_manager import UpstreamProcessManager
from core.readiness import Phase, ReadinessState
from core.signal_handler import SignalController

logger = logging.getLogger(__name__)

SERVER_START_TIMEOUT = 10.0
SERVER_STOP_MARGIN = 5.0

Initializer = Callable[[], Awaitable[Any]]


class ExitCode(IntEnum):
    OK = 0
    BIND_FAILURE = 1
    CONFIG_ERROR = 2
    RESTART_LIMIT = 3


@dataclass
class ListenSocket:
    """The bound public listening socket"""
    address: str
    port: int
    sock: socket.socket = field(repr=False)
    bound_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    closed: bool = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.sock.close()
        except OSError as e:
            logger.debug(f"LIFECYCLE: error closing listen socket: {e}")

    def describe(self) -> dict:
        return {
            "address": self.address,
            "port": self.port,
            "bound_at": self.bound_at.isoformat(),
            "closed": self.closed,
        }


class SupervisedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the supervisor"""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class LifecycleController:
    """
    Owns the listening socket, the ASGI server and the shutdown sequence.

    Phases: BINDING -> SOCKET_BOUND -> INITIALIZING -> READY/DEGRADED ->
    SHUTTING_DOWN -> STOPPED. A bind failure goes straight to STOPPED.
    """

    def __init__(
        self,
        server_config: ServerConfig,
        app: Any,
        readiness: ReadinessState,
        processes: UpstreamProcessManager,
        signals: Optional[SignalController] = None,
        access_log: bool = False,
    ):
        self.config = server_config
        self.app = app
        self.readiness = readiness
        self.processes = processes
        self.signals = signals
        self.access_log = access_log
        self.debug = DebugLogger("lifecycle")

        self.listen_socket: Optional[ListenSocket] = None
        self.server: Optional[SupervisedServer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._serve_task: Optional[asyncio.Task] = None
        self._init_task: Optional[asyncio.Task] = None
        self._shutdown_task: Optional[asyncio.Task] = None
        self._shutting_down = False
        self._stopped = asyncio.Event()
        self._exit_code = ExitCode.OK
        self.shutdown_reason: Optional[str] = None

    @property
    def exit_code(self) -> ExitCode:
        return self._exit_code

    def start(self, bind_address: str, port: int) -> ListenSocket:
        """
        Create, bind and listen on a TCP socket. No retries.

        Raises:
            BindError: the address/port is unavailable
        """
        family = socket.AF_INET6 if ":" in bind_address else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((bind_address, port))
            sock.listen(self.config.backlog)
        except OSError as e:
            sock.close()
            raise BindError(bind_address, port, e.strerror or str(e))

        bound_port = sock.getsockname()[1]
        listen_socket = ListenSocket(address=bind_address, port=bound_port, sock=sock)
        logger.info(f"LIFECYCLE: bound {bind_address}:{bound_port}")
        self.debug.log_milestone("socket_bound", listen_socket.describe())
        return listen_socket

    def bind(self) -> ListenSocket:
        """Bind the configured port, retrying exactly once on the fallback port"""
        host, port = self.config.host, self.config.port
        try:
            return self.start(host, port)
        except BindError as e:
            fallback = self.config.alternate_port
            if fallback is None and self.config.bind_retry_next_port and 0 < port < 65535:
                fallback = port + 1
            if fallback is None:
                raise
            logger.warning(f"LIFECYCLE: {e}; retrying once on port {fallback}")
            return self.start(host, fallback)

    def _build_server(self) -> SupervisedServer:
        uvicorn_config = uvicorn.Config(
            self.app,
            log_config=None,
            access_log=self.access_log,
            lifespan="on",
            timeout_graceful_shutdown=self.config.shutdown_grace,
            timeout_keep_alive=5,
            server_header=False,
        )
        return SupervisedServer(uvicorn_config)

    async def run(self, initializer: Optional[Initializer] = None) -> int:
        """
        Bind, install signals, serve, then run `initializer` in the background.

        Returns the process exit code once shutdown has completed.
        """
        self._loop = asyncio.get_running_loop()

        try:
            self.listen_socket = self.bind()
        except BindError as e:
            logger.critical(f"LIFECYCLE: {e}")
            self.readiness.transition(Phase.STOPPED)
            self._exit_code = ExitCode.BIND_FAILURE
            self._stopped.set()
            return int(self._exit_code)

        self.readiness.transition(Phase.SOCKET_BOUND)

        if self.signals is not None:
            self.signals.register_handlers(self._loop)

        self.server = self._build_server()
        self._serve_task = asyncio.create_task(self.server.serve(sockets=[self.listen_socket.sock]))
        self._serve_task.add_done_callback(self._on_server_exit)

        if not await self._wait_until_serving():
            logger.critical("LIFECYCLE: ASGI server failed to start on the bound socket")
            self.request_shutdown("server failed to start", ExitCode.BIND_FAILURE)
            await self._stopped.wait()
            return int(self._exit_code)

        logger.info(f"LIFECYCLE: serving on {self.listen_socket.address}:{self.listen_socket.port}")
        self.readiness.begin_initializing()

        if initializer is not None:
            self._init_task = asyncio.create_task(self._run_initializer(initializer))

        await self._stopped.wait()
        return int(self._exit_code)

    async def _wait_until_serving(self) -> bool:
        deadline = self._loop.time() + SERVER_START_TIMEOUT
        while not self.server.started:
            if self._serve_task.done() or self._loop.time() > deadline:
                return False
            await asyncio.sleep(0.01)
        return True

    @handle_service_exceptions("lifecycle")
    async def _run_initializer(self, initializer: Initializer) -> None:
        self.debug.log_milestone("initializer_started")
        await initializer()
        self.debug.log_milestone("initializer_finished", {"phase": self.readiness.phase.value})

    def _on_server_exit(self, task: asyncio.Task) -> None:
        if self._shutting_down:
            return
        error = None if task.cancelled() else task.exception()
        logger.error(f"LIFECYCLE: ASGI server stopped unexpectedly: {error}")
        self.request_shutdown("server stopped unexpectedly", ExitCode.BIND_FAILURE)

    def request_shutdown(self, reason: str, exit_code: int = ExitCode.OK) -> None:
        """Schedule shutdown from a synchronous context (signal handler, fatal callback)"""
        if self._shutting_down or self._shutdown_task is not None:
            logger.info(f"LIFECYCLE: shutdown already in progress, ignoring request ({reason})")
            return
        loop = self._loop or asyncio.get_running_loop()
        self._shutdown_task = loop.create_task(self.shutdown(reason, exit_code))

    async def shutdown(self, reason: str, exit_code: int = ExitCode.OK) -> None:
        """
        Graceful shutdown. Idempotent: a second call waits for the first.

        Order: stop accepting and drain requests (bounded by the grace
        period), terminate upstreams (SIGTERM, then SIGKILL after the grace
        period), close the socket, enter STOPPED.
        """
        if self._shutting_down:
            await self._stopped.wait()
            return
        self._shutting_down = True
        self.shutdown_reason = reason
        self._exit_code = ExitCode(exit_code)
        grace = self.config.shutdown_grace

        logger.warning(f"LIFECYCLE: shutting down ({reason}), grace period {grace}s")
        try:
            self.readiness.transition(Phase.SHUTTING_DOWN)
        except InvalidTransition as e:
            logger.debug(f"LIFECYCLE: {e}")

        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
            await asyncio.gather(self._init_task, return_exceptions=True)

        await self._stop_server(grace)

        results = await self.processes.terminate_all(grace)
        if results:
            logger.info(f"LIFECYCLE: upstreams stopped: {results}")

        if self.listen_socket is not None:
            self.listen_socket.close()

        try:
            self.readiness.transition(Phase.STOPPED)
        except InvalidTransition as e:
            logger.debug(f"LIFECYCLE: {e}")

        if self.signals is not None:
            self.signals.restore()

        self.debug.log_milestone("stopped", {"reason": reason, "exit_code": int(self._exit_code)})
        logger.info(f"LIFECYCLE: stopped with exit code {int(self._exit_code)}")
        self._stopped.set()

    async def _stop_server(self, grace: float) -> None:
        if self.server is None or self._serve_task is None:
            return
        self.server.should_exit = True
        if self._serve_task.done():
            return

        done, _pending = await asyncio.wait({self._serve_task}, timeout=grace + SERVER_STOP_MARGIN)
        if done:
            return

        logger.warning("LIFECYCLE: server did not stop in time, forcing exit")
        self.server.force_exit = True
        done, _pending = await asyncio.wait({self._serve_task}, timeout=SERVER_STOP_MARGIN)
        if not done:
            self._serve_task.cancel()
            await asyncio.gather(self._serve_task, return_exceptions=True)
