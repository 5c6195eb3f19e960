"""
Gateway supervisor

Builds every gateway component from one SupervisorConfig and runs the
lifecycle: bind the public port, serve probes and static assets at once,
then launch the configured upstreams in the background. Signal and fatal
upstream callbacks are mapped to process exit codes here.
"""

from typing import Any, Dict, Optional

import httpx

from api.server import create_app
from config.models import SupervisorConfig, UpstreamRole
from core.exception_handling import RestartLimitExceeded
from core.lifecycle import ExitCode, LifecycleController
from core.logging_config import get_logger
from core.process_manager import UpstreamProcessManager
from core.proxy import ReverseProxy
from core.readiness import ReadinessState
from core.routing import RouteTable
from core.signal_handler import SignalController
from core.static_assets import StaticAssetServer

logger = get_logger(__name__)


class Supervisor:
    """
    Composition root: wires readiness, process manager, route table, proxy,
    static server, signal policy and lifecycle for one gateway process.
    """

    def __init__(
        self,
        config: SupervisorConfig,
        transports: Optional[Dict[UpstreamRole, httpx.AsyncBaseTransport]] = None,
    ):
        self.config = config
        self.readiness = ReadinessState(config.required_roles)
        self.processes = UpstreamProcessManager(
            readiness=self.readiness,
            restart_policy=config.restart,
            on_fatal=self._on_fatal,
        )
        self.static = StaticAssetServer(config.static, config.proxy.api_prefix)
        # Targets are fixed configuration, so the table is final before the bind
        self.routes = RouteTable.build(
            api_prefix=config.proxy.api_prefix,
            frontend_enabled=UpstreamRole.FRONTEND in config.proxy.targets,
            static_exists=self.static.exists,
        )
        self.proxy = ReverseProxy(config.proxy, availability=self.processes.is_available, transports=transports)
        self.signals = SignalController(config.signals, on_shutdown=self._on_shutdown_signal)
        self.app = create_app(self)
        self.lifecycle = LifecycleController(
            server_config=config.server,
            app=self.app,
            readiness=self.readiness,
            processes=self.processes,
            signals=self.signals,
            access_log=config.debug,
        )

    def _on_shutdown_signal(self, reason: str) -> None:
        self.lifecycle.request_shutdown(reason, ExitCode.OK)

    def _on_fatal(self, error: RestartLimitExceeded) -> None:
        logger.critical(f"SUPERVISOR: fatal upstream failure: {error}")
        self.lifecycle.request_shutdown(str(error), ExitCode.RESTART_LIMIT)

    async def initialize(self) -> None:
        """Launch the configured upstreams. Runs after the socket is serving."""
        if not self.config.upstreams:
            logger.info("SUPERVISOR: no upstreams configured, serving static assets and proxy targets only")
            return
        await self.processes.launch_all(self.config.upstreams)

    async def run(self) -> int:
        logger.info(
            f"SUPERVISOR: starting on {self.config.server.host}:{self.config.server.port} "
            f"(asset root {self.static.root}, api prefix {self.config.proxy.api_prefix})"
        )
        logger.debug(f"SUPERVISOR: {self.describe()}")
        return await self.lifecycle.run(self.initialize)

    async def shutdown(self, reason: str = "requested", exit_code: int = ExitCode.OK) -> None:
        await self.lifecycle.shutdown(reason, exit_code)

    def describe(self) -> Dict[str, Any]:
        return {
            "phase": self.readiness.phase.value,
            "routes": [rule.name for rule in self.routes.rules],
            "targets": {role.value: target.base_url for role, target in self.config.proxy.targets.items()},
            "upstreams": [spec.role.value for spec in self.config.upstreams],
        }
