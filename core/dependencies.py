"""
FastAPI dependencies for the gateway routes

Components are reached through app.state.supervisor; nothing is stored at
module level.
"""

import logging
from typing import Any

from fastapi import Depends, HTTPException
from starlette.requests import HTTPConnection

from core.process_manager import UpstreamProcessManager
from core.proxy import ReverseProxy
from core.readiness import ReadinessState
from core.routing import RouteTable
from core.static_assets import StaticAssetServer

logger = logging.getLogger(__name__)


def get_supervisor(connection: HTTPConnection) -> Any:
    """Get the supervisor that owns this application"""
    supervisor = getattr(connection.app.state, "supervisor", None)
    if supervisor is None:
        logger.error("DEPENDENCIES: supervisor not attached to application state")
        raise HTTPException(status_code=503, detail="Gateway not initialized")
    return supervisor


def get_readiness(supervisor: Any = Depends(get_supervisor)) -> ReadinessState:
    return supervisor.readiness


def get_route_table(supervisor: Any = Depends(get_supervisor)) -> RouteTable:
    return supervisor.routes


def get_static_server(supervisor: Any = Depends(get_supervisor)) -> StaticAssetServer:
    return supervisor.static


def get_proxy(supervisor: Any = Depends(get_supervisor)) -> ReverseProxy:
    return supervisor.proxy


def get_process_manager(supervisor: Any = Depends(get_supervisor)) -> UpstreamProcessManager:
    return supervisor.processes
