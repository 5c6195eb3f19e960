"""
Health and readiness endpoints

Probe routes answer 200 from the moment the socket accepts connections,
including while upstreams are starting, crashed or restarting. They read the
readiness snapshot only and never touch the upstreams.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from core.dependencies import get_process_manager, get_readiness, get_supervisor
from core.process_manager import UpstreamProcessManager
from core.readiness import ReadinessState

logger = logging.getLogger(__name__)

router = APIRouter(prefix="", tags=["health"])

PROBE_METHODS = ["GET", "HEAD"]


class ProbeResponse(BaseModel):
    """Response model for health and readiness probes"""
    status: str
    timestamp: str
    phase: str
    ready: bool
    upstreams: Dict[str, str]
    uptime_seconds: float


class StatusResponse(BaseModel):
    """Response model for the detailed status endpoint"""
    timestamp: str
    phase: str
    ready: bool
    listen: Optional[Dict[str, Any]] = None
    signals: Dict[str, Any]
    upstreams: Dict[str, Any]
    static: Dict[str, Any]
    routes: list


def _probe(readiness: ReadinessState, status: str) -> ProbeResponse:
    snapshot = readiness.snapshot()
    return ProbeResponse(
        status=status,
        timestamp=snapshot.timestamp,
        phase=snapshot.phase.value,
        ready=snapshot.ready,
        upstreams=snapshot.upstreams,
        uptime_seconds=snapshot.uptime_seconds,
    )


@router.api_route("/health", methods=PROBE_METHODS, response_model=ProbeResponse)
async def health_check(readiness: ReadinessState = Depends(get_readiness)):
    """Liveness probe"""
    return _probe(readiness, "healthy")


@router.api_route("/ready", methods=PROBE_METHODS, response_model=ProbeResponse)
async def readiness_check(readiness: ReadinessState = Depends(get_readiness)):
    """Same shape as /health; `ready` tells whether all required upstreams run"""
    return _probe(readiness, "ready")


@router.api_route("/healthz", methods=PROBE_METHODS, response_class=PlainTextResponse)
async def healthz():
    return "ok"


@router.api_route("/ping", methods=PROBE_METHODS, response_class=PlainTextResponse)
async def ping():
    return "pong"


@router.get("/status", response_model=StatusResponse)
async def get_status(
    supervisor: Any = Depends(get_supervisor),
    processes: UpstreamProcessManager = Depends(get_process_manager),
):
    """Detailed gateway status: phase, socket, signals, upstream processes"""
    snapshot = supervisor.readiness.snapshot()
    listen_socket = supervisor.lifecycle.listen_socket

    return StatusResponse(
        timestamp=datetime.now(timezone.utc).isoformat(),
        phase=snapshot.phase.value,
        ready=snapshot.ready,
        listen=listen_socket.describe() if listen_socket is not None else None,
        signals=supervisor.signals.describe(),
        upstreams=processes.monitor_health(),
        static=supervisor.static.describe(),
        routes=[
            {"name": rule.name, "kind": rule.kind.value, "pattern": rule.pattern, "target": rule.target.value}
            for rule in supervisor.routes.rules
        ],
    )
