"""
Catch-all request dispatcher

Every request not answered by the health router lands here and is routed
through the route table to static assets or one of the upstreams.
"""

import logging

from fastapi import APIRouter, Depends, Request, WebSocket, status
from fastapi.responses import Response

from core.dependencies import get_proxy, get_route_table, get_static_server
from core.proxy import ReverseProxy, cors_preflight_response
from core.routing import RouteTable, RouteTarget, prefix_matches
from core.static_assets import StaticAssetServer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="", tags=["gateway"])

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


@router.api_route("/{full_path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def dispatch(
    request: Request,
    routes: RouteTable = Depends(get_route_table),
    static_server: StaticAssetServer = Depends(get_static_server),
    proxy: ReverseProxy = Depends(get_proxy),
):
    path = request.url.path
    rule = routes.route(path)

    if rule.target is RouteTarget.HEALTH:
        # Probe paths only accept GET/HEAD; those never reach this router
        return Response(status_code=405, headers={"Allow": "GET, HEAD"})

    if request.method == "OPTIONS" and prefix_matches(proxy.config.api_prefix, path):
        return cors_preflight_response()

    if rule.target is RouteTarget.STATIC:
        return static_server.serve(path, request.method)

    return await proxy.forward(request, rule.target.role)


@router.websocket("/{full_path:path}")
async def dispatch_websocket(
    websocket: WebSocket,
    routes: RouteTable = Depends(get_route_table),
    proxy: ReverseProxy = Depends(get_proxy),
):
    path = websocket.url.path
    rule = routes.route(path)

    if rule.target.role is None:
        logger.info(f"GATEWAY: websocket {path} has no upstream ({rule.target.value}), rejecting")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await proxy.forward_websocket(websocket, rule.target.role)
