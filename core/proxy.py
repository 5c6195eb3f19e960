"""
Reverse proxy for the backend and frontend upstreams

HTTP requests are forwarded with httpx and streamed back without buffering.
WebSocket upgrades are bridged to the upstream with the websockets client.
"""

import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import httpx
from fastapi import Request, WebSocket
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.websockets import WebSocketDisconnect, WebSocketState
from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from config.models import ProxyConfig, UpstreamRole, UpstreamTarget
from core.exception_handling import (
    ProxyConnectionRefused, ProxyError, ProxyTimeout, UpstreamUnavailable
)

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

# Handshake headers the websockets client generates itself
WEBSOCKET_HANDSHAKE_HEADERS = frozenset({
    "host",
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
    "sec-websocket-accept",
})

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, PATCH, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}

WEBSOCKET_UPSTREAM_ERROR = 1011

Headers = List[Tuple[bytes, bytes]]


def _connection_tokens(raw_headers: Iterable[Tuple[bytes, bytes]]) -> set:
    """Header names listed in Connection are hop-by-hop for this message"""
    tokens = set()
    for name, value in raw_headers:
        if name.lower() == b"connection":
            tokens.update(t.strip().lower() for t in value.decode("latin-1").split(",") if t.strip())
    return tokens


def filter_headers(raw_headers: Iterable[Tuple[bytes, bytes]], drop: Iterable[str] = ()) -> Headers:
    """Remove hop-by-hop headers plus any names in `drop`, keeping duplicates and order"""
    raw_headers = list(raw_headers)
    excluded = set(HOP_BY_HOP_HEADERS) | _connection_tokens(raw_headers) | {d.lower() for d in drop}
    return [(name, value) for name, value in raw_headers if name.decode("latin-1").lower() not in excluded]


def sendable_close_code(code: Optional[int], abnormal: int = 1001) -> int:
    """1005 and 1006 are reserved and cannot be sent in a close frame"""
    if code in (None, 1005):
        return 1000
    if code == 1006:
        return abnormal
    return code


def cors_preflight_response() -> Response:
    return Response(status_code=200, headers=CORS_HEADERS)


def proxy_error_response(error: ProxyError) -> JSONResponse:
    return JSONResponse(
        {"error": str(error), "role": error.role, "path": error.path},
        status_code=error.status_code,
    )


class ReverseProxy:
    """
    Forwards requests to fixed upstream addresses.

    One httpx.AsyncClient per role is created on first use and closed by
    aclose(). Transports can be injected for tests.
    """

    def __init__(
        self,
        config: ProxyConfig,
        availability: Optional[Callable[[UpstreamRole], bool]] = None,
        transports: Optional[Dict[UpstreamRole, httpx.AsyncBaseTransport]] = None,
    ):
        self.config = config
        self.availability = availability or (lambda _role: True)
        self.transports = transports or {}
        self._clients: Dict[UpstreamRole, httpx.AsyncClient] = {}
        self.timeout = httpx.Timeout(config.timeout, connect=config.connect_timeout)

    def has_target(self, role: UpstreamRole) -> bool:
        return role in self.config.targets

    def target_for(self, role: UpstreamRole, path: str) -> UpstreamTarget:
        target = self.config.targets.get(role)
        if target is None:
            raise UpstreamUnavailable(role.value, path)
        return target

    def _client(self, role: UpstreamRole, target: UpstreamTarget) -> httpx.AsyncClient:
        client = self._clients.get(role)
        if client is None:
            client = httpx.AsyncClient(
                base_url=target.base_url,
                timeout=self.timeout,
                transport=self.transports.get(role),
                follow_redirects=False,
                trust_env=False,
            )
            self._clients[role] = client
        return client

    @staticmethod
    def _upstream_path(scope: dict) -> bytes:
        raw_path = scope.get("raw_path") or scope["path"].encode("utf-8")
        query = scope.get("query_string") or b""
        return raw_path + (b"?" + query if query else b"")

    def _forward_headers(self, request: Request) -> Headers:
        headers = filter_headers(request.headers.raw, drop=("host",))
        client_host = request.client.host if request.client else ""

        prior = request.headers.get("x-forwarded-for")
        forwarded_for = f"{prior}, {client_host}" if prior and client_host else (prior or client_host)
        headers = [(name, value) for name, value in headers
                   if name.lower() not in (b"x-forwarded-for", b"x-forwarded-proto", b"x-forwarded-host")]
        if forwarded_for:
            headers.append((b"x-forwarded-for", forwarded_for.encode("latin-1")))
        headers.append((b"x-forwarded-proto", request.url.scheme.encode("latin-1")))
        if "host" in request.headers:
            headers.append((b"x-forwarded-host", request.headers["host"].encode("latin-1")))
        return headers

    async def forward(self, request: Request, role: UpstreamRole) -> Response:
        """
        Forward `request` to the upstream for `role`.

        Failures never raise: they become 502/504 JSON responses.
        """
        path = request.url.path
        try:
            return await self._forward(request, role, path)
        except ProxyError as e:
            logger.warning(f"PROXY: {role.value} {request.method} {path} failed: {e}")
            return proxy_error_response(e)

    async def _forward(self, request: Request, role: UpstreamRole, path: str) -> Response:
        if not self.availability(role):
            raise UpstreamUnavailable(role.value, path)

        target = self.target_for(role, path)
        client = self._client(role, target)

        has_body = "content-length" in request.headers or "transfer-encoding" in request.headers
        upstream_request = client.build_request(
            request.method,
            httpx.URL(target.base_url).copy_with(raw_path=self._upstream_path(request.scope)),
            headers=self._forward_headers(request),
            content=request.stream() if has_body else None,
        )

        try:
            upstream = await client.send(upstream_request, stream=True)
        except httpx.TimeoutException:
            raise ProxyTimeout(role.value, path)
        except httpx.TransportError as e:
            raise ProxyConnectionRefused(role.value, path, str(e) or type(e).__name__)

        logger.debug(f"PROXY: {role.value} {request.method} {path} -> {upstream.status_code}")

        response = StreamingResponse(self._relay(upstream, role, path), status_code=upstream.status_code)
        response.raw_headers = filter_headers(upstream.headers.raw)
        return response

    async def _relay(self, upstream: httpx.Response, role: UpstreamRole, path: str):
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.TransportError as e:
            # Status line is already sent; the client sees a truncated body
            logger.warning(f"PROXY: {role.value} stream for {path} interrupted: {e}")
        finally:
            await upstream.aclose()

    async def forward_websocket(self, websocket: WebSocket, role: UpstreamRole) -> None:
        """Bridge a WebSocket connection to the upstream for `role`"""
        path = websocket.url.path
        if not self.availability(role) or not self.has_target(role):
            logger.warning(f"PROXY: websocket {path} rejected, {role.value} upstream unavailable")
            await websocket.accept()
            await websocket.close(code=WEBSOCKET_UPSTREAM_ERROR)
            return

        target = self.config.targets[role]
        url = target.websocket_url + self._upstream_path(websocket.scope).decode("latin-1")
        headers = filter_headers(websocket.headers.raw, drop=WEBSOCKET_HANDSHAKE_HEADERS)

        try:
            upstream = await websocket_connect(
                url,
                additional_headers=[(k.decode("latin-1"), v.decode("latin-1")) for k, v in headers],
                subprotocols=websocket.scope.get("subprotocols") or None,
                open_timeout=self.config.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError, InvalidHandshake) as e:
            logger.warning(f"PROXY: websocket {path} to {role.value} failed: {e}")
            await websocket.accept()
            await websocket.close(code=WEBSOCKET_UPSTREAM_ERROR)
            return

        await websocket.accept(subprotocol=upstream.subprotocol)
        logger.debug(f"PROXY: websocket {path} bridged to {url}")

        async def client_to_upstream():
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    await upstream.close(code=sendable_close_code(message.get("code")))
                    return
                if message.get("text") is not None:
                    await upstream.send(message["text"])
                elif message.get("bytes") is not None:
                    await upstream.send(message["bytes"])

        async def upstream_to_client():
            async for data in upstream:
                if isinstance(data, str):
                    await websocket.send_text(data)
                else:
                    await websocket.send_bytes(data)

        pumps = [asyncio.create_task(client_to_upstream()), asyncio.create_task(upstream_to_client())]
        try:
            done, pending = await asyncio.wait(pumps, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                error = task.exception()
                if error is not None and not isinstance(error, (ConnectionClosed, WebSocketDisconnect)):
                    logger.warning(f"PROXY: websocket {path} bridge error: {error}")
        finally:
            await upstream.close()
            if websocket.application_state == WebSocketState.CONNECTED and \
                    websocket.client_state == WebSocketState.CONNECTED:
                close_code = sendable_close_code(upstream.close_code, WEBSOCKET_UPSTREAM_ERROR)
                try:
                    await websocket.close(code=close_code)
                except RuntimeError:
                    # Client already went away
                    pass

    async def aclose(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()
