# orchestration_engine/router/proxy.py
"""
Ingress ASGI application.

Request order:
1. challenge prefix (always served, independent of the route table)
2. HTTP -> HTTPS redirect for domains with an active certificate
3. longest-prefix route match (404 if none)
4. target health gate (503 if the target is not HEALTHY)
5. streaming forward to the upstream

WebSocket upgrades pass the same gates (a rejected handshake is closed with
a close code instead of an HTTP status) and are relayed frame by frame.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Callable, List, Optional, Tuple

import httpx
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response
from starlette.background import BackgroundTask
from starlette.requests import HTTPConnection
from starlette.responses import StreamingResponse
from starlette.websockets import WebSocketState
from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from orchestration_engine.certificates.challenges import ChallengeStore
from orchestration_engine.core.errors import ForwardingFailure
from orchestration_engine.core.models import RouteRule
from orchestration_engine.router.config import ConfigStore, RouterConfig

logger = logging.getLogger(__name__)


PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

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

# Generated again by the upstream handshake
WEBSOCKET_HANDSHAKE_HEADERS = frozenset({
    "host",
    "sec-websocket-accept",
    "sec-websocket-extensions",
    "sec-websocket-key",
    "sec-websocket-protocol",
    "sec-websocket-version",
})

# Close codes for rejected or failed upgrades
WS_POLICY_VIOLATION = 1008
WS_TRY_AGAIN_LATER = 1013
WS_BAD_GATEWAY = 1014


def _request_host(request: HTTPConnection) -> str:
    host = request.headers.get("host", "")
    if host.startswith("["):
        # IPv6 literal
        return host.split("]")[0] + "]"
    return host.split(":")[0].lower()


def _connection_tokens(headers) -> set:
    value = headers.get("connection", "")
    return {token.strip().lower() for token in value.split(",") if token.strip()}


def _has_body(request: Request) -> bool:
    if "transfer-encoding" in request.headers:
        return True
    try:
        return int(request.headers.get("content-length", "0")) > 0
    except ValueError:
        return True


# ============================================
# FORWARDER
# ============================================

class UpstreamForwarder:
    """Streams requests to upstream services with httpx, and WebSocket sessions with websockets."""

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        connect: Optional[Callable] = None,
    ):
        self._client = httpx.AsyncClient(transport=transport, follow_redirects=False, timeout=None)
        self._connect = connect or websocket_connect

    async def aclose(self) -> None:
        await self._client.aclose()

    def build_headers(self, request: HTTPConnection, rule: RouteRule, upstream_host: str) -> List[Tuple[str, str]]:
        """Headers for the upstream request."""
        drop = HOP_BY_HOP_HEADERS | _connection_tokens(request.headers) | {"host"}
        drop |= set(rule.headers.remove)

        headers = [
            (name, value)
            for name, value in request.headers.items()
            if name.lower() not in drop
        ]

        original_host = request.headers.get("host", "")
        client_ip = request.client.host if request.client else ""

        forwarded_for = request.headers.get("x-forwarded-for")
        forwarded_for = f"{forwarded_for}, {client_ip}" if forwarded_for else client_ip

        overrides = {
            "host": original_host if rule.preserve_host and original_host else upstream_host,
            "x-forwarded-for": forwarded_for,
            "x-forwarded-proto": {"ws": "http", "wss": "https"}.get(request.url.scheme, request.url.scheme),
            "x-forwarded-host": original_host,
            "x-real-ip": client_ip,
        }
        for name, value in rule.headers.set.items():
            overrides[name.lower()] = value

        headers = [(n, v) for n, v in headers if n.lower() not in overrides]
        headers.extend(overrides.items())
        return headers

    async def forward(self, request: Request, config: RouterConfig, rule: RouteRule) -> Response:
        """
        Forward request to the rule's upstream and stream the response back.

        Raises:
            ForwardingFailure: 502 on connection errors, 504 on timeouts
        """
        address, port = config.upstream(rule)
        upstream_host = f"{address}:{port}"

        url = f"http://{upstream_host}{rule.upstream_path(request.url.path)}"
        if request.url.query:
            url = f"{url}?{request.url.query}"

        headers = self.build_headers(request, rule, upstream_host)
        has_body = _has_body(request)
        attempts = 1 if has_body else 1 + rule.retries
        timeout = httpx.Timeout(rule.timeout_seconds)

        upstream_response = None
        for attempt in range(1, attempts + 1):
            upstream_request = self._client.build_request(
                request.method,
                url,
                headers=headers,
                content=request.stream() if has_body else None,
                timeout=timeout,
            )
            try:
                upstream_response = await self._client.send(upstream_request, stream=True)
                break
            except httpx.ConnectError as e:
                if attempt < attempts:
                    logger.warning(
                        f"[router] Connect to {rule.service} failed, retrying "
                        f"({attempt}/{attempts - 1}): {e}"
                    )
                    continue
                raise ForwardingFailure(f"Upstream {rule.service} unreachable: {e}", status_code=502) from e
            except httpx.TimeoutException as e:
                raise ForwardingFailure(f"Upstream {rule.service} timed out", status_code=504) from e
            except httpx.HTTPError as e:
                raise ForwardingFailure(f"Upstream {rule.service} error: {e}", status_code=502) from e

        drop = HOP_BY_HOP_HEADERS | _connection_tokens(upstream_response.headers)
        response = StreamingResponse(
            self._relay(upstream_response, rule),
            status_code=upstream_response.status_code,
            background=BackgroundTask(upstream_response.aclose),
        )
        response.raw_headers = [
            (name.encode("latin-1"), value.encode("latin-1"))
            for name, value in upstream_response.headers.multi_items()
            if name.lower() not in drop
        ]
        return response

    async def _relay(self, upstream_response: httpx.Response, rule: RouteRule):
        try:
            async for chunk in upstream_response.aiter_raw():
                yield chunk
        except httpx.HTTPError as e:
            # Headers are already sent; all we can do is cut the body short
            logger.warning(f"[router] Upstream {rule.service} broke mid-stream: {e}")

    # -------------------------
    # WEBSOCKET
    # -------------------------

    async def relay_websocket(self, websocket: WebSocket, config: RouterConfig, rule: RouteRule) -> None:
        """
        Open the upstream session, accept the client and pump frames both ways
        until either side closes.

        Raises:
            ForwardingFailure: upstream handshake failed (before the client is accepted)
        """
        address, port = config.upstream(rule)
        upstream_host = f"{address}:{port}"

        url = f"ws://{upstream_host}{rule.upstream_path(websocket.url.path)}"
        if websocket.url.query:
            url = f"{url}?{websocket.url.query}"

        headers = [
            (name, value)
            for name, value in self.build_headers(websocket, rule, upstream_host)
            if name.lower() not in WEBSOCKET_HANDSHAKE_HEADERS
        ]

        try:
            upstream = await self._connect(
                url,
                additional_headers=headers,
                subprotocols=websocket.scope.get("subprotocols") or None,
                open_timeout=rule.timeout_seconds,
                user_agent_header=None,
                max_size=None,
            )
        except asyncio.TimeoutError as e:
            raise ForwardingFailure(f"Upstream {rule.service} timed out", status_code=504) from e
        except (OSError, WebSocketException) as e:
            raise ForwardingFailure(f"Upstream {rule.service} unreachable: {e}", status_code=502) from e

        await websocket.accept(subprotocol=upstream.subprotocol)
        logger.debug(f"[router] WebSocket {websocket.url.path} -> {url}")

        pumps = [
            asyncio.create_task(self._client_to_upstream(websocket, upstream)),
            asyncio.create_task(self._upstream_to_client(websocket, upstream, rule)),
        ]
        try:
            await asyncio.wait(pumps, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pump in pumps:
                pump.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
            await upstream.close()

    async def _client_to_upstream(self, websocket: WebSocket, upstream) -> None:
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    await upstream.close(code=message.get("code", 1000))
                    return
                if message.get("text") is not None:
                    await upstream.send(message["text"])
                elif message.get("bytes") is not None:
                    await upstream.send(message["bytes"])
        except ConnectionClosed:
            return

    async def _upstream_to_client(self, websocket: WebSocket, upstream, rule: RouteRule) -> None:
        try:
            async for message in upstream:
                if isinstance(message, str):
                    await websocket.send_text(message)
                else:
                    await websocket.send_bytes(message)
        except ConnectionClosed as e:
            logger.debug(f"[router] Upstream {rule.service} closed the WebSocket: {e}")
        except WebSocketDisconnect:
            return

        if (
            websocket.client_state == WebSocketState.CONNECTED
            and websocket.application_state == WebSocketState.CONNECTED
        ):
            await websocket.close(code=upstream.close_code or 1000)


# ============================================
# APPLICATION
# ============================================

def create_proxy_app(
    store: ConfigStore,
    is_healthy: Callable[[str], bool],
    challenges: ChallengeStore,
    *,
    challenge_prefix: str = "/.well-known/acme-challenge/",
    https_port: Optional[int] = 443,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    websocket_connector: Optional[Callable] = None,
) -> FastAPI:
    """
    Build the ingress app.

    Args:
        store: Router configuration store
        is_healthy: Health lookup by service name
        challenges: Challenge tokens served under challenge_prefix
        challenge_prefix: Path prefix of the ownership challenge route
        https_port: Port used in HTTPS redirects (None disables redirects)
        transport: httpx transport override (tests)
        websocket_connector: Replacement for websockets.asyncio.client.connect (tests)
    """
    forwarder = UpstreamForwarder(transport=transport, connect=websocket_connector)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await forwarder.aclose()

    app = FastAPI(
        title="Orchestrator Ingress",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.forwarder = forwarder

    @app.api_route("/{full_path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def ingress(request: Request, full_path: str):
        # One snapshot per request; a concurrent swap does not affect it
        config = store.current()
        path = request.url.path

        if path.startswith(challenge_prefix):
            token = path[len(challenge_prefix):]
            value = challenges.lookup(token)
            if value is None:
                return PlainTextResponse("Not Found", status_code=404)
            return PlainTextResponse(value)

        host = _request_host(request)
        if https_port and request.url.scheme == "http" and config.should_redirect(host):
            netloc = host if https_port == 443 else f"{host}:{https_port}"
            target = f"https://{netloc}{path}"
            if request.url.query:
                target = f"{target}?{request.url.query}"
            return RedirectResponse(target, status_code=308)

        rule = config.match(path)
        if rule is None:
            return JSONResponse({"detail": f"No route for {path}"}, status_code=404)

        if not is_healthy(rule.service):
            logger.debug(f"[router] {rule.service} not healthy, rejecting {path}")
            return JSONResponse({"detail": f"Service {rule.service} unavailable"}, status_code=503)

        try:
            return await forwarder.forward(request, config, rule)
        except ForwardingFailure as e:
            logger.warning(f"[router] {request.method} {path} -> {rule.service}: {e}")
            return JSONResponse({"detail": str(e)}, status_code=e.status_code)

    @app.websocket("/{full_path:path}")
    async def ingress_websocket(websocket: WebSocket, full_path: str):
        config = store.current()
        path = websocket.url.path

        if path.startswith(challenge_prefix):
            await websocket.close(code=WS_POLICY_VIOLATION)
            return

        # Plain ws:// is not served for domains with an active certificate
        host = _request_host(websocket)
        if https_port and websocket.url.scheme == "ws" and config.should_redirect(host):
            logger.debug(f"[router] Rejecting ws:// upgrade for {host}, wss:// required")
            await websocket.close(code=WS_POLICY_VIOLATION)
            return

        rule = config.match(path)
        if rule is None:
            await websocket.close(code=WS_POLICY_VIOLATION)
            return

        if not is_healthy(rule.service):
            logger.debug(f"[router] {rule.service} not healthy, rejecting WebSocket {path}")
            await websocket.close(code=WS_TRY_AGAIN_LATER)
            return

        try:
            await forwarder.relay_websocket(websocket, config, rule)
        except ForwardingFailure as e:
            logger.warning(f"[router] WebSocket {path} -> {rule.service}: {e}")
            await websocket.close(code=WS_BAD_GATEWAY)

    return app
