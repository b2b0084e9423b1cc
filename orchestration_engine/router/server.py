# orchestration_engine/router/server.py
"""
Ingress server - runs the proxy app on the HTTP and HTTPS listeners.

Both uvicorn servers share one asyncio loop in a background thread. The
HTTPS listener uses a single server context whose SNI callback picks the
domain context from the router snapshot current at handshake time, so a
certificate swap applies to new connections only.
"""

import asyncio
import logging
import ssl
import threading
import time
from typing import List, Optional

import uvicorn

from orchestration_engine.router.config import ConfigStore

logger = logging.getLogger(__name__)


class IngressServer:
    """
    Background uvicorn runner for the ingress app.

    Args:
        app: ASGI app (see router.proxy.create_proxy_app)
        store: Router configuration store used for SNI selection
        host: Bind address
        http_port: Plain HTTP port
        https_port: TLS port (None disables the HTTPS listener)
    """

    def __init__(
        self,
        app,
        store: ConfigStore,
        *,
        host: str = "0.0.0.0",
        http_port: int = 80,
        https_port: Optional[int] = None,
    ):
        self._app = app
        self._store = store
        self._host = host
        self._http_port = http_port
        self._https_port = https_port

        self._servers: List[uvicorn.Server] = []
        self._thread: Optional[threading.Thread] = None

    # ============================================
    # TLS
    # ============================================

    def select_context(self, server_name: Optional[str]) -> Optional[ssl.SSLContext]:
        """
        Context for a TLS handshake, from the current snapshot.

        Clients without SNI get the only bound certificate when exactly one
        domain is bound.
        """
        config = self._store.current()
        if server_name:
            binding = config.binding(server_name)
            return binding.context if binding else None
        if len(config.certificates) == 1:
            return next(iter(config.certificates.values())).context
        return None

    def tls_context(self) -> ssl.SSLContext:
        """Server-side base context that delegates to the bound domain contexts."""
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.minimum_version = ssl.TLSVersion.TLSv1_2

        def sni_callback(ssl_object, server_name, base_context):
            selected = self.select_context(server_name)
            if selected is None:
                logger.debug(f"[ingress] TLS handshake for unbound name {server_name!r}")
                return ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME
            ssl_object.context = selected
            return None

        context.sni_callback = sni_callback
        return context

    # ============================================
    # LIFECYCLE
    # ============================================

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Ingress server already started")

        http_config = uvicorn.Config(
            self._app,
            host=self._host,
            port=self._http_port,
            log_level="warning",
            lifespan="on",
        )
        self._servers = [uvicorn.Server(http_config)]

        if self._https_port:
            https_config = uvicorn.Config(
                self._app,
                host=self._host,
                port=self._https_port,
                log_level="warning",
                lifespan="off",
            )
            https_config.load()
            # Set after load() so uvicorn does not build its own context
            https_config.ssl = self.tls_context()
            self._servers.append(uvicorn.Server(https_config))

        self._thread = threading.Thread(target=self._run, name="ingress", daemon=True)
        self._thread.start()

        logger.info(
            f"[ingress] Listening on http://{self._host}:{self._http_port}"
            + (f" and https://{self._host}:{self._https_port}" if self._https_port else "")
        )

    def wait_started(self, timeout: float = 10.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self._servers and all(s.started for s in self._servers):
                return True
            if self._thread is not None and not self._thread.is_alive():
                return False
            time.sleep(0.05)
        return False

    def stop(self, timeout: float = 10.0) -> None:
        for server in self._servers:
            server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("[ingress] Server did not stop in time")
        logger.info("[ingress] Stopped")

    def _run(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(asyncio.gather(*(s.serve() for s in self._servers)))
        except Exception as e:
            logger.error(f"[ingress] Server crashed: {e}", exc_info=True)
        finally:
            loop.close()
