# orchestration_engine/scheduler/probes.py
"""
Health probes - HTTP, TCP and command checks against a running service.

Every probe is bounded by the health check's timeout_seconds. A timeout
or any error counts as a failed probe, never as a pending one.
"""

import logging
import socket
from typing import Optional

import requests

from orchestration_engine.core.errors import ServiceRuntimeError
from orchestration_engine.core.models import HealthCheckDefinition, HealthCheckType, ServiceSpec
from orchestration_engine.runtime.base import ServiceHandle, ServiceRuntime

logger = logging.getLogger(__name__)


class HealthProber:
    """Runs the configured probe for a service."""

    def __init__(self, runtime: Optional[ServiceRuntime] = None, session: Optional[requests.Session] = None):
        self._runtime = runtime
        self._session = session or requests.Session()

    def probe(self, spec: ServiceSpec, handle: Optional[ServiceHandle]) -> bool:
        """
        Perform one health check.

        Args:
            spec: Service being checked
            handle: Running instance (required for command probes)

        Returns:
            True if healthy, False otherwise
        """
        health_check = spec.health_check
        if health_check is None:
            return True

        try:
            if health_check.type == HealthCheckType.HTTP:
                return self._check_http_health(spec, health_check)
            if health_check.type == HealthCheckType.TCP:
                return self._check_tcp_health(spec, health_check)
            if health_check.type == HealthCheckType.COMMAND:
                return self._check_command_health(spec, handle, health_check)
        except Exception as e:
            logger.warning(f"[{spec.name}] ❌ Health check error: {e}")
            return False

        logger.warning(f"[{spec.name}] Unknown health check type: {health_check.type}")
        return False

    def _check_http_health(self, spec: ServiceSpec, health_check: HealthCheckDefinition) -> bool:
        port = health_check.port or spec.default_port
        url = f"http://{spec.address}:{port}{health_check.path}"

        try:
            response = self._session.get(
                url,
                timeout=health_check.timeout_seconds,
                allow_redirects=False,
            )
        except requests.exceptions.RequestException as e:
            logger.debug(f"[{spec.name}] HTTP check error: {e}")
            return False

        is_healthy = 200 <= response.status_code < 400
        if is_healthy:
            logger.debug(f"[{spec.name}] HTTP check OK: {url} ({response.status_code})")
        else:
            logger.debug(f"[{spec.name}] HTTP check FAIL: {url} returned {response.status_code}")
        return is_healthy

    def _check_tcp_health(self, spec: ServiceSpec, health_check: HealthCheckDefinition) -> bool:
        port = health_check.port or spec.default_port
        try:
            with socket.create_connection((spec.address, port), timeout=health_check.timeout_seconds):
                pass
        except OSError as e:
            logger.debug(f"[{spec.name}] TCP check FAIL: {spec.address}:{port} ({e})")
            return False
        logger.debug(f"[{spec.name}] TCP check OK: {spec.address}:{port}")
        return True

    def _check_command_health(
        self,
        spec: ServiceSpec,
        handle: Optional[ServiceHandle],
        health_check: HealthCheckDefinition,
    ) -> bool:
        if self._runtime is None or handle is None:
            logger.warning(f"[{spec.name}] Command check needs a runtime handle")
            return False

        try:
            exit_code, output = self._runtime.exec(
                handle,
                health_check.command,
                timeout=health_check.timeout_seconds,
            )
        except ServiceRuntimeError as e:
            logger.debug(f"[{spec.name}] Command check error: {e}")
            return False

        if exit_code != 0:
            logger.debug(f"[{spec.name}] Command check FAIL: exit code {exit_code}")
        return exit_code == 0
