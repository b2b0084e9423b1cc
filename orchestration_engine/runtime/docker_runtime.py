# orchestration_engine/runtime/docker_runtime.py
"""
Docker service runtime - runs topology services as containers on the local
Docker daemon.
"""

import logging
from typing import Optional, Sequence, Tuple

import docker

from orchestration_engine.core.errors import ServiceRuntimeError
from orchestration_engine.core.models import ServiceSpec
from orchestration_engine.core.timeouts import CallTimeout, call_with_timeout
from orchestration_engine.runtime.base import ServiceHandle, ServiceRuntime

logger = logging.getLogger(__name__)


MANAGED_LABEL = "managed_by"
MANAGED_VALUE = "orchestration_engine"


class DockerServiceRuntime(ServiceRuntime):
    """
    Runtime backed by the docker SDK.

    Containers are attached to one bridge network, "<project>_default" unless
    another is given, with the service address as network alias, so they
    reach each other by service name. Health checks and the proxy dial the
    same names, so the orchestrator itself must be attached to that network.
    The orchestrator owns restarts, so Docker's own restart policy is never set.
    """

    def __init__(
        self,
        client=None,
        *,
        project: str = "",
        network: Optional[str] = None,
        publish_ports: bool = True,
    ):
        if client is None:
            try:
                client = docker.from_env()
                logger.info("✅ Connected to Docker daemon")
            except docker.errors.DockerException as e:
                raise ServiceRuntimeError(f"Failed to connect to Docker: {e}") from e

        self._client = client
        self._project = project
        self._network = network or f"{project or 'orchestrator'}_default"
        self._publish_ports = publish_ports

    # -------------------------
    # START
    # -------------------------

    def start(self, spec: ServiceSpec) -> ServiceHandle:
        container_name = self._container_name(spec.name)

        try:
            image = self._resolve_image(spec)
            self._remove_stale(container_name)

            container_config = {
                "name": container_name,
                "hostname": spec.address,
                "labels": {
                    MANAGED_LABEL: MANAGED_VALUE,
                    "service": spec.name,
                    "profile": spec.profile.value,
                },
            }

            if spec.command:
                container_config["command"] = list(spec.command)

            if spec.environment:
                container_config["environment"] = dict(spec.environment)

            if spec.ports and self._publish_ports:
                container_config["ports"] = {f"{port}/tcp": port for port in spec.ports}

            if spec.volumes:
                container_config["volumes"] = list(spec.volumes)

            self._ensure_network()
            container_config["network"] = self._network
            container_config["networking_config"] = {
                self._network: self._client.api.create_endpoint_config(aliases=[spec.address]),
            }

            logger.info(f"[docker] Creating container {container_name} from {image}")
            container = self._client.containers.create(image, **container_config)
            container.start()
            container.reload()

            logger.info(f"[docker] ✅ Started {container_name} ({container.id[:12]})")

            return ServiceHandle(
                service=spec.name,
                runtime_id=container.id,
                details={"container_name": container_name, "image": image},
            )

        except docker.errors.APIError as e:
            raise ServiceRuntimeError(f"Docker error starting {spec.name}: {e}") from e
        except docker.errors.DockerException as e:
            raise ServiceRuntimeError(f"Failed to start {spec.name}: {e}") from e

    def _resolve_image(self, spec: ServiceSpec) -> str:
        if spec.build:
            tag = f"{self._project or 'orchestrator'}-{spec.name}:latest"
            logger.info(f"[docker] Building image {tag} from {spec.build}")
            try:
                self._client.images.build(path=spec.build, tag=tag, rm=True)
            except docker.errors.BuildError as e:
                raise ServiceRuntimeError(f"Build failed for {spec.name}: {e}") from e
            return tag

        try:
            self._client.images.get(spec.image)
        except docker.errors.ImageNotFound:
            logger.info(f"[docker] Pulling image: {spec.image}")
            try:
                self._client.images.pull(spec.image)
            except docker.errors.NotFound as e:
                raise ServiceRuntimeError(f"Image not found: {spec.image}") from e
        return spec.image

    def _remove_stale(self, container_name: str) -> None:
        try:
            stale = self._client.containers.get(container_name)
        except docker.errors.NotFound:
            return
        logger.warning(f"[docker] Removing stale container {container_name}")
        stale.remove(force=True)

    def _ensure_network(self) -> None:
        try:
            self._client.networks.get(self._network)
        except docker.errors.NotFound:
            logger.info(f"[docker] Creating network {self._network}")
            self._client.networks.create(self._network, driver="bridge")

    @property
    def network(self) -> str:
        return self._network

    def _container_name(self, service: str) -> str:
        return f"{self._project}_{service}" if self._project else service

    # -------------------------
    # STOP / STATUS
    # -------------------------

    def stop(self, handle: ServiceHandle, timeout: float = 10.0) -> None:
        try:
            container = self._client.containers.get(handle.runtime_id)
        except docker.errors.NotFound:
            return

        try:
            if timeout <= 0:
                container.kill()
            else:
                container.stop(timeout=int(max(timeout, 1)))
            container.remove(force=True)
            logger.info(f"[docker] Stopped {handle.service} ({handle.runtime_id[:12]})")
        except docker.errors.NotFound:
            pass
        except docker.errors.APIError as e:
            raise ServiceRuntimeError(f"Failed to stop {handle.service}: {e}") from e

    def exit_status(self, handle: ServiceHandle) -> Optional[int]:
        try:
            container = self._client.containers.get(handle.runtime_id)
            container.reload()
        except docker.errors.NotFound:
            logger.warning(f"[docker] Container for {handle.service} disappeared")
            return -1
        except docker.errors.APIError as e:
            raise ServiceRuntimeError(f"Failed to inspect {handle.service}: {e}") from e

        if container.status in ("exited", "dead"):
            return container.attrs.get("State", {}).get("ExitCode", -1)
        return None

    def exec(
        self,
        handle: ServiceHandle,
        command: Sequence[str],
        timeout: float,
    ) -> Tuple[int, bytes]:
        try:
            container = self._client.containers.get(handle.runtime_id)
            result = call_with_timeout(container.exec_run, timeout, list(command))
        except CallTimeout as e:
            raise ServiceRuntimeError(f"exec in {handle.service} timed out: {e}") from e
        except docker.errors.NotFound as e:
            raise ServiceRuntimeError(f"Container for {handle.service} not found") from e
        except docker.errors.APIError as e:
            raise ServiceRuntimeError(f"exec in {handle.service} failed: {e}") from e
        return result.exit_code, result.output or b""

    def logs(self, handle: ServiceHandle, tail: int = 50) -> str:
        try:
            container = self._client.containers.get(handle.runtime_id)
            return container.logs(tail=tail).decode("utf-8", errors="replace")
        except docker.errors.DockerException:
            return ""

