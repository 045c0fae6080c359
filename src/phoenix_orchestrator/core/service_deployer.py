from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.models.containers import Container
from docker.types import DeviceRequest

from phoenix_orchestrator.core.errors import ConfigurationError, PermanentError, TransientError
from phoenix_orchestrator.core.models import ContainerSpec

LABEL_KEY = "managed-by"
LABEL_VALUE = "phoenix-orchestrator"
IMAGE_LABEL = "phoenix.image"
DEFAULT_DOCKER_PORT = 2375


def _to_nano_cpus(value) -> Optional[int]:
    if value is None:
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    return int(f * 1_000_000_000) if f > 0 else None


def _normalize_run_resources(resources: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    resources = resources or {}
    out: Dict[str, Any] = {}
    mem = resources.get("mem_limit") or resources.get("memory") or resources.get("memory_limit")
    if mem:
        out["mem_limit"] = mem
    n = _to_nano_cpus(resources.get("cpus") or resources.get("cpu") or resources.get("cpu_limit"))
    if n:
        out["nano_cpus"] = n
    return out


def _normalize_ports(ports: Optional[Dict[str, Any]]) -> Optional[Dict[str, Optional[int]]]:
    if not ports:
        return None
    return {str(cport): (None if not host_port else int(host_port)) for cport, host_port in ports.items()}


def default_client_factory(base_url: str) -> docker.DockerClient:
    return docker.DockerClient(base_url=base_url, timeout=60)


class ServiceDeployer:
    """Runs the declared workload inside a provisioned container.

    Talks to the Docker daemon inside the LXC (``service_parameters.docker_host``,
    default ``tcp://<container ip>:2375``). A managed container already running
    the declared image is reused; otherwise the image is pulled and started
    with restart policy ``unless-stopped`` and one GPU device request for the
    container's assigned accelerators.
    """

    def __init__(
        self,
        logger: logging.Logger,
        *,
        client_factory: Callable[[str], docker.DockerClient] = default_client_factory,
    ) -> None:
        self._logger = logger
        self._client_factory = client_factory

    @staticmethod
    def docker_host(spec: ContainerSpec) -> str:
        host = spec.service_parameters.get("docker_host")
        if host:
            return str(host)
        address = spec.network.address
        if address is None:
            raise ConfigurationError(
                "service_parameters.docker_host is required for DHCP containers", container_id=spec.id
            )
        return f"tcp://{address}:{DEFAULT_DOCKER_PORT}"

    def _connect(self, spec: ContainerSpec) -> docker.DockerClient:
        base_url = self.docker_host(spec)
        try:
            client = self._client_factory(base_url)
            client.ping()
        except DockerException as e:
            raise TransientError(f"Docker daemon at {base_url} unreachable: {e}", container_id=spec.id) from e
        self._logger.debug(f"Connected to Docker daemon at {base_url}")
        return client

    def _login(self, client: docker.DockerClient, spec: ContainerSpec) -> None:
        auth = spec.service_parameters.get("registry_auth")
        if not auth:
            return
        if not isinstance(auth, dict) or not auth.get("username") or not auth.get("password"):
            raise ConfigurationError(
                "service_parameters.registry_auth needs 'username' and 'password'", container_id=spec.id
            )
        try:
            client.login(
                username=auth["username"],
                password=auth["password"],
                registry=auth.get("registry"),
            )
        except APIError as e:
            raise PermanentError(f"Registry login failed: {e.explanation or e}", container_id=spec.id) from e

    @staticmethod
    def _find_managed(client: docker.DockerClient, image: str) -> List[Container]:
        items = client.containers.list(all=True, filters={"label": [f"{LABEL_KEY}={LABEL_VALUE}"]})
        return [c for c in items if (c.labels or {}).get(IMAGE_LABEL) == image]

    def _ensure_image(self, client: docker.DockerClient, spec: ContainerSpec, image: str) -> None:
        try:
            client.images.get(image)
            self._logger.debug(f"Image {image} already present")
            return
        except ImageNotFound:
            pass
        self._logger.info(f"Container {spec.id}: pulling image {image}...")
        try:
            client.images.pull(image)
        except NotFound as e:
            raise PermanentError(f"Image {image} does not exist: {e}", container_id=spec.id) from e
        except APIError as e:
            raise TransientError(f"Failed to pull image {image}: {e}", container_id=spec.id) from e
        self._logger.info(f"Container {spec.id}: pulled image {image}")

    def _device_requests(self, spec: ContainerSpec) -> Optional[List[DeviceRequest]]:
        if not spec.gpu_assignment:
            return None
        return [DeviceRequest(device_ids=[str(i) for i in spec.gpu_assignment], capabilities=[["gpu"]])]

    @staticmethod
    def _summarize(c: Container) -> Dict[str, Any]:
        return {"id": c.id, "name": c.name, "status": c.status, "image": (c.labels or {}).get(IMAGE_LABEL, "")}

    def deploy(self, spec: ContainerSpec) -> Optional[Dict[str, Any]]:
        """Ensure the declared workload is running. Returns None when nothing is declared."""
        params = spec.service_parameters
        image = params.get("image")
        if not image:
            self._logger.info(f"Container {spec.id}: no service image declared, skipping service setup")
            return None

        client = self._connect(spec)
        try:
            self._login(client, spec)

            existing = self._find_managed(client, image)
            if existing:
                pref = next((c for c in existing if c.status == "running"), existing[0])
                if pref.status != "running":
                    self._logger.info(f"Container {spec.id}: starting existing workload {pref.name}")
                    pref.start()
                    pref.reload()
                else:
                    self._logger.info(f"Container {spec.id}: workload {pref.name} already running")
                return self._summarize(pref)

            self._ensure_image(client, spec, image)
            run_kwargs = _normalize_run_resources(params.get("resources"))
            if params.get("name"):
                run_kwargs["name"] = params["name"]
            try:
                container = client.containers.run(
                    image=image,
                    detach=True,
                    environment=params.get("env") or None,
                    ports=_normalize_ports(params.get("ports")),
                    labels={LABEL_KEY: LABEL_VALUE, IMAGE_LABEL: image},
                    restart_policy={"Name": "unless-stopped"},
                    device_requests=self._device_requests(spec),
                    **run_kwargs,
                )
            except APIError as e:
                raise TransientError(f"Failed to start workload {image}: {e}", container_id=spec.id) from e

            container.reload()
            if container.status != "running":
                logs = container.logs(tail=50).decode("utf-8", errors="ignore").strip()
                container.remove(force=True)
                raise TransientError(
                    f"Workload {image} exited immediately (status {container.status}): {logs}",
                    container_id=spec.id,
                )
            self._logger.info(f"Container {spec.id}: workload {container.name} running ({container.short_id})")
            return self._summarize(container)
        finally:
            client.close()


__all__ = ["ServiceDeployer", "default_client_factory", "LABEL_KEY", "LABEL_VALUE", "IMAGE_LABEL"]
