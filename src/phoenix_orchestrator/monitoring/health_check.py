from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from phoenix_orchestrator.core.errors import ConfigurationError, TransientError
from phoenix_orchestrator.core.lifecycle import ContainerLifecycle
from phoenix_orchestrator.core.models import ContainerSpec, ContainerStatus

DEFAULT_TIMEOUT = 5.0


def resolve_health_url(spec: ContainerSpec) -> Optional[str]:
    """``service_parameters.health_url`` with ``{ip}`` substituted, or None."""
    url = spec.service_parameters.get("health_url")
    if not url:
        return None
    if not isinstance(url, str):
        raise ConfigurationError("service_parameters.health_url must be a string", container_id=spec.id)
    if "{ip}" in url:
        if spec.network.address is None:
            raise ConfigurationError(
                "health_url uses {ip} but the container has no static address", container_id=spec.id
            )
        url = url.replace("{ip}", spec.network.address)
    return url


class HealthChecker:
    """Confirms a provisioned container is serving.

    With a health URL the endpoint must answer 2xx; without one the
    container only has to report RUNNING. Every failure is transient so the
    retry policy gives slow-booting services time to come up.
    """

    def __init__(
        self,
        lifecycle: ContainerLifecycle,
        logger: logging.Logger,
        *,
        client: Optional[httpx.Client] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._lifecycle = lifecycle
        self._logger = logger
        self._client = client
        self._timeout = timeout

    def _get(self, url: str) -> httpx.Response:
        if self._client is not None:
            return self._client.get(url, timeout=self._timeout)
        return httpx.get(url, timeout=self._timeout)

    def check(self, spec: ContainerSpec) -> Dict[str, Any]:
        status = self._lifecycle.status(spec.id)
        if status != ContainerStatus.RUNNING:
            raise TransientError(f"Container is {status.value}, expected running", container_id=spec.id)

        url = resolve_health_url(spec)
        if url is None:
            self._logger.info(f"Container {spec.id} is running (no health endpoint declared)")
            return {"container_id": spec.id, "status": status.value}

        try:
            response = self._get(url)
        except httpx.HTTPError as e:
            raise TransientError(f"Health probe {url} failed: {e}", container_id=spec.id) from e
        if not response.is_success:
            raise TransientError(
                f"Health probe {url} returned {response.status_code}", container_id=spec.id
            )
        self._logger.info(f"Container {spec.id} healthy ({url} -> {response.status_code})")
        return {"container_id": spec.id, "status": status.value, "url": url, "http_status": response.status_code}


__all__ = ["HealthChecker", "resolve_health_url"]
