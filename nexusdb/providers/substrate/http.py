from __future__ import annotations

from dataclasses import asdict
import logging
import time
from typing import Any

import httpx

from nexusdb.core.config import Settings
from nexusdb.core.errors import ConfigurationError, ProvisioningError
from nexusdb.providers.substrate.base import ProvisionSpec
from nexusdb.services.telemetry import ResourceUtilization, record_external_call


logger = logging.getLogger(__name__)


class HttpSubstrate:
    """Execution substrate backed by a container-runtime agent over HTTP.

    Timeouts, connection failures and 5xx responses surface as ProvisioningError
    (retried by the pipeline); 4xx responses are ConfigurationError.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = settings.substrate_base_url.rstrip("/")
        self._timeout = settings.substrate_timeout_ms / 1000.0
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, *, json_body: dict[str, Any] | None = None) -> dict[str, Any]:
        client = await self._get_client()
        start = time.monotonic()
        try:
            response = await client.request(method, path, json=json_body)
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            record_external_call(integration="substrate", latency_ms=(time.monotonic() - start) * 1000.0, success=False)
            logger.warning("substrate_request_failed method=%s path=%s", method, path, exc_info=exc)
            raise ProvisioningError(f"substrate {method} {path} failed: {exc}") from exc
        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code >= 500:
            record_external_call(integration="substrate", latency_ms=latency_ms, success=False)
            raise ProvisioningError(f"substrate {method} {path} responded {response.status_code}")
        if response.status_code >= 400:
            record_external_call(integration="substrate", latency_ms=latency_ms, success=False)
            raise ConfigurationError(f"substrate rejected {method} {path}: {response.status_code} {response.text}")
        record_external_call(integration="substrate", latency_ms=latency_ms, success=True)
        if not response.content:
            return {}
        return response.json()

    async def provision(self, spec: ProvisionSpec) -> str:
        payload = await self._request("POST", "/v1/instances", json_body=asdict(spec))
        handle = payload.get("handle")
        if not handle:
            raise ProvisioningError("substrate did not return an instance handle")
        return str(handle)

    async def start(self, handle: str) -> None:
        await self._request("POST", f"/v1/instances/{handle}/start")

    async def stop(self, handle: str) -> None:
        await self._request("POST", f"/v1/instances/{handle}/stop")

    async def destroy(self, handle: str) -> None:
        try:
            await self._request("DELETE", f"/v1/instances/{handle}")
        except ConfigurationError:
            # Already gone; destroy stays idempotent for rollback retries.
            logger.info("substrate_destroy_missing handle=%s", handle)

    async def get_metrics(self, handle: str) -> ResourceUtilization:
        payload = await self._request("GET", f"/v1/instances/{handle}/metrics")
        return ResourceUtilization(
            cpu=float(payload.get("cpu", 0.0)),
            memory=float(payload.get("memory", 0.0)),
            disk_io=float(payload.get("disk_io", 0.0)),
            connections=int(payload.get("connections", 0)),
        )
