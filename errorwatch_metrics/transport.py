"""Metrics transport - posts snapshots to the ErrorWatch ingest endpoint."""
import json
import logging
from typing import Optional

import httpx

from errorwatch_metrics.collector import SystemMetrics
from errorwatch_metrics.config import AgentConfig
from errorwatch_metrics.exceptions import DeliveryError, RemoteRejectedError, SerializationError

logger = logging.getLogger(__name__)

INGEST_PATH = "/api/v1/metrics/ingest"
REQUEST_TIMEOUT = 30


class MetricsTransport:
    """Sends one snapshot per call. No retry, no buffering: a failed send is
    reported to the caller and the snapshot is dropped."""

    def __init__(self, config: AgentConfig, client: Optional[httpx.AsyncClient] = None):
        self.endpoint = config.endpoint.rstrip("/")
        self.api_key = config.api_key
        self.host_id = config.host_id
        self.hostname = config.hostname
        self.tags = dict(config.tags)
        self._client = client

    @property
    def url(self) -> str:
        return f"{self.endpoint}{INGEST_PATH}"

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "X-API-Key": self.api_key,
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=REQUEST_TIMEOUT)
        return self._client

    def build_payload(self, metrics: SystemMetrics) -> dict:
        """Wrap a snapshot in the host identity envelope."""
        payload = {
            "hostId": self.host_id,
            "hostname": self.hostname,
            "metrics": metrics.to_dict(),
        }
        if self.tags:
            payload["tags"] = self.tags
        return payload

    async def send(self, metrics: SystemMetrics):
        """POST a snapshot.

        Raises:
            SerializationError: the payload could not be encoded as JSON.
            DeliveryError: connection, timeout or DNS failure.
            RemoteRejectedError: the server answered with status >= 400.
        """
        try:
            body = json.dumps(self.build_payload(metrics), allow_nan=False)
        except (TypeError, ValueError) as e:
            raise SerializationError(f"failed to marshal metrics: {e}") from e

        client = self._get_client()
        try:
            resp = await client.post(self.url, content=body, headers=self._headers())
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise DeliveryError(f"failed to send metrics: {e!r}") from e

        if resp.status_code >= 400:
            raise RemoteRejectedError(resp.status_code, resp.text)
        logger.debug(f"Metrics delivered to {self.url} ({resp.status_code})")

    async def aclose(self):
        """Release pooled connections. Safe to call more than once."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
