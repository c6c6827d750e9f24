"""
ChronoHeal - HTTP Service Client
================================

Async JSON client for talking to collaborators (reasoning backend, action
executor, incident store). Propagates the correlation and run IDs as
headers so collaborator logs can be joined to an IncidentRun.

Usage:
    from shared.utils.http_client import ServiceClient, ServiceClientConfig

    client = ServiceClient("http://reasoning-backend:8010", ServiceClientConfig(timeout_seconds=60))
    body = await client.post_json("/api/v1/analyze", data=payload)
"""

import httpx
from typing import Any, Optional
from dataclasses import dataclass

from shared.utils.logging import get_logger, get_correlation_id, run_id_var

logger = get_logger(__name__)


@dataclass
class ServiceClientConfig:
    """Configuration for the HTTP service client."""
    timeout_seconds: float = 30.0
    user_agent: str = "ChronoHeal-ServiceClient/1.0"


class ServiceClient:
    """
    Thin wrapper over ``httpx.AsyncClient`` with lazy connection pooling.

    Transport errors and non-2xx statuses propagate as httpx exceptions;
    callers translate them into their own error types.
    """

    def __init__(
        self,
        base_url: str,
        config: Optional[ServiceClientConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.config = config or ServiceClientConfig()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.config.timeout_seconds),
                follow_redirects=True,
                transport=self._transport
            )
        return self._client

    def _build_headers(self, extra_headers: Optional[dict] = None) -> dict:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": self.config.user_agent,
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id

        run_id = run_id_var.get()
        if run_id:
            headers["X-Run-ID"] = run_id

        if extra_headers:
            headers.update(extra_headers)

        return headers

    async def post(
        self,
        path: str,
        data: Optional[dict[str, Any]] = None,
        headers: Optional[dict] = None
    ) -> httpx.Response:
        """Issue a POST request with a JSON body and return the raw response."""
        client = await self._get_client()

        response = await client.post(
            path,
            json=data,
            headers=self._build_headers(headers)
        )

        logger.debug(
            f"POST {self.base_url}{path} -> {response.status_code}",
            extra={"path": path, "status": response.status_code}
        )

        return response

    async def post_json(
        self,
        path: str,
        data: Optional[dict[str, Any]] = None,
        headers: Optional[dict] = None
    ) -> Any:
        """
        POST and decode the JSON body.

        Raises:
            httpx.HTTPStatusError: On a non-2xx response
            httpx.TransportError: On connection failures and timeouts
            ValueError: When the body is not valid JSON
        """
        response = await self.post(path, data=data, headers=headers)
        response.raise_for_status()
        return response.json()

    async def close(self) -> None:
        """Close the underlying client and release its connections."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ServiceClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
