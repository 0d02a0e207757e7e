"""Thin HTTP client for a supervised agent server."""

from typing import Any

import httpx

from agent_supervisor.constants import CAPABILITIES_PATH, DEFAULT_HEALTH_REQUEST_TIMEOUT_SECONDS, HEALTH_PATH


class AgentClient:
    """Async client for the agent's control endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = DEFAULT_HEALTH_REQUEST_TIMEOUT_SECONDS,
        health_path: str = HEALTH_PATH,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.health_path = health_path
        # Local loopback traffic only, never through a proxy
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
            trust_env=False,
        )

    @property
    def closed(self) -> bool:
        """Check if the client was closed."""
        return self._client.is_closed

    async def health(self) -> None:
        """Issue one readiness check.

        Raises:
            httpx.HTTPError: If the agent is unreachable or answers with an error status
        """
        response = await self._client.get(self.health_path)
        response.raise_for_status()

    async def capabilities(self) -> dict[str, Any]:
        """Get the capabilities the agent advertises."""
        response = await self._client.get(CAPABILITIES_PATH)
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected capabilities payload: {type(data).__name__}")
        return data

    async def aclose(self) -> None:
        """Close the underlying connection pool."""
        await self._client.aclose()

    async def __aenter__(self) -> "AgentClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        return f"<AgentClient {self.base_url}>"
