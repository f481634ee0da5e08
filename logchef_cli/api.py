"""Minimal LogChef REST client: server metadata and the current user.

Every endpoint answers with an envelope ``{"status": ..., "data": ...}``;
errors carry ``{"status": "error", "message": ...}``.
"""

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .oauth.tokens import ServiceUser

logger = logging.getLogger(__name__)

META_PATH = "/api/v1/meta"
ME_PATH = "/api/v1/me"


class ApiError(Exception):
    """LogChef API request failed.

    Attributes:
        status_code: HTTP status, if a response was received
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class ServerMeta:
    """Public server metadata used to configure the login."""

    version: str
    oidc_issuer: str | None = None
    cli_client_id: str | None = None

    def oidc_enabled(self) -> bool:
        """Whether the server is set up for CLI browser login."""
        return bool(self.oidc_issuer) and bool(self.cli_client_id)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ServerMeta":
        """Create from the ``data`` of the meta response."""
        return cls(
            version=str(data.get("version", "unknown")),
            oidc_issuer=data.get("oidc_issuer") or None,
            cli_client_id=data.get("cli_client_id") or None,
        )


class LogchefClient:
    """Async client for the LogChef API.

    Usage:
        async with LogchefClient(server_url, token=token) as client:
            user = await client.get_current_user()
    """

    def __init__(
        self,
        server_url: str,
        timeout: float = 30.0,
        token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.server_url = server_url.rstrip("/")
        self.timeout = timeout
        self.token = token
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http_client is None

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _get(self, path: str) -> Any:
        """GET an endpoint and return the envelope's ``data``.

        Raises:
            ApiError: On transport failure, non-2xx status or a bad envelope
        """
        url = f"{self.server_url}{path}"
        logger.debug(f"GET {url}")

        try:
            response = await self._http.get(url, headers=self._headers(), timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise ApiError(f"Timeout connecting to {self.server_url}: {e}") from e
        except httpx.RequestError as e:
            raise ApiError(f"Could not connect to {self.server_url}: {e}") from e

        if not response.is_success:
            message = f"HTTP {response.status_code}"
            try:
                error_data = response.json()
            except ValueError:
                error_data = None
            if isinstance(error_data, dict) and error_data.get("message"):
                message = f"{message}: {error_data['message']}"
            raise ApiError(message, status_code=response.status_code)

        try:
            envelope = response.json()
        except ValueError as e:
            raise ApiError(f"Failed to parse response from {url}: {e}") from e

        if not isinstance(envelope, dict) or "data" not in envelope:
            raise ApiError(f"Unexpected response from {url}: missing 'data'")
        return envelope["data"]

    async def get_meta(self) -> ServerMeta:
        """Fetch public server metadata (no authentication needed)."""
        data = await self._get(META_PATH)
        if not isinstance(data, dict):
            raise ApiError("Unexpected server metadata format")
        return ServerMeta.from_dict(data)

    async def get_current_user(self) -> ServiceUser:
        """Fetch the user the configured token belongs to."""
        data = await self._get(ME_PATH)
        user = data.get("user") if isinstance(data, dict) else None
        if not isinstance(user, dict):
            raise ApiError("Unexpected user response format")
        return ServiceUser.from_dict(user)

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "LogchefClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()
