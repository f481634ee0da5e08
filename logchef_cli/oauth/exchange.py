"""The two token exchanges that finish the login flow.

1. Authorization code + PKCE verifier -> ID token (identity provider)
2. ID token -> LogChef API token (LogChef backend)

The backend validates the ID token's signature, issuer and audience on its
side before minting the API token.
"""

import logging
from typing import Any

import httpx

from .errors import HttpStatusError, JsonError, NetworkError
from .tokens import ServiceToken, TokenSet

logger = logging.getLogger(__name__)

# Per-request timeout, independent of the callback wait
DEFAULT_TIMEOUT = 30.0

CLI_TOKEN_PATH = "/api/v1/cli/token"


def _safe_error_detail(response: httpx.Response) -> str:
    """Extract the error fields of a failed response.

    Only known error fields are used; the raw body may contain tokens.
    """
    try:
        error_data = response.json()
    except ValueError:
        return ""
    if not isinstance(error_data, dict):
        return ""

    if "error" in error_data:
        detail = str(error_data.get("error", ""))
        if error_data.get("error_description"):
            detail += f" - {error_data['error_description']}"
        return f": {detail}"
    if "message" in error_data:
        return f": {error_data['message']}"
    return ""


class TokenExchangeClient:
    """Runs the code exchange and the service token exchange.

    Usage:
        async with TokenExchangeClient() as client:
            tokens = await client.exchange_code(...)
            service_token = await client.exchange_service_token(server_url, tokens.id_token)
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        """Initialize the exchange client.

        Args:
            http_client: Optional HTTP client; created and owned if omitted
            timeout: Timeout in seconds for each request
        """
        self.timeout = timeout
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http_client is None

    async def _post_json(self, url: str, action: str, **kwargs: Any) -> Any:
        """POST and return the decoded JSON body.

        Args:
            url: Endpoint URL
            action: What the request does, for error messages

        Raises:
            NetworkError: On transport failure or timeout
            HttpStatusError: On a non-2xx response
            JsonError: If the body is not valid JSON
        """
        try:
            response = await self._http.post(url, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Timeout during {action}: {e}") from e
        except httpx.RequestError as e:
            raise NetworkError(f"Network error during {action}: {e}") from e

        if not response.is_success:
            raise HttpStatusError(
                f"{action.capitalize()} failed (HTTP {response.status_code})"
                f"{_safe_error_detail(response)}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            return response.json()
        except ValueError as e:
            raise JsonError(f"Failed to parse {action} response: {e}") from e

    async def exchange_code(
        self,
        token_endpoint: str,
        code: str,
        redirect_uri: str,
        code_verifier: str,
        client_id: str,
    ) -> TokenSet:
        """Exchange the authorization code for an ID token.

        Args:
            token_endpoint: The provider's token endpoint
            code: Authorization code from the callback
            redirect_uri: The redirect URI used in the authorization request
            code_verifier: PKCE verifier for the challenge that was sent
            client_id: The CLI's OAuth client ID

        Returns:
            TokenSet with the ID token

        Raises:
            TokenExchangeError: If the request fails or has no id_token
        """
        token_request = {
            "grant_type": "authorization_code",
            "client_id": client_id,
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
        }

        logger.debug(f"Exchanging authorization code at {token_endpoint}")
        result = await self._post_json(
            token_endpoint,
            "token exchange",
            data=token_request,
            headers={"Accept": "application/json"},
        )

        if not isinstance(result, dict):
            raise JsonError("Token endpoint response was not a JSON object")

        return TokenSet.from_token_response(result)

    async def exchange_service_token(self, server_url: str, id_token: str) -> ServiceToken:
        """Exchange the ID token for a LogChef API token.

        Args:
            server_url: LogChef server base URL
            id_token: ID token from the code exchange

        Returns:
            ServiceToken minted by the server

        Raises:
            TokenExchangeError: If the request fails or the envelope is
                missing the token
        """
        url = f"{server_url.rstrip('/')}{CLI_TOKEN_PATH}"

        logger.debug(f"Exchanging ID token at {url}")
        envelope = await self._post_json(
            url,
            "service token exchange",
            headers={
                "Authorization": f"Bearer {id_token}",
                "Accept": "application/json",
            },
        )

        return ServiceToken.from_exchange_response(envelope)

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "TokenExchangeClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()
