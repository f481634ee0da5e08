"""OpenID Connect discovery.

Fetches the identity provider's ``/.well-known/openid-configuration``
document and extracts the endpoints the login flow needs.
"""

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

import httpx

from .errors import DiscoveryError
from .pkce import CHALLENGE_METHOD

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = "/.well-known/openid-configuration"

# Discovery is a single small GET; keep it well below the callback wait
DEFAULT_TIMEOUT = 10.0

LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}


def _http_status_hint(status_code: int) -> str:
    """Get a user-friendly hint for common HTTP status codes."""
    hints = {
        401: "The identity provider requires authentication for discovery",
        403: "Access forbidden - check the issuer URL configured on the server",
        404: "Discovery document not found - the issuer URL may be wrong",
        500: "Server error - the identity provider may be experiencing issues",
        502: "Bad gateway - there may be a proxy or network issue",
        503: "Service unavailable - the identity provider may be temporarily down",
    }
    return hints.get(status_code, "")


def _warn_if_insecure(url: str, context: str) -> None:
    """Log a warning for plain HTTP endpoints outside loopback.

    Self-hosted providers (e.g. Dex inside a compose network) are often
    served over HTTP, so this never fails the login.
    """
    parsed = urlparse(url)
    if parsed.scheme == "http" and parsed.hostname not in LOOPBACK_HOSTS:
        logger.warning(f"{context} uses plain HTTP: {url}")


def discovery_url(issuer: str) -> str:
    """Build the discovery document URL for an issuer."""
    return f"{issuer.rstrip('/')}{WELL_KNOWN_PATH}"


@dataclass
class DiscoveryDocument:
    """The parts of the OIDC provider metadata used by the login flow."""

    authorization_endpoint: str
    token_endpoint: str
    issuer: str | None = None
    jwks_uri: str | None = None
    userinfo_endpoint: str | None = None
    scopes_supported: list[str] | None = None
    code_challenge_methods_supported: list[str] | None = None

    def supports_s256(self) -> bool:
        """Check if the provider accepts S256 challenges.

        Providers that do not advertise their methods are assumed to.
        """
        if self.code_challenge_methods_supported is None:
            return True
        return CHALLENGE_METHOD in self.code_challenge_methods_supported

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DiscoveryDocument":
        """Create from the discovery JSON.

        Raises:
            DiscoveryError: If a required endpoint is missing
        """
        for name in ("authorization_endpoint", "token_endpoint"):
            value = data.get(name)
            if not isinstance(value, str) or not value:
                raise DiscoveryError(f"Discovery document is missing required field: {name}")

        authorization_endpoint = data["authorization_endpoint"]
        token_endpoint = data["token_endpoint"]
        _warn_if_insecure(authorization_endpoint, "Authorization endpoint")
        _warn_if_insecure(token_endpoint, "Token endpoint")

        return cls(
            authorization_endpoint=authorization_endpoint,
            token_endpoint=token_endpoint,
            issuer=data.get("issuer"),
            jwks_uri=data.get("jwks_uri"),
            userinfo_endpoint=data.get("userinfo_endpoint"),
            scopes_supported=data.get("scopes_supported"),
            code_challenge_methods_supported=data.get("code_challenge_methods_supported"),
        )


async def discover_oidc_config(
    issuer: str,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> DiscoveryDocument:
    """Fetch and validate the OIDC discovery document.

    Args:
        issuer: The identity provider issuer URL (trailing slash ignored)
        http_client: Optional HTTP client to use
        timeout: Request timeout in seconds

    Returns:
        DiscoveryDocument with the authorization and token endpoints

    Raises:
        DiscoveryError: If the document cannot be fetched, is not valid
            JSON, lacks a required endpoint, or does not support S256
    """
    url = discovery_url(issuer)
    _warn_if_insecure(url, "OIDC issuer")

    client = http_client or httpx.AsyncClient(timeout=timeout)
    should_close = http_client is None

    logger.debug(f"Fetching OIDC configuration from {url}")

    try:
        response = await client.get(url, timeout=timeout)

        if not response.is_success:
            hint = _http_status_hint(response.status_code)
            error_msg = f"OIDC discovery failed for {url}: HTTP {response.status_code}"
            if hint:
                error_msg += f". {hint}"
            raise DiscoveryError(error_msg)

        try:
            data = response.json()
        except ValueError as e:
            raise DiscoveryError(f"OIDC discovery response was not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise DiscoveryError("OIDC discovery response was not a JSON object")

        document = DiscoveryDocument.from_dict(data)

        if not document.supports_s256():
            raise DiscoveryError(
                f"Identity provider at {issuer} does not support PKCE with S256"
            )

        logger.debug(f"Discovered authorization endpoint {document.authorization_endpoint}")
        return document

    except httpx.ConnectError as e:
        raise DiscoveryError(
            f"Could not connect to {url}: {e}. "
            f"Check that the identity provider is reachable."
        ) from e
    except httpx.TimeoutException as e:
        raise DiscoveryError(
            f"Timeout fetching OIDC configuration from {url}: {e}. "
            f"The identity provider may be slow or unresponsive."
        ) from e
    except httpx.RequestError as e:
        raise DiscoveryError(f"Network error fetching OIDC configuration: {e}") from e
    finally:
        if should_close:
            await client.aclose()
