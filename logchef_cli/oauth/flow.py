"""Browser login flow: OIDC authorization code with PKCE.

This module orchestrates the complete login:
1. Bind the loopback callback server
2. Discover the identity provider endpoints
3. Generate the PKCE pair and state
4. Build the authorization URL and open the browser
5. Wait for the callback under a fixed deadline
6. Check the state, then exchange the code for an ID token
7. Exchange the ID token for a LogChef API token
"""

import asyncio
import hmac
import logging
import webbrowser
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Callable
from urllib.parse import urlencode

import httpx

from .callback import DEFAULT_CANDIDATE_PORTS, LoopbackCallbackServer
from .discovery import DEFAULT_TIMEOUT as DISCOVERY_TIMEOUT
from .discovery import DiscoveryDocument, discover_oidc_config
from .errors import CallbackTimeoutError, CsrfMismatchError, OAuthFlowError
from .exchange import TokenExchangeClient
from .pkce import CHALLENGE_METHOD, PKCEPair, generate_pkce_pair, generate_state
from .tokens import ServiceToken

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = "openid email profile"

# Seconds the user has to complete the login in the browser
CALLBACK_TIMEOUT = 300.0

# Seconds allowed for each outbound request
REQUEST_TIMEOUT = 30.0


class FlowState(Enum):
    """Progress of a login flow."""

    IDLE = "idle"
    PORT_BOUND = "port_bound"
    AUTH_URL_OPENED = "auth_url_opened"
    AWAITING_CALLBACK = "awaiting_callback"
    CODE_RECEIVED = "code_received"
    CODE_EXCHANGED = "code_exchanged"
    SERVICE_TOKEN_EXCHANGED = "service_token_exchanged"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class FlowSession:
    """Per-run secrets and callback details.

    Created once per run and never persisted. The PKCE verifier inside
    ``pkce`` is only read by the code exchange.

    Attributes:
        redirect_uri: Loopback URI the provider redirects to
        pkce: Verifier and challenge pair
        state: CSRF state sent in the authorization URL
        deadline: Event loop time by which the callback must arrive
    """

    redirect_uri: str
    pkce: PKCEPair
    state: str
    deadline: float

    def remaining(self, now: float) -> float:
        """Seconds left until the deadline, never negative."""
        return max(0.0, self.deadline - now)


def build_authorization_url(
    discovery: DiscoveryDocument,
    client_id: str,
    redirect_uri: str,
    code_challenge: str,
    state: str,
    scopes: str = DEFAULT_SCOPES,
) -> str:
    """Build the authorization URL for browser redirect.

    Args:
        discovery: Provider endpoints
        client_id: The CLI's OAuth client ID
        redirect_uri: The loopback callback URI
        code_challenge: PKCE code challenge
        state: State parameter for CSRF protection
        scopes: Space-separated scopes to request

    Returns:
        Complete authorization URL
    """
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": scopes,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": CHALLENGE_METHOD,
    }

    auth_url = discovery.authorization_endpoint
    separator = "&" if "?" in auth_url else "?"
    return f"{auth_url}{separator}{urlencode(params)}"


class AuthFlow:
    """Orchestrates the browser login for one LogChef server.

    Each instance runs at most once. The callback server is released on
    every exit path, including timeouts and errors.

    Usage:
        flow = AuthFlow(server_url, meta.oidc_issuer, meta.cli_client_id)
        service_token = await flow.run()
    """

    def __init__(
        self,
        server_url: str,
        oidc_issuer: str,
        client_id: str,
        *,
        scopes: str = DEFAULT_SCOPES,
        candidate_ports: Sequence[int] = DEFAULT_CANDIDATE_PORTS,
        callback_timeout: float = CALLBACK_TIMEOUT,
        request_timeout: float = REQUEST_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
        exchange_client: TokenExchangeClient | None = None,
        open_browser: Callable[[str], bool] = webbrowser.open,
        on_status: Callable[[str], None] | None = None,
    ):
        """Initialize the login flow.

        Args:
            server_url: LogChef server base URL
            oidc_issuer: Identity provider issuer URL advertised by the server
            client_id: OAuth client ID of the CLI, advertised by the server
            scopes: Space-separated scopes to request
            candidate_ports: Loopback ports to try before an OS-assigned one
            callback_timeout: Seconds to wait for the browser callback
            request_timeout: Timeout for each outbound request
            http_client: Optional HTTP client for discovery and exchanges
            exchange_client: Optional token exchange client
            open_browser: Function that opens a URL in the user's browser
            on_status: Optional callback for status messages
        """
        self.server_url = server_url
        self.oidc_issuer = oidc_issuer
        self.client_id = client_id
        self.scopes = scopes
        self.candidate_ports = tuple(candidate_ports)
        self.callback_timeout = callback_timeout
        self.request_timeout = request_timeout
        self.open_browser = open_browser
        self.on_status = on_status or (lambda msg: None)

        self.state = FlowState.IDLE
        self.failure: OAuthFlowError | None = None

        self._http_client = http_client
        self._exchange_client = exchange_client

    def _emit_status(self, message: str) -> None:
        """Emit a status message."""
        logger.info(message)
        self.on_status(message)

    def _transition(self, state: FlowState) -> None:
        logger.debug(f"Login flow: {self.state.value} -> {state.value}")
        self.state = state

    def _launch_browser(self, auth_url: str) -> None:
        """Open the authorization URL, printing it for manual use as well."""
        self._emit_status(
            f"Opening browser for authentication. If it does not open, visit:\n{auth_url}"
        )
        try:
            opened = self.open_browser(auth_url)
        except (webbrowser.Error, OSError) as e:
            logger.debug(f"Browser launch failed: {e}")
            opened = False

        if not opened:
            self._emit_status("Could not open a browser. Please open the URL above manually.")

    async def run(self) -> ServiceToken:
        """Execute the complete login flow.

        Returns:
            ServiceToken issued by the LogChef server

        Raises:
            OAuthFlowError: If the flow fails at any step; CallbackTimeoutError
                if the browser does not call back in time and
                CsrfMismatchError if the callback state is wrong
        """
        if self.state is not FlowState.IDLE:
            raise OAuthFlowError("A login flow can only be run once")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.callback_timeout

        http = self._http_client or httpx.AsyncClient(timeout=self.request_timeout)
        owns_http = self._http_client is None
        exchange = self._exchange_client or TokenExchangeClient(
            http_client=http, timeout=self.request_timeout
        )

        try:
            async with LoopbackCallbackServer(self.candidate_ports) as server:
                self._transition(FlowState.PORT_BOUND)

                discovery = await discover_oidc_config(
                    self.oidc_issuer, http_client=http, timeout=DISCOVERY_TIMEOUT
                )

                session = FlowSession(
                    redirect_uri=server.redirect_uri,
                    pkce=generate_pkce_pair(),
                    state=generate_state(),
                    deadline=deadline,
                )

                auth_url = build_authorization_url(
                    discovery,
                    self.client_id,
                    session.redirect_uri,
                    session.pkce.challenge,
                    session.state,
                    self.scopes,
                )
                self._launch_browser(auth_url)
                self._transition(FlowState.AUTH_URL_OPENED)

                self._emit_status(f"Waiting for authentication on {session.redirect_uri}")
                self._transition(FlowState.AWAITING_CALLBACK)
                try:
                    result = await asyncio.wait_for(
                        server.serve_one(),
                        timeout=session.remaining(loop.time()),
                    )
                except TimeoutError as e:
                    raise CallbackTimeoutError(
                        f"Timed out after {self.callback_timeout:g}s waiting for the "
                        f"browser callback. Run the login again to retry."
                    ) from e

                # Constant-time comparison; the code is discarded on mismatch
                if not hmac.compare_digest(result.state or "", session.state):
                    raise CsrfMismatchError(
                        "State mismatch in callback - possible CSRF attack. Login aborted."
                    )
                self._transition(FlowState.CODE_RECEIVED)

            self._emit_status("Exchanging authorization code...")
            token_set = await exchange.exchange_code(
                discovery.token_endpoint,
                result.code or "",
                session.redirect_uri,
                session.pkce.verifier,
                self.client_id,
            )
            self._transition(FlowState.CODE_EXCHANGED)

            service_token = await exchange.exchange_service_token(
                self.server_url, token_set.id_token
            )
            self._transition(FlowState.SERVICE_TOKEN_EXCHANGED)

            if service_token.user_email:
                self._emit_status(f"Authenticated as {service_token.user_email}")
            return service_token

        except CallbackTimeoutError as e:
            self.failure = e
            self._transition(FlowState.TIMED_OUT)
            raise
        except OAuthFlowError as e:
            self.failure = e
            self._transition(FlowState.FAILED)
            raise
        finally:
            if self._exchange_client is None:
                await exchange.aclose()
            if owns_http:
                await http.aclose()
