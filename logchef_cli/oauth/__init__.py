"""Browser login for the LogChef CLI.

This package implements the OIDC Authorization Code flow with PKCE through
a loopback redirect, followed by the exchange of the ID token for a LogChef
API token.

Main Components:
    AuthManager: Login, logout and status for configured contexts
    AuthFlow: Authorization code flow orchestration
    LoopbackCallbackServer: Receives the browser redirect on 127.0.0.1
    TokenExchangeClient: Code -> ID token -> API token exchanges
    TokenStore: Encrypted token storage

Quick Start:
    from logchef_cli.config import load_config
    from logchef_cli.oauth import AuthManager

    manager = AuthManager(load_config())
    result = await manager.login("https://logchef.example.com", on_status=print)
"""

from .callback import CallbackResult, LoopbackCallbackServer
from .discovery import DiscoveryDocument, discover_oidc_config
from .errors import (
    AuthNotConfiguredError,
    BindError,
    CallbackError,
    CallbackTimeoutError,
    CsrfMismatchError,
    DiscoveryError,
    EntropyError,
    HttpStatusError,
    JsonError,
    MissingFieldError,
    MissingIdTokenError,
    NetworkError,
    OAuthFlowError,
    TokenExchangeError,
)
from .exchange import TokenExchangeClient
from .flow import AuthFlow, FlowSession, FlowState, build_authorization_url
from .pkce import PKCEPair, generate_code_challenge, generate_code_verifier, generate_pkce_pair, generate_state
from .store import TokenDecryptionError, TokenStore, TokenStoreError
from .tokens import ServiceToken, ServiceUser, TokenSet

__all__ = [
    # Manager (main entry point)
    "AuthManager",
    "AuthStatus",
    "LoginResult",
    # Flow
    "AuthFlow",
    "FlowSession",
    "FlowState",
    "build_authorization_url",
    # Errors
    "OAuthFlowError",
    "EntropyError",
    "DiscoveryError",
    "CallbackError",
    "BindError",
    "CallbackTimeoutError",
    "CsrfMismatchError",
    "TokenExchangeError",
    "NetworkError",
    "HttpStatusError",
    "JsonError",
    "MissingFieldError",
    "MissingIdTokenError",
    "AuthNotConfiguredError",
    # Discovery
    "discover_oidc_config",
    "DiscoveryDocument",
    # Callback
    "LoopbackCallbackServer",
    "CallbackResult",
    # Exchange
    "TokenExchangeClient",
    # Tokens
    "TokenSet",
    "ServiceToken",
    "ServiceUser",
    # Storage
    "TokenStore",
    "TokenStoreError",
    "TokenDecryptionError",
    # PKCE
    "generate_pkce_pair",
    "generate_code_verifier",
    "generate_code_challenge",
    "generate_state",
    "PKCEPair",
]


# The manager imports the API client, which imports this package
def __getattr__(name: str) -> object:
    """Lazy import of the manager components."""
    if name in ("AuthManager", "AuthStatus", "LoginResult"):
        from . import manager

        return getattr(manager, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
