"""High-level authentication manager for the LogChef CLI.

Ties the login flow to the config file and the token store. The CLI calls
this module; nothing here prints.
"""

import logging
import webbrowser
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx

from ..api import ApiError, LogchefClient
from ..config import Config, ConfigError, Context, context_name_from_url
from .errors import AuthNotConfiguredError
from .flow import AuthFlow
from .store import TokenStore
from .tokens import ServiceToken

logger = logging.getLogger(__name__)


def _format_timedelta(td: timedelta) -> str:
    """Format a timedelta into a human-readable string.

    Examples:
        - "45 minutes"
        - "2 hours"
        - "3 days"
        - "2 weeks"
    """
    total_seconds = int(td.total_seconds())

    if total_seconds < 0:
        return "Expired"

    if total_seconds < 60:
        return f"{total_seconds} seconds"

    minutes = total_seconds // 60
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''}"

    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''}"

    days = hours // 24
    if days < 14:
        return f"{days} day{'s' if days != 1 else ''}"

    weeks = days // 7
    return f"{weeks} week{'s' if weeks != 1 else ''}"


@dataclass
class LoginResult:
    """Outcome of a successful login."""

    context_name: str
    server_url: str
    server_version: str
    token: ServiceToken

    @property
    def user_email(self) -> str | None:
        return self.token.user_email

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output (never includes the token itself)."""
        return {
            "context": self.context_name,
            "server_url": self.server_url,
            "server_version": self.server_version,
            "user_email": self.user_email,
            "expires_at": self.token.expires_at.isoformat() if self.token.expires_at else None,
        }


@dataclass
class AuthStatus:
    """Authentication status of a context.

    Attributes:
        context_name: The context checked
        server_url: Server of that context
        authenticated: Whether a token is stored
        expired: Whether the stored token is past its expiry
        expires_at: When the token expires (ISO format string)
        expires_in_human: Human-readable time until expiry
        user_email: Email reported by the server for the token
        full_name: Full name reported by the server
        role: Role reported by the server
        error: Why the token could not be verified, if it could not
    """

    context_name: str
    server_url: str
    authenticated: bool = False
    expired: bool = False
    expires_at: str | None = None
    expires_in_human: str | None = None
    user_email: str | None = None
    full_name: str | None = None
    role: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "context": self.context_name,
            "server_url": self.server_url,
            "authenticated": self.authenticated,
            "expired": self.expired,
            "expires_at": self.expires_at,
            "expires_in_human": self.expires_in_human,
            "user_email": self.user_email,
            "full_name": self.full_name,
            "role": self.role,
            "error": self.error,
        }


class AuthManager:
    """Login, logout and status for LogChef contexts.

    Usage:
        manager = AuthManager(load_config())
        result = await manager.login("https://logchef.example.com", on_status=print)
        status = await manager.status(result.context_name)
    """

    def __init__(
        self,
        config: Config,
        store: TokenStore | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the manager.

        Args:
            config: Loaded CLI configuration; saved after login
            store: Token store (defaults to the user's encrypted store)
            http_client: Optional HTTP client shared by every request
        """
        self.config = config
        self.store = store or TokenStore()
        self._http_client = http_client

    def resolve_context_name(
        self,
        context_name: str | None = None,
        server_url: str | None = None,
    ) -> str | None:
        """Pick the context a command applies to.

        Priority: explicit name, the context for ``server_url`` (or the name
        it would get), then the current context.
        """
        if context_name:
            return context_name

        if server_url:
            found = self.config.find_context_by_url(server_url)
            if found:
                return found[0]
            return context_name_from_url(server_url)

        return self.config.current_context

    async def login(
        self,
        server_url: str,
        context_name: str | None = None,
        on_status: Callable[[str], None] | None = None,
        open_browser: Callable[[str], bool] = webbrowser.open,
        **flow_options: Any,
    ) -> LoginResult:
        """Log into a server through the browser and save the context.

        Args:
            server_url: LogChef server base URL
            context_name: Context to save under (default: existing context
                for this URL, else the URL's host)
            on_status: Callback for progress messages
            open_browser: Function that opens the authorization URL
            **flow_options: Extra AuthFlow options (ports, timeouts)

        Returns:
            LoginResult with the context name and issued token

        Raises:
            ApiError: If the server metadata cannot be fetched
            AuthNotConfiguredError: If the server has no CLI OIDC client
            OAuthFlowError: If the browser login fails
        """
        server_url = server_url.strip().rstrip("/")
        emit = on_status or (lambda msg: None)

        emit(f"Connecting to {server_url}...")
        async with LogchefClient(server_url, http_client=self._http_client) as client:
            meta = await client.get_meta()
        emit(f"Connected to LogChef {meta.version}")

        if not meta.oidc_enabled():
            raise AuthNotConfiguredError(
                "CLI authentication not configured on this server. "
                "Ask your admin to set oidc.cli_client_id in the server config."
            )

        flow = AuthFlow(
            server_url,
            meta.oidc_issuer or "",
            meta.cli_client_id or "",
            http_client=self._http_client,
            open_browser=open_browser,
            on_status=on_status,
            **flow_options,
        )
        token = await flow.run()

        name = self.resolve_context_name(context_name, server_url) or "default"
        existing = self.config.get_context(name)
        timeout_secs = existing.timeout_secs if existing else Context(server_url).timeout_secs

        self.store.set_token(name, token)
        self.config.add_or_update_context(
            name, Context(server_url=server_url, timeout_secs=timeout_secs)
        )
        self.config.save()

        logger.debug(f"Saved login for context '{name}'")
        return LoginResult(
            context_name=name,
            server_url=server_url,
            server_version=meta.version,
            token=token,
        )

    def logout(self, context_name: str) -> bool:
        """Forget the token of a context; the context itself is kept.

        Returns:
            True if a token was removed, False if none was stored

        Raises:
            ConfigError: If the context does not exist
        """
        if self.config.get_context(context_name) is None:
            raise ConfigError(f"Context '{context_name}' not found")
        return self.store.delete_token(context_name)

    async def status(self, context_name: str) -> AuthStatus:
        """Check the stored token of a context against the server.

        Raises:
            ConfigError: If the context does not exist
        """
        context = self.config.get_context(context_name)
        if context is None:
            raise ConfigError(f"Context '{context_name}' not found")

        token = self.store.get_token(context_name)
        if token is None:
            return AuthStatus(context_name=context_name, server_url=context.server_url)

        status = AuthStatus(
            context_name=context_name,
            server_url=context.server_url,
            authenticated=True,
            expired=token.is_expired(),
            user_email=token.user_email,
        )
        if token.expires_at:
            status.expires_at = token.expires_at.isoformat()
            status.expires_in_human = _format_timedelta(
                token.expires_at - datetime.now(timezone.utc)
            )

        if status.expired:
            status.error = "Token expired. Run 'logchef auth' to log in again."
            return status

        try:
            async with LogchefClient(
                context.server_url,
                timeout=context.timeout_secs,
                token=token.token,
                http_client=self._http_client,
            ) as client:
                user = await client.get_current_user()
        except ApiError as e:
            logger.debug(f"Token check failed for context '{context_name}': {e}")
            status.error = f"Token may be invalid or expired ({e})"
            return status

        status.user_email = user.email
        status.full_name = user.full_name
        status.role = user.role
        return status
