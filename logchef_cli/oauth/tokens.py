"""Token data structures for the login flow.

TokenSet holds what the identity provider returns from the code exchange.
ServiceToken holds what the LogChef backend mints from the ID token; it is
the only value that gets persisted.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from .errors import JsonError, MissingFieldError, MissingIdTokenError

logger = logging.getLogger(__name__)


def _parse_timestamp(value: Any) -> datetime | None:
    """Parse an RFC 3339 timestamp, returning None if absent or malformed."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.warning(f"Ignoring malformed expiry timestamp: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class TokenSet:
    """Identity provider token response.

    Attributes:
        id_token: The OIDC ID token (required)
        access_token: Provider access token, if issued
        refresh_token: Provider refresh token, if issued (never used)
        token_type: Token type (typically "Bearer")
        scope: Granted scopes
        expires_at: When the provider access token expires (UTC)
    """

    id_token: str = field(repr=False)
    access_token: str | None = field(default=None, repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    token_type: str | None = None
    scope: str | None = None
    expires_at: datetime | None = None

    @classmethod
    def from_token_response(cls, response: dict[str, Any]) -> "TokenSet":
        """Create TokenSet from the token endpoint JSON.

        Args:
            response: JSON object returned by the token endpoint

        Returns:
            TokenSet instance

        Raises:
            MissingIdTokenError: If the response has no id_token
        """
        id_token = response.get("id_token")
        if not isinstance(id_token, str) or not id_token:
            raise MissingIdTokenError()

        expires_at = None
        expires_in = response.get("expires_in")
        if expires_in is not None:
            try:
                expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
            except (TypeError, ValueError):
                logger.warning(f"Ignoring non-numeric expires_in: {expires_in!r}")

        return cls(
            id_token=id_token,
            access_token=response.get("access_token"),
            refresh_token=response.get("refresh_token"),
            token_type=response.get("token_type"),
            scope=response.get("scope"),
            expires_at=expires_at,
        )


@dataclass
class ServiceUser:
    """Identity of the user a service token was minted for."""

    id: int | None
    email: str | None
    full_name: str | None = None
    role: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ServiceUser":
        """Deserialize from dictionary."""
        return cls(
            id=data.get("id"),
            email=data.get("email"),
            full_name=data.get("full_name"),
            role=data.get("role"),
        )


@dataclass
class ServiceToken:
    """LogChef API token obtained from the token exchange.

    Attributes:
        token: The API token used as Bearer credential for later calls
        expires_at: When the token expires (UTC), if the server says
        user: The authenticated user, if the server returned it
    """

    token: str = field(repr=False)
    expires_at: datetime | None = None
    user: ServiceUser | None = None

    @property
    def user_email(self) -> str | None:
        """Email of the authenticated user, if known."""
        return self.user.email if self.user else None

    def is_expired(self) -> bool:
        """Check if the token is past its expiry.

        Tokens without an expiry are treated as valid; the server answers
        401 once they are not.
        """
        if self.expires_at is None:
            return False
        return datetime.now(timezone.utc) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        """Serialize for storage."""
        data: dict[str, Any] = {"token": self.token}
        if self.expires_at:
            data["expires_at"] = self.expires_at.isoformat()
        if self.user:
            data["user"] = self.user.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ServiceToken":
        """Deserialize from storage (via to_dict)."""
        user = data.get("user")
        return cls(
            token=data["token"],
            expires_at=_parse_timestamp(data.get("expires_at")),
            user=ServiceUser.from_dict(user) if isinstance(user, dict) else None,
        )

    @classmethod
    def from_exchange_response(cls, envelope: Any) -> "ServiceToken":
        """Create ServiceToken from the backend exchange response.

        The backend wraps its payload as
        ``{"status": "success", "data": {"token": ..., "expires_at": ..., "user": {...}}}``.

        Raises:
            JsonError: If the envelope is not a JSON object
            MissingFieldError: If ``data`` or ``data.token`` is missing
        """
        if not isinstance(envelope, dict):
            raise JsonError("Token exchange response was not a JSON object")

        data = envelope.get("data")
        if not isinstance(data, dict):
            raise MissingFieldError("Token exchange response is missing 'data'", field="data")

        token = data.get("token")
        if not isinstance(token, str) or not token:
            raise MissingFieldError("Token exchange response is missing 'token'", field="token")

        user = data.get("user")
        return cls(
            token=token,
            expires_at=_parse_timestamp(data.get("expires_at")),
            user=ServiceUser.from_dict(user) if isinstance(user, dict) else None,
        )
