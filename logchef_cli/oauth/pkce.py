"""PKCE (Proof Key for Code Exchange) and state generation per RFC 7636.

The verifier is 32 random bytes and the state 16 random bytes, both
base64url-encoded without padding. The flow always uses the S256 method.
"""

import base64
import hashlib
import secrets
from dataclasses import dataclass, field

from .errors import EntropyError

# Random bytes behind each value (32 bytes -> 43 character verifier)
VERIFIER_BYTES = 32
STATE_BYTES = 16

CHALLENGE_METHOD = "S256"


@dataclass(frozen=True)
class PKCEPair:
    """PKCE code verifier and challenge pair.

    The challenge goes into the authorization URL. The verifier stays with
    the flow until the code exchange, the only request that carries it, and
    is kept out of ``repr`` so it cannot leak into logs or tracebacks.
    """

    verifier: str = field(repr=False)
    challenge: str
    method: str = CHALLENGE_METHOD


def _b64url(data: bytes) -> str:
    """Base64url-encode without padding."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _random_bytes(num_bytes: int) -> bytes:
    """Read bytes from the platform CSPRNG.

    Raises:
        EntropyError: If the random source is unavailable
    """
    try:
        return secrets.token_bytes(num_bytes)
    except (NotImplementedError, OSError) as e:
        raise EntropyError(f"Could not read from the system random source: {e}") from e


def generate_code_verifier(num_bytes: int = VERIFIER_BYTES) -> str:
    """Generate a cryptographically random code verifier.

    Args:
        num_bytes: Number of random bytes to encode (default 32)

    Returns:
        Base64url-encoded verifier without padding

    Raises:
        EntropyError: If the random source is unavailable
    """
    return _b64url(_random_bytes(num_bytes))


def generate_code_challenge(verifier: str) -> str:
    """Generate the S256 code challenge for a verifier.

    Per RFC 7636 Section 4.2:
    code_challenge = BASE64URL(SHA256(ASCII(code_verifier)))

    Args:
        verifier: The code verifier string

    Returns:
        Base64url-encoded SHA256 hash of the verifier
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return _b64url(digest)


def generate_pkce_pair() -> PKCEPair:
    """Generate a verifier and its challenge together.

    Raises:
        EntropyError: If the random source is unavailable
    """
    verifier = generate_code_verifier()
    return PKCEPair(verifier=verifier, challenge=generate_code_challenge(verifier))


def generate_state() -> str:
    """Generate the CSRF state parameter.

    The state only correlates the callback with this flow; it is not a
    secret.

    Returns:
        Base64url-encoded 16 random bytes (22 characters)

    Raises:
        EntropyError: If the random source is unavailable
    """
    return _b64url(_random_bytes(STATE_BYTES))
