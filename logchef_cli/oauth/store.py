"""Encrypted storage for LogChef API tokens.

Service tokens are kept per context name and stored with:
- Fernet symmetric encryption (AES-128-CBC + HMAC)
- The encryption key in the OS keyring (Keychain, libsecret, DPAPI), with a
  machine-derived key when no keyring backend is available
- Owner-only file permissions
- File locking so two CLI invocations never interleave writes
"""

import base64
import hashlib
import json
import logging
import os
import stat
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

import keyring
from cryptography.fernet import Fernet, InvalidToken

from .tokens import ServiceToken

logger = logging.getLogger(__name__)

if sys.platform != "win32":
    import fcntl

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Hold an fcntl lock on a sidecar ``.lock`` file."""
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r") as lock_file:
            mode = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
            try:
                fcntl.flock(lock_file.fileno(), mode)
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
else:
    import msvcrt

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Hold an msvcrt lock on a sidecar ``.lock`` file.

        msvcrt has no shared locks, so readers lock exclusively too.
        """
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r+") as lock_file:
            msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
            try:
                yield
            finally:
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)


KEYRING_SERVICE = "logchef-cli"
KEYRING_USERNAME = "token-encryption-key"

DEFAULT_STORE_DIR = Path.home() / ".cache" / "logchef" / "auth"

TOKENS_FILE = "tokens.json"


class TokenStoreError(Exception):
    """Error in token storage operations."""

    pass


class TokenDecryptionError(TokenStoreError):
    """Stored tokens cannot be decrypted.

    The encryption key changed (keyring cleared, home directory copied to
    another machine) or the file is corrupted. The next login or logout
    replaces the unreadable file.
    """

    pass


def _derive_fallback_key() -> bytes:
    """Derive an encryption key from machine-specific data.

    Used when no keyring backend is available.

    Returns:
        Base64-encoded 32-byte key suitable for Fernet
    """
    components = []

    machine_id_path = Path("/etc/machine-id")
    if machine_id_path.exists():
        components.append(machine_id_path.read_text().strip())

    components.append(str(Path.home()))
    components.append(os.environ.get("USER", os.environ.get("USERNAME", "logchef")))

    key_bytes = hashlib.sha256(":".join(components).encode()).digest()
    return base64.urlsafe_b64encode(key_bytes)


class TokenStore:
    """Encrypted ServiceToken storage keyed by context name.

    Tokens live in ``~/.cache/logchef/auth/tokens.json`` (mode 0600) as a
    single Fernet-encrypted JSON object.
    """

    def __init__(self, store_dir: Path | None = None):
        """Initialize token store.

        Args:
            store_dir: Optional custom storage directory
        """
        self.store_dir = store_dir or DEFAULT_STORE_DIR
        self._cipher: Fernet | None = None

        self._init_storage()
        self._init_encryption()

    def _init_storage(self) -> None:
        """Create the storage directory, owner-only."""
        self.store_dir.mkdir(parents=True, exist_ok=True)
        try:
            self.store_dir.chmod(stat.S_IRWXU)
        except OSError as e:
            logger.warning(f"Could not set directory permissions: {e}")

    def _init_encryption(self) -> None:
        """Load or create the encryption key."""
        try:
            key = keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)

            if key is None:
                key = Fernet.generate_key().decode("ascii")
                keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, key)
                logger.debug("Generated new encryption key in keyring")

            self._cipher = Fernet(key.encode("ascii"))
            logger.debug("Using keyring for encryption key storage")

        except Exception as e:
            # Any keyring backend failure (NoKeyringError, DBus errors, ...)
            logger.warning(
                f"Keyring not available: {type(e).__name__}: {e}. "
                f"Falling back to a machine-derived encryption key. "
                f"Install a keyring backend (e.g. gnome-keyring on Linux) for "
                f"stronger protection."
            )
            self._cipher = Fernet(_derive_fallback_key())

    def _read_tokens(self) -> dict[str, Any]:
        """Read and decrypt the token file under a shared lock.

        Raises:
            TokenDecryptionError: If the key changed or the file is corrupted
        """
        filepath = self.store_dir / TOKENS_FILE

        if not filepath.exists():
            return {}

        if self._cipher is None:
            raise TokenStoreError("Encryption not initialized")

        try:
            with _file_lock(filepath, exclusive=False):
                encrypted_data = filepath.read_bytes()
            decrypted = self._cipher.decrypt(encrypted_data)
            result: dict[str, Any] = json.loads(decrypted)
            return result
        except InvalidToken as e:
            raise TokenDecryptionError(
                "Cannot decrypt stored tokens. The encryption key may have changed. "
                "Run 'logchef auth' to log in again."
            ) from e
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise TokenDecryptionError(
                "Stored token file is corrupted. "
                "Run 'logchef auth' to log in again."
            ) from e

    def _write_tokens(self, data: dict[str, Any]) -> None:
        """Encrypt and write the token file under an exclusive lock."""
        if self._cipher is None:
            raise TokenStoreError("Encryption not initialized")

        filepath = self.store_dir / TOKENS_FILE
        encrypted_data = self._cipher.encrypt(json.dumps(data).encode("utf-8"))

        with _file_lock(filepath, exclusive=True):
            filepath.write_bytes(encrypted_data)
            try:
                filepath.chmod(stat.S_IRUSR | stat.S_IWUSR)
            except OSError as e:
                logger.warning(f"Could not set file permissions: {e}")

    def _read_tokens_for_update(self) -> dict[str, Any]:
        """Read the tokens before a write, discarding an unreadable file.

        Tokens that cannot be decrypted are lost either way; dropping them
        lets the user log in or out again instead of being locked out.
        """
        try:
            return self._read_tokens()
        except TokenDecryptionError as e:
            logger.warning(f"Discarding unreadable token file: {e}")
            self.clear_all()
            return {}

    def get_token(self, context_name: str) -> ServiceToken | None:
        """Get the stored token for a context.

        Returns:
            ServiceToken if found and well-formed, None otherwise
        """
        tokens_data = self._read_tokens()
        entry = tokens_data.get(context_name)
        if entry is None:
            return None

        try:
            return ServiceToken.from_dict(entry)
        except (KeyError, TypeError) as e:
            logger.warning(f"Invalid token data for context '{context_name}': {e}")
            return None

    def set_token(self, context_name: str, token: ServiceToken) -> None:
        """Store the token for a context, replacing any previous one."""
        tokens_data = self._read_tokens_for_update()
        tokens_data[context_name] = token.to_dict()
        self._write_tokens(tokens_data)

        logger.debug(f"Stored token for context '{context_name}'")

    def delete_token(self, context_name: str) -> bool:
        """Delete the token for a context.

        Returns:
            True if a token was deleted, False if none was stored
        """
        tokens_data = self._read_tokens_for_update()
        if context_name not in tokens_data:
            return False

        del tokens_data[context_name]
        self._write_tokens(tokens_data)

        logger.debug(f"Deleted token for context '{context_name}'")
        return True

    def clear_all(self) -> None:
        """Delete every stored token."""
        tokens_file = self.store_dir / TOKENS_FILE
        if tokens_file.exists():
            tokens_file.unlink()
        logger.debug("Cleared all stored tokens")
