"""Config loading and saving for the LogChef CLI."""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import click
from dotenv import load_dotenv

CONFIG_VERSION = 1
CONFIG_FILE = "logchef.json"
DEFAULT_TIMEOUT_SECS = 30

# Env file search paths in priority order
ENV_SEARCH_PATHS = [
    Path(".env"),
    Path.home() / ".config" / "logchef" / ".env",
]


class ConfigError(Exception):
    """Config file cannot be read, parsed or written."""

    pass


@dataclass
class Context:
    """Connection settings for one LogChef server."""

    server_url: str
    timeout_secs: int = DEFAULT_TIMEOUT_SECS

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {"server_url": self.server_url, "timeout_secs": self.timeout_secs}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Context":
        """Deserialize from dictionary."""
        return cls(
            server_url=data["server_url"],
            timeout_secs=int(data.get("timeout_secs", DEFAULT_TIMEOUT_SECS)),
        )


@dataclass
class Config:
    """Complete CLI configuration: named contexts and the current one."""

    version: int = CONFIG_VERSION
    current_context: str | None = None
    contexts: dict[str, Context] = field(default_factory=dict)
    config_path: Path | None = None
    env_path: Path | None = None

    def get_current_context(self) -> Context | None:
        """Get the current context, if one is selected."""
        if self.current_context is None:
            return None
        return self.contexts.get(self.current_context)

    def get_context(self, name: str) -> Context | None:
        """Get a context by name."""
        return self.contexts.get(name)

    def find_context_by_url(self, url: str) -> tuple[str, Context] | None:
        """Find the context that points at a server URL."""
        normalized = url.rstrip("/")
        for name, context in self.contexts.items():
            if context.server_url.rstrip("/") == normalized:
                return name, context
        return None

    def add_or_update_context(self, name: str, context: Context) -> None:
        """Insert or replace a context and make it current."""
        self.contexts[name] = context
        self.current_context = name

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the on-disk JSON layout."""
        return {
            "version": self.version,
            "current_context": self.current_context,
            "contexts": {name: ctx.to_dict() for name, ctx in self.contexts.items()},
        }

    def save(self, config_path: Path | None = None) -> Path:
        """Write the config atomically with owner-only permissions.

        Args:
            config_path: Destination (defaults to where it was loaded from)

        Returns:
            The path written

        Raises:
            ConfigError: If the file cannot be written
        """
        path = config_path or self.config_path or get_config_path()
        tmp_path = path.with_suffix(".json.tmp")

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as f:
                json.dump(self.to_dict(), f, indent=2)
            os.replace(tmp_path, path)
        except OSError as e:
            raise ConfigError(f"Failed to write config file {path}: {e}") from e

        self.config_path = path
        return path


def get_config_dir() -> Path:
    """Directory holding logchef.json (LOGCHEF_CONFIG_DIR overrides)."""
    override = os.environ.get("LOGCHEF_CONFIG_DIR")
    if override:
        return Path(override)
    return Path(click.get_app_dir("logchef"))


def get_config_path() -> Path:
    """Path of the config file."""
    return get_config_dir() / CONFIG_FILE


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    """Find the .env file, checking project then user level."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for path in ENV_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def context_name_from_url(url: str) -> str:
    """Derive a context name from a server URL: its host, or "default"."""
    try:
        host = urlparse(url).hostname
    except ValueError:
        host = None
    return host or "default"


def load_config(
    config_path: Path | None = None,
    env_path: Path | None = None,
) -> Config:
    """Load the CLI configuration.

    A missing config file is not an error: it yields an empty config that
    is saved on first login.

    Args:
        config_path: Explicit path to config file (optional)
        env_path: Explicit path to .env file (optional)

    Returns:
        Config with all contexts

    Raises:
        ConfigError: If the file exists but cannot be read or parsed
    """
    # .env first so LOGCHEF_CONFIG_DIR may come from it
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)

    path = config_path or get_config_path()
    if not path.exists():
        return Config(config_path=path, env_path=env_file)

    try:
        with open(path) as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Failed to parse config file {path}: expected a JSON object")

    try:
        contexts = {
            name: Context.from_dict(ctx) for name, ctx in data.get("contexts", {}).items()
        }
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise ConfigError(f"Invalid context in config file {path}: {e}") from e

    return Config(
        version=data.get("version", CONFIG_VERSION),
        current_context=data.get("current_context"),
        contexts=contexts,
        config_path=path,
        env_path=env_file,
    )
