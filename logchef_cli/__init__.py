"""LogChef CLI - log in to a LogChef server from the terminal."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("logchef-cli")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = [
    "__version__",
    "Config",
    "Context",
    "load_config",
    "LogchefClient",
    "OutputHandler",
]


# Lazy imports to avoid circular dependencies
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    if name in ("Config", "Context", "load_config"):
        from .config import Config, Context, load_config
        return {"Config": Config, "Context": Context, "load_config": load_config}[name]
    elif name == "LogchefClient":
        from .api import LogchefClient
        return LogchefClient
    elif name == "OutputHandler":
        from .output import OutputHandler
        return OutputHandler
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
