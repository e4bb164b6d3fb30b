"""gcal-auth - Google Calendar OAuth login and access-token management for desktop apps."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("gcal-auth")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = [
    "__version__",
    "Settings",
    "load_settings",
    "AuthManager",
    "TokenResult",
    "OutputHandler",
]


# Lazy imports to avoid circular dependencies
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    if name in ("Settings", "load_settings"):
        from .config import Settings, load_settings
        return {"Settings": Settings, "load_settings": load_settings}[name]
    elif name in ("AuthManager", "TokenResult"):
        from .oauth import AuthManager, TokenResult
        return {"AuthManager": AuthManager, "TokenResult": TokenResult}[name]
    elif name == "OutputHandler":
        from .output import OutputHandler
        return OutputHandler
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
