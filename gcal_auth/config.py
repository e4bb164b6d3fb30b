"""Settings discovery and loading for gcal-auth."""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# Hosted broker that holds the shared client secret for the public client
DEFAULT_OAUTH_SERVER = "https://google-auth-obsidian-redirect.vercel.app"

# Seconds to wait for the browser redirect before abandoning a login
DEFAULT_CALLBACK_TIMEOUT = 300

# Settings file search paths in priority order
SETTINGS_SEARCH_PATHS = [
    Path("gcal-auth.json"),
    Path.home() / ".config" / "gcal-auth" / "settings.json",
]

# Env file search paths in priority order
ENV_SEARCH_PATHS = [
    Path(".env"),
    Path.home() / ".config" / "gcal-auth" / ".env",
]

# Environment variable overrides
ENV_USE_CUSTOM_CLIENT = "GCAL_USE_CUSTOM_CLIENT"
ENV_CLIENT_ID = "GCAL_CLIENT_ID"
ENV_CLIENT_SECRET = "GCAL_CLIENT_SECRET"
ENV_OAUTH_SERVER = "GCAL_OAUTH_SERVER"
ENV_CALLBACK_TIMEOUT = "GCAL_CALLBACK_TIMEOUT"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


@dataclass
class Settings:
    """Google OAuth settings.

    When ``use_custom_client`` is false, the public client and the hosted
    broker at ``google_oauth_server`` are used. Otherwise the user's own
    Google Cloud client id and secret are sent directly to Google.
    """

    use_custom_client: bool = False
    google_client_id: str = ""
    google_client_secret: str = ""
    google_oauth_server: str = DEFAULT_OAUTH_SERVER
    callback_timeout: int = DEFAULT_CALLBACK_TIMEOUT
    store_dir: Path | None = None
    settings_path: Path | None = None
    env_path: Path | None = None

    def __post_init__(self) -> None:
        self.google_client_id = (self.google_client_id or "").strip()
        self.google_client_secret = (self.google_client_secret or "").strip()
        self.google_oauth_server = (self.google_oauth_server or DEFAULT_OAUTH_SERVER).strip().rstrip("/")

    def settings_are_complete(self) -> bool:
        """Check that enough is configured to talk to Google.

        Broker mode needs nothing from the user; custom mode needs both the
        client id and the client secret.
        """
        if not self.use_custom_client:
            return True
        return bool(self.google_client_id) and bool(self.google_client_secret)

    def to_dict(self) -> dict[str, Any]:
        """Serialize non-secret settings for display."""
        return {
            "use_custom_client": self.use_custom_client,
            "google_client_id": self.google_client_id,
            "has_client_secret": bool(self.google_client_secret),
            "google_oauth_server": self.google_oauth_server,
            "callback_timeout": self.callback_timeout,
            "settings_path": str(self.settings_path) if self.settings_path else None,
        }


def find_settings_file(explicit_path: Path | None = None) -> Path | None:
    """Find the settings file, checking project then user level."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for path in SETTINGS_SEARCH_PATHS:
        if path.exists():
            return path
    return None


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


def parse_settings(data: dict[str, Any]) -> dict[str, Any]:
    """Map settings file keys to Settings fields.

    Accepts both snake_case and the camelCase keys used by the desktop
    plugin's settings (``useCustomClient``, ``googleClientId``, ...).
    """
    aliases = {
        "useCustomClient": "use_custom_client",
        "googleClientId": "google_client_id",
        "googleClientSecret": "google_client_secret",
        "googleOAuthServer": "google_oauth_server",
        "callbackTimeout": "callback_timeout",
        "storeDir": "store_dir",
    }

    values: dict[str, Any] = {}
    for key, value in data.items():
        name = aliases.get(key, key)
        if name == "use_custom_client":
            values[name] = _parse_bool(value)
        elif name == "callback_timeout":
            values[name] = int(value)
        elif name == "store_dir":
            values[name] = Path(value).expanduser() if value else None
        elif name in ("google_client_id", "google_client_secret", "google_oauth_server"):
            values[name] = str(value) if value is not None else ""
    return values


def _env_overrides() -> dict[str, Any]:
    values: dict[str, Any] = {}
    if ENV_USE_CUSTOM_CLIENT in os.environ:
        values["use_custom_client"] = _parse_bool(os.environ[ENV_USE_CUSTOM_CLIENT])
    if os.environ.get(ENV_CLIENT_ID):
        values["google_client_id"] = os.environ[ENV_CLIENT_ID]
    if os.environ.get(ENV_CLIENT_SECRET):
        values["google_client_secret"] = os.environ[ENV_CLIENT_SECRET]
    if os.environ.get(ENV_OAUTH_SERVER):
        values["google_oauth_server"] = os.environ[ENV_OAUTH_SERVER]
    if os.environ.get(ENV_CALLBACK_TIMEOUT):
        values["callback_timeout"] = int(os.environ[ENV_CALLBACK_TIMEOUT])
    return values


def load_settings(
    settings_path: Path | None = None,
    env_path: Path | None = None,
) -> Settings:
    """Load settings from defaults, the settings file and the environment.

    Args:
        settings_path: Explicit path to a JSON settings file (optional)
        env_path: Explicit path to .env file (optional)

    Returns:
        Settings with environment variables taking precedence over the file

    Raises:
        json.JSONDecodeError: If the settings file is invalid JSON
        ValueError: If a numeric setting is not a number
    """
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)

    values: dict[str, Any] = {}

    settings_file = find_settings_file(settings_path)
    if settings_file:
        with open(settings_file) as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Settings file {settings_file} must contain a JSON object")
        values.update(parse_settings(data))

    values.update(_env_overrides())

    return Settings(**values, settings_path=settings_file, env_path=env_file)
