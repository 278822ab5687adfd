"""Configuration and endpoint profile management for TusQueue.

All settings are stored as JSON files under ``~/.tusqueue/``.
Bearer tokens are never written to disk; they live in ``keyring``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import keyring
from keyring.errors import PasswordDeleteError

logger = logging.getLogger(__name__)

_KEYRING_SERVICE = "TusQueue"

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "chunk_size": 16 * 1024,
    "finish_max_attempts": 5,
    "finish_retry_delay": 1.0,
    "job_workers": 1,
    "job_max_attempts": 5,
    "job_backoff_delay": 10.0,
    "job_max_backoff_delay": 300.0,
    "constraint_poll_interval": 5.0,
    "require_network": True,
    "network_timeout": 3.0,
    "reencode_images": False,
    "log_level": "INFO",
}

# Path-valued settings default relative to the config directory.
_PATH_DEFAULTS: dict[str, str] = {
    "staging_dir": "staging",
    "url_store": "tus_urls.json",
}

# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Manages application settings and endpoint profiles.

    Writes files atomically (write-to-temp, then rename) to prevent
    corruption on unexpected exit.  A corrupt config triggers a warning and
    a safe reset — it never crashes the application.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        """Initialise, creating ``~/.tusqueue/`` if necessary."""
        self._base = base_dir or Path.home() / ".tusqueue"
        self._config_path = self._base / "config.json"
        self._profiles_path = self._base / "profiles.json"

        self._base.mkdir(parents=True, exist_ok=True)
        self._config: dict[str, Any] = self._load_config()
        self._profiles: list[dict[str, Any]] = self._load_profiles()

    @property
    def base_dir(self) -> Path:
        """Directory holding the config and profile files."""
        return self._base

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _defaults(self) -> dict[str, Any]:
        """Return the full default config, paths resolved under the base dir."""
        defaults = dict(DEFAULT_CONFIG)
        for key, name in _PATH_DEFAULTS.items():
            defaults[key] = str(self._base / name)
        return defaults

    def _atomic_write(self, path: Path, data: Any) -> None:
        """Serialise *data* as JSON and write atomically to *path*."""
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise

    def _load_config(self) -> dict[str, Any]:
        """Load ``config.json``, resetting to defaults on corruption."""
        if not self._config_path.exists():
            logger.debug("No config file — creating defaults")
            config = self._defaults()
            self._atomic_write(self._config_path, config)
            return config

        try:
            raw = self._config_path.read_text(encoding="utf-8")
            loaded = json.loads(raw)
            if not isinstance(loaded, dict):
                raise ValueError("Config root must be a JSON object")
            # Merge with defaults so new keys are always present
            merged = self._defaults()
            merged.update(loaded)
            return merged
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning(
                "Corrupt config.json (%s) — resetting to defaults", exc
            )
            config = self._defaults()
            self._atomic_write(self._config_path, config)
            return config

    def _load_profiles(self) -> list[dict[str, Any]]:
        """Load ``profiles.json``, returning an empty list on corruption."""
        if not self._profiles_path.exists():
            return []
        try:
            raw = self._profiles_path.read_text(encoding="utf-8")
            loaded = json.loads(raw)
            if not isinstance(loaded, list):
                raise ValueError("Profiles root must be a JSON array")
            return loaded
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning(
                "Corrupt profiles.json (%s) — resetting to empty list", exc
            )
            self._atomic_write(self._profiles_path, [])
            return []

    # ------------------------------------------------------------------
    # Config access
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for *key*, or *default* if missing."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set *key* to *value* and persist the config file."""
        self._config[key] = value
        self._atomic_write(self._config_path, self._config)
        logger.debug("Config updated: %s = %r", key, value)

    def get_all(self) -> dict[str, Any]:
        """Return a shallow copy of the full config dict."""
        return dict(self._config)

    # ------------------------------------------------------------------
    # Profile management
    # ------------------------------------------------------------------

    def get_profiles(self) -> list[dict[str, Any]]:
        """Return a copy of all saved endpoint profiles."""
        return list(self._profiles)

    def save_profile(self, profile: dict[str, Any]) -> None:
        """Upsert a profile by its ``name`` field.

        If a profile with the same ``name`` already exists it is replaced;
        otherwise the new profile is appended.  Tokens must NOT be in
        *profile*; store them via :meth:`store_token`.
        """
        name = profile.get("name")
        if not name:
            raise ValueError("Profile must have a non-empty 'name' field")

        # Strip any accidental secret keys
        profile = {k: v for k, v in profile.items() if k not in ("token", "password")}

        for i, existing in enumerate(self._profiles):
            if existing.get("name") == name:
                self._profiles[i] = profile
                break
        else:
            self._profiles.append(profile)

        self._atomic_write(self._profiles_path, self._profiles)
        logger.info("Profile saved: %s", name)

    def delete_profile(self, name: str) -> bool:
        """Delete the profile identified by *name* and its stored token.

        Returns ``True`` if a profile was deleted, ``False`` if not found.
        """
        original_len = len(self._profiles)
        self._profiles = [p for p in self._profiles if p.get("name") != name]
        if len(self._profiles) < original_len:
            self._atomic_write(self._profiles_path, self._profiles)
            self.delete_token(name)
            logger.info("Profile deleted: %s", name)
            return True
        logger.warning("delete_profile: profile not found: %s", name)
        return False

    def get_profile(self, name: str) -> dict[str, Any] | None:
        """Return the profile dict for *name*, or ``None`` if not found."""
        for profile in self._profiles:
            if profile.get("name") == name:
                return dict(profile)
        return None

    def profile_for_endpoint(self, endpoint: str) -> dict[str, Any] | None:
        """Return the first profile whose ``endpoint`` matches *endpoint*."""
        wanted = endpoint.rstrip("/")
        for profile in self._profiles:
            if str(profile.get("endpoint", "")).rstrip("/") == wanted:
                return dict(profile)
        return None

    # ------------------------------------------------------------------
    # Credential helpers
    # ------------------------------------------------------------------

    def store_token(self, name: str, token: str) -> None:
        """Store the bearer *token* for profile *name* in the OS keyring."""
        keyring.set_password(_KEYRING_SERVICE, name, token)
        logger.debug("Token stored in keyring for %s", name)

    def delete_token(self, name: str) -> None:
        """Remove the stored token for profile *name* from the OS keyring."""
        try:
            keyring.delete_password(_KEYRING_SERVICE, name)
        except PasswordDeleteError:
            pass
        logger.debug("Token deleted from keyring for %s", name)

    def headers_for(self, endpoint: str) -> dict[str, str]:
        """Return extra HTTP headers for uploads to *endpoint*.

        An ``Authorization: Bearer`` header is added when a profile for the
        endpoint has a token in the keyring.
        """
        profile = self.profile_for_endpoint(endpoint)
        if profile is None:
            return {}
        token = keyring.get_password(_KEYRING_SERVICE, profile["name"])
        if not token:
            return {}
        return {"Authorization": f"Bearer {token}"}
