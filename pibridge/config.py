"""Configuration and profile management for PiBridge.

Settings and saved hosts live as JSON files under ``~/.pibridge/``.
Passwords never touch disk; they go to the OS keyring via
:func:`pibridge.session.store_password`.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pibridge.session import KeyFileAuth, PasswordAuth, RemoteHost
from pibridge.transfer import TransferSettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "ssh_timeout": 15,
    "keepalive_interval": 30,
    "transfer_chunk_size": 262144,
    "stall_timeout": 60,
    "max_item_retries": 3,
    "retry_base_delay": 1.0,
    "rsync_size_threshold": 8 * 1024 * 1024,
    "rsync_options": [],
    "local_start_path": str(Path.home()),
    "remote_start_path": "/home/pi",
}

# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Application settings plus named connection profiles.

    Both files are replaced atomically on every write.  A corrupt file is
    logged and reset, never fatal.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        self._base = base_dir or Path.home() / ".pibridge"
        self._config_path = self._base / "config.json"
        self._profiles_path = self._base / "profiles.json"

        self._base.mkdir(parents=True, exist_ok=True)
        self._config: dict[str, Any] = self._load_config()
        self._profiles: list[dict[str, Any]] = self._load_profiles()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _atomic_write(self, path: Path, data: Any) -> None:
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise

    def _load_config(self) -> dict[str, Any]:
        """Read ``config.json`` layered over :data:`DEFAULT_CONFIG`."""
        if not self._config_path.exists():
            logger.debug("No config.json in %s, writing defaults", self._base)
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

        try:
            loaded = json.loads(self._config_path.read_text(encoding="utf-8"))
            if not isinstance(loaded, dict):
                raise ValueError("config root is not a JSON object")
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning("Unreadable config.json (%s), falling back to defaults", exc)
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

        merged = dict(DEFAULT_CONFIG)
        merged.update(loaded)
        return merged

    def _load_profiles(self) -> list[dict[str, Any]]:
        if not self._profiles_path.exists():
            return []
        try:
            loaded = json.loads(self._profiles_path.read_text(encoding="utf-8"))
            if not isinstance(loaded, list):
                raise ValueError("profiles root is not a JSON array")
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning("Unreadable profiles.json (%s), starting with no profiles", exc)
            self._atomic_write(self._profiles_path, [])
            return []
        return [p for p in loaded if isinstance(p, dict)]

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Update one setting and write the file."""
        self._config[key] = value
        self._atomic_write(self._config_path, self._config)
        logger.debug("Config %s = %r", key, value)

    def get_all(self) -> dict[str, Any]:
        return dict(self._config)

    def transfer_settings(self) -> TransferSettings:
        return TransferSettings.from_config(self)

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def get_profiles(self) -> list[dict[str, Any]]:
        return list(self._profiles)

    def save_profile(self, profile: dict[str, Any]) -> None:
        """Insert or replace the profile with the same ``name``.

        Any ``password`` key is dropped before saving.

        Raises:
            ValueError: If ``name`` is missing or empty.
        """
        name = profile.get("name")
        if not name:
            raise ValueError("Profile must have a non-empty 'name' field")

        profile = {k: v for k, v in profile.items() if k != "password"}
        for i, existing in enumerate(self._profiles):
            if existing.get("name") == name:
                self._profiles[i] = profile
                break
        else:
            self._profiles.append(profile)

        self._atomic_write(self._profiles_path, self._profiles)
        logger.info("Saved profile %s", name)

    def delete_profile(self, name: str) -> bool:
        """Remove profile *name*; ``False`` if there was none."""
        remaining = [p for p in self._profiles if p.get("name") != name]
        if len(remaining) == len(self._profiles):
            logger.warning("No profile named %s to delete", name)
            return False
        self._profiles = remaining
        self._atomic_write(self._profiles_path, self._profiles)
        logger.info("Deleted profile %s", name)
        return True

    def get_profile(self, name: str) -> dict[str, Any] | None:
        for profile in self._profiles:
            if profile.get("name") == name:
                return dict(profile)
        return None


# ---------------------------------------------------------------------------
# Profile -> RemoteHost
# ---------------------------------------------------------------------------


def host_from_profile(profile: dict[str, Any]) -> RemoteHost:
    """Build a :class:`RemoteHost` from a saved profile dict.

    A profile with ``key_path`` uses key authentication; otherwise the
    password is looked up in the keyring at connect time.

    Raises:
        ValueError: If the profile has no ``host``.
    """
    host = profile.get("host")
    if not host:
        raise ValueError(f"Profile {profile.get('name')!r} has no host")
    key_path = profile.get("key_path")
    auth = KeyFileAuth(str(Path(key_path).expanduser())) if key_path else PasswordAuth()
    return RemoteHost(
        host=host,
        port=int(profile.get("port", 22)),
        username=profile.get("username", "pi"),
        auth=auth,
    )
