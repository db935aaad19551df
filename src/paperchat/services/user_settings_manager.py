import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from src.paperchat.config import SETTINGS_FILE

logger = logging.getLogger(__name__)


def _default_settings() -> Dict[str, Any]:
    return {
        "model": "",
        "thinking_mode_enabled": False,
        "providers_config": None,
    }


def _normalize_providers_config(value: Any) -> Optional[Dict[str, Any]]:
    if value is not None and not isinstance(value, dict):
        logger.warning("Discarding providers_config that is not a JSON object.")
        return None
    return value


def _resolve_path(path: Optional[Path]) -> Path:
    return Path(path) if path is not None else SETTINGS_FILE


def load_user_settings(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load user settings from disk, normalizing values into the expected types.
    """
    settings_file = _resolve_path(path)
    settings = _default_settings()

    if not settings_file.exists():
        return settings

    try:
        with open(settings_file, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (IOError, json.JSONDecodeError) as exc:
        logger.warning("Failed to read user settings from %s: %s", settings_file, exc)
        return settings

    if not isinstance(data, dict):
        logger.warning("User settings file %s does not contain a JSON object.", settings_file)
        return settings

    model = data.get("model")
    if isinstance(model, str):
        settings["model"] = model.strip()
    if data.get("thinking_mode_enabled") is not None:
        settings["thinking_mode_enabled"] = bool(data["thinking_mode_enabled"])
    settings["providers_config"] = _normalize_providers_config(data.get("providers_config"))

    # Unknown keys set through UserSettingsManager.set are preserved as-is.
    for key, value in data.items():
        if key not in settings:
            settings[key] = value

    return settings


def save_user_settings(settings: Dict[str, Any], path: Optional[Path] = None) -> None:
    """
    Persist the user settings payload to disk.
    """
    settings_file = _resolve_path(path)
    payload = _default_settings()
    payload.update(settings)
    payload["thinking_mode_enabled"] = bool(payload.get("thinking_mode_enabled"))
    payload["providers_config"] = _normalize_providers_config(payload.get("providers_config"))

    settings_file.parent.mkdir(parents=True, exist_ok=True)
    with open(settings_file, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=4)

    logger.debug("User settings saved to %s", settings_file)


def update_user_preferences(updates: Dict[str, Any], path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Merge and persist preference updates.
    """
    settings = load_user_settings(path)
    settings.update(updates)
    save_user_settings(settings, path)
    return load_user_settings(path)


class UserSettingsManager:
    """
    Typed get/set access to the settings file, injected wherever preferences are needed.

    Values are cached after the first read; every set() writes through to disk.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = _resolve_path(path)
        self._settings: Optional[Dict[str, Any]] = None

    def _load(self) -> Dict[str, Any]:
        if self._settings is None:
            self._settings = load_user_settings(self.path)
        return self._settings

    def get(self, key: str, default: Any = None) -> Any:
        value = self._load().get(key)
        return default if value is None else value

    def set(self, key: str, value: Any) -> None:
        self.update({key: value})

    def update(self, updates: Dict[str, Any]) -> None:
        self._settings = update_user_preferences(updates, self.path)

    def reload(self) -> Dict[str, Any]:
        self._settings = None
        return dict(self._load())
