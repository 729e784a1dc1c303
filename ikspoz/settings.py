"""User settings persisted as JSON in the user's home directory."""

import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

from .config import Config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AutoInstance:
    """The relay connection used by `ikspoz auto tunnel`."""
    connection_string: str
    endpoint: Optional[str] = None
    entity: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "connectionString": self.connection_string,
            "endpoint": self.endpoint,
            "entity": self.entity,
        }
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict) -> "AutoInstance":
        if not data.get("connectionString"):
            raise ValueError("auto instance is missing connectionString")
        return cls(
            connection_string=data["connectionString"],
            endpoint=data.get("endpoint"),
            entity=data.get("entity"),
        )


@dataclass(frozen=True)
class UserSettings:
    relay_auto_instance: Optional[AutoInstance] = None

    def with_auto_instance(self, auto_instance: Optional[AutoInstance]) -> "UserSettings":
        return replace(self, relay_auto_instance=auto_instance)

    def to_dict(self) -> dict:
        data = {}
        if self.relay_auto_instance is not None:
            data["relayAutoInstance"] = self.relay_auto_instance.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "UserSettings":
        auto = data.get("relayAutoInstance")
        return cls(relay_auto_instance=AutoInstance.from_dict(auto) if auto else None)


class UserSettingsManager:
    """Loads and saves UserSettings from a single JSON file."""

    def __init__(self, settings_file: Optional[str] = None):
        self.settings_file = Path(settings_file or Config.SETTINGS_FILE).expanduser()

    def load(self) -> UserSettings:
        if not self.settings_file.exists():
            return UserSettings()

        try:
            with open(self.settings_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise SettingsError(f"Could not read settings from {self.settings_file}: {e}") from e

        if not isinstance(data, dict):
            raise SettingsError(f"Settings file {self.settings_file} does not contain a JSON object")

        try:
            return UserSettings.from_dict(data)
        except ValueError as e:
            raise SettingsError(f"Invalid settings in {self.settings_file}: {e}") from e

    def save(self, settings: UserSettings):
        self.settings_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.settings_file, "w", encoding="utf-8") as f:
            json.dump(settings.to_dict(), f, indent=2)
            f.write("\n")
        logger.debug(f"Saved user settings to {self.settings_file}")


class SettingsError(Exception):
    pass
