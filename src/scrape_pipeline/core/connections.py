from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import yaml
from pydantic import ValidationError

from scrape_pipeline.config_models import ConnectionProfile, format_validation_error
from scrape_pipeline.core.errors import ConfigurationError


class ConnectionRegistry:
    """Named database connection profiles shared by database sinks."""

    def __init__(self, profiles: Optional[Dict[str, ConnectionProfile]] = None):
        self._profiles: Dict[str, ConnectionProfile] = dict(profiles or {})

    def register(self, name: str, profile: ConnectionProfile | Dict[str, Any]) -> None:
        key = str(name or "").strip()
        if not key:
            raise ValueError("Connection name cannot be empty")
        if not isinstance(profile, ConnectionProfile):
            profile = _parse_profile(key, profile)
        self._profiles[key] = profile

    def get(self, name: str) -> ConnectionProfile:
        key = str(name or "").strip()
        if key not in self._profiles:
            known = ", ".join(sorted(self._profiles)) or "<none>"
            raise KeyError(f"Connection profile not found: '{key}'. Known connections: {known}")
        return self._profiles[key]

    def names(self) -> Iterable[str]:
        return self._profiles.keys()

    def __contains__(self, name: object) -> bool:
        return name in self._profiles

    @classmethod
    def from_mapping(cls, connections: Dict[str, Any]) -> "ConnectionRegistry":
        registry = cls()
        for name, raw in (connections or {}).items():
            registry.register(name, raw)
        return registry

    @classmethod
    def from_yaml(cls, path: str) -> "ConnectionRegistry":
        """
        Load profiles from an outputs config file.

        Expected layout:

            database:
              connections:
                main:
                  host: localhost
                  database: scraping
        """
        try:
            with Path(path).open("r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {path}: {e}")
        connections = (raw.get("database") or {}).get("connections") or {}
        return cls.from_mapping(connections)


def _parse_profile(name: str, raw: Dict[str, Any]) -> ConnectionProfile:
    try:
        return ConnectionProfile.model_validate(raw or {})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid connection profile '{name}':\n" + format_validation_error(e)) from e
