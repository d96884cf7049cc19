from __future__ import annotations

import copy
import errno
import os
import threading
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from calbridge.errors import ConfigError
from calbridge.models import SUPPORTED_SERVICES, AppConfig, default_app_config

SECRET_FIELDS = (("google", "client_secret"), ("microsoft", "client_secret"))
MASK = "***"


def _section_keys() -> dict[str, set[str]]:
    return {item.name: {key.name for key in fields(item.default_factory())} for item in fields(AppConfig)}


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def validate_payload(payload: dict[str, Any]) -> None:
    """Reject sections or keys calbridge does not know, before anything is merged."""
    known = _section_keys()
    for section, values in payload.items():
        if section not in known:
            raise ConfigError(f"unknown config section: {section}", section)
        if not isinstance(values, dict):
            raise ConfigError(f"config section {section} must be a mapping", section)
        unknown = sorted(set(values) - known[section])
        if unknown:
            raise ConfigError(f"unknown keys in {section}: {', '.join(unknown)}", section)


def check_credentials(config: AppConfig) -> None:
    for service in sorted(SUPPORTED_SERVICES):
        section = getattr(config, service)
        if section.client_secret and not section.client_id:
            raise ConfigError(f"{service} client_secret is set without a client_id", service)


def _dump(config_dict: dict[str, Any], path: Path) -> None:
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config_dict, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            return AppConfig.from_dict(data)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            _dump(config_dict, tmp_path)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be replaced atomically.
                if exc.errno != errno.EBUSY:
                    raise
                _dump(config_dict, self.config_path)
                tmp_path.unlink(missing_ok=True)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        validate_payload(payload)
        with self._lock:
            merged = _deep_merge(self.load().to_dict(), payload)
            try:
                config = AppConfig.from_dict(merged)
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"invalid config value: {exc}") from exc
            check_credentials(config)
            self.save(config)
            return config

    def has_credentials(self, service: str) -> bool:
        if service not in SUPPORTED_SERVICES:
            return False
        section = getattr(self.load(), service)
        return bool(section.client_id and section.client_secret)

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, key in SECRET_FIELDS:
            if config.get(section, {}).get(key):
                config[section][key] = MASK
        return config
