from __future__ import annotations

import copy
import dataclasses
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from calmirror.models import AppConfig, default_app_config


logger = logging.getLogger(__name__)

CONFIG_SECTIONS = tuple(item.name for item in dataclasses.fields(AppConfig))


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def validate_sections(payload: Any) -> dict[str, dict[str, Any]]:
    """Check that ``payload`` only touches known sections, each given as a mapping."""
    if not isinstance(payload, dict):
        raise ValueError("config payload must be a mapping of sections")
    unknown = sorted(str(key) for key in payload if key not in CONFIG_SECTIONS)
    if unknown:
        raise ValueError(f"unknown config section(s): {', '.join(unknown)}")
    for section, values in payload.items():
        if not isinstance(values, dict):
            raise ValueError(f"config section {section!r} must be a mapping")
    return payload


def render_config(config: AppConfig) -> str:
    return yaml.safe_dump(config.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False)


class ConfigManager:
    """YAML-backed ``AppConfig`` with section-level merge updates."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            data = yaml.safe_load(self.config_path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.config_path} must contain a YAML mapping")
        ignored = sorted(str(key) for key in data if key not in CONFIG_SECTIONS)
        if ignored:
            logger.warning("Ignoring unknown config section(s) in %s: %s", self.config_path, ", ".join(ignored))
        return AppConfig.from_dict(data)

    def save(self, config: AppConfig) -> None:
        text = render_config(config)
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.config_path.with_name(self.config_path.name + ".tmp")
            tmp_path.write_text(text, encoding="utf-8")
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # A bind-mounted config file cannot be swapped out; rewrite it in place.
                if exc.errno != errno.EBUSY:
                    raise
                self.config_path.write_text(text, encoding="utf-8")
                tmp_path.unlink(missing_ok=True)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        sections = validate_sections(payload)
        with self._lock:
            merged = _deep_merge(self.load().to_dict(), sections)
            config = AppConfig.from_dict(merged)
            self.save(config)
        logger.info("Updated config section(s): %s", ", ".join(sorted(sections)) or "none")
        return config
