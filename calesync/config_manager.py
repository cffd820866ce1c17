from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from calesync.models import AppConfig, default_app_config


logger = logging.getLogger(__name__)

MASK = "***"
TOKEN_ENV = "CALESYNC_GOOGLE_ACCESS_TOKEN"


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _dump(config: AppConfig) -> str:
    return yaml.safe_dump(
        config.to_dict(),
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    )


class ConfigManager:
    """YAML-backed settings with atomic writes.

    ``load()`` re-reads the file only when its mtime or size changed, so engines
    can call it on every cycle. A token in ``CALESYNC_GOOGLE_ACCESS_TOKEN``
    overrides the stored one and is never written back.
    """

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._cached: tuple[tuple[int, int], AppConfig] | None = None
        if not self.config_path.exists():
            logger.info("Writing default config to %s", self.config_path)
            self.save(default_app_config())

    def _stamp(self) -> tuple[int, int]:
        stat = self.config_path.stat()
        return stat.st_mtime_ns, stat.st_size

    def _read(self) -> AppConfig:
        with self._lock:
            stamp = self._stamp()
            if self._cached is not None and self._cached[0] == stamp:
                return self._cached[1]
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            if not isinstance(data, dict):
                raise ValueError(f"{self.config_path} must contain a mapping")
            config = AppConfig.from_dict(data)
            self._cached = (stamp, config)
            return config

    def load(self) -> AppConfig:
        config = copy.deepcopy(self._read())
        env_token = os.getenv(TOKEN_ENV, "").strip()
        if env_token:
            config.google.access_token = env_token
        return config

    def save(self, config: AppConfig) -> None:
        text = _dump(config)
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            tmp_path.write_text(text, encoding="utf-8")
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files cannot be replaced atomically.
                if exc.errno != errno.EBUSY:
                    raise
                self.config_path.write_text(text, encoding="utf-8")
                tmp_path.unlink(missing_ok=True)
            self._cached = None

    def update(self, payload: dict[str, Any]) -> AppConfig:
        if not isinstance(payload, dict):
            raise TypeError("config payload must be a mapping")
        with self._lock:
            current = self._read().to_dict()
            config = AppConfig.from_dict(_deep_merge(current, payload))
            self.save(config)
        changed = ", ".join(sorted(payload)) or "nothing"
        logger.info("Config updated: %s", changed)
        return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        if config["google"].get("access_token"):
            config["google"]["access_token"] = MASK
        return config
