from __future__ import annotations

import logging
import logging.handlers
import os
import threading
from pathlib import Path

import yaml

from mealcal.errors import InvalidConfigError
from mealcal.models import AppConfig, LoggingSettings, default_app_config


logger = logging.getLogger(__name__)


class ConfigManager:
    """Read-only view of the service YAML file.

    A missing file means defaults. The parsed config is cached and re-read only when the
    file's modification time or size changes, so edits apply without a restart.
    """

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._cached: AppConfig | None = None
        self._signature: tuple[int, int] | None = None

    def _file_signature(self) -> tuple[int, int] | None:
        try:
            stat = self.config_path.stat()
        except FileNotFoundError:
            return None
        return stat.st_mtime_ns, stat.st_size

    def load(self) -> AppConfig:
        with self._lock:
            signature = self._file_signature()
            if self._cached is not None and signature == self._signature:
                return self._cached
            if signature is None:
                logger.info("Config file %s not found, using defaults", self.config_path)
                config = default_app_config()
            else:
                with self.config_path.open("r", encoding="utf-8") as handle:
                    data = yaml.safe_load(handle) or {}
                if not isinstance(data, dict):
                    raise InvalidConfigError([f"{self.config_path} must contain a mapping"])
                config = AppConfig.from_dict(data)
            self._cached = config
            self._signature = signature
            return config


def setup_logging(settings: LoggingSettings) -> None:
    """Configure the root logger from the ``logging`` section of the service config."""
    log_level = getattr(logging, settings.level, logging.INFO)
    formatter = logging.Formatter(settings.format)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if settings.file_path:
        log_path = Path(settings.file_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=settings.max_bytes,
            backupCount=settings.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    logging.getLogger("urllib3").setLevel(logging.WARNING)
