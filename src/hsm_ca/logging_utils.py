from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Mapping

from .config import _env_int
from .exceptions import HsmConfigurationError

LOGGER_NAME = "hsm_ca"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _resolve_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    normalized = level.strip().upper()
    if normalized.isdigit():
        return int(normalized)
    numeric_level = logging.getLevelName(normalized)
    if not isinstance(numeric_level, int):
        raise HsmConfigurationError(f"Invalid log level: {level}")
    return numeric_level


@dataclass(frozen=True)
class LoggingSettings:
    """Where and how much the issuer logs. Env prefix: HSM_CA_LOG_."""

    log_file: Path = Path("logs/hsm-ca.log")
    level: int = logging.INFO
    max_bytes: int = 5 * 1024 * 1024
    backup_count: int = 5

    def __post_init__(self) -> None:
        if self.max_bytes < 0:
            raise HsmConfigurationError("HSM_CA_LOG_MAX_BYTES must be >= 0.")
        if self.backup_count < 0:
            raise HsmConfigurationError("HSM_CA_LOG_BACKUP_COUNT must be >= 0.")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "LoggingSettings":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            log_file=Path(env.get("HSM_CA_LOG_FILE") or defaults.log_file),
            level=_resolve_level(env.get("HSM_CA_LOG_LEVEL") or defaults.level),
            max_bytes=_env_int(env, "HSM_CA_LOG_MAX_BYTES", defaults.max_bytes),
            backup_count=_env_int(env, "HSM_CA_LOG_BACKUP_COUNT", defaults.backup_count),
        )


def _existing_file_handler(logger: logging.Logger, path: Path) -> RotatingFileHandler | None:
    resolved = path.resolve()
    for handler in logger.handlers:
        if (
            isinstance(handler, RotatingFileHandler)
            and Path(handler.baseFilename).resolve() == resolved
        ):
            return handler
    return None


def configure_logging(
    *,
    log_file: str | Path | None = None,
    level: str | int | None = None,
    max_bytes: int | None = None,
    backup_count: int | None = None,
) -> logging.Logger:
    """
    Send the ``hsm_ca`` logger namespace to a rotating log file.

    Arguments left as None come from `LoggingSettings.from_env()`. Calling
    this again for the same file only updates the level, so the CLI can
    configure logging on every invocation.
    """
    settings = LoggingSettings.from_env()
    overrides = {
        "log_file": Path(log_file) if log_file is not None else None,
        "level": _resolve_level(level) if level is not None else None,
        "max_bytes": max_bytes,
        "backup_count": backup_count,
    }
    settings = replace(
        settings, **{name: value for name, value in overrides.items() if value is not None}
    )

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(settings.level)
    logger.propagate = False

    handler = _existing_file_handler(logger, settings.log_file)
    if handler is not None:
        handler.setLevel(settings.level)
        return logger

    settings.log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        settings.log_file,
        maxBytes=settings.max_bytes,
        backupCount=settings.backup_count,
        encoding="utf-8",
    )
    handler.setLevel(settings.level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)

    logger.info(
        "Logging to %s (level=%s, max_bytes=%d, backup_count=%d)",
        settings.log_file,
        logging.getLevelName(settings.level),
        settings.max_bytes,
        settings.backup_count,
    )
    return logger
