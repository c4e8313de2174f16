from __future__ import annotations

import logging
import os
import tempfile
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOGGER_ROOT = "GNSSShare"
LOG_DIR_ENV_VAR = "GNSS_SHARE_LOG_DIR"
DEBUG_ENV_VAR = "GNSS_SHARE_DEBUG"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class ReleaseLogLevelFilter(logging.Filter):
    """Promote debug logs to INFO in release builds so diagnostics stay visible."""

    def __init__(self, release_mode: bool) -> None:
        super().__init__()
        self._release_mode = release_mode

    def filter(self, record: logging.LogRecord) -> bool:
        if self._release_mode and record.levelno == logging.DEBUG:
            record.levelno = logging.INFO
            record.levelname = "INFO"
        return True


def debug_enabled_from_env() -> bool:
    value = os.getenv(DEBUG_ENV_VAR)
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def resolve_logs_dir(log_dir_name: str = "gnss-share") -> Path:
    """
    Resolve the directory to store link logs.

    Strategy:
    - Use GNSS_SHARE_LOG_DIR if set.
    - Fall back to XDG state/cache locations, then `cwd/logs/<log_dir_name>`.
    - Final fallback: tempdir/<log_dir_name>.
    """
    candidates = []

    env_override = os.environ.get(LOG_DIR_ENV_VAR)
    if env_override:
        candidates.append(Path(env_override).expanduser())

    state_home = Path(os.environ.get("XDG_STATE_HOME", Path.home() / ".local" / "state"))
    cache_home = Path(os.environ.get("XDG_CACHE_HOME", Path.home() / ".cache"))
    candidates.append(state_home / log_dir_name)
    candidates.append(cache_home / log_dir_name)
    candidates.append(Path.cwd() / "logs" / log_dir_name)

    for target in candidates:
        try:
            target.mkdir(parents=True, exist_ok=True)
            return target
        except OSError:
            continue

    temp_fallback = Path(tempfile.gettempdir()) / log_dir_name
    temp_fallback.mkdir(parents=True, exist_ok=True)
    return temp_fallback


def build_rotating_file_handler(
    log_dir: Path,
    filename: str,
    *,
    retention: int = 5,
    max_bytes: int = 512 * 1024,
    formatter: Optional[logging.Formatter] = None,
) -> logging.Handler:
    """Construct a rotating file handler with sane defaults."""
    retention = max(1, retention)
    backup_count = max(0, retention - 1)
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_dir / filename,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    if formatter is not None:
        handler.setFormatter(formatter)
    return handler


def resolve_log_level(debug_enabled: bool) -> int:
    return logging.DEBUG if debug_enabled else logging.INFO


def configure_logging(
    *,
    debug: bool,
    log_file: Optional[str] = None,
    retention: int = 5,
    log_dir: Optional[Path] = None,
) -> logging.Logger:
    """Attach console (and optionally rotating file) handlers to the link logger tree."""
    logger = logging.getLogger(LOGGER_ROOT)
    logger.setLevel(resolve_log_level(debug))
    formatter = logging.Formatter(LOG_FORMAT)
    if not any(getattr(handler, "_gnss_share_handler", False) for handler in logger.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        console._gnss_share_handler = True  # type: ignore[attr-defined]
        logger.addHandler(console)
        if log_file:
            file_handler = build_rotating_file_handler(
                log_dir or resolve_logs_dir(),
                log_file,
                retention=retention,
                formatter=formatter,
            )
            file_handler._gnss_share_handler = True  # type: ignore[attr-defined]
            logger.addHandler(file_handler)
    logger.propagate = False
    return logger


def get_logger(name: str, *, debug: Optional[bool] = None) -> logging.Logger:
    """Return a child of the link logger with the release-mode filter attached."""
    debug_mode = debug_enabled_from_env() if debug is None else debug
    logger = logging.getLogger(f"{LOGGER_ROOT}.{name}")
    if not any(isinstance(existing, ReleaseLogLevelFilter) for existing in logger.filters):
        logger.addFilter(ReleaseLogLevelFilter(release_mode=not debug_mode))
    return logger
