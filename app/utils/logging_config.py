import logging
import logging.config
import os
from pathlib import Path
from typing import Any, Dict, Iterable

LOG_FILES = ("app.log", "error.log", "realtime.log", "audit.log")

# Broadcast and WebSocket loggers, written to realtime.log.
REALTIME_LOGGERS = ("app.utils.broadcast_hub", "app.routers.realtime")


def _prune_backups(log_dir: Path, base_name: str, backup_count: int) -> None:
    if backup_count < 1:
        return
    candidates: Iterable[Path] = sorted(
        log_dir.glob(f"{base_name}.*"),
        key=lambda path: path.stat().st_mtime,
        reverse=True,
    )
    for stale in list(candidates)[backup_count:]:
        try:
            stale.unlink()
        except OSError:
            continue


def _level(env_name: str, default: str) -> str:
    value = os.getenv(env_name, default).strip().upper()
    return value if value in logging.getLevelNamesMapping() else default


def _rotating(
    log_dir: Path, filename: str, level: str, max_bytes: int, backup_count: int
) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "formatter": "default",
        "filename": str(log_dir / filename),
        "maxBytes": max_bytes,
        "backupCount": backup_count,
        "level": level,
        "encoding": "utf8",
    }


def build_logging_config(log_dir: Path, max_bytes: int, backup_count: int) -> Dict[str, Any]:
    """Return the dictConfig used by the retrospective service.

    ``RETRO_LOG_LEVEL`` sets the application level, ``RETRO_REALTIME_LOG_LEVEL``
    the broadcast/WebSocket level and ``RETRO_CLIENT_LOG_LEVEL`` the bundled
    sync client. SQL statements are logged only when ``RETRO_SQL_ECHO`` is set.
    """
    app_level = _level("RETRO_LOG_LEVEL", "DEBUG")
    realtime_level = _level("RETRO_REALTIME_LOG_LEVEL", "INFO")
    sql_level = "INFO" if os.getenv("RETRO_SQL_ECHO") else "WARNING"

    loggers: Dict[str, Any] = {
        "": {  # Root logger
            "handlers": ["console", "file_app", "file_error"],
            "level": "INFO",
            "propagate": True,
        },
        "uvicorn": {
            "handlers": ["console", "file_app"],
            "level": "INFO",
            "propagate": False,
        },
        "uvicorn.access": {
            "handlers": ["file_app"],
            "level": "INFO",
            "propagate": False,
        },
        "uvicorn.error": {
            "handlers": ["console", "file_error"],
            "level": "INFO",
            "propagate": False,
        },
        "audit": {  # One line per HTTP command, written by the audit middleware
            "handlers": ["file_audit"],
            "level": "INFO",
            "propagate": False,
        },
        "database": {
            "handlers": ["console", "file_app", "file_error"],
            "level": "INFO",
            "propagate": False,
        },
        "sqlalchemy.engine": {
            "handlers": ["file_app"],
            "level": sql_level,
            "propagate": False,
        },
        "app": {  # Application logger
            "handlers": ["console", "file_app", "file_error"],
            "level": app_level,
            "propagate": False,
        },
        "app.services": {
            "handlers": ["console", "file_app", "file_error"],
            "level": _level("RETRO_SERVICES_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
        "app.client": {
            "handlers": ["console"],
            "level": _level("RETRO_CLIENT_LOG_LEVEL", "WARNING"),
            "propagate": False,
        },
    }
    for name in REALTIME_LOGGERS:
        loggers[name] = {
            "handlers": ["console", "file_realtime", "file_error"],
            "level": realtime_level,
            "propagate": False,
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "level": "INFO",
            },
            "file_app": _rotating(log_dir, "app.log", "INFO", max_bytes, backup_count),
            "file_error": _rotating(log_dir, "error.log", "ERROR", max_bytes, backup_count),
            "file_realtime": _rotating(log_dir, "realtime.log", "DEBUG", max_bytes, backup_count),
            "file_audit": _rotating(log_dir, "audit.log", "INFO", max_bytes, backup_count),
        },
        "loggers": loggers,
    }


def setup_logging():
    """
    Configures logging for the retrospective service.
    Logs are written under RETRO_LOG_DIR (default 'logs').
    """
    log_dir = Path(os.getenv("RETRO_LOG_DIR", "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)
    max_bytes = int(os.getenv("LOG_MAX_BYTES", str(5 * 1024 * 1024)))
    backup_count = int(os.getenv("LOG_BACKUP_COUNT", "3"))
    for base_name in LOG_FILES:
        _prune_backups(log_dir, base_name, backup_count)

    logging.config.dictConfig(build_logging_config(log_dir, max_bytes, backup_count))
    logging.getLogger("app").info("Logging configured in %s.", log_dir)
