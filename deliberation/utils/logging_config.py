import logging
import logging.config
from pathlib import Path
from typing import Any, Dict, Iterable, List

from deliberation.config.loader import get_logging_settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
AUDIT_FORMAT = "%(asctime)s - %(message)s"

LOG_FILES = {
    "file_app": ("app.log", "INFO"),
    "file_error": ("error.log", "ERROR"),
    "file_audit": ("audit.log", "INFO"),
}


def _prune_backups(log_dir: Path, base_name: str, backup_count: int) -> None:
    """Drop rotated files beyond ``backup_count`` left over from older settings."""
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


def _file_handler(
    log_dir: Path, filename: str, level: str, settings: Dict[str, Any], formatter: str
) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "formatter": formatter,
        "filename": str(log_dir / filename),
        "maxBytes": settings["max_bytes"],
        "backupCount": settings["backup_count"],
        "level": level,
        "encoding": "utf8",
    }


def _logger(handlers: List[str], level: str) -> Dict[str, Any]:
    return {"handlers": handlers, "level": level, "propagate": False}


def build_logging_config(settings: Dict[str, Any]) -> Dict[str, Any]:
    log_dir = Path(settings["directory"])
    level = settings["level"]
    handlers: Dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "level": level,
        },
    }
    for name, (filename, handler_level) in LOG_FILES.items():
        formatter = "audit" if name == "file_audit" else "default"
        handlers[name] = _file_handler(log_dir, filename, handler_level, settings, formatter)

    everywhere = ["console", "file_app", "file_error"]
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {"format": LOG_FORMAT},
            "audit": {"format": AUDIT_FORMAT},
        },
        "handlers": handlers,
        "loggers": {
            "": {"handlers": everywhere, "level": level, "propagate": True},
            "uvicorn": _logger(["console", "file_app"], "INFO"),
            "uvicorn.access": _logger(["console", "file_app"], "INFO"),
            "uvicorn.error": _logger(["console", "file_error"], "INFO"),
            # Facilitator write requests, see audit_action_middleware.
            "audit": _logger(["console", "file_audit"], "INFO"),
            "deliberation": _logger(everywhere, level),
        },
    }


def setup_logging() -> None:
    """
    Configure logging for the deliberation service.

    Console output plus rotating ``app.log``, ``error.log`` and ``audit.log``
    in the configured log directory.
    """
    settings = get_logging_settings()
    log_dir = Path(settings["directory"])
    log_dir.mkdir(parents=True, exist_ok=True)
    for filename, _ in LOG_FILES.values():
        _prune_backups(log_dir, filename, settings["backup_count"])

    logging.config.dictConfig(build_logging_config(settings))
    logging.getLogger("deliberation").info(
        "Logging configured: directory=%s level=%s", log_dir, settings["level"]
    )
