import logging.config
import sys

from . import config


def build_logging_config(level: str = "INFO", fmt: str = "json") -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "pythonjsonlogger.json.JsonFormatter",
                "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
                "rename_fields": {"asctime": "timestamp", "levelname": "level"},
                "json_ensure_ascii": False,
            },
            "console": {
                "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "json" if fmt == "json" else "console",
                "stream": sys.stdout,
            },
        },
        "loggers": {
            "workflowdebugger": {"level": level, "propagate": True},
            "stripe": {"level": "WARNING", "propagate": True},
        },
        "root": {"handlers": ["default"], "level": level},
    }


def configure_logging(level=None, fmt=None):
    """Install the process-wide logging setup. Called once from the app lifespan."""
    logging.config.dictConfig(
        build_logging_config(level or config.LOG_LEVEL, fmt or config.LOG_FORMAT)
    )
