# settlement/core/logging_config.py

from logging.config import dictConfig

from settlement.core.config import settings


def build_logging_config(level: str = "INFO") -> dict:
    """
    Console logging for the service. Ledger and settlement events are logged
    by the `settlement.*` loggers at `level`; noisy libraries are held at WARNING.
    """
    level = level.upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "uvicorn": {"handlers": ["console"], "level": "INFO"},
            "apscheduler": {"handlers": ["console"], "level": "WARNING", "propagate": False},
            "sqlalchemy.engine": {"handlers": ["console"], "level": "WARNING", "propagate": False},
            "httpx": {"handlers": ["console"], "level": "WARNING", "propagate": False},
            "settlement": {"handlers": ["console"], "level": level, "propagate": False},
        },
        "root": {
            "level": "INFO",
            "handlers": ["console"],
        },
    }


def setup_logging():
    """Applies the logging configuration."""
    dictConfig(build_logging_config(settings.LOG_LEVEL))
