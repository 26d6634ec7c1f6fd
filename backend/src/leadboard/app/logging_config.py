# backend/src/leadboard/app/logging_config.py
import logging
import logging.config
import os

_LEVEL = os.getenv("LB_LOG_LEVEL", "INFO").upper()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,  # mantiene loggers de uvicorn/fastapi/httpx
    "filters": {
        "cid": {
            "()": "leadboard.observability.logging_context.CorrelationIdLogFilter"
        }
    },
    "formatters": {
        "default": {
            # cid del request, o refresh:<dataset>:<hours> en tareas de background
            "format": "%(asctime)s %(levelname)s [cid=%(correlation_id)s] %(name)s: %(message)s"
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "level": "DEBUG",
            "filters": ["cid"],
            "formatter": "default",
        },
    },
    "root": {
        "level": "WARNING",
        "handlers": ["console"]
    },
    "loggers": {
        "uvicorn.error": {
            "level": "INFO",
            "handlers": ["console"],
            "propagate": False
        },
        "uvicorn.access": {
            "level": "INFO",
            "handlers": ["console"],
            "propagate": False
        },
        # httpx loguea cada request en INFO; con paginado de 1000 filas es ruido
        "httpx": {
            "level": "WARNING",
            "handlers": ["console"],
            "propagate": False
        },
        "leadboard": {
            "level": _LEVEL,
            "handlers": ["console"],
            "propagate": False
        }
    }
}


def setup_logging() -> None:
    logging.config.dictConfig(LOGGING)
