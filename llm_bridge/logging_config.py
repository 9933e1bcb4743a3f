import logging
import logging.config

from llm_bridge.config import get_settings


def setup_logging():
    """
    Configure library log format
    Applies one format to the llm_bridge loggers and httpx so request traces line up.
    """
    settings = get_settings()
    log_level = "DEBUG" if settings.DEBUG else settings.LOG_LEVEL

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "standard",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "httpx": {
                "handlers": ["console"],
                "level": "WARNING",
                "propagate": False,
            },
            "llm_bridge": {
                "handlers": ["console"],
                "level": log_level,
                "propagate": False,
            },
        },
    }

    logging.config.dictConfig(logging_config)
    logging.getLogger(__name__).debug("Logging configured: level=%s", log_level)
