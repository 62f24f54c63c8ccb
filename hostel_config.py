"""Runtime settings and logging setup.

Environment:
  DB_BACKEND=memory|mongodb
  MONGODB_URI=... (when DB_BACKEND=mongodb)
  DB_NAME=hostel_system
  COLLECTION_PREFIX=dev_
  LOG_LEVEL=INFO
  LOG_FORMAT=text|json
"""

from __future__ import annotations

import logging.config
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv
from pythonjsonlogger import jsonlogger

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


@dataclass(frozen=True)
class Settings:
    db_backend: str = "memory"
    mongodb_uri: Optional[str] = None
    db_name: str = "hostel_system"
    collection_prefix: str = ""
    log_level: str = "INFO"
    log_format: str = "text"


def load_settings() -> Settings:
    """Read settings from the environment, after loading an optional .env file."""
    load_dotenv()
    settings = Settings(
        db_backend=os.getenv("DB_BACKEND", "memory").lower(),
        mongodb_uri=os.getenv("MONGODB_URI"),
        db_name=os.getenv("DB_NAME", "hostel_system"),
        collection_prefix=os.getenv("COLLECTION_PREFIX", ""),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_format=os.getenv("LOG_FORMAT", "text").lower(),
    )
    if settings.db_backend not in ("memory", "mongodb"):
        raise RuntimeError(f"Unsupported DB_BACKEND: {settings.db_backend}")
    if settings.db_backend == "mongodb" and not settings.mongodb_uri:
        raise RuntimeError("DB_BACKEND=mongodb requires MONGODB_URI")
    return settings


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Install a console handler with either plain text or JSON records."""
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "text": {"format": TEXT_FORMAT},
                "json": {"()": jsonlogger.JsonFormatter, "format": JSON_FORMAT},
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "json" if fmt == "json" else "text",
                    "level": level,
                },
            },
            "root": {"handlers": ["console"], "level": level},
        }
    )
