"""
Structured logging configuration.
JSON logs in production, human-readable in development.
"""

from __future__ import annotations

import logging
import sys

import json_log_formatter

from geosuggest.config import APP_VERSION, get_settings


class ServiceJSONFormatter(json_log_formatter.JSONFormatter):
    """One JSON object per line, tagged with the emitting logger and service version."""

    def json_record(self, message, extra, record):
        extra = super().json_record(message, extra, record)
        extra["level"] = record.levelname
        extra["logger"] = record.name
        extra["service"] = "geosuggest"
        extra["version"] = APP_VERSION
        return extra


def setup_logging() -> None:
    """Configure logging based on environment."""
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.env == "production":
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ServiceJSONFormatter())

        root = logging.getLogger()
        root.setLevel(level)
        root.handlers = [handler]
    else:
        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)-8s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            handlers=[logging.StreamHandler(sys.stdout)],
        )

    # index builds log per source; keep HTTP client chatter out
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(
        logging.INFO if settings.env != "production" else logging.WARNING
    )
