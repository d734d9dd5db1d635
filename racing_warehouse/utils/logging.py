"""
Root logger setup for CLI commands and the HTTP server.

``configure_logging(config)`` is called once per process: by each CLI command
after the config is loaded, and by ``serve`` before uvicorn starts (uvicorn is
run with ``log_config=None`` so its loggers propagate here). Library modules
only ever call ``logging.getLogger(__name__)``.

With ``json_format = true`` every record becomes one JSON line::

    {"ts": "2025-06-01T10:15:30Z", "level": "INFO", "logger": "racing_warehouse.pipeline.ingest",
     "msg": "[horse_data/] Merging races", "stage": "ingest", "run_slug": "..."}

Fields passed through ``extra=`` (pipeline stages pass ``stage`` and
``run_slug``) are emitted as top-level keys.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from racing_warehouse.config import LoggingConfig

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# Chatty at INFO; only their warnings are useful here.
QUIET_LOGGERS = ("httpx", "httpcore", "botocore", "boto3", "s3transfer", "urllib3")

_RESERVED = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime"}


class JsonLineFormatter(logging.Formatter):
    """One JSON object per record, ``extra=`` fields included."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
                LOG_DATE_FORMAT
            ),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        payload.update(
            (k, v) for k, v in record.__dict__.items()
            if k not in _RESERVED and not k.startswith("_")
        )
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


def _handler(handler: logging.Handler, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def configure_logging(config: "LoggingConfig", debug: bool = False) -> None:
    """Install stdout (and optionally file) handlers on the root logger.

    Args:
        config: ``[logging]`` section of the app config.
        debug: Force DEBUG regardless of ``config.level`` (``AppConfig.debug``).
    """
    level = logging.DEBUG if debug else getattr(logging, config.level.upper(), logging.INFO)
    formatter: logging.Formatter = (
        JsonLineFormatter() if config.json_format
        else logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    )

    handlers = [_handler(logging.StreamHandler(sys.stdout), level, formatter)]
    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            _handler(logging.FileHandler(log_path, encoding="utf-8"), level, formatter)
        )

    logging.basicConfig(level=level, handlers=handlers, force=True)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv = logging.getLogger(name)
        uv.handlers.clear()
        uv.propagate = True
