"""
JSON logging for Ledger device sessions.

Every record carries its ``event`` name at the top level; device context
passed through ``extra`` (session, device, model, transport) is grouped under
a ``device`` object so session traces can be filtered by ``device.session_id``.

Usage:
    from ledger_provider.core.logging_config import setup_logging

    setup_logging(level="DEBUG", log_file="ledger.log")
    logger.info("Device connected", extra={"event": "ledger.session.connected", "device_id": "..."})
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

DEVICE_FIELDS = ("session_id", "device_id", "model_id", "transport")


class DeviceJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that nests device context and tags the run environment."""

    def __init__(self, environment: str = "production"):
        super().__init__(fmt="%(asctime)s %(levelname)s %(name)s %(message)s", timestamp=True)
        self.environment = environment

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record.pop("asctime", None)
        log_record["level"] = log_record.pop("levelname", record.levelname).lower()
        log_record["environment"] = self.environment

        device = {key: log_record.pop(key) for key in DEVICE_FIELDS if key in log_record}
        if device:
            log_record["device"] = device
        log_record["source"] = {"function": record.funcName, "line": record.lineno}


def setup_logging(
    name: str = "ledger_provider",
    level: str = "WARNING",
    log_file: Optional[str] = None,
    environment: str = "production",
    enable_console: bool = True,
) -> logging.Logger:
    """
    Attach JSON handlers to the package logger.

    Console output goes to stderr; stdout is left to command output. A
    ``log_file`` adds a rotating file handler (5 x 10 MiB).
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper()))
    logger.handlers = []

    formatter = DeviceJsonFormatter(environment=environment)
    handlers: list[logging.Handler] = []
    if enable_console:
        handlers.append(logging.StreamHandler(sys.stderr))
    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.handlers.RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5))
        except OSError as e:
            logger.warning("Could not open log file %s: %s", log_file, e)

    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger
