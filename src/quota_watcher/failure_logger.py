# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

from .error_handler import ApplicationError, HttpStatusError, describe_error

# Child of the library logger; records are JSON and kept out of the console
failure_logger = logging.getLogger("quota_watcher.failures")


class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "message": record.getMessage(),
        }
        return json.dumps(log_record, default=str)


def setup_logging(log_dir: str = "logs", level: int = logging.INFO) -> logging.Logger:
    """
    Sets up the library logger level and a dedicated JSON log for failed fetches.

    Safe to call more than once; the file handler is only added the first time.
    """
    os.makedirs(log_dir, exist_ok=True)

    logging.getLogger("quota_watcher").setLevel(level)

    failure_logger.setLevel(logging.INFO)
    failure_logger.propagate = False

    if not any(isinstance(h, RotatingFileHandler) for h in failure_logger.handlers):
        handler = RotatingFileHandler(
            os.path.join(log_dir, "failures.log"),
            maxBytes=5 * 1024 * 1024,  # 5 MB
            backupCount=2,
            encoding="utf-8",
        )
        handler.setFormatter(JsonFormatter())
        failure_logger.addHandler(handler)

    return failure_logger


def log_fetch_failure(error: BaseException, attempt: int, method: Optional[str] = None):
    """Logs a structured record for a failed quota fetch."""
    log_data = {
        "method": method,
        "attempt_number": attempt,
        "error_type": type(error).__name__,
        "error_message": describe_error(error),
        "status_code": error.status_code if isinstance(error, HttpStatusError) else None,
        "app_code": error.code if isinstance(error, ApplicationError) else None,
        "raw_response": error.body[:500] if isinstance(error, HttpStatusError) else None,
    }
    failure_logger.error(log_data)
