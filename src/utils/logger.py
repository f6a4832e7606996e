"""
Structured logging for the CLOB auth preflight.
Supports JSON logging for log aggregation.
"""

import logging
import sys
from typing import Optional
from pythonjsonlogger import jsonlogger

ROOT_LOGGER_NAME = "polymarket_auth"


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with additional fields."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['timestamp'] = self.formatTime(record, self.datefmt)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    logger_name: Optional[str] = None
) -> logging.Logger:
    """
    Set up logging configuration.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Whether to use JSON format
        logger_name: Optional specific logger name

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name or ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper()))

    # Remove existing handlers
    logger.handlers = []

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        formatter = CustomJsonFormatter(
            '%(timestamp)s %(level)s %(name)s %(message)s'
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a child logger with the given name."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


class AuthEventLogger:
    """Specialized logger for auth pipeline events."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or get_logger("auth.events")

    def identity_resolved(
        self,
        signer_address: str,
        effective_address: str,
        signature_type: str,
        used_override: bool
    ):
        """Log the resolved wallet identity."""
        self.logger.info(
            "Identity resolved",
            extra={
                "event": "identity_resolved",
                "signer_address": signer_address,
                "effective_address": effective_address,
                "signature_type": signature_type,
                "used_override": used_override
            }
        )

    def ladder_attempt(
        self,
        index: int,
        total: int,
        label: str,
        signature_type: int,
        auth_address: str,
        signer_address: str
    ):
        """Log the start of one fallback ladder rung."""
        self.logger.info(
            f"Auth attempt {index}/{total}: {label}",
            extra={
                "event": "ladder_attempt",
                "label": label,
                "signature_type": signature_type,
                "auth_address": auth_address,
                "signer_address": signer_address
            }
        )

    def ladder_result(
        self,
        label: str,
        success: bool,
        status_code: Optional[int] = None,
        error: Optional[str] = None
    ):
        """Log the outcome of one fallback ladder rung."""
        if success:
            self.logger.info(
                f"Auth attempt succeeded: {label}",
                extra={"event": "ladder_result", "label": label, "success": True}
            )
            return
        self.logger.warning(
            f"Auth attempt failed: {label}",
            extra={
                "event": "ladder_result",
                "label": label,
                "success": False,
                "status_code": status_code,
                "error": error
            }
        )

    def preflight_result(
        self,
        status: str,
        http_status: Optional[int],
        reason: Optional[str] = None,
        message: Optional[str] = None,
        level: int = logging.INFO
    ):
        """Log a classified preflight outcome."""
        self.logger.log(
            level,
            f"Preflight {status}",
            extra={
                "event": "preflight_result",
                "status": status,
                "http_status": http_status,
                "reason": reason,
                "error": message
            }
        )

    def preflight_suppressed(self, summary: str, suppressed_count: int):
        """Log the one-line summary for a rate-limited repeat failure."""
        self.logger.warning(
            summary,
            extra={"event": "preflight_suppressed", "suppressed_count": suppressed_count}
        )

    def matrix_complete(self, ok: bool, attempts: int, winner: Optional[str] = None):
        """Log the end of a matrix probe."""
        self.logger.log(
            logging.INFO if ok else logging.ERROR,
            "Auth matrix probe finished",
            extra={
                "event": "matrix_complete",
                "ok": ok,
                "attempts": attempts,
                "winner": winner
            }
        )
