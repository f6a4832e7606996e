# Utilities
from .logger import setup_logging, get_logger, AuthEventLogger

__all__ = ["setup_logging", "get_logger", "AuthEventLogger"]
