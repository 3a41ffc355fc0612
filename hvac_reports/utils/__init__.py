"""Shared utilities for the report engine."""
from .log_utils import get_logger, setup_logging

__all__ = ["get_logger", "setup_logging"]
