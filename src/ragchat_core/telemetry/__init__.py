"""Telemetry package: structured logging."""

from ragchat_core.telemetry.logger import RequestContext, get_logger, setup_logging

__all__ = ["RequestContext", "get_logger", "setup_logging"]
