"""
Centralized logging utilities for the inventory tracker.
Provides consistent logging patterns for the encryption subsystem and the
inventory services built on top of it.
"""

import logging
from typing import Any, Dict, Optional


class AppLogger:
    """Logger wrapper that keeps message formatting and context consistent."""

    def __init__(self, logger_name: str):
        """
        Initialize the app logger.

        Args:
            logger_name: Name of the logger (e.g., 'inventory', 'inventory.crypto')
        """
        self.logger = logging.getLogger(logger_name)
        self.security_logger = logging.getLogger('inventory.security')
        self.alerts_logger = logging.getLogger('alerts')

    def debug(self, message: str, place_id: Optional[str] = None, extra_data: Optional[Dict[str, Any]] = None):
        self._log('debug', message, place_id, extra_data)

    def info(self, message: str, place_id: Optional[str] = None, extra_data: Optional[Dict[str, Any]] = None):
        """Log an info message."""
        self._log('info', message, place_id, extra_data)

    def warning(self, message: str, place_id: Optional[str] = None, extra_data: Optional[Dict[str, Any]] = None):
        """Log a warning message."""
        self._log('warning', message, place_id, extra_data)

    def error(self, message: str, place_id: Optional[str] = None, extra_data: Optional[Dict[str, Any]] = None):
        """Log an error message."""
        self._log('error', message, place_id, extra_data)

    def critical(self, message: str, place_id: Optional[str] = None, extra_data: Optional[Dict[str, Any]] = None):
        """Log a critical message and mirror it to the alerts logger."""
        formatted_message, context = self._prepare_message(message, place_id, extra_data)
        self.logger.critical(formatted_message, extra=context)
        self.alerts_logger.error(f"CRITICAL: {message}", extra=context)

    def security_event(self, message: str, place_id: Optional[str] = None, extra_data: Optional[Dict[str, Any]] = None):
        """Log a key-lifecycle or access event to the security log."""
        formatted_message, context = self._prepare_message(f"SECURITY EVENT: {message}", place_id, extra_data)
        self.security_logger.warning(formatted_message, extra=context)

    def encryption_event(self, event: str, place_id: Optional[str] = None, success: bool = True,
                         extra_data: Optional[Dict[str, Any]] = None):
        """Log encryption-related events."""
        status = "SUCCESS" if success else "FAILURE"
        message = f"ENCRYPTION {status}: {event}"
        if success:
            self.info(message, place_id, extra_data)
        else:
            self.warning(message, place_id, extra_data)

    def _log(self, level: str, message: str, place_id: Optional[str], extra_data: Optional[Dict[str, Any]]):
        formatted_message, context = self._prepare_message(message, place_id, extra_data)
        getattr(self.logger, level)(formatted_message, extra=context)

    def _prepare_message(self, message: str, place_id: Optional[str], extra_data: Optional[Dict[str, Any]]):
        """Return the formatted message and the ``extra`` mapping for the record."""
        context: Dict[str, Any] = {}
        if place_id is not None:
            context['place_id'] = place_id
        if extra_data:
            context.update(extra_data)

        formatted_message = f"[Place: {place_id}] {message}" if place_id is not None else message
        if extra_data:
            extra_info = ", ".join(f"{k}: {v}" for k, v in extra_data.items())
            formatted_message += f" | Extra: {extra_info}"

        return formatted_message, ({'context': context} if context else None)


# Convenience functions for getting loggers
def get_inventory_logger():
    """Get the inventory service logger."""
    return AppLogger('inventory')


def get_crypto_logger():
    """Get the field encryption logger."""
    return AppLogger('inventory.crypto')


def get_migration_logger():
    """Get the encryption backfill logger."""
    return AppLogger('inventory.migration')


def get_security_logger():
    """Get a logger specifically for security events."""
    return AppLogger('inventory.security')
