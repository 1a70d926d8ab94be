"""
Centralized logging utilities for the vault application.
Provides consistent logging patterns and helper functions.
"""

import logging
from typing import Optional, Dict, Any

# Never written to a log line, whatever the caller passes in extra_data.
REDACTED_KEYS = frozenset({
    'code',
    'one_time_code',
    'password',
    'plaintext',
    'content',
    'ciphertext',
    'key_material',
})
REDACTED_VALUE = '[REDACTED]'


def redact(extra_data: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Return a copy of ``extra_data`` with secret-bearing keys masked."""
    if not extra_data:
        return extra_data
    return {
        key: (REDACTED_VALUE if key.lower() in REDACTED_KEYS else value)
        for key, value in extra_data.items()
    }


class AppLogger:
    """Centralized logger utility for consistent logging across the application."""

    def __init__(self, logger_name: str):
        """
        Initialize the app logger.

        Args:
            logger_name: Name of the logger (e.g., 'accounts', 'vault', 'core')
        """
        self.logger = logging.getLogger(logger_name)
        self.security_logger = logging.getLogger('django.security')
        self.alerts_logger = logging.getLogger('alerts')

    def info(self, message: str, user: Optional[Any] = None, extra_data: Optional[Dict[str, Any]] = None):
        self._log(logging.INFO, message, user, extra_data)

    def warning(self, message: str, user: Optional[Any] = None, extra_data: Optional[Dict[str, Any]] = None):
        self._log(logging.WARNING, message, user, extra_data)

    def error(self, message: str, user: Optional[Any] = None, extra_data: Optional[Dict[str, Any]] = None):
        self._log(logging.ERROR, message, user, extra_data)

    def critical(self, message: str, user: Optional[Any] = None, extra_data: Optional[Dict[str, Any]] = None):
        """Log a critical message and also send to alerts."""
        self._log(logging.CRITICAL, message, user, extra_data)
        self._emit(self.alerts_logger, logging.ERROR, f"CRITICAL: {message}", user, extra_data)

    def security_event(self, message: str, user: Optional[Any] = None, extra_data: Optional[Dict[str, Any]] = None):
        """Log a security-related event directly to security log."""
        self._emit(self.security_logger, logging.WARNING, f"SECURITY EVENT: {message}", user, extra_data)

    def user_activity(self, action: str, user: Any, details: Optional[str] = None):
        """Log user activity with consistent format."""
        message = f"User {getattr(user, 'email', 'unknown')} performed action: {action}"
        if details:
            message += f" - {details}"
        self.info(message, user)

    def encryption_event(self, event: str, user: Optional[Any] = None, success: bool = True):
        """Log codec events (seal, unseal, reseal)."""
        status = "SUCCESS" if success else "FAILURE"
        message = f"ENCRYPTION {status}: {event}"
        if success:
            self.info(message, user)
        else:
            self.error(message, user)

    def verification_event(self, event: str, user: Optional[Any] = None, success: bool = True,
                           extra_data: Optional[Dict[str, Any]] = None):
        """Log one-time code checks. Failures also land in the security log."""
        status = "PASSED" if success else "FAILED"
        message = f"VERIFICATION {status}: {event}"
        if success:
            self.info(message, user, extra_data)
        else:
            self.warning(message, user, extra_data)
            self.security_event(f"Verification failed: {event}", user, extra_data)

    def _log(self, level: int, message: str, user: Optional[Any] = None, extra_data: Optional[Dict[str, Any]] = None):
        self._emit(self.logger, level, message, user, extra_data)

    def _emit(self, target: logging.Logger, level: int, message: str, user: Optional[Any],
              extra_data: Optional[Dict[str, Any]]):
        extra_data = redact(extra_data)
        formatted_message = self._format_message(message, user, extra_data)
        context = self._build_context(user, extra_data)
        if context:
            target.log(level, formatted_message, extra={'context': context})
        else:
            target.log(level, formatted_message)

    def _build_context(self, user: Optional[Any], extra_data: Optional[Dict[str, Any]]):
        context: Dict[str, Any] = {}
        if user is not None:
            context['user_email'] = getattr(user, 'email', None)
            user_identifier = getattr(user, 'pk', getattr(user, 'id', None))
            if user_identifier is not None:
                context['user_pk'] = str(user_identifier)
        if extra_data:
            context.update(extra_data)
        return context

    def _format_message(self, message: str, user: Optional[Any] = None, extra_data: Optional[Dict[str, Any]] = None):
        """Format message with user info and extra data."""
        if user:
            formatted_message = f"[User: {getattr(user, 'email', 'unknown')}] {message}"
        else:
            formatted_message = message

        if extra_data:
            extra_info = ", ".join(f"{k}: {v}" for k, v in extra_data.items())
            formatted_message += f" | Extra: {extra_info}"

        return formatted_message


def get_accounts_logger():
    return AppLogger('accounts')


def get_vault_logger():
    return AppLogger('vault')


def get_core_logger():
    return AppLogger('core')


def get_security_logger():
    """Get a logger specifically for security events."""
    return AppLogger('django.security')
