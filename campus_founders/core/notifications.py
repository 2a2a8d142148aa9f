"""
User-facing notifications (toast-style).

Front ends connect a receiver to ``notification`` and render whatever they
receive; nothing here blocks or prompts.
"""
import logging

from django.dispatch import Signal

from .exceptions import GENERIC_ERROR_MESSAGE, get_error_message

logger = logging.getLogger(__name__)

# kwargs: level ("success" | "error"), message, retry (callable or None), error
notification = Signal()


def notify(level, message, retry=None, error=None, sender=None):
    notification.send(sender=sender, level=level, message=message, retry=retry, error=error)


def notify_success(message, sender=None):
    notify('success', message, sender=sender)


def notify_error(error, fallback=GENERIC_ERROR_MESSAGE, retry=None, sender=None):
    """Report a failure with the server's message when present, else ``fallback``"""
    message = get_error_message(error, fallback)
    logger.info(f"Notifying user of {type(error).__name__}: {message}")
    notify('error', message, retry=retry, error=error, sender=sender)
    return message
