"""
Signal handlers that tie key caches to the authentication session.
"""

from django.contrib.auth.signals import user_logged_out
from django.dispatch import receiver

from core.logging_utils import get_security_logger
from inventory.sessions import get_session_key_stores

logger = get_security_logger()


@receiver(user_logged_out)
def clear_keys_on_logout(sender, request, user, **kwargs):
    """Drop every cached place key of the session that is signing out."""
    session = getattr(request, 'session', None) if request is not None else None
    session_key = getattr(session, 'session_key', None)
    if get_session_key_stores().discard(session_key):
        logger.security_event(
            "Cleared place keys on sign-out",
            extra_data={"user_pk": getattr(user, 'pk', None)},
        )
