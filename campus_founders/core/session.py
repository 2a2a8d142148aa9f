"""
Persisted session token.

The token lives in a Django cache (file-based by default) under a fixed key
so that it survives restarts, the way a browser keeps it in local storage.
"""
import logging

from django.conf import settings
from django.core.cache import caches

logger = logging.getLogger(__name__)

TOKEN_STORAGE_KEY = 'token'


class SessionStore:
    """Read/write access to the stored bearer token"""

    def __init__(self, cache=None):
        self.cache = cache or caches[getattr(settings, 'SESSION_CACHE_ALIAS', 'session')]

    def get_token(self):
        return self.cache.get(TOKEN_STORAGE_KEY)

    def set_token(self, token):
        if not token:
            return
        if token != self.get_token():
            logger.debug("Stored rotated session token")
        self.cache.set(TOKEN_STORAGE_KEY, token, None)

    def clear(self):
        self.cache.delete(TOKEN_STORAGE_KEY)
        logger.info("Session token cleared")

    @property
    def has_token(self):
        return bool(self.get_token())
