"""Key stores scoped to authenticated sessions.

A session's ``KeyStore`` is dropped and cleared when the user signs out, when a
request flushes or rotates the session, once the session backend no longer
holds a signed-in session for it, or when the registry is full and the store
is the least recently used.
"""

import threading
import time
from collections import OrderedDict
from importlib import import_module
from typing import Callable, List, Optional

from django.conf import settings
from django.contrib.auth import SESSION_KEY

from core.logging_utils import get_security_logger
from inventory.document_store import BaseDocumentStore, get_document_store
from inventory.key_store import KeyStore

logger = get_security_logger()

DEFAULT_MAX_SESSIONS = 256
DEFAULT_PRUNE_INTERVAL = 60


def session_is_authenticated(session_key: str) -> bool:
    """Whether the session backend still holds a signed-in session for ``session_key``.

    Missing, expired and flushed sessions all load as empty.
    """
    engine = import_module(settings.SESSION_ENGINE)
    return engine.SessionStore(session_key=session_key).get(SESSION_KEY) is not None


class SessionKeyStores:
    """Bounded map of session key -> ``KeyStore``."""

    def __init__(
        self,
        store: Optional[BaseDocumentStore] = None,
        *,
        max_sessions: Optional[int] = None,
        prune_interval: Optional[float] = None,
        is_live: Callable[[str], bool] = session_is_authenticated,
    ):
        self._store = store
        self._max_sessions = max_sessions or getattr(settings, 'INVENTORY_KEY_STORE_MAX_SESSIONS', DEFAULT_MAX_SESSIONS)
        if prune_interval is None:
            prune_interval = getattr(settings, 'INVENTORY_KEY_STORE_PRUNE_INTERVAL', DEFAULT_PRUNE_INTERVAL)
        self._prune_interval = prune_interval
        self._is_live = is_live
        self._key_stores: 'OrderedDict[str, KeyStore]' = OrderedDict()
        self._lock = threading.Lock()
        self._last_prune = time.monotonic()

    def __len__(self):
        return len(self._key_stores)

    def __contains__(self, session_key):
        return session_key in self._key_stores

    def get(self, session_key: str) -> KeyStore:
        """Return the session's key store, creating it if needed."""
        with self._lock:
            key_store = self._key_stores.get(session_key)
            if key_store is None:
                key_store = KeyStore(self._store or get_document_store())
                self._key_stores[session_key] = key_store
            self._key_stores.move_to_end(session_key)
            evicted = self._pop_overflow()

        for stale in evicted:
            stale.clear()
        if evicted:
            logger.info("Evicted session key stores", extra_data={"count": len(evicted)})

        if time.monotonic() - self._last_prune >= self._prune_interval:
            self.prune(keep=session_key)
        return key_store

    def discard(self, session_key: Optional[str]) -> bool:
        """Clear and drop the session's key store; return whether one existed."""
        if not session_key:
            return False
        with self._lock:
            key_store = self._key_stores.pop(session_key, None)
        if key_store is None:
            return False
        key_store.clear()
        return True

    def prune(self, keep: Optional[str] = None) -> int:
        """Drop the stores of sessions that are no longer signed in; return how many."""
        with self._lock:
            self._last_prune = time.monotonic()
            candidates = [session_key for session_key in self._key_stores if session_key != keep]

        removed = sum(self.discard(session_key) for session_key in candidates if not self._is_live(session_key))
        if removed:
            logger.info("Pruned key stores of ended sessions", extra_data={"count": removed})
        return removed

    def _pop_overflow(self) -> List[KeyStore]:
        evicted = []
        while len(self._key_stores) > self._max_sessions:
            _, key_store = self._key_stores.popitem(last=False)
            evicted.append(key_store)
        return evicted


_session_key_stores = SessionKeyStores()


def get_session_key_stores() -> SessionKeyStores:
    return _session_key_stores
