"""Per-place data encryption keys.

A ``KeyStore`` owns the key cache for one session (or one backfill run) and is
passed explicitly to whoever needs keys; there is no module-level cache.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from core.logging_utils import get_security_logger
from inventory.crypto_utils import decode_key, encode_key, generate_key
from inventory.document_store import PLACE_KEYS, BaseDocumentStore

logger = get_security_logger()


@dataclass(frozen=True)
class GeneratedKey:
    key: bytes
    key_b64: str


@dataclass(frozen=True)
class KeyProvision:
    """Outcome of ``get_or_create_key``."""

    key: bytes
    created: bool


class KeyStore:
    """Read, create and cache place DEKs."""

    def __init__(self, store: BaseDocumentStore):
        self._store = store
        self._cache: Dict[str, bytes] = {}

    def __contains__(self, place_id):
        return place_id in self._cache

    def __len__(self):
        return len(self._cache)

    @staticmethod
    def generate_key() -> GeneratedKey:
        """Generate a fresh AES-256-GCM key together with its storable form."""
        key = generate_key()
        return GeneratedKey(key=key, key_b64=encode_key(key))

    def store_key(self, place_id: str, key_b64: str) -> None:
        """Persist a key for a place, replacing whatever is stored."""
        self._store.set(PLACE_KEYS, place_id, {'key': key_b64})
        self.cache_key(place_id, decode_key(key_b64))
        logger.security_event("place key stored", place_id)

    def cache_key(self, place_id: str, key: bytes) -> None:
        self._cache[place_id] = key

    def get_key(self, place_id: str) -> Optional[bytes]:
        """Return the place key, or ``None`` when the place has none yet."""
        cached = self._cache.get(place_id)
        if cached is not None:
            return cached

        document = self._store.get(PLACE_KEYS, place_id)
        if document is None:
            return None

        key = decode_key(document.data['key'])
        self.cache_key(place_id, key)
        return key

    def get_or_create_key(self, place_id: str, *, persist: bool = True) -> KeyProvision:
        """Return the place key, creating it if the place has none.

        Creation is conditional at the storage layer, so when another writer
        created the key first that key is returned and cached instead. With
        ``persist=False`` a new key is only cached, never written.
        """
        existing = self.get_key(place_id)
        if existing is not None:
            return KeyProvision(key=existing, created=False)

        generated = self.generate_key()
        if not persist:
            self.cache_key(place_id, generated.key)
            return KeyProvision(key=generated.key, created=True)

        document, created = self._store.create_if_absent(PLACE_KEYS, place_id, {'key': generated.key_b64})
        key = decode_key(document.data['key'])
        self.cache_key(place_id, key)
        if created:
            logger.security_event("place key created", place_id)
        else:
            logger.warning("place key was created concurrently; using the stored key", place_id)
        return KeyProvision(key=key, created=created)

    def clear(self) -> None:
        """Forget every cached key."""
        count = len(self._cache)
        self._cache.clear()
        logger.info("key cache cleared", extra_data={"keys": count})
