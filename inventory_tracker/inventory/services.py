"""
Inventory service layer.
Reads and writes places, containers, items, groups and activity records,
encrypting their text fields with the owning place's key.
"""

from typing import Any, Dict, List, Optional

from core.logging_utils import get_inventory_logger
from inventory.document_store import (
    ACTIVITY,
    CONTAINERS,
    GROUPS,
    ITEMS,
    PLACES,
    BaseDocumentStore,
    StoredDocument,
    get_document_store,
)
from inventory.exceptions import CryptoError
from inventory.field_codec import (
    CONTAINER_FIELDS,
    GROUP_FIELDS,
    ITEM_FIELDS,
    PLACE_FIELDS,
    decrypt_activity,
    decrypt_fields,
    encrypt_activity,
    encrypt_fields,
)
from inventory.key_store import KeyStore
from inventory.models import new_document_id

logger = get_inventory_logger()

FIELD_SETS = {
    PLACES: PLACE_FIELDS,
    CONTAINERS: CONTAINER_FIELDS,
    ITEMS: ITEM_FIELDS,
    GROUPS: GROUP_FIELDS,
}


class InventoryService:
    """
    Interactive access to inventory records.

    Keys come from the session's ``KeyStore``. A place without a key simply
    has nothing to decrypt: reads return records as stored and no key is
    created on the read path.
    """

    def __init__(self, store: BaseDocumentStore, key_store: KeyStore):
        self.store = store
        self.key_store = key_store

    @classmethod
    def for_request(cls, request) -> 'InventoryService':
        return cls(get_document_store(), request.key_store)

    # Places

    def create_place(self, data: Dict[str, Any], owner=None) -> Dict[str, Any]:
        """
        Create a place together with its data encryption key.

        Args:
            data: Place fields ('name', 'type', optionally 'id')
            owner: The signed-in user creating the place

        Returns:
            The created place with plaintext fields
        """
        record = dict(data)
        record.setdefault('id', new_document_id())
        if owner is not None:
            record['owner_id'] = str(owner.pk)

        generated = self.key_store.generate_key()
        self.key_store.store_key(record['id'], generated.key_b64)

        stored = self.store.create(PLACES, encrypt_fields(record, PLACE_FIELDS, generated.key))
        logger.encryption_event("place created with new key", record['id'])
        return self._decrypt(PLACES, stored, record['id'])

    def get_place(self, place_id: str) -> Optional[Dict[str, Any]]:
        document = self.store.get(PLACES, place_id)
        return self._decrypt(PLACES, document, place_id) if document else None

    def list_places(self, owner_id: str) -> List[Dict[str, Any]]:
        return [self._decrypt(PLACES, document, document.id) for document in self.store.filter(PLACES, owner_id=owner_id)]

    # Containers

    def create_container(self, data: Dict[str, Any]) -> Dict[str, Any]:
        place_id = data.get('place_id')
        if not place_id:
            raise ValueError("Containers require a place_id")
        stored = self.store.create(CONTAINERS, self._encrypt(CONTAINERS, data, place_id))
        return self._decrypt(CONTAINERS, stored, place_id)

    def get_container(self, container_id: str) -> Optional[Dict[str, Any]]:
        document = self.store.get(CONTAINERS, container_id)
        if document is None:
            return None
        return self._decrypt(CONTAINERS, document, document.data.get('place_id'))

    def list_containers(self, place_id: str) -> List[Dict[str, Any]]:
        return [self._decrypt(CONTAINERS, document, place_id) for document in self.store.filter(CONTAINERS, place_id=place_id)]

    # Items

    def create_item(self, data: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(data)
        if not record.get('place_id'):
            record['place_id'] = self._container_place_id(record.get('container_id')) or ''
        stored = self.store.create(ITEMS, self._encrypt(ITEMS, record, record['place_id']))
        return self._decrypt(ITEMS, stored, record['place_id'])

    def update_item(self, item_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Apply a partial update, encrypting any text fields it touches."""
        document = self.store.get(ITEMS, item_id)
        if document is None:
            return None
        place_id = self._item_place_id(document)
        batch = self.store.batch()
        batch.update(ITEMS, item_id, self._encrypt(ITEMS, changes, place_id))
        batch.commit()
        return self.get_item(item_id)

    def get_item(self, item_id: str) -> Optional[Dict[str, Any]]:
        document = self.store.get(ITEMS, item_id)
        if document is None:
            return None
        return self._decrypt(ITEMS, document, self._item_place_id(document))

    def list_items(self, container_id: str) -> List[Dict[str, Any]]:
        place_id = self._container_place_id(container_id)
        return [self._decrypt(ITEMS, document, document.data.get('place_id') or place_id)
                for document in self.store.filter(ITEMS, container_id=container_id)]

    # Groups

    def create_group(self, data: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(data)
        if not record.get('place_id'):
            if record.get('type') == 'container':
                record['place_id'] = record.get('parent_id') or ''
            elif record.get('type') == 'item':
                record['place_id'] = self._container_place_id(record.get('parent_id')) or ''
        stored = self.store.create(GROUPS, self._encrypt(GROUPS, record, record.get('place_id')))
        return self._decrypt(GROUPS, stored, record.get('place_id'))

    def list_groups(self, place_id: str) -> List[Dict[str, Any]]:
        return [self._decrypt(GROUPS, document, place_id) for document in self.store.filter(GROUPS, place_id=place_id)]

    # Activity

    def record_activity(self, data: Dict[str, Any], user=None) -> Dict[str, Any]:
        record = dict(data)
        if user is not None:
            record['user_id'] = str(user.pk)
        place_id = record.get('place_id')
        stored = self.store.create(ACTIVITY, self._encrypt(ACTIVITY, record, place_id))
        return self._decrypt(ACTIVITY, stored, place_id)

    def list_activity(self, place_id: str) -> List[Dict[str, Any]]:
        """Return the place's activity log, newest first."""
        documents = self.store.filter(ACTIVITY, order_by=('-created_at', 'pk'), place_id=place_id)
        return [self._decrypt(ACTIVITY, document, place_id) for document in documents]

    # Helpers

    def _container_place_id(self, container_id: Optional[str]) -> Optional[str]:
        if not container_id:
            return None
        container = self.store.get(CONTAINERS, container_id)
        return container.data.get('place_id') if container else None

    def _item_place_id(self, document: StoredDocument) -> Optional[str]:
        return document.data.get('place_id') or self._container_place_id(document.data.get('container_id'))

    def _encrypt(self, collection: str, data: Dict[str, Any], place_id: Optional[str]) -> Dict[str, Any]:
        key = self.key_store.get_key(place_id) if place_id else None
        if key is None:
            logger.warning(f"No key available, writing {collection} record unencrypted", place_id)
            return dict(data)
        if collection == ACTIVITY:
            return encrypt_activity(data, key)
        return encrypt_fields(data, FIELD_SETS[collection], key)

    def _read_key(self, place_id: Optional[str]) -> Optional[bytes]:
        if not place_id:
            return None
        try:
            return self.key_store.get_key(place_id)
        except CryptoError as exc:
            # Reads stay available; values come back as stored.
            logger.warning("Stored place key is unusable", place_id, extra_data={"error": str(exc)})
            return None

    def _decrypt(self, collection: str, document: StoredDocument, place_id: Optional[str]) -> Dict[str, Any]:
        key = self._read_key(place_id)
        if key is None:
            return dict(document.data)
        if collection == ACTIVITY:
            return decrypt_activity(document.data, key)
        return decrypt_fields(document.data, FIELD_SETS[collection], key)
