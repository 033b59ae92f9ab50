"""Document-store abstraction used by the encryption subsystem.

The encryption code only needs point reads, id-ordered paging, conditional
creation and staged partial updates. ``DjangoDocumentStore`` provides them
on top of the inventory models, one collection per model.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from django.conf import settings
from django.core.exceptions import FieldDoesNotExist
from django.db import transaction

from core.logging_utils import get_inventory_logger
from inventory.exceptions import DocumentStoreError
from inventory.models import Activity, Container, Group, Item, Place, PlaceKey

logger = get_inventory_logger()

PLACES = 'places'
PLACE_KEYS = 'place_keys'
CONTAINERS = 'containers'
ITEMS = 'items'
GROUPS = 'groups'
ACTIVITY = 'activity'

COLLECTION_MODELS = {
    PLACES: Place,
    PLACE_KEYS: PlaceKey,
    CONTAINERS: Container,
    ITEMS: Item,
    GROUPS: Group,
    ACTIVITY: Activity,
}


@dataclass(frozen=True)
class StoredDocument:
    """A document snapshot: its id plus a copy of its fields."""

    id: str
    data: Dict[str, Any] = field(default_factory=dict)


class WriteBatch:
    """Partial updates staged in memory until ``commit``."""

    def __init__(self, store: 'BaseDocumentStore'):
        self._store = store
        self._pending: List[Tuple[str, str, Dict[str, Any]]] = []

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        if not fields:
            return
        self._pending.append((collection, doc_id, dict(fields)))

    def __len__(self):
        return len(self._pending)

    def commit(self) -> int:
        """Apply every staged update and return how many documents were written."""
        if not self._pending:
            return 0
        pending, self._pending = self._pending, []
        return self._store.apply_updates(pending)


class BaseDocumentStore:
    """Interface for document stores."""

    def get(self, collection: str, doc_id: str) -> Optional[StoredDocument]:  # pragma: no cover - abstract
        raise NotImplementedError

    def scan(self, collection: str, *, after: Optional[str] = None, limit: int = 500) -> List[StoredDocument]:  # pragma: no cover - abstract
        """Return up to ``limit`` documents with ids strictly after ``after``, in id order."""
        raise NotImplementedError

    def create(self, collection: str, data: Dict[str, Any]) -> StoredDocument:  # pragma: no cover - abstract
        raise NotImplementedError

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> StoredDocument:  # pragma: no cover - abstract
        raise NotImplementedError

    def create_if_absent(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Tuple[StoredDocument, bool]:  # pragma: no cover - abstract
        """Create the document unless it exists; return the stored document and whether it was created."""
        raise NotImplementedError

    def filter(self, collection: str, *, order_by: Tuple[str, ...] = ('pk',), **equals) -> List[StoredDocument]:  # pragma: no cover - abstract
        """Return the documents whose fields equal ``equals``, sorted by ``order_by`` (``-`` for descending)."""
        raise NotImplementedError

    def apply_updates(self, updates: List[Tuple[str, str, Dict[str, Any]]]) -> int:  # pragma: no cover - abstract
        raise NotImplementedError

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def iter_pages(self, collection: str, page_size: int = 500) -> Iterator[List[StoredDocument]]:
        """Walk a collection one page at a time using the last seen id as cursor."""
        if page_size < 1:
            raise DocumentStoreError("page_size must be a positive integer")

        cursor = None
        while True:
            page = self.scan(collection, after=cursor, limit=page_size)
            if not page:
                return
            yield page
            if len(page) < page_size:
                return
            cursor = page[-1].id

    def iter_documents(self, collection: str, page_size: int = 500) -> Iterator[StoredDocument]:
        for page in self.iter_pages(collection, page_size):
            yield from page


class DjangoDocumentStore(BaseDocumentStore):
    """Document store backed by the inventory models."""

    def __init__(self, using: str = 'default'):
        self.using = using

    def _model(self, collection: str):
        try:
            return COLLECTION_MODELS[collection]
        except KeyError:
            raise DocumentStoreError(f"Unknown collection: {collection}") from None

    def _queryset(self, collection: str):
        return self._model(collection)._default_manager.using(self.using)

    def _check_fields(self, collection: str, data: Dict[str, Any]) -> None:
        model = self._model(collection)
        for name in data:
            try:
                model._meta.get_field(name)
            except FieldDoesNotExist:
                raise DocumentStoreError(f"Unknown field {name!r} for collection {collection}") from None

    @staticmethod
    def _to_document(instance) -> StoredDocument:
        data = {f.attname: getattr(instance, f.attname) for f in instance._meta.concrete_fields}
        return StoredDocument(id=str(instance.pk), data=data)

    def get(self, collection, doc_id):
        instance = self._queryset(collection).filter(pk=doc_id).first()
        return self._to_document(instance) if instance is not None else None

    def scan(self, collection, *, after=None, limit=500):
        queryset = self._queryset(collection).order_by('pk')
        if after is not None:
            queryset = queryset.filter(pk__gt=after)
        return [self._to_document(instance) for instance in queryset[:limit]]

    def create(self, collection, data):
        self._check_fields(collection, data)
        instance = self._queryset(collection).create(**data)
        return self._to_document(instance)

    def set(self, collection, doc_id, data):
        self._check_fields(collection, data)
        instance, _ = self._queryset(collection).update_or_create(pk=doc_id, defaults=data)
        return self._to_document(instance)

    def create_if_absent(self, collection, doc_id, data):
        self._check_fields(collection, data)
        # get_or_create re-reads after an IntegrityError, so a concurrent
        # creator's document is returned instead of being overwritten.
        with transaction.atomic(using=self.using):
            instance, created = self._queryset(collection).get_or_create(pk=doc_id, defaults=data)
        return self._to_document(instance), created

    def filter(self, collection, *, order_by=('pk',), **equals):
        self._check_fields(collection, equals)
        self._check_fields(collection, {name.lstrip('-'): None for name in order_by if name.lstrip('-') != 'pk'})
        queryset = self._queryset(collection).filter(**equals).order_by(*order_by)
        return [self._to_document(instance) for instance in queryset]

    def apply_updates(self, updates):
        written = 0
        with transaction.atomic(using=self.using):
            for collection, doc_id, fields in updates:
                self._check_fields(collection, fields)
                written += self._queryset(collection).filter(pk=doc_id).update(**fields)
        logger.debug("Committed write batch", extra_data={"updates": len(updates), "written": written})
        return written


_store_instance: Optional[BaseDocumentStore] = None
_store_lock = threading.Lock()


def get_document_store() -> BaseDocumentStore:
    """Return the process-wide document store."""

    global _store_instance
    if _store_instance is not None:
        return _store_instance

    with _store_lock:
        if _store_instance is None:
            _store_instance = DjangoDocumentStore(using=getattr(settings, 'INVENTORY_DATABASE_ALIAS', 'default'))
    return _store_instance
