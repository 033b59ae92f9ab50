"""Backfill encryption onto existing inventory records.

Stages run strictly in order, each one completing before the next starts:

1. warm the container -> place map
2. provision a DEK for every place
3. encrypt places, containers, items, groups and activity records

Each stage pages through its collection in id order, transforms every record
independently and stages the resulting partial updates in one write batch that
is committed when the stage finishes. In dry-run mode the same reads and
transforms happen but nothing is written, keys included.

A record that cannot be transformed is reported and the stage moves on.
Store errors are not caught here: they abort the run, leaving earlier stages
committed. Rerunning is safe because already-encrypted values are skipped.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from core.logging_utils import get_migration_logger
from inventory.document_store import (
    ACTIVITY,
    CONTAINERS,
    GROUPS,
    ITEMS,
    PLACES,
    BaseDocumentStore,
    StoredDocument,
)
from inventory.exceptions import CryptoError
from inventory.field_codec import (
    CONTAINER_FIELDS,
    GROUP_FIELDS,
    ITEM_FIELDS,
    PLACE_FIELDS,
    changed_fields,
    encrypt_activity,
    encrypt_fields,
)
from inventory.key_store import KeyStore

logger = get_migration_logger()

DEFAULT_PAGE_SIZE = 500


class RecordOutcome(str, enum.Enum):
    CHANGED = 'changed'
    UNCHANGED = 'unchanged'
    SKIPPED_NO_TENANT = 'skipped_no_tenant'
    SKIPPED_NO_KEY = 'skipped_no_key'
    FAILED = 'failed'


@dataclass(frozen=True)
class RecordFailure:
    doc_id: str
    error: str


@dataclass
class StageReport:
    """Per-stage counters. ``changed`` counts planned changes in a dry run."""

    name: str
    scanned: int = 0
    changed: int = 0
    unchanged: int = 0
    skipped_no_tenant: int = 0
    skipped_no_key: int = 0
    written: int = 0
    failures: List[RecordFailure] = field(default_factory=list)

    def record(self, outcome: RecordOutcome) -> None:
        if outcome is RecordOutcome.CHANGED:
            self.changed += 1
        elif outcome is RecordOutcome.UNCHANGED:
            self.unchanged += 1
        elif outcome is RecordOutcome.SKIPPED_NO_TENANT:
            self.skipped_no_tenant += 1
        elif outcome is RecordOutcome.SKIPPED_NO_KEY:
            self.skipped_no_key += 1

    def counts(self) -> Dict[str, int]:
        return {
            'scanned': self.scanned,
            'changed': self.changed,
            'unchanged': self.unchanged,
            'skipped_no_tenant': self.skipped_no_tenant,
            'skipped_no_key': self.skipped_no_key,
            'failed': len(self.failures),
        }


@dataclass
class KeyProvisioningReport:
    scanned: int = 0
    created: int = 0
    existing: int = 0
    failures: List[RecordFailure] = field(default_factory=list)


@dataclass
class MigrationReport:
    dry_run: bool
    container_mappings: int = 0
    keys: KeyProvisioningReport = field(default_factory=KeyProvisioningReport)
    stages: Dict[str, StageReport] = field(default_factory=dict)

    @property
    def failure_count(self) -> int:
        return len(self.keys.failures) + sum(len(stage.failures) for stage in self.stages.values())

    @property
    def has_failures(self) -> bool:
        return self.failure_count > 0

    @property
    def total_changed(self) -> int:
        return sum(stage.changed for stage in self.stages.values())


class MigrationRunner:
    """Encrypt every inventory record under its place's key."""

    def __init__(
        self,
        store: BaseDocumentStore,
        key_store: Optional[KeyStore] = None,
        *,
        dry_run: bool = False,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        if page_size < 1:
            raise ValueError("page_size must be a positive integer")
        self.store = store
        self.key_store = key_store if key_store is not None else KeyStore(store)
        self.dry_run = dry_run
        self.page_size = page_size
        self.container_places: Dict[str, str] = {}

    def run(self) -> MigrationReport:
        report = MigrationReport(dry_run=self.dry_run)
        logger.info("Starting encryption backfill", extra_data={"dry_run": self.dry_run, "page_size": self.page_size})

        report.container_mappings = self.warm_containers()
        report.keys = self.provision_keys()
        for stage in (
            self.encrypt_places,
            self.encrypt_containers,
            self.encrypt_items,
            self.encrypt_groups,
            self.encrypt_activity,
        ):
            stage_report = stage()
            report.stages[stage_report.name] = stage_report

        logger.info(
            "Encryption backfill finished",
            extra_data={
                "dry_run": self.dry_run,
                "changed": report.total_changed,
                "failures": report.failure_count,
            },
        )
        return report

    def warm_containers(self) -> int:
        """Load the container id -> place id map used to place legacy items."""
        self.container_places.clear()
        for document in self.store.iter_documents(CONTAINERS, self.page_size):
            place_id = document.data.get('place_id')
            if place_id:
                self.container_places[document.id] = place_id
        logger.info("Loaded container mappings", extra_data={"mappings": len(self.container_places)})
        return len(self.container_places)

    def provision_keys(self) -> KeyProvisioningReport:
        """Make sure every place has a key and that it is cached."""
        report = KeyProvisioningReport()
        for document in self.store.iter_documents(PLACES, self.page_size):
            report.scanned += 1
            try:
                provision = self.key_store.get_or_create_key(document.id, persist=not self.dry_run)
            except CryptoError as exc:
                report.failures.append(RecordFailure(document.id, f"{type(exc).__name__}: {exc}"))
                logger.error("Stored place key is unusable", document.id, extra_data={"error": str(exc)})
                continue
            if provision.created:
                report.created += 1
            else:
                report.existing += 1

        logger.info(
            "Provisioned place keys",
            extra_data={"created": report.created, "existing": report.existing, "dry_run": self.dry_run},
        )
        return report

    def encrypt_places(self) -> StageReport:
        return self._run_stage(
            PLACES,
            lambda document: document.id,
            lambda data, key: encrypt_fields(data, PLACE_FIELDS, key, skip_empty=True),
        )

    def encrypt_containers(self) -> StageReport:
        return self._run_stage(
            CONTAINERS,
            lambda document: document.data.get('place_id'),
            lambda data, key: encrypt_fields(data, CONTAINER_FIELDS, key, skip_empty=True),
        )

    def encrypt_items(self) -> StageReport:
        return self._run_stage(
            ITEMS,
            self._resolve_item_place,
            lambda data, key: encrypt_fields(data, ITEM_FIELDS, key, skip_empty=True),
        )

    def encrypt_groups(self) -> StageReport:
        return self._run_stage(
            GROUPS,
            self._resolve_group_place,
            lambda data, key: encrypt_fields(data, GROUP_FIELDS, key, skip_empty=True),
        )

    def encrypt_activity(self) -> StageReport:
        return self._run_stage(
            ACTIVITY,
            lambda document: document.data.get('place_id'),
            lambda data, key: encrypt_activity(data, key, skip_empty=True),
        )

    def _resolve_item_place(self, document: StoredDocument) -> Optional[str]:
        return document.data.get('place_id') or self.container_places.get(document.data.get('container_id'))

    def _resolve_group_place(self, document: StoredDocument) -> Optional[str]:
        data = document.data
        if data.get('place_id'):
            return data['place_id']
        parent_id = data.get('parent_id')
        if data.get('type') == 'container':
            return parent_id or None
        if data.get('type') == 'item':
            return self.container_places.get(parent_id)
        # Place groups span places and have no key of their own.
        return None

    def _run_stage(
        self,
        collection: str,
        resolve_place_id: Callable[[StoredDocument], Optional[str]],
        transform: Callable[[dict, bytes], dict],
    ) -> StageReport:
        report = StageReport(name=collection)
        batch = self.store.batch()

        for document in self.store.iter_documents(collection, self.page_size):
            report.scanned += 1
            outcome, updates = self._process_record(document, resolve_place_id, transform, report)
            report.record(outcome)
            if outcome is RecordOutcome.CHANGED and not self.dry_run:
                batch.update(collection, document.id, updates)

        if not self.dry_run:
            report.written = batch.commit()

        logger.info(
            f"Stage {collection} complete",
            extra_data={"dry_run": self.dry_run, **report.counts()},
        )
        return report

    def _process_record(self, document, resolve_place_id, transform, report):
        place_id = resolve_place_id(document)
        if not place_id:
            return RecordOutcome.SKIPPED_NO_TENANT, None

        try:
            key = self.key_store.get_key(place_id)
        except CryptoError as exc:
            return self._fail(report, document, exc, place_id), None
        if key is None:
            return RecordOutcome.SKIPPED_NO_KEY, None

        try:
            updated = transform(document.data, key)
        except Exception as exc:
            # One malformed record must not stop the rest of the stage.
            return self._fail(report, document, exc, place_id), None

        updates = changed_fields(document.data, updated)
        if not updates:
            return RecordOutcome.UNCHANGED, None
        return RecordOutcome.CHANGED, updates

    @staticmethod
    def _fail(report, document, exc, place_id):
        report.failures.append(RecordFailure(document.id, f"{type(exc).__name__}: {exc}"))
        logger.error(
            f"Failed to encrypt {report.name} record",
            place_id,
            extra_data={"doc_id": document.id, "error": type(exc).__name__},
        )
        return RecordOutcome.FAILED
