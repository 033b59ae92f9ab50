"""
Management command to encrypt existing plaintext inventory data.

Provisions a data encryption key for every place that lacks one, then encrypts
the text fields of places, containers, items, groups and activity records.

Usage:
    python manage.py migrate_encrypt_data --dry-run   # preview changes
    python manage.py migrate_encrypt_data             # execute
"""

import os

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError
from django.db import DatabaseError

from core.logging_utils import get_migration_logger
from inventory.document_store import DjangoDocumentStore
from inventory.exceptions import DocumentStoreError
from inventory.migration_runner import DEFAULT_PAGE_SIZE, MigrationRunner

logger = get_migration_logger()


def _default_page_size():
    return os.environ.get('PAGE_SIZE') or getattr(settings, 'INVENTORY_MIGRATION_PAGE_SIZE', DEFAULT_PAGE_SIZE)


class Command(BaseCommand):
    help = 'Encrypt existing plaintext inventory data with per-place keys'

    def add_arguments(self, parser):
        parser.add_argument('--dry-run', action='store_true', help='Report planned changes without writing anything')
        parser.add_argument('--page-size', help='Documents fetched per page (defaults to $PAGE_SIZE or 500)')
        parser.add_argument('--database', default='default', help='Database alias to migrate')

    def handle(self, *args, **options):
        project_id = os.environ.get('INVENTORY_PROJECT_ID') or getattr(settings, 'INVENTORY_PROJECT_ID', None)
        if not project_id:
            raise CommandError('Missing INVENTORY_PROJECT_ID')

        raw_page_size = options['page_size'] or _default_page_size()
        try:
            page_size = int(raw_page_size)
        except (TypeError, ValueError):
            raise CommandError(f'Invalid page size: {raw_page_size!r}')
        if page_size < 1:
            raise CommandError(f'Invalid page size: {page_size}')

        dry_run = options['dry_run']
        suffix = ' (DRY RUN)' if dry_run else ''
        self.stdout.write(f'\nEncryption migration{suffix}')
        self.stdout.write(f'Project: {project_id}\n')

        runner = MigrationRunner(
            DjangoDocumentStore(using=options['database']),
            dry_run=dry_run,
            page_size=page_size,
        )
        try:
            report = runner.run()
        except (DatabaseError, DocumentStoreError) as exc:
            logger.critical('Encryption migration aborted', extra_data={'error': str(exc)})
            raise CommandError(f'Migration failed: {exc}') from exc

        self._write_report(report)

        if report.has_failures:
            raise CommandError(f'Migration finished with {report.failure_count} failed record(s)')
        self.stdout.write(self.style.SUCCESS('\n✓ Migration complete'))

    def _write_report(self, report):
        suffix = ' (dry run)' if report.dry_run else ''
        verb = 'Would encrypt' if report.dry_run else 'Encrypted'

        self.stdout.write(f'\n=== Containers ===\n  Loaded {report.container_mappings} container->place mappings')

        keys = report.keys
        self.stdout.write('\n=== Place keys ===')
        self.stdout.write(f'  Keys already existed: {keys.existing}')
        self.stdout.write(f'  Keys created: {keys.created}{suffix}')
        for failure in keys.failures:
            self.stdout.write(self.style.ERROR(f'  ✗ place {failure.doc_id}: {failure.error}'))

        for name, stage in report.stages.items():
            self.stdout.write(f'\n=== {name} ===')
            self.stdout.write(
                f'  {verb}: {stage.changed}, Unchanged: {stage.unchanged}, '
                f'No place: {stage.skipped_no_tenant}, No key: {stage.skipped_no_key}{suffix}'
            )
            for failure in stage.failures:
                self.stdout.write(self.style.ERROR(f'  ✗ {failure.doc_id}: {failure.error}'))
