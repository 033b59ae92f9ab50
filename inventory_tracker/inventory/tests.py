import base64
import os
from datetime import timedelta
from io import StringIO
from types import SimpleNamespace
from unittest.mock import patch

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from django.contrib.auth import SESSION_KEY, get_user_model
from django.contrib.auth.models import AnonymousUser
from django.contrib.auth.signals import user_logged_out
from django.contrib.sessions.middleware import SessionMiddleware
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import DatabaseError
from django.http import HttpResponse
from django.test import RequestFactory, SimpleTestCase, TestCase
from django.utils import timezone

from inventory import field_codec
from inventory.crypto_utils import (
    ENC_PREFIX,
    CryptoError,
    Decrypted,
    Failed,
    decode_key,
    decrypt_value,
    encode_key,
    encrypt_value,
    generate_key,
    is_encrypted,
    try_decrypt_value,
)
from inventory.document_store import (
    CONTAINERS,
    ITEMS,
    PLACE_KEYS,
    PLACES,
    DjangoDocumentStore,
)
from inventory.exceptions import DocumentStoreError
from inventory.field_codec import (
    ITEM_FIELDS,
    changed_fields,
    decrypt_activity,
    decrypt_fields,
    decrypt_fields_with_failures,
    decrypt_metadata,
    encrypt_activity,
    encrypt_fields,
    encrypt_metadata,
)
from inventory.key_store import KeyStore
from inventory.middleware import KeyStoreMiddleware
from inventory.migration_runner import MigrationReport, MigrationRunner
from inventory.models import Activity, Container, Group, Item, Place, PlaceKey
from inventory.services import InventoryService
from inventory.sessions import SessionKeyStores, get_session_key_stores, session_is_authenticated

User = get_user_model()


def _stored_key(place_id):
    return decode_key(PlaceKey.objects.get(place_id=place_id).key)


class CryptoUtilsTests(SimpleTestCase):
    def setUp(self):
        self.key = generate_key()

    def test_encrypt_and_decrypt_round_trip(self):
        for plaintext in ('Garage', 'Blue bin #4', 'Schraubenzieher, groß', '收纳箱', 'x' * 5000):
            encrypted = encrypt_value(plaintext, self.key)
            self.assertTrue(encrypted.startswith(ENC_PREFIX))
            self.assertEqual(decrypt_value(encrypted, self.key), plaintext)

    def test_encrypted_payload_is_nonce_ciphertext_and_tag(self):
        encrypted = encrypt_value('Drill', self.key)
        payload = base64.b64decode(encrypted[len(ENC_PREFIX):])
        self.assertEqual(len(payload), 12 + len('Drill') + 16)

    def test_each_encryption_uses_a_fresh_nonce(self):
        first = encrypt_value('same', self.key)
        second = encrypt_value('same', self.key)
        self.assertNotEqual(first, second)
        self.assertNotEqual(base64.b64decode(first[4:])[:12], base64.b64decode(second[4:])[:12])

    def test_decrypts_values_produced_by_other_implementations(self):
        key = bytes(range(32))
        nonce = b'\x01' * 12
        ciphertext = AESGCM(key).encrypt(nonce, 'Box A'.encode('utf-8'), None)
        value = 'enc:' + base64.b64encode(nonce + ciphertext).decode('ascii')

        self.assertEqual(decrypt_value(value, key), 'Box A')

    def test_encrypt_requires_expected_key_length(self):
        with self.assertRaises(CryptoError):
            encrypt_value('data', b'short')

    def test_legacy_plaintext_passes_through(self):
        result = try_decrypt_value('Garage', self.key)
        self.assertEqual(result, Decrypted('Garage', legacy=True))
        self.assertTrue(result.ok)
        self.assertEqual(decrypt_value('Garage', self.key), 'Garage')

    def test_wrong_key_returns_failed_result_without_raising(self):
        encrypted = encrypt_value('Garage', self.key)

        result = try_decrypt_value(encrypted, generate_key())

        self.assertIsInstance(result, Failed)
        self.assertFalse(result.ok)
        self.assertIsInstance(result.cause, InvalidTag)
        self.assertEqual(result.value, encrypted)

    def test_decrypt_value_fails_open_and_logs(self):
        encrypted = encrypt_value('Garage', self.key)

        with self.assertLogs('inventory.crypto', level='WARNING') as captured:
            value = decrypt_value(encrypted, generate_key(), place_id='place-1')

        self.assertEqual(value, encrypted)
        self.assertNotEqual(value, 'Garage')
        self.assertIn('ENCRYPTION FAILURE', captured.output[0])
        self.assertIn('place-1', captured.output[0])

    def test_tampered_ciphertext_is_reported_as_failure(self):
        payload = bytearray(base64.b64decode(encrypt_value('Garage', self.key)[4:]))
        payload[-1] ^= 0xFF
        tampered = ENC_PREFIX + base64.b64encode(bytes(payload)).decode('ascii')

        self.assertIsInstance(try_decrypt_value(tampered, self.key), Failed)

    def test_truncated_and_malformed_values_are_reported_as_failures(self):
        truncated = ENC_PREFIX + base64.b64encode(b'\x00' * 20).decode('ascii')
        for value in (truncated, 'enc:not base64!', 'enc:'):
            result = try_decrypt_value(value, self.key)
            self.assertIsInstance(result, Failed)
            self.assertEqual(result.value, value)

    def test_invalid_key_on_decrypt_is_reported_not_raised(self):
        encrypted = encrypt_value('Garage', self.key)
        self.assertIsInstance(try_decrypt_value(encrypted, b'short'), Failed)

    def test_key_encoding_round_trip(self):
        self.assertEqual(decode_key(encode_key(self.key)), self.key)
        self.assertEqual(len(self.key), 32)

    def test_decode_key_rejects_bad_material(self):
        with self.assertRaises(CryptoError):
            decode_key('***')
        with self.assertRaises(CryptoError):
            decode_key(base64.b64encode(b'\x00' * 16).decode('ascii'))

    def test_is_encrypted(self):
        self.assertTrue(is_encrypted('enc:abc'))
        self.assertFalse(is_encrypted('Garage'))
        self.assertFalse(is_encrypted(None))
        self.assertFalse(is_encrypted(['enc:abc']))


class FieldCodecTests(SimpleTestCase):
    def setUp(self):
        self.key = generate_key()
        self.item = {
            'id': 'item-1',
            'container_id': 'container-1',
            'name': 'Drill',
            'description': 'Cordless, 18V',
            'tags': ['tools', 'power'],
            'group_id': '',
        }

    def test_encrypt_fields_returns_copy_and_leaves_input_untouched(self):
        original = dict(self.item, tags=list(self.item['tags']))

        encrypted = encrypt_fields(self.item, ITEM_FIELDS, self.key)

        self.assertEqual(self.item, original)
        self.assertIsNot(encrypted, self.item)
        self.assertTrue(is_encrypted(encrypted['name']))
        self.assertTrue(is_encrypted(encrypted['description']))
        self.assertEqual(encrypted['container_id'], 'container-1')
        self.assertEqual(encrypted['id'], 'item-1')

    def test_encrypt_fields_is_idempotent(self):
        once = encrypt_fields(self.item, ITEM_FIELDS, self.key)
        twice = encrypt_fields(once, ITEM_FIELDS, self.key)
        self.assertEqual(once, twice)

    def test_array_fields_keep_order_and_length(self):
        record = {'tags': ['a', 'b', 'c']}

        encrypted = encrypt_fields(record, ['tags'], self.key)

        self.assertEqual(len(encrypted['tags']), 3)
        self.assertTrue(all(is_encrypted(tag) for tag in encrypted['tags']))
        self.assertEqual(decrypt_fields(encrypted, ['tags'], self.key)['tags'], ['a', 'b', 'c'])

    def test_non_string_values_and_absent_fields_pass_through(self):
        record = {'name': None, 'description': 42, 'tags': ['a', 7, None]}

        encrypted = encrypt_fields(record, ITEM_FIELDS + ('missing',), self.key)

        self.assertIsNone(encrypted['name'])
        self.assertEqual(encrypted['description'], 42)
        self.assertEqual(encrypted['tags'][1:], [7, None])
        self.assertNotIn('missing', encrypted)

    def test_empty_strings_are_encrypted_by_default(self):
        encrypted = encrypt_fields({'name': '', 'tags': ['']}, ['name', 'tags'], self.key)

        self.assertTrue(is_encrypted(encrypted['name']))
        self.assertTrue(is_encrypted(encrypted['tags'][0]))
        self.assertEqual(decrypt_fields(encrypted, ['name', 'tags'], self.key), {'name': '', 'tags': ['']})

    def test_skip_empty_leaves_empty_strings_as_is(self):
        record = {'name': '', 'description': 'Cordless', 'tags': ['', 'power']}

        encrypted = encrypt_fields(record, ITEM_FIELDS, self.key, skip_empty=True)

        self.assertEqual(encrypted['name'], '')
        self.assertEqual(encrypted['tags'][0], '')
        self.assertTrue(is_encrypted(encrypted['description']))
        self.assertTrue(is_encrypted(encrypted['tags'][1]))

        activity = encrypt_activity({'entity_name': '', 'metadata': {'group_name': ''}}, self.key, skip_empty=True)
        self.assertEqual(activity, {'entity_name': '', 'metadata': {'group_name': ''}})

    def test_already_encrypted_elements_are_not_encrypted_again(self):
        existing = encrypt_value('a', self.key)
        encrypted = encrypt_fields({'tags': [existing, 'b']}, ['tags'], self.key)
        self.assertEqual(encrypted['tags'][0], existing)
        self.assertTrue(is_encrypted(encrypted['tags'][1]))

    def test_decrypt_fields_round_trip(self):
        encrypted = encrypt_fields(self.item, ITEM_FIELDS, self.key)
        self.assertEqual(decrypt_fields(encrypted, ITEM_FIELDS, self.key), self.item)

    def test_decrypt_fields_leaves_legacy_records_unchanged(self):
        self.assertEqual(decrypt_fields(self.item, ITEM_FIELDS, self.key), self.item)

    def test_decrypt_with_wrong_key_keeps_stored_values_and_names_failures(self):
        encrypted = encrypt_fields(self.item, ITEM_FIELDS, self.key)

        with self.assertLogs('inventory.crypto', level='WARNING'):
            decrypted = decrypt_fields(encrypted, ITEM_FIELDS, generate_key())
        self.assertEqual(decrypted, encrypted)

        _, failed = decrypt_fields_with_failures(encrypted, ITEM_FIELDS, generate_key())
        self.assertEqual(failed, ['name', 'description', 'tags'])

    def test_decrypt_fields_returns_original_record_when_pass_breaks(self):
        encrypted = encrypt_fields(self.item, ITEM_FIELDS, self.key)

        with patch('inventory.field_codec.decrypt_fields_with_failures', side_effect=RuntimeError('boom')), \
                self.assertLogs('inventory.crypto', level='WARNING') as captured:
            result = decrypt_fields(encrypted, ITEM_FIELDS, self.key)

        self.assertIs(result, encrypted)
        self.assertIn('returning record as stored', captured.output[0])

    def test_decrypt_fields_returns_non_dict_input_unchanged(self):
        record = ['not', 'a', 'dict']

        with self.assertLogs('inventory.crypto', level='WARNING') as captured:
            result = decrypt_fields(record, ITEM_FIELDS, self.key)

        self.assertIs(result, record)
        self.assertIn('record_id: None', captured.output[0])

    def test_metadata_item_names_are_encrypted_element_wise(self):
        metadata = {'item_names': ['Box A', 'Box B'], 'from_container_name': 'Shelf', 'count': 2}

        encrypted = encrypt_metadata(metadata, self.key)

        self.assertEqual(len(encrypted['item_names']), 2)
        self.assertTrue(all(is_encrypted(name) for name in encrypted['item_names']))
        self.assertNotEqual(encrypted['item_names'][0], encrypted['item_names'][1])
        self.assertTrue(is_encrypted(encrypted['from_container_name']))
        self.assertEqual(encrypted['count'], 2)
        self.assertEqual(decrypt_metadata(encrypted, self.key), metadata)

    def test_metadata_none_passes_through(self):
        self.assertIsNone(encrypt_metadata(None, self.key))
        self.assertIsNone(decrypt_metadata(None, self.key))

    def test_activity_encrypts_entity_name_and_metadata(self):
        record = {
            'id': 'activity-1',
            'action': 'moved',
            'entity_name': 'Drill',
            'metadata': {'from_place_name': 'Home', 'to_place_name': 'Office'},
        }

        encrypted = encrypt_activity(record, self.key)

        self.assertTrue(is_encrypted(encrypted['entity_name']))
        self.assertTrue(is_encrypted(encrypted['metadata']['to_place_name']))
        self.assertEqual(encrypted['action'], 'moved')
        self.assertEqual(record['metadata']['from_place_name'], 'Home')
        self.assertEqual(decrypt_activity(encrypted, self.key), record)

    def test_changed_fields(self):
        self.assertEqual(changed_fields({'a': 1, 'b': 2}, {'a': 1, 'b': 3}), {'b': 3})
        self.assertEqual(changed_fields({'a': 1}, {'a': 1}), {})


class DocumentStoreTests(TestCase):
    def setUp(self):
        self.store = DjangoDocumentStore()

    def test_iter_pages_walks_collection_in_id_order(self):
        for doc_id in ('p5', 'p3', 'p1', 'p4', 'p2'):
            Place.objects.create(id=doc_id, name=doc_id)

        pages = list(self.store.iter_pages(PLACES, page_size=2))

        self.assertEqual([len(page) for page in pages], [2, 2, 1])
        self.assertEqual([doc.id for page in pages for doc in page], ['p1', 'p2', 'p3', 'p4', 'p5'])

    def test_iter_pages_handles_exact_multiple_of_page_size(self):
        for doc_id in ('a', 'b', 'c', 'd'):
            Place.objects.create(id=doc_id)

        pages = list(self.store.iter_pages(PLACES, page_size=2))

        self.assertEqual([[doc.id for doc in page] for page in pages], [['a', 'b'], ['c', 'd']])

    def test_iter_pages_rejects_invalid_page_size(self):
        with self.assertRaises(DocumentStoreError):
            list(self.store.iter_pages(PLACES, page_size=0))

    def test_batch_applies_partial_updates_on_commit(self):
        Item.objects.create(id='item-1', container_id='c1', name='Drill', description='Cordless')
        batch = self.store.batch()
        batch.update(ITEMS, 'item-1', {'name': 'Hammer'})
        batch.update(ITEMS, 'item-1', {})

        self.assertEqual(len(batch), 1)
        self.assertEqual(Item.objects.get(id='item-1').name, 'Drill')

        self.assertEqual(batch.commit(), 1)
        item = Item.objects.get(id='item-1')
        self.assertEqual(item.name, 'Hammer')
        self.assertEqual(item.description, 'Cordless')
        self.assertEqual(batch.commit(), 0)

    def test_get_returns_none_for_missing_document(self):
        self.assertIsNone(self.store.get(CONTAINERS, 'missing'))

    def test_create_if_absent_keeps_existing_document(self):
        first, created = self.store.create_if_absent(PLACE_KEYS, 'place-1', {'key': 'first'})
        second, created_again = self.store.create_if_absent(PLACE_KEYS, 'place-1', {'key': 'second'})

        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(second.data['key'], 'first')
        self.assertEqual(PlaceKey.objects.count(), 1)

    def test_unknown_collection_and_field_are_rejected(self):
        with self.assertRaises(DocumentStoreError):
            self.store.get('unknown', 'x')
        with self.assertRaises(DocumentStoreError):
            self.store.create(PLACES, {'colour': 'red'})


class KeyStoreTests(TestCase):
    def setUp(self):
        self.store = DjangoDocumentStore()
        self.key_store = KeyStore(self.store)

    def test_get_key_returns_none_when_place_has_no_key(self):
        self.assertIsNone(self.key_store.get_key('place-1'))

    def test_generate_key_exports_raw_key_as_base64(self):
        generated = KeyStore.generate_key()
        self.assertEqual(len(generated.key), 32)
        self.assertEqual(base64.b64decode(generated.key_b64), generated.key)

    def test_store_key_persists_base64_key(self):
        generated = KeyStore.generate_key()

        self.key_store.store_key('place-1', generated.key_b64)

        self.assertEqual(PlaceKey.objects.get(place_id='place-1').key, generated.key_b64)
        self.assertEqual(KeyStore(self.store).get_key('place-1'), generated.key)

    def test_get_key_uses_cache_after_first_read(self):
        provision = self.key_store.get_or_create_key('place-1')

        with patch.object(self.store, 'get', side_effect=AssertionError('store should not be read')):
            self.assertEqual(self.key_store.get_key('place-1'), provision.key)

    def test_get_or_create_key_creates_only_once(self):
        first = self.key_store.get_or_create_key('place-1')
        second = KeyStore(self.store).get_or_create_key('place-1')

        self.assertTrue(first.created)
        self.assertFalse(second.created)
        self.assertEqual(first.key, second.key)
        self.assertEqual(PlaceKey.objects.count(), 1)

    def test_get_or_create_key_without_persist_only_caches(self):
        provision = self.key_store.get_or_create_key('place-1', persist=False)

        self.assertTrue(provision.created)
        self.assertFalse(PlaceKey.objects.exists())
        self.assertIn('place-1', self.key_store)
        self.assertEqual(self.key_store.get_key('place-1'), provision.key)

    def test_concurrently_created_key_wins(self):
        winner = b'\x07' * 32
        PlaceKey.objects.create(place_id='place-1', key=encode_key(winner))

        # Simulate the read having happened before the other writer committed.
        with patch.object(self.key_store, 'get_key', return_value=None):
            provision = self.key_store.get_or_create_key('place-1')

        self.assertFalse(provision.created)
        self.assertEqual(provision.key, winner)
        self.assertEqual(PlaceKey.objects.get(place_id='place-1').key, encode_key(winner))

    def test_clear_forgets_cached_keys(self):
        self.key_store.get_or_create_key('place-1')
        self.key_store.get_or_create_key('place-2')
        self.assertEqual(len(self.key_store), 2)
        self.assertIn('place-2', self.key_store)

        self.key_store.clear()

        self.assertEqual(len(self.key_store), 0)
        self.assertNotIn('place-1', self.key_store)


class MigrationRunnerTests(TestCase):
    def setUp(self):
        self.store = DjangoDocumentStore()

    def _run(self, **kwargs):
        return MigrationRunner(self.store, **kwargs).run()

    def _build_dataset(self):
        Place.objects.create(id='place-p', name='Garage')
        Place.objects.create(id='place-q', name='Office')
        Container.objects.create(id='container-c', place_id='place-p', name='Blue bin')
        Container.objects.create(id='container-d', place_id='place-q', name='Drawer')
        Container.objects.create(id='container-orphan', place_id='', name='Loose box')
        Item.objects.create(id='item-i', container_id='container-c', name='Drill',
                            description='Cordless', tags=['tools', 'power'])
        Item.objects.create(id='item-j', container_id='container-d', place_id='place-q', name='Stapler')
        Item.objects.create(id='item-k', container_id='container-missing', name='Lost thing')
        Group.objects.create(id='group-c', type='container', parent_id='place-p', name='Bins')
        Group.objects.create(id='group-i', type='item', parent_id='container-c', name='Power tools')
        Group.objects.create(id='group-p', type='place', parent_id=None, name='All sites')
        Activity.objects.create(
            id='activity-1', place_id='place-p', action='moved', entity_type='item',
            entity_name='Drill', metadata={'item_names': ['Box A', 'Box B'], 'from_container_name': 'Blue bin'},
        )

    def test_full_run_provisions_key_and_encrypts_hierarchy(self):
        Place.objects.create(id='place-p', name='Garage')
        Container.objects.create(id='container-c', place_id='place-p', name='Blue bin')
        Item.objects.create(id='item-i', container_id='container-c', name='Drill',
                            description='Cordless', tags=['tools', 'power'])

        report = self._run(page_size=2)

        key = _stored_key('place-p')
        place = Place.objects.get(id='place-p')
        container = Container.objects.get(id='container-c')
        item = Item.objects.get(id='item-i')
        for value in (place.name, container.name, item.name, item.description, *item.tags):
            self.assertTrue(is_encrypted(value))
        self.assertEqual(decrypt_value(place.name, key), 'Garage')
        self.assertEqual(decrypt_value(container.name, key), 'Blue bin')
        self.assertEqual(decrypt_fields({'name': item.name, 'description': item.description, 'tags': item.tags},
                                        ITEM_FIELDS, key),
                         {'name': 'Drill', 'description': 'Cordless', 'tags': ['tools', 'power']})
        self.assertEqual(report.keys.created, 1)
        self.assertEqual(report.stages[ITEMS].changed, 1)
        self.assertEqual(report.stages[ITEMS].written, 1)
        self.assertFalse(report.has_failures)

        second = self._run()

        self.assertEqual(second.total_changed, 0)
        self.assertEqual(second.keys.created, 0)
        self.assertEqual(second.keys.existing, 1)
        self.assertEqual(Item.objects.get(id='item-i').name, item.name)

    def test_item_with_unknown_container_is_skipped(self):
        self._build_dataset()

        report = self._run()

        items = report.stages[ITEMS]
        self.assertEqual(items.skipped_no_tenant, 1)
        self.assertEqual(items.changed, 2)
        self.assertEqual(Item.objects.get(id='item-k').name, 'Lost thing')
        self.assertEqual(report.stages[CONTAINERS].skipped_no_tenant, 1)
        self.assertFalse(report.has_failures)

    def test_groups_resolve_place_by_kind(self):
        self._build_dataset()

        report = self._run()

        key = _stored_key('place-p')
        self.assertEqual(decrypt_value(Group.objects.get(id='group-c').name, key), 'Bins')
        self.assertEqual(decrypt_value(Group.objects.get(id='group-i').name, key), 'Power tools')
        self.assertEqual(Group.objects.get(id='group-p').name, 'All sites')
        self.assertEqual(report.stages['groups'].changed, 2)
        self.assertEqual(report.stages['groups'].skipped_no_tenant, 1)

    def test_activity_entity_name_and_metadata_are_encrypted(self):
        self._build_dataset()

        self._run()

        key = _stored_key('place-p')
        activity = Activity.objects.get(id='activity-1')
        self.assertTrue(is_encrypted(activity.entity_name))
        self.assertTrue(all(is_encrypted(name) for name in activity.metadata['item_names']))
        self.assertEqual(decrypt_metadata(activity.metadata, key),
                         {'item_names': ['Box A', 'Box B'], 'from_container_name': 'Blue bin'})
        self.assertEqual(activity.action, 'moved')

    def test_dry_run_writes_nothing_and_matches_real_run_counts(self):
        self._build_dataset()

        dry = self._run(dry_run=True, page_size=3)

        self.assertFalse(PlaceKey.objects.exists())
        self.assertEqual(Place.objects.get(id='place-p').name, 'Garage')
        self.assertEqual(Item.objects.get(id='item-i').tags, ['tools', 'power'])
        self.assertEqual(Activity.objects.get(id='activity-1').entity_name, 'Drill')
        self.assertTrue(all(stage.written == 0 for stage in dry.stages.values()))

        real = self._run(page_size=3)

        self.assertTrue(dry.dry_run)
        self.assertEqual(dry.keys.created, real.keys.created)
        self.assertEqual(dry.container_mappings, real.container_mappings)
        for name, stage in real.stages.items():
            self.assertEqual(dry.stages[name].counts(), stage.counts(), name)
        self.assertGreater(real.total_changed, 0)

    def test_record_failure_is_reported_and_stage_continues(self):
        self._build_dataset()
        real_encrypt_fields = field_codec.encrypt_fields

        def flaky(data, field_names, key, **kwargs):
            if data.get('id') == 'item-i':
                raise ValueError('malformed record')
            return real_encrypt_fields(data, field_names, key, **kwargs)

        with patch('inventory.migration_runner.encrypt_fields', side_effect=flaky):
            report = self._run()

        items = report.stages[ITEMS]
        self.assertEqual([failure.doc_id for failure in items.failures], ['item-i'])
        self.assertIn('malformed record', items.failures[0].error)
        self.assertEqual(items.changed, 1)
        self.assertTrue(is_encrypted(Item.objects.get(id='item-j').name))
        self.assertEqual(Item.objects.get(id='item-i').name, 'Drill')
        self.assertTrue(is_encrypted(Activity.objects.get(id='activity-1').entity_name))
        self.assertTrue(report.has_failures)

    def test_unusable_stored_key_fails_that_place_only(self):
        Place.objects.create(id='place-p', name='Garage')
        Place.objects.create(id='place-q', name='Office')
        PlaceKey.objects.create(place_id='place-p', key='***')
        Container.objects.create(id='container-c', place_id='place-p', name='Blue bin')
        Container.objects.create(id='container-d', place_id='place-q', name='Drawer')

        report = self._run()

        self.assertEqual([failure.doc_id for failure in report.keys.failures], ['place-p'])
        self.assertEqual([failure.doc_id for failure in report.stages[CONTAINERS].failures], ['container-c'])
        self.assertEqual(Container.objects.get(id='container-c').name, 'Blue bin')
        self.assertTrue(is_encrypted(Container.objects.get(id='container-d').name))
        self.assertEqual(report.failure_count, 3)

    def test_store_error_aborts_run_after_earlier_stages(self):
        Place.objects.create(id='place-p', name='Garage')

        with patch.object(DjangoDocumentStore, 'apply_updates', side_effect=DatabaseError('store unreachable')):
            with self.assertRaises(DatabaseError):
                self._run()

        self.assertTrue(PlaceKey.objects.filter(place_id='place-p').exists())
        self.assertEqual(Place.objects.get(id='place-p').name, 'Garage')

    def test_record_without_key_is_counted(self):
        Container.objects.create(id='container-c', place_id='place-gone', name='Blue bin')

        report = self._run()

        self.assertEqual(report.stages[CONTAINERS].skipped_no_key, 1)
        self.assertEqual(Container.objects.get(id='container-c').name, 'Blue bin')

    def test_empty_values_are_not_rewritten(self):
        Place.objects.create(id='place-p', name='')
        Item.objects.create(id='item-i', container_id='', place_id='place-p', name='Drill', description='', tags=[''])

        report = self._run()

        self.assertEqual(report.stages[PLACES].unchanged, 1)
        item = Item.objects.get(id='item-i')
        self.assertEqual(item.description, '')
        self.assertEqual(item.tags, [''])
        self.assertTrue(is_encrypted(item.name))
        self.assertEqual(Place.objects.get(id='place-p').name, '')

    def test_rejects_invalid_page_size(self):
        with self.assertRaises(ValueError):
            MigrationRunner(self.store, page_size=0)


class MigrateEncryptDataCommandTests(TestCase):
    def setUp(self):
        Place.objects.create(id='place-p', name='Garage')
        Container.objects.create(id='container-c', place_id='place-p', name='Blue bin')

    def test_dry_run_reports_planned_changes(self):
        out = StringIO()

        call_command('migrate_encrypt_data', '--dry-run', stdout=out)

        output = out.getvalue()
        self.assertIn('DRY RUN', output)
        self.assertIn('Would encrypt: 1', output)
        self.assertIn('Keys created: 1 (dry run)', output)
        self.assertFalse(PlaceKey.objects.exists())
        self.assertEqual(Place.objects.get(id='place-p').name, 'Garage')

    def test_real_run_encrypts_and_reports_success(self):
        out = StringIO()

        call_command('migrate_encrypt_data', '--page-size', '1', stdout=out)

        self.assertIn('Migration complete', out.getvalue())
        self.assertTrue(is_encrypted(Container.objects.get(id='container-c').name))

    def test_invalid_page_size_is_rejected(self):
        with self.assertRaises(CommandError):
            call_command('migrate_encrypt_data', '--page-size', '0', stdout=StringIO())
        with self.assertRaises(CommandError):
            call_command('migrate_encrypt_data', '--page-size', 'many', stdout=StringIO())

    def test_missing_project_id_is_rejected(self):
        with patch.dict(os.environ), self.settings(INVENTORY_PROJECT_ID=None):
            os.environ.pop('INVENTORY_PROJECT_ID', None)
            with self.assertRaises(CommandError):
                call_command('migrate_encrypt_data', stdout=StringIO())

    def test_page_size_defaults_to_environment(self):
        with patch.dict(os.environ, {'PAGE_SIZE': '7'}), patch(
            'inventory.management.commands.migrate_encrypt_data.MigrationRunner'
        ) as mock_runner:
            mock_runner.return_value.run.return_value = MigrationReport(dry_run=False)
            call_command('migrate_encrypt_data', stdout=StringIO())

        self.assertEqual(mock_runner.call_args.kwargs['page_size'], 7)
        self.assertFalse(mock_runner.call_args.kwargs['dry_run'])

    def test_record_failures_exit_with_error(self):
        PlaceKey.objects.create(place_id='place-p', key='***')
        out = StringIO()

        with self.assertRaises(CommandError):
            call_command('migrate_encrypt_data', stdout=out)

        self.assertIn('place-p', out.getvalue())

    def test_store_error_is_fatal(self):
        with patch('inventory.management.commands.migrate_encrypt_data.MigrationRunner') as mock_runner:
            mock_runner.return_value.run.side_effect = DatabaseError('store unreachable')
            with self.assertRaises(CommandError):
                call_command('migrate_encrypt_data', stdout=StringIO())


class InventoryServiceTests(TestCase):
    def setUp(self):
        self.store = DjangoDocumentStore()
        self.key_store = KeyStore(self.store)
        self.service = InventoryService(self.store, self.key_store)
        self.user = User.objects.create_user(username='owner', password='password123')

    def test_create_place_provisions_key_and_encrypts_name(self):
        place = self.service.create_place({'name': 'Home', 'type': 'home'}, owner=self.user)

        stored = Place.objects.get(id=place['id'])
        self.assertEqual(place['name'], 'Home')
        self.assertEqual(place['owner_id'], str(self.user.pk))
        self.assertTrue(is_encrypted(stored.name))
        self.assertEqual(decrypt_value(stored.name, _stored_key(place['id'])), 'Home')
        self.assertEqual(self.service.list_places(str(self.user.pk))[0]['name'], 'Home')

    def test_item_inherits_place_from_container_and_round_trips(self):
        place = self.service.create_place({'name': 'Home'})
        container = self.service.create_container({'place_id': place['id'], 'name': 'Closet'})

        item = self.service.create_item({
            'container_id': container['id'],
            'name': 'Tent',
            'description': 'Two person',
            'tags': ['camping', 'outdoor'],
        })

        stored = Item.objects.get(id=item['id'])
        self.assertEqual(stored.place_id, place['id'])
        self.assertTrue(all(is_encrypted(tag) for tag in stored.tags))
        self.assertEqual(self.service.get_item(item['id'])['tags'], ['camping', 'outdoor'])
        self.assertEqual([i['name'] for i in self.service.list_items(container['id'])], ['Tent'])
        self.assertEqual(self.service.get_container(container['id'])['name'], 'Closet')

    def test_update_item_encrypts_changed_fields(self):
        place = self.service.create_place({'name': 'Home'})
        container = self.service.create_container({'place_id': place['id'], 'name': 'Closet'})
        item = self.service.create_item({'container_id': container['id'], 'name': 'Tent'})

        updated = self.service.update_item(item['id'], {'description': 'Leaks a bit'})

        self.assertEqual(updated['description'], 'Leaks a bit')
        self.assertTrue(is_encrypted(Item.objects.get(id=item['id']).description))
        self.assertIsNone(self.service.update_item('missing', {'name': 'x'}))

    def test_place_without_key_is_read_as_stored_and_not_provisioned(self):
        Place.objects.create(id='legacy', name='Attic')
        Container.objects.create(id='box', place_id='legacy', name='Old box')
        Item.objects.create(id='thing', container_id='box', name='Lamp')

        self.assertEqual(self.service.get_place('legacy')['name'], 'Attic')
        self.assertEqual(self.service.list_containers('legacy')[0]['name'], 'Old box')
        self.assertEqual(self.service.get_item('thing')['name'], 'Lamp')
        self.assertFalse(PlaceKey.objects.exists())
        self.assertIsNone(self.service.get_place('missing'))

    def test_legacy_item_resolves_key_through_container(self):
        place = self.service.create_place({'name': 'Home'})
        container = self.service.create_container({'place_id': place['id'], 'name': 'Closet'})
        key = _stored_key(place['id'])
        Item.objects.create(id='old-item', container_id=container['id'], name=encrypt_value('Skis', key))

        self.assertEqual(self.service.get_item('old-item')['name'], 'Skis')

    def test_groups_and_activity(self):
        place = self.service.create_place({'name': 'Home'})
        container = self.service.create_container({'place_id': place['id'], 'name': 'Closet'})

        group = self.service.create_group({'type': 'item', 'parent_id': container['id'], 'name': 'Winter'})
        self.service.record_activity({
            'place_id': place['id'],
            'action': 'grouped',
            'entity_type': 'item',
            'entity_name': 'Skis',
            'metadata': {'group_name': 'Winter', 'item_names': ['Skis', 'Boots']},
        }, user=self.user)

        self.assertEqual(Group.objects.get(id=group['id']).place_id, place['id'])
        self.assertTrue(is_encrypted(Group.objects.get(id=group['id']).name))
        self.assertEqual(self.service.list_groups(place['id'])[0]['name'], 'Winter')
        activity = self.service.list_activity(place['id'])[0]
        self.assertEqual(activity['metadata']['item_names'], ['Skis', 'Boots'])
        self.assertEqual(activity['user_id'], str(self.user.pk))
        stored = Activity.objects.get(id=activity['id'])
        self.assertTrue(is_encrypted(stored.metadata['group_name']))

    def test_activity_is_listed_newest_first(self):
        place = self.service.create_place({'name': 'Home'})
        base = timezone.now()
        for activity_id, minutes_ago in (('a-oldest', 30), ('b-newest', 1), ('c-middle', 10)):
            self.service.record_activity({
                'id': activity_id,
                'place_id': place['id'],
                'action': 'created',
                'entity_type': 'item',
                'entity_name': activity_id,
            })
            Activity.objects.filter(id=activity_id).update(created_at=base - timedelta(minutes=minutes_ago))

        activity = self.service.list_activity(place['id'])

        self.assertEqual([entry['entity_name'] for entry in activity], ['b-newest', 'c-middle', 'a-oldest'])

    def test_unusable_stored_key_falls_back_to_stored_values(self):
        Place.objects.create(id='broken', name='enc:opaque')
        PlaceKey.objects.create(place_id='broken', key='***')
        Container.objects.create(id='box', place_id='broken', name='enc:also-opaque')

        with self.assertLogs('inventory', level='WARNING') as captured:
            containers = self.service.list_containers('broken')
            place = self.service.get_place('broken')

        self.assertEqual(containers[0]['name'], 'enc:also-opaque')
        self.assertEqual(place['name'], 'enc:opaque')
        self.assertIn('Stored place key is unusable', captured.output[0])

    def test_container_requires_place(self):
        with self.assertRaises(ValueError):
            self.service.create_container({'name': 'Closet'})

    def test_other_place_key_cannot_read_records(self):
        home = self.service.create_place({'name': 'Home'})
        office = self.service.create_place({'name': 'Office'})
        stored_name = Place.objects.get(id=home['id']).name

        result = try_decrypt_value(stored_name, _stored_key(office['id']))

        self.assertIsInstance(result, Failed)
        self.assertNotEqual(result.value, 'Home')


class SessionKeyStoreTests(TestCase):
    def setUp(self):
        self.factory = RequestFactory()
        self.user = User.objects.create_user(username='member', password='password123')

    def _prepare_request(self, user):
        request = self.factory.get('/')
        middleware = SessionMiddleware(lambda req: None)
        middleware.process_request(request)
        if user.is_authenticated:
            request.session[SESSION_KEY] = str(user.pk)
        request.session.save()
        request.user = user
        self.addCleanup(get_session_key_stores().discard, request.session.session_key)
        return request

    def _flushing_view(self, request):
        request.session.flush()
        return HttpResponse('signed out elsewhere')

    def test_registry_is_bounded_and_evicts_least_recently_used(self):
        registry = SessionKeyStores(DjangoDocumentStore(), max_sessions=2, prune_interval=3600,
                                    is_live=lambda session_key: True)
        first = registry.get('session-a')
        second = registry.get('session-b')
        second.cache_key('place-1', b'\x02' * 32)
        registry.get('session-a')

        registry.get('session-c')

        self.assertEqual(len(registry), 2)
        self.assertIn('session-a', registry)
        self.assertNotIn('session-b', registry)
        self.assertEqual(len(second), 0)
        self.assertIs(registry.get('session-a'), first)

    def test_prune_drops_stores_of_ended_sessions(self):
        registry = SessionKeyStores(DjangoDocumentStore(), prune_interval=3600,
                                    is_live=lambda session_key: session_key != 'session-gone')
        gone = registry.get('session-gone')
        gone.cache_key('place-1', b'\x03' * 32)
        registry.get('session-live')

        self.assertEqual(registry.prune(), 1)

        self.assertNotIn('session-gone', registry)
        self.assertIn('session-live', registry)
        self.assertEqual(len(gone), 0)

    def test_session_liveness_follows_session_backend(self):
        request = self._prepare_request(self.user)
        session_key = request.session.session_key

        self.assertTrue(session_is_authenticated(session_key))

        request.session.flush()

        self.assertFalse(session_is_authenticated(session_key))
        self.assertFalse(session_is_authenticated('no-such-session'))

    def test_flushed_sessions_do_not_keep_key_stores(self):
        registry = get_session_key_stores()
        middleware = KeyStoreMiddleware(self._flushing_view)
        session_keys = []

        for _ in range(5):
            request = self._prepare_request(self.user)
            session_keys.append(request.session.session_key)
            middleware(request)
            self.assertIsInstance(request.key_store, KeyStore)
            self.assertEqual(len(request.key_store), 0)

        self.assertFalse(any(session_key in registry for session_key in session_keys))

    def test_session_flushed_outside_request_is_pruned(self):
        registry = SessionKeyStores(DjangoDocumentStore(), prune_interval=0)
        ended = self._prepare_request(self.user)
        ended_key = ended.session.session_key
        key_store = registry.get(ended_key)
        key_store.cache_key('place-1', b'\x04' * 32)
        ended.session.flush()

        current = self._prepare_request(self.user)
        registry.get(current.session.session_key)

        self.assertNotIn(ended_key, registry)
        self.assertIn(current.session.session_key, registry)
        self.assertEqual(len(key_store), 0)

    def test_registry_returns_one_store_per_session(self):
        registry = SessionKeyStores(DjangoDocumentStore())

        first = registry.get('session-a')
        self.assertIs(registry.get('session-a'), first)
        self.assertIsNot(registry.get('session-b'), first)
        self.assertEqual(len(registry), 2)

    def test_discard_clears_and_drops_store(self):
        registry = SessionKeyStores(DjangoDocumentStore())
        key_store = registry.get('session-a')
        key_store.cache_key('place-1', b'\x01' * 32)

        self.assertTrue(registry.discard('session-a'))

        self.assertEqual(len(key_store), 0)
        self.assertFalse(registry.discard('session-a'))
        self.assertFalse(registry.discard(None))

    def test_middleware_attaches_session_key_store(self):
        request = self._prepare_request(self.user)
        middleware = KeyStoreMiddleware(lambda req: HttpResponse('ok'))

        response = middleware(request)
        first = request.key_store
        middleware(request)

        self.assertEqual(response.status_code, 200)
        self.assertIsInstance(first, KeyStore)
        self.assertIs(request.key_store, first)

    def test_middleware_skips_anonymous_users(self):
        request = self._prepare_request(AnonymousUser())

        KeyStoreMiddleware(lambda req: HttpResponse('ok'))(request)

        self.assertIsNone(request.key_store)

    def test_logout_clears_session_keys(self):
        request = self._prepare_request(self.user)
        key_store = get_session_key_stores().get(request.session.session_key)
        key_store.cache_key('place-1', b'\x01' * 32)

        with self.assertLogs('inventory.security', level='WARNING') as captured:
            user_logged_out.send(sender=User, request=request, user=self.user)

        self.assertEqual(len(key_store), 0)
        self.assertIsNot(get_session_key_stores().get(request.session.session_key), key_store)
        self.assertIn('Cleared place keys on sign-out', captured.output[-1])

    def test_logout_without_session_is_ignored(self):
        user_logged_out.send(sender=User, request=SimpleNamespace(), user=None)
