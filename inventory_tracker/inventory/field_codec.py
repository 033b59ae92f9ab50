"""Encrypt and decrypt the designated text fields of inventory records.

Records are plain dicts. Every function returns a new dict and leaves its input
untouched. String fields are encrypted unless already prefixed; list fields are
handled element by element, keeping order and length.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple

from core.logging_utils import get_crypto_logger
from inventory.crypto_utils import encrypt_value, is_encrypted, try_decrypt_value

logger = get_crypto_logger()

PLACE_FIELDS = ('name',)
CONTAINER_FIELDS = ('name',)
ITEM_FIELDS = ('name', 'description', 'tags')
GROUP_FIELDS = ('name',)
ACTIVITY_FIELDS = ('entity_name',)
ACTIVITY_METADATA_FIELDS = (
    'old_value', 'new_value',
    'child_entity_name',
    'from_container_name', 'to_container_name',
    'from_place_name', 'to_place_name',
    'group_name',
    'item_names',
)


def _encrypt_one(value, key, skip_empty):
    if not isinstance(value, str) or is_encrypted(value):
        return value
    if skip_empty and not value:
        return value
    return encrypt_value(value, key)


def encrypt_fields(
    record: Dict[str, Any], field_names: Iterable[str], key: bytes, *, skip_empty: bool = False
) -> Dict[str, Any]:
    """Return a copy of ``record`` with ``field_names`` encrypted.

    ``skip_empty`` leaves ``""`` as is; the backfill uses it so that records
    without a value are not rewritten.
    """
    result = dict(record)
    for name in field_names:
        if name not in result:
            continue
        value = result[name]
        if isinstance(value, str):
            result[name] = _encrypt_one(value, key, skip_empty)
        elif isinstance(value, list):
            result[name] = [_encrypt_one(element, key, skip_empty) for element in value]
    return result


def decrypt_fields_with_failures(
    record: Dict[str, Any], field_names: Iterable[str], key: bytes
) -> Tuple[Dict[str, Any], List[str]]:
    """Decrypt ``field_names`` and report which of them could not be decrypted.

    Values that fail stay exactly as stored.
    """
    result = dict(record)
    failed: List[str] = []
    for name in field_names:
        if name not in result:
            continue
        value = result[name]
        if isinstance(value, str):
            outcome = try_decrypt_value(value, key)
            result[name] = outcome.value
            if not outcome.ok:
                failed.append(name)
        elif isinstance(value, list):
            elements = []
            for element in value:
                if isinstance(element, str):
                    outcome = try_decrypt_value(element, key)
                    elements.append(outcome.value)
                    if not outcome.ok and name not in failed:
                        failed.append(name)
                else:
                    elements.append(element)
            result[name] = elements
    return result, failed


def decrypt_fields(record: Dict[str, Any], field_names: Iterable[str], key: bytes) -> Dict[str, Any]:
    """Fail-open decryption of ``field_names``.

    A value that cannot be decrypted is left as stored; if the pass itself
    breaks, the original record is returned.
    """
    record_id = record.get('id') if isinstance(record, dict) else None
    try:
        result, failed = decrypt_fields_with_failures(record, field_names, key)
    except Exception as exc:
        logger.warning(
            "Failed to decrypt record fields, returning record as stored",
            extra_data={"record_id": record_id, "error": type(exc).__name__},
        )
        return record

    if failed:
        logger.encryption_event(
            "some fields could not be decrypted",
            success=False,
            extra_data={"record_id": record_id, "fields": ",".join(failed)},
        )
    return result


def encrypt_metadata(
    metadata: Optional[Dict[str, Any]], key: bytes, *, skip_empty: bool = False
) -> Optional[Dict[str, Any]]:
    if not isinstance(metadata, dict):
        return metadata
    return encrypt_fields(metadata, ACTIVITY_METADATA_FIELDS, key, skip_empty=skip_empty)


def decrypt_metadata(metadata: Optional[Dict[str, Any]], key: bytes) -> Optional[Dict[str, Any]]:
    if not isinstance(metadata, dict):
        return metadata
    return decrypt_fields(metadata, ACTIVITY_METADATA_FIELDS, key)


def encrypt_activity(record: Dict[str, Any], key: bytes, *, skip_empty: bool = False) -> Dict[str, Any]:
    """Encrypt an activity record's ``entity_name`` and its metadata fields."""
    result = encrypt_fields(record, ACTIVITY_FIELDS, key, skip_empty=skip_empty)
    if 'metadata' in result:
        result['metadata'] = encrypt_metadata(result['metadata'], key, skip_empty=skip_empty)
    return result


def decrypt_activity(record: Dict[str, Any], key: bytes) -> Dict[str, Any]:
    result = decrypt_fields(record, ACTIVITY_FIELDS, key)
    if 'metadata' in result:
        result['metadata'] = decrypt_metadata(result['metadata'], key)
    return result


def changed_fields(original: Dict[str, Any], updated: Dict[str, Any]) -> Dict[str, Any]:
    """Return the top-level fields of ``updated`` that differ from ``original``."""
    return {name: value for name, value in updated.items() if original.get(name) != value}
