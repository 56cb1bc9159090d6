"""
Record Storage - upsert contract between sync pipelines and the database

Pipelines hand over batches of ESI records together with the fields that
form each record's natural key; the store inserts new rows and updates
existing ones.
"""
import json
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Sequence

from sqlalchemy.exc import SQLAlchemyError

from ...exceptions import StorageError
from ...utils.logger import get_logger

logger = get_logger('record_store')


def natural_key(record: Dict[str, Any], key_fields: Sequence[str]) -> str:
    """Join the key field values of a record with ':'."""
    return ':'.join(str(record.get(field)) for field in key_fields)


class RecordStore(ABC):
    """Storage collaborator contract."""

    @abstractmethod
    def upsert_batch(
        self,
        corporation_id: int,
        category: str,
        records: List[Dict[str, Any]],
        key_fields: Sequence[str]
    ) -> int:
        """Insert or update records by natural key.

        Returns:
            Number of records written
        """


class MemoryRecordStore(RecordStore):
    """Dictionary-backed store (tests and dry runs)."""

    def __init__(self):
        self.records: Dict[tuple, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def upsert_batch(self, corporation_id, category, records, key_fields) -> int:
        with self._lock:
            for record in records:
                key = (corporation_id, category, natural_key(record, key_fields))
                self.records[key] = dict(record)
        return len(records)

    def list(self, corporation_id: int, category: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                record for (corp, cat, _), record in self.records.items()
                if corp == corporation_id and cat == category
            ]


class SqlRecordStore(RecordStore):
    """Upserts into the ``esi_records`` table.

    Pre-loads the rows already stored for the batch's keys, updates them in
    place, bulk inserts the rest and commits once. Each call runs in its own
    application context so it can be used from sync worker threads.
    """

    # Keys per IN (...) lookup
    LOOKUP_CHUNK = 500

    def __init__(self, app):
        self._app = app

    def upsert_batch(self, corporation_id, category, records, key_fields) -> int:
        if not records:
            return 0

        from ...extensions import db
        from ...models import EsiRecord

        with self._app.app_context():
            try:
                inserted, updated = self._bulk_save(db, EsiRecord, corporation_id, category, records, key_fields)
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.error(f"[RecordStore] Batch save failed for {category} ({corporation_id}): {e}")
                raise StorageError(f"Failed to store {category}", detail=str(e)) from e

        logger.debug(f"[RecordStore] {category} ({corporation_id}): {inserted} new, {updated} updated")
        return inserted + updated

    def _bulk_save(self, db, model, corporation_id, category, records, key_fields):
        by_key: Dict[str, Dict[str, Any]] = {}
        for record in records:
            # Later duplicates within a batch win
            by_key[natural_key(record, key_fields)] = record

        existing = {}
        for chunk in _chunks(list(by_key), self.LOOKUP_CHUNK):
            rows = model.query.filter(
                model.corporation_id == corporation_id,
                model.category == category,
                model.external_id.in_(chunk),
            ).all()
            existing.update((row.external_id, row) for row in rows)

        now = datetime.utcnow()
        insert_mappings = []
        update_count = 0

        for key, record in by_key.items():
            payload = json.dumps(record, ensure_ascii=False, default=str)
            row = existing.get(key)
            if row is not None:
                row.payload = payload
                row.updated_at = now
                update_count += 1
            else:
                insert_mappings.append({
                    'corporation_id': corporation_id,
                    'category': category,
                    'external_id': key,
                    'payload': payload,
                    'created_at': now,
                    'updated_at': now,
                })

        if insert_mappings:
            db.session.bulk_insert_mappings(model, insert_mappings)

        db.session.commit()
        return len(insert_mappings), update_count

    def count(self, corporation_id: int, category: str) -> int:
        from ...models import EsiRecord

        with self._app.app_context():
            return EsiRecord.query.filter_by(corporation_id=corporation_id, category=category).count()


def _chunks(items: List[str], size: int) -> Iterable[List[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]
