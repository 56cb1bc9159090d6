"""
Model Tests

Tests for database models and the SQL-backed stores.
"""
import pytest


class TestKVEntry:
    """Tests for KVEntry model."""

    def test_value_round_trip(self, app):
        """JSON values are stored as text and decoded back."""
        from corpsync.extensions import db
        from corpsync.models import KVEntry

        entry = KVEntry(key='test-key')
        entry.set_value({'a': [1, 2, 3]})
        db.session.add(entry)
        db.session.commit()

        assert db.session.get(KVEntry, 'test-key').get_value() == {'a': [1, 2, 3]}

    def test_unreadable_value(self):
        """Corrupt JSON decodes to None."""
        from corpsync.models import KVEntry

        assert KVEntry(key='broken', value='{not json').get_value() is None


class TestSqlKVStore:
    """Tests for SqlKVStore."""

    def test_set_get_delete(self, app):
        """Values can be written, overwritten and deleted."""
        from corpsync.services.sync import SqlKVStore

        store = SqlKVStore(app)
        assert store.get('sync-errors', []) == []

        store.set('sync-errors', [{'id': '1'}])
        store.set('sync-errors', [{'id': '2'}])
        assert store.get('sync-errors') == [{'id': '2'}]

        store.delete('sync-errors')
        assert store.get('sync-errors') is None

    def test_missing_table_raises_storage_error(self, app):
        """Database failures surface as StorageError."""
        from corpsync.exceptions import StorageError
        from corpsync.extensions import db
        from corpsync.models import KVEntry
        from corpsync.services.sync import SqlKVStore

        KVEntry.__table__.drop(db.engine)
        try:
            with pytest.raises(StorageError):
                SqlKVStore(app).get('anything')
        finally:
            KVEntry.__table__.create(db.engine)


class TestSqlRecordStore:
    """Tests for SqlRecordStore upserts."""

    def test_upsert_is_idempotent(self, app):
        """Re-syncing the same records updates rows instead of duplicating them."""
        from corpsync.models import EsiRecord
        from corpsync.services.sync import SqlRecordStore

        store = SqlRecordStore(app)
        records = [
            {'item_id': 1, 'type_id': 34, 'quantity': 100},
            {'item_id': 2, 'type_id': 35, 'quantity': 5},
        ]

        assert store.upsert_batch(98000001, 'assets', records, ('item_id',)) == 2
        records[0]['quantity'] = 250
        assert store.upsert_batch(98000001, 'assets', records, ('item_id',)) == 2

        assert store.count(98000001, 'assets') == 2
        row = EsiRecord.query.filter_by(external_id='1').first()
        assert row.get_payload()['quantity'] == 250

    def test_composite_keys_and_duplicates(self, app):
        """Composite keys join with ':' and later duplicates in a batch win."""
        from corpsync.models import EsiRecord
        from corpsync.services.sync import SqlRecordStore

        store = SqlRecordStore(app)
        key = ('observer_id', 'character_id', 'type_id', 'last_updated')
        records = [
            {'observer_id': 7, 'character_id': 1, 'type_id': 1230, 'last_updated': '2024-01-01', 'quantity': 1},
            {'observer_id': 7, 'character_id': 1, 'type_id': 1230, 'last_updated': '2024-01-01', 'quantity': 2},
        ]

        store.upsert_batch(98000001, 'mining_ledger', records, key)

        rows = EsiRecord.query.filter_by(category='mining_ledger').all()
        assert len(rows) == 1
        assert rows[0].external_id == '7:1:1230:2024-01-01'
        assert rows[0].get_payload()['quantity'] == 2

    def test_categories_and_corporations_are_separate(self, app):
        """The same natural key in another corporation is another row."""
        from corpsync.services.sync import SqlRecordStore

        store = SqlRecordStore(app)
        store.upsert_batch(1, 'contracts', [{'contract_id': 5}], ('contract_id',))
        store.upsert_batch(2, 'contracts', [{'contract_id': 5}], ('contract_id',))

        assert store.count(1, 'contracts') == 1
        assert store.count(2, 'contracts') == 1

    def test_to_dict(self, app):
        """to_dict exposes the decoded payload."""
        from corpsync.models import EsiRecord
        from corpsync.services.sync import SqlRecordStore

        SqlRecordStore(app).upsert_batch(1, 'contracts', [{'contract_id': 5, 'price': 1.5}], ('contract_id',))

        data = EsiRecord.query.first().to_dict()
        assert data['category'] == 'contracts'
        assert data['data'] == {'contract_id': 5, 'price': 1.5}
