"""
Executor Tests

Tests for the per-process-type sync pipelines.
"""
import pytest

from conftest import CORP_ID


@pytest.fixture
def parts(clock, fake_fetch):
    """Executor wired to in-memory collaborators."""
    from corpsync.services.sync import MemoryRecordStore, SyncErrorLog, SyncExecutor, SyncStateStore

    state = SyncStateStore(clock=clock)
    errors = SyncErrorLog(clock=clock)
    storage = MemoryRecordStore()
    executor = SyncExecutor(fake_fetch, state, errors, storage, wallet_divisions=(1, 2, 3))
    return executor, state, errors, storage


def _corp_url(fake_fetch, path):
    return fake_fetch.url(f'/corporations/{CORP_ID}/{path}')


class TestAssets:
    """Tests for the assets pipeline."""

    def test_assets_are_stored_with_names(self, parts, fake_fetch, make_credential):
        """Assets are enriched with type names and upserted by item id."""
        from corpsync.services.sync import RunStatus

        executor, state, errors, storage = parts
        fake_fetch.routes[_corp_url(fake_fetch, 'assets/')] = [
            {'item_id': 1, 'type_id': 34, 'quantity': 100, 'location_id': 60003760},
            {'item_id': 2, 'type_id': 35, 'quantity': 5, 'location_id': 60003760},
        ]
        fake_fetch.routes[fake_fetch.url('/universe/types/34/')] = {'name': 'Tritanium'}

        result = executor.execute_sync_process('assets', CORP_ID, make_credential())

        assert result.success is True
        assert result.items_processed == 2
        stored = {r['item_id']: r for r in storage.list(CORP_ID, 'assets')}
        assert stored[1]['type_name'] == 'Tritanium'
        assert stored[2]['type_name'] == 'Type 35'
        assert state.get_sync_status('assets').status == RunStatus.COMPLETED
        assert len(errors) == 0

    def test_empty_result_completes_with_zero(self, parts, fake_fetch, make_credential):
        """An empty payload is a successful run with zero items."""
        from corpsync.services.sync import RunStatus

        executor, state, errors, storage = parts
        fake_fetch.routes[_corp_url(fake_fetch, 'assets/')] = []

        result = executor.execute_sync_process('assets', CORP_ID, make_credential())

        assert result.success is True
        assert result.items_processed == 0
        assert state.get_sync_status('assets').status == RunStatus.COMPLETED

    def test_api_failure_fails_run_and_logs_once(self, parts, fake_fetch, make_credential):
        """An ESI failure fails the run and leaves one classified error."""
        from corpsync.exceptions import EsiApiError
        from corpsync.services.sync import ErrorKind, RunStatus

        executor, state, errors, storage = parts
        url = _corp_url(fake_fetch, 'assets/')
        fake_fetch.routes[url] = EsiApiError('ESI returned 502', status=502, url=url)

        result = executor.execute_sync_process('assets', CORP_ID, make_credential())

        assert result.success is False
        assert result.error_message == 'ESI returned 502'
        assert state.get_sync_status('assets').status == RunStatus.FAILED
        logged = errors.get_errors()
        assert len(logged) == 1
        assert logged[0].kind == ErrorKind.EXTERNAL_API
        assert logged[0].process_name == 'Corporation Assets'
        assert logged[0].response_status == 502

    def test_malformed_payload(self, parts, fake_fetch, make_credential):
        """A non-record payload is a validation failure."""
        from corpsync.services.sync import ErrorKind

        executor, state, errors, storage = parts
        fake_fetch.routes[_corp_url(fake_fetch, 'assets/')] = [1, 2, 3]

        result = executor.execute_sync_process('assets', CORP_ID, make_credential())

        assert result.success is False
        assert errors.get_errors()[0].kind == ErrorKind.VALIDATION

    def test_storage_failure(self, clock, fake_fetch, make_credential):
        """Storage exceptions are classified as database errors."""
        from unittest.mock import Mock
        from corpsync.services.sync import ErrorKind, SyncErrorLog, SyncExecutor, SyncStateStore

        storage = Mock()
        storage.upsert_batch.side_effect = IOError('disk full')
        errors = SyncErrorLog(clock=clock)
        executor = SyncExecutor(fake_fetch, SyncStateStore(clock=clock), errors, storage)
        fake_fetch.routes[_corp_url(fake_fetch, 'contracts/')] = [{'contract_id': 7}]

        result = executor.execute_sync_process('contracts', CORP_ID, make_credential())

        assert result.success is False
        assert errors.get_errors()[0].kind == ErrorKind.STORAGE


class TestWallet:
    """Tests for the per-division wallet pipeline."""

    def test_failing_division_is_skipped(self, parts, fake_fetch, make_credential):
        """Division 3 failing still completes with the other divisions' count."""
        from corpsync.exceptions import EsiApiError
        from corpsync.services.sync import RunStatus

        executor, state, errors, storage = parts
        fake_fetch.routes[_corp_url(fake_fetch, 'wallets/1/transactions/')] = [
            {'transaction_id': 11, 'type_id': 34},
            {'transaction_id': 12, 'type_id': 34},
        ]
        fake_fetch.routes[_corp_url(fake_fetch, 'wallets/2/transactions/')] = [
            {'transaction_id': 21, 'type_id': 35},
        ]
        fake_fetch.routes[_corp_url(fake_fetch, 'wallets/3/transactions/')] = EsiApiError(
            'ESI returned 500', status=500
        )

        result = executor.execute_sync_process('wallet', CORP_ID, make_credential())

        assert result.success is True
        assert result.items_processed == 3
        assert state.get_sync_status('wallet').status == RunStatus.COMPLETED
        logged = errors.get_errors()
        assert len(logged) == 1
        assert logged[0].process_name == 'Wallet Transactions (division 3)'
        divisions = {r['division'] for r in storage.list(CORP_ID, 'wallet_transactions')}
        assert divisions == {1, 2}


class TestMembers:
    """Tests for the members pipeline."""

    def test_members_resolve_names(self, parts, fake_fetch, make_credential):
        """Members get character, corporation and alliance names."""
        executor, state, errors, storage = parts
        fake_fetch.routes[_corp_url(fake_fetch, 'members/')] = [2112000001, 2112000002]
        fake_fetch.routes[fake_fetch.url('/characters/2112000001/')] = {
            'name': 'Alice', 'alliance_id': 99000001
        }
        fake_fetch.routes[fake_fetch.url(f'/corporations/{CORP_ID}/')] = {'name': 'Test Corp'}
        fake_fetch.routes[fake_fetch.url('/alliances/99000001/')] = {'name': 'Test Alliance'}

        result = executor.execute_sync_process('members', CORP_ID, make_credential())

        assert result.items_processed == 2
        members = {m['character_id']: m for m in storage.list(CORP_ID, 'members')}
        assert members[2112000001]['character_name'] == 'Alice'
        assert members[2112000001]['alliance_name'] == 'Test Alliance'
        assert members[2112000002]['character_name'] == 'Character 2112000002'
        assert members[2112000002]['corporation_name'] == 'Test Corp'


class TestMining:
    """Tests for the mining ledger pipeline."""

    def test_ledger_per_observer(self, parts, fake_fetch, make_credential):
        """Ledger entries of every observer are stored with the observer id."""
        executor, state, errors, storage = parts
        base = fake_fetch.url(f'/corporation/{CORP_ID}/mining/observers/')
        fake_fetch.routes[base] = [{'observer_id': 1035000000001, 'observer_type': 'structure'}]
        fake_fetch.routes[f'{base}1035000000001/'] = [
            {'character_id': 1, 'type_id': 1230, 'quantity': 500, 'last_updated': '2024-01-01'},
        ]

        result = executor.execute_sync_process('mining', CORP_ID, make_credential())

        assert result.items_processed == 1
        entry = storage.list(CORP_ID, 'mining_ledger')[0]
        assert entry['observer_id'] == 1035000000001


class TestExecutorContract:
    """Tests for claiming and classification."""

    def test_running_process_conflicts(self, parts, make_credential):
        """execute_sync_process raises ConflictError when already running."""
        from corpsync.exceptions import ConflictError

        executor, state, errors, storage = parts
        state.start_sync('assets')

        with pytest.raises(ConflictError):
            executor.execute_sync_process('assets', CORP_ID, make_credential())

        assert len(errors) == 0

    def test_unknown_process_type(self, parts, make_credential):
        """Unknown process types are rejected before any state change."""
        executor, state, errors, storage = parts

        with pytest.raises(ValueError):
            executor.execute_sync_process('killmails', CORP_ID, make_credential())

    def test_classify_error(self):
        """Exceptions map onto error kinds."""
        import requests
        from sqlalchemy.exc import OperationalError
        from corpsync.exceptions import AuthError, EsiNetworkError
        from corpsync.services.sync import ErrorKind, classify_error

        assert classify_error(AuthError('expired')) == ErrorKind.AUTH
        assert classify_error(EsiNetworkError('reset')) == ErrorKind.NETWORK
        assert classify_error(requests.Timeout()) == ErrorKind.NETWORK
        assert classify_error(OperationalError('SELECT 1', {}, Exception('locked'))) == ErrorKind.STORAGE
        assert classify_error(RuntimeError('?')) == ErrorKind.UNKNOWN

    def test_every_process_type_has_scopes(self):
        """Every process type declares a label and at least one scope."""
        from corpsync.services.sync import SyncProcessType

        for process_type in SyncProcessType:
            assert process_type.label
            assert process_type.required_scopes

    def test_record_store_is_abstract(self):
        """Storage backends must implement upsert_batch."""
        from corpsync.services.sync import MemoryRecordStore, RecordStore

        class IncompleteStore(RecordStore):
            pass

        with pytest.raises(TypeError):
            RecordStore()
        with pytest.raises(TypeError):
            IncompleteStore()
        assert isinstance(MemoryRecordStore(), RecordStore)
