"""
Error Log Tests

Tests for the bounded sync error log and its statistics.
"""
from corpsync.services.sync.models import ErrorKind

HOUR_MS = 60 * 60 * 1000


class TestErrorLog:
    """Tests for recording and querying errors."""

    def test_recent_errors_newest_first(self, clock):
        """get_recent_errors returns the newest entries first."""
        from corpsync.services.sync import SyncErrorLog

        log = SyncErrorLog(clock=clock)
        for i in range(5):
            log.log_error('assets', 'Corporation Assets', ErrorKind.EXTERNAL_API, f'error {i}')
            clock.advance(1000)

        recent = log.get_recent_errors(2)

        assert [e.message for e in recent] == ['error 4', 'error 3']

    def test_capacity_evicts_oldest(self, clock):
        """The log keeps at most `capacity` entries, dropping the oldest."""
        from corpsync.services.sync import SyncErrorLog

        log = SyncErrorLog(capacity=3, clock=clock)
        for i in range(5):
            log.log_error('assets', 'Corporation Assets', ErrorKind.NETWORK, f'error {i}')

        assert len(log) == 3
        assert [e.message for e in log.get_errors()] == ['error 2', 'error 3', 'error 4']

    def test_log_exception_takes_failure_details(self, clock):
        """SyncFailure subclasses supply kind, url and status."""
        from corpsync.exceptions import EsiApiError
        from corpsync.services.sync import SyncErrorLog

        log = SyncErrorLog(clock=clock)
        error = log.log_exception(
            'assets', 'Corporation Assets',
            EsiApiError('ESI returned 502', status=502, url='https://esi.test/assets/'),
            corporation_id=98000001,
        )

        assert error.kind == ErrorKind.EXTERNAL_API
        assert error.response_status == 502
        assert error.request_url == 'https://esi.test/assets/'
        assert error.corporation_id == 98000001

    def test_log_exception_unknown(self, clock):
        """Other exceptions are recorded as unknown."""
        from corpsync.services.sync import SyncErrorLog

        error = SyncErrorLog(clock=clock).log_exception('assets', 'Assets', KeyError('type_id'))

        assert error.kind == ErrorKind.UNKNOWN


class TestErrorStats:
    """Tests for get_error_stats()."""

    def test_repeated_failures(self, clock):
        """Only processes with at least three errors are repeated failures."""
        from corpsync.services.sync import SyncErrorLog

        log = SyncErrorLog(clock=clock)
        for i in range(3):
            log.log_error('assets', 'Corporation Assets', ErrorKind.EXTERNAL_API, f'assets {i}')
            clock.advance(1000)
        log.log_error('members', 'Member Tracking', ErrorKind.AUTH, 'no token')

        stats = log.get_error_stats()

        assert stats.total_errors == 4
        assert stats.errors_by_kind == {'esi_api': 3, 'auth': 1}
        assert stats.errors_by_process == {'assets': 3, 'members': 1}
        assert [r.process_id for r in stats.repeated_failures] == ['assets']
        assert stats.repeated_failures[0].count == 3
        assert stats.repeated_failures[0].last_error.message == 'assets 2'

    def test_error_rate_counts_last_hour(self, clock):
        """error_rate is errors in the last hour per minute."""
        from corpsync.services.sync import SyncErrorLog

        log = SyncErrorLog(clock=clock)
        log.log_error('assets', 'Assets', ErrorKind.NETWORK, 'old')
        clock.advance(2 * HOUR_MS)
        for _ in range(6):
            log.log_error('assets', 'Assets', ErrorKind.NETWORK, 'new')

        assert log.get_error_stats().error_rate == 6 / 60.0


class TestPruning:
    """Tests for clearing errors."""

    def test_clear_old_errors(self, clock):
        """Errors older than the cutoff are removed."""
        from corpsync.services.sync import SyncErrorLog

        log = SyncErrorLog(clock=clock)
        log.log_error('assets', 'Assets', ErrorKind.NETWORK, 'old')
        clock.advance(8 * 24 * HOUR_MS)
        log.log_error('assets', 'Assets', ErrorKind.NETWORK, 'new')

        removed = log.clear_old_errors(older_than_days=7)

        assert removed == 1
        assert [e.message for e in log.get_errors()] == ['new']

    def test_persisted_and_reloaded(self, clock):
        """Errors survive a reload through the key-value store."""
        from corpsync.services.sync import MemoryKVStore, SyncErrorLog

        kv = MemoryKVStore()
        log = SyncErrorLog(kv_store=kv, clock=clock)
        log.log_error('assets', 'Assets', ErrorKind.STORAGE, 'disk full')

        reloaded = SyncErrorLog(kv_store=kv, clock=clock)
        assert reloaded.load() == 1
        assert reloaded.get_errors()[0].kind == ErrorKind.STORAGE

        log.clear_errors()
        assert SyncErrorLog(kv_store=kv, clock=clock).load() == 0

    def test_concurrent_writes_keep_newest_snapshot(self, clock):
        """A slow write of an older snapshot cannot overwrite a newer one."""
        import threading
        import time
        from corpsync.services.sync import MemoryKVStore, SyncErrorLog

        class SlowFirstWriteKV(MemoryKVStore):
            def __init__(self):
                super().__init__()
                self.writing = threading.Event()
                self.calls = 0

            def set(self, key, value):
                self.calls += 1
                if self.calls == 1:
                    self.writing.set()
                    time.sleep(0.2)
                super().set(key, value)

        kv = SlowFirstWriteKV()
        log = SyncErrorLog(kv_store=kv, clock=clock)

        first = threading.Thread(
            target=log.log_error, args=('assets', 'Assets', ErrorKind.NETWORK, 'first')
        )
        first.start()
        assert kv.writing.wait(timeout=2)
        log.log_error('wallet', 'Wallet', ErrorKind.NETWORK, 'second')
        first.join(timeout=2)

        reloaded = SyncErrorLog(kv_store=kv, clock=clock)
        assert reloaded.load() == 2
        assert sorted(e.message for e in reloaded.get_errors()) == ['first', 'second']
