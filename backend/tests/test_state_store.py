"""
State Store Tests

Tests for run state transitions, mutual exclusion and restart recovery.
"""
import threading

import pytest


class TestTransitions:
    """Tests for start/progress/complete/fail."""

    def test_idle_default(self, clock):
        """Unknown processes report an idle state."""
        from corpsync.services.sync import RunStatus, SyncStateStore

        state = SyncStateStore(clock=clock).get_sync_status('assets')

        assert state.status == RunStatus.IDLE
        assert state.stage == 'Not started'

    def test_full_run(self, clock):
        """A run goes running -> completed with history recorded."""
        from corpsync.services.sync import RunStatus, SyncStateStore

        store = SyncStateStore(clock=clock)
        store.start_sync('assets')
        store.update_sync_progress('assets', 50, 'Storing 10 assets in database...', 0, 10)
        clock.advance(5000)
        state = store.complete_sync('assets', 10)

        assert state.status == RunStatus.COMPLETED
        assert state.progress == 100
        assert state.items_processed == 10
        assert state.items_total == 10

        history = store.get_history('assets')
        assert len(history) == 1
        assert history[0].duration_ms == 5000
        assert history[0].items_processed == 10

    def test_fail_keeps_message(self, clock):
        """A failed run records its error message."""
        from corpsync.services.sync import RunStatus, SyncStateStore

        store = SyncStateStore(clock=clock)
        store.start_sync('wallet')
        state = store.fail_sync('wallet', 'ESI returned 502')

        assert state.status == RunStatus.FAILED
        assert state.last_error == 'ESI returned 502'
        assert store.get_history()[0].error_message == 'ESI returned 502'

    def test_progress_ignored_when_not_running(self, clock):
        """Progress updates for idle or finished processes are dropped."""
        from corpsync.services.sync import RunStatus, SyncStateStore

        store = SyncStateStore(clock=clock)
        assert store.update_sync_progress('assets', 40, 'Late update') is None

        store.start_sync('assets')
        store.complete_sync('assets', 3)
        store.update_sync_progress('assets', 40, 'Late update')

        state = store.get_sync_status('assets')
        assert state.status == RunStatus.COMPLETED
        assert state.progress == 100

    def test_progress_is_clamped(self, clock):
        """Progress stays within 0..100."""
        from corpsync.services.sync import SyncStateStore

        store = SyncStateStore(clock=clock)
        store.start_sync('assets')

        assert store.update_sync_progress('assets', 150, 'Over').progress == 100
        assert store.update_sync_progress('assets', -5, 'Under').progress == 0


class TestMutualExclusion:
    """Tests for start_sync conflicts."""

    def test_second_start_conflicts(self, clock):
        """Starting a running process raises and leaves its progress alone."""
        from corpsync.exceptions import ConflictError
        from corpsync.services.sync import SyncStateStore

        store = SyncStateStore(clock=clock)
        store.start_sync('assets')
        store.update_sync_progress('assets', 40, 'Fetching...')

        with pytest.raises(ConflictError):
            store.start_sync('assets')

        assert store.get_sync_status('assets').progress == 40

    def test_concurrent_starts_admit_one(self, clock):
        """Only one of many concurrent starts wins."""
        from corpsync.exceptions import ConflictError
        from corpsync.services.sync import SyncStateStore

        store = SyncStateStore(clock=clock)
        barrier = threading.Barrier(8)
        outcomes = []

        def worker():
            barrier.wait()
            try:
                store.start_sync('members')
                outcomes.append('started')
            except ConflictError:
                outcomes.append('conflict')

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

        assert outcomes.count('started') == 1
        assert outcomes.count('conflict') == 7

    def test_restart_after_completion(self, clock):
        """A finished process can be started again."""
        from corpsync.services.sync import RunStatus, SyncStateStore

        store = SyncStateStore(clock=clock)
        store.start_sync('assets')
        store.fail_sync('assets', 'boom')

        state = store.start_sync('assets')

        assert state.status == RunStatus.RUNNING
        assert state.last_error is None


class TestPersistence:
    """Tests for load_state()."""

    def test_running_state_is_failed_on_load(self, clock):
        """Runs persisted as running are marked failed after a restart."""
        from corpsync.services.sync import MemoryKVStore, RunStatus, SyncStateStore
        from corpsync.services.sync.state_store import RESTART_INTERRUPTED_MESSAGE

        kv = MemoryKVStore()
        before = SyncStateStore(kv_store=kv, clock=clock)
        before.start_sync('assets')
        before.start_sync('members')
        before.complete_sync('members', 12)

        after = SyncStateStore(kv_store=kv, clock=clock)
        interrupted = after.load_state()

        assert interrupted == 1
        assets = after.get_sync_status('assets')
        assert assets.status == RunStatus.FAILED
        assert assets.last_error == RESTART_INTERRUPTED_MESSAGE
        assert after.get_sync_status('members').status == RunStatus.COMPLETED
        assert len(after.get_history()) == 1


class TestListeners:
    """Tests for subscribe()."""

    def test_listener_sees_changes(self, clock):
        """Listeners receive each new state; a failing listener is isolated."""
        from corpsync.services.sync import SyncStateStore

        store = SyncStateStore(clock=clock)
        seen = []

        def broken(process_id, state):
            raise RuntimeError('listener bug')

        store.subscribe(broken)
        unsubscribe = store.subscribe(lambda pid, state: seen.append(state.status.value))

        store.start_sync('assets')
        store.complete_sync('assets', 1)
        unsubscribe()
        store.start_sync('assets')

        assert seen == ['running', 'completed']
