"""
Scheduler Tests

Tests for schedule configs, due-process dispatch and next-run bookkeeping.
"""
import time
from unittest.mock import Mock

import pytest

from conftest import CORP_ID, START_MS

MINUTE_MS = 60 * 1000


@pytest.fixture
def env(clock, immediate_pool, make_credential):
    """Scheduler over in-memory stores, a mock executor and one stored credential."""
    from corpsync.services.sync import (
        MemoryKVStore,
        SyncErrorLog,
        SyncResult,
        SyncScheduler,
        SyncStateStore,
        TokenStore,
    )

    kv = MemoryKVStore()
    state = SyncStateStore(clock=clock)
    errors = SyncErrorLog(clock=clock)
    tokens = TokenStore(Mock(), clock=clock)
    tokens.store(make_credential(expires_at_ms=START_MS + 24 * 60 * MINUTE_MS))

    executor = Mock()

    def execute(process_type, corporation_id, credential, process_id=None, claimed=False):
        if not claimed:
            state.start_sync(process_id)
        clock.advance(5 * MINUTE_MS)
        state.complete_sync(process_id, 3)
        return SyncResult(success=True, items_processed=3)

    executor.execute_sync_process.side_effect = execute

    scheduler = SyncScheduler(
        state, executor, tokens, errors, kv_store=kv, pool=immediate_pool, clock=clock
    )
    return Mock(scheduler=scheduler, state=state, errors=errors, tokens=tokens,
                executor=executor, kv=kv, pool=immediate_pool)


def _members(interval=30, enabled=True):
    from corpsync.services.sync import ScheduleConfig
    return ScheduleConfig('members', 'members', enabled, interval)


class TestScheduleConfig:
    """Tests for schedule mutations."""

    def test_schedule_sets_next_run(self, env, clock):
        """Scheduling an enabled process sets next run = now + interval."""
        env.scheduler.schedule_process(_members())

        assert env.scheduler.get_next_run_time('members') == START_MS + 30 * MINUTE_MS
        assert env.state.get_sync_status('members').next_run_at == START_MS + 30 * MINUTE_MS

    def test_schedule_rejects_bad_input(self, env):
        """Unknown process types and non-positive intervals are rejected."""
        from corpsync.services.sync import ScheduleConfig

        with pytest.raises(ValueError):
            env.scheduler.schedule_process(ScheduleConfig('x', 'killmails', True, 30))
        with pytest.raises(ValueError):
            env.scheduler.schedule_process(_members(interval=0))

    def test_toggle(self, env, clock):
        """Disabling clears the next run; enabling restarts the countdown."""
        env.scheduler.schedule_process(_members())

        env.scheduler.toggle_process('members', False)
        assert env.scheduler.get_next_run_time('members') is None

        clock.advance(10 * MINUTE_MS)
        env.scheduler.toggle_process('members', True)
        assert env.scheduler.get_next_run_time('members') == START_MS + 40 * MINUTE_MS

    def test_update_interval(self, env, clock):
        """Changing the interval restarts the countdown with the new value."""
        env.scheduler.schedule_process(_members())
        clock.advance(MINUTE_MS)

        config = env.scheduler.update_process_interval('members', 90)

        assert config.interval_minutes == 90
        assert env.scheduler.get_next_run_time('members') == START_MS + 91 * MINUTE_MS
        assert env.scheduler.update_process_interval('unknown', 90) is None

    def test_unschedule(self, env):
        """Unscheduled processes are no longer dispatched."""
        env.scheduler.schedule_process(_members())

        assert env.scheduler.unschedule_process('members') is True
        assert env.scheduler.unschedule_process('members') is False
        assert env.scheduler.get_process_config('members') is None

    def test_configs_round_trip(self, env, clock):
        """Saved configs load into a new scheduler and are due immediately."""
        from corpsync.services.sync import ScheduleConfig, SyncScheduler

        env.scheduler.schedule_process(_members())
        env.scheduler.schedule_process(ScheduleConfig('wallet', 'wallet', False, 15))

        reloaded = SyncScheduler(
            env.state, env.executor, env.tokens, env.errors,
            kv_store=env.kv, pool=env.pool, clock=clock
        )
        assert reloaded.load_schedule_config() == 2

        configs = {c.process_id: c for c in reloaded.get_scheduled_processes()}
        assert configs['members'].interval_minutes == 30
        assert configs['wallet'].enabled is False
        assert reloaded.check_scheduled_processes() == ['members']


class TestDispatch:
    """Tests for check_scheduled_processes()."""

    def test_not_due_yet(self, env, clock):
        """Nothing runs before the next run time."""
        env.scheduler.schedule_process(_members())
        clock.advance(29 * MINUTE_MS)

        assert env.scheduler.check_scheduled_processes() == []
        env.executor.execute_sync_process.assert_not_called()

    def test_success_pushes_next_run_from_completion(self, env, clock):
        """After a successful run, next run = completion time + interval."""
        env.scheduler.schedule_process(_members())
        clock.advance(30 * MINUTE_MS)

        assert env.scheduler.check_scheduled_processes() == ['members']

        # The run took five minutes
        completed_at = START_MS + 35 * MINUTE_MS
        assert env.scheduler.get_next_run_time('members') == completed_at + 30 * MINUTE_MS
        kwargs = env.executor.execute_sync_process.call_args.kwargs
        assert kwargs['claimed'] is True
        assert kwargs['process_id'] == 'members'

    def test_interval_read_at_completion(self, env, clock):
        """An interval changed during a run applies to the next run."""
        from corpsync.services.sync import SyncResult

        def execute(process_type, corporation_id, credential, process_id=None, claimed=False):
            env.scheduler.update_process_interval(process_id, 60)
            clock.advance(5 * MINUTE_MS)
            env.state.complete_sync(process_id, 1)
            return SyncResult(success=True, items_processed=1)

        env.executor.execute_sync_process.side_effect = execute
        env.scheduler.schedule_process(_members())
        clock.advance(30 * MINUTE_MS)

        env.scheduler.check_scheduled_processes()

        assert env.scheduler.get_next_run_time('members') == START_MS + 35 * MINUTE_MS + 60 * MINUTE_MS

    def test_failure_keeps_dispatch_next_run(self, env, clock):
        """A failed run leaves next run = dispatch time + interval."""
        from corpsync.services.sync import SyncResult

        def execute(process_type, corporation_id, credential, process_id=None, claimed=False):
            clock.advance(5 * MINUTE_MS)
            env.state.fail_sync(process_id, 'ESI returned 502')
            return SyncResult(success=False, error_message='ESI returned 502')

        env.executor.execute_sync_process.side_effect = execute
        env.scheduler.schedule_process(_members())
        clock.advance(30 * MINUTE_MS)

        env.scheduler.check_scheduled_processes()

        assert env.scheduler.get_next_run_time('members') == START_MS + 60 * MINUTE_MS

    def test_running_process_is_skipped(self, env, clock):
        """A due process that is still running is not dispatched again."""
        env.scheduler.schedule_process(_members())
        env.state.start_sync('members')
        clock.advance(30 * MINUTE_MS)

        assert env.scheduler.check_scheduled_processes() == []
        env.executor.execute_sync_process.assert_not_called()
        assert env.scheduler.get_next_run_time('members') == START_MS + 30 * MINUTE_MS

    def test_disabled_process_is_skipped(self, env, clock):
        """Disabled processes never run."""
        env.scheduler.schedule_process(_members(enabled=False))
        clock.advance(60 * MINUTE_MS)

        assert env.scheduler.check_scheduled_processes() == []

    def test_no_credential_fails_with_auth_error(self, env, clock):
        """Without a scoped credential the run fails and an auth error is logged."""
        from corpsync.services.sync import ErrorKind, RunStatus

        env.tokens.remove(CORP_ID)
        env.scheduler.schedule_process(_members())
        clock.advance(30 * MINUTE_MS)

        env.scheduler.check_scheduled_processes()

        state = env.state.get_sync_status('members')
        assert state.status == RunStatus.FAILED
        assert 'Member Tracking' in state.last_error
        assert env.errors.get_errors()[0].kind == ErrorKind.AUTH
        env.executor.execute_sync_process.assert_not_called()

    def test_crashing_run_releases_claim(self, env, clock):
        """An exception escaping the executor fails the run so it can run again."""
        from corpsync.services.sync import RunStatus

        env.executor.execute_sync_process.side_effect = RuntimeError('executor bug')
        env.scheduler.schedule_process(_members())
        clock.advance(30 * MINUTE_MS)

        env.scheduler.check_scheduled_processes()

        assert env.state.get_sync_status('members').status == RunStatus.FAILED
        assert len(env.errors) == 1


class TestManualRuns:
    """Tests for run_process_now() and submit_process_now()."""

    def test_run_now_pushes_next_run(self, env, clock, make_credential):
        """A successful manual run of a scheduled process restarts its countdown."""
        env.scheduler.schedule_process(_members())
        clock.advance(10 * MINUTE_MS)

        result = env.scheduler.run_process_now('members', 'members', CORP_ID, make_credential())

        assert result.success is True
        assert env.scheduler.get_next_run_time('members') == START_MS + 45 * MINUTE_MS

    def test_submit_conflicts_synchronously(self, env, make_credential):
        """submit_process_now raises ConflictError on the caller's thread."""
        from corpsync.exceptions import ConflictError

        env.state.start_sync('assets')

        with pytest.raises(ConflictError):
            env.scheduler.submit_process_now('assets', 'assets', CORP_ID, make_credential())

    def test_submit_runs_claimed(self, env, make_credential):
        """Submitted runs execute with the claim already taken."""
        future = env.scheduler.submit_process_now('assets', 'assets', CORP_ID, make_credential())

        assert future.result().items_processed == 3
        assert env.executor.execute_sync_process.call_args.kwargs['claimed'] is True


class TestLifecycle:
    """Tests for the tick thread."""

    def test_start_checks_immediately_and_stops(self, env, clock):
        """The first check happens on start; stop ends the thread."""
        from corpsync.services.sync import ScheduleConfig

        env.scheduler.tick_seconds = 3600
        env.scheduler.schedule_process(_members())
        env.scheduler.load_schedule_config()  # loaded configs are due at once

        env.scheduler.start()
        deadline = time.time() + 5
        while time.time() < deadline and not env.executor.execute_sync_process.called:
            time.sleep(0.01)
        env.scheduler.stop()

        assert env.executor.execute_sync_process.called
        assert env.scheduler.is_running is False
        assert isinstance(env.scheduler.get_process_config('members'), ScheduleConfig)
