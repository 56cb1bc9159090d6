"""
Sync Scheduler - interval-based dispatch of sync processes

A daemon tick thread checks the schedule every ``tick_seconds``. Due
processes are claimed through the state store and handed to a worker
pool; a process that is still running when it comes due is skipped
rather than queued.
"""
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Sequence

from ...exceptions import ConflictError
from ...utils.logger import get_logger
from .executor import SyncProcessType
from .kv_store import load_list
from .models import Credential, ErrorKind, ScheduleConfig, SyncResult, now_ms

logger = get_logger('scheduler')

# Persistence key of the schedule configs
SCHEDULES_KEY = 'sync-schedule-configs'

MINUTE_MS = 60 * 1000


class SyncScheduler:
    """Owns schedule configs and next-run times; dispatches due runs.

    Next-run rules:
    - enabling (or scheduling enabled) sets next run = now + interval
    - disabling clears it
    - dispatching a due run sets next run = dispatch time + interval
    - a successful run sets next run = completion time + interval, using
      the interval configured at completion time

    Example:
        >>> scheduler = SyncScheduler(state_store, executor, token_store, error_log, kv_store=kv)
        >>> scheduler.load_schedule_config()
        >>> scheduler.schedule_process(ScheduleConfig('members', 'members', True, 30))
        >>> scheduler.start()
    """

    def __init__(
        self,
        state_store,
        executor,
        token_store,
        error_log,
        kv_store=None,
        tick_seconds: float = 60.0,
        max_workers: int = 8,
        corporation_ids: Sequence[int] = (),
        pool=None,
        clock: Callable[[], int] = now_ms
    ):
        """
        Args:
            state_store: SyncStateStore
            executor: SyncExecutor
            token_store: TokenStore used to pick credentials for scheduled runs
            error_log: SyncErrorLog
            kv_store: Persistence backend for schedule configs
            tick_seconds: Interval between schedule checks
            max_workers: Worker threads running dispatched syncs
            corporation_ids: Credential candidates in preference order
                (empty means every stored credential, in registration order)
            pool: Executor-like object with ``submit``/``shutdown`` (tests)
            clock: Epoch-millisecond clock
        """
        self._state = state_store
        self._executor = executor
        self._tokens = token_store
        self._errors = error_log
        self._kv = kv_store
        self.tick_seconds = tick_seconds
        self.max_workers = max_workers
        self._corporation_ids = list(corporation_ids)
        self._clock = clock

        self._configs: Dict[str, ScheduleConfig] = {}
        self._next_runs: Dict[str, int] = {}
        self._lock = threading.RLock()

        self._pool = pool
        self._owns_pool = pool is None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ==================== Config persistence ====================

    def load_schedule_config(self) -> int:
        """Load persisted configs. Loaded processes are due on the first tick.

        Returns:
            Number of configs loaded
        """
        loaded = {}
        for doc in load_list(self._kv, SCHEDULES_KEY):
            try:
                config = ScheduleConfig.from_dict(doc)
                SyncProcessType(config.process_type)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"[Scheduler] Skipping invalid schedule config {doc!r}: {e}")
                continue
            loaded[config.process_id] = config

        with self._lock:
            self._configs = loaded
            self._next_runs = {}

        logger.info(f"[Scheduler] Loaded {len(loaded)} schedule config(s)")
        return len(loaded)

    def save_schedule_config(self) -> None:
        if self._kv is None:
            return
        with self._lock:
            docs = [c.to_dict() for c in self._configs.values()]
        self._kv.set(SCHEDULES_KEY, docs)

    # ==================== Config mutations ====================

    def schedule_process(self, config: ScheduleConfig) -> ScheduleConfig:
        """Add or replace the schedule of a process.

        Raises:
            ValueError: Unknown process type or non-positive interval
        """
        SyncProcessType(config.process_type)
        if int(config.interval_minutes) <= 0:
            raise ValueError('interval_minutes must be positive')

        config = replace(config, interval_minutes=int(config.interval_minutes))
        with self._lock:
            self._configs[config.process_id] = config
            next_run = self._reset_next_run(config)

        self._state.set_next_run_time(config.process_id, next_run)
        self.save_schedule_config()
        logger.info(
            f"[Scheduler] Scheduled '{config.process_id}' every {config.interval_minutes} min "
            f"(enabled={config.enabled})"
        )
        return config

    def unschedule_process(self, process_id: str) -> bool:
        with self._lock:
            removed = self._configs.pop(process_id, None)
            self._next_runs.pop(process_id, None)
        if removed is None:
            return False

        self._state.set_next_run_time(process_id, None)
        self.save_schedule_config()
        logger.info(f"[Scheduler] Unscheduled '{process_id}'")
        return True

    def update_process_interval(self, process_id: str, interval_minutes: int) -> Optional[ScheduleConfig]:
        """Change the interval; an enabled schedule restarts its countdown now.

        Raises:
            ValueError: Non-positive interval
        """
        if int(interval_minutes) <= 0:
            raise ValueError('interval_minutes must be positive')

        with self._lock:
            config = self._configs.get(process_id)
            if config is None:
                return None
            config = replace(config, interval_minutes=int(interval_minutes))
            self._configs[process_id] = config
            next_run = self._reset_next_run(config)

        self._state.set_next_run_time(process_id, next_run)
        self.save_schedule_config()
        return config

    def toggle_process(self, process_id: str, enabled: bool) -> Optional[ScheduleConfig]:
        with self._lock:
            config = self._configs.get(process_id)
            if config is None:
                return None
            config = replace(config, enabled=bool(enabled))
            self._configs[process_id] = config
            next_run = self._reset_next_run(config)

        self._state.set_next_run_time(process_id, next_run)
        self.save_schedule_config()
        logger.info(f"[Scheduler] '{process_id}' {'enabled' if enabled else 'disabled'}")
        return config

    def _reset_next_run(self, config: ScheduleConfig) -> Optional[int]:
        # Caller holds self._lock
        if not config.enabled:
            self._next_runs.pop(config.process_id, None)
            return None
        next_run = self._clock() + config.interval_minutes * MINUTE_MS
        self._next_runs[config.process_id] = next_run
        return next_run

    # ==================== Lifecycle ====================

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the tick thread; the first check runs immediately."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._tick_loop, name='sync-scheduler', daemon=True)
        self._thread.start()
        logger.info(f"[Scheduler] Started (tick every {self.tick_seconds:.0f}s)")

    def stop(self, wait: bool = False, timeout: float = 10.0) -> None:
        """Stop ticking. Runs already dispatched finish on their own."""
        self._stop_event.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout)

        if self._owns_pool:
            with self._lock:
                pool, self._pool = self._pool, None
            if pool is not None:
                pool.shutdown(wait=wait)
        logger.info("[Scheduler] Stopped")

    def _tick_loop(self) -> None:
        while True:
            try:
                self.check_scheduled_processes()
            except Exception as e:
                logger.exception(f"[Scheduler] Schedule check failed: {e}")
            if self._stop_event.wait(self.tick_seconds):
                break

    # ==================== Dispatch ====================

    def check_scheduled_processes(self) -> List[str]:
        """Dispatch every due process that is not already running.

        Returns:
            Process ids dispatched by this check
        """
        now = self._clock()
        with self._lock:
            due = [
                config for config in self._configs.values()
                if config.enabled and self._next_runs.get(config.process_id, 0) <= now
            ]

        dispatched = []
        for config in due:
            try:
                self._state.start_sync(config.process_id)
            except ConflictError:
                logger.debug(f"[Scheduler] '{config.process_id}' still running, skipping this run")
                continue

            next_run = now + config.interval_minutes * MINUTE_MS
            with self._lock:
                if config.process_id in self._configs:
                    self._next_runs[config.process_id] = next_run
            self._state.set_next_run_time(config.process_id, next_run)

            self._submit(self._run_scheduled, config)
            dispatched.append(config.process_id)

        if dispatched:
            logger.info(f"[Scheduler] Dispatched: {', '.join(dispatched)}")
        return dispatched

    def run_process_now(
        self,
        process_id: str,
        process_type,
        corporation_id: int,
        credential: Credential
    ) -> SyncResult:
        """Run a process immediately on the calling thread.

        Raises:
            ConflictError: The process is already running
        """
        result = self._executor.execute_sync_process(
            process_type, corporation_id, credential, process_id=process_id
        )
        if result.success:
            self._push_next_run(process_id)
        return result

    def submit_process_now(
        self,
        process_id: str,
        process_type,
        corporation_id: int,
        credential: Credential
    ) -> Future:
        """Claim a process on the calling thread and run it in the worker pool.

        Raises:
            ConflictError: The process is already running
        """
        process_type = SyncProcessType(process_type)
        self._state.start_sync(process_id)
        return self._submit(self._run_claimed, process_id, process_type, corporation_id, credential)

    def _submit(self, fn, *args) -> Future:
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.max_workers, thread_name_prefix='sync-worker'
                )
            pool = self._pool
        return pool.submit(fn, *args)

    def _run_claimed(self, process_id, process_type, corporation_id, credential) -> SyncResult:
        result = self._executor.execute_sync_process(
            process_type, corporation_id, credential, process_id=process_id, claimed=True
        )
        if result.success:
            self._push_next_run(process_id)
        return result

    def _run_scheduled(self, config: ScheduleConfig) -> SyncResult:
        process_id = config.process_id
        process_type = SyncProcessType(config.process_type)

        try:
            credential = self._tokens.select_for_sync(
                self.candidate_corporations(), process_type.required_scopes
            )

            if credential is None:
                message = f'No valid credential with the scopes required for {process_type.label}'
                self._state.fail_sync(process_id, message)
                self._errors.log_error(process_id, process_type.label, ErrorKind.AUTH, message)
                return SyncResult(success=False, error_message=message)

            return self._run_claimed(process_id, process_type, credential.corporation_id, credential)
        except Exception as e:
            # Release the claim so the next due check can run the process again
            logger.exception(f"[Scheduler] Scheduled run of '{process_id}' crashed: {e}")
            self._state.fail_sync(process_id, str(e) or type(e).__name__)
            self._errors.log_exception(process_id, process_type.label, e)
            return SyncResult(success=False, error_message=str(e))

    def _push_next_run(self, process_id: str) -> None:
        with self._lock:
            config = self._configs.get(process_id)
            if config is None or not config.enabled:
                return
            next_run = self._clock() + config.interval_minutes * MINUTE_MS
            self._next_runs[process_id] = next_run
        self._state.set_next_run_time(process_id, next_run)

    # ==================== Queries ====================

    def candidate_corporations(self) -> List[int]:
        """Configured corporations, or every stored credential in registration order."""
        return list(self._corporation_ids) or self._tokens.corporation_ids()

    def get_scheduled_processes(self) -> List[ScheduleConfig]:
        with self._lock:
            return list(self._configs.values())

    def get_process_config(self, process_id: str) -> Optional[ScheduleConfig]:
        with self._lock:
            return self._configs.get(process_id)

    def get_next_run_time(self, process_id: str) -> Optional[int]:
        with self._lock:
            return self._next_runs.get(process_id)
