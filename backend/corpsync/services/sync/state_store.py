"""
Sync State Store - per-process run state with mutual exclusion

The state store is the single authority on whether a process is running.
``start_sync`` is an atomic check-and-set: two triggers for the same
process can never both get past it.
"""
import threading
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from ...exceptions import ConflictError, StorageError
from ...utils.logger import get_logger
from .kv_store import load_list
from .models import RunState, RunStatus, SyncHistoryEntry, now_ms

logger = get_logger('state_store')

# Persistence keys
STATUSES_KEY = 'sync-statuses'
HISTORY_KEY = 'sync-history'

RESTART_INTERRUPTED_MESSAGE = 'Sync interrupted by application restart'


class SyncStateStore:
    """Run states keyed by process id.

    Each process id has its own lock; every mutation replaces the frozen
    ``RunState`` while holding that lock. Listeners are notified outside
    the lock with the new snapshot.

    Example:
        >>> store = SyncStateStore(kv_store=kv)
        >>> store.start_sync('assets')
        >>> store.update_sync_progress('assets', 50, 'Storing assets...', 0, 1200)
        >>> store.complete_sync('assets', 1200)
    """

    HISTORY_LIMIT = 100

    def __init__(
        self,
        kv_store=None,
        history_limit: int = HISTORY_LIMIT,
        clock: Callable[[], int] = now_ms
    ):
        self._kv = kv_store
        self._clock = clock

        self._states: Dict[str, RunState] = {}
        self._process_locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

        self._history: Deque[SyncHistoryEntry] = deque(maxlen=history_limit)
        self._history_lock = threading.Lock()
        self._persist_lock = threading.Lock()

        self._listeners: List[Callable[[str, RunState], None]] = []

    def _lock_for(self, process_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._process_locks.get(process_id)
            if lock is None:
                lock = threading.Lock()
                self._process_locks[process_id] = lock
            return lock

    def _current(self, process_id: str) -> RunState:
        return self._states.get(process_id) or RunState(process_id=process_id)

    # ==================== Persistence ====================

    def load_state(self) -> int:
        """Load persisted states and history.

        Runs persisted as running cannot still be alive after a restart;
        they are marked failed.

        Returns:
            Number of interrupted runs marked failed
        """
        interrupted = 0
        now = self._clock()

        for doc in load_list(self._kv, STATUSES_KEY):
            try:
                state = RunState.from_dict(doc)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"[StateStore] Skipping unreadable run state: {e}")
                continue

            if state.status == RunStatus.RUNNING:
                interrupted += 1
                logger.warning(
                    f"[StaleTaskCleanup] Process '{state.process_id}' was running at shutdown, "
                    f"marking as failed"
                )
                state = state.evolve(
                    status=RunStatus.FAILED,
                    stage='Failed',
                    last_error=RESTART_INTERRUPTED_MESSAGE,
                    completed_at=now,
                )

            with self._lock_for(state.process_id):
                self._states[state.process_id] = state

        history = []
        for doc in load_list(self._kv, HISTORY_KEY):
            try:
                history.append(SyncHistoryEntry.from_dict(doc))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"[StateStore] Skipping unreadable history entry: {e}")

        with self._history_lock:
            self._history.clear()
            self._history.extend(history)

        if interrupted:
            self._persist()
        return interrupted

    def _persist(self) -> None:
        if self._kv is None:
            return
        with self._persist_lock:
            with self._registry_lock:
                states = [s.to_dict() for s in dict(self._states).values()]
            with self._history_lock:
                history = [h.to_dict() for h in self._history]
            try:
                self._kv.set(STATUSES_KEY, states)
                self._kv.set(HISTORY_KEY, history)
            except StorageError as e:
                logger.error(f"[StateStore] Failed to persist run states: {e}")

    # ==================== Observers ====================

    def subscribe(self, listener: Callable[[str, RunState], None]) -> Callable[[], None]:
        """Register a callback invoked with ``(process_id, state)`` after each change.

        Returns:
            Function that removes the listener
        """
        with self._registry_lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._registry_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, process_id: str, state: RunState) -> None:
        with self._registry_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(process_id, state)
            except Exception as e:
                logger.warning(f"[StateStore] Listener failed for '{process_id}': {e}")

    # ==================== Transitions ====================

    def start_sync(self, process_id: str) -> RunState:
        """Mark a process running.

        Raises:
            ConflictError: The process is already running (state untouched)
        """
        with self._lock_for(process_id):
            current = self._current(process_id)
            if current.status == RunStatus.RUNNING:
                raise ConflictError(process_id)

            state = current.evolve(
                status=RunStatus.RUNNING,
                progress=0,
                stage='Initializing...',
                items_processed=0,
                items_total=None,
                started_at=self._clock(),
                completed_at=None,
                last_error=None,
            )
            self._states[process_id] = state

        logger.info(f"[StateStore] Process '{process_id}' started")
        self._persist()
        self._notify(process_id, state)
        return state

    def update_sync_progress(
        self,
        process_id: str,
        progress: int,
        stage: str,
        items_processed: Optional[int] = None,
        items_total: Optional[int] = None
    ) -> Optional[RunState]:
        """Update progress of a running process; ignored when not running."""
        with self._lock_for(process_id):
            current = self._current(process_id)
            if current.status != RunStatus.RUNNING:
                return None

            changes = {
                'progress': max(0, min(100, int(progress))),
                'stage': stage,
            }
            if items_processed is not None:
                changes['items_processed'] = items_processed
            if items_total is not None:
                changes['items_total'] = items_total

            state = current.evolve(**changes)
            self._states[process_id] = state

        logger.debug(f"[StateStore] Process '{process_id}' {state.progress}%: {stage}")
        self._notify(process_id, state)
        return state

    def complete_sync(self, process_id: str, items_processed: int) -> RunState:
        with self._lock_for(process_id):
            current = self._current(process_id)
            now = self._clock()
            state = current.evolve(
                status=RunStatus.COMPLETED,
                progress=100,
                stage='Completed',
                items_processed=items_processed,
                completed_at=now,
                last_error=None,
            )
            self._states[process_id] = state

        self._record_history(state, RunStatus.COMPLETED, items_processed=items_processed)
        logger.info(f"[StateStore] Process '{process_id}' completed: {items_processed} items")
        self._persist()
        self._notify(process_id, state)
        return state

    def fail_sync(self, process_id: str, message: str) -> RunState:
        with self._lock_for(process_id):
            current = self._current(process_id)
            state = current.evolve(
                status=RunStatus.FAILED,
                stage='Failed',
                completed_at=self._clock(),
                last_error=message,
            )
            self._states[process_id] = state

        self._record_history(state, RunStatus.FAILED, error_message=message)
        logger.warning(f"[StateStore] Process '{process_id}' failed: {message}")
        self._persist()
        self._notify(process_id, state)
        return state

    def set_next_run_time(self, process_id: str, next_run_at: Optional[int]) -> RunState:
        with self._lock_for(process_id):
            state = self._current(process_id).evolve(next_run_at=next_run_at)
            self._states[process_id] = state

        self._notify(process_id, state)
        return state

    def _record_history(self, state: RunState, status: RunStatus, items_processed=None, error_message=None):
        started = state.started_at or state.completed_at
        entry = SyncHistoryEntry(
            process_id=state.process_id,
            timestamp=state.completed_at,
            status=status,
            duration_ms=max((state.completed_at or 0) - (started or 0), 0),
            items_processed=items_processed,
            error_message=error_message,
        )
        with self._history_lock:
            self._history.append(entry)

    # ==================== Queries ====================

    def is_process_running(self, process_id: str) -> bool:
        with self._lock_for(process_id):
            return self._current(process_id).status == RunStatus.RUNNING

    def get_sync_status(self, process_id: str) -> RunState:
        """Snapshot of one process (idle default when never run)."""
        with self._lock_for(process_id):
            return self._current(process_id)

    def get_snapshot(self) -> Dict[str, RunState]:
        """Snapshot of every known process."""
        with self._registry_lock:
            return dict(self._states)

    def get_history(self, process_id: Optional[str] = None, limit: int = 50) -> List[SyncHistoryEntry]:
        """Finished runs, newest first."""
        with self._history_lock:
            entries = list(self._history)
        if process_id:
            entries = [e for e in entries if e.process_id == process_id]
        return list(reversed(entries))[:limit]
