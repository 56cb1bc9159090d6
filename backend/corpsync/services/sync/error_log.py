"""
Sync Error Log - bounded history of sync failures with statistics

Keeps the most recent ``MAX_ERRORS`` failures (oldest evicted first),
persists them, and derives the statistics shown on the sync dashboard.
"""
import threading
import uuid
from collections import Counter, deque
from typing import Callable, Deque, List, Optional

from ...exceptions import StorageError, SyncFailure
from ...utils.logger import get_logger
from .kv_store import load_list
from .models import ErrorKind, ErrorStats, RepeatedFailure, SyncError, now_ms

logger = get_logger('error_log')

# Persistence key of the error list
ERRORS_KEY = 'sync-errors'

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


class SyncErrorLog:
    """Fixed-capacity ring buffer of SyncError entries.

    Example:
        >>> log = SyncErrorLog(kv_store=kv)
        >>> log.log_error('assets', 'Assets', ErrorKind.EXTERNAL_API, 'ESI returned 502')
        >>> log.get_error_stats().repeated_failures
        >>> log.clear_old_errors(older_than_days=7)
    """

    # Capacity of the ring buffer
    MAX_ERRORS = 500

    # Errors per process before it counts as a repeated failure
    REPEATED_FAILURE_THRESHOLD = 3

    # Entries in ErrorStats.recent_errors
    RECENT_ERRORS = 10

    def __init__(
        self,
        kv_store=None,
        capacity: int = MAX_ERRORS,
        clock: Callable[[], int] = now_ms
    ):
        self._kv = kv_store
        self.capacity = capacity
        self._clock = clock
        self._errors: Deque[SyncError] = deque(maxlen=capacity)
        self._listeners: List[Callable[[SyncError], None]] = []
        self._lock = threading.Lock()
        self._persist_lock = threading.Lock()

    def load(self) -> int:
        """Load persisted errors (newest ``capacity`` entries are kept)."""
        errors = []
        for doc in load_list(self._kv, ERRORS_KEY):
            try:
                errors.append(SyncError.from_dict(doc))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"[ErrorLog] Skipping unreadable error record: {e}")

        with self._lock:
            self._errors = deque(errors, maxlen=self.capacity)
            return len(self._errors)

    def _persist(self) -> None:
        if self._kv is None:
            return
        # Snapshot and write together so an older snapshot never lands last
        with self._persist_lock:
            with self._lock:
                docs = [e.to_dict() for e in self._errors]
            try:
                self._kv.set(ERRORS_KEY, docs)
            except StorageError as e:
                # The in-memory log stays authoritative
                logger.error(f"[ErrorLog] Failed to persist sync errors: {e}")

    def subscribe(self, listener: Callable[[SyncError], None]) -> Callable[[], None]:
        """Register a callback invoked for every new error.

        Returns:
            Function that removes the listener
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def log_error(
        self,
        process_id: str,
        process_name: str,
        kind: ErrorKind,
        message: str,
        detail: Optional[str] = None,
        retry_attempt: Optional[int] = None,
        request_url: Optional[str] = None,
        response_status: Optional[int] = None,
        corporation_id: Optional[int] = None
    ) -> SyncError:
        """Append an error, evicting the oldest entry when full."""
        error = SyncError(
            id=uuid.uuid4().hex,
            process_id=process_id,
            process_name=process_name,
            timestamp=self._clock(),
            kind=ErrorKind(kind),
            message=message,
            detail=detail,
            retry_attempt=retry_attempt,
            request_url=request_url,
            response_status=response_status,
            corporation_id=corporation_id,
        )

        with self._lock:
            self._errors.append(error)
            listeners = list(self._listeners)

        logger.error(f"[SyncError] {process_name} ({error.kind.value}): {message}")
        self._persist()

        for listener in listeners:
            try:
                listener(error)
            except Exception as e:
                logger.warning(f"[ErrorLog] Listener failed: {e}")

        return error

    def log_exception(
        self,
        process_id: str,
        process_name: str,
        exc: BaseException,
        kind: Optional[ErrorKind] = None,
        corporation_id: Optional[int] = None
    ) -> SyncError:
        """Record an exception, taking kind/url/status from SyncFailure subclasses."""
        if kind is None:
            kind = ErrorKind(exc.kind) if isinstance(exc, SyncFailure) else ErrorKind.UNKNOWN

        return self.log_error(
            process_id,
            process_name,
            kind,
            str(exc) or type(exc).__name__,
            detail=getattr(exc, 'detail', None),
            request_url=getattr(exc, 'url', None),
            response_status=getattr(exc, 'status', None),
            corporation_id=corporation_id,
        )

    def get_errors(self) -> List[SyncError]:
        """All errors, oldest first."""
        with self._lock:
            return list(self._errors)

    def get_recent_errors(self, limit: int = 20) -> List[SyncError]:
        """Most recent errors, newest first."""
        with self._lock:
            errors = list(self._errors)
        return list(reversed(errors[-limit:])) if limit > 0 else []

    def get_errors_by_process(self, process_id: str) -> List[SyncError]:
        with self._lock:
            return [e for e in self._errors if e.process_id == process_id]

    def get_error_stats(self) -> ErrorStats:
        """Totals, breakdowns, hourly rate and repeated failures."""
        with self._lock:
            errors = list(self._errors)

        now = self._clock()
        by_kind = Counter(e.kind.value for e in errors)
        by_process = Counter(e.process_id for e in errors)
        last_hour = sum(1 for e in errors if e.timestamp > now - HOUR_MS)

        repeated = []
        for process_id, count in by_process.items():
            if count < self.REPEATED_FAILURE_THRESHOLD:
                continue
            last_error = max(
                (e for e in errors if e.process_id == process_id),
                key=lambda e: e.timestamp
            )
            repeated.append(RepeatedFailure(process_id, count, last_error))
        repeated.sort(key=lambda r: r.count, reverse=True)

        return ErrorStats(
            total_errors=len(errors),
            errors_by_kind=dict(by_kind),
            errors_by_process=dict(by_process),
            recent_errors=list(reversed(errors[-self.RECENT_ERRORS:])),
            error_rate=last_hour / 60.0,
            repeated_failures=repeated,
        )

    def clear_errors(self) -> int:
        with self._lock:
            removed = len(self._errors)
            self._errors.clear()
        self._persist()
        logger.info(f"[ErrorLog] Cleared {removed} error(s)")
        return removed

    def clear_old_errors(self, older_than_days: float = 7) -> int:
        """Drop errors older than the given age.

        Returns:
            Number of errors removed
        """
        cutoff = self._clock() - int(older_than_days * DAY_MS)

        with self._lock:
            kept = [e for e in self._errors if e.timestamp >= cutoff]
            removed = len(self._errors) - len(kept)
            self._errors = deque(kept, maxlen=self.capacity)

        if removed:
            self._persist()
            logger.info(f"[ErrorLog] Pruned {removed} error(s) older than {older_than_days} day(s)")
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._errors)
