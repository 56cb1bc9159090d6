"""
Key-Value Store - persistence backend for the sync core

Components persist small JSON documents (credential map, schedule configs,
run states, error log) under fixed keys. ``SqlKVStore`` keeps them in the
``kv_entries`` table; ``MemoryKVStore`` keeps them in process memory.
"""
import copy
import json
import threading
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from ...exceptions import StorageError
from ...utils.logger import get_logger

logger = get_logger('kv_store')


class MemoryKVStore:
    """In-process key-value store (tests, ephemeral deployments)."""

    def __init__(self):
        self._data: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key not in self._data:
                return default
            return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        # Same contract as the SQL store: value must be JSON serializable
        json.dumps(value)
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class SqlKVStore:
    """Key-value store backed by the ``kv_entries`` table.

    Safe to call from background threads: every operation runs inside
    its own application context.

    Example:
        >>> store = SqlKVStore(app)
        >>> store.set('sync-schedule-configs', [...])
        >>> store.get('sync-schedule-configs', [])
    """

    def __init__(self, app):
        self._app = app
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        from ...extensions import db
        from ...models import KVEntry

        with self._app.app_context():
            try:
                entry = db.session.get(KVEntry, key)
            except SQLAlchemyError as e:
                logger.error(f"[KVStore] Failed to read '{key}': {e}")
                raise StorageError(f"Failed to read '{key}'", detail=str(e)) from e
            if entry is None:
                return default
            value = entry.get_value()
            return default if value is None else value

    def set(self, key: str, value: Any) -> None:
        from ...extensions import db
        from ...models import KVEntry

        with self._lock, self._app.app_context():
            try:
                entry = db.session.get(KVEntry, key)
                if entry is None:
                    entry = KVEntry(key=key)
                    db.session.add(entry)
                entry.set_value(value)
                db.session.commit()
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.error(f"[KVStore] Failed to write '{key}': {e}")
                raise StorageError(f"Failed to write '{key}'", detail=str(e)) from e

    def delete(self, key: str) -> None:
        from ...extensions import db
        from ...models import KVEntry

        with self._lock, self._app.app_context():
            try:
                KVEntry.query.filter_by(key=key).delete()
                db.session.commit()
            except SQLAlchemyError as e:
                db.session.rollback()
                raise StorageError(f"Failed to delete '{key}'", detail=str(e)) from e


def load_list(store: Optional[Any], key: str) -> list:
    """Read a list document, treating missing stores and bad shapes as empty."""
    if store is None:
        return []
    value = store.get(key, [])
    if not isinstance(value, list):
        logger.warning(f"[KVStore] Ignoring '{key}': expected a list, got {type(value).__name__}")
        return []
    return value
