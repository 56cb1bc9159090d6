"""
Service Layer

This module exports the sync runtime and the broadcaster.
"""
from .sync_log_broadcaster import SyncLogBroadcaster
from .sync_runtime import SyncRuntime, init_sync_runtime, get_sync_runtime

__all__ = [
    'SyncLogBroadcaster',
    'SyncRuntime',
    'init_sync_runtime',
    'get_sync_runtime',
]
