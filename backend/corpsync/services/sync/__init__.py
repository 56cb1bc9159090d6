"""
Sync Core - corporation data synchronization

This package contains the sync orchestration components:
- token_store: OAuth credentials with single-flight refresh
- sso_client: refresh-token exchange against EVE SSO
- fetch_client: rate-limit aware ESI client and name resolver
- delay_manager: retry backoff and rate-limit wait policy
- session_pool: HTTP session pooling for connection reuse
- error_log: bounded sync error history and statistics
- state_store: per-process run state and mutual exclusion
- executor: per-process-type sync pipelines
- scheduler: interval-based dispatch
- storage / kv_store: persistence collaborators
"""
from .delay_manager import BackoffDelayManager
from .session_pool import RequestSessionPool
from .sso_client import EveSsoClient
from .fetch_client import EsiFetchClient, NameResolver
from .token_store import TokenStore
from .error_log import SyncErrorLog
from .state_store import SyncStateStore
from .executor import SyncExecutor, SyncProcessType, classify_error
from .scheduler import SyncScheduler
from .storage import RecordStore, MemoryRecordStore, SqlRecordStore
from .kv_store import MemoryKVStore, SqlKVStore
from .models import (
    Credential,
    ErrorKind,
    FetchPage,
    RunState,
    RunStatus,
    ScheduleConfig,
    SyncError,
    SyncResult,
)

__all__ = [
    'BackoffDelayManager',
    'RequestSessionPool',
    'EveSsoClient',
    'EsiFetchClient',
    'NameResolver',
    'TokenStore',
    'SyncErrorLog',
    'SyncStateStore',
    'SyncExecutor',
    'SyncProcessType',
    'classify_error',
    'SyncScheduler',
    'RecordStore',
    'MemoryRecordStore',
    'SqlRecordStore',
    'MemoryKVStore',
    'SqlKVStore',
    'Credential',
    'ErrorKind',
    'FetchPage',
    'RunState',
    'RunStatus',
    'ScheduleConfig',
    'SyncError',
    'SyncResult',
]
