"""
Sync Core Types

Value types shared by the token store, fetch client, state store,
error log, executor and scheduler. All timestamps are epoch milliseconds.
"""
import time
from dataclasses import dataclass, field, asdict, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional


def now_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class RunStatus(str, Enum):
    IDLE = 'idle'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'


class ErrorKind(str, Enum):
    """Error log categories (values are the persisted names)."""
    EXTERNAL_API = 'esi_api'
    STORAGE = 'database'
    AUTH = 'auth'
    NETWORK = 'network'
    VALIDATION = 'validation'
    UNKNOWN = 'unknown'


@dataclass(frozen=True)
class Credential:
    """OAuth credential of one corporation (replaced wholesale on change)."""
    corporation_id: int
    character_id: int
    access_token: str
    refresh_token: str
    expires_at_ms: int
    granted_scopes: FrozenSet[str] = frozenset()
    is_valid: bool = True
    last_refreshed_ms: Optional[int] = None
    corporation_name: Optional[str] = None
    character_name: Optional[str] = None

    def is_expired(self, at_ms: int) -> bool:
        return self.expires_at_ms <= at_ms

    def has_scopes(self, required: Iterable[str]) -> bool:
        return set(required).issubset(self.granted_scopes)

    def to_dict(self, include_secrets: bool = True) -> Dict[str, Any]:
        data = {
            'corporation_id': self.corporation_id,
            'character_id': self.character_id,
            'expires_at_ms': self.expires_at_ms,
            'granted_scopes': sorted(self.granted_scopes),
            'is_valid': self.is_valid,
            'last_refreshed_ms': self.last_refreshed_ms,
            'corporation_name': self.corporation_name,
            'character_name': self.character_name,
        }
        if include_secrets:
            data['access_token'] = self.access_token
            data['refresh_token'] = self.refresh_token
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Credential':
        return cls(
            corporation_id=int(data['corporation_id']),
            character_id=int(data.get('character_id') or 0),
            access_token=data.get('access_token', ''),
            refresh_token=data.get('refresh_token', ''),
            expires_at_ms=int(data.get('expires_at_ms') or 0),
            granted_scopes=frozenset(data.get('granted_scopes') or ()),
            is_valid=bool(data.get('is_valid', True)),
            last_refreshed_ms=data.get('last_refreshed_ms'),
            corporation_name=data.get('corporation_name'),
            character_name=data.get('character_name'),
        )


@dataclass
class ScheduleConfig:
    process_id: str
    process_type: str
    enabled: bool = True
    interval_minutes: int = 60

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScheduleConfig':
        return cls(
            process_id=data['process_id'],
            process_type=data['process_type'],
            enabled=bool(data.get('enabled', True)),
            interval_minutes=int(data['interval_minutes']),
        )


@dataclass(frozen=True)
class RunState:
    """Snapshot of one process's run (replaced under the process lock)."""
    process_id: str
    status: RunStatus = RunStatus.IDLE
    progress: int = 0
    stage: str = 'Not started'
    items_processed: int = 0
    items_total: Optional[int] = None
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    last_error: Optional[str] = None
    next_run_at: Optional[int] = None

    def evolve(self, **changes) -> 'RunState':
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RunState':
        return cls(
            process_id=data['process_id'],
            status=RunStatus(data.get('status', RunStatus.IDLE.value)),
            progress=int(data.get('progress') or 0),
            stage=data.get('stage') or 'Not started',
            items_processed=int(data.get('items_processed') or 0),
            items_total=data.get('items_total'),
            started_at=data.get('started_at'),
            completed_at=data.get('completed_at'),
            last_error=data.get('last_error'),
            next_run_at=data.get('next_run_at'),
        )


@dataclass(frozen=True)
class SyncHistoryEntry:
    process_id: str
    timestamp: int
    status: RunStatus
    duration_ms: int
    items_processed: Optional[int] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncHistoryEntry':
        return cls(
            process_id=data['process_id'],
            timestamp=int(data['timestamp']),
            status=RunStatus(data['status']),
            duration_ms=int(data.get('duration_ms') or 0),
            items_processed=data.get('items_processed'),
            error_message=data.get('error_message'),
        )


@dataclass(frozen=True)
class SyncError:
    """One recorded sync failure."""
    id: str
    process_id: str
    process_name: str
    timestamp: int
    kind: ErrorKind
    message: str
    detail: Optional[str] = None
    retry_attempt: Optional[int] = None
    request_url: Optional[str] = None
    response_status: Optional[int] = None
    corporation_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['kind'] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncError':
        return cls(
            id=data['id'],
            process_id=data['process_id'],
            process_name=data.get('process_name') or data['process_id'],
            timestamp=int(data['timestamp']),
            kind=ErrorKind(data.get('kind', ErrorKind.UNKNOWN.value)),
            message=data.get('message', ''),
            detail=data.get('detail'),
            retry_attempt=data.get('retry_attempt'),
            request_url=data.get('request_url'),
            response_status=data.get('response_status'),
            corporation_id=data.get('corporation_id'),
        )


@dataclass(frozen=True)
class FetchPage:
    """Decoded ESI response body plus its cache validator."""
    body: Any
    validator: Optional[str] = None
    from_cache: bool = False


@dataclass(frozen=True)
class SyncResult:
    success: bool
    items_processed: int = 0
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RepeatedFailure:
    process_id: str
    count: int
    last_error: SyncError

    def to_dict(self) -> Dict[str, Any]:
        return {
            'process_id': self.process_id,
            'count': self.count,
            'last_error': self.last_error.to_dict(),
        }


@dataclass
class ErrorStats:
    total_errors: int = 0
    errors_by_kind: Dict[str, int] = field(default_factory=dict)
    errors_by_process: Dict[str, int] = field(default_factory=dict)
    recent_errors: list = field(default_factory=list)
    error_rate: float = 0.0
    repeated_failures: list = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_errors': self.total_errors,
            'errors_by_kind': dict(self.errors_by_kind),
            'errors_by_process': dict(self.errors_by_process),
            'recent_errors': [e.to_dict() for e in self.recent_errors],
            'error_rate': self.error_rate,
            'repeated_failures': [r.to_dict() for r in self.repeated_failures],
        }
