"""
Sync Executor - runs one sync pipeline for one corporation

Each process type maps to its own pipeline: fetch from ESI, resolve
display names best-effort, upsert into storage, and report progress to the
state store. Failures end the run as failed and leave one entry in the
sync error log.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests
from sqlalchemy.exc import SQLAlchemyError

from ...exceptions import ResponseValidationError, StorageError, SyncFailure
from ...utils.logger import get_logger, log_sync_event
from .fetch_client import EsiFetchClient, NameResolver
from .models import Credential, ErrorKind, SyncResult

logger = get_logger('executor')

# Paginated endpoints with small result sets stop earlier
SHORT_MAX_PAGES = 5

DEFAULT_WALLET_DIVISIONS = (1, 2, 3, 4, 5, 6, 7)


class SyncProcessType(str, Enum):
    """Closed set of sync process types (values are the persisted names)."""
    MEMBERS = 'members'
    ASSETS = 'assets'
    INDUSTRY_JOBS = 'manufacturing'
    MARKET_ORDERS = 'market'
    WALLET = 'wallet'
    MINING = 'mining'
    CONTAINER_LOGS = 'container_logs'
    CONTRACTS = 'contracts'

    @property
    def label(self) -> str:
        return PROCESS_LABELS[self]

    @property
    def required_scopes(self) -> frozenset:
        return REQUIRED_SCOPES[self]


PROCESS_LABELS = {
    SyncProcessType.MEMBERS: 'Member Tracking',
    SyncProcessType.ASSETS: 'Corporation Assets',
    SyncProcessType.INDUSTRY_JOBS: 'Industry Jobs',
    SyncProcessType.MARKET_ORDERS: 'Market Orders',
    SyncProcessType.WALLET: 'Wallet Transactions',
    SyncProcessType.MINING: 'Mining Ledger',
    SyncProcessType.CONTAINER_LOGS: 'Container Logs',
    SyncProcessType.CONTRACTS: 'Corporation Contracts',
}

REQUIRED_SCOPES = {
    SyncProcessType.MEMBERS: frozenset({'esi-corporations.read_corporation_membership.v1'}),
    SyncProcessType.ASSETS: frozenset({'esi-assets.read_corporation_assets.v1'}),
    SyncProcessType.INDUSTRY_JOBS: frozenset({'esi-industry.read_corporation_jobs.v1'}),
    SyncProcessType.MARKET_ORDERS: frozenset({'esi-markets.read_corporation_orders.v1'}),
    SyncProcessType.WALLET: frozenset({'esi-wallet.read_corporation_wallets.v1'}),
    SyncProcessType.MINING: frozenset({'esi-industry.read_corporation_mining.v1'}),
    SyncProcessType.CONTAINER_LOGS: frozenset({'esi-corporations.read_container_logs.v1'}),
    SyncProcessType.CONTRACTS: frozenset({'esi-contracts.read_corporation_contracts.v1'}),
}


def classify_error(exc: BaseException) -> ErrorKind:
    """Error log kind for an exception raised inside a pipeline."""
    if isinstance(exc, SyncFailure):
        return ErrorKind(exc.kind)
    if isinstance(exc, requests.RequestException):
        return ErrorKind.NETWORK
    if isinstance(exc, SQLAlchemyError):
        return ErrorKind.STORAGE
    return ErrorKind.UNKNOWN


def _require_records(body: Any, noun: str) -> List[Dict[str, Any]]:
    if not isinstance(body, list) or not all(isinstance(item, dict) for item in body):
        raise ResponseValidationError(f"Unexpected {noun} payload from ESI")
    return body


@dataclass
class SyncRun:
    """Context of one pipeline execution."""
    process_id: str
    process_type: SyncProcessType
    corporation_id: int
    credential: Credential
    names: NameResolver


class SyncExecutor:
    """Runs sync pipelines against the fetch client, state store, error log and storage.

    Example:
        >>> executor = SyncExecutor(fetch_client, state_store, error_log, record_store)
        >>> result = executor.execute_sync_process(SyncProcessType.ASSETS, 98000001, credential)
        >>> result.success, result.items_processed
    """

    def __init__(
        self,
        fetch_client: EsiFetchClient,
        state_store,
        error_log,
        storage,
        max_pages: int = 10,
        wallet_divisions: Sequence[int] = DEFAULT_WALLET_DIVISIONS
    ):
        self._client = fetch_client
        self._state = state_store
        self._errors = error_log
        self._storage = storage
        self.max_pages = max_pages
        self.wallet_divisions = tuple(wallet_divisions)

    def execute_sync_process(
        self,
        process_type,
        corporation_id: int,
        credential: Credential,
        process_id: Optional[str] = None,
        claimed: bool = False
    ) -> SyncResult:
        """Run the pipeline of ``process_type`` for one corporation.

        Args:
            process_type: SyncProcessType or its value
            corporation_id: Corporation to sync
            credential: Credential used for authenticated ESI calls
            process_id: State key (defaults to the process type's value)
            claimed: The caller already called ``start_sync`` for this process

        Returns:
            SyncResult; failures are reported here, not raised

        Raises:
            ConflictError: The process is already running (only when not claimed)
        """
        process_type = SyncProcessType(process_type)
        process_id = process_id or process_type.value

        if not claimed:
            self._state.start_sync(process_id)

        run = SyncRun(
            process_id=process_id,
            process_type=process_type,
            corporation_id=corporation_id,
            credential=credential,
            names=NameResolver(self._client, credential),
        )
        log_sync_event(process_id, 'started', {'corporation_id': corporation_id})

        try:
            items = _PIPELINES[process_type](self, run)
        except Exception as e:
            message = str(e) or type(e).__name__
            kind = classify_error(e)
            self._state.fail_sync(process_id, message)
            self._errors.log_exception(
                process_id, process_type.label, e, kind=kind, corporation_id=corporation_id
            )
            log_sync_event(process_id, 'failed', {'kind': kind.value, 'error': message})
            return SyncResult(success=False, items_processed=0, error_message=message)

        self._state.complete_sync(process_id, items)
        log_sync_event(process_id, 'completed', {'items': items})
        return SyncResult(success=True, items_processed=items)

    # ==================== Pipeline helpers ====================

    def _progress(self, run: SyncRun, percent: int, stage: str,
                  processed: Optional[int] = None, total: Optional[int] = None) -> None:
        self._state.update_sync_progress(run.process_id, percent, stage, processed, total)

    def _url(self, path: str) -> str:
        return self._client.url(path)

    def _store(self, run: SyncRun, category: str, records: List[Dict[str, Any]],
               key_fields: Sequence[str]) -> int:
        try:
            return self._storage.upsert_batch(run.corporation_id, category, records, key_fields)
        except SyncFailure:
            raise
        except Exception as e:
            raise StorageError(f"Failed to store {category}: {e}", detail=repr(e)) from e

    def _collect(
        self,
        run: SyncRun,
        noun: str,
        records: List[Any],
        category: str,
        key_fields: Sequence[str],
        enrich: Optional[Callable[[Any], Dict[str, Any]]] = None
    ) -> int:
        """Resolve names, store, and report the 30/50/90 milestones."""
        if not records:
            logger.info(f"[Executor] No {noun} returned for corporation {run.corporation_id}")
            return 0

        total = len(records)
        if enrich is not None:
            self._progress(run, 30, f"Resolving names for {total} {noun}...", 0, total)
            records = [enrich(record) for record in records]

        self._progress(run, 50, f"Storing {total} {noun} in database...", 0, total)
        stored = self._store(run, category, records, key_fields)

        self._progress(run, 90, 'Finalizing...', stored, total)
        return stored

    # ==================== Pipelines ====================

    def _sync_members(self, run: SyncRun) -> int:
        self._progress(run, 10, 'Fetching corporation members from ESI...')
        body = self._client.fetch(
            self._url(f'/corporations/{run.corporation_id}/members/'), run.credential
        ).body

        if not isinstance(body, list):
            raise ResponseValidationError('Unexpected member list payload from ESI')
        try:
            member_ids = [int(member_id) for member_id in body]
        except (TypeError, ValueError) as e:
            raise ResponseValidationError('Member list contains non-numeric ids', detail=str(e)) from e

        corporation_name = None

        def enrich(character_id: int) -> Dict[str, Any]:
            nonlocal corporation_name
            if corporation_name is None:
                corporation_name = run.names.corporation_name(run.corporation_id)
            info = run.names.character_info(character_id)
            alliance_id = info.get('alliance_id')
            return {
                'character_id': character_id,
                'character_name': info.get('name') or f'Character {character_id}',
                'corporation_id': run.corporation_id,
                'corporation_name': corporation_name,
                'alliance_id': alliance_id,
                'alliance_name': run.names.alliance_name(alliance_id) if alliance_id else None,
            }

        return self._collect(run, 'members', member_ids, 'members', ('character_id',), enrich)

    def _sync_assets(self, run: SyncRun) -> int:
        self._progress(run, 10, 'Fetching corporation assets from ESI...')
        records = _require_records(self._client.fetch_paginated(
            self._url(f'/corporations/{run.corporation_id}/assets/'), run.credential, self.max_pages
        ), 'asset')

        def enrich(asset):
            return {**asset, 'type_name': self._type_name(run, asset)}

        return self._collect(run, 'assets', records, 'assets', ('item_id',), enrich)

    def _sync_industry_jobs(self, run: SyncRun) -> int:
        self._progress(run, 10, 'Fetching industry jobs from ESI...')
        records = _require_records(self._client.fetch(
            self._url(f'/corporations/{run.corporation_id}/industry/jobs/'), run.credential
        ).body, 'industry job')

        def enrich(job):
            product_type_id = job.get('product_type_id')
            return {
                **job,
                'blueprint_type_name': self._type_name(run, job, 'blueprint_type_id'),
                'product_type_name': run.names.type_name(product_type_id) if product_type_id else None,
                'facility_name': run.names.location_name(job['facility_id']) if job.get('facility_id') else None,
            }

        return self._collect(run, 'industry jobs', records, 'industry_jobs', ('job_id',), enrich)

    def _sync_market_orders(self, run: SyncRun) -> int:
        self._progress(run, 10, 'Fetching market orders from ESI...')
        records = _require_records(self._client.fetch_paginated(
            self._url(f'/corporations/{run.corporation_id}/orders/'), run.credential, self.max_pages
        ), 'market order')

        def enrich(order):
            return {
                **order,
                'type_name': self._type_name(run, order),
                'location_name': run.names.location_name(order['location_id']) if order.get('location_id') else None,
            }

        return self._collect(run, 'market orders', records, 'market_orders', ('order_id',), enrich)

    def _sync_wallet(self, run: SyncRun) -> int:
        """Wallet divisions are independent: a failing division is logged and skipped."""
        total = 0
        divisions = self.wallet_divisions

        for index, division in enumerate(divisions):
            self._progress(
                run, 10 + int(index / len(divisions) * 40),
                f'Fetching wallet division {division}...', total
            )
            try:
                records = _require_records(self._client.fetch_paginated(
                    self._url(f'/corporations/{run.corporation_id}/wallets/{division}/transactions/'),
                    run.credential, self.max_pages
                ), 'wallet transaction')
                records = [
                    {**tx, 'division': division, 'type_name': self._type_name(run, tx)}
                    for tx in records
                ]
                if records:
                    total += self._store(run, 'wallet_transactions', records, ('transaction_id',))
            except Exception as e:
                logger.warning(
                    f"[Executor] Wallet division {division} failed for corporation "
                    f"{run.corporation_id}, skipping: {e}"
                )
                self._errors.log_exception(
                    run.process_id,
                    f'{run.process_type.label} (division {division})',
                    e,
                    kind=classify_error(e),
                    corporation_id=run.corporation_id,
                )

        self._progress(run, 90, 'Finalizing...', total)
        return total

    def _sync_mining(self, run: SyncRun) -> int:
        self._progress(run, 10, 'Fetching mining observers from ESI...')
        max_pages = min(self.max_pages, SHORT_MAX_PAGES)
        observers = _require_records(self._client.fetch_paginated(
            self._url(f'/corporation/{run.corporation_id}/mining/observers/'), run.credential, max_pages
        ), 'mining observer')

        records = []
        for observer in observers:
            observer_id = observer.get('observer_id')
            if observer_id is None:
                continue
            ledger = _require_records(self._client.fetch_paginated(
                self._url(f'/corporation/{run.corporation_id}/mining/observers/{observer_id}/'),
                run.credential, max_pages
            ), 'mining ledger')
            records.extend(
                {**entry, 'observer_id': observer_id, 'observer_type': observer.get('observer_type')}
                for entry in ledger
            )

        def enrich(entry):
            return {**entry, 'type_name': self._type_name(run, entry)}

        return self._collect(
            run, 'mining ledger entries', records, 'mining_ledger',
            ('observer_id', 'character_id', 'type_id', 'last_updated'), enrich
        )

    def _sync_container_logs(self, run: SyncRun) -> int:
        self._progress(run, 10, 'Fetching container logs from ESI...')
        records = _require_records(self._client.fetch_paginated(
            self._url(f'/corporations/{run.corporation_id}/containers/logs/'),
            run.credential, min(self.max_pages, SHORT_MAX_PAGES)
        ), 'container log')

        def enrich(entry):
            return {**entry, 'type_name': self._type_name(run, entry)}

        return self._collect(
            run, 'container log entries', records, 'container_logs',
            ('container_id', 'logged_at', 'action', 'character_id'), enrich
        )

    def _sync_contracts(self, run: SyncRun) -> int:
        self._progress(run, 10, 'Fetching contracts from ESI...')
        records = _require_records(self._client.fetch_paginated(
            self._url(f'/corporations/{run.corporation_id}/contracts/'), run.credential, self.max_pages
        ), 'contract')

        return self._collect(run, 'contracts', records, 'contracts', ('contract_id',))

    @staticmethod
    def _type_name(run: SyncRun, record: Dict[str, Any], field: str = 'type_id') -> Optional[str]:
        type_id = record.get(field)
        return run.names.type_name(type_id) if type_id else None


_PIPELINES: Dict[SyncProcessType, Callable[[SyncExecutor, SyncRun], int]] = {
    SyncProcessType.MEMBERS: SyncExecutor._sync_members,
    SyncProcessType.ASSETS: SyncExecutor._sync_assets,
    SyncProcessType.INDUSTRY_JOBS: SyncExecutor._sync_industry_jobs,
    SyncProcessType.MARKET_ORDERS: SyncExecutor._sync_market_orders,
    SyncProcessType.WALLET: SyncExecutor._sync_wallet,
    SyncProcessType.MINING: SyncExecutor._sync_mining,
    SyncProcessType.CONTAINER_LOGS: SyncExecutor._sync_container_logs,
    SyncProcessType.CONTRACTS: SyncExecutor._sync_contracts,
}

for _process_type in SyncProcessType:
    if not (_process_type in _PIPELINES and _process_type in PROCESS_LABELS and _process_type in REQUIRED_SCOPES):
        raise RuntimeError(f"Process type '{_process_type.value}' needs a pipeline, a label and required scopes")
