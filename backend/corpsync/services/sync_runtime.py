"""
Sync runtime - builds and owns the sync components of one application

Every component is a plain instance wired here from the Flask config;
blueprints and CLI commands reach them through ``get_sync_runtime()``.
"""
from concurrent.futures import Future
from typing import Optional

from flask import current_app

from ..exceptions import AuthError, StorageError
from ..utils.crypto import TokenCrypto
from ..utils.logger import get_logger
from .sync import (
    BackoffDelayManager,
    EsiFetchClient,
    EveSsoClient,
    RequestSessionPool,
    SqlKVStore,
    SqlRecordStore,
    SyncErrorLog,
    SyncExecutor,
    SyncProcessType,
    SyncScheduler,
    SyncStateStore,
    TokenStore,
)
from .sync.models import Credential
from .sync_log_broadcaster import SyncLogBroadcaster

logger = get_logger('runtime')

EXTENSION_KEY = 'sync_runtime'


class SyncRuntime:
    """Composition root of the sync core.

    Example:
        >>> runtime = SyncRuntime.from_app(app)
        >>> runtime.start()
        >>> runtime.scheduler.get_scheduled_processes()
    """

    def __init__(
        self,
        token_store: TokenStore,
        fetch_client: EsiFetchClient,
        error_log: SyncErrorLog,
        state_store: SyncStateStore,
        executor: SyncExecutor,
        scheduler: SyncScheduler,
        broadcaster: Optional[SyncLogBroadcaster] = None,
        session_pool: Optional[RequestSessionPool] = None,
        autostart: bool = True
    ):
        self.token_store = token_store
        self.fetch_client = fetch_client
        self.error_log = error_log
        self.state_store = state_store
        self.executor = executor
        self.scheduler = scheduler
        self.broadcaster = broadcaster or SyncLogBroadcaster()
        self.session_pool = session_pool
        self.autostart = autostart

        self._unsubscribers = [
            state_store.subscribe(self.broadcaster.on_state_change),
            error_log.subscribe(self.broadcaster.on_sync_error),
        ]

    @classmethod
    def from_app(cls, app) -> 'SyncRuntime':
        """Build every component from the application config."""
        cfg = app.config

        session_pool = RequestSessionPool(user_agent=cfg['ESI_USER_AGENT'])
        kv_store = SqlKVStore(app)

        sso_client = EveSsoClient(
            session_pool,
            client_id=cfg['ESI_CLIENT_ID'],
            client_secret=cfg['ESI_CLIENT_SECRET'],
            token_url=cfg['ESI_TOKEN_URL'],
            timeout=cfg['ESI_REQUEST_TIMEOUT'],
        )
        token_store = TokenStore(
            sso_client,
            kv_store=kv_store,
            crypto=TokenCrypto(cfg.get('TOKEN_ENCRYPTION_KEY')),
            refresh_horizon_ms=int(cfg['TOKEN_REFRESH_HORIZON_SECONDS']) * 1000,
        )

        delay_manager = BackoffDelayManager(
            base_delay=cfg['ESI_RETRY_BASE_DELAY'],
            default_rate_limit_wait=cfg['RATE_LIMIT_DEFAULT_WAIT'],
        )
        fetch_client = EsiFetchClient(
            session_pool,
            base_url=cfg['ESI_BASE_URL'],
            max_retries=cfg['ESI_MAX_RETRIES'],
            page_size=cfg['ESI_PAGE_SIZE'],
            timeout=cfg['ESI_REQUEST_TIMEOUT'],
            delay_manager=delay_manager,
        )

        error_log = SyncErrorLog(kv_store=kv_store, capacity=cfg['SYNC_ERROR_CAPACITY'])
        state_store = SyncStateStore(kv_store=kv_store)

        executor = SyncExecutor(
            fetch_client,
            state_store,
            error_log,
            SqlRecordStore(app),
            max_pages=cfg['ESI_MAX_PAGES'],
            wallet_divisions=cfg['WALLET_DIVISIONS'],
        )
        scheduler = SyncScheduler(
            state_store,
            executor,
            token_store,
            error_log,
            kv_store=kv_store,
            tick_seconds=cfg['SYNC_TICK_SECONDS'],
            max_workers=cfg['SYNC_MAX_WORKERS'],
            corporation_ids=cfg['SYNC_CORPORATION_IDS'],
        )

        return cls(
            token_store=token_store,
            fetch_client=fetch_client,
            error_log=error_log,
            state_store=state_store,
            executor=executor,
            scheduler=scheduler,
            session_pool=session_pool,
            autostart=cfg.get('SYNC_SCHEDULER_AUTOSTART', True),
        )

    # ==================== Lifecycle ====================

    def start(self) -> None:
        """Load persisted state, then start the scheduler when autostart is on."""
        self.token_store.load()
        self.error_log.load()
        interrupted = self.state_store.load_state()
        if interrupted:
            logger.info(f"[Runtime] Marked {interrupted} interrupted sync(s) as failed")
        self.scheduler.load_schedule_config()

        if self.autostart:
            self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
        self.broadcaster.close_all()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        if self.session_pool is not None:
            self.session_pool.close()

    # ==================== Manual runs ====================

    def resolve_credential(self, process_type, corporation_id: Optional[int] = None) -> Credential:
        """Pick the credential a manual run should use.

        Raises:
            AuthError: No valid credential with the required scopes
        """
        process_type = SyncProcessType(process_type)
        required = process_type.required_scopes

        if corporation_id is None:
            credential = self.token_store.select_for_sync(
                self.scheduler.candidate_corporations(), required
            )
            if credential is None:
                raise AuthError(f"No valid credential with the scopes required for {process_type.label}")
            return credential

        if not self.token_store.has_required_scopes(corporation_id, required):
            raise AuthError(
                f"Corporation {corporation_id} has no credential with the scopes required "
                f"for {process_type.label}"
            )
        credential = self.token_store.get(corporation_id)
        if credential is None:
            raise AuthError(f"Corporation {corporation_id} has no valid token")
        return credential

    def trigger(self, process_id: str, process_type, corporation_id: Optional[int] = None) -> Future:
        """Start a run in the worker pool.

        Raises:
            AuthError: No usable credential
            ConflictError: The process is already running
        """
        credential = self.resolve_credential(process_type, corporation_id)
        return self.scheduler.submit_process_now(
            process_id, process_type, credential.corporation_id, credential
        )


def init_sync_runtime(app) -> SyncRuntime:
    """Build the runtime, register it on the app and start it."""
    runtime = SyncRuntime.from_app(app)
    app.extensions[EXTENSION_KEY] = runtime

    with app.app_context():
        try:
            runtime.start()
        except StorageError as e:
            logger.warning(f"[Runtime] Failed to load persisted sync state: {e}")

    return runtime


def get_sync_runtime() -> SyncRuntime:
    """Runtime of the current application."""
    return current_app.extensions[EXTENSION_KEY]
