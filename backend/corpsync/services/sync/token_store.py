"""
Token Store - OAuth credentials per corporation

Holds one credential per corporation, refreshes access tokens before they
expire, and makes sure concurrent callers never trigger more than one
refresh for the same corporation at a time.
"""
import threading
from concurrent.futures import Future
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ...exceptions import AuthError, StorageError
from ...utils.logger import get_logger
from .kv_store import load_list
from .models import Credential, now_ms

logger = get_logger('token_store')

# Persistence key of the credential map
TOKENS_KEY = 'corp-tokens'

# Refresh this long before expiry
DEFAULT_REFRESH_HORIZON_MS = 5 * 60 * 1000


class TokenStore:
    """Credential map keyed by corporation id.

    Refreshes are single-flight: the first caller registers a pending
    ``Future`` in ``_inflight`` and performs the exchange; later callers
    for the same corporation wait on that future. The entry is removed
    once the future is settled.

    Credentials are immutable; every change replaces the map entry while
    holding ``_lock``.

    Example:
        >>> store = TokenStore(sso_client, kv_store=kv, crypto=TokenCrypto(key))
        >>> store.store(credential)
        >>> store.get(98000001)            # refreshes first if about to expire
        >>> store.select_for_sync([98000001, 98000002], {'esi-assets.read_corporation_assets.v1'})
    """

    def __init__(
        self,
        sso_client,
        kv_store=None,
        crypto=None,
        refresh_horizon_ms: int = DEFAULT_REFRESH_HORIZON_MS,
        clock: Callable[[], int] = now_ms
    ):
        """
        Args:
            sso_client: Object with ``refresh_access_token(refresh_token) -> dict``
            kv_store: Persistence backend (None keeps credentials in memory only)
            crypto: TokenCrypto used to encrypt tokens at rest
            refresh_horizon_ms: Pre-emptive refresh window
            clock: Epoch-millisecond clock
        """
        self._sso = sso_client
        self._kv = kv_store
        self._crypto = crypto
        self.refresh_horizon_ms = refresh_horizon_ms
        self._clock = clock

        self._credentials: Dict[int, Credential] = {}
        self._inflight: Dict[int, Future] = {}
        self._lock = threading.RLock()
        self._persist_lock = threading.Lock()

    # ==================== Persistence ====================

    def load(self) -> int:
        """Load persisted credentials, replacing the in-memory map.

        Returns:
            Number of credentials loaded
        """
        loaded = {}
        for doc in load_list(self._kv, TOKENS_KEY):
            try:
                doc = dict(doc)
                doc['access_token'] = self._decrypt(doc.get('access_token', ''))
                doc['refresh_token'] = self._decrypt(doc.get('refresh_token', ''))
                credential = Credential.from_dict(doc)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"[TokenStore] Skipping unreadable credential record: {e}")
                continue
            loaded[credential.corporation_id] = credential

        with self._lock:
            self._credentials = loaded

        logger.info(f"[TokenStore] Loaded {len(loaded)} corporation credential(s)")
        return len(loaded)

    def _persist(self) -> None:
        if self._kv is None:
            return

        with self._persist_lock:
            with self._lock:
                credentials = list(self._credentials.values())

            docs = []
            for credential in credentials:
                doc = credential.to_dict()
                doc['access_token'] = self._encrypt(credential.access_token)
                doc['refresh_token'] = self._encrypt(credential.refresh_token)
                docs.append(doc)

            self._kv.set(TOKENS_KEY, docs)

    def _encrypt(self, value: str) -> str:
        return self._crypto.encrypt(value) if self._crypto else value

    def _decrypt(self, value: str) -> str:
        return self._crypto.decrypt(value) if self._crypto else value

    # ==================== Mutations ====================

    def store(self, credential: Credential) -> None:
        """Insert or replace the credential of a corporation."""
        with self._lock:
            self._credentials[credential.corporation_id] = credential
        self._persist()
        logger.info(
            f"[TokenStore] Stored credential for corporation {credential.corporation_id} "
            f"({len(credential.granted_scopes)} scopes)"
        )

    def invalidate(self, corporation_id: int) -> bool:
        """Mark a credential invalid without removing it."""
        with self._lock:
            credential = self._credentials.get(corporation_id)
            if credential is None:
                return False
            self._credentials[corporation_id] = replace(credential, is_valid=False)
        self._persist()
        logger.warning(f"[TokenStore] Credential for corporation {corporation_id} invalidated")
        return True

    def remove(self, corporation_id: int) -> bool:
        """Delete a credential. The only way a credential leaves the store."""
        with self._lock:
            removed = self._credentials.pop(corporation_id, None)
        if removed is None:
            return False
        self._persist()
        logger.info(f"[TokenStore] Credential for corporation {corporation_id} removed")
        return True

    # ==================== Lookup ====================

    def get(self, corporation_id: int) -> Optional[Credential]:
        """Return a usable credential, refreshing it first when it is about to expire.

        Returns:
            The credential, or None when it is missing, invalid or the
            refresh failed
        """
        now = self._clock()
        # Expiry check and joining a pending refresh are one step under the lock
        with self._lock:
            credential = self._credentials.get(corporation_id)
            if credential is None or not credential.is_valid:
                return None
            if credential.expires_at_ms - now > self.refresh_horizon_ms:
                return credential
            future, leader = self._join_refresh(corporation_id)

        try:
            return self._await_refresh(corporation_id, future, leader)
        except AuthError as e:
            logger.warning(f"[TokenStore] Corporation {corporation_id} has no usable token: {e}")
            return None

    def refresh(self, corporation_id: int) -> Credential:
        """Exchange the refresh token for a new access token.

        Concurrent calls for the same corporation share one exchange.

        Raises:
            AuthError: No credential stored, or the token endpoint rejected
                the refresh (the credential is then marked invalid)
        """
        with self._lock:
            future, leader = self._join_refresh(corporation_id)
        return self._await_refresh(corporation_id, future, leader)

    def _join_refresh(self, corporation_id: int) -> Tuple[Future, bool]:
        """Pending refresh future of a corporation and whether the caller leads it.

        Must be called with ``_lock`` held.
        """
        future = self._inflight.get(corporation_id)
        if future is not None:
            return future, False
        future = Future()
        self._inflight[corporation_id] = future
        return future, True

    def _await_refresh(self, corporation_id: int, future: Future, leader: bool) -> Credential:
        if not leader:
            logger.debug(f"[TokenStore] Joining in-flight refresh for corporation {corporation_id}")
            return future.result()

        try:
            credential = self._exchange(corporation_id)
        except Exception as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(credential)
            return credential
        finally:
            with self._lock:
                self._inflight.pop(corporation_id, None)

    def _exchange(self, corporation_id: int) -> Credential:
        with self._lock:
            credential = self._credentials.get(corporation_id)
        if credential is None:
            raise AuthError(f"No credential stored for corporation {corporation_id}")

        logger.info(f"[TokenStore] Refreshing access token for corporation {corporation_id}")

        try:
            tokens = self._sso.refresh_access_token(credential.refresh_token)
        except AuthError as e:
            with self._lock:
                current = self._credentials.get(corporation_id)
                if current is not None:
                    self._credentials[corporation_id] = replace(current, is_valid=False)
            self._persist_quietly()
            logger.error(f"[TokenStore] Refresh failed for corporation {corporation_id}: {e}")
            raise

        now = self._clock()
        with self._lock:
            current = self._credentials.get(corporation_id, credential)
            refreshed = replace(
                current,
                access_token=tokens['access_token'],
                refresh_token=tokens.get('refresh_token') or current.refresh_token,
                expires_at_ms=now + int(tokens['expires_in']) * 1000,
                is_valid=True,
                last_refreshed_ms=now,
            )
            self._credentials[corporation_id] = refreshed

        self._persist_quietly()
        return refreshed

    def _persist_quietly(self) -> None:
        # Refresh results stay usable in memory when persisting fails
        try:
            self._persist()
        except StorageError as e:
            logger.error(f"[TokenStore] Failed to persist credentials: {e}")

    # ==================== Queries ====================

    def has_required_scopes(self, corporation_id: int, required: Iterable[str]) -> bool:
        with self._lock:
            credential = self._credentials.get(corporation_id)
        return credential is not None and credential.has_scopes(required)

    def select_for_sync(
        self,
        candidates: Iterable[int],
        required_scopes: Iterable[str]
    ) -> Optional[Credential]:
        """First candidate corporation with a valid, sufficiently scoped credential.

        Candidates that are missing, invalid or lack scopes are skipped;
        a candidate whose refresh fails is skipped as well.
        """
        required = set(required_scopes)

        for corporation_id in candidates:
            with self._lock:
                credential = self._credentials.get(corporation_id)

            if credential is None or not credential.is_valid:
                continue

            if not credential.has_scopes(required):
                missing = sorted(required - credential.granted_scopes)
                logger.debug(f"[TokenStore] Corporation {corporation_id} lacks scopes: {missing}")
                continue

            usable = self.get(corporation_id)
            if usable is not None:
                return usable

        return None

    def has_valid_token(self, corporation_id: int) -> bool:
        with self._lock:
            credential = self._credentials.get(corporation_id)
        return (
            credential is not None
            and credential.is_valid
            and not credential.is_expired(self._clock())
        )

    def get_all(self) -> List[Credential]:
        with self._lock:
            return list(self._credentials.values())

    def get_valid(self) -> List[Credential]:
        now = self._clock()
        return [c for c in self.get_all() if c.is_valid and not c.is_expired(now)]

    def corporation_ids(self) -> List[int]:
        """Corporation ids in registration order."""
        with self._lock:
            return list(self._credentials.keys())

    def pending_refreshes(self) -> List[int]:
        with self._lock:
            return list(self._inflight.keys())

    def get_token_status(self, corporation_id: int) -> Dict:
        """Status summary without secrets.

        Returns:
            Dict with exists, is_valid, is_expired, expires_in_ms and scopes
        """
        with self._lock:
            credential = self._credentials.get(corporation_id)

        if credential is None:
            return {
                'corporation_id': corporation_id,
                'exists': False,
                'is_valid': False,
                'is_expired': True,
                'expires_in_ms': 0,
                'scopes': [],
            }

        now = self._clock()
        return {
            'corporation_id': corporation_id,
            'exists': True,
            'is_valid': credential.is_valid,
            'is_expired': credential.is_expired(now),
            'expires_in_ms': max(credential.expires_at_ms - now, 0),
            'scopes': sorted(credential.granted_scopes),
            'character_id': credential.character_id,
            'character_name': credential.character_name,
            'corporation_name': credential.corporation_name,
            'last_refreshed_ms': credential.last_refreshed_ms,
        }
