"""
ESI Fetch Client - rate-limit aware, cache-validating HTTP GET for ESI

Every ESI request made by a sync pipeline goes through ``EsiFetchClient``:
- bearer auth from the corporation's credential
- ETag revalidation (``If-None-Match``) with a per-URL body cache
- 429/420 handling using the server's reset hint
- linear backoff on 5xx and transport failures
- page-by-page accumulation for paginated endpoints

``NameResolver`` wraps the client for best-effort display-name lookups.
"""
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import requests

from ...exceptions import EsiApiError, EsiNetworkError, ResponseValidationError, SyncFailure
from ...utils.logger import get_logger
from .delay_manager import BackoffDelayManager
from .models import Credential, FetchPage

logger = get_logger('fetch_client')

# 420 is ESI's legacy error-limit status, handled like 429
RATE_LIMIT_STATUSES = (420, 429)


def with_page(url: str, page: int) -> str:
    """Return ``url`` with its ``page`` query parameter set."""
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query) if k != 'page']
    query.append(('page', str(page)))
    return urlunsplit(parts._replace(query=urlencode(query)))


def _excerpt(response) -> str:
    text = getattr(response, 'text', '') or ''
    return str(text)[:300]


class EsiFetchClient:
    """ESI HTTP client with retries, rate-limit waits and ETag caching.

    Waits block only the calling thread; other runs keep going.

    Example:
        >>> client = EsiFetchClient(pool, 'https://esi.evetech.net/latest')
        >>> page = client.fetch(client.url('/corporations/98000001/members/'), credential)
        >>> assets = client.fetch_paginated(client.url('/corporations/98000001/assets/'), credential)
    """

    def __init__(
        self,
        session_pool,
        base_url: str,
        max_retries: int = 3,
        page_size: int = 1000,
        timeout: float = 30.0,
        delay_manager: Optional[BackoffDelayManager] = None,
        sleep: Callable[[float], None] = None
    ):
        """
        Args:
            session_pool: Object with a requests-style ``get(url, **kwargs)``
            base_url: ESI base URL (no trailing slash needed)
            max_retries: Attempts per request before giving up
            page_size: ESI page size; a shorter page is the last one
            timeout: Per-request timeout in seconds
            delay_manager: Backoff policy (defaults to 1s linear backoff)
            sleep: Blocking sleep (injected by tests)
        """
        self._pool = session_pool
        self.base_url = base_url.rstrip('/')
        self.max_retries = max(1, max_retries)
        self.page_size = page_size
        self.timeout = timeout
        self._delays = delay_manager or BackoffDelayManager()
        self._sleep = sleep or time.sleep

        # url -> (etag, decoded body)
        self._cache: Dict[str, Tuple[str, Any]] = {}
        self._cache_lock = threading.Lock()

    def url(self, path: str) -> str:
        """Absolute ESI URL for an endpoint path."""
        return f"{self.base_url}/{path.lstrip('/')}"

    @property
    def delay_manager(self) -> BackoffDelayManager:
        return self._delays

    def fetch(self, url: str, credential: Optional[Credential] = None) -> FetchPage:
        """GET one ESI URL.

        Args:
            url: Absolute URL (query string included)
            credential: Credential for bearer auth; None for public endpoints

        Returns:
            FetchPage with the decoded body and ETag

        Raises:
            EsiApiError: Non-success status, or rate limits/5xx beyond the retry ceiling
            EsiNetworkError: Transport failures beyond the retry ceiling
            ResponseValidationError: Success status with a non-JSON body
        """
        headers = {'Accept': 'application/json'}
        if credential is not None:
            headers['Authorization'] = f'Bearer {credential.access_token}'

        with self._cache_lock:
            cached = self._cache.get(url)
        if cached is not None:
            headers['If-None-Match'] = cached[0]

        for attempt in range(1, self.max_retries + 1):
            last_attempt = attempt == self.max_retries

            try:
                response = self._pool.get(url, headers=headers, timeout=self.timeout)
            except requests.RequestException as e:
                if last_attempt:
                    raise EsiNetworkError(
                        f"Network error requesting {url}: {e}", url=url, detail=str(e)
                    ) from e
                delay = self._delays.retry_delay(attempt)
                logger.warning(
                    f"[ESI] Network error on {url} (attempt {attempt}/{self.max_retries}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                self._sleep(delay)
                continue

            status = response.status_code

            if status == 304 and cached is not None:
                self._delays.record_success()
                logger.debug(f"[ESI] 304 Not Modified, serving cached body: {url}")
                return FetchPage(body=cached[1], validator=cached[0], from_cache=True)

            if status in RATE_LIMIT_STATUSES:
                wait = self._delays.rate_limit_wait(response.headers)
                self._delays.record_rate_limit(wait)
                if last_attempt:
                    raise EsiApiError(
                        f"Rate limited on {url} after {attempt} attempts",
                        status=status, url=url, detail=_excerpt(response)
                    )
                self._sleep(wait)
                continue

            if status >= 500:
                if last_attempt:
                    raise EsiApiError(
                        f"ESI returned {status} for {url} after {attempt} attempts",
                        status=status, url=url, detail=_excerpt(response)
                    )
                delay = self._delays.retry_delay(attempt)
                logger.warning(
                    f"[ESI] {status} on {url} (attempt {attempt}/{self.max_retries}), "
                    f"retrying in {delay:.1f}s"
                )
                self._sleep(delay)
                continue

            if not 200 <= status < 300:
                raise EsiApiError(
                    f"ESI request failed with status {status}: {url}",
                    status=status, url=url, detail=_excerpt(response)
                )

            try:
                body = response.json()
            except ValueError as e:
                raise ResponseValidationError(
                    f"ESI returned a non-JSON body for {url}", detail=str(e)
                ) from e

            etag = response.headers.get('ETag')
            if etag:
                with self._cache_lock:
                    self._cache[url] = (etag, body)

            self._delays.record_success()
            return FetchPage(body=body, validator=etag)

        # max_retries >= 1, every iteration returns, raises or continues
        raise EsiApiError(f"Retries exhausted for {url}", url=url)

    def fetch_paginated(
        self,
        base_url: str,
        credential: Optional[Credential] = None,
        max_pages: int = 10
    ) -> List[Any]:
        """Fetch pages 1..N of a paginated endpoint and concatenate them.

        Stops at the first short page (fewer than ``page_size`` records)
        or after ``max_pages`` requests.

        Raises:
            ResponseValidationError: A page body is not a list
        """
        records: List[Any] = []

        for page in range(1, max_pages + 1):
            result = self.fetch(with_page(base_url, page), credential)
            if not isinstance(result.body, list):
                raise ResponseValidationError(
                    f"Expected a list on page {page} of {base_url}, "
                    f"got {type(result.body).__name__}"
                )

            records.extend(result.body)

            if len(result.body) < self.page_size:
                break
        else:
            logger.warning(f"[ESI] Stopped at page limit ({max_pages}) for {base_url}")

        return records

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()


class NameResolver:
    """Best-effort display names for ids found in ESI payloads.

    Lookups never raise: any failure yields a placeholder such as
    ``"Type 34"``. Results are cached for the resolver's lifetime
    (one sync run).
    """

    def __init__(self, client: EsiFetchClient, credential: Optional[Credential] = None):
        self._client = client
        self._credential = credential
        self._names: Dict[Tuple[str, int], str] = {}
        self._characters: Dict[int, Dict[str, Any]] = {}

    def type_name(self, type_id: int) -> str:
        return self._name('type', type_id, f'/universe/types/{type_id}/', 'Type')

    def corporation_name(self, corporation_id: int) -> str:
        return self._name('corporation', corporation_id, f'/corporations/{corporation_id}/', 'Corporation')

    def alliance_name(self, alliance_id: int) -> str:
        return self._name('alliance', alliance_id, f'/alliances/{alliance_id}/', 'Alliance')

    def character_info(self, character_id: int) -> Dict[str, Any]:
        """Public character sheet (name, corporation_id, alliance_id), or {}."""
        if character_id in self._characters:
            return self._characters[character_id]

        info: Dict[str, Any] = {}
        try:
            body = self._client.fetch(self._client.url(f'/characters/{character_id}/')).body
            if isinstance(body, dict):
                info = body
        except SyncFailure as e:
            logger.debug(f"[Names] Character {character_id} lookup failed: {e}")

        self._characters[character_id] = info
        return info

    def character_name(self, character_id: int) -> str:
        return self.character_info(character_id).get('name') or f'Character {character_id}'

    def location_name(self, location_id: int) -> str:
        """Station name, falling back to the (authenticated) structure endpoint."""
        key = ('location', location_id)
        if key in self._names:
            return self._names[key]

        name = self._try_name(f'/universe/stations/{location_id}/', None)
        if name is None and self._credential is not None:
            name = self._try_name(f'/universe/structures/{location_id}/', self._credential)

        name = name or f'Station {location_id}'
        self._names[key] = name
        return name

    def _name(self, kind: str, entity_id: int, path: str, label: str) -> str:
        key = (kind, entity_id)
        if key not in self._names:
            self._names[key] = self._try_name(path, None) or f'{label} {entity_id}'
        return self._names[key]

    def _try_name(self, path: str, credential: Optional[Credential]) -> Optional[str]:
        try:
            body = self._client.fetch(self._client.url(path), credential).body
        except SyncFailure as e:
            logger.debug(f"[Names] Lookup {path} failed: {e}")
            return None
        if isinstance(body, dict) and body.get('name'):
            return body['name']
        return None
