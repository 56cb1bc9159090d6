"""
Request Session Pool - shared HTTP session for ESI and SSO calls

Sync runs make many small requests (paginated endpoints, per-id name
lookups), so connections are kept alive and reused. The pool also keeps
track of ESI's error budget: every ESI response reports how many errors
are left in the current window, and exhausting it gets the client banned
for the rest of the window.
"""
import threading
from typing import Dict, Optional

import requests
from requests.adapters import HTTPAdapter

from ...utils.logger import get_logger

logger = get_logger('session_pool')

ERROR_LIMIT_REMAIN_HEADER = 'X-ESI-Error-Limit-Remain'

# Warn once the remaining error budget drops to this
ERROR_BUDGET_WARNING = 20


class RequestSessionPool:
    """Keep-alive session shared by the fetch client and the SSO client.

    Connection-level retries are off; the fetch client decides about
    retries because it has to see every 420/429 and 5xx itself.

    Example:
        >>> pool = RequestSessionPool(user_agent='corpsync/1.0 (ops@example.com)')
        >>> response = pool.get('https://esi.evetech.net/latest/status/', timeout=10)
        >>> pool.get_stats()['error_limit_remain']
    """

    # One adapter pool per host (ESI, SSO, images) with room for the worker threads
    HOST_POOLS = 4
    CONNECTIONS_PER_HOST = 16

    def __init__(self, user_agent: Optional[str] = None):
        session = requests.Session()
        adapter = HTTPAdapter(
            pool_connections=self.HOST_POOLS,
            pool_maxsize=self.CONNECTIONS_PER_HOST,
            max_retries=0,
        )
        for prefix in ('https://', 'http://'):
            session.mount(prefix, adapter)
        if user_agent:
            session.headers['User-Agent'] = user_agent
        session.headers['Accept'] = 'application/json'
        self._session = session

        self._lock = threading.Lock()
        self._requests = 0
        self._transport_errors = 0
        self._error_limit_remain: Optional[int] = None

        logger.debug(
            f"[SessionPool] Ready ({self.HOST_POOLS} host pools x {self.CONNECTIONS_PER_HOST} connections)"
        )

    @property
    def session(self) -> requests.Session:
        return self._session

    def get(self, url: str, **kwargs) -> requests.Response:
        """GET through the shared session.

        Raises:
            requests.RequestException: Transport failure
        """
        return self._send('get', url, **kwargs)

    def post(self, url: str, **kwargs) -> requests.Response:
        """POST through the shared session.

        Raises:
            requests.RequestException: Transport failure
        """
        return self._send('post', url, **kwargs)

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        with self._lock:
            self._requests += 1

        try:
            response = self._session.request(method, url, **kwargs)
        except requests.RequestException:
            with self._lock:
                self._transport_errors += 1
            raise

        self._track_error_budget(response)
        return response

    def _track_error_budget(self, response: requests.Response) -> None:
        remain = response.headers.get(ERROR_LIMIT_REMAIN_HEADER)
        if remain is None:
            return
        try:
            remain = int(remain)
        except ValueError:
            return

        with self._lock:
            previous, self._error_limit_remain = self._error_limit_remain, remain

        if remain <= ERROR_BUDGET_WARNING and (previous is None or previous > ERROR_BUDGET_WARNING):
            logger.warning(f"[SessionPool] ESI error budget low: {remain} errors left in this window")

    def get_stats(self) -> Dict:
        """Request count, transport errors and the last reported ESI error budget."""
        with self._lock:
            return {
                'requests': self._requests,
                'errors': self._transport_errors,
                'error_limit_remain': self._error_limit_remain,
            }

    def close(self) -> None:
        self._session.close()
        logger.info("[SessionPool] Closed")
