"""
EVE SSO client - refresh-token exchange against the OAuth token endpoint
"""
from typing import Any, Dict

import requests

from ...exceptions import AuthError
from ...utils.logger import get_logger

logger = get_logger('sso_client')


class EveSsoClient:
    """Exchanges refresh tokens for new access tokens.

    Example:
        >>> sso = EveSsoClient(pool, client_id, client_secret)
        >>> tokens = sso.refresh_access_token(refresh_token)
        >>> tokens['access_token'], tokens['expires_in']
    """

    def __init__(
        self,
        session_pool,
        client_id: str,
        client_secret: str,
        token_url: str = 'https://login.eveonline.com/v2/oauth/token',
        timeout: float = 30.0
    ):
        self._pool = session_pool
        self._client_id = client_id
        self._client_secret = client_secret
        self.token_url = token_url
        self.timeout = timeout

    def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        """POST ``grant_type=refresh_token`` with HTTP Basic client auth.

        Returns:
            ``{'access_token', 'refresh_token' (optional), 'expires_in'}``

        Raises:
            AuthError: Missing client credentials, transport failure,
                non-2xx response or a body without an access token
        """
        if not self._client_id or not self._client_secret:
            raise AuthError('ESI client id/secret are not configured')

        if not refresh_token:
            raise AuthError('No refresh token stored for this credential')

        try:
            response = self._pool.post(
                self.token_url,
                data={'grant_type': 'refresh_token', 'refresh_token': refresh_token},
                auth=(self._client_id, self._client_secret),
                headers={
                    'Content-Type': 'application/x-www-form-urlencoded',
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise AuthError('Token endpoint unreachable', detail=str(e)) from e

        if not 200 <= response.status_code < 300:
            logger.warning(f"[SSO] Token refresh rejected with status {response.status_code}")
            raise AuthError(
                f'Token refresh failed with status {response.status_code}',
                detail=str(getattr(response, 'text', ''))[:300]
            )

        try:
            body = response.json()
        except ValueError as e:
            raise AuthError('Token endpoint returned a non-JSON body', detail=str(e)) from e

        if not isinstance(body, dict) or not body.get('access_token'):
            raise AuthError('Token endpoint response has no access_token')

        return {
            'access_token': body['access_token'],
            'refresh_token': body.get('refresh_token'),
            'expires_in': int(body.get('expires_in') or 1200),
        }
