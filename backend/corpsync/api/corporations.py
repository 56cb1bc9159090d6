"""
Corporation token API
"""
from flask import Blueprint, request

from ..exceptions import AuthError
from ..services.sync import Credential
from ..services.sync.models import now_ms
from ..services.sync_runtime import get_sync_runtime
from ..utils.responses import ApiResponse, success_response
from ..utils.validators import (
    validate_corporation_id,
    validate_expires_at,
    validate_scopes,
    sanitize_string,
)
from ..utils.logger import get_logger
from ..middleware.auth import require_auth, require_admin

corporations_bp = Blueprint('corporations', __name__)
logger = get_logger('corporations')


@corporations_bp.route('/corporations/tokens', methods=['GET'])
@require_auth
def get_tokens():
    """Token status of every stored corporation (no secrets)"""
    token_store = get_sync_runtime().token_store
    tokens = []
    for credential in token_store.get_all():
        status = token_store.get_token_status(credential.corporation_id)
        status['corporation_name'] = credential.corporation_name
        status['character_id'] = credential.character_id
        status['character_name'] = credential.character_name
        tokens.append(status)
    return success_response(tokens, f'{len(tokens)} corporation token(s)')


@corporations_bp.route('/corporations/tokens', methods=['POST'])
@require_admin
def store_token():
    """
    Register or replace a corporation credential

    Request Body:
        - corporation_id: EVE corporation id (required)
        - character_id: character that granted the token (required)
        - refresh_token: SSO refresh token (required)
        - access_token: current access token (optional; refreshed on first use when absent)
        - expires_at: ISO8601 or epoch seconds/milliseconds
        - scopes: list or space separated string of granted scopes
        - corporation_name / character_name: display names
    """
    data = request.json or {}

    is_valid, error_msg, corporation_id = validate_corporation_id(data.get('corporation_id'))
    if not is_valid:
        return ApiResponse.validation_error(error_msg)

    is_valid, error_msg, character_id = validate_corporation_id(data.get('character_id'))
    if not is_valid:
        return ApiResponse.validation_error(error_msg.replace('corporation_id', 'character_id'))

    refresh_token = sanitize_string(data.get('refresh_token'), 4096)
    if not refresh_token:
        return ApiResponse.validation_error('refresh_token is required')

    is_valid, error_msg, scopes = validate_scopes(data.get('scopes'))
    if not is_valid:
        return ApiResponse.validation_error(error_msg)

    is_valid, error_msg, expires_at = validate_expires_at(data.get('expires_at'))
    if not is_valid:
        return ApiResponse.validation_error(error_msg)

    access_token = sanitize_string(data.get('access_token'), 8192)
    if not access_token or expires_at is None:
        # Already expired, so the first lookup refreshes it
        expires_at = 0

    credential = Credential(
        corporation_id=corporation_id,
        character_id=character_id,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at_ms=expires_at,
        granted_scopes=frozenset(scopes),
        is_valid=True,
        last_refreshed_ms=now_ms(),
        corporation_name=sanitize_string(data.get('corporation_name'), 128) or None,
        character_name=sanitize_string(data.get('character_name'), 128) or None,
    )

    token_store = get_sync_runtime().token_store
    token_store.store(credential)
    logger.info(f"[CorporationsAPI] Stored credential for corporation {corporation_id}")
    return ApiResponse.created(token_store.get_token_status(corporation_id), 'Credential stored')


@corporations_bp.route('/corporations/<int:corporation_id>/token/refresh', methods=['POST'])
@require_auth
def refresh_token(corporation_id):
    """Force a token refresh"""
    token_store = get_sync_runtime().token_store
    if corporation_id not in token_store.corporation_ids():
        return ApiResponse.not_found(f'No credential stored for corporation {corporation_id}')

    try:
        token_store.refresh(corporation_id)
    except AuthError as e:
        return ApiResponse.error(str(e), 502, 'TOKEN_REFRESH_FAILED')

    return success_response(token_store.get_token_status(corporation_id), 'Token refreshed')


@corporations_bp.route('/corporations/<int:corporation_id>/token', methods=['DELETE'])
@require_admin
def delete_token(corporation_id):
    """Remove a corporation credential"""
    if not get_sync_runtime().token_store.remove(corporation_id):
        return ApiResponse.not_found(f'No credential stored for corporation {corporation_id}')
    return success_response(message='Credential removed')
