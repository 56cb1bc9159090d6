"""
Authentication middleware
Protects the sync control endpoints
"""
from functools import wraps
from flask import current_app, request
from ..utils.responses import ApiResponse


def get_current_api_key() -> str:
    """API key from the request headers"""
    return request.headers.get('X-API-Key', '')


def require_auth(f):
    """
    Basic authentication decorator

    Checks the X-API-Key header against API_KEY.
    Skipped when API_KEY is not configured (development mode).
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        api_key = get_current_api_key()
        expected_key = current_app.config.get('API_KEY')

        if not expected_key:
            return f(*args, **kwargs)

        if not api_key:
            return ApiResponse.unauthorized('Missing API key, send it in the X-API-Key header')

        if api_key != expected_key:
            return ApiResponse.unauthorized('Invalid API key')

        return f(*args, **kwargs)
    return decorated


def require_admin(f):
    """
    Admin authentication decorator

    Guards operations such as storing tokens or stopping the scheduler.
    Requires ADMIN_API_KEY; without it every call is refused.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        api_key = get_current_api_key()
        admin_key = current_app.config.get('ADMIN_API_KEY')

        if not admin_key:
            return ApiResponse.forbidden(
                'This operation needs admin rights, configure ADMIN_API_KEY'
            )

        if not api_key:
            return ApiResponse.unauthorized('Missing admin API key')

        if api_key != admin_key:
            return ApiResponse.forbidden('Invalid admin API key')

        return f(*args, **kwargs)
    return decorated
