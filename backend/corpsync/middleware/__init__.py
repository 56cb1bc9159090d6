"""
Middleware
"""
from .auth import require_auth, require_admin, get_current_api_key

__all__ = ['require_auth', 'require_admin', 'get_current_api_key']
