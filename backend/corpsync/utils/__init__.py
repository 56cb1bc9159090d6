"""
Utility helpers
"""
from .logger import setup_logger, get_logger
from .responses import ApiResponse, success_response, error_response
from .crypto import TokenCrypto

__all__ = [
    'setup_logger',
    'get_logger',
    'ApiResponse',
    'success_response',
    'error_response',
    'TokenCrypto',
]
