"""
API blueprints
"""
from .sync import sync_bp
from .errors import sync_errors_bp
from .corporations import corporations_bp
from .sync_logs import sync_logs_bp

__all__ = ['sync_bp', 'sync_errors_bp', 'corporations_bp', 'sync_logs_bp']
