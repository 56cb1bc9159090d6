"""
Sync error API - error history and statistics
"""
from flask import Blueprint, request

from ..services.sync_runtime import get_sync_runtime
from ..utils.responses import ApiResponse, success_response
from ..middleware.auth import require_admin

sync_errors_bp = Blueprint('sync_errors', __name__)


@sync_errors_bp.route('/sync/errors', methods=['GET'])
def get_errors():
    """
    Recent sync errors, newest first

    Query Parameters:
        - process_id: only errors of this process
        - limit: max entries (default 50, max 500)
    """
    error_log = get_sync_runtime().error_log
    limit = min(max(request.args.get('limit', 50, type=int), 1), 500)
    process_id = request.args.get('process_id')

    if process_id:
        errors = list(reversed(error_log.get_errors_by_process(process_id)))[:limit]
    else:
        errors = error_log.get_recent_errors(limit)

    return success_response([e.to_dict() for e in errors])


@sync_errors_bp.route('/sync/errors/stats', methods=['GET'])
def get_error_stats():
    """Error totals, breakdowns, hourly rate and repeated failures"""
    return success_response(get_sync_runtime().error_log.get_error_stats().to_dict())


@sync_errors_bp.route('/sync/errors', methods=['DELETE'])
@require_admin
def delete_errors():
    """
    Prune or clear the error log

    Query Parameters:
        - older_than_days: only drop errors older than this; clears everything when absent
    """
    error_log = get_sync_runtime().error_log
    older_than_days = request.args.get('older_than_days', type=float)

    if older_than_days is None:
        removed = error_log.clear_errors()
    elif older_than_days < 0:
        return ApiResponse.validation_error('older_than_days cannot be negative')
    else:
        removed = error_log.clear_old_errors(older_than_days)

    return success_response({'removed': removed}, f'Removed {removed} error(s)')
