"""
Sync log SSE API
"""
import json

from flask import Blueprint, Response, stream_with_context

from ..services.sync_runtime import get_sync_runtime
from ..utils.responses import success_response

sync_logs_bp = Blueprint('sync_logs', __name__)


@sync_logs_bp.route('/sync-logs/stream', methods=['GET'])
def stream_sync_logs():
    """
    SSE endpoint - live sync progress, logs and errors

    The dashboard connects with EventSource and listens for named events.

    Format (SSE):
        event: progress     data: run state of one process
        event: log          data: {"timestamp": ms, "level": "info|error", "message": "...", ...}
        event: sync_error   data: one sync error log entry
    """
    client_id, frames = get_sync_runtime().broadcaster.subscribe()

    def generate():
        yield f"event: connected\ndata: {json.dumps({'client_id': client_id})}\n\n"
        yield from frames

    return Response(
        stream_with_context(generate()),
        mimetype='text/event-stream',
        headers={
            'Cache-Control': 'no-cache',
            'X-Accel-Buffering': 'no',  # nginx
        }
    )


@sync_logs_bp.route('/sync-logs/status', methods=['GET'])
def get_status():
    """Number of connected SSE clients"""
    return success_response({
        'subscriber_count': get_sync_runtime().broadcaster.subscriber_count
    })
