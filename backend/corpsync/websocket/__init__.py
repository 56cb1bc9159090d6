"""
WebSocket module - real-time sync push via Flask-SocketIO
"""
from flask_socketio import SocketIO, emit, join_room, leave_room
from ..utils.logger import get_logger

logger = get_logger('websocket')

ALL_ROOM = 'sync_all'

# Threading mode matches the scheduler's worker threads
socketio = SocketIO(cors_allowed_origins="*", async_mode='threading')


def init_socketio(app):
    """Initialize SocketIO with Flask app"""
    socketio.init_app(app)
    logger.info("[WebSocket] SocketIO initialized")
    return socketio


def _room(process_id: str) -> str:
    return f'sync_{process_id}'


@socketio.on('connect')
def handle_connect():
    logger.info("[WebSocket] Client connected")
    emit('connected', {'status': 'ok', 'message': 'WebSocket connected'})


@socketio.on('disconnect')
def handle_disconnect():
    logger.info("[WebSocket] Client disconnected")


@socketio.on('subscribe_sync')
def handle_subscribe_sync(data):
    """Subscribe to sync updates

    Args:
        data: {'process_ids': ['assets', 'wallet']} or {'all': True}
    """
    data = data or {}
    if data.get('all'):
        join_room(ALL_ROOM)
        emit('subscribed', {'room': ALL_ROOM})
    else:
        process_ids = data.get('process_ids', [])
        for process_id in process_ids:
            join_room(_room(process_id))
        logger.info(f"[WebSocket] Client subscribed to processes: {process_ids}")
        emit('subscribed', {'process_ids': process_ids})


@socketio.on('unsubscribe_sync')
def handle_unsubscribe_sync(data):
    data = data or {}
    if data.get('all'):
        leave_room(ALL_ROOM)
    else:
        for process_id in data.get('process_ids', []):
            leave_room(_room(process_id))


def broadcast_sync_progress(process_id: str, data: dict):
    """Push a run state snapshot to the process room and the all-sync room."""
    payload = {'process_id': process_id, **data}
    socketio.emit('sync_progress', payload, room=_room(process_id))
    socketio.emit('sync_progress', payload, room=ALL_ROOM)


def broadcast_sync_log(log_entry: dict):
    process_id = log_entry.get('process_id')
    if process_id:
        socketio.emit('sync_log', log_entry, room=_room(process_id))
    socketio.emit('sync_log', log_entry, room=ALL_ROOM)


def broadcast_sync_error(error: dict):
    socketio.emit('sync_error', error, room=_room(error.get('process_id')))
    socketio.emit('sync_error', error, room=ALL_ROOM)
