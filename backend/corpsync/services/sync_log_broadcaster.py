"""
Sync log broadcaster - pushes sync progress and errors to the dashboard

Two channels:
1. SSE: one bounded queue per connected client, framed as named events
   (``progress``, ``log``, ``sync_error``)
2. Socket.IO rooms, once ``enable_websocket()`` was called
"""
import json
import queue
import threading
from typing import Dict, Generator, Optional, Tuple

from ..utils.logger import get_logger
from .sync.models import RunStatus, now_ms

logger = get_logger('broadcaster')

# SSE event names
EVENT_PROGRESS = 'progress'
EVENT_LOG = 'log'
EVENT_SYNC_ERROR = 'sync_error'

# Seconds without traffic before a heartbeat comment is sent
HEARTBEAT_SECONDS = 30


class SyncLogBroadcaster:
    """Fan-out of sync events to SSE clients and Socket.IO rooms.

    Built by the sync runtime and connected to the state store and error
    log through their ``subscribe`` hooks.
    """

    # Per-client SSE queue size (oldest event dropped when full)
    QUEUE_SIZE = 100

    def __init__(self):
        self._subscribers: Dict[str, queue.Queue] = {}
        self._sub_lock = threading.Lock()
        self._client_counter = 0
        self._websocket_enabled = False

    def enable_websocket(self):
        self._websocket_enabled = True

    # ==================== SSE clients ====================

    def subscribe(self) -> Tuple[str, Generator]:
        """Register an SSE client.

        Returns:
            (client_id, generator of SSE frames)
        """
        with self._sub_lock:
            self._client_counter += 1
            client_id = f"client_{self._client_counter}"
            q = queue.Queue(maxsize=self.QUEUE_SIZE)
            self._subscribers[client_id] = q

        logger.debug(f"[Broadcaster] {client_id} connected")
        return client_id, self._frames(client_id, q)

    def unsubscribe(self, client_id: str):
        with self._sub_lock:
            removed = self._subscribers.pop(client_id, None)
        if removed is not None:
            logger.debug(f"[Broadcaster] {client_id} disconnected")

    def close_all(self):
        """Ask every SSE stream to end."""
        with self._sub_lock:
            queues = list(self._subscribers.values())
        for q in queues:
            self._offer(q, None)

    @property
    def subscriber_count(self) -> int:
        with self._sub_lock:
            return len(self._subscribers)

    def _frames(self, client_id: str, q: queue.Queue) -> Generator:
        try:
            while True:
                try:
                    item = q.get(timeout=HEARTBEAT_SECONDS)
                except queue.Empty:
                    # Comment line; lets the server notice closed connections
                    yield ": heartbeat\n\n"
                    continue
                if item is None:
                    break
                event, payload = item
                yield f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"
        finally:
            self.unsubscribe(client_id)

    @staticmethod
    def _offer(q: queue.Queue, item) -> bool:
        """Put without blocking, dropping the oldest entry of a full queue."""
        for _ in range(2):
            try:
                q.put_nowait(item)
                return True
            except queue.Full:
                try:
                    q.get_nowait()
                except queue.Empty:
                    pass
        return False

    def _publish(self, event: str, payload: dict):
        with self._sub_lock:
            queues = list(self._subscribers.items())
        stuck = [client_id for client_id, q in queues if not self._offer(q, (event, payload))]
        for client_id in stuck:
            self.unsubscribe(client_id)

    def _emit(self, func_name: str, *args):
        if not self._websocket_enabled:
            return
        from .. import websocket
        try:
            getattr(websocket, func_name)(*args)
        except Exception as e:
            # A failed push never fails the sync run that caused it
            logger.debug(f"[Broadcaster] Socket.IO {func_name} failed: {e}")

    # ==================== Events ====================

    def log(self, level: str, message: str, process_id: Optional[str] = None, extra: Optional[dict] = None):
        """Push a log line to every client."""
        entry = {'timestamp': now_ms(), 'level': level, 'message': message}
        if process_id is not None:
            entry['process_id'] = process_id
        if extra:
            entry['extra'] = extra

        self._publish(EVENT_LOG, entry)
        self._emit('broadcast_sync_log', entry)

    def on_state_change(self, process_id: str, state):
        """State store listener: every change is a progress event, terminal states also log."""
        data = state.to_dict()
        self._publish(EVENT_PROGRESS, data)
        self._emit('broadcast_sync_progress', process_id, data)

        if state.status == RunStatus.COMPLETED:
            self.log('info', f"{process_id}: completed, {state.items_processed} items", process_id)
        elif state.status == RunStatus.FAILED:
            self.log('error', f"{process_id}: failed - {state.last_error}", process_id)

    def on_sync_error(self, error):
        """Error log listener."""
        data = error.to_dict()
        self._publish(EVENT_SYNC_ERROR, data)
        self._emit('broadcast_sync_error', data)
