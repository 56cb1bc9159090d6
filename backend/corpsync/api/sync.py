"""
Sync process API - schedules, manual runs and run state
"""
from flask import Blueprint, request

from ..exceptions import AuthError, ConflictError
from ..services.sync import ScheduleConfig, SyncProcessType
from ..services.sync_runtime import get_sync_runtime
from ..utils.responses import ApiResponse, success_response
from ..utils.validators import (
    validate_choice,
    validate_corporation_id,
    validate_interval,
    validate_process_id,
)
from ..utils.logger import get_logger
from ..middleware.auth import require_auth, require_admin

sync_bp = Blueprint('sync', __name__)
logger = get_logger('sync_api')

PROCESS_TYPES = [t.value for t in SyncProcessType]


def _process_view(runtime, config: ScheduleConfig) -> dict:
    state = runtime.state_store.get_sync_status(config.process_id)
    return {
        **config.to_dict(),
        'label': SyncProcessType(config.process_type).label,
        'next_run_at': runtime.scheduler.get_next_run_time(config.process_id),
        'state': state.to_dict(),
    }


@sync_bp.route('/sync/processes', methods=['GET'])
def get_processes():
    """
    List scheduled processes with their run state

    Returns:
        processes: schedule configs merged with state and next run
        process_types: every supported process type
    """
    runtime = get_sync_runtime()
    processes = [_process_view(runtime, c) for c in runtime.scheduler.get_scheduled_processes()]
    return success_response({
        'processes': processes,
        'process_types': [
            {'value': t.value, 'label': t.label, 'required_scopes': sorted(t.required_scopes)}
            for t in SyncProcessType
        ],
    })


@sync_bp.route('/sync/processes', methods=['POST'])
@require_auth
def schedule_process():
    """
    Schedule a process

    Request Body:
        - process_type: one of the process types (required)
        - process_id: defaults to the process type
        - interval_minutes: 1..10080, default 60
        - enabled: default true
    """
    data = request.json or {}

    is_valid, error_msg, process_type = validate_choice(
        data.get('process_type'), PROCESS_TYPES, 'process_type'
    )
    if not is_valid:
        return ApiResponse.validation_error(error_msg)

    is_valid, error_msg, process_id = validate_process_id(data.get('process_id') or process_type)
    if not is_valid:
        return ApiResponse.validation_error(error_msg)

    is_valid, error_msg, interval = validate_interval(data.get('interval_minutes', 60))
    if not is_valid:
        return ApiResponse.validation_error(error_msg)

    runtime = get_sync_runtime()
    config = runtime.scheduler.schedule_process(ScheduleConfig(
        process_id=process_id,
        process_type=process_type,
        enabled=bool(data.get('enabled', True)),
        interval_minutes=interval,
    ))
    return ApiResponse.created(_process_view(runtime, config), f"Scheduled '{process_id}'")


@sync_bp.route('/sync/processes/<process_id>', methods=['PATCH'])
@require_auth
def update_process(process_id):
    """
    Update a schedule

    Request Body:
        - interval_minutes: new interval
        - enabled: enable or disable
    """
    data = request.json or {}
    runtime = get_sync_runtime()

    if runtime.scheduler.get_process_config(process_id) is None:
        return ApiResponse.not_found(f"Process '{process_id}' is not scheduled")

    if 'interval_minutes' not in data and 'enabled' not in data:
        return ApiResponse.validation_error('Nothing to update, send interval_minutes and/or enabled')

    if 'interval_minutes' in data:
        is_valid, error_msg, interval = validate_interval(data['interval_minutes'])
        if not is_valid:
            return ApiResponse.validation_error(error_msg)
        runtime.scheduler.update_process_interval(process_id, interval)

    if 'enabled' in data:
        runtime.scheduler.toggle_process(process_id, bool(data['enabled']))

    config = runtime.scheduler.get_process_config(process_id)
    return success_response(_process_view(runtime, config), 'Schedule updated')


@sync_bp.route('/sync/processes/<process_id>', methods=['DELETE'])
@require_auth
def unschedule_process(process_id):
    """Remove a schedule"""
    if not get_sync_runtime().scheduler.unschedule_process(process_id):
        return ApiResponse.not_found(f"Process '{process_id}' is not scheduled")
    return success_response(message=f"Unscheduled '{process_id}'")


@sync_bp.route('/sync/processes/<process_id>/run', methods=['POST'])
@require_auth
def run_process(process_id):
    """
    Run a process now in the background

    Request Body:
        - process_type: defaults to the scheduled type, or the process id
        - corporation_id: defaults to the first corporation with a usable token
    """
    data = request.json or {}
    runtime = get_sync_runtime()

    config = runtime.scheduler.get_process_config(process_id)
    default_type = config.process_type if config else process_id
    is_valid, error_msg, process_type = validate_choice(
        data.get('process_type') or default_type, PROCESS_TYPES, 'process_type'
    )
    if not is_valid:
        return ApiResponse.validation_error(error_msg)

    corporation_id = None
    if data.get('corporation_id') is not None:
        is_valid, error_msg, corporation_id = validate_corporation_id(data['corporation_id'])
        if not is_valid:
            return ApiResponse.validation_error(error_msg)

    try:
        runtime.trigger(process_id, process_type, corporation_id)
    except ConflictError as e:
        return ApiResponse.conflict(str(e), 'SYNC_RUNNING')
    except AuthError as e:
        return ApiResponse.error(str(e), 400, 'NO_CREDENTIAL')

    logger.info(f"[SyncAPI] Manual run of '{process_id}' ({process_type}) started")
    return ApiResponse.accepted(
        runtime.state_store.get_sync_status(process_id).to_dict(),
        f"Sync '{process_id}' started"
    )


@sync_bp.route('/sync/status', methods=['GET'])
def get_all_status():
    """Run state of every known process"""
    snapshot = get_sync_runtime().state_store.get_snapshot()
    return success_response({pid: state.to_dict() for pid, state in snapshot.items()})


@sync_bp.route('/sync/status/<process_id>', methods=['GET'])
def get_status(process_id):
    """Run state of one process (idle when never run)"""
    return success_response(get_sync_runtime().state_store.get_sync_status(process_id).to_dict())


@sync_bp.route('/sync/history', methods=['GET'])
def get_history():
    """
    Run history, newest first

    Query Parameters:
        - process_id: only this process
        - limit: max entries (default 50, max 500)
    """
    limit = min(max(request.args.get('limit', 50, type=int), 1), 500)
    history = get_sync_runtime().state_store.get_history(request.args.get('process_id'), limit)
    return success_response([entry.to_dict() for entry in history])


@sync_bp.route('/sync/scheduler', methods=['GET'])
def get_scheduler():
    """Scheduler status plus ESI request statistics"""
    runtime = get_sync_runtime()
    scheduler = runtime.scheduler
    return success_response({
        'running': scheduler.is_running,
        'tick_seconds': scheduler.tick_seconds,
        'max_workers': scheduler.max_workers,
        'scheduled': len(scheduler.get_scheduled_processes()),
        'esi': {
            'session': runtime.session_pool.get_stats() if runtime.session_pool else None,
            'delays': runtime.fetch_client.delay_manager.get_stats(),
        },
    })


@sync_bp.route('/sync/scheduler/start', methods=['POST'])
@require_admin
def start_scheduler():
    scheduler = get_sync_runtime().scheduler
    scheduler.start()
    return success_response({'running': scheduler.is_running}, 'Scheduler started')


@sync_bp.route('/sync/scheduler/stop', methods=['POST'])
@require_admin
def stop_scheduler():
    scheduler = get_sync_runtime().scheduler
    scheduler.stop()
    return success_response({'running': scheduler.is_running}, 'Scheduler stopped')
