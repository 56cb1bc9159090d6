#!/usr/bin/env python
"""
Management Script

CLI commands for the database and the sync runtime.

Usage:
    # Flask-Migrate
    python manage.py db init
    python manage.py db migrate -m "Add new column"
    python manage.py db upgrade

    # Sync
    python manage.py sync-status
    python manage.py run-process assets --corporation-id 98000001
    python manage.py prune-errors --days 7
    python manage.py db-status
"""
import os
import sys

# Add the backend directory to the path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

# CLI commands never start the background scheduler
os.environ.setdefault('SYNC_SCHEDULER_AUTOSTART', 'false')

from flask.cli import with_appcontext
import click

from corpsync import create_app
from corpsync.exceptions import AuthError, ConflictError
from corpsync.extensions import db
from corpsync.services.sync import SyncProcessType
from corpsync.services.sync_runtime import get_sync_runtime

# Create app instance
app = create_app()


@app.cli.command('db-status')
@with_appcontext
def db_status():
    """Show database connection status and table info."""
    try:
        result = db.session.execute(db.text('SELECT 1'))
        result.fetchone()
        click.echo(click.style('✓ Database connection OK', fg='green'))

        tables = db.inspect(db.engine).get_table_names()
        click.echo('\nTables in database:')
        for table in tables:
            click.echo(f'  - {table}')

    except Exception as e:
        click.echo(click.style(f'✗ Database error: {e}', fg='red'))


@app.cli.command('sync-status')
@with_appcontext
def sync_status():
    """Show schedules, run states and error totals."""
    runtime = get_sync_runtime()

    configs = runtime.scheduler.get_scheduled_processes()
    if not configs:
        click.echo('No scheduled processes')
    for config in configs:
        state = runtime.state_store.get_sync_status(config.process_id)
        flag = 'on ' if config.enabled else 'off'
        click.echo(
            f'  [{flag}] {config.process_id:<20} every {config.interval_minutes:>5} min  '
            f'{state.status.value:<10} {state.progress:>3}%  {state.stage}'
        )

    stats = runtime.error_log.get_error_stats()
    click.echo(f'\nErrors: {stats.total_errors} total, {stats.error_rate:.2f}/min in the last hour')
    for repeated in stats.repeated_failures:
        click.echo(click.style(f'  ! {repeated.process_id}: {repeated.count} failures', fg='yellow'))


@app.cli.command('run-process')
@click.argument('process_type', type=click.Choice([t.value for t in SyncProcessType]))
@click.option('--process-id', default=None, help='Defaults to the process type')
@click.option('--corporation-id', type=int, default=None, help='Defaults to the first usable token')
@with_appcontext
def run_process(process_type, process_id, corporation_id):
    """Run one sync process in the foreground."""
    runtime = get_sync_runtime()
    process_id = process_id or process_type

    try:
        credential = runtime.resolve_credential(process_type, corporation_id)
        result = runtime.scheduler.run_process_now(
            process_id, process_type, credential.corporation_id, credential
        )
    except (AuthError, ConflictError) as e:
        raise click.ClickException(str(e))

    if result.success:
        click.echo(click.style(f'✓ {process_id}: {result.items_processed} items', fg='green'))
    else:
        raise click.ClickException(f'{process_id} failed: {result.error_message}')


@app.cli.command('prune-errors')
@click.option('--days', type=float, default=7, show_default=True, help='Drop errors older than this')
@with_appcontext
def prune_errors(days):
    """Prune old sync errors."""
    removed = get_sync_runtime().error_log.clear_old_errors(days)
    if removed > 0:
        click.echo(click.style(f'✓ Removed {removed} errors', fg='green'))
    else:
        click.echo('No old errors found')


if __name__ == '__main__':
    # Support running with flask CLI
    import subprocess

    if len(sys.argv) > 1 and sys.argv[1] == 'db':
        os.environ['FLASK_APP'] = 'manage.py'
        subprocess.run(['flask'] + sys.argv[1:])
    else:
        app.cli()
