"""
Application entry point
Corporation sync backend

Usage:
    python run.py              # Flask development server
    python run.py --websocket  # Socket.IO server (live sync progress)

Environment:
    - copy .env.example to .env
    - adjust the values as needed
"""
import os
import sys

# Add the backend directory to the Python path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from corpsync import create_app, socketio
from corpsync.config import get_config

config_class = get_config()

app = create_app(config_class)

if __name__ == '__main__':
    # Validate settings in production
    env = os.environ.get('FLASK_ENV', 'development')
    if env == 'production':
        config_class.validate()

    use_websocket = '--websocket' in sys.argv or os.environ.get('USE_WEBSOCKET', '').lower() in ('1', 'true', 'yes')
    port = int(os.environ.get('PORT', '8000'))

    runtime = app.extensions['sync_runtime']

    print("=" * 60)
    print("Corporation Sync - backend")
    print("=" * 60)
    print(f"Server:    http://localhost:{port}")
    print(f"Env:       {env}")
    print(f"Database:  {app.config['SQLALCHEMY_DATABASE_URI']}")
    print(f"CORS:      {', '.join(config_class.CORS_ORIGINS)}")
    print(f"Scheduler: {'running' if runtime.scheduler.is_running else 'stopped'} "
          f"({len(runtime.scheduler.get_scheduled_processes())} scheduled)")
    print(f"Tokens:    {len(runtime.token_store.get_all())} corporation(s)")

    if app.config.get('TOKEN_ENCRYPTION_KEY'):
        print("Token encryption: enabled")
    else:
        print("Token encryption: DISABLED (set TOKEN_ENCRYPTION_KEY)")

    if app.config.get('ADMIN_API_KEY'):
        print("Admin auth: enabled")
    else:
        print("Admin auth: DISABLED (set ADMIN_API_KEY)")

    print("=" * 60)

    try:
        if use_websocket and app.config.get('WEBSOCKET_ENABLED'):
            socketio.run(app, host='0.0.0.0', port=port, debug=(env == 'development'),
                         use_reloader=False, allow_unsafe_werkzeug=True)
        else:
            app.run(host='0.0.0.0', port=port, debug=(env == 'development'), use_reloader=False)
    finally:
        runtime.stop()
