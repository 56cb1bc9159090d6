"""
Application Configuration

All values can be overridden through environment variables (or a .env file).
"""
import os
import secrets

from dotenv import load_dotenv

load_dotenv()

# Absolute path of the backend directory
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _int_list(value: str):
    """Parse a comma separated list of integers, ignoring blanks."""
    return [int(item) for item in value.split(',') if item.strip()]


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ('1', 'true', 'yes')


class Config:
    """Base configuration"""

    # ==================== Security ====================
    # Random key when unset (changes on every restart)
    SECRET_KEY = os.environ.get('SECRET_KEY') or secrets.token_hex(32)

    # Fernet key used to encrypt stored ESI tokens
    TOKEN_ENCRYPTION_KEY = os.environ.get('TOKEN_ENCRYPTION_KEY')

    API_KEY = os.environ.get('API_KEY')
    ADMIN_API_KEY = os.environ.get('ADMIN_API_KEY')

    # ==================== Database ====================
    DATABASE_URL = os.environ.get('DATABASE_URL')
    if DATABASE_URL:
        SQLALCHEMY_DATABASE_URI = DATABASE_URL
    else:
        SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(BASE_DIR, "corpsync.db")}'

    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # ==================== CORS ====================
    # Allowed origins (comma separated)
    CORS_ORIGINS = os.environ.get(
        'CORS_ORIGINS',
        'http://localhost:5173,http://127.0.0.1:5173'
    ).split(',')

    # ==================== Logging ====================
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_FILE = os.environ.get('LOG_FILE')  # optional log file path

    # ==================== ESI / SSO ====================
    ESI_BASE_URL = os.environ.get('ESI_BASE_URL', 'https://esi.evetech.net/latest')
    ESI_TOKEN_URL = os.environ.get('ESI_TOKEN_URL', 'https://login.eveonline.com/v2/oauth/token')
    ESI_CLIENT_ID = os.environ.get('ESI_CLIENT_ID', '')
    ESI_CLIENT_SECRET = os.environ.get('ESI_CLIENT_SECRET', '')
    ESI_USER_AGENT = os.environ.get('ESI_USER_AGENT', 'corpsync/1.0')
    # ESI returns at most this many records per page
    ESI_PAGE_SIZE = int(os.environ.get('ESI_PAGE_SIZE', '1000'))
    ESI_MAX_PAGES = int(os.environ.get('ESI_MAX_PAGES', '10'))
    ESI_REQUEST_TIMEOUT = float(os.environ.get('ESI_REQUEST_TIMEOUT', '30'))
    # Attempts per request (rate limits, 5xx and transport failures)
    ESI_MAX_RETRIES = int(os.environ.get('ESI_MAX_RETRIES', '3'))
    # Backoff delay = base * attempt (seconds)
    ESI_RETRY_BASE_DELAY = float(os.environ.get('ESI_RETRY_BASE_DELAY', '1.0'))
    # Wait used when a 429 carries no reset hint (seconds)
    RATE_LIMIT_DEFAULT_WAIT = float(os.environ.get('RATE_LIMIT_DEFAULT_WAIT', '60'))
    # Refresh tokens this long before they expire (seconds)
    TOKEN_REFRESH_HORIZON_SECONDS = int(os.environ.get('TOKEN_REFRESH_HORIZON_SECONDS', '300'))

    # ==================== Sync ====================
    SYNC_TICK_SECONDS = float(os.environ.get('SYNC_TICK_SECONDS', '60'))
    # Size of the thread pool running dispatched syncs
    SYNC_MAX_WORKERS = int(os.environ.get('SYNC_MAX_WORKERS', '8'))
    # Corporations tried in order when a scheduled run picks a credential
    SYNC_CORPORATION_IDS = _int_list(os.environ.get('SYNC_CORPORATION_IDS', ''))
    SYNC_SCHEDULER_AUTOSTART = _flag('SYNC_SCHEDULER_AUTOSTART', 'true')
    WALLET_DIVISIONS = _int_list(os.environ.get('WALLET_DIVISIONS', '1,2,3,4,5,6,7'))
    SYNC_ERROR_CAPACITY = int(os.environ.get('SYNC_ERROR_CAPACITY', '500'))

    # ==================== WebSocket ====================
    WEBSOCKET_ENABLED = _flag('WEBSOCKET_ENABLED', 'true')

    # API calls slower than this are logged
    SLOW_REQUEST_MS = int(os.environ.get('SLOW_REQUEST_MS', '1000'))

    @classmethod
    def get_cors_config(cls):
        """CORS options for the /api routes."""
        return {
            "origins": cls.CORS_ORIGINS,
            "methods": ["GET", "POST", "PATCH", "PUT", "DELETE", "OPTIONS"],
            "allow_headers": ["Content-Type", "X-API-Key", "Authorization"],
            "supports_credentials": True,
        }


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    LOG_LEVEL = 'DEBUG'


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    LOG_LEVEL = 'WARNING'

    @classmethod
    def validate(cls):
        """Warn about settings production should not run without."""
        errors = []

        if not os.environ.get('SECRET_KEY'):
            errors.append('SECRET_KEY is not set')

        if not os.environ.get('TOKEN_ENCRYPTION_KEY'):
            errors.append('TOKEN_ENCRYPTION_KEY is not set (ESI tokens will be stored unencrypted)')

        if not os.environ.get('ESI_CLIENT_ID') or not os.environ.get('ESI_CLIENT_SECRET'):
            errors.append('ESI_CLIENT_ID / ESI_CLIENT_SECRET are not set (token refresh will fail)')

        if errors:
            print("⚠️ Production configuration warnings:")
            for error in errors:
                print(f"  - {error}")


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SYNC_SCHEDULER_AUTOSTART = False
    WEBSOCKET_ENABLED = False
    ESI_RETRY_BASE_DELAY = 0.0
    API_KEY = None
    ADMIN_API_KEY = None


# Config lookup by FLASK_ENV
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}


def get_config():
    """Return the config class selected by FLASK_ENV."""
    env = os.environ.get('FLASK_ENV', 'development')
    return config.get(env, config['default'])
