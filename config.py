
# =================================================================
#   Online Teaching ERP - Application Configuration
#   Loads settings from environment variables (.env file)
# =================================================================

import os
import secrets
import logging
from dotenv import load_dotenv

# Load .env file from the same directory as this file
ENV_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env')
load_dotenv(ENV_PATH)

logger = logging.getLogger(__name__)

SECRET_KEY_PLACEHOLDERS = ('auto_generate_on_first_run', 'CHANGE_ME_TO_A_RANDOM_64_CHAR_HEX_STRING')


def _env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {'1', 'true', 'yes', 'on'}


def _env_csv(name, default_csv):
    value = os.environ.get(name, default_csv)
    return [item.strip() for item in value.split(',') if item.strip()]


def _get_or_generate_secret_key():
    """
    Gets the JWT signing key from the environment.

    When the .env file still carries the placeholder, a key is generated once
    and written back so tokens survive restarts. Without a .env file the key
    is ephemeral: every restart invalidates issued tokens.
    """
    key = os.environ.get('SECRET_KEY', '')
    if key and key not in SECRET_KEY_PLACEHOLDERS:
        return key

    key = secrets.token_hex(32)

    if not os.path.exists(ENV_PATH):
        logger.warning("[CONFIG] SECRET_KEY not set - using an ephemeral key, tokens will not survive a restart")
        return key

    try:
        with open(ENV_PATH, 'r', encoding='utf-8') as f:
            content = f.read()
        for placeholder in SECRET_KEY_PLACEHOLDERS:
            content = content.replace(f'SECRET_KEY={placeholder}', f'SECRET_KEY={key}')
        if f'SECRET_KEY={key}' not in content:
            content = content.rstrip('\n') + f'\nSECRET_KEY={key}\n'
        with open(ENV_PATH, 'w', encoding='utf-8') as f:
            f.write(content)
        logger.info("[CONFIG] Auto-generated SECRET_KEY and saved to .env")
    except OSError as e:
        logger.warning(f"[CONFIG] Could not save SECRET_KEY to .env: {e} - key will be regenerated on next restart")

    return key


# =================================================================
#   Configuration Classes
# =================================================================

class BaseConfig:
    """Base configuration shared by all environments."""

    VERSION = '1.0.0'

    # Security
    SECRET_KEY = _get_or_generate_secret_key()
    JWT_ALGORITHM = 'HS256'
    JWT_EXPIRY_HOURS = int(os.environ.get('JWT_EXPIRY_HOURS', 24))

    # Database
    DATABASE_PATH = os.environ.get('DATABASE_PATH', 'teaching_erp.db')

    # Default admin created by database_setup.py when no admin exists
    ADMIN_DEFAULT_EMAIL = os.environ.get('ADMIN_DEFAULT_EMAIL', 'admin@erp.com')
    ADMIN_DEFAULT_PASSWORD = os.environ.get('ADMIN_DEFAULT_PASSWORD', 'admin123')

    # Server
    HOST = os.environ.get('HOST', '0.0.0.0')
    PORT = int(os.environ.get('PORT', 5000))
    CORS_ORIGINS = _env_csv('CORS_ORIGINS', 'http://localhost:3000')

    # Logging
    LOG_FILE = os.environ.get('LOG_FILE', 'teaching_erp.log')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # ===== ATTENDANCE =====
    # Join window around a session's scheduled start (minutes)
    JOIN_EARLY_MINUTES = 15
    JOIN_LATE_MINUTES = 120

    MINIMUM_ATTENDANCE_PERCENTAGE = 75   # Target attendance (%)
    ATTENDANCE_WARNING_THRESHOLD = 60    # Critical warning threshold (%)

    # Courses
    DEFAULT_MAX_STUDENTS = 50

    # Rate Limiting
    RATELIMIT_ENABLED = _env_bool('RATELIMIT_ENABLED', True)
    RATE_LIMIT_API = "100 per minute"     # Max API calls per IP
    RATE_LIMIT_LOGIN = "5 per minute"     # Max login attempts per IP
    RATE_LIMIT_CHECKIN = "10 per minute"  # Max code check-ins per IP


class DevelopmentConfig(BaseConfig):
    """Development environment configuration."""
    DEBUG = True
    TESTING = False


class ProductionConfig(BaseConfig):
    """Production environment configuration."""
    DEBUG = False
    TESTING = False


class TestingConfig(BaseConfig):
    """Testing environment configuration."""
    DEBUG = True
    TESTING = True
    SECRET_KEY = 'testing-secret-key'
    RATELIMIT_ENABLED = False
    LOG_FILE = None


# --- Select configuration based on FLASK_ENV ---
_env = os.environ.get('FLASK_ENV', 'development').lower()
_config_map = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig
}

Config = _config_map.get(_env, DevelopmentConfig)
