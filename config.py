"""
Runtime settings for the school report API.

Everything comes from the environment (a local .env file is honoured).
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name, default=''):
    return os.environ.get(name, default).strip().lower() in ('1', 'true', 'yes')


ALLOW_INSECURE_DEFAULTS = _flag('ALLOW_INSECURE_DEFAULTS')

DATABASE_URL = os.environ.get('DATABASE_URL', '').strip()
if not DATABASE_URL.startswith(('postgres://', 'postgresql://')):
    raise RuntimeError("PostgreSQL is required. Set DATABASE_URL to a postgresql:// connection string.")

SECRET_KEY = os.environ.get('SECRET_KEY', '').strip()
if not SECRET_KEY:
    if ALLOW_INSECURE_DEFAULTS:
        # Explicitly opt-in fallback for local/dev only.
        SECRET_KEY = 'dev-secret-key-change-me'
    else:
        raise RuntimeError("SECRET_KEY is required in production. Set SECRET_KEY or enable ALLOW_INSECURE_DEFAULTS for local development.")
if not ALLOW_INSECURE_DEFAULTS and len(SECRET_KEY) < 32:
    raise RuntimeError("SECRET_KEY is too short. Use at least 32 characters in production.")

TOKEN_ALGORITHM = os.environ.get('TOKEN_ALGORITHM', 'HS256').strip() or 'HS256'
try:
    TOKEN_EXPIRES_HOURS = int(os.environ.get('TOKEN_EXPIRES_HOURS', '24'))
except ValueError:
    TOKEN_EXPIRES_HOURS = 24

try:
    DB_CONNECT_TIMEOUT = int(os.environ.get('DB_CONNECT_TIMEOUT', '10'))
except ValueError:
    DB_CONNECT_TIMEOUT = 10

try:
    MIN_PASSWORD_LENGTH = int(os.environ.get('MIN_PASSWORD_LENGTH', '6'))
except ValueError:
    MIN_PASSWORD_LENGTH = 6

LOG_FILE = os.environ.get('LOG_FILE', 'app.log').strip() or 'app.log'
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').strip().upper() or 'INFO'

# When set, a failed promotion-history insert rolls back the class change too.
PROMOTION_AUDIT_STRICT = _flag('PROMOTION_AUDIT_STRICT')
