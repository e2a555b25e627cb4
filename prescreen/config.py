"""
Centralized configuration — env vars, bureau constants, submission limits.
"""
import os


# ── Logging ──────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FORMAT = os.getenv('LOG_FORMAT', 'text')

# ── Redis (circuit breaker state) ─────────────────────────────────────────────
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')

# ── PostgreSQL ────────────────────────────────────────────────────────────────
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///local.db')
DB_POOL_SIZE = int(os.getenv('DB_POOL_SIZE', '5'))
DB_MAX_OVERFLOW = int(os.getenv('DB_MAX_OVERFLOW', '10'))

# ── Flask session ─────────────────────────────────────────────────────────────
DEFAULT_SECRET_KEY = 'dev-secret-change-me'
SECRET_KEY = os.getenv('SECRET_KEY', DEFAULT_SECRET_KEY)

# ── Auth ─────────────────────────────────────────────────────────────────────
ADMIN_PASSWORD = os.getenv('ADMIN_PASSWORD')
VIEWER_PASSWORD = os.getenv('VIEWER_PASSWORD')
# Local development only: with no passwords set, every caller is a local admin
AUTH_DISABLED = os.getenv('AUTH_DISABLED', '').lower() in ('1', 'true', 'yes')

# ── Altair InstaPrescreen ────────────────────────────────────────────────────
ALTAIR_BASE_URL = os.getenv('ALTAIR_BASE_URL', '')
ALTAIR_USERNAME = os.getenv('ALTAIR_USERNAME', '')
ALTAIR_PASSWORD = os.getenv('ALTAIR_PASSWORD', '')
ALTAIR_COMPANY_ID = os.getenv('ALTAIR_COMPANY_ID', '232')
ALTAIR_TIMEOUT = float(os.getenv('ALTAIR_TIMEOUT', '10'))
ALTAIR_SANDBOX_PULL_LIMIT = int(os.getenv('ALTAIR_SANDBOX_PULL_LIMIT', '50'))

# ── PII encryption (Fernet key, urlsafe base64) ──────────────────────────────
ENCRYPTION_KEY = os.getenv('ENCRYPTION_KEY')

# ── Submission limits ────────────────────────────────────────────────────────
MAX_RECORDS_PER_SUBMISSION = 1000

# ── Bureaus ──────────────────────────────────────────────────────────────────
BUREAUS = ['eq', 'tu', 'ex']

BUREAU_NAMES = {
    'eq': 'Equifax',
    'tu': 'TransUnion',
    'ex': 'Experian',
}

# ── Status values ────────────────────────────────────────────────────────────
PROGRAM_STATUSES = ['active', 'inactive']

LEAD_TIERS = [
    'tier_1',
    'tier_2',
    'tier_3',
    'below',
    'pending',
    'filtered',
]

MATCH_STATUSES = [
    'pending',
    'matched',
    'no_match',
    'api_error',
]
