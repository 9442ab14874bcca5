import os

# Discogs endpoints
DISCOGS_API_URL = os.environ.get("DISCOGS_API_URL", "https://api.discogs.com")
DISCOGS_AUTHORIZE_URL = os.environ.get(
    "DISCOGS_AUTHORIZE_URL", "https://www.discogs.com/oauth/authorize"
)
DISCOGS_USER_AGENT = os.environ.get("DISCOGS_USER_AGENT", "RecordShelf/1.0")

# Demo mode service credential
DISCOGS_TOKEN = os.environ.get("DISCOGS_TOKEN", "")
DISCOGS_APP_DEMO_USERNAME = os.environ.get("DISCOGS_APP_DEMO_USERNAME", "")

# OAuth consumer for linked accounts
DISCOGS_CONSUMER_KEY = os.environ.get("DISCOGS_CONSUMER_KEY", "")
DISCOGS_CONSUMER_SECRET = os.environ.get("DISCOGS_CONSUMER_SECRET", "")

# Frontend
CLIENT_URL = os.environ.get("CLIENT_URL", "http://localhost:5173")

# Runtime
APP_ENV = os.environ.get("APP_ENV", "production")
DEBUG = APP_ENV == "development"
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# Cache settings
COLLECTION_CACHE_TTL_MINUTES = 15
CACHE_CLEANUP_INTERVAL_SECONDS = 30 * 60
OAUTH_STATE_TTL_MINUTES = 15
SESSION_TTL_MINUTES = 7 * 24 * 60

# Paging
DEFAULT_PER_PAGE = 50
MAX_PER_PAGE = 100

# Upstream client settings
REQUEST_TIMEOUT_SECONDS = 15.0
RETRY_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 1.0
RETRY_BACKOFF_FACTOR = 2
PAGE_FETCH_DELAY_SECONDS = 0.25  # Discogs allows 60 authenticated requests/min
RATE_LIMIT_COOLDOWN_SECONDS = 30
RATE_LIMIT_LOW_WATERMARK = 2
RATE_LIMIT_PREVENTIVE_COOLDOWN_SECONDS = 10

# Server
HOST = os.environ.get("HOST", "127.0.0.1")
PORT = int(os.environ.get("PORT", "8000"))
