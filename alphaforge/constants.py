"""
System-wide constants for the broker gateway.

Centralizes URLs, endpoint paths and default tuning values used across modules.
"""

# Broker URLs
BREEZE_BASE_URL = "https://api.icicidirect.com/breezeapi"
BREEZE_LOGIN_URL = "https://api.icicidirect.com/apiuser/login"
BREEZE_STREAM_URL = "wss://stream.icicidirect.com/breezeapi/realtime"

# Broker endpoints
CUSTOMER_DETAILS_ENDPOINT = "/api/v1/customerdetails"
QUOTES_ENDPOINT = "/api/v1/quotes"
ORDER_ENDPOINT = "/api/v1/order"
PORTFOLIO_HOLDINGS_ENDPOINT = "/api/v1/portfolioholdings"
PORTFOLIO_POSITIONS_ENDPOINT = "/api/v1/portfoliopositions"

# Broker-level status embedded in 2xx responses
BROKER_STATUS_OK = 200

# Gateway
DEFAULT_API_TIMEOUT = 30  # seconds
HTTP_POOL_SIZE = 50
HTTP_POOL_SIZE_PER_HOST = 10
HTTP_KEEPALIVE_SECONDS = 30
RATE_LIMIT_CALLS = 100
RATE_LIMIT_WINDOW_SECONDS = 60
MAX_RETRY_ATTEMPTS = 3
RETRY_BASE_DELAY_SECONDS = 1.0
CIRCUIT_FAILURE_THRESHOLD = 5
CIRCUIT_COOLDOWN_SECONDS = 60.0

# Sessions
SESSION_CACHE_TTL_SECONDS = 3600
SESSION_TTL_HOURS = 24
LOCK_MINUTES = 30
MAX_AUTH_FAILURES = 5

# Realtime stream
HEARTBEAT_SECONDS = 30
PONG_TIMEOUT_SECONDS = 10
RECONNECT_BASE_DELAY_SECONDS = 1.0
MAX_RECONNECT_ATTEMPTS = 10
DEFAULT_EXCHANGE = "NSE"
PONG_MESSAGE = "pong"
