"""
Session client configuration. Values come from the environment with lab-friendly defaults.
No secrets in this file; an API key, if any, comes from env.
"""
import os

# Base URL of the admin API (all sub-clients share it)
API_BASE_URL = os.environ.get("SESSION_CLIENT_API_URL", "http://localhost:3001/api/v1").rstrip("/")

# Machine-to-machine key sent as X-API-Key when no user session is present
API_KEY = os.environ.get("SESSION_CLIENT_API_KEY", "").strip() or None

# Per-request timeout (seconds). Uploads and downloads use UPLOAD_TIMEOUT.
REQUEST_TIMEOUT = float(os.environ.get("SESSION_CLIENT_TIMEOUT", "30"))
UPLOAD_TIMEOUT = 60.0

# Session lifetime granted on login and on each activity extension (default 8 hours)
SESSION_TTL = float(os.environ.get("SESSION_CLIENT_SESSION_TTL", str(8 * 60 * 60)))

# Session monitor thresholds (seconds)
WARNING_THRESHOLD = float(os.environ.get("SESSION_CLIENT_WARNING_THRESHOLD", "120"))
RESET_THRESHOLD = float(os.environ.get("SESSION_CLIENT_RESET_THRESHOLD", "180"))
POLL_INTERVAL = float(os.environ.get("SESSION_CLIENT_POLL_INTERVAL", "30"))
ACTIVITY_DEBOUNCE = 1.0

# Retry policy: 3 attempts total (2 retries), exponential backoff from 1s capped at 30s
RETRY_MAX_ATTEMPTS = int(os.environ.get("SESSION_CLIENT_RETRY_MAX_ATTEMPTS", "3"))
RETRY_BASE_DELAY = float(os.environ.get("SESSION_CLIENT_RETRY_BASE_DELAY", "1.0"))
RETRY_MAX_DELAY = float(os.environ.get("SESSION_CLIENT_RETRY_MAX_DELAY", "30.0"))
RETRY_JITTER_RATIO = 0.2

# Upper bound on the remote revoke call during logout; local state is cleared regardless
LOGOUT_TIMEOUT = float(os.environ.get("SESSION_CLIENT_LOGOUT_TIMEOUT", "5"))

# Persisted session state. Empty URL keeps state in process memory only.
STORAGE_URL = os.environ.get("SESSION_CLIENT_STORAGE_URL", "").strip()
STORAGE_NAMESPACE = os.environ.get("SESSION_CLIENT_STORAGE_NAMESPACE", "session_client")
