"""
Problem-details configuration. Values from the environment; nothing secret here.
"""
import os

# Deployment environment; anything other than "production" exposes stack traces on 500s
APP_ENV = os.environ.get("APP_ENV", "development").strip().lower()
IS_PRODUCTION = APP_ENV == "production"

# Base URI for problem "type" values, e.g. <base>/validation-error
PROBLEM_TYPE_BASE = os.environ.get("PROBLEM_TYPE_BASE", "https://api.example.com/errors").rstrip("/")

# Retry-After (seconds) sent with 429 responses that carry no hint of their own
DEFAULT_RETRY_AFTER = int(os.environ.get("PROBLEM_DEFAULT_RETRY_AFTER", "60"))
