from __future__ import annotations

import logging
from pathlib import Path

LOGGER = logging.getLogger("lawclient.http")
APP_VERSION = "0.1.0"

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_QUEUE_TTL_SECONDS = 300.0

REFRESH_PATH = "/api/auth/refresh-token"
LOGIN_PATH = "/api/auth/login"
LOGOUT_PATH = "/api/auth/logout"

# The auth flow itself never goes through refresh.
AUTH_EXCLUDED_PATHS = (
    "/api/auth/login",
    "/api/auth/google",
    REFRESH_PATH,
    "/api/auth/logout",
    "/api/auth/me",
)

SERVICE_URLS = {
    "auth": ("LAWCLIENT_AUTH_URL", "https://api.lawanalytics.app"),
    "pjn": ("LAWCLIENT_PJN_URL", "https://api.lawanalytics.app"),
    "admin": ("LAWCLIENT_ADMIN_URL", "https://admin-api.lawanalytics.app"),
    "mkt": ("LAWCLIENT_MKT_URL", "https://mkt.lawanalytics.app"),
    "workers": ("LAWCLIENT_WORKERS_URL", "http://localhost:3035"),
    "rag": ("LAWCLIENT_RAG_URL", "http://localhost:5005"),
}

# Statuses each backend answers with when the bearer has expired.
SERVICE_AUTH_STATUSES = {
    "auth": frozenset({401}),
    "pjn": frozenset({401, 403}),
    "admin": frozenset({401}),
    "mkt": frozenset({401}),
    "workers": frozenset({401}),
    "rag": frozenset({401}),
}
AUTH_ERROR_KEYWORDS = ("token", "unauthorized", "authentication", "expired", "jwt", "auth")

LEGACY_COOKIE_NAMES = ("authToken", "auth_token", "token", "access_token", "jwt", "session")
MIRROR_COOKIE_NAMES = ("token", "authToken", "auth_token")
STORAGE_KEYS = ("token", "authToken", "auth_token", "jwt")

DEFAULT_STATE_DIR = Path.home() / ".lawclient"
DEFAULT_TOKEN_PATH = DEFAULT_STATE_DIR / "credentials.json"
DEFAULT_STORAGE_PATH = DEFAULT_STATE_DIR / "storage.json"
