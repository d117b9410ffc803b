"""Application settings constants."""

from __future__ import annotations

import os

# SQLite file backing the source registry.
DB_PATH_ENV_KEY = "MUSIC_SOURCES_DB_PATH"

# Total bound for script evaluation plus one invocation.
SESSION_TIMEOUT_SECONDS = float(os.getenv("SANDBOX_SESSION_TIMEOUT_SECONDS", "30"))

# Per-call bound for outbound HTTP made on behalf of a script.
HTTP_TIMEOUT_SECONDS = float(os.getenv("SANDBOX_HTTP_TIMEOUT_SECONDS", "15"))

# Wait for asynchronous handler registration before trying direct exports.
HANDLER_POLL_INTERVAL_SECONDS = float(os.getenv("SANDBOX_HANDLER_POLL_INTERVAL_SECONDS", "0.2"))
HANDLER_POLL_CEILING_SECONDS = float(os.getenv("SANDBOX_HANDLER_POLL_CEILING_SECONDS", "3.0"))
HANDLER_POLL_BACKOFF = float(os.getenv("SANDBOX_HANDLER_POLL_BACKOFF", "1.0"))

# Many platforms reject requests without a browser user agent.
DEFAULT_USER_AGENT = os.getenv(
    "SANDBOX_USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/114.0.0.0 Safari/537.36",
)

# Largest single JSON line accepted from a sandbox worker.
MAX_MESSAGE_BYTES = int(os.getenv("SANDBOX_MAX_MESSAGE_BYTES", str(16 * 1024 * 1024)))

SANDBOX_LOG_LEVEL = os.getenv("SANDBOX_LOG_LEVEL", "INFO")

# One of: fallback, top_only, fan_out.
SEARCH_POLICY = os.getenv("SEARCH_POLICY", "fallback")

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 30
DEFAULT_TYPE = "music"
DEFAULT_QUALITY = "128k"
