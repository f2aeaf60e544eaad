"""Endpoint map, storage keys and environment-driven client settings.

Values are read from the process environment after loading ``config/.env``
(and ``config/.env.local`` on top of it), so a deployment can override any of
them without code changes.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv('config/.env')
load_dotenv('config/.env.local', override=True)

ENDPOINTS = {
    "AUTH_LOGIN": "/auth/login",
    "AUTH_REGISTER": "/auth/register",
    "AUTH_REFRESH": "/auth/refresh",
    "AUTH_LOGOUT": "/auth/logout",
    "CHAT_SESSIONS": "/chat/sessions",
    "SEMANTIC_CHAT": "/surveys/semantic-chat",
}


def session_details_path(session_id: str) -> str:
    return f"/chat/sessions/{session_id}"


def session_quick_path(session_id: str) -> str:
    return f"/chat/sessions/{session_id}/quick"


def session_messages_path(session_id: str) -> str:
    return f"/chat/sessions/{session_id}/messages"


def retry_message_path(message_id: str) -> str:
    return f"/chat/messages/{message_id}/retry"


STORAGE_KEYS = {
    "AUTH_TOKEN": "authToken",
    "REFRESH_TOKEN": "refreshToken",
    "TOKEN_EXPIRY": "tokenExpiry",
    "LANGUAGE": "selectedLanguage",
}

# Proactive refresh threshold before token expiry
REFRESH_WINDOW_MS = 5 * 60 * 1000
# Ceiling for rate-limit backoff
MAX_BACKOFF_MS = 30000


@dataclass(frozen=True)
class ClientSettings:
    api_base_url: str = "http://localhost:3000/api/v1"
    request_timeout: float = 30.0
    get_cache_ms: int = 30000
    session_list_cache_ms: int = 30000
    max_retries: int = 3
    retry_base_delay_ms: int = 1000
    auth_dir: Path = Path.home() / ".cubular_client"
    auto_refresh_seconds: float = 300.0

    @classmethod
    def from_env(cls) -> "ClientSettings":
        return cls(
            api_base_url=os.getenv("CUBULAR_API_BASE_URL", "http://localhost:3000/api/v1").rstrip("/"),
            request_timeout=float(os.getenv("CUBULAR_REQUEST_TIMEOUT", "30")),
            get_cache_ms=int(os.getenv("CUBULAR_GET_CACHE_MS", "30000")),
            session_list_cache_ms=int(os.getenv("CUBULAR_SESSION_LIST_CACHE_MS", "30000")),
            max_retries=int(os.getenv("CUBULAR_MAX_RETRIES", "3")),
            retry_base_delay_ms=int(os.getenv("CUBULAR_RETRY_BASE_DELAY_MS", "1000")),
            auth_dir=Path(os.getenv("CUBULAR_AUTH_DIR", str(Path.home() / ".cubular_client"))),
            auto_refresh_seconds=float(os.getenv("CUBULAR_AUTO_REFRESH_SECONDS", "300")),
        )

    def build_api_url(self, endpoint: str) -> str:
        """Join an endpoint path onto the API base URL; absolute URLs pass through."""
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self.api_base_url}{endpoint}"
