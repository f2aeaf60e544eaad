"""Async client layer for the survey chat backend.

Authenticated, deduplicated HTTP access with token refresh and rate-limit
backoff, plus the conversation store that reconciles optimistic messages
with server replies.
"""

from cubular_client.client import ChatClient
from cubular_client.config import ClientSettings
from cubular_client.core.errors import (
    ApiError,
    AuthorizationError,
    CubularError,
    InvalidRequestError,
    NetworkError,
    RateLimitError,
    ServerError,
    SessionStateError,
    TokenRefreshError,
)
from cubular_client.core.session_store import SessionPhase, SessionStore
from cubular_client.infra.signals import SessionCleared, SignalBus, StartNewChat, TokenCleared, TokenRefreshed

__version__ = "0.1.0"

__all__ = [
    "ApiError",
    "AuthorizationError",
    "ChatClient",
    "ClientSettings",
    "CubularError",
    "InvalidRequestError",
    "NetworkError",
    "RateLimitError",
    "ServerError",
    "SessionCleared",
    "SessionPhase",
    "SessionStateError",
    "SessionStore",
    "SignalBus",
    "StartNewChat",
    "TokenCleared",
    "TokenRefreshError",
    "TokenRefreshed",
]
