import time
from typing import Callable, Optional

import httpx

from cubular_client.auth import AuthService, TokenRefreshCoordinator
from cubular_client.config import ClientSettings
from cubular_client.core.http import ApiClient, ResilientFetch
from cubular_client.core.session_store import SessionStore
from cubular_client.infra.logger import logger
from cubular_client.infra.signals import SignalBus, TokenCleared
from cubular_client.utils.persistent_auth import CredentialStore, FileStorage
from cubular_client.utils.request_deduplication import RequestCache, get_request_cache


class ChatClient:
    """Client for the survey chat backend, one per user profile.

    Owns the HTTP connection pool and wires credential storage, token refresh,
    the authenticated fetch layer, request deduplication and the session
    store together. Everything here must be used from a single event loop.
    """

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        profile: str = "default",
        storage=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        cache: Optional[RequestCache] = None,
        bus: Optional[SignalBus] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or ClientSettings.from_env()
        self.profile = profile
        self.logger = logger.getChild("ChatClient")

        self.http = httpx.AsyncClient(timeout=self.settings.request_timeout, transport=transport)
        self.credentials = CredentialStore(
            storage if storage is not None else FileStorage(self.settings.auth_dir, profile)
        )
        self.bus = bus or SignalBus()
        self.cache = cache or get_request_cache()

        self.refresher = TokenRefreshCoordinator(self.credentials, self.http, self.bus, self.settings, clock=clock)
        self.fetch = ResilientFetch(self.http, self.credentials, self.refresher, self.bus)
        self.api = ApiClient(self.fetch, self.cache, self.settings, scope=f"profile:{profile}")
        self.auth = AuthService(self.http, self.credentials, self.refresher, self.bus, self.settings)
        self.sessions = SessionStore(self.api, self.bus, clock=clock)

        self._unsubscribe_token_cleared = self.bus.subscribe(TokenCleared, self._on_token_cleared)
        self.logger.info("Client ready for profile %s against %s", profile, self.settings.api_base_url)

    def _on_token_cleared(self, signal: TokenCleared) -> None:
        # Cached responses belong to the signed-out user
        self.api.invalidate_all()
        self.sessions.reset()

    async def initialize(self, auto_refresh: bool = True) -> bool:
        """Refresh a stored credential if it is stale and start the background refresh loop.

        Returns whether the client holds a usable credential afterwards.
        """
        if self.auth.is_authenticated():
            await self.auth.refresh_if_stale()
        if auto_refresh:
            self.auth.start_auto_refresh()
        authenticated = self.auth.is_authenticated()
        self.logger.info("Initialized profile %s (authenticated: %s)", self.profile, authenticated)
        return authenticated

    async def close(self) -> None:
        await self.auth.stop_auto_refresh()
        self._unsubscribe_token_cleared()
        self.sessions.close()
        await self.http.aclose()
        self.logger.info("Closed client for profile %s", self.profile)

    async def __aenter__(self) -> "ChatClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
