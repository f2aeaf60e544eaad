import asyncio
from typing import Any, Dict, Optional

import httpx

from cubular_client.auth.refresh import TokenRefreshCoordinator, parse_token_response
from cubular_client.config import ENDPOINTS, ClientSettings
from cubular_client.core.errors import (
    InvalidRequestError,
    NetworkError,
    TokenRefreshError,
    error_from_response,
)
from cubular_client.infra.logger import logger as app_logger
from cubular_client.infra.signals import SignalBus, TokenCleared
from cubular_client.utils.persistent_auth import CredentialStore

__all__ = ["AuthService", "TokenRefreshCoordinator", "parse_token_response"]

auth_logger = app_logger.getChild("Auth")


class AuthService:
    """Login, registration and logout against the backend auth endpoints.

    Credentials go to the CredentialStore; everything that needs a token
    (ResilientFetch, the auto-refresh loop) reads it back from there.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        store: CredentialStore,
        refresher: TokenRefreshCoordinator,
        bus: SignalBus,
        settings: Optional[ClientSettings] = None,
    ):
        self.http = http
        self.store = store
        self.refresher = refresher
        self.bus = bus
        self.settings = settings or refresher.settings
        self.user: Optional[Dict[str, Any]] = None
        self._auto_refresh_task: Optional[asyncio.Task] = None

    async def _post(self, endpoint: str, payload: Dict[str, Any], token: Optional[str] = None) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        url = self.settings.build_api_url(endpoint)
        try:
            return await self.http.post(url, json=payload, headers=headers)
        except httpx.TransportError as exc:
            raise NetworkError(f"POST {url} failed: {exc}") from exc

    async def _authenticate(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._post(endpoint, payload)
        if not response.is_success:
            error = error_from_response(response)
            auth_logger.warning("%s rejected: %s", endpoint, error)
            raise error

        try:
            data = response.json()
            credential = parse_token_response(data, self.refresher.now_ms())
        except (ValueError, TokenRefreshError) as exc:
            raise InvalidRequestError(response.status_code, "Invalid token response", response) from exc
        self.store.save(credential)
        self.user = data.get("user")
        return data

    async def login(self, email: str, password: str) -> Optional[Dict[str, Any]]:
        """Sign in and persist the returned tokens; returns the user payload, if any."""
        await self._authenticate(ENDPOINTS["AUTH_LOGIN"], {"email": email, "password": password})
        auth_logger.success("Logged in as %s", email)
        return self.user

    async def register(self, email: str, username: str, password: str) -> Optional[Dict[str, Any]]:
        await self._authenticate(
            ENDPOINTS["AUTH_REGISTER"],
            {"email": email, "username": username, "password": password},
        )
        auth_logger.success("Registered %s", email)
        return self.user

    async def logout(self) -> None:
        """Revoke the refresh token if possible; local credentials are cleared regardless."""
        refresh_token = self.store.refresh_token()
        if refresh_token:
            try:
                response = await self._post(
                    ENDPOINTS["AUTH_LOGOUT"],
                    {"refreshToken": refresh_token},
                    token=self.store.access_token(),
                )
                if not response.is_success:
                    auth_logger.warning("Logout request answered %d", response.status_code)
            except NetworkError as exc:
                auth_logger.warning("Logout request failed: %s", exc)

        self.store.clear()
        self.user = None
        self.bus.publish(TokenCleared())
        auth_logger.info("Logged out")

    def is_authenticated(self) -> bool:
        return self.store.load() is not None

    def get_language(self) -> str:
        return self.store.get_language()

    def set_language(self, language: str) -> None:
        self.store.set_language(language)

    async def refresh_if_stale(self) -> bool:
        """One auto-refresh tick. Returns True when a refresh happened."""
        credential = self.store.load()
        if not self.refresher.should_refresh(credential):
            return False
        try:
            await self.refresher.refresh(credential)
        except TokenRefreshError as exc:
            auth_logger.error("Background token refresh failed, signing out: %s", exc)
            self.store.clear()
            self.user = None
            self.bus.publish(TokenCleared())
            return False
        return True

    async def _auto_refresh_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.refresh_if_stale()

    def start_auto_refresh(self, interval: Optional[float] = None) -> asyncio.Task:
        """Start the periodic refresh task on the running loop (idempotent)."""
        if self._auto_refresh_task is None or self._auto_refresh_task.done():
            seconds = self.settings.auto_refresh_seconds if interval is None else interval
            self._auto_refresh_task = asyncio.get_running_loop().create_task(self._auto_refresh_loop(seconds))
            auth_logger.debug("Auto refresh every %.1fs", seconds)
        return self._auto_refresh_task

    async def stop_auto_refresh(self) -> None:
        task, self._auto_refresh_task = self._auto_refresh_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
