import time
from typing import Callable, Optional

import httpx

from cubular_client.config import ENDPOINTS, REFRESH_WINDOW_MS, ClientSettings
from cubular_client.core.errors import TokenRefreshError
from cubular_client.core.models import Credential
from cubular_client.infra.logger import logger
from cubular_client.infra.signals import SignalBus, TokenRefreshed
from cubular_client.utils.persistent_auth import CredentialStore


def parse_token_response(data, issued_at_ms: int) -> Credential:
    """Build a Credential from a login/refresh body ``{accessToken, refreshToken, expiresIn}``."""
    if not isinstance(data, dict) or not data.get("accessToken") or not data.get("refreshToken"):
        raise TokenRefreshError("Invalid token response")
    try:
        expires_in = float(data.get("expiresIn", 0))
    except (TypeError, ValueError) as exc:
        raise TokenRefreshError(f"Invalid token lifetime: {data.get('expiresIn')!r}") from exc
    return Credential.issue(data["accessToken"], data["refreshToken"], expires_in, issued_at_ms)


class TokenRefreshCoordinator:
    """Decides when a credential is stale and exchanges its refresh token.

    Concurrent callers that detect staleness at the same time each perform
    their own exchange. With single-use refresh-token rotation on the server
    the later exchange can fail; callers treat that like any refresh failure.
    """

    def __init__(
        self,
        store: CredentialStore,
        http: httpx.AsyncClient,
        bus: SignalBus,
        settings: Optional[ClientSettings] = None,
        clock: Callable[[], float] = time.time,
        window_ms: int = REFRESH_WINDOW_MS,
    ):
        self.store = store
        self.http = http
        self.bus = bus
        self.settings = settings or ClientSettings.from_env()
        self._clock = clock
        self.window_ms = window_ms
        self.refresh_count = 0
        self.logger = logger.getChild("TokenRefresh")

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def should_refresh(self, credential: Optional[Credential]) -> bool:
        if credential is None:
            return False
        return credential.expires_at_epoch_ms - self.now_ms() <= self.window_ms

    async def refresh(self, credential: Optional[Credential] = None) -> Credential:
        """Exchange the refresh token for a new pair, persist it and announce it.

        Raises:
            TokenRefreshError: no refresh token, transport failure, non-2xx
                answer or malformed body. Stored credentials are left as they
                were; clearing them is the caller's decision.
        """
        refresh_token = credential.refresh_token if credential else self.store.refresh_token()
        if not refresh_token:
            raise TokenRefreshError("No refresh token available")

        self.refresh_count += 1
        url = self.settings.build_api_url(ENDPOINTS["AUTH_REFRESH"])
        try:
            response = await self.http.post(url, json={"refreshToken": refresh_token})
        except httpx.TransportError as exc:
            self.logger.error("Token refresh transport failure: %s", exc)
            raise TokenRefreshError(f"Token refresh failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = {}

        if not response.is_success:
            message = data.get("message") if isinstance(data, dict) else None
            self.logger.error("Token refresh rejected with %d", response.status_code)
            raise TokenRefreshError(message or f"Failed to refresh token ({response.status_code})")

        new_credential = parse_token_response(data, self.now_ms())
        self.store.save(new_credential)
        self.logger.success("Access token refreshed; expires at %d", new_credential.expires_at_epoch_ms)
        self.bus.publish(TokenRefreshed(access_token=new_credential.access_token))
        return new_credential
