"""Authenticated HTTP access.

``ResilientFetch`` wraps the raw ``httpx.AsyncClient``: it attaches the bearer
token, refreshes it ahead of expiry, and replays a request once after an
authorization failure. ``ApiClient`` layers JSON decoding, error
classification and GET deduplication on top, plus one helper per backend
endpoint the session store talks to.
"""

import time
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from cubular_client.config import (
    ENDPOINTS,
    ClientSettings,
    retry_message_path,
    session_details_path,
    session_messages_path,
    session_quick_path,
)
from cubular_client.core.errors import InvalidResponseError, NetworkError, TokenRefreshError, error_from_response
from cubular_client.core.models import ChatMessage, ChatRequest, ChatResponse, ChatSession
from cubular_client.infra.logger import logger
from cubular_client.infra.metrics import record_latency_metric
from cubular_client.infra.signals import SignalBus, TokenCleared
from cubular_client.utils.persistent_auth import CredentialStore
from cubular_client.utils.request_deduplication import RequestCache, build_cache_key

AUTH_RETRY_STATUSES = (401, 403)

M = TypeVar("M", bound=BaseModel)


class ResilientFetch:
    def __init__(self, http: httpx.AsyncClient, store: CredentialStore, refresher, bus: SignalBus):
        self.http = http
        self.store = store
        self.refresher = refresher
        self.bus = bus
        self.logger = logger.getChild("ResilientFetch")

    def _drop_credentials(self, reason: Exception) -> None:
        self.logger.error("Token refresh failed, clearing credentials: %s", reason)
        self.store.clear()
        self.bus.publish(TokenCleared())

    @staticmethod
    def _build_headers(token: Optional[str], raw_body: bool, headers: Optional[Dict[str, str]]) -> Dict[str, str]:
        merged: Dict[str, str] = {}
        if not raw_body:
            merged["Content-Type"] = "application/json"
        if token:
            merged["Authorization"] = f"Bearer {token}"
        if headers:
            merged.update(headers)
        return merged

    async def _send(self, method: str, url: str, token: Optional[str], raw_body: bool, headers, **kwargs) -> httpx.Response:
        try:
            return await self.http.request(
                method, url, headers=self._build_headers(token, raw_body, headers), **kwargs
            )
        except httpx.TransportError as exc:
            self.logger.error("%s %s failed without a response: %s", method, url, exc)
            raise NetworkError(f"{method} {url} failed: {exc}") from exc

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        json: Any = None,
        data: Any = None,
        files: Any = None,
        content: Any = None,
        params: Any = None,
    ) -> httpx.Response:
        """Send one authenticated request and return the response, whatever its status.

        Multipart/form/raw-byte bodies get no content-type from here so the
        transport can set its own boundary. Caller headers override the
        generated ones. Body objects are handed to the transport untouched,
        for the replay as well.

        Raises:
            NetworkError: no response was obtained.
        """
        method = method.upper()
        raw_body = files is not None or data is not None or isinstance(content, (bytes, bytearray))
        body_kwargs = {"json": json, "data": data, "files": files, "content": content, "params": params}
        body_kwargs = {name: value for name, value in body_kwargs.items() if value is not None}

        stages: List[Tuple[str, float]] = []
        started = time.perf_counter()

        token = self.store.access_token()
        credential = self.store.load()
        if token and self.refresher.should_refresh(credential):
            stage_start = time.perf_counter()
            try:
                token = (await self.refresher.refresh(credential)).access_token
            except TokenRefreshError as exc:
                self._drop_credentials(exc)
                token = None
            stages.append(("refresh", time.perf_counter() - stage_start))

        stage_start = time.perf_counter()
        response = await self._send(method, url, token, raw_body, headers, **body_kwargs)
        stages.append(("primary", time.perf_counter() - stage_start))

        if response.status_code in AUTH_RETRY_STATUSES and token:
            self.logger.info("%s %s answered %d, refreshing token once", method, url, response.status_code)
            try:
                refreshed = await self.refresher.refresh(self.store.load())
            except TokenRefreshError as exc:
                self._drop_credentials(exc)
                self._record(method, url, response, stages, started)
                return response

            stage_start = time.perf_counter()
            response = await self._send(method, url, refreshed.access_token, raw_body, headers, **body_kwargs)
            stages.append(("replay", time.perf_counter() - stage_start))

        self._record(method, url, response, stages, started)
        return response

    def _record(self, method: str, url: str, response: httpx.Response, stages, started: float) -> None:
        record_latency_metric(
            label="resilient_fetch",
            stages=stages,
            total_seconds=time.perf_counter() - started,
            extra={"method": method, "url": url, "status": response.status_code},
        )


def _decode(response: httpx.Response) -> Any:
    if response.status_code == 204 or not response.content:
        return None
    try:
        return response.json()
    except ValueError as exc:
        request = response.request
        raise InvalidResponseError(
            f"{request.method} {request.url} answered {response.status_code} with a non-JSON body"
        ) from exc


def _parse(model: Type[M], data: Any) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise InvalidResponseError(f"Unexpected {model.__name__} payload: {exc}") from exc


def _object(data: Any, what: str) -> Dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidResponseError(f"Expected a JSON object for {what}, got {type(data).__name__}")
    return data


class ApiClient:
    def __init__(self, fetch: ResilientFetch, cache: RequestCache, settings: ClientSettings,
                 scope: Optional[str] = None):
        self.fetch = fetch
        self.cache = cache
        self.settings = settings
        # Namespaces cache keys; one per credential owner when the cache is shared
        self.scope = scope
        self.logger = logger.getChild("ApiClient")

    def url(self, endpoint: str) -> str:
        return self.settings.build_api_url(endpoint)

    async def _perform(self, method: str, url: str, **kwargs) -> Any:
        response = await self.fetch.request(method, url, **kwargs)
        if not response.is_success:
            raise error_from_response(response)
        return _decode(response)

    async def request_json(
        self,
        method: str,
        endpoint: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        cache_ttl_ms: Optional[int] = None,
        discriminator: Optional[str] = None,
    ) -> Any:
        """Authenticated request returning decoded JSON; GETs are deduplicated and cached.

        Raises:
            ApiError subclass for non-2xx answers (after rate-limit retries for GETs),
            NetworkError when no response arrives,
            InvalidResponseError when a 2xx body is not JSON.
        """
        method = method.upper()
        url = self.url(endpoint)
        if method != "GET":
            return await self._perform(method, url, json=json, params=params, headers=headers)

        full_url = str(httpx.URL(url, params=params)) if params else url
        ttl = self.settings.get_cache_ms if cache_ttl_ms is None else cache_ttl_ms
        return await self.cache.dedupe(
            build_cache_key(method, full_url, discriminator, self.scope),
            ttl,
            lambda: self._perform(method, full_url, headers=headers),
            max_retries=self.settings.max_retries,
            base_delay_ms=self.settings.retry_base_delay_ms,
        )

    # ───────────────────────────── Chat endpoints ─────────────────────────────
    async def send_chat(self, request: ChatRequest) -> ChatResponse:
        data = await self.request_json("POST", ENDPOINTS["SEMANTIC_CHAT"], json=request.to_payload())
        return _parse(ChatResponse, _object(data, "chat reply"))

    async def retry_message(self, message_id: str, session_id: str) -> ChatResponse:
        data = await self.request_json("POST", retry_message_path(message_id), json={"sessionId": session_id})
        return _parse(ChatResponse, _object(data, "chat reply"))

    # ──────────────────────────── Session endpoints ────────────────────────────
    def sessions_cache_prefix(self) -> str:
        return build_cache_key("GET", self.url(ENDPOINTS["CHAT_SESSIONS"]), scope=self.scope)

    def invalidate_sessions(self) -> None:
        self.cache.invalidate_prefix(self.sessions_cache_prefix())

    def invalidate_all(self) -> None:
        """Drop every cached response of this client, leaving other scopes alone."""
        if self.scope:
            self.cache.invalidate_prefix(f"{self.scope}|")
        else:
            self.cache.invalidate_all()

    async def list_sessions(self, survey_id: Optional[str] = None) -> List[ChatSession]:
        params = {"surveyId": survey_id} if survey_id else None
        data = await self.request_json(
            "GET", ENDPOINTS["CHAT_SESSIONS"], params=params, cache_ttl_ms=self.settings.session_list_cache_ms
        )
        sessions = data if isinstance(data, list) else _object(data, "session list").get("sessions") or []
        if not isinstance(sessions, list):
            raise InvalidResponseError("Session list payload is not a list")
        return [_parse(ChatSession, item) for item in sessions]

    async def create_session(
        self,
        survey_ids: List[str],
        category: str,
        title: str = "New Chat",
        personality_id: Optional[str] = None,
        selected_file_ids: Optional[List[str]] = None,
    ) -> ChatSession:
        data = await self.request_json("POST", ENDPOINTS["CHAT_SESSIONS"], json={
            "survey_ids": survey_ids,
            "category": category,
            "title": title,
            "personality_id": personality_id,
            "selected_file_ids": selected_file_ids or [],
        })
        self.invalidate_sessions()
        return _parse(ChatSession, data)

    async def get_session_quick(self, session_id: str) -> Tuple[ChatSession, List[ChatMessage]]:
        # In-flight sharing only: concurrent loads of one session make one call
        data = await self.request_json("GET", session_quick_path(session_id), cache_ttl_ms=0)
        data = _object(data, "session history")
        session = _parse(ChatSession, data.get("session") or data)
        messages = [_parse(ChatMessage, item) for item in data.get("messages") or []]
        return session, messages

    async def save_message(
        self,
        session_id: str,
        content: str,
        sender: str,
        data_snapshot: Any = None,
        confidence: Any = None,
        personality_used: Optional[str] = None,
    ) -> ChatMessage:
        data = await self.request_json("POST", session_messages_path(session_id), json={
            "session_id": session_id,
            "content": content,
            "sender": sender,
            "data_snapshot": data_snapshot,
            "confidence": confidence,
            "personality_used": personality_used,
        })
        self.invalidate_sessions()
        return _parse(ChatMessage, data)

    async def delete_session(self, session_id: str) -> None:
        await self.request_json("DELETE", session_details_path(session_id))
        self.invalidate_sessions()

    async def update_session(self, session_id: str, **fields: Any) -> None:
        await self.request_json("PUT", session_details_path(session_id), json=fields)
        self.invalidate_sessions()

    async def clear_session_messages(self, session_id: str) -> None:
        await self.request_json("DELETE", session_messages_path(session_id))
