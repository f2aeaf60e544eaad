import asyncio
import concurrent.futures
import sys
import threading
import time
from concurrent.futures import Future
from functools import lru_cache
from typing import Any, Callable, Coroutine, Dict, List, Optional

from cubular_client.client import ChatClient
from cubular_client.core.models import CacheStats, ChatMessage, ChatSession
from cubular_client.infra.logger import logger
from cubular_client.infra.metrics import record_latency_metric
from cubular_client.utils.request_deduplication import RequestCache


CallableWithClient = Callable[[ChatClient], Any]
ClientFactory = Callable[[str], ChatClient]
manager_logger = logger.getChild("BackgroundClientManager")


def _default_client_factory(profile: str) -> ChatClient:
    # Futures are bound to one loop, so each worker gets its own request cache
    return ChatClient(profile=profile, cache=RequestCache())


def new_event_loop() -> asyncio.AbstractEventLoop:
    if sys.platform != "win32":
        import uvloop
        return uvloop.new_event_loop()
    return asyncio.new_event_loop()


class ClientWorker:
    """Own one event-loop thread and the ChatClient that lives on it.

    Every call into the client is marshalled onto that loop, so the request
    cache, credential store and session store are only ever touched by one
    thread.
    """

    def __init__(self, profile: str = "default", client_factory: Optional[ClientFactory] = None,
                 auto_refresh: bool = True):
        self.profile = profile
        self._client_factory = client_factory or _default_client_factory
        self._auto_refresh = auto_refresh
        self._loop = new_event_loop()
        self._client: Optional[ChatClient] = None
        self._ready: Future = Future()
        self._stopped = threading.Event()
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._serve, name=f"cubular-worker-{profile}", daemon=True)
        self._logger = logger.getChild(f"BackgroundClient[{profile}]")

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    @property
    def client(self) -> ChatClient:
        if not self._client:
            raise RuntimeError("Background client not initialized yet")
        return self._client

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def start(self) -> Future:
        """Start the loop thread once; the returned future resolves when the client is initialized."""
        with self._lock:
            if not self._thread.is_alive() and not self._ready.done():
                self._thread.start()
        return self._ready

    def _serve(self) -> None:
        asyncio.set_event_loop(self._loop)
        try:
            self._client = self._loop.run_until_complete(self._bootstrap())
        except Exception as exc:
            self._logger.exception("Background client failed to start")
            self._ready.set_exception(exc)
        else:
            self._ready.set_result(True)
            self._loop.run_forever()
        finally:
            self._loop.close()
            self._stopped.set()

    async def _bootstrap(self) -> ChatClient:
        stages = []
        started = time.perf_counter()
        status = "error"
        try:
            client = self._client_factory(self.profile)
            stages.append(("ctor", time.perf_counter() - started))

            mark = time.perf_counter()
            await client.initialize(auto_refresh=self._auto_refresh)
            stages.append(("initialize", time.perf_counter() - mark))
            status = "success"
            return client
        finally:
            elapsed = time.perf_counter() - started
            record_latency_metric(
                label="background_client_bootstrap",
                stages=stages,
                total_seconds=elapsed,
                extra={"profile": self.profile, "status": status},
            )
            if status == "success":
                self._logger.info("Background client ready in %.0fms", elapsed * 1000)

    def _dispatch(self, coro: Coroutine[Any, Any, Any], timeout: Optional[float]) -> Any:
        try:
            future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        except RuntimeError:
            coro.close()
            raise
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise

    def run_sync(self, func: CallableWithClient, timeout: Optional[float] = None) -> Any:
        async def _invoke():
            return func(self.client)

        return self._dispatch(_invoke(), timeout)

    def run_async(self, coro_factory: CallableWithClient, timeout: Optional[float] = None) -> Any:
        async def _invoke():
            return await coro_factory(self.client)

        return self._dispatch(_invoke(), timeout)

    def shutdown(self) -> None:
        if self._stopped.is_set():
            return
        if not self._thread.is_alive() and not self._ready.done():
            # Never started
            self._loop.close()
            self._stopped.set()
            return

        try:
            self._ready.result(timeout=5)
        except Exception as exc:
            self._logger.debug("Worker never became ready (%s), waiting for its thread", exc)
            self._stopped.wait(timeout=5)
            return

        try:
            self.run_async(lambda client: client.close(), timeout=5)
        except Exception:
            self._logger.exception("Closing background client failed")

        try:
            self._loop.call_soon_threadsafe(self._loop.stop)
        except RuntimeError:
            self._logger.debug("Background loop already closed")
        self._stopped.wait(timeout=5)


class ClientBridge:
    """Thread-safe synchronous facade for UI code that has no event loop of its own."""

    def __init__(self, worker: ClientWorker):
        self._worker = worker

    def wait_until_ready(self, timeout: Optional[float] = None) -> None:
        self._worker.start().result(timeout=timeout)

    def is_ready(self) -> bool:
        fut = self._worker.start()
        return fut.done() and not fut.cancelled() and fut.exception() is None

    def get_error(self) -> Optional[BaseException]:
        fut = self._worker.start()
        if fut.done() and fut.exception():
            return fut.exception()
        return None

    # Auth helpers
    def login(self, email: str, password: str):
        return self._worker.run_async(lambda client: client.auth.login(email, password))

    def register(self, email: str, username: str, password: str):
        return self._worker.run_async(lambda client: client.auth.register(email, username, password))

    def logout(self) -> None:
        self._worker.run_async(lambda client: client.auth.logout())

    def is_authenticated(self) -> bool:
        return self._worker.run_sync(lambda client: client.auth.is_authenticated())

    def get_language(self) -> str:
        return self._worker.run_sync(lambda client: client.auth.get_language())

    def set_language(self, language: str) -> None:
        self._worker.run_sync(lambda client: client.auth.set_language(language))

    # Conversation helpers
    def get_messages(self) -> List[ChatMessage]:
        return self._worker.run_sync(lambda client: list(client.sessions.messages))

    def get_phase(self) -> str:
        return self._worker.run_sync(lambda client: client.sessions.phase.value)

    def get_current_session_id(self) -> Optional[str]:
        return self._worker.run_sync(lambda client: client.sessions.current_session_id)

    def send_message(self, content: str, survey_ids: List[str], selected_file_ids: Optional[List[str]] = None,
                     personality_id: Optional[str] = None) -> Optional[ChatMessage]:
        return self._worker.run_async(
            lambda client: client.sessions.send_message(content, survey_ids, selected_file_ids, personality_id)
        )

    def retry_message(self, message_id: str) -> Optional[ChatMessage]:
        return self._worker.run_async(lambda client: client.sessions.retry_message(message_id))

    def start_new_chat(self, survey_id: Optional[str] = None) -> None:
        self._worker.run_sync(lambda client: client.sessions.start_new_chat(survey_id))

    def clear_current_session(self) -> None:
        self._worker.run_sync(lambda client: client.sessions.clear_current_session())

    # Session list helpers
    def load_chat_sessions(self, survey_id: Optional[str] = None, force: bool = False) -> List[ChatSession]:
        return self._worker.run_async(lambda client: client.sessions.load_chat_sessions(survey_id, force))

    def load_session(self, session_id: str) -> Optional[ChatSession]:
        return self._worker.run_async(lambda client: client.sessions.load_session(session_id))

    def create_new_session(self, survey_ids: List[str], category: str, **kwargs) -> ChatSession:
        return self._worker.run_async(lambda client: client.sessions.create_new_session(survey_ids, category, **kwargs))

    def delete_session(self, session_id: str) -> None:
        self._worker.run_async(lambda client: client.sessions.delete_session(session_id))

    def update_session_title(self, session_id: str, title: str) -> None:
        self._worker.run_async(lambda client: client.sessions.update_session_title(session_id, title))

    # Cache helpers
    def cache_stats(self) -> CacheStats:
        return self._worker.run_sync(lambda client: client.cache.stats())

    def invalidate_cache(self) -> None:
        self._worker.run_sync(lambda client: client.api.invalidate_all())

    # Shutdown
    def close(self) -> None:
        self._worker.shutdown()


class BackgroundClientManager:
    """Manage background ChatClient workers keyed by profile."""

    def __init__(self, client_factory: Optional[ClientFactory] = None):
        self._workers: Dict[str, ClientWorker] = {}
        self._lock = threading.Lock()
        self._client_factory = client_factory

    def get_or_create(self, profile: str = "default") -> ClientBridge:
        with self._lock:
            worker = self._workers.get(profile)
            if worker is None or worker.stopped:
                manager_logger.info("Starting client worker for profile=%s", profile)
                worker = ClientWorker(profile=profile, client_factory=self._client_factory)
                self._workers[profile] = worker
            worker.start()
        return ClientBridge(worker)

    def shutdown(self, profile: str) -> None:
        with self._lock:
            worker = self._workers.pop(profile, None)
        if worker:
            worker.shutdown()

    def shutdown_all(self) -> None:
        with self._lock:
            workers = list(self._workers.values())
            self._workers.clear()
        for worker in workers:
            worker.shutdown()


@lru_cache(maxsize=1)
def get_background_client_manager() -> BackgroundClientManager:
    return BackgroundClientManager()
