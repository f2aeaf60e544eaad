import httpx
import pytest

from cubular_client.auth.refresh import TokenRefreshCoordinator
from cubular_client.config import ClientSettings
from cubular_client.core.http import ApiClient, ResilientFetch
from cubular_client.infra.signals import SignalBus
from cubular_client.utils.persistent_auth import CredentialStore, MemoryStorage
from cubular_client.utils.request_deduplication import RequestCache

from .helpers import API_BASE, FakeClock, RecordingSleep, Router


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def settings():
    return ClientSettings(api_base_url=API_BASE, retry_base_delay_ms=1000, max_retries=3)


@pytest.fixture
def bus():
    return SignalBus()


@pytest.fixture
def store():
    return CredentialStore(MemoryStorage())


@pytest.fixture
def router():
    return Router()


@pytest.fixture
async def http(router):
    client = httpx.AsyncClient(transport=router.transport())
    yield client
    await client.aclose()


@pytest.fixture
def refresher(store, http, bus, settings, clock):
    return TokenRefreshCoordinator(store, http, bus, settings, clock=clock)


@pytest.fixture
def fetch(http, store, refresher, bus):
    return ResilientFetch(http, store, refresher, bus)


@pytest.fixture
def request_cache(clock, sleep):
    return RequestCache(clock=clock, sleep=sleep)


@pytest.fixture
def api(fetch, request_cache, settings):
    return ApiClient(fetch, request_cache, settings)
