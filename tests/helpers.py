"""Shared fakes: a controllable clock, a recording sleep and a tiny HTTP router."""

from typing import Callable, Dict, List, Tuple

import httpx

from cubular_client.core.models import Credential

API_BASE = "http://api.test/api/v1"
API_PATH = "/api/v1"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def ms(self) -> int:
        return int(self.now * 1000)


class RecordingSleep:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def issue_credential(clock: FakeClock, lifetime_seconds: float = 3600, access: str = "access-1",
                     refresh: str = "refresh-1") -> Credential:
    return Credential.issue(access, refresh, lifetime_seconds, clock.ms())


def token_body(access: str = "access-2", refresh: str = "refresh-2", expires_in: int = 3600) -> dict:
    return {"accessToken": access, "refreshToken": refresh, "expiresIn": expires_in}


def _clone(response: httpx.Response) -> httpx.Response:
    # A Response object can only be sent once
    return httpx.Response(response.status_code, headers=response.headers, content=response.content)


class Router:
    """MockTransport handler dispatching on (method, path) and recording every request."""

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Callable] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, endpoint: str, handler) -> None:
        """``handler`` is a request callable, a single Response, or a list of Responses served in order."""
        if isinstance(handler, httpx.Response):
            response = handler
            handler = lambda request: _clone(response)
        elif isinstance(handler, list):
            queue = list(handler)
            handler = lambda request: _clone(queue.pop(0) if len(queue) > 1 else queue[0])
        self.routes[(method, f"{API_PATH}{endpoint}")] = handler

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"message": f"No route for {request.method} {request.url.path}"})
        return handler(request)

    def calls(self, method: str, endpoint: str) -> List[httpx.Request]:
        path = f"{API_PATH}{endpoint}"
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def paths(self) -> List[str]:
        return [r.url.path[len(API_PATH):] for r in self.requests]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)
