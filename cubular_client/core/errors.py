"""Error taxonomy for the client layer.

Network      no response at all (transport failure)
Authorization 401 / 403
RateLimit    429, retried with backoff by the request cache
Server       5xx
InvalidRequest any other 4xx, carrying the server message when present
InvalidResponse a 2xx whose body is not the JSON the endpoint promises
"""

from typing import Optional

import httpx


class CubularError(Exception):
    """Base class for every error raised by cubular_client."""


class NetworkError(CubularError):
    """The request never produced a response."""


class ApiError(CubularError):
    """A non-2xx HTTP response."""

    def __init__(self, status_code: int, message: str, response: Optional[httpx.Response] = None):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.response = response


class AuthorizationError(ApiError):
    pass


class RateLimitError(ApiError):
    def __init__(self, status_code: int, message: str, response: Optional[httpx.Response] = None,
                 retry_after: Optional[float] = None):
        super().__init__(status_code, message, response)
        self.retry_after = retry_after


class ServerError(ApiError):
    pass


class InvalidRequestError(ApiError):
    pass


class InvalidResponseError(CubularError):
    """A 2xx response whose body could not be decoded or validated."""


class TokenRefreshError(CubularError):
    """The refresh exchange failed; credentials are left untouched."""


class SessionStateError(CubularError):
    """An operation is not valid in the store's current session phase."""


def _server_message(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return text[:200] or None
    if isinstance(body, dict):
        for field in ("message", "error", "detail"):
            value = body.get(field)
            if isinstance(value, str) and value:
                return value
    return None


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def error_from_response(response: httpx.Response) -> ApiError:
    """Classify a non-2xx response into the matching ApiError subclass."""
    status = response.status_code
    message = _server_message(response) or response.reason_phrase or "Request failed"

    if status in (401, 403):
        return AuthorizationError(status, message, response)
    if status == 429:
        return RateLimitError(status, message, response, retry_after=_retry_after(response))
    if status >= 500:
        return ServerError(status, message, response)
    return InvalidRequestError(status, message, response)
