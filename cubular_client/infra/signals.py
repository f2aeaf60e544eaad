"""Typed broadcast signals shared by independent parts of the client.

Each signal is a small frozen dataclass; its type is the topic. Publishing
calls every listener registered for that exact type, synchronously and in
registration order, against a snapshot taken at publish time. A listener that
subscribes or unsubscribes during fan-out affects the next publish only.
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Type, TypeVar

from cubular_client.infra.logger import logger


@dataclass(frozen=True)
class TokenRefreshed:
    access_token: str


@dataclass(frozen=True)
class TokenCleared:
    pass


@dataclass(frozen=True)
class StartNewChat:
    survey_id: Optional[str] = None


@dataclass(frozen=True)
class SessionCleared:
    session_id: Optional[str] = None


SIGNAL_TYPES = (TokenRefreshed, TokenCleared, StartNewChat, SessionCleared)

S = TypeVar("S")
Listener = Callable[[S], None]


class SignalBus:
    """Process-wide publish/subscribe hub keyed by signal type."""

    def __init__(self):
        self._listeners: Dict[type, List[Listener]] = {}
        self._logger = logger.getChild("SignalBus")

    def subscribe(self, signal_type: Type[S], listener: Callable[[S], None]) -> Callable[[], None]:
        """Register ``listener`` for ``signal_type`` and return an unsubscribe callable."""
        if signal_type not in SIGNAL_TYPES:
            raise TypeError(f"Unknown signal type: {signal_type!r}")
        self._listeners.setdefault(signal_type, []).append(listener)

        def _unsubscribe() -> None:
            listeners = self._listeners.get(signal_type, [])
            if listener in listeners:
                listeners.remove(listener)

        return _unsubscribe

    def publish(self, signal) -> int:
        """Deliver ``signal`` to every current listener; returns how many were called."""
        signal_type = type(signal)
        if signal_type not in SIGNAL_TYPES:
            raise TypeError(f"Unknown signal: {signal!r}")

        listeners = list(self._listeners.get(signal_type, []))
        self._logger.debug("Publishing %s to %d listener(s)", signal_type.__name__, len(listeners))
        for listener in listeners:
            try:
                listener(signal)
            except Exception:
                # One failing listener must not starve the rest of the fan-out
                self._logger.exception("Listener %r failed handling %s", listener, signal_type.__name__)
        return len(listeners)

    def listener_count(self, signal_type: type) -> int:
        return len(self._listeners.get(signal_type, []))

    def clear(self) -> None:
        self._listeners.clear()
