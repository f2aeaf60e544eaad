"""Expiring one-shot intent tokens, used to tell deliberate side effects from external ones."""

import time
from typing import Callable, Dict

NEW_CHAT = "new-chat"
DEFAULT_INTENT_TTL_MS = 2000


class IntentGuard:
    """One-shot intent tokens with an explicit expiry.

    ``issue`` records that the caller is deliberately about to cause a side
    effect (say, a ``SessionCleared`` broadcast during a new-chat teardown);
    whoever reacts to that side effect calls ``consume`` to learn whether it
    was intended. A token is honoured at most once and never after it expires.
    """

    def __init__(self, ttl_ms: int = DEFAULT_INTENT_TTL_MS, clock: Callable[[], float] = time.time):
        self.ttl_ms = ttl_ms
        self._clock = clock
        self._expiry: Dict[str, int] = {}

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def issue(self, kind: str) -> None:
        self._expiry[kind] = self._now_ms() + self.ttl_ms

    def peek(self, kind: str) -> bool:
        expires_at = self._expiry.get(kind)
        if expires_at is None:
            return False
        if self._now_ms() >= expires_at:
            del self._expiry[kind]
            return False
        return True

    def consume(self, kind: str) -> bool:
        live = self.peek(kind)
        self._expiry.pop(kind, None)
        return live

    def discard(self, kind: str) -> None:
        self._expiry.pop(kind, None)
