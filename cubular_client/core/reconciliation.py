"""Merging server-confirmed messages into the locally held conversation.

Two entries are the *same message* when they carry the same id, or when the
same sender produced identical content within ``PROXIMITY_WINDOW_MS`` of each
other. The second rule catches a confirmed assistant reply that comes back
from a history reload under a server id different from the one the chat
endpoint returned.
"""

from typing import Iterable, List, Optional

from cubular_client.core.models import ChatMessage

PROXIMITY_WINDOW_MS = 5 * 60 * 1000


def is_same_message(a: ChatMessage, b: ChatMessage, window_ms: int = PROXIMITY_WINDOW_MS) -> bool:
    if a.id == b.id:
        return True
    return (
        a.sender == b.sender
        and a.content.strip() == b.content.strip()
        and abs(a.timestamp_epoch_ms - b.timestamp_epoch_ms) <= window_ms
    )


def merge(
    existing: Iterable[ChatMessage],
    incoming: Iterable[ChatMessage],
    window_ms: int = PROXIMITY_WINDOW_MS,
) -> List[ChatMessage]:
    """Return a new list holding ``existing`` plus every incoming message not already present.

    A confirmed incoming message that matches an optimistic local entry
    replaces it in place; a match against a confirmed entry is dropped.
    Neither input is modified.
    """
    merged = list(existing)
    for message in incoming:
        index = _find(merged, message, window_ms)
        if index is None:
            merged.append(message)
        elif merged[index].optimistic and not message.optimistic:
            merged[index] = message
    return merged


def _find(messages: List[ChatMessage], candidate: ChatMessage, window_ms: int) -> Optional[int]:
    for index, message in enumerate(messages):
        if is_same_message(message, candidate, window_ms):
            return index
    return None


def replace_message(messages: Iterable[ChatMessage], message_id: str, replacement: ChatMessage) -> List[ChatMessage]:
    return [replacement if message.id == message_id else message for message in messages]


def remove_message(messages: Iterable[ChatMessage], message_id: str) -> List[ChatMessage]:
    return [message for message in messages if message.id != message_id]
