"""Short session titles derived from the first message of a conversation."""

import re
from typing import Iterable, Optional

DEFAULT_TITLE = "New Chat"

STOPWORDS = frozenset({
    "a", "about", "an", "and", "are", "as", "at", "be", "by", "can", "could",
    "do", "does", "for", "from", "give", "how", "i", "in", "is", "it", "know",
    "like", "me", "my", "need", "of", "on", "or", "please", "show", "tell",
    "that", "the", "their", "them", "there", "these", "this", "to", "want",
    "was", "we", "what", "when", "where", "which", "who", "why", "will",
    "with", "would", "you", "your",
})

_WORD = re.compile(r"[^\W_]+(?:'[^\W_]+)*")


def _capitalize(word: str) -> str:
    # Only the first letter; acronyms such as "NPS" stay intact
    return word[:1].upper() + word[1:]


def derive_session_title(
    message: str,
    stopwords: Optional[Iterable[str]] = None,
    max_words: int = 4,
    fallback_length: int = 40,
) -> str:
    """Build a short session title from the first message of a conversation.

    Keeps the first ``max_words`` words that are not stopwords, capitalised.
    When nothing survives the filter, falls back to the whitespace-collapsed
    message cut to ``fallback_length`` characters, and to ``DEFAULT_TITLE``
    when even that is empty. Never returns an empty string.
    """
    words_to_skip = STOPWORDS if stopwords is None else frozenset(w.lower() for w in stopwords)
    words = _WORD.findall(message or "")
    meaningful = [w for w in words if w.lower() not in words_to_skip]
    if meaningful:
        return " ".join(_capitalize(w) for w in meaningful[:max_words])

    collapsed = " ".join((message or "").split())
    if collapsed:
        return collapsed[:fallback_length].rstrip()
    return DEFAULT_TITLE
