import json
import time
from datetime import datetime, timezone
from typing import Any, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    return int(time.time() * 1000)


def to_epoch_ms(value: Any) -> int:
    """Coerce an ISO string, datetime or epoch number into epoch milliseconds."""
    if value is None or value == "":
        return now_ms()
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value))
        except ValueError:
            return to_epoch_ms(datetime.fromisoformat(value.replace("Z", "+00:00")))
    raise ValueError(f"Unsupported timestamp: {value!r}")


def parse_json_string(value: Any) -> Any:
    """Payload fields sometimes arrive JSON-encoded; decode them, dropping garbage."""
    if isinstance(value, str):
        if not value:
            return None
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


class Credential(BaseModel):
    """Access/refresh pair with the absolute expiry declared by the server."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    expires_at_epoch_ms: int

    @classmethod
    def issue(cls, access_token: str, refresh_token: str, expires_in_seconds: float,
              issued_at_ms: int) -> "Credential":
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at_epoch_ms=issued_at_ms + int(expires_in_seconds * 1000),
        )


class CacheEntry(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    key: str
    data: Any
    cached_at_epoch_ms: int
    expires_at_epoch_ms: int

    def is_valid(self, at_ms: int) -> bool:
        return at_ms < self.expires_at_epoch_ms


class CacheStats(BaseModel):
    total_entries: int
    valid_entries: int
    expired_entries: int
    ongoing_requests: int


class Confidence(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: float
    reliability: Literal["low", "medium", "high"]

    @staticmethod
    def reliability_for(score: float) -> str:
        if score > 0.8:
            return "high"
        if score > 0.5:
            return "medium"
        return "low"

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["Confidence"]:
        """Normalise the shapes the backend uses: number, JSON string or object."""
        raw = parse_json_string(raw)
        if raw is None or isinstance(raw, bool):
            return None
        if isinstance(raw, Confidence):
            return raw
        if isinstance(raw, (int, float)):
            return cls(score=float(raw), reliability=cls.reliability_for(float(raw)))
        if isinstance(raw, dict) and raw.get("score") is not None:
            score = float(raw["score"])
            reliability = raw.get("reliability") or cls.reliability_for(score)
            return cls(score=score, reliability=reliability)
        return None


class ChatMessage(BaseModel):
    """One entry of the conversation.

    ``optimistic`` marks client-synthesized entries (pending user messages,
    the composing placeholder, error notices); everything else originates from
    the server and counts as confirmed.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    content: str
    sender: Literal["user", "assistant"]
    timestamp_epoch_ms: int = Field(
        default_factory=now_ms,
        validation_alias=AliasChoices("timestamp_epoch_ms", "timestampEpochMs", "timestamp"),
    )
    session_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("session_id", "sessionId"))
    data_snapshot: Optional[Any] = Field(
        default=None, validation_alias=AliasChoices("data_snapshot", "dataSnapshot")
    )
    confidence: Optional[Confidence] = None
    optimistic: bool = False

    @field_validator("timestamp_epoch_ms", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value):
        return to_epoch_ms(value)

    @field_validator("data_snapshot", mode="before")
    @classmethod
    def _decode_snapshot(cls, value):
        return parse_json_string(value)

    @field_validator("confidence", mode="before")
    @classmethod
    def _normalise_confidence(cls, value):
        return Confidence.from_raw(value)


class ChatSession(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    survey_ids: List[str] = Field(default_factory=list)
    personality_id: Optional[str] = None
    category: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    title: Optional[str] = None
    selected_file_ids: List[str] = Field(default_factory=list)
    user_id: Optional[str] = None


class ChatRequest(BaseModel):
    """Body of the semantic chat call."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    message: str
    survey_ids: List[str]
    selected_file_ids: List[str] = Field(default_factory=list)
    session_id: Optional[str] = None
    personality_id: Optional[str] = None
    title: Optional[str] = None

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class ChatResponse(BaseModel):
    response: str = Field(
        default="", validation_alias=AliasChoices("response", "conversationalResponse", "content")
    )
    session_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("sessionId", "session_id"))
    message_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("messageId", "message_id", "id")
    )
    data_snapshot: Optional[Any] = Field(
        default=None, validation_alias=AliasChoices("dataSnapshot", "data_snapshot")
    )
    confidence: Optional[Confidence] = None

    @field_validator("data_snapshot", mode="before")
    @classmethod
    def _decode_snapshot(cls, value):
        return parse_json_string(value)

    @field_validator("confidence", mode="before")
    @classmethod
    def _normalise_confidence(cls, value):
        return Confidence.from_raw(value)
