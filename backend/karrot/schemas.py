from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Type

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from .config import settings
from .models import LeaderboardEntry, WireModel


class ProtocolError(ValueError):
    """Raised for envelopes that are not part of the protocol."""


class MessageType(str, Enum):
    JOIN = "JOIN"
    QUIZ_DATA = "QUIZ_DATA"
    QUIZ_STARTING = "QUIZ_STARTING"
    QUIZ_STARTED = "QUIZ_STARTED"
    NEXT_QUESTION = "NEXT_QUESTION"
    ANSWER = "ANSWER"
    SHOW_RESULTS = "SHOW_RESULTS"
    SHOW_RANKING = "SHOW_RANKING"
    QUIZ_ENDED = "QUIZ_ENDED"


class JoinPayload(WireModel):
    name: str = Field(min_length=1)
    avatar_token: str = Field(
        default="",
        validation_alias=AliasChoices("avatarToken", "avatar", "avatar_token"),
        serialization_alias="avatarToken",
    )

    @field_validator("name", mode="before")
    @classmethod
    def _clean_name(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()[: settings.MAX_NAME_LENGTH]
        return value


class QuizDataPayload(WireModel):
    quiz: Dict[str, Any]
    current_question_index: int = 0
    has_started: bool = False
    time_left: Optional[int] = None
    phase: Optional[str] = None
    participant_id: Optional[str] = None


class QuizStartingPayload(WireModel):
    countdown_seconds: int


class QuizStartedPayload(WireModel):
    time_left: int


class NextQuestionPayload(WireModel):
    question_index: int
    time_left: int


class AnswerPayload(WireModel):
    name: str = ""
    question_id: str
    answer: Any


class ShowResultsPayload(WireModel):
    question_id: str
    correct_answer: Any = None
    leaderboard: List[LeaderboardEntry] = Field(default_factory=list)


class EmptyPayload(WireModel):
    pass


PAYLOADS: Dict[MessageType, Type[WireModel]] = {
    MessageType.JOIN: JoinPayload,
    MessageType.QUIZ_DATA: QuizDataPayload,
    MessageType.QUIZ_STARTING: QuizStartingPayload,
    MessageType.QUIZ_STARTED: QuizStartedPayload,
    MessageType.NEXT_QUESTION: NextQuestionPayload,
    MessageType.ANSWER: AnswerPayload,
    MessageType.SHOW_RESULTS: ShowResultsPayload,
    MessageType.SHOW_RANKING: EmptyPayload,
    MessageType.QUIZ_ENDED: EmptyPayload,
}


class Envelope(BaseModel):
    type: MessageType
    payload: Any = None

    @classmethod
    def of(cls, message_type: MessageType, **payload: Any) -> "Envelope":
        return cls(type=message_type, payload=PAYLOADS[message_type](**payload))

    def to_wire(self) -> Dict[str, Any]:
        payload = self.payload
        if isinstance(payload, BaseModel):
            body = payload.model_dump(by_alias=True, mode="json")
        else:
            body = payload or {}
        return {"type": self.type.value, "payload": body}


def parse_message(raw: Any) -> Envelope:
    """Validate an inbound ``{type, payload}`` dict into a typed envelope."""
    if not isinstance(raw, dict):
        raise ProtocolError("Message must be an object.")
    try:
        message_type = MessageType(raw.get("type"))
    except ValueError as exc:
        raise ProtocolError(f"Unknown message type: {raw.get('type')!r}") from exc

    try:
        payload = PAYLOADS[message_type].model_validate(raw.get("payload") or {})
    except ValidationError as exc:
        raise ProtocolError(f"Malformed {message_type.value} payload") from exc
    return Envelope(type=message_type, payload=payload)
