from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

DEFAULT_TIME_LIMIT = 30
MIN_TIME_LIMIT = 5
MAX_TIME_LIMIT = 300
DEFAULT_SCALE = (1.0, 10.0)
MAX_TEXT_ANSWER_LENGTH = 500


class InvalidAnswer(ValueError):
    """Submitted value does not have the shape the question type requires."""


class QuestionType(str, Enum):
    SINGLE_CHOICE = "multiple-choice"
    MULTI_SELECT = "multiple-select"
    OPEN_TEXT = "open-ended"
    PHRASE_CLOUD = "word-cloud"
    NUMERIC_SCALE = "scales"
    RANKING = "ranking"
    QA = "q-and-a"


OPTION_TYPES = frozenset({QuestionType.SINGLE_CHOICE, QuestionType.MULTI_SELECT, QuestionType.RANKING})
TEXT_TYPES = frozenset({QuestionType.OPEN_TEXT, QuestionType.PHRASE_CLOUD, QuestionType.QA})


class Phase(str, Enum):
    LOBBY = "lobby"
    COUNTDOWN = "countdown"
    QUESTION_ACTIVE = "question_active"
    QUESTION_RESULTS = "question_results"
    FINAL_RANKING = "final_ranking"
    ENDED = "ended"


class WireModel(BaseModel):
    """Base for everything that crosses the channel: camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class ScaleLabels(WireModel):
    min: str = ""
    max: str = ""


class QuizQuestion(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    type: QuestionType
    prompt: str = Field(alias="question", min_length=1)
    options: Optional[List[str]] = None
    correct_answer: Optional[int] = None
    correct_answers: Optional[List[int]] = None
    correct_order: Optional[List[int]] = None
    time_limit: int = Field(default=DEFAULT_TIME_LIMIT, ge=MIN_TIME_LIMIT, le=MAX_TIME_LIMIT)
    scale_min: Optional[float] = None
    scale_max: Optional[float] = None
    scale_labels: Optional[ScaleLabels] = None

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("time_limit", mode="before")
    @classmethod
    def _default_time_limit(cls, value: Any) -> Any:
        return DEFAULT_TIME_LIMIT if value is None else value

    @model_validator(mode="after")
    def _check_type_fields(self) -> "QuizQuestion":
        if self.type in OPTION_TYPES:
            if not self.options or len(self.options) < 2:
                raise ValueError(f"Question {self.id} needs at least two options.")
            size = len(self.options)
            if self.correct_answer is not None and not 0 <= self.correct_answer < size:
                raise ValueError(f"Question {self.id} has an out-of-range correct answer.")
            if self.correct_answers is not None:
                if any(not 0 <= idx < size for idx in self.correct_answers):
                    raise ValueError(f"Question {self.id} has an out-of-range correct answer.")
                if len(set(self.correct_answers)) != len(self.correct_answers):
                    raise ValueError(f"Question {self.id} repeats a correct answer.")
            if self.correct_order is not None and sorted(self.correct_order) != list(range(size)):
                raise ValueError(f"Question {self.id} correct order must be a permutation of its options.")
        if self.type is QuestionType.NUMERIC_SCALE:
            low, high = self.scale_bounds
            if not low < high:
                raise ValueError(f"Question {self.id} scale minimum must be below its maximum.")
        return self

    @property
    def scale_bounds(self) -> tuple[float, float]:
        low = DEFAULT_SCALE[0] if self.scale_min is None else self.scale_min
        high = DEFAULT_SCALE[1] if self.scale_max is None else self.scale_max
        return low, high

    def public_view(self) -> "QuizQuestion":
        """Copy without answer keys, as sent to participants."""
        return self.model_copy(update={"correct_answer": None, "correct_answers": None, "correct_order": None})

    def normalize_answer(self, value: Any) -> Any:
        """Return the canonical form of a submitted value or raise ``InvalidAnswer``."""
        size = len(self.options or [])

        if self.type is QuestionType.SINGLE_CHOICE:
            if not _is_int(value) or not 0 <= value < size:
                raise InvalidAnswer("Expected an option index.")
            return value

        if self.type in (QuestionType.MULTI_SELECT, QuestionType.RANKING):
            if not isinstance(value, (list, tuple)) or not all(_is_int(v) for v in value):
                raise InvalidAnswer("Expected a list of option indices.")
            if self.type is QuestionType.RANKING:
                if sorted(value) != list(range(size)):
                    raise InvalidAnswer("Expected a permutation of the options.")
                return list(value)
            if len(set(value)) != len(value) or any(not 0 <= v < size for v in value):
                raise InvalidAnswer("Expected distinct option indices.")
            return sorted(value)

        if self.type is QuestionType.NUMERIC_SCALE:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidAnswer("Expected a number.")
            low, high = self.scale_bounds
            if not low <= value <= high:
                raise InvalidAnswer("Value outside of the scale.")
            return value

        if not isinstance(value, str) or not value.strip():
            raise InvalidAnswer("Expected some text.")
        return value.strip()[:MAX_TEXT_ANSWER_LENGTH]


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class Quiz(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    title: str = Field(min_length=1)
    description: Optional[str] = None
    questions: List[QuizQuestion] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Quiz title must not be empty.")
        return value

    @model_validator(mode="after")
    def _unique_ids(self) -> "Quiz":
        ids = [q.id for q in self.questions]
        if len(ids) != len(set(ids)):
            raise ValueError("Question ids must be unique within a quiz.")
        return self

    def question_by_id(self, question_id: str) -> Optional[QuizQuestion]:
        return next((q for q in self.questions if q.id == question_id), None)

    def public_view(self) -> "Quiz":
        return self.model_copy(update={"questions": [q.public_view() for q in self.questions]})


class Participant(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    name: str
    avatar: str = ""
    connected: bool = True


class Answer(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    participant_id: str
    participant_name: str
    question_id: str
    value: Any = Field(alias="answer")
    timestamp: float  # epoch seconds
    time_left_at_answer: Optional[int] = None


class LeaderboardEntry(WireModel):
    id: str
    name: str
    avatar: str = ""
    score: int = 0
    points_earned: int = 0
    correct: Optional[bool] = None

    def to_wire(self) -> Dict[str, Any]:
        # ``correct`` is meaningful as null for unscored questions
        return self.model_dump(by_alias=True, mode="json")


class OptionTally(WireModel):
    index: int
    label: str
    count: int = 0
    percentage: float = 0.0
    points: Optional[int] = None  # ranking consensus only


class TextResponse(WireModel):
    participant_id: str
    participant_name: str
    text: str
    timestamp: float


class QuestionSummary(WireModel):
    """Aggregated answers for one question, as shown on the host's results screen."""

    question_id: str
    type: QuestionType
    responses: int = 0
    roster_size: int = 0
    response_rate: int = 0  # whole percent of the roster
    options: Optional[List[OptionTally]] = None
    average: Optional[float] = None
    texts: Optional[List[TextResponse]] = None


# Phases: lobby -> countdown -> question_active -> question_results -> ... -> final_ranking -> ended
class SessionState(BaseModel):
    room_code: str
    quiz: Quiz
    phase: Phase = Phase.LOBBY
    current_question_index: int = 0
    roster: Dict[str, Participant] = Field(default_factory=dict)
    departed: Dict[str, Participant] = Field(default_factory=dict)
    answers: List[Answer] = Field(default_factory=list)
    revealed: List[str] = Field(default_factory=list)
    time_remaining: Optional[int] = None
    countdown_remaining: Optional[int] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def has_started(self) -> bool:
        return self.phase not in (Phase.LOBBY, Phase.COUNTDOWN)

    @property
    def current_question(self) -> Optional[QuizQuestion]:
        if 0 <= self.current_question_index < len(self.quiz.questions):
            return self.quiz.questions[self.current_question_index]
        return None
