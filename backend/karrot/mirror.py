"""Participant-side view of a session, driven only by host messages."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union

from pydantic import ValidationError

from .models import LeaderboardEntry, Quiz, QuizQuestion
from .schemas import (
    Envelope,
    MessageType,
    NextQuestionPayload,
    ProtocolError,
    QuizDataPayload,
    QuizStartedPayload,
    QuizStartingPayload,
    ShowResultsPayload,
    parse_message,
)

logger = logging.getLogger(__name__)

LOCK_SUBMITTED = "submitted"
LOCK_TIME_UP = "time-up"


class MirrorPhase(str, Enum):
    AWAITING_NAME = "awaiting_name"
    CONNECTING = "connecting"
    LOBBY = "lobby"
    COUNTDOWN = "countdown"
    ANSWERING = "answering"
    LOCKED = "locked"
    RESULTS = "results"
    FINAL_RANKING = "final_ranking"
    ENDED = "ended"


_SNAPSHOT_PHASES = {
    "lobby": MirrorPhase.LOBBY,
    "countdown": MirrorPhase.COUNTDOWN,
    "question_results": MirrorPhase.RESULTS,
    "final_ranking": MirrorPhase.FINAL_RANKING,
    "ended": MirrorPhase.ENDED,
}


@dataclass
class QuestionResult:
    question_id: str
    correct_answer: Any
    leaderboard: List[LeaderboardEntry]
    own: Optional[LeaderboardEntry] = None
    rank: Optional[int] = None

    @property
    def correct(self) -> Optional[bool]:
        return self.own.correct if self.own else None

    @property
    def points_earned(self) -> int:
        return self.own.points_earned if self.own else 0


class ParticipantMirror:
    """Local state a participant UI renders from.

    Correctness is never computed here: the verdict comes from this
    participant's own row in the host's leaderboard.
    """

    def __init__(self) -> None:
        self.phase = MirrorPhase.AWAITING_NAME
        self.name: Optional[str] = None
        self.avatar = ""
        self.participant_id: Optional[str] = None
        self.quiz: Optional[Quiz] = None
        self.current_question_index = 0
        self.time_left: Optional[int] = None
        self.countdown: Optional[int] = None
        self.lock_reason: Optional[str] = None
        self.submitted: Dict[str, Any] = {}
        self.result: Optional[QuestionResult] = None
        self.leaderboard: List[LeaderboardEntry] = []
        self.connection_lost = False
        self.error: Optional[str] = None
        # bumped whenever the host (re)starts a clock
        self.clock_generation = 0
        self._answered: Set[str] = set()

    @property
    def current_question(self) -> Optional[QuizQuestion]:
        if self.quiz is None:
            return None
        if 0 <= self.current_question_index < len(self.quiz.questions):
            return self.quiz.questions[self.current_question_index]
        return None

    @property
    def clock_running(self) -> bool:
        return self.phase in (MirrorPhase.COUNTDOWN, MirrorPhase.ANSWERING, MirrorPhase.LOCKED)

    def set_name(self, name: str, avatar: str = "") -> Envelope:
        """Leave AWAITING_NAME and return the JOIN message to send."""
        if self.phase is not MirrorPhase.AWAITING_NAME:
            raise ValueError("Name has already been set")
        cleaned = (name or "").strip()
        if not cleaned:
            raise ValueError("Name must not be empty")

        envelope = Envelope.of(MessageType.JOIN, name=cleaned, avatar_token=avatar)
        self.name = envelope.payload.name
        self.avatar = avatar
        self.phase = MirrorPhase.CONNECTING
        return envelope

    # ---------- Host messages ----------

    def handle(self, message: Union[Envelope, Dict[str, Any]]) -> bool:
        """Apply one host message; return whether local state changed."""
        if not isinstance(message, Envelope):
            try:
                message = parse_message(message)
            except ProtocolError as exc:
                logger.debug("Ignoring malformed host message: %s", exc)
                return False

        if self.phase is MirrorPhase.ENDED:
            return False

        payload = message.payload
        kind = message.type

        if kind is MessageType.QUIZ_DATA and isinstance(payload, QuizDataPayload):
            return self._apply_snapshot(payload)
        if kind is MessageType.QUIZ_STARTING and isinstance(payload, QuizStartingPayload):
            self.phase = MirrorPhase.COUNTDOWN
            self.countdown = payload.countdown_seconds
            self.clock_generation += 1
            return True
        if kind is MessageType.QUIZ_STARTED and isinstance(payload, QuizStartedPayload):
            return self._open_question(0, payload.time_left)
        if kind is MessageType.NEXT_QUESTION and isinstance(payload, NextQuestionPayload):
            return self._open_question(payload.question_index, payload.time_left)
        if kind is MessageType.SHOW_RESULTS and isinstance(payload, ShowResultsPayload):
            return self._apply_results(payload)
        if kind is MessageType.SHOW_RANKING:
            self.phase = MirrorPhase.FINAL_RANKING
            self.time_left = None
            return True
        if kind is MessageType.QUIZ_ENDED:
            self.phase = MirrorPhase.ENDED
            self.time_left = None
            return True

        logger.debug("Ignoring %s: not a host message", kind.value)
        return False

    def _apply_snapshot(self, payload: QuizDataPayload) -> bool:
        try:
            self.quiz = Quiz.model_validate(payload.quiz)
        except ValidationError as exc:
            logger.warning("Host sent an unusable quiz: %s", exc)
            return False
        if payload.participant_id:
            self.participant_id = payload.participant_id
        self.current_question_index = payload.current_question_index

        phase = payload.phase or ("question_active" if payload.has_started else "lobby")
        if phase == "question_active":
            return self._open_question(payload.current_question_index, payload.time_left)

        self.phase = _SNAPSHOT_PHASES.get(phase, MirrorPhase.LOBBY)
        if self.phase is MirrorPhase.COUNTDOWN:
            self.countdown = payload.time_left
            self.clock_generation += 1
        return True

    def _open_question(self, index: int, time_left: Optional[int]) -> bool:
        if self.quiz is None or not 0 <= index < len(self.quiz.questions):
            logger.debug("Ignoring question %d: quiz not loaded", index)
            return False

        self.current_question_index = index
        self.time_left = time_left
        self.countdown = None
        self.result = None
        self.clock_generation += 1
        if self.quiz.questions[index].id in self._answered:
            self.phase = MirrorPhase.LOCKED
            self.lock_reason = LOCK_SUBMITTED
        else:
            self.phase = MirrorPhase.ANSWERING
            self.lock_reason = None
        return True

    def _apply_results(self, payload: ShowResultsPayload) -> bool:
        question = self.current_question
        if question is not None and question.id != payload.question_id:
            logger.debug("Ignoring results for %s while on %s", payload.question_id, question.id)
            return False

        own = None
        rank = None
        for position, entry in enumerate(payload.leaderboard, start=1):
            if entry.id == self.participant_id:
                own, rank = entry, position
                break

        self.leaderboard = list(payload.leaderboard)
        self.result = QuestionResult(
            question_id=payload.question_id,
            correct_answer=payload.correct_answer,
            leaderboard=self.leaderboard,
            own=own,
            rank=rank,
        )
        self.phase = MirrorPhase.RESULTS
        self.time_left = 0
        self.lock_reason = None
        return True

    # ---------- Local actions ----------

    def submit_answer(self, value: Any) -> Optional[Envelope]:
        """Lock in an answer; return the ANSWER to send or ``None`` if locked.

        A value of the wrong shape raises ``InvalidAnswer`` without using up
        the submission.
        """
        question = self.current_question
        if self.phase is not MirrorPhase.ANSWERING or question is None or self.connection_lost:
            return None
        if self.time_left is not None and self.time_left <= 0:
            return None
        if question.id in self._answered:
            return None

        normalized = question.normalize_answer(value)
        self._answered.add(question.id)
        self.submitted[question.id] = normalized
        self.phase = MirrorPhase.LOCKED
        self.lock_reason = LOCK_SUBMITTED
        return Envelope.of(
            MessageType.ANSWER,
            name=self.name or "",
            question_id=question.id,
            answer=normalized,
        )

    def tick(self) -> bool:
        """Advance the advisory clock by one second."""
        if self.phase is MirrorPhase.COUNTDOWN and self.countdown:
            self.countdown -= 1
            return True
        if self.phase in (MirrorPhase.ANSWERING, MirrorPhase.LOCKED) and self.time_left:
            self.time_left -= 1
            if self.time_left == 0 and self.phase is MirrorPhase.ANSWERING:
                self.phase = MirrorPhase.LOCKED
                self.lock_reason = LOCK_TIME_UP
            return True
        return False

    def connection_closed(self, reason: str = "Connection to the host was lost") -> None:
        if self.phase is MirrorPhase.ENDED:
            return
        self.connection_lost = True
        self.error = reason
