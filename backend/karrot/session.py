from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .config import settings
from .models import (
    Answer,
    InvalidAnswer,
    LeaderboardEntry,
    Participant,
    Phase,
    Quiz,
    QuestionSummary,
    QuizQuestion,
    SessionState,
)
from .schemas import AnswerPayload, Envelope, JoinPayload, MessageType
from .scoring import build_leaderboard, correct_answer_key, question_summary
from .shuffler import prepare_quiz
from .storage import build_results
from .utils import generate_room_code, now_ts

logger = logging.getLogger(__name__)


class SessionError(ValueError):
    """Host action that is not valid in the current phase."""


@dataclass(frozen=True)
class Outbound:
    recipient: Optional[str]  # None addresses every admitted participant
    envelope: Envelope


class SessionStateMachine:
    """Authoritative host-side session.

    Every call mutates ``state`` synchronously and queues the messages it
    produces in ``outbox``; the caller drains and delivers them. Host actions
    that are out of phase raise ``SessionError``; inbound participant messages
    never raise and report acceptance as a bool.
    """

    def __init__(
        self,
        quiz: Quiz,
        *,
        room_code: Optional[str] = None,
        rng: Optional[random.Random] = None,
    ):
        self.state = SessionState(
            room_code=room_code or generate_room_code(),
            quiz=prepare_quiz(quiz, rng),
        )
        self.outbox: List[Outbound] = []
        self.transitions = 0
        self._answer_index: Dict[Tuple[str, str], Answer] = {}
        logger.info(
            "Session %s initialised for '%s' (%d questions)",
            self.room_code,
            quiz.title,
            len(quiz.questions),
        )

    # ---------- Accessors ----------

    @property
    def room_code(self) -> str:
        return self.state.room_code

    @property
    def phase(self) -> Phase:
        return self.state.phase

    @property
    def quiz(self) -> Quiz:
        return self.state.quiz

    @property
    def current_question(self) -> Optional[QuizQuestion]:
        return self.state.current_question

    @property
    def roster(self) -> List[Participant]:
        return list(self.state.roster.values())

    def answers_for(self, question_id: str) -> List[Answer]:
        return [a for a in self.state.answers if a.question_id == question_id]

    def answer_of(self, participant_id: str, question_id: str) -> Optional[Answer]:
        return self._answer_index.get((participant_id, question_id))

    def drain(self) -> List[Outbound]:
        pending, self.outbox = self.outbox, []
        return pending

    # ---------- Inbound protocol ----------

    def handle(self, peer_id: str, envelope: Envelope) -> bool:
        """Apply one inbound participant message; return whether it was accepted."""
        payload = envelope.payload
        if envelope.type is MessageType.JOIN and isinstance(payload, JoinPayload):
            return self.admit(Participant(id=peer_id, name=payload.name, avatar=payload.avatar_token))
        if envelope.type is MessageType.ANSWER and isinstance(payload, AnswerPayload):
            return self.record_answer(peer_id, payload.question_id, payload.answer, name=payload.name)
        logger.debug("Ignoring %s from %s: not a participant message", envelope.type.value, peer_id)
        return False

    def admit(self, participant: Participant) -> bool:
        if self.phase is Phase.ENDED:
            logger.debug("Rejecting join from %s: session ended", participant.id)
            return False
        if participant.id in self.state.roster:
            logger.debug("Ignoring repeated join from %s", participant.id)
            return False

        self.state.roster[participant.id] = participant
        self.state.departed.pop(participant.id, None)
        logger.info("Participant %s (%s) joined %s", participant.name, participant.id, self.room_code)
        self._send(participant.id, self.snapshot_for(participant.id))
        return True

    def remove(self, participant_id: str) -> bool:
        participant = self.state.roster.pop(participant_id, None)
        if participant is None:
            return False
        # recorded answers stay in the log
        self.state.departed[participant_id] = participant.model_copy(update={"connected": False})
        logger.info("Participant %s left %s", participant.name, self.room_code)
        return True

    def record_answer(self, participant_id: str, question_id: str, value: Any, name: Optional[str] = None) -> bool:
        question = self.current_question
        if self.phase is not Phase.QUESTION_ACTIVE or question is None:
            logger.debug("Rejecting answer from %s: no question is open", participant_id)
            return False
        if question.id != question_id:
            logger.debug("Rejecting answer from %s for stale question %s", participant_id, question_id)
            return False

        participant = self.state.roster.get(participant_id)
        if participant is None:
            logger.debug("Rejecting answer from unknown participant %s", participant_id)
            return False
        if (participant_id, question_id) in self._answer_index:
            logger.debug("Rejecting duplicate answer from %s for %s", participant_id, question_id)
            return False

        try:
            normalized = question.normalize_answer(value)
        except InvalidAnswer as exc:
            logger.debug("Rejecting answer from %s: %s", participant_id, exc)
            return False

        answer = Answer(
            participant_id=participant_id,
            participant_name=name or participant.name,
            question_id=question_id,
            value=normalized,
            timestamp=now_ts(),
            time_left_at_answer=self.state.time_remaining,
        )
        self.state.answers.append(answer)
        self._answer_index[(participant_id, question_id)] = answer
        return True

    # ---------- Host actions ----------

    def begin_countdown(self, seconds: Optional[int] = None) -> None:
        if self.phase is not Phase.LOBBY:
            raise SessionError(f"Cannot start the countdown from {self.phase.value}")
        if not self.quiz.questions:
            raise SessionError("Cannot start: the quiz has no questions")

        seconds = settings.COUNTDOWN_SECONDS if seconds is None else seconds
        if seconds < 0:
            raise SessionError("Countdown must not be negative")

        self.state.countdown_remaining = seconds
        self._enter(Phase.COUNTDOWN)
        self._broadcast(MessageType.QUIZ_STARTING, countdown_seconds=seconds)
        if seconds == 0:
            self._start_first_question()

    def tick(self) -> None:
        """One second of wall time for whichever clock is running."""
        if self.phase is Phase.COUNTDOWN:
            self.state.countdown_remaining = max(0, (self.state.countdown_remaining or 0) - 1)
            if self.state.countdown_remaining == 0:
                self._start_first_question()
        elif self.phase is Phase.QUESTION_ACTIVE:
            self.state.time_remaining = max(0, (self.state.time_remaining or 0) - 1)
            if self.state.time_remaining == 0:
                self.reveal_results()

    def reveal_results(self) -> None:
        question = self.current_question
        if self.phase is not Phase.QUESTION_ACTIVE or question is None:
            raise SessionError(f"No open question to reveal in {self.phase.value}")

        self.state.time_remaining = 0
        if question.id not in self.state.revealed:
            self.state.revealed.append(question.id)
        self._enter(Phase.QUESTION_RESULTS)

        leaderboard = self.leaderboard()
        logger.info(
            "Revealed question %d of %s (%d answers)",
            self.state.current_question_index,
            self.room_code,
            len(self.answers_for(question.id)),
        )
        self._broadcast(
            MessageType.SHOW_RESULTS,
            question_id=question.id,
            correct_answer=correct_answer_key(question),
            leaderboard=leaderboard,
        )

    def advance(self) -> None:
        if self.phase is Phase.QUESTION_ACTIVE:
            # forced early reveal before moving on
            self.reveal_results()
        if self.phase is not Phase.QUESTION_RESULTS:
            raise SessionError(f"Cannot advance from {self.phase.value}")

        next_index = self.state.current_question_index + 1
        if next_index < len(self.quiz.questions):
            self._start_question(next_index)
            self._broadcast(
                MessageType.NEXT_QUESTION,
                question_index=next_index,
                time_left=self.state.time_remaining,
            )
            return

        self.state.time_remaining = None
        self._enter(Phase.FINAL_RANKING)
        logger.info("Session %s reached the final ranking", self.room_code)
        self._broadcast(MessageType.SHOW_RANKING)

    def retreat(self) -> None:
        if self.phase not in (Phase.QUESTION_ACTIVE, Phase.QUESTION_RESULTS):
            raise SessionError(f"Cannot go back from {self.phase.value}")
        if self.state.current_question_index <= 0:
            raise SessionError("Already at the first question")

        previous = self.state.current_question_index - 1
        self._start_question(previous)
        self._broadcast(
            MessageType.NEXT_QUESTION,
            question_index=previous,
            time_left=self.state.time_remaining,
        )

    def finish(self) -> None:
        if self.phase is not Phase.FINAL_RANKING:
            raise SessionError(f"Cannot finish from {self.phase.value}")
        self._end()

    def terminate(self) -> None:
        """Host-initiated end from any phase that is not already terminal."""
        if self.phase is Phase.ENDED:
            raise SessionError("Session already ended")
        self._end()

    # ---------- Derived data ----------

    def leaderboard(self) -> List[LeaderboardEntry]:
        return build_leaderboard(
            self.quiz.questions,
            self.state.roster.values(),
            self._answer_index,
            self.state.revealed,
            self.current_question,
        )

    def question_summary(self, question_id: Optional[str] = None) -> QuestionSummary:
        """Answer breakdown for ``question_id`` (default: the current question)."""
        question = self.current_question if question_id is None else self.quiz.question_by_id(question_id)
        if question is None:
            raise SessionError(f"Unknown question {question_id}")
        return question_summary(question, self.answers_for(question.id), len(self.state.roster))

    def results_document(self) -> Dict[str, Any]:
        return build_results(self.state)

    def snapshot_for(self, participant_id: str) -> Envelope:
        time_left: Optional[int] = None
        if self.phase is Phase.QUESTION_ACTIVE:
            time_left = self.state.time_remaining
        elif self.phase is Phase.COUNTDOWN:
            time_left = self.state.countdown_remaining

        return Envelope.of(
            MessageType.QUIZ_DATA,
            quiz=self.quiz.public_view().to_wire(),
            current_question_index=self.state.current_question_index,
            has_started=self.state.has_started,
            time_left=time_left,
            phase=self.phase.value,
            participant_id=participant_id,
        )

    # ---------- Internals ----------

    def _start_first_question(self) -> None:
        self.state.countdown_remaining = None
        self._start_question(0)
        self._broadcast(MessageType.QUIZ_STARTED, time_left=self.state.time_remaining)

    def _start_question(self, index: int) -> None:
        self.state.current_question_index = index
        self.state.time_remaining = self.quiz.questions[index].time_limit
        self._enter(Phase.QUESTION_ACTIVE)

    def _end(self) -> None:
        self.state.countdown_remaining = None
        self.state.time_remaining = None
        self._enter(Phase.ENDED)
        logger.info("Session %s ended", self.room_code)
        self._broadcast(MessageType.QUIZ_ENDED)

    def _enter(self, phase: Phase) -> None:
        logger.debug("Session %s: %s -> %s", self.room_code, self.state.phase.value, phase.value)
        self.state.phase = phase
        self.transitions += 1

    def _broadcast(self, message_type: MessageType, **payload: Any) -> None:
        self.outbox.append(Outbound(None, Envelope.of(message_type, **payload)))

    def _send(self, participant_id: str, envelope: Envelope) -> None:
        self.outbox.append(Outbound(participant_id, envelope))
