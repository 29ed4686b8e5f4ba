"""Pure scoring helpers shared by the host session.

Only single-choice, multi-select and ranking questions carry correctness.
Everything else is a poll and always scores zero.
"""

from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .models import (
    Answer,
    LeaderboardEntry,
    OptionTally,
    Participant,
    QuestionSummary,
    QuestionType,
    QuizQuestion,
    TextResponse,
)

MAX_POINTS = 1000

SCORED_TYPES = frozenset({QuestionType.SINGLE_CHOICE, QuestionType.MULTI_SELECT, QuestionType.RANKING})


def is_scored(question: QuizQuestion) -> bool:
    return question.type in SCORED_TYPES


def correct_answer_key(question: QuizQuestion) -> Any:
    """The key broadcast with SHOW_RESULTS; ``None`` for unscored questions."""
    if question.type is QuestionType.SINGLE_CHOICE:
        return question.correct_answer
    if question.type is QuestionType.MULTI_SELECT:
        return question.correct_answers
    if question.type is QuestionType.RANKING:
        if question.correct_order is None:
            return list(range(len(question.options or [])))
        return question.correct_order
    return None


def is_correct(question: QuizQuestion, answer: Any) -> Optional[bool]:
    """Return the verdict for ``answer``; ``None`` when the question is not scored."""
    if not is_scored(question):
        return None

    key = correct_answer_key(question)
    if key is None:
        # ungraded poll
        return None
    if answer is None:
        return False

    if question.type is QuestionType.SINGLE_CHOICE:
        return not isinstance(answer, bool) and answer == key

    if not isinstance(answer, (list, tuple)):
        return False

    if question.type is QuestionType.MULTI_SELECT:
        # exact set equality, no partial credit
        return len(answer) == len(key) and set(answer) == set(key)

    # ranking compares position by position
    return list(answer) == list(key)


def score(question: QuizQuestion, answer: Any, time_remaining: Optional[float]) -> int:
    if not is_correct(question, answer):
        return 0
    if not time_remaining or time_remaining <= 0:
        return 0
    points = math.floor(time_remaining * MAX_POINTS / question.time_limit)
    return max(0, min(MAX_POINTS, points))


def score_answer(question: QuizQuestion, answer: Optional[Answer]) -> int:
    if answer is None:
        return 0
    return score(question, answer.value, answer.time_left_at_answer)


def build_leaderboard(
    questions: Sequence[QuizQuestion],
    roster: Iterable[Participant],
    answers: Mapping[Tuple[str, str], Answer],
    revealed: Iterable[str],
    current_question: Optional[QuizQuestion] = None,
) -> List[LeaderboardEntry]:
    """Rank the roster by accumulated points over revealed questions.

    ``answers`` is keyed by ``(participant_id, question_id)``. Points for
    ``current_question`` are reported separately when it has been revealed.
    Ties keep roster order.
    """
    revealed_ids = set(revealed)
    scored_questions = [q for q in questions if q.id in revealed_ids and is_scored(q)]
    current_revealed = current_question is not None and current_question.id in revealed_ids

    entries: List[LeaderboardEntry] = []
    for participant in roster:
        totals: Dict[str, int] = {
            q.id: score_answer(q, answers.get((participant.id, q.id))) for q in scored_questions
        }
        earned = 0
        verdict: Optional[bool] = None
        if current_question is not None:
            own = answers.get((participant.id, current_question.id))
            if current_revealed:
                earned = totals.get(current_question.id, 0)
            verdict = is_correct(current_question, own.value if own else None)

        entries.append(
            LeaderboardEntry(
                id=participant.id,
                name=participant.name,
                avatar=participant.avatar,
                score=sum(totals.values()),
                points_earned=earned,
                correct=verdict,
            )
        )

    return sorted(entries, key=lambda e: -e.score)


def _percent(part: int, whole: int) -> float:
    return part * 100 / whole if whole else 0.0


def question_summary(question: QuizQuestion, answers: Iterable[Answer], roster_size: int) -> QuestionSummary:
    """Aggregate the answers to ``question`` for the host's results view.

    Choice questions tally how often each option was picked, ranking questions
    award ``len(options) - position`` consensus points per submission, scales
    report the mean and text questions list the submissions in arrival order.
    """
    answers = [a for a in answers if a.question_id == question.id]
    responses = len(answers)
    summary = QuestionSummary(
        question_id=question.id,
        type=question.type,
        responses=responses,
        roster_size=roster_size,
        response_rate=math.floor(_percent(responses, roster_size) + 0.5),
    )
    options = question.options or []

    if question.type in (QuestionType.SINGLE_CHOICE, QuestionType.MULTI_SELECT):
        tallies = []
        for index, label in enumerate(options):
            count = sum(
                1 for a in answers if (index in a.value if isinstance(a.value, list) else a.value == index)
            )
            tallies.append(OptionTally(index=index, label=label, count=count, percentage=_percent(count, responses)))
        summary.options = tallies

    elif question.type is QuestionType.RANKING:
        size = len(options)
        tallies = []
        for index, label in enumerate(options):
            positions = [a.value.index(index) for a in answers if isinstance(a.value, list) and index in a.value]
            tallies.append(
                OptionTally(
                    index=index,
                    label=label,
                    count=len(positions),
                    percentage=_percent(len(positions), responses),
                    points=sum(size - pos for pos in positions),
                )
            )
        summary.options = sorted(tallies, key=lambda t: -(t.points or 0))

    elif question.type is QuestionType.NUMERIC_SCALE:
        values = [a.value for a in answers if isinstance(a.value, (int, float)) and not isinstance(a.value, bool)]
        if values:
            summary.average = sum(values) / len(values)

    else:
        summary.texts = [
            TextResponse(
                participant_id=a.participant_id,
                participant_name=a.participant_name,
                text=str(a.value),
                timestamp=a.timestamp,
            )
            for a in answers
        ]

    return summary
