"""One-time option shuffling for ranking questions."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .models import QuestionType, Quiz, QuizQuestion

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RankingShuffle:
    """Result of shuffling one ranking question.

    ``permutation[p]`` is the authored index shown at display position ``p``;
    ``correct_order[i]`` is the display position of the authored rank-``i`` item.
    """

    permutation: List[int]
    options: List[str]
    correct_order: List[int]


def shuffle_ranking(
    options: Sequence[str],
    authored_key: Optional[Sequence[int]] = None,
    rng: Optional[random.Random] = None,
) -> RankingShuffle:
    rng = rng or random.Random()
    permutation = list(range(len(options)))
    rng.shuffle(permutation)  # Fisher-Yates

    key = list(authored_key) if authored_key is not None else list(range(len(options)))
    position_of = {authored: shown for shown, authored in enumerate(permutation)}

    return RankingShuffle(
        permutation=permutation,
        options=[options[i] for i in permutation],
        correct_order=[position_of[authored] for authored in key],
    )


def shuffle_question(question: QuizQuestion, rng: Optional[random.Random] = None) -> QuizQuestion:
    if question.type is not QuestionType.RANKING:
        return question
    result = shuffle_ranking(question.options or [], question.correct_order, rng)
    return question.model_copy(update={"options": result.options, "correct_order": result.correct_order})


def prepare_quiz(quiz: Quiz, rng: Optional[random.Random] = None) -> Quiz:
    """Return a copy of ``quiz`` with every ranking question shuffled once."""
    rng = rng or random.Random()
    questions = [shuffle_question(q, rng) for q in quiz.questions]
    shuffled = sum(1 for q in quiz.questions if q.type is QuestionType.RANKING)
    if shuffled:
        logger.debug("Shuffled %d ranking question(s) for '%s'", shuffled, quiz.title)
    return quiz.model_copy(update={"questions": questions})
