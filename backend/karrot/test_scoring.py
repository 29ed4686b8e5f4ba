from __future__ import annotations

from unittest import TestCase

from . import scoring
from .models import Answer, Participant, QuestionType, QuizQuestion


def _question(qtype: QuestionType, **fields) -> QuizQuestion:
    defaults = {"id": "q1", "type": qtype, "question": "Pick", "timeLimit": 20}
    if qtype in (QuestionType.SINGLE_CHOICE, QuestionType.MULTI_SELECT, QuestionType.RANKING):
        defaults["options"] = ["a", "b", "c", "d", "e"]
    defaults.update(fields)
    return QuizQuestion.model_validate(defaults)


def _answer(pid: str, qid: str, value, time_left: int) -> Answer:
    return Answer(
        participant_id=pid,
        participant_name=pid,
        question_id=qid,
        value=value,
        timestamp=0.0,
        time_left_at_answer=time_left,
    )


class ScoreTests(TestCase):
    def test_full_time_scores_maximum(self):
        q = _question(QuestionType.SINGLE_CHOICE, correctAnswer=1)
        self.assertEqual(scoring.score(q, 1, 20), scoring.MAX_POINTS)

    def test_zero_time_scores_nothing(self):
        q = _question(QuestionType.SINGLE_CHOICE, correctAnswer=1)
        self.assertEqual(scoring.score(q, 1, 0), 0)
        self.assertEqual(scoring.score(q, 1, None), 0)

    def test_points_are_floored_fraction_of_time_left(self):
        q = _question(QuestionType.SINGLE_CHOICE, correctAnswer=1)
        self.assertEqual(scoring.score(q, 1, 15), 750)
        self.assertEqual(scoring.score(q, 1, 7), 350)
        q30 = _question(QuestionType.SINGLE_CHOICE, correctAnswer=1, timeLimit=30)
        self.assertEqual(scoring.score(q30, 1, 10), 333)

    def test_time_left_above_limit_is_capped(self):
        q = _question(QuestionType.SINGLE_CHOICE, correctAnswer=1)
        self.assertEqual(scoring.score(q, 1, 40), scoring.MAX_POINTS)

    def test_wrong_answer_scores_nothing(self):
        q = _question(QuestionType.SINGLE_CHOICE, correctAnswer=1)
        self.assertEqual(scoring.score(q, 2, 20), 0)

    def test_multi_select_requires_exact_set(self):
        q = _question(QuestionType.MULTI_SELECT, correctAnswers=[0, 2, 4])
        self.assertFalse(scoring.is_correct(q, [0, 2]))
        self.assertEqual(scoring.score(q, [0, 2], 20), 0)
        self.assertTrue(scoring.is_correct(q, [4, 0, 2]))
        self.assertFalse(scoring.is_correct(q, [0, 2, 4, 1]))

    def test_ranking_compares_positions(self):
        q = _question(QuestionType.RANKING, correctOrder=[2, 0, 1, 4, 3])
        self.assertTrue(scoring.is_correct(q, [2, 0, 1, 4, 3]))
        self.assertFalse(scoring.is_correct(q, [0, 2, 1, 4, 3]))

    def test_ranking_without_key_uses_shown_order(self):
        q = _question(QuestionType.RANKING)
        self.assertEqual(scoring.correct_answer_key(q), [0, 1, 2, 3, 4])
        self.assertTrue(scoring.is_correct(q, [0, 1, 2, 3, 4]))

    def test_ungraded_choice_questions_have_no_verdict(self):
        poll = _question(QuestionType.SINGLE_CHOICE)
        self.assertIsNone(scoring.is_correct(poll, 0))
        self.assertIsNone(scoring.is_correct(poll, None))
        self.assertEqual(scoring.score(poll, 0, 20), 0)
        board = scoring.build_leaderboard([poll], [Participant(id="p", name="P")], {}, ["q1"], poll)
        self.assertIsNone(board[0].correct)

    def test_unscored_types_have_no_verdict(self):
        for qtype in (QuestionType.OPEN_TEXT, QuestionType.PHRASE_CLOUD, QuestionType.QA):
            q = _question(qtype)
            self.assertIsNone(scoring.is_correct(q, "anything"))
            self.assertEqual(scoring.score(q, "anything", 20), 0)
        scale = _question(QuestionType.NUMERIC_SCALE)
        self.assertIsNone(scoring.is_correct(scale, 5))
        self.assertIsNone(scoring.correct_answer_key(scale))


class LeaderboardTests(TestCase):
    def setUp(self) -> None:
        self.question = _question(QuestionType.SINGLE_CHOICE, correctAnswer=2)
        self.alice = Participant(id="p-a", name="Alice")
        self.bob = Participant(id="p-b", name="Bob")

    def test_correct_and_wrong_answers(self):
        answers = {
            ("p-a", "q1"): _answer("p-a", "q1", 2, 15),
            ("p-b", "q1"): _answer("p-b", "q1", 0, 18),
        }
        board = scoring.build_leaderboard([self.question], [self.alice, self.bob], answers, ["q1"], self.question)

        self.assertEqual([e.id for e in board], ["p-a", "p-b"])
        self.assertEqual([e.score for e in board], [750, 0])
        self.assertEqual(board[0].points_earned, 750)
        self.assertTrue(board[0].correct)
        self.assertFalse(board[1].correct)

    def test_unrevealed_questions_do_not_count(self):
        answers = {("p-a", "q1"): _answer("p-a", "q1", 2, 15)}
        board = scoring.build_leaderboard([self.question], [self.alice], answers, [], self.question)
        self.assertEqual(board[0].score, 0)
        self.assertEqual(board[0].points_earned, 0)

    def test_ties_keep_roster_order(self):
        board = scoring.build_leaderboard([self.question], [self.bob, self.alice], {}, ["q1"], self.question)
        self.assertEqual([e.id for e in board], ["p-b", "p-a"])

    def test_non_answer_is_not_correct(self):
        board = scoring.build_leaderboard([self.question], [self.alice], {}, ["q1"], self.question)
        self.assertFalse(board[0].correct)
        self.assertEqual(board[0].to_wire()["pointsEarned"], 0)

    def test_total_order_with_mixed_ties(self):
        carl = Participant(id="p-c", name="Carl")
        dana = Participant(id="p-d", name="Dana")
        answers = {
            ("p-a", "q1"): _answer("p-a", "q1", 2, 15),
            ("p-b", "q1"): _answer("p-b", "q1", 2, 15),
            ("p-c", "q1"): _answer("p-c", "q1", 0, 20),
            ("p-d", "q1"): _answer("p-d", "q1", 2, 20),
        }
        roster = [carl, self.bob, self.alice, dana]
        board = scoring.build_leaderboard([self.question], roster, answers, ["q1"], self.question)

        self.assertEqual([e.id for e in board], ["p-d", "p-b", "p-a", "p-c"])
        self.assertEqual([e.score for e in board], [1000, 750, 750, 0])


class QuestionSummaryTests(TestCase):
    def test_single_choice_counts_and_response_rate(self):
        q = _question(QuestionType.SINGLE_CHOICE, correctAnswer=2)
        answers = [_answer("a", "q1", 2, 10), _answer("b", "q1", 2, 10), _answer("c", "q1", 0, 10)]
        summary = scoring.question_summary(q, answers, roster_size=4)

        self.assertEqual(summary.responses, 3)
        self.assertEqual(summary.response_rate, 75)
        self.assertEqual([t.count for t in summary.options], [1, 0, 2, 0, 0])
        self.assertAlmostEqual(summary.options[2].percentage, 200 / 3)
        self.assertIsNone(summary.average)
        self.assertIsNone(summary.texts)

    def test_multi_select_counts_every_pick(self):
        q = _question(QuestionType.MULTI_SELECT, correctAnswers=[0, 2])
        summary = scoring.question_summary(q, [_answer("a", "q1", [0, 2], 5), _answer("b", "q1", [2], 5)], 2)
        self.assertEqual([t.count for t in summary.options], [1, 0, 2, 0, 0])
        self.assertEqual([t.percentage for t in summary.options[:3]], [50.0, 0.0, 100.0])

    def test_ranking_consensus_points(self):
        q = _question(QuestionType.RANKING, options=["x", "y", "z"])
        answers = [_answer("a", "q1", [2, 0, 1], 5), _answer("b", "q1", [0, 2, 1], 5)]
        summary = scoring.question_summary(q, answers, 2)

        self.assertEqual([(t.label, t.points) for t in summary.options], [("x", 5), ("z", 5), ("y", 2)])

    def test_scale_average(self):
        q = _question(QuestionType.NUMERIC_SCALE)
        summary = scoring.question_summary(q, [_answer("a", "q1", 3, 5), _answer("b", "q1", 8, 5)], 3)
        self.assertEqual(summary.average, 5.5)
        self.assertEqual(summary.response_rate, 67)
        self.assertIsNone(scoring.question_summary(q, [], 3).average)

    def test_text_answers_are_listed_in_arrival_order(self):
        q = _question(QuestionType.PHRASE_CLOUD)
        answers = [_answer("a", "q1", "fast", 5), _answer("b", "q1", "fun", 5), _answer("c", "q2", "other", 5)]
        summary = scoring.question_summary(q, answers, 0)

        self.assertEqual([(r.participant_name, r.text) for r in summary.texts], [("a", "fast"), ("b", "fun")])
        self.assertEqual(summary.responses, 2)
        self.assertEqual(summary.response_rate, 0)
        self.assertIsNone(summary.options)
        self.assertEqual(summary.to_wire()["texts"][0]["participantName"], "a")
