from __future__ import annotations

import io
import tempfile
from contextlib import redirect_stdout
from pathlib import Path
from unittest import TestCase

from . import cli
from .models import OptionTally, QuestionSummary, QuestionType, QuizQuestion, TextResponse
from .storage import TEMPLATE_FILENAME


class ParseAnswerTextTests(TestCase):
    def test_shapes_follow_question_type(self):
        choice = QuizQuestion.model_validate({"id": "a", "type": "multiple-choice", "question": "?", "options": ["x", "y"]})
        ranking = QuizQuestion.model_validate({"id": "b", "type": "ranking", "question": "?", "options": ["x", "y", "z"]})
        scale = QuizQuestion.model_validate({"id": "c", "type": "scales", "question": "?"})

        self.assertEqual(cli.parse_answer_text(choice, " 1 "), 1)
        self.assertEqual(cli.parse_answer_text(ranking, "2, 0 1"), [2, 0, 1])
        self.assertEqual(cli.parse_answer_text(scale, "7.0"), 7)
        with self.assertRaises(ValueError):
            cli.parse_answer_text(choice, "first")


class FormatSummaryTests(TestCase):
    def test_choice_lines(self):
        summary = QuestionSummary(
            question_id="q1",
            type=QuestionType.SINGLE_CHOICE,
            responses=2,
            roster_size=3,
            response_rate=67,
            options=[OptionTally(index=0, label="Paris", count=2, percentage=100.0)],
        )
        self.assertEqual(cli.format_summary(summary), ["2/3 answered (67%)", "  [0] Paris: 2 (100%)"])

    def test_ranking_and_text_lines(self):
        ranking = QuestionSummary(
            question_id="q2",
            type=QuestionType.RANKING,
            options=[OptionTally(index=1, label="Oslo", points=6), OptionTally(index=0, label="Rome", points=3)],
        )
        self.assertEqual(cli.format_summary(ranking)[1:], ["  1. Oslo: 6 points", "  2. Rome: 3 points"])

        text = QuestionSummary(
            question_id="q3",
            type=QuestionType.QA,
            responses=1,
            texts=[TextResponse(participant_id="p", participant_name="Ann", text="Why?", timestamp=0.0)],
        )
        self.assertEqual(cli.format_summary(text)[1:], ["  Ann: Why?"])

        scale = QuestionSummary(question_id="q4", type=QuestionType.NUMERIC_SCALE)
        self.assertEqual(cli.format_summary(scale)[1:], ["  average: -"])


class TemplateCommandTests(TestCase):
    def test_writes_template_into_directory(self):
        with tempfile.TemporaryDirectory() as tmp, redirect_stdout(io.StringIO()) as out:
            code = cli.main(["template", tmp])
            self.assertTrue((Path(tmp) / TEMPLATE_FILENAME).exists())

        self.assertEqual(code, 0)
        self.assertIn(TEMPLATE_FILENAME, out.getvalue())
