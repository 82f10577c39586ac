"""Unit tests for the relevance gate."""

from unittest.mock import MagicMock

import pytest

from tabular_rag.rag.deadline import CallRunner, Deadline
from tabular_rag.rag.relevance import RelevanceGate, parse_verdict


class TestParseVerdict:
    @pytest.mark.parametrize("text", ["NO", "no", "No.", "  NO\n", "NO, unrelated"])
    def test_explicit_no(self, text):
        assert parse_verdict(text) is False

    @pytest.mark.parametrize(
        "text", ["YES", "yes.", "", "   ", "Maybe", "NOT SURE", "Nothing", "I think NO"]
    )
    def test_anything_else_is_yes(self, text):
        assert parse_verdict(text) is True


class TestRelevanceGate:
    def setup_method(self):
        self.runner = CallRunner()
        self.generator = MagicMock()

    def teardown_method(self):
        self.runner.close()

    def test_prompt_contains_question(self):
        gate = RelevanceGate(self.generator, self.runner)
        prompt = gate.build_prompt("What is the average age?")
        assert "Question: What is the average age?" in prompt

    def test_out_of_domain(self):
        self.generator.complete.return_value = "NO"
        gate = RelevanceGate(self.generator, self.runner)

        assert gate.is_in_domain("What's the weather in Paris?", Deadline(5)) is False
        _, kwargs = self.generator.complete.call_args
        assert kwargs["temperature"] == 0.0

    def test_in_domain(self):
        self.generator.complete.return_value = "YES"
        gate = RelevanceGate(self.generator, self.runner)
        assert gate.is_in_domain("How many rows are there?", Deadline(5)) is True
