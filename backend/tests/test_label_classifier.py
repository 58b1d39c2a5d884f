"""Tests for label parsing and the classifier retry budget."""

import pytest

from backend.core.prompts import LABEL_VOCABULARY, build_label_user_prompt
from backend.services.label_classifier import (
    LabelClassificationError,
    LabelClassifier,
    LabelParseError,
    parse_labels_response,
)
from backend.tests.fakes import FakeGenerator


class SequenceGenerator:
    """Returns queued outputs in order, then repeats the last one."""

    def __init__(self, outputs):
        self.outputs = list(outputs)
        self.calls = 0

    async def generate(self, system_prompt, user_prompt):
        self.calls += 1
        if len(self.outputs) > 1:
            return self.outputs.pop(0)
        return self.outputs[0]


class TestParseLabelsResponse:
    def test_bare_json(self):
        assert parse_labels_response('{"labels": ["meeting", "important"]}') == ["meeting", "important"]

    def test_fenced_json_with_prose(self):
        text = 'Sure!\n```json\n{"labels": ["invoice"]}\n```\nHope that helps.'
        assert parse_labels_response(text) == ["invoice"]

    def test_normalizes_and_dedupes(self):
        assert parse_labels_response('{"labels": ["GitHub", " github ", "News"]}') == ["github", "news"]

    def test_drops_unknown_labels(self):
        assert parse_labels_response('{"labels": ["meeting", "travel"]}') == ["meeting"]

    def test_empty_list_is_valid(self):
        assert parse_labels_response('{"labels": []}') == []

    @pytest.mark.parametrize("text", [
        "",
        None,
        "no json here",
        '{"labels": "meeting"}',
        '{"tags": ["meeting"]}',
        '{"labels": [1, 2]}',
        "{labels: [meeting]}",
    ])
    def test_malformed(self, text):
        with pytest.raises(LabelParseError):
            parse_labels_response(text)

    def test_vocabulary(self):
        assert len(LABEL_VOCABULARY) == 9
        assert "important" in LABEL_VOCABULARY


class TestUserPrompt:
    def test_placeholders_for_missing_parts(self):
        assert build_label_user_prompt("", "") == "email: (No Subject) [non-text]"

    def test_subject_and_body(self):
        assert build_label_user_prompt("Standup", "at 10am") == "email: Standup at 10am"


class TestLabelClassifier:
    @pytest.mark.asyncio
    async def test_first_attempt_success(self):
        generator = FakeGenerator(default='{"labels": ["meeting"]}')
        classifier = LabelClassifier(generator)

        labels = await classifier.classify("Standup", "Tomorrow at 10")

        assert labels == ["meeting"]
        assert len(generator.calls) == 1

    @pytest.mark.asyncio
    async def test_retries_until_parseable(self):
        generator = SequenceGenerator(["nope", "still nope", '{"labels": ["pitch"]}'])
        classifier = LabelClassifier(generator, max_attempts=5)

        result = await classifier.try_classify("Partnership", "Let's work together")

        assert result.ok
        assert result.labels == ["pitch"]
        assert result.attempts == 3
        assert generator.calls == 3

    @pytest.mark.asyncio
    async def test_budget_exhausted(self):
        generator = SequenceGenerator(["garbage"])
        classifier = LabelClassifier(generator, max_attempts=5)

        with pytest.raises(LabelClassificationError) as exc_info:
            await classifier.classify("Broken", "body")

        assert exc_info.value.attempts == 5
        assert generator.calls == 5

    @pytest.mark.asyncio
    async def test_transport_errors_propagate_without_retry(self):
        class FailingGenerator:
            calls = 0

            async def generate(self, system_prompt, user_prompt):
                FailingGenerator.calls += 1
                raise ConnectionError("LLM down")

        classifier = LabelClassifier(FailingGenerator())

        with pytest.raises(ConnectionError):
            await classifier.classify("Hi", "there")
        assert FailingGenerator.calls == 1
