"""
Label classifier.

Wraps the generative model with a bounded parse-and-retry loop. The model
is asked for one JSON line ``{"labels": [...]}``; anything that cannot be
parsed into that shape counts as a failed attempt.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Protocol

from backend.core.prompts import LABEL_VOCABULARY, LABELS_SYSTEM_PROMPT, build_label_user_prompt

logger = logging.getLogger(__name__)

JSON_OBJECT_PATTERN = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```|(\{[\s\S]*?\})")
DEFAULT_MAX_ATTEMPTS = 5


class TextGenerator(Protocol):
    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        ...


class LabelClassificationError(Exception):
    """Raised when every attempt returned malformed output."""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


class LabelParseError(ValueError):
    pass


@dataclass
class ClassificationResult:
    """Ok(labels) when ``error`` is None, otherwise the parse failure."""
    labels: List[str] = field(default_factory=list)
    attempts: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_labels_response(text: Optional[str], vocabulary: Iterable[str] = LABEL_VOCABULARY) -> List[str]:
    """
    Extract the label list from a model response.

    Accepts fenced (```json ... ```) or bare JSON objects. Labels outside
    the vocabulary are dropped; a response whose object has no ``labels``
    list is malformed.

    Raises:
        LabelParseError: No parseable ``{"labels": [...]}`` object found
    """
    if not text:
        raise LabelParseError("empty response")

    match = JSON_OBJECT_PATTERN.search(text)
    if not match:
        raise LabelParseError("no JSON object in response")

    raw = match.group(1) or match.group(2)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise LabelParseError(f"invalid JSON: {e}")

    labels = data.get("labels") if isinstance(data, dict) else None
    if not isinstance(labels, list) or not all(isinstance(label, str) for label in labels):
        raise LabelParseError("missing 'labels' string array")

    allowed = set(vocabulary)
    result: List[str] = []
    for label in labels:
        normalized = label.strip().lower()
        if normalized in allowed and normalized not in result:
            result.append(normalized)
        elif normalized not in allowed:
            logger.debug(f"Dropping out-of-vocabulary label: {label}")
    return result


class LabelClassifier:
    """Per-message semantic labeling with a fixed attempt budget."""

    def __init__(
        self,
        generator: TextGenerator,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        system_prompt: str = LABELS_SYSTEM_PROMPT,
    ):
        self.generator = generator
        self.max_attempts = max(1, max_attempts)
        self.system_prompt = system_prompt

    async def try_classify(self, subject: str, body: str) -> ClassificationResult:
        """
        Classify one message without raising on malformed output.

        Transport errors from the generator propagate unchanged; only
        unparseable responses are retried.
        """
        user_prompt = build_label_user_prompt(subject, body)
        last_error = None

        for attempt in range(1, self.max_attempts + 1):
            output = await self.generator.generate(self.system_prompt, user_prompt)
            try:
                labels = parse_labels_response(output)
                return ClassificationResult(labels=labels, attempts=attempt)
            except LabelParseError as e:
                last_error = str(e)
                logger.debug(f"Label attempt {attempt}/{self.max_attempts} unparseable: {e}")

        return ClassificationResult(attempts=self.max_attempts, error=last_error)

    async def classify(self, subject: str, body: str) -> List[str]:
        """
        Classify one message.

        Raises:
            LabelClassificationError: All attempts returned malformed output
        """
        result = await self.try_classify(subject, body)
        if not result.ok:
            raise LabelClassificationError(
                f"No valid labels after {result.attempts} attempts: {result.error}",
                attempts=result.attempts,
            )
        return result.labels
