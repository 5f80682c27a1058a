"""
Document Classification Module
==============================

This module handles document-type scoring using a text-only LLM prompt.
It provides a parsing layer that validates the JSON response into a
ranked list of (label, score) pairs, and a provider class the
classification stage calls.

The provider only scores. Choosing a label (threshold, fallback to
``UNKNOWN``) is the classification stage's decision.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass

import openai
import structlog

from common.config import Settings
from common.errors import ServiceCallFailure
from common.llm import OpenAIChatMixin

log = structlog.get_logger(__name__)

CLASSIFICATION_PROMPT = """
You are a document classifier in an automated pipeline.

You will be given the plain text of the first page of a document and a list
of candidate document types. Score how well the document matches each
candidate type.

- Always reply only with a single, valid JSON object that matches the schema
  below. Do not wrap it in markdown or add explanations.
- Use only labels from the candidate list, spelled exactly as given.
- Scores are numbers between 0 and 1. Scores across all labels should sum
  to at most 1.

----------  JSON schema  ----------
{
  "classes": [
    {"label": string, "score": number}
  ]
}
-----------------------------------
""".strip()


@dataclass(frozen=True)
class LabelScore:
    label: str
    score: float


def _extract_json(text: str) -> dict:
    """Parse JSON from raw model output, trimming surrounding text if needed."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end == -1 or end <= start:
            raise
        return json.loads(text[start : end + 1])


def parse_classification_response(text: str) -> list[LabelScore]:
    """
    Parse and sanitize the classification response.

    Returns the classes sorted best match first. Entries without a label or
    with a non-numeric score are dropped; scores are clamped to [0, 1].
    """
    raw = text.strip()
    if not raw:
        raise ValueError("Classification response is empty.")

    data = _extract_json(raw)
    if not isinstance(data, dict):
        raise ValueError("Classification response is not a JSON object.")

    classes = data.get("classes", [])
    if not isinstance(classes, list):
        raise ValueError("Classification response 'classes' is not a list.")

    ranked = []
    for entry in classes:
        if not isinstance(entry, dict):
            continue
        label = str(entry.get("label") or "").strip().upper()
        score = entry.get("score")
        if not label or isinstance(score, bool) or not isinstance(score, (int, float)):
            continue
        ranked.append(LabelScore(label=label, score=min(1.0, max(0.0, float(score)))))

    ranked.sort(key=lambda item: item.score, reverse=True)
    return ranked


class ClassifierProvider(ABC):
    """Scores plain text against document-type labels."""

    @abstractmethod
    def classify(self, text: str) -> list[LabelScore]:
        """Return (label, score) pairs, best match first."""
        raise NotImplementedError


class OpenAIClassifier(OpenAIChatMixin, ClassifierProvider):
    """
    Classification provider that uses OpenAI-compatible chat completions.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def classify(self, text: str) -> list[LabelScore]:
        if not text.strip():
            log.warning("Document text is empty; nothing to classify")
            return []

        user_content = (
            "Candidate document types:\n"
            f"{json.dumps(self.settings.CLASSIFY_LABELS, ensure_ascii=True)}\n\n"
            "Document text:\n"
            f"{text}"
        )
        messages = [
            {"role": "system", "content": CLASSIFICATION_PROMPT},
            {"role": "user", "content": user_content},
        ]

        for model in self._models_to_try():
            try:
                response = self._create_completion(model=model, messages=messages)
                content = response.choices[0].message.content or ""
                ranked = parse_classification_response(content)
            except (json.JSONDecodeError, ValueError) as e:
                log.warning("Classification response invalid", model=model, error=str(e))
                continue
            except openai.APIError as e:
                log.warning("Classification model failed", model=model, error=str(e))
                continue

            log.info(
                "Classified text",
                model=model,
                top_label=ranked[0].label if ranked else None,
                top_score=ranked[0].score if ranked else None,
            )
            return ranked

        log.error("All classification models failed")
        raise ServiceCallFailure("Classifier failed: no model returned a valid response")
