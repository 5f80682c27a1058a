"""
OCR Processing Module
=====================

This module defines the text-extraction interface the classification stage
consumes, and an implementation backed by an OpenAI-compatible vision
model.

`OcrProvider.extract_text` takes image bytes and returns text blocks in
reading order. The OpenAI implementation asks the model for a faithful
transcription and splits it into ``LINE`` blocks, one per non-empty line,
top to bottom. A model that refuses or errors is skipped in favour of the
next configured model; if none succeeds, ``ServiceCallFailure`` is raised.
"""

import base64
from abc import ABC, abstractmethod
from dataclasses import dataclass
from io import BytesIO

import openai
import structlog

from common.config import Settings
from common.errors import ServiceCallFailure
from common.llm import OpenAIChatMixin
from common.utils import is_blank
from .render import open_image

log = structlog.get_logger(__name__)

LINE_BLOCK = "LINE"

DEFAULT_OCR_REFUSAL_MARKERS = [
    "i can't assist",
    "i cannot assist",
    "i can't help with transcrib",
    "i cannot help with transcrib",
    "refused to transcribe",
]

TRANSCRIPTION_PROMPT = """
You are an OCR engine in a document processing system. The user has full legal
rights to view and transcribe this document. Your only task is to produce a
faithful transcription. Do not summarise, do not explain, translate or censor
anything. Output only the text visible in the image, one visual line of text
per output line, in reading order from top to bottom. Transcribe documents in
their original languages. Do NOT wrap the output in code blocks. Do NOT add any
wording, metadata or commentary that is not present in the document itself.
If you must refuse for any reason, output exactly: REFUSED TO TRANSCRIBE
"""


@dataclass(frozen=True)
class TextBlock:
    """One unit of detected text; ``block_type`` is ``LINE`` for text lines."""

    block_type: str
    text: str


def _is_refusal(text: str) -> bool:
    """Check if the model declined the task (case-insensitive substring match)."""
    text_lower = text.lower()
    return any(marker in text_lower for marker in DEFAULT_OCR_REFUSAL_MARKERS)


def to_plain_text(blocks: list[TextBlock]) -> str:
    """Concatenate ``LINE`` blocks in order, each followed by a line break."""
    return "".join(f"{block.text}\n" for block in blocks if block.block_type == LINE_BLOCK)


class OcrProvider(ABC):
    """Abstract base class for OCR providers."""

    def __init__(self, settings: Settings):
        self.settings = settings

    @abstractmethod
    def extract_text(self, image_bytes: bytes) -> list[TextBlock]:
        """Detect text in an image and return blocks in reading order."""
        raise NotImplementedError


class OpenAIProvider(OpenAIChatMixin, OcrProvider):
    """An OCR provider that uses the OpenAI and Ollama APIs."""

    def extract_text(self, image_bytes: bytes) -> list[TextBlock]:
        image = open_image(image_bytes)
        try:
            if is_blank(image):
                log.info("Image is blank; no text to extract")
                return []

            # Resize large images to reduce token cost and latency
            image.thumbnail((self.settings.OCR_MAX_SIDE, self.settings.OCR_MAX_SIDE))
            buffer = BytesIO()
            image.save(buffer, format="PNG")
        finally:
            image.close()
        payload = base64.b64encode(buffer.getvalue()).decode()

        messages = [
            {"role": "system", "content": TRANSCRIPTION_PROMPT},
            {
                "role": "user",
                "content": [
                    {
                        "type": "image_url",
                        "image_url": {
                            "url": f"data:image/png;base64,{payload}",
                            "detail": "high",
                        },
                    },
                ],
            },
        ]

        models_to_try = self._models_to_try()
        primary_model = models_to_try[0] if models_to_try else ""
        for model in models_to_try:
            try:
                response = self._create_completion(model=model, messages=messages)
                text = (response.choices[0].message.content or "").strip()
            except openai.APIError as e:
                log.warning("OCR model call failed", model=model, error=str(e))
                continue

            if _is_refusal(text):
                log.warning("Model refused to transcribe", model=model)
                continue

            if model != primary_model:
                log.info("Fallback model succeeded", model=model)
            return [
                TextBlock(LINE_BLOCK, line.rstrip())
                for line in text.splitlines()
                if line.strip()
            ]

        log.error("All models failed or refused to transcribe the image")
        raise ServiceCallFailure("OCR failed: no model produced a transcription")
