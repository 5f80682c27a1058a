"""
OCR domain package.

This package contains:

- the OCR provider abstraction and the OpenAI-compatible implementation
- first-page rendering of paginated documents for classification
"""

from .provider import OcrProvider, OpenAIProvider, TextBlock, to_plain_text
from .render import prepare_sample, render_first_page

__all__ = [
    "OcrProvider",
    "OpenAIProvider",
    "TextBlock",
    "prepare_sample",
    "render_first_page",
    "to_plain_text",
]
