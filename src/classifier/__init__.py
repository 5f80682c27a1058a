"""
Classification domain package.

This package contains:

- the classifier provider (prompt + parsing + LLM calls)
- the classification stage that turns one trigger into one label decision
"""

from .provider import (
    ClassifierProvider,
    LabelScore,
    OpenAIClassifier,
    parse_classification_response,
)
from .stage import (
    ClassificationResult,
    ClassificationStage,
    DocumentType,
    decide_label,
)

__all__ = [
    "ClassificationResult",
    "ClassificationStage",
    "ClassifierProvider",
    "DocumentType",
    "LabelScore",
    "OpenAIClassifier",
    "decide_label",
    "parse_classification_response",
]
