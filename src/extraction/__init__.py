"""
Extraction domain package.

This package contains:

- the extraction service interface and its HTTP client
- the dispatch stage that stores the resumption handle and starts the job
"""

from .dispatch import DispatchStage, idempotency_key
from .service import (
    ExtractionService,
    FeatureSet,
    HttpExtractionService,
    NotificationTarget,
    OutputTarget,
)

__all__ = [
    "DispatchStage",
    "ExtractionService",
    "FeatureSet",
    "HttpExtractionService",
    "NotificationTarget",
    "OutputTarget",
    "idempotency_key",
]
