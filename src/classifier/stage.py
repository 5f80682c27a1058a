"""
Classification Stage
====================

The synchronous first step of every workflow: decide what kind of
document a trigger carries.

Only the first supported record in a trigger is classified; the stage
returns one decision per invocation and logs any later records it ignores.
For that record the stage fetches the object, renders a sample image
(first page of a PDF, or the image itself), extracts text, scores the text,
and applies the threshold rule in ``decide_label``.

Errors are not retried here. Storage errors become ``StorageFetchFailure``;
render, OCR and classifier errors propagate unchanged for the workflow
engine to retry.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

import structlog

from common.errors import ObjectNotFound, StorageFetchFailure, StoreError
from common.models import TriggerRecord, first_supported, get_extension
from common.storage import ObjectStore
from ocr.provider import OcrProvider, to_plain_text
from ocr.render import prepare_sample
from .provider import ClassifierProvider, LabelScore

log = structlog.get_logger(__name__)

CONFIDENCE_THRESHOLD = 0.5
OUTPUT_KEY = "documentClassification"


class DocumentType(str, enum.Enum):
    # Labels produced by the classifier model
    APPLICATION = "APPLICATION"
    PAYSLIP = "PAYSLIP"
    BANK = "BANK"
    # Decisions made by the stage itself
    UNKNOWN = "UNKNOWN"
    UNSUPPORTED = "UNSUPPORTED"


@dataclass(frozen=True)
class ClassificationResult:
    # Plain str, not DocumentType: the classifier may return other labels.
    label: str
    confidence: float

    def to_dict(self) -> dict:
        return {OUTPUT_KEY: self.label, "confidence": self.confidence}


def decide_label(ranked: list[LabelScore]) -> ClassificationResult:
    """Top label if its score exceeds the threshold, otherwise ``UNKNOWN``."""
    if ranked and ranked[0].score > CONFIDENCE_THRESHOLD:
        return ClassificationResult(label=ranked[0].label, confidence=ranked[0].score)
    confidence = ranked[0].score if ranked else 0.0
    return ClassificationResult(label=DocumentType.UNKNOWN.value, confidence=confidence)


class ClassificationStage:
    """Classifies the first supported document of a trigger."""

    def __init__(
        self,
        object_store: ObjectStore,
        ocr_provider: OcrProvider,
        classifier: ClassifierProvider,
    ):
        self.object_store = object_store
        self.ocr_provider = ocr_provider
        self.classifier = classifier

    def classify(self, records: list[TriggerRecord]) -> ClassificationResult:
        record = first_supported(records)
        if record is None:
            log.info("No supported document in trigger", record_count=len(records))
            return ClassificationResult(
                label=DocumentType.UNSUPPORTED.value, confidence=0.0
            )

        ignored = len(records) - records.index(record) - 1
        if ignored:
            log.info(
                "Classifying first supported document only",
                key=record.document.key,
                ignored_records=ignored,
            )

        document = record.document
        try:
            content = self.object_store.get(
                document.bucket, document.key, document.version
            )
        except ObjectNotFound as e:
            raise StorageFetchFailure(
                f"Source object not found: {document.bucket}/{document.key}"
            ) from e
        except StoreError as e:
            raise StorageFetchFailure(str(e)) from e

        sample = prepare_sample(content, get_extension(document.key))
        blocks = self.ocr_provider.extract_text(sample)
        text = to_plain_text(blocks)
        ranked = self.classifier.classify(text)
        result = decide_label(ranked)

        log.info(
            "Classified document",
            bucket=document.bucket,
            key=document.key,
            label=result.label,
            confidence=result.confidence,
            line_count=len(blocks),
        )
        return result
