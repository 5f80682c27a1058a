from unittest.mock import MagicMock

import pytest

from classifier.provider import LabelScore
from classifier.stage import (
    ClassificationResult,
    ClassificationStage,
    DocumentType,
    decide_label,
)
from common.errors import ObjectNotFound, StorageFetchFailure, StoreError
from common.models import DocumentReference, TriggerRecord
from ocr.provider import LINE_BLOCK, TextBlock


def record(key, bucket="docs-in", version=None, request_id="REQ1"):
    return TriggerRecord(DocumentReference(bucket, key, version), request_id)


@pytest.fixture
def object_store():
    store = MagicMock()
    store.get.return_value = b"image-bytes"
    return store


@pytest.fixture
def ocr_provider():
    provider = MagicMock()
    provider.extract_text.return_value = [
        TextBlock(LINE_BLOCK, "Monthly statement"),
        TextBlock(LINE_BLOCK, "Balance 100.00"),
    ]
    return provider


@pytest.fixture
def classifier():
    provider = MagicMock()
    provider.classify.return_value = [LabelScore("BANK", 0.81)]
    return provider


@pytest.fixture
def stage(object_store, ocr_provider, classifier, mocker):
    mocker.patch("classifier.stage.prepare_sample", side_effect=lambda content, ext: content)
    return ClassificationStage(object_store, ocr_provider, classifier)


@pytest.mark.parametrize(
    "ranked, expected",
    [
        ([LabelScore("APPLICATION", 0.92)], ClassificationResult("APPLICATION", 0.92)),
        ([LabelScore("BANK", 0.51), LabelScore("PAYSLIP", 0.3)], ClassificationResult("BANK", 0.51)),
        ([LabelScore("BANK", 0.5)], ClassificationResult("UNKNOWN", 0.5)),
        ([LabelScore("BANK", 0.40)], ClassificationResult("UNKNOWN", 0.40)),
        ([LabelScore("INVOICE", 0.99)], ClassificationResult("INVOICE", 0.99)),
        ([], ClassificationResult("UNKNOWN", 0.0)),
    ],
)
def test_decide_label_threshold(ranked, expected):
    assert decide_label(ranked) == expected


@pytest.mark.parametrize("score", [0.0, 0.25, 0.5, 0.500001, 0.75, 1.0])
def test_decide_label_returns_top_label_only_above_threshold(score):
    result = decide_label([LabelScore("PAYSLIP", score)])

    if score > 0.5:
        assert result.label == "PAYSLIP"
    else:
        assert result.label == DocumentType.UNKNOWN.value


def test_classify_runs_fetch_ocr_and_classifier(stage, object_store, ocr_provider, classifier):
    result = stage.classify([record("statements/march.png", version="v3")])

    assert result == ClassificationResult("BANK", 0.81)
    object_store.get.assert_called_once_with("docs-in", "statements/march.png", "v3")
    ocr_provider.extract_text.assert_called_once_with(b"image-bytes")
    classifier.classify.assert_called_once_with("Monthly statement\nBalance 100.00\n")


def test_classify_low_confidence_bank_is_unknown(stage, classifier):
    classifier.classify.return_value = [LabelScore("BANK", 0.40)]

    result = stage.classify([record("statement.pdf")])

    assert result.label == "UNKNOWN"
    assert result.to_dict() == {"documentClassification": "UNKNOWN", "confidence": 0.40}


def test_classify_without_supported_record_is_unsupported(stage, object_store):
    result = stage.classify([record("notes.txt"), record("archive.zip")])

    assert result == ClassificationResult("UNSUPPORTED", 0.0)
    object_store.get.assert_not_called()


def test_classify_empty_batch_is_unsupported(stage):
    assert stage.classify([]).label == "UNSUPPORTED"


def test_classify_uses_first_supported_record_only(stage, object_store, classifier):
    result = stage.classify(
        [record("notes.txt"), record("a.jpg"), record("b.pdf"), record("c.png")]
    )

    assert result.label == "BANK"
    object_store.get.assert_called_once_with("docs-in", "a.jpg", None)
    classifier.classify.assert_called_once()


def test_classify_missing_object_raises_storage_fetch_failure(stage, object_store):
    object_store.get.side_effect = ObjectNotFound("gone")

    with pytest.raises(StorageFetchFailure, match="docs-in/a.pdf"):
        stage.classify([record("a.pdf")])


def test_classify_store_outage_raises_storage_fetch_failure(stage, object_store):
    object_store.get.side_effect = StoreError("HTTP 503")

    with pytest.raises(StorageFetchFailure, match="HTTP 503"):
        stage.classify([record("a.pdf")])
