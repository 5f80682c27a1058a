import json
import os

import httpx
import openai
import pytest

from classifier.provider import (
    LabelScore,
    OpenAIClassifier,
    parse_classification_response,
)
from common.config import Settings
from common.errors import ServiceCallFailure


def create_mock_response(mocker, content):
    mock_choice = mocker.MagicMock()
    mock_choice.message.content = content
    mock_response = mocker.MagicMock()
    mock_response.choices = [mock_choice]
    return mock_response


def create_bad_request_error(message: str) -> openai.BadRequestError:
    response = httpx.Response(400, request=httpx.Request("POST", "https://example.com"))
    return openai.BadRequestError(message, response=response, body=None)


@pytest.fixture
def settings(mocker):
    mocker.patch.dict(
        os.environ,
        {
            "OBJECT_STORE_URL": "http://store:9000",
            "OUTPUT_BUCKET": "docs-out",
            "EXTRACTION_URL": "http://extraction:8080",
            "NOTIFICATION_TARGET": "arn:topic:completions",
            "NOTIFICATION_ROLE": "arn:role:publisher",
            "OPENAI_API_KEY": "test_api_key",
            "AI_MODELS": "classify-primary,classify-fallback",
        },
        clear=True,
    )
    return Settings()


def test_parse_classification_response_basic():
    raw = (
        '{"classes":[{"label":"payslip","score":0.2},'
        '{"label":"APPLICATION","score":0.92}]}'
    )

    result = parse_classification_response(raw)

    assert result == [
        LabelScore("APPLICATION", 0.92),
        LabelScore("PAYSLIP", 0.2),
    ]


def test_parse_classification_response_trims_surrounding_text():
    raw = 'Sure! ```json\n{"classes":[{"label":"BANK","score":0.4}]}\n```'

    assert parse_classification_response(raw) == [LabelScore("BANK", 0.4)]


def test_parse_classification_response_sanitizes_entries():
    raw = json.dumps(
        {
            "classes": [
                {"label": "BANK", "score": 1.7},
                {"label": "PAYSLIP", "score": -0.1},
                {"label": "", "score": 0.9},
                {"label": "APPLICATION", "score": "high"},
                {"label": "APPLICATION", "score": True},
                "garbage",
            ]
        }
    )

    assert parse_classification_response(raw) == [
        LabelScore("BANK", 1.0),
        LabelScore("PAYSLIP", 0.0),
    ]


def test_parse_classification_response_without_classes_is_empty():
    assert parse_classification_response("{}") == []


@pytest.mark.parametrize("raw", ["", "   ", "[1, 2]", '{"classes": "BANK"}'])
def test_parse_classification_response_rejects_invalid(raw):
    with pytest.raises(ValueError):
        parse_classification_response(raw)


def test_parse_classification_response_rejects_non_json():
    with pytest.raises(json.JSONDecodeError):
        parse_classification_response("no json here")


def test_classify_sends_candidate_labels(settings, mocker):
    create = mocker.patch("openai.chat.completions.create")
    create.return_value = create_mock_response(
        mocker, '{"classes":[{"label":"APPLICATION","score":0.92}]}'
    )

    result = OpenAIClassifier(settings).classify("Loan application form\n")

    assert result == [LabelScore("APPLICATION", 0.92)]
    user_content = create.call_args.kwargs["messages"][1]["content"]
    assert '["APPLICATION", "PAYSLIP", "BANK"]' in user_content
    assert "Loan application form" in user_content
    assert create.call_args.kwargs["model"] == "classify-primary"


def test_classify_falls_back_after_invalid_json(settings, mocker):
    create = mocker.patch("openai.chat.completions.create")
    create.side_effect = [
        create_mock_response(mocker, "I think it's a payslip"),
        create_mock_response(mocker, '{"classes":[{"label":"PAYSLIP","score":0.8}]}'),
    ]

    result = OpenAIClassifier(settings).classify("Net pay 1,234.00")

    assert result == [LabelScore("PAYSLIP", 0.8)]
    assert create.call_count == 2
    assert create.call_args.kwargs["model"] == "classify-fallback"


def test_classify_falls_back_after_api_error(settings, mocker):
    create = mocker.patch("openai.chat.completions.create")
    create.side_effect = [
        create_bad_request_error("unsupported model"),
        create_mock_response(mocker, '{"classes":[]}'),
    ]

    assert OpenAIClassifier(settings).classify("text") == []
    assert create.call_count == 2


def test_classify_all_models_fail_raises(settings, mocker):
    create = mocker.patch("openai.chat.completions.create")
    create.side_effect = create_bad_request_error("nope")

    with pytest.raises(ServiceCallFailure):
        OpenAIClassifier(settings).classify("text")
    assert create.call_count == 2


def test_classify_empty_text_skips_model(settings, mocker):
    create = mocker.patch("openai.chat.completions.create")

    assert OpenAIClassifier(settings).classify("  \n") == []
    create.assert_not_called()
