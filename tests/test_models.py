import pytest

from common.errors import InvalidEvent
from common.models import (
    DocumentReference,
    TriggerRecord,
    first_supported,
    get_extension,
    is_supported,
    parse_trigger_event,
)


def make_record(key, bucket="docs-in", request_id="REQ1", version=None):
    obj = {"key": key}
    if version:
        obj["versionId"] = version
    return {
        "responseElements": {"x-amz-request-id": request_id},
        "s3": {"bucket": {"name": bucket}, "object": obj},
    }


def test_parse_trigger_event_reads_records():
    envelope = {
        "Records": [
            make_record("forms/app1.pdf", version="v1"),
            make_record("scan.png", request_id="REQ2"),
        ]
    }

    records = parse_trigger_event(envelope)

    assert records == [
        TriggerRecord(DocumentReference("docs-in", "forms/app1.pdf", "v1"), "REQ1"),
        TriggerRecord(DocumentReference("docs-in", "scan.png", None), "REQ2"),
    ]


def test_parse_trigger_event_decodes_plus_as_space():
    envelope = {"Records": [make_record("my+payslip+%282024%29.pdf")]}

    (record,) = parse_trigger_event(envelope)

    assert record.document.key == "my payslip (2024).pdf"


def test_parse_trigger_event_decodes_escaped_plus_literally():
    envelope = {"Records": [make_record("bank%2Bsavings+q1.pdf")]}

    (record,) = parse_trigger_event(envelope)

    assert record.document.key == "bank+savings q1.pdf"


def test_parse_trigger_event_accepts_empty_record_list():
    assert parse_trigger_event({"Records": []}) == []


@pytest.mark.parametrize(
    "envelope",
    [
        None,
        {},
        {"Records": "nope"},
        {"Records": [{"s3": {"bucket": {"name": "b"}, "object": {"key": "a.pdf"}}}]},
        {"Records": [{"responseElements": {"x-amz-request-id": "R"}, "s3": {}}]},
    ],
)
def test_parse_trigger_event_rejects_malformed_envelopes(envelope):
    with pytest.raises(InvalidEvent):
        parse_trigger_event(envelope)


@pytest.mark.parametrize(
    "key, extension",
    [
        ("a.pdf", "pdf"),
        ("dir/B.JPEG", "jpeg"),
        ("archive.tar.gz", "gz"),
        ("noextension", None),
        (".hidden", None),
        ("trailing.", None),
    ],
)
def test_get_extension(key, extension):
    assert get_extension(key) == extension


def test_is_supported_is_case_insensitive():
    assert is_supported("scan.PNG")
    assert is_supported("photo.Jpg")
    assert not is_supported("notes.txt")
    assert not is_supported("pdf")


def test_first_supported_skips_unsupported_records():
    records = [
        TriggerRecord(DocumentReference("b", "notes.txt"), "R1"),
        TriggerRecord(DocumentReference("b", "scan.jpg"), "R2"),
        TriggerRecord(DocumentReference("b", "form.pdf"), "R3"),
    ]

    assert first_supported(records) == records[1]
    assert first_supported(records[:1]) is None
    assert first_supported([]) is None
