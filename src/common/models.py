"""
Boundary Records
================

Typed records for the trigger envelope that starts a workflow, plus the
file-type rules shared by the classification and dispatch stages.

The trigger envelope is an S3-style object-created notification. Keys in
that envelope are URL-encoded with ``+`` standing for a space, so they are
decoded here once; every stage downstream sees the real object name, which
is also the name the extraction service reports back on completion.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterator
from urllib.parse import unquote_plus

import structlog

from .errors import InvalidEvent

log = structlog.get_logger(__name__)

SUPPORTED_EXTENSIONS = frozenset({"pdf", "png", "jpg", "jpeg"})
PAGINATED_EXTENSIONS = frozenset({"pdf"})


@dataclass(frozen=True)
class DocumentReference:
    """One immutable stored object: (bucket, key, version)."""

    bucket: str
    key: str
    version: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"bucket": self.bucket, "key": self.key, "version": self.version}


@dataclass(frozen=True)
class TriggerRecord:
    """A single document-creation record from a trigger envelope."""

    document: DocumentReference
    request_id: str


def get_extension(key: str) -> str | None:
    """Return the lower-cased extension of ``key``, or None if it has none."""
    pos = key.rfind(".")
    if pos <= 0 or pos == len(key) - 1:
        return None
    return key[pos + 1 :].lower()


def is_supported(key: str) -> bool:
    return get_extension(key) in SUPPORTED_EXTENSIONS


def decode_event_key(raw_key: str) -> str:
    """
    Decode an event key: ``+`` becomes a space and ``%XX`` escapes are decoded.

    Upload events URL-encode the whole key, so a literal ``+`` in the object
    name arrives as ``%2B`` and has to be decoded to find the object.
    """
    return unquote_plus(raw_key)


def _require_str(container: Any, field: str, context: str) -> str:
    if not isinstance(container, dict):
        raise InvalidEvent(f"{context} is not an object")
    value = container.get(field)
    if not isinstance(value, str) or not value:
        raise InvalidEvent(f"{context}.{field} is missing or not a string")
    return value


def parse_trigger_record(raw: Any) -> TriggerRecord:
    """Validate and convert one raw trigger record."""
    if not isinstance(raw, dict):
        raise InvalidEvent("Trigger record is not an object")

    s3 = raw.get("s3")
    if not isinstance(s3, dict):
        raise InvalidEvent("Trigger record has no 's3' section")
    bucket = _require_str(s3.get("bucket"), "name", "s3.bucket")
    obj = s3.get("object")
    key = decode_event_key(_require_str(obj, "key", "s3.object"))
    version = obj.get("versionId") or None
    if version is not None and not isinstance(version, str):
        raise InvalidEvent("s3.object.versionId is not a string")

    request_id = _require_str(
        raw.get("responseElements"), "x-amz-request-id", "responseElements"
    )

    return TriggerRecord(
        document=DocumentReference(bucket=bucket, key=key, version=version),
        request_id=request_id,
    )


def parse_trigger_event(envelope: Any) -> list[TriggerRecord]:
    """
    Parse a trigger envelope into its records.

    Raises ``InvalidEvent`` for a malformed envelope or record. An envelope
    with an empty record list is valid and yields an empty list.
    """
    if not isinstance(envelope, dict):
        raise InvalidEvent("Trigger envelope is not an object")
    records = envelope.get("Records")
    if not isinstance(records, list):
        raise InvalidEvent("Trigger envelope has no 'Records' list")
    return [parse_trigger_record(record) for record in records]


def supported_records(records: list[TriggerRecord]) -> Iterator[TriggerRecord]:
    """Yield records with a supported file type; the rest are logged and skipped."""
    for record in records:
        if is_supported(record.document.key):
            yield record
            continue
        log.info(
            "Unsupported file type; skipping record",
            bucket=record.document.bucket,
            key=record.document.key,
        )


def first_supported(records: list[TriggerRecord]) -> TriggerRecord | None:
    """Return the first record with a supported file type."""
    return next(supported_records(records), None)
