"""
Completion notification parsing.

The extraction service announces finished jobs through a pub/sub channel
whose deliveries arrive as::

    {"Records": [{"Sns": {"Message": "<json string>"}}, ...]}

and each message is::

    {"JobId": ..., "Status": "SUCCEEDED" | "FAILED" | ..., "API": ...,
     "JobTag": ..., "DocumentLocation": {"S3Bucket": ..., "S3ObjectName": ...}}
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from common.errors import InvalidEvent

STATUS_SUCCEEDED = "SUCCEEDED"


@dataclass(frozen=True)
class CompletionEvent:
    job_id: str
    status: str
    api: str | None
    job_tag: str | None
    bucket: str | None
    key: str
    raw_message: str
    payload: dict

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_SUCCEEDED


def _required(message: dict, field: str) -> str:
    value = message.get(field)
    if not isinstance(value, str) or not value:
        raise InvalidEvent(f"Notification message is missing {field}")
    return value


def parse_completion_message(message: Any) -> CompletionEvent:
    """
    Parse one notification message, given either as the JSON string the
    channel delivers or as an already-decoded dict.
    """
    if isinstance(message, str):
        raw_message = message
        try:
            payload = json.loads(message)
        except json.JSONDecodeError as e:
            raise InvalidEvent(f"Notification message is not valid JSON: {e}") from e
    elif isinstance(message, dict):
        payload = message
        raw_message = json.dumps(message)
    else:
        raise InvalidEvent("Notification message must be a JSON object")

    if not isinstance(payload, dict):
        raise InvalidEvent("Notification message must be a JSON object")

    location = payload.get("DocumentLocation")
    if not isinstance(location, dict):
        raise InvalidEvent("Notification message is missing DocumentLocation")

    bucket = location.get("S3Bucket")
    return CompletionEvent(
        job_id=_required(payload, "JobId"),
        status=_required(payload, "Status"),
        api=payload.get("API"),
        job_tag=payload.get("JobTag"),
        bucket=bucket if isinstance(bucket, str) else None,
        key=_required(location, "S3ObjectName"),
        raw_message=raw_message,
        payload=payload,
    )


def extract_messages(envelope: Any) -> list[Any]:
    """Return the undecoded message of every record in ``envelope``.

    A record without an ``Sns.Message`` yields ``None`` so the caller can
    report it as invalid without losing its place in the batch.
    """
    if not isinstance(envelope, dict):
        raise InvalidEvent("Notification envelope must be a JSON object")
    records = envelope.get("Records")
    if not isinstance(records, list):
        raise InvalidEvent("Notification envelope has no Records list")

    messages = []
    for record in records:
        sns = record.get("Sns") if isinstance(record, dict) else None
        messages.append(sns.get("Message") if isinstance(sns, dict) else None)
    return messages
