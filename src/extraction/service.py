"""
Extraction Service Client
=========================

This module provides the interface to the long-running extraction service
and an HTTP client for it.

Two job kinds exist: text detection (plain text only) for ``TEXT``, and
document analysis (with ``FeatureTypes``) for ``FORMS`` and ``TABLES``.
Every job carries a client request token; the service returns the same job
id for a repeated token, which is what makes dispatch idempotent. When a job
finishes, the service publishes a notification to the configured target
using the configured role.

Calls are not retried here. Any failure raises ``ServiceCallFailure``.
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass

import requests
import structlog

from common.config import Settings
from common.errors import ServiceCallFailure
from common.models import DocumentReference

log = structlog.get_logger(__name__)


class FeatureSet(str, enum.Enum):
    TEXT = "TEXT"
    FORMS = "FORMS"
    TABLES = "TABLES"


@dataclass(frozen=True)
class OutputTarget:
    """Where the service writes job results."""

    bucket: str
    prefix: str


@dataclass(frozen=True)
class NotificationTarget:
    """Where the service announces completion, and the role it publishes with."""

    target: str
    role: str


class ExtractionService(ABC):
    @abstractmethod
    def start(
        self,
        document: DocumentReference,
        feature_set: FeatureSet,
        idempotency_key: str,
        output: OutputTarget,
        notification: NotificationTarget,
    ) -> str:
        """Start one job and return its id."""
        raise NotImplementedError


def build_job_request(
    document: DocumentReference,
    feature_set: FeatureSet,
    idempotency_key: str,
    output: OutputTarget,
    notification: NotificationTarget,
) -> tuple[str, dict]:
    """Return the (endpoint path, JSON body) for starting a job."""
    s3_object = {"Bucket": document.bucket, "Name": document.key}
    if document.version:
        s3_object["Version"] = document.version

    body = {
        "ClientRequestToken": idempotency_key,
        "JobTag": feature_set.value,
        "DocumentLocation": {"S3Object": s3_object},
        "OutputConfig": {"S3Bucket": output.bucket, "S3Prefix": output.prefix},
        "NotificationChannel": {
            "SNSTopicArn": notification.target,
            "RoleArn": notification.role,
        },
    }
    if feature_set == FeatureSet.TEXT:
        return "/text-detection/jobs", body

    body["FeatureTypes"] = [feature_set.value]
    return "/document-analysis/jobs", body


class HttpExtractionService(ExtractionService):
    """Starts extraction jobs through the service's HTTP API."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._session = requests.Session()
        if settings.EXTRACTION_TOKEN:
            self._session.headers.update(
                {"Authorization": f"Bearer {settings.EXTRACTION_TOKEN}"}
            )

    def close(self) -> None:
        self._session.close()

    def start(
        self,
        document: DocumentReference,
        feature_set: FeatureSet,
        idempotency_key: str,
        output: OutputTarget,
        notification: NotificationTarget,
    ) -> str:
        path, body = build_job_request(
            document, feature_set, idempotency_key, output, notification
        )
        url = f"{self.settings.EXTRACTION_URL}{path}"
        try:
            response = self._session.post(
                url, json=body, timeout=self.settings.REQUEST_TIMEOUT
            )
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise ServiceCallFailure(f"Failed to start extraction job: {e}") from e

        job_id = data.get("JobId") if isinstance(data, dict) else None
        if not isinstance(job_id, str) or not job_id:
            raise ServiceCallFailure("Extraction service response has no JobId")

        log.info(
            "Started extraction job",
            job_id=job_id,
            feature_set=feature_set.value,
            bucket=document.bucket,
            key=document.key,
        )
        return job_id
