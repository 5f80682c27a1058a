"""
Async Dispatch Stage
====================

Starts the long-running extraction job for a suspended workflow instance.

For each supported record in the trigger the stage:

1. stores the instance's resumption handle in the correlation store, and
   only then
2. starts the job, using an idempotency key derived from the record's
   request id, so a re-delivered trigger (or an engine retry of this stage)
   gets the existing job back instead of a second one.

The store write must come first: if the job could start before its handle
is stored, a fast completion could arrive with nothing to correlate to. A
failed write raises before the job is started.
"""

from __future__ import annotations

import hashlib
import re

import structlog

from common.models import TriggerRecord, supported_records
from common.utils import fingerprint
from correlation.store import CorrelationStore
from .service import ExtractionService, FeatureSet, NotificationTarget, OutputTarget

log = structlog.get_logger(__name__)

IDEMPOTENCY_KEY_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def idempotency_key(request_id: str) -> str:
    """
    Derive the job's client request token from the trigger's request id.

    Request ids that already fit the service's token format are used as-is;
    anything else is replaced by a stable digest of the id.
    """
    if IDEMPOTENCY_KEY_RE.match(request_id):
        return request_id
    return hashlib.sha256(request_id.encode("utf-8")).hexdigest()[:64]


class DispatchStage:
    """Stores the resumption handle, then starts the extraction job."""

    def __init__(
        self,
        correlation_store: CorrelationStore,
        extraction_service: ExtractionService,
        output: OutputTarget,
        notification: NotificationTarget,
    ):
        self.correlation_store = correlation_store
        self.extraction_service = extraction_service
        self.output = output
        self.notification = notification

    def dispatch(
        self,
        feature_set: FeatureSet,
        handle: str,
        records: list[TriggerRecord],
    ) -> str | None:
        """
        Start one job per supported record and return the first job id.

        Returns None when the trigger has no supported record.
        """
        first_job_id = None
        for record in supported_records(records):
            document = record.document
            self.correlation_store.put_handle(document.key, handle)

            token = idempotency_key(record.request_id)
            job_id = self.extraction_service.start(
                document,
                feature_set,
                token,
                self.output,
                self.notification,
            )
            log.info(
                "Dispatched extraction job",
                job_id=job_id,
                feature_set=feature_set.value,
                key=document.key,
                idempotency_key=token,
                handle=fingerprint(handle),
            )
            if first_job_id is None:
                first_job_id = job_id
        return first_job_id
