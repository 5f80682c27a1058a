"""
Completion Correlator
=====================

Reconnects an out-of-band job notification to the workflow instance that
is waiting for it.

For every message in a notification envelope the correlator derives the
correlation path from the message's document key, reads the resumption
handle stored there by the dispatch stage, and then:

- ``SUCCEEDED``: resumes the instance with the whole message as its result
- any other status: aborts the instance with the status as error code and
  the raw message as cause

Exactly one resume-or-abort call is made per message. Problems that belong
to a single message (no handle, unknown instance, an instance that was
already resolved by an earlier delivery, a job superseded by a newer
upload of the same document, a malformed message) are recorded
as that message's outcome and the rest of the batch carries on.
Transport failures (``StoreError``, redis errors) propagate so the caller
can re-queue the whole envelope; re-running it is safe because a second
resume or abort is rejected by the substrate as a duplicate.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from common.errors import (
    AlreadyResolvedInstance,
    CorrelationNotFound,
    InstanceNotFound,
    InvalidEvent,
    StaleCompletion,
)
from common.utils import fingerprint
from .events import CompletionEvent, extract_messages, parse_completion_message
from .store import CorrelationStore

if TYPE_CHECKING:
    from workflow.substrate import WorkflowSubstrate

log = structlog.get_logger(__name__)

OUTCOME_RESUMED = "resumed"
OUTCOME_ABORTED = "aborted"
OUTCOME_NOT_FOUND = "not_found"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_STALE = "stale"
OUTCOME_INSTANCE_NOT_FOUND = "instance_not_found"
OUTCOME_INVALID = "invalid"


@dataclass(frozen=True)
class EventOutcome:
    outcome: str
    job_id: str | None = None
    key: str | None = None
    detail: str | None = None


@dataclass(frozen=True)
class NotificationAck:
    status_code: int = 200
    outcomes: list[EventOutcome] = field(default_factory=list)


class CompletionCorrelator:
    def __init__(self, correlation_store: CorrelationStore, substrate: WorkflowSubstrate):
        self.correlation_store = correlation_store
        self.substrate = substrate

    def handle(self, envelope: Any) -> NotificationAck:
        """Process every message in ``envelope`` and acknowledge the delivery."""
        try:
            messages = extract_messages(envelope)
        except InvalidEvent as e:
            log.warning("Discarding malformed notification envelope", error=str(e))
            return NotificationAck(outcomes=[EventOutcome(OUTCOME_INVALID, detail=str(e))])

        outcomes = []
        for message in messages:
            try:
                event = parse_completion_message(message)
            except InvalidEvent as e:
                log.warning("Skipping malformed notification message", error=str(e))
                outcomes.append(EventOutcome(OUTCOME_INVALID, detail=str(e)))
                continue
            outcomes.append(self._correlate(event))

        log.info(
            "Processed notification envelope",
            message_count=len(messages),
            outcomes=[o.outcome for o in outcomes],
        )
        return NotificationAck(status_code=200, outcomes=outcomes)

    def _correlate(self, event: CompletionEvent) -> EventOutcome:
        try:
            handle = self.correlation_store.get_handle(event.key)
        except CorrelationNotFound as e:
            log.error(
                "No resumption handle for completed job",
                job_id=event.job_id,
                key=event.key,
                status=event.status,
            )
            return EventOutcome(OUTCOME_NOT_FOUND, event.job_id, event.key, str(e))

        try:
            if event.succeeded:
                self.substrate.resume(handle, event.payload, job_id=event.job_id)
                outcome = OUTCOME_RESUMED
            else:
                self.substrate.abort(
                    handle, event.status, event.raw_message, job_id=event.job_id
                )
                outcome = OUTCOME_ABORTED
        except StaleCompletion as e:
            log.warning(
                "Ignoring notification for a superseded job",
                job_id=event.job_id,
                key=event.key,
                handle=fingerprint(handle),
            )
            return EventOutcome(OUTCOME_STALE, event.job_id, event.key, str(e))
        except AlreadyResolvedInstance as e:
            log.info(
                "Ignoring duplicate notification",
                job_id=event.job_id,
                key=event.key,
                handle=fingerprint(handle),
            )
            return EventOutcome(OUTCOME_DUPLICATE, event.job_id, event.key, str(e))
        except InstanceNotFound as e:
            log.error(
                "Resumption handle does not match a workflow instance",
                job_id=event.job_id,
                key=event.key,
                handle=fingerprint(handle),
            )
            return EventOutcome(
                OUTCOME_INSTANCE_NOT_FOUND, event.job_id, event.key, str(e)
            )

        log.info(
            "Correlated job completion",
            job_id=event.job_id,
            key=event.key,
            status=event.status,
            outcome=outcome,
            handle=fingerprint(handle),
        )
        return EventOutcome(outcome, event.job_id, event.key)
