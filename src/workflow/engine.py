"""
Workflow Engine
===============

Runs one workflow instance per trigger envelope:

1. ``START -> CLASSIFYING``: classify the trigger's first supported document.
2. ``CLASSIFYING -> BRANCH``: store the classification on the instance.
3. ``BRANCH``: pick the feature set for the label, or finish as ``SKIPPED``.
4. ``BRANCH -> DISPATCHING``: the substrate issues a resumption handle and
   the dispatch stage stores it and starts the extraction job.
5. ``DISPATCHING -> SUSPENDED``: the engine returns. The completion daemon
   (or the timeout sweeper) takes the instance to its terminal state.

The engine is where stage failures are retried. Classification and dispatch
are wrapped by ``retry`` with ``STAGE_MAX_ATTEMPTS`` attempts; once those
are used up the instance is aborted with the error's code and message.

The instance id is derived from the trigger's first request id, so a
re-delivered trigger maps onto the same instance. Re-delivery continues an
instance that stopped before suspending (re-dispatching is safe because the
job's idempotency key comes from the same request id) and leaves any other
instance alone. A trigger without records gets an id derived from the whole
envelope and ends as ``SKIPPED`` with an ``UNSUPPORTED`` classification.
"""

from __future__ import annotations

import hashlib
import json
import threading
from dataclasses import dataclass
from typing import Any

import structlog

from classifier.stage import OUTPUT_KEY, ClassificationResult, ClassificationStage
from common.config import Settings
from common.errors import (
    RETRYABLE_STAGE_ERRORS,
    AlreadyResolvedInstance,
    DocflowError,
    StoreError,
    UnsupportedInput,
)
from common.models import TriggerRecord, parse_trigger_event
from common.utils import retry
from extraction.dispatch import DispatchStage, idempotency_key
from extraction.service import FeatureSet
from .states import WorkflowState, branch_for_label
from .substrate import RedisWorkflowSubstrate, WorkflowInstance

log = structlog.get_logger(__name__)

# A failed handle write is retried like any other stage failure.
DISPATCH_RETRYABLE_ERRORS = RETRYABLE_STAGE_ERRORS + (StoreError,)


@dataclass
class StageLimits:
    """Per-process ceilings on concurrent stage invocations."""

    classify: threading.BoundedSemaphore
    dispatch: threading.BoundedSemaphore

    @classmethod
    def from_settings(cls, settings: Settings) -> "StageLimits":
        return cls(
            classify=threading.BoundedSemaphore(settings.CLASSIFY_CONCURRENCY),
            dispatch=threading.BoundedSemaphore(settings.DISPATCH_CONCURRENCY),
        )


def instance_id_for(records: list[TriggerRecord], envelope: Any) -> str:
    """
    The first record's request id, or a digest of the whole envelope when it
    has no records.
    """
    if not records:
        canonical = json.dumps(envelope, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return idempotency_key(records[0].request_id)


class WorkflowEngine:
    def __init__(
        self,
        settings: Settings,
        substrate: RedisWorkflowSubstrate,
        classification_stage: ClassificationStage,
        dispatch_stage: DispatchStage,
        limits: StageLimits,
    ):
        self.settings = settings
        self.substrate = substrate
        self.classification_stage = classification_stage
        self.dispatch_stage = dispatch_stage
        self.limits = limits

    def run(self, envelope: Any) -> WorkflowInstance:
        """
        Drive the instance for ``envelope`` as far as it can go now.

        Raises ``InvalidEvent`` for a malformed envelope. Stage failures
        end in an ``ABORTED`` instance rather than an exception.
        """
        records = parse_trigger_event(envelope)
        instance_id = instance_id_for(records, envelope)
        instance, created = self.substrate.start(instance_id, envelope)
        if not created:
            log.info(
                "Trigger re-delivered for existing instance",
                instance_id=instance_id,
                state=instance.state.value,
            )

        if instance.state == WorkflowState.START:
            instance = self.substrate.transition(instance_id, WorkflowState.CLASSIFYING)

        if instance.state == WorkflowState.CLASSIFYING:
            try:
                result = self._classify(records)
            except RETRYABLE_STAGE_ERRORS as e:
                return self._abort(instance_id, e)
            instance = self.substrate.transition(
                instance_id, WorkflowState.BRANCH, classification=result.to_dict()
            )

        if instance.state == WorkflowState.BRANCH:
            return self._branch(instance, records)

        if instance.state == WorkflowState.DISPATCHING:
            # A worker stopped between registering the handle and suspending.
            # The idempotency key gets any job it already started back.
            return self._dispatch_and_suspend(
                instance_id,
                FeatureSet(instance.feature_set),
                instance.handle,
                records,
            )

        log.info(
            "Nothing to do for workflow instance",
            instance_id=instance_id,
            state=instance.state.value,
        )
        return instance

    def _branch(
        self, instance: WorkflowInstance, records: list[TriggerRecord]
    ) -> WorkflowInstance:
        instance_id = instance.instance_id
        label = (instance.classification or {}).get(OUTPUT_KEY)
        feature_set = branch_for_label(label)
        if feature_set is None:
            log.info("No extraction for label; skipping", instance_id=instance_id, label=label)
            return self.substrate.transition(instance_id, WorkflowState.SKIPPED)

        log.info(
            "Branching to extraction",
            instance_id=instance_id,
            label=label,
            feature_set=feature_set.value,
        )
        handle = self.substrate.register_handle(instance_id, feature_set)
        return self._dispatch_and_suspend(instance_id, feature_set, handle, records)

    def _dispatch_and_suspend(
        self,
        instance_id: str,
        feature_set: FeatureSet,
        handle: str,
        records: list[TriggerRecord],
    ) -> WorkflowInstance:
        try:
            job_id = self._dispatch(feature_set, handle, records)
        except DISPATCH_RETRYABLE_ERRORS as e:
            return self._abort(instance_id, e)

        if job_id is None:
            return self._abort(
                instance_id, UnsupportedInput("No supported document to dispatch")
            )
        return self.substrate.mark_suspended(instance_id, job_id)

    @retry(RETRYABLE_STAGE_ERRORS)
    def _classify(self, records: list[TriggerRecord]) -> ClassificationResult:
        with self.limits.classify:
            return self.classification_stage.classify(records)

    @retry(DISPATCH_RETRYABLE_ERRORS)
    def _dispatch(
        self, feature_set: FeatureSet, handle: str, records: list[TriggerRecord]
    ) -> str | None:
        with self.limits.dispatch:
            return self.dispatch_stage.dispatch(feature_set, handle, records)

    def _abort(self, instance_id: str, error: DocflowError) -> WorkflowInstance:
        try:
            return self.substrate.fail(instance_id, error.error_code, str(error))
        except AlreadyResolvedInstance:
            # A completion can land between a job starting and a later failure.
            log.info("Instance already resolved; not aborting", instance_id=instance_id)
            return self.substrate.get(instance_id)
