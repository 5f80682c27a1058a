"""
Workflow Substrate
==================

Durable state for workflow instances, kept in redis.

Layout::

    docflow:instance:<instance_id>   JSON document (``WorkflowInstance``)
    docflow:handle:<handle>          instance id the handle belongs to
    docflow:suspended                sorted set of waiting instance ids,
                                     scored by suspension deadline

Every mutation of an instance runs inside a WATCH/MULTI transaction on its
key, so a resume, an abort and a timeout racing for the same instance
resolve it exactly once. The losers see ``AlreadyResolvedInstance``.

Resumption handles are random, opaque and single-use: ``register_handle``
creates one when the engine is about to dispatch, and the first successful
``resume`` or ``abort`` with it retires the instance.
"""

from __future__ import annotations

import json
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Callable

import structlog
from redis import Redis
from redis.client import Pipeline
from redis.exceptions import WatchError

from common.errors import (
    AlreadyResolvedInstance,
    InstanceNotFound,
    StaleCompletion,
    TimeoutAbort,
)
from common.utils import fingerprint
from extraction.service import FeatureSet
from .states import WorkflowState, check_transition

log = structlog.get_logger(__name__)

INSTANCE_KEY_PREFIX = "docflow:instance:"
HANDLE_KEY_PREFIX = "docflow:handle:"
SUSPENDED_KEY = "docflow:suspended"


def _text(value: bytes | str) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


@dataclass
class WorkflowInstance:
    instance_id: str
    state: WorkflowState
    input: Any
    classification: dict | None = None
    feature_set: str | None = None
    handle: str | None = None
    job_id: str | None = None
    result: Any = None
    error: str | None = None
    cause: str | None = None
    deadline: float | None = None
    created_at: float = 0.0
    updated_at: float = 0.0

    def to_json(self) -> str:
        data = asdict(self)
        data["state"] = self.state.value
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: bytes | str) -> "WorkflowInstance":
        data = json.loads(raw)
        data["state"] = WorkflowState(data["state"])
        return cls(**data)


class WorkflowSubstrate(ABC):
    """The two calls the completion side makes into the workflow substrate."""

    @abstractmethod
    def resume(self, handle: str, payload: Any, job_id: str | None = None) -> None:
        """
        Complete the instance waiting on ``handle`` with ``payload``.

        When ``job_id`` is given it must match the job the instance is
        waiting for. Raises ``InstanceNotFound`` or
        ``AlreadyResolvedInstance`` (``StaleCompletion`` for another job).
        """

    @abstractmethod
    def abort(
        self, handle: str, error: str, cause: str, job_id: str | None = None
    ) -> None:
        """
        Abort the instance waiting on ``handle``.

        Same ``job_id`` check and errors as ``resume``.
        """


class RedisWorkflowSubstrate(WorkflowSubstrate):
    def __init__(
        self,
        redis: Redis,
        suspend_timeout_seconds: int,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis
        self.suspend_timeout_seconds = suspend_timeout_seconds
        self.clock = clock

    # --- Instance lifecycle -------------------------------------------------

    def start(self, instance_id: str, payload: Any) -> tuple[WorkflowInstance, bool]:
        """
        Create the instance in ``START`` unless it already exists.

        Returns the stored instance and whether this call created it.
        """
        now = self.clock()
        instance = WorkflowInstance(
            instance_id=instance_id,
            state=WorkflowState.START,
            input=payload,
            created_at=now,
            updated_at=now,
        )
        if self.redis.set(_instance_key(instance_id), instance.to_json(), nx=True):
            log.info("Started workflow instance", instance_id=instance_id)
            return instance, True
        return self.get(instance_id), False

    def get(self, instance_id: str) -> WorkflowInstance:
        raw = self.redis.get(_instance_key(instance_id))
        if raw is None:
            raise InstanceNotFound(f"No workflow instance {instance_id}")
        return WorkflowInstance.from_json(raw)

    def transition(
        self, instance_id: str, target: WorkflowState, **fields: Any
    ) -> WorkflowInstance:
        """Move the instance to ``target`` and set ``fields`` on it."""

        def mutate(instance: WorkflowInstance, pipe: Pipeline) -> None:
            check_transition(instance.state, target)
            instance.state = target
            for name, value in fields.items():
                setattr(instance, name, value)

        instance = self._update(instance_id, mutate)
        log.info(
            "Workflow instance transitioned",
            instance_id=instance_id,
            state=target.value,
        )
        return instance

    def register_handle(self, instance_id: str, feature_set: FeatureSet) -> str:
        """
        Generate the instance's resumption handle and start its suspension
        clock. Moves the instance from ``BRANCH`` to ``DISPATCHING``.
        """
        handle = secrets.token_urlsafe(32)
        deadline = self.clock() + self.suspend_timeout_seconds

        def mutate(instance: WorkflowInstance, pipe: Pipeline) -> None:
            check_transition(instance.state, WorkflowState.DISPATCHING)
            instance.state = WorkflowState.DISPATCHING
            instance.feature_set = feature_set.value
            instance.handle = handle
            instance.deadline = deadline
            pipe.set(_handle_key(handle), instance_id)

        self._update(instance_id, mutate)
        log.info(
            "Registered resumption handle",
            instance_id=instance_id,
            feature_set=feature_set.value,
            handle=fingerprint(handle),
            deadline=deadline,
        )
        return handle

    def mark_suspended(self, instance_id: str, job_id: str | None) -> WorkflowInstance:
        """
        Record the started job and suspend the instance.

        A completion can beat this call, and a re-delivered trigger can make
        it twice; an instance that is already suspended or terminal is
        returned unchanged.
        """

        def mutate(instance: WorkflowInstance, pipe: Pipeline) -> None:
            if instance.state.is_terminal or instance.state == WorkflowState.SUSPENDED:
                return
            check_transition(instance.state, WorkflowState.SUSPENDED)
            instance.state = WorkflowState.SUSPENDED
            instance.job_id = job_id

        instance = self._update(instance_id, mutate)
        log.info(
            "Workflow instance suspended"
            if instance.state == WorkflowState.SUSPENDED
            else "Workflow instance resolved before suspension",
            instance_id=instance_id,
            state=instance.state.value,
            job_id=job_id,
        )
        return instance

    def fail(self, instance_id: str, error: str, cause: str) -> WorkflowInstance:
        """Abort an instance by id, from any non-terminal state."""

        def mutate(instance: WorkflowInstance, pipe: Pipeline) -> None:
            if instance.state.is_terminal:
                raise AlreadyResolvedInstance(
                    f"Workflow instance {instance_id} is already {instance.state.value}"
                )
            instance.state = WorkflowState.ABORTED
            instance.error = error
            instance.cause = cause

        instance = self._update(instance_id, mutate)
        log.warning(
            "Workflow instance aborted",
            instance_id=instance_id,
            error=error,
            cause=cause,
        )
        return instance

    # --- Resumption ---------------------------------------------------------

    def resume(self, handle: str, payload: Any, job_id: str | None = None) -> None:
        instance_id = self._instance_for_handle(handle)

        def mutate(instance: WorkflowInstance, pipe: Pipeline) -> None:
            _require_waiting(instance, handle, job_id)
            instance.state = WorkflowState.COMPLETED
            instance.result = payload

        self._update(instance_id, mutate)
        log.info(
            "Workflow instance completed",
            instance_id=instance_id,
            handle=fingerprint(handle),
        )

    def abort(
        self, handle: str, error: str, cause: str, job_id: str | None = None
    ) -> None:
        instance_id = self._instance_for_handle(handle)

        def mutate(instance: WorkflowInstance, pipe: Pipeline) -> None:
            _require_waiting(instance, handle, job_id)
            instance.state = WorkflowState.ABORTED
            instance.error = error
            instance.cause = cause

        self._update(instance_id, mutate)
        log.warning(
            "Workflow instance aborted",
            instance_id=instance_id,
            handle=fingerprint(handle),
            error=error,
        )

    # --- Timeouts -----------------------------------------------------------

    def expired(self, now: float | None = None) -> list[str]:
        """Ids of waiting instances whose deadline is at or before ``now``."""
        now = self.clock() if now is None else now
        return [_text(raw) for raw in self.redis.zrangebyscore(SUSPENDED_KEY, 0, now)]

    def abort_expired(self, instance_id: str) -> bool:
        """
        Abort ``instance_id`` with a ``Timeout`` error if its deadline passed
        while it was still waiting. Returns True if this call aborted it.
        """
        now = self.clock()
        aborted = False

        def mutate(instance: WorkflowInstance, pipe: Pipeline) -> None:
            nonlocal aborted
            if not instance.state.is_waiting or instance.deadline is None:
                return
            if instance.deadline > now:
                return
            instance.state = WorkflowState.ABORTED
            instance.error = TimeoutAbort.error_code
            instance.cause = (
                f"Suspended longer than {self.suspend_timeout_seconds} seconds"
            )
            aborted = True

        try:
            self._update(instance_id, mutate)
        except InstanceNotFound:
            self.redis.zrem(SUSPENDED_KEY, instance_id)
            return False

        if aborted:
            log.warning(
                "Workflow instance timed out",
                instance_id=instance_id,
                suspend_timeout_seconds=self.suspend_timeout_seconds,
            )
        return aborted

    # --- Internals ----------------------------------------------------------

    def _instance_for_handle(self, handle: str) -> str:
        raw = self.redis.get(_handle_key(handle))
        if raw is None:
            raise InstanceNotFound(f"Unknown resumption handle {fingerprint(handle)}")
        return _text(raw)

    def _update(
        self,
        instance_id: str,
        mutate: Callable[[WorkflowInstance, Pipeline], None],
    ) -> WorkflowInstance:
        """
        Read, mutate and write one instance atomically.

        ``mutate`` changes the instance in place and may queue extra commands
        on the pipeline; exceptions it raises abandon the update. The
        suspended-set membership follows the new state.
        """
        key = _instance_key(instance_id)
        with self.redis.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if raw is None:
                        raise InstanceNotFound(f"No workflow instance {instance_id}")
                    instance = WorkflowInstance.from_json(raw)

                    pipe.multi()
                    mutate(instance, pipe)
                    instance.updated_at = self.clock()
                    pipe.set(key, instance.to_json())
                    if instance.state.is_waiting and instance.deadline is not None:
                        pipe.zadd(SUSPENDED_KEY, {instance_id: instance.deadline})
                    else:
                        pipe.zrem(SUSPENDED_KEY, instance_id)
                    pipe.execute()
                    return instance
                except WatchError:
                    log.debug("Instance changed during update; retrying", instance_id=instance_id)
                    continue


def _require_waiting(
    instance: WorkflowInstance, handle: str, job_id: str | None
) -> None:
    if instance.handle != handle or not instance.state.is_waiting:
        raise AlreadyResolvedInstance(
            f"Workflow instance {instance.instance_id} is {instance.state.value}"
        )
    # Before mark_suspended there is no job id to compare against.
    if job_id is not None and instance.job_id is not None and job_id != instance.job_id:
        raise StaleCompletion(
            f"Workflow instance {instance.instance_id} waits for job "
            f"{instance.job_id}, not {job_id}"
        )


def _instance_key(instance_id: str) -> str:
    return f"{INSTANCE_KEY_PREFIX}{instance_id}"


def _handle_key(handle: str) -> str:
    return f"{HANDLE_KEY_PREFIX}{handle}"
