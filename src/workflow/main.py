"""
Workflow Daemons
================

Two entrypoints live here:

- ``main``: the workflow daemon. Takes upload triggers off the upload queue
  and runs one workflow instance per trigger, up to the point where the
  instance is suspended waiting for its extraction job.
- ``sweep_main``: the timeout sweeper. Aborts suspended instances whose
  deadline has passed, with error code ``Timeout``.
"""

from __future__ import annotations

import structlog
from redis import Redis

from classifier.provider import OpenAIClassifier
from classifier.stage import ClassificationStage
from common.config import Settings, setup_libraries
from common.daemon_loop import run_polling_threadpool
from common.errors import InvalidEvent
from common.logging_config import configure_logging
from common.queue import QueueMessage, RedisWorkQueue
from common.storage import HttpObjectStore
from correlation.store import CorrelationStore
from extraction.dispatch import DispatchStage
from extraction.service import HttpExtractionService, NotificationTarget, OutputTarget
from ocr.provider import OpenAIProvider
from .engine import StageLimits, WorkflowEngine
from .substrate import RedisWorkflowSubstrate

# Pause after an empty reserve; the reserve itself already blocked.
IDLE_PAUSE_SECONDS = 1


def process_trigger_message(
    message: QueueMessage, queue: RedisWorkQueue, engine: WorkflowEngine
) -> None:
    """
    Run the workflow for one queued trigger and settle the message.

    Malformed triggers are logged and acknowledged; they would fail the
    same way on every delivery. Anything else that escapes the engine
    (redis or store outages) re-queues the message.
    """
    log = structlog.get_logger(__name__)
    if message.body is None:
        log.warning("Dropping undecodable trigger message")
        queue.ack(message)
        return

    try:
        instance = engine.run(message.body)
    except InvalidEvent as e:
        log.warning("Dropping malformed trigger", error=str(e))
        queue.ack(message)
        return
    except Exception:
        queue.nack(message)
        raise

    queue.ack(message)
    log.info(
        "Trigger processed",
        instance_id=instance.instance_id,
        state=instance.state.value,
    )


def main() -> None:
    """Main loop for the workflow daemon."""
    log = structlog.get_logger(__name__)

    try:
        settings = Settings()
        configure_logging(settings)
        setup_libraries(settings)
    except ValueError as e:
        log.error("Configuration error", error=e)
        return

    log.info(
        "Starting workflow daemon",
        upload_queue=settings.UPLOAD_QUEUE,
        workflow_workers=settings.WORKFLOW_WORKERS,
        classify_concurrency=settings.CLASSIFY_CONCURRENCY,
        dispatch_concurrency=settings.DISPATCH_CONCURRENCY,
        stage_max_attempts=settings.STAGE_MAX_ATTEMPTS,
        llm_provider=settings.LLM_PROVIDER,
        ai_models=settings.AI_MODELS,
    )

    redis = Redis.from_url(settings.REDIS_URL)
    queue = RedisWorkQueue(redis, settings.UPLOAD_QUEUE)
    queue.recover()
    substrate = RedisWorkflowSubstrate(redis, settings.SUSPEND_TIMEOUT_SECONDS)
    limits = StageLimits.from_settings(settings)
    output = OutputTarget(settings.OUTPUT_BUCKET, settings.EXTRACTION_OUTPUT_PREFIX)
    notification = NotificationTarget(
        settings.NOTIFICATION_TARGET, settings.NOTIFICATION_ROLE
    )

    def process_message(message: QueueMessage) -> None:
        object_store = HttpObjectStore(settings)
        extraction_service = HttpExtractionService(settings)
        try:
            engine = WorkflowEngine(
                settings,
                substrate,
                ClassificationStage(
                    object_store,
                    OpenAIProvider(settings),
                    OpenAIClassifier(settings),
                ),
                DispatchStage(
                    CorrelationStore(
                        object_store, settings.OUTPUT_BUCKET, settings.TOKEN_NAMESPACE
                    ),
                    extraction_service,
                    output,
                    notification,
                ),
                limits,
            )
            process_trigger_message(message, queue, engine)
        finally:
            object_store.close()
            extraction_service.close()

    try:
        run_polling_threadpool(
            daemon_name="workflow",
            fetch_work=lambda: queue.reserve(
                settings.QUEUE_BATCH_SIZE, settings.POLL_INTERVAL
            ),
            process_item=process_message,
            poll_interval_seconds=IDLE_PAUSE_SECONDS,
            max_workers=settings.WORKFLOW_WORKERS,
        )
    finally:
        redis.close()


def sweep_main() -> None:
    """Main loop for the timeout sweeper."""
    log = structlog.get_logger(__name__)

    try:
        settings = Settings()
        configure_logging(settings)
    except ValueError as e:
        log.error("Configuration error", error=e)
        return

    log.info(
        "Starting timeout sweeper",
        suspend_timeout_seconds=settings.SUSPEND_TIMEOUT_SECONDS,
        poll_interval=settings.POLL_INTERVAL,
    )

    redis = Redis.from_url(settings.REDIS_URL)
    substrate = RedisWorkflowSubstrate(redis, settings.SUSPEND_TIMEOUT_SECONDS)
    try:
        run_polling_threadpool(
            daemon_name="sweeper",
            fetch_work=substrate.expired,
            process_item=substrate.abort_expired,
            poll_interval_seconds=settings.POLL_INTERVAL,
            max_workers=1,
        )
    finally:
        redis.close()


if __name__ == "__main__":
    main()
