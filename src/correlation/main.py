"""
Completion Daemon
=================

Takes job-completion notification envelopes off the notification queue and
hands each one to the ``CompletionCorrelator``.

An envelope is acknowledged once the correlator has produced an outcome for
every message in it, including the benign per-message failures (no handle,
duplicate delivery). Transport failures re-queue the envelope so it is
delivered again.
"""

from __future__ import annotations

import structlog
from redis import Redis

from common.config import Settings
from common.daemon_loop import run_polling_threadpool
from common.logging_config import configure_logging
from common.queue import QueueMessage, RedisWorkQueue
from common.storage import HttpObjectStore
from workflow.substrate import RedisWorkflowSubstrate
from .listener import CompletionCorrelator, NotificationAck
from .store import CorrelationStore

IDLE_PAUSE_SECONDS = 1


def process_notification_message(
    message: QueueMessage,
    queue: RedisWorkQueue,
    correlator: CompletionCorrelator,
) -> NotificationAck | None:
    log = structlog.get_logger(__name__)
    if message.body is None:
        log.warning("Dropping undecodable notification message")
        queue.ack(message)
        return None

    try:
        ack = correlator.handle(message.body)
    except Exception:
        queue.nack(message)
        raise

    queue.ack(message)
    return ack


def main() -> None:
    """Main loop for the completion daemon."""
    log = structlog.get_logger(__name__)

    try:
        settings = Settings()
        configure_logging(settings)
    except ValueError as e:
        log.error("Configuration error", error=e)
        return

    log.info(
        "Starting completion daemon",
        notification_queue=settings.NOTIFICATION_QUEUE,
        completion_workers=settings.COMPLETION_WORKERS,
        output_bucket=settings.OUTPUT_BUCKET,
        token_namespace=settings.TOKEN_NAMESPACE,
    )

    redis = Redis.from_url(settings.REDIS_URL)
    queue = RedisWorkQueue(redis, settings.NOTIFICATION_QUEUE)
    queue.recover()
    substrate = RedisWorkflowSubstrate(redis, settings.SUSPEND_TIMEOUT_SECONDS)

    def process_message(message: QueueMessage) -> None:
        object_store = HttpObjectStore(settings)
        try:
            correlator = CompletionCorrelator(
                CorrelationStore(
                    object_store, settings.OUTPUT_BUCKET, settings.TOKEN_NAMESPACE
                ),
                substrate,
            )
            process_notification_message(message, queue, correlator)
        finally:
            object_store.close()

    try:
        run_polling_threadpool(
            daemon_name="completions",
            fetch_work=lambda: queue.reserve(
                settings.QUEUE_BATCH_SIZE, settings.POLL_INTERVAL
            ),
            process_item=process_message,
            poll_interval_seconds=IDLE_PAUSE_SECONDS,
            max_workers=settings.COMPLETION_WORKERS,
        )
    finally:
        redis.close()


if __name__ == "__main__":
    main()
