"""
Daemon Loop Utilities
=====================

This project ships three long-running processes ("daemons"):

1. Workflow daemon: takes upload triggers off a queue and runs one
   workflow instance per trigger (classify, branch, dispatch, suspend).
2. Completion daemon: takes job-completion notifications off a queue and
   resumes or aborts the matching suspended instances.
3. Sweeper: aborts suspended instances whose deadline has passed.

All three share the same control-flow pattern:

- Fetch work (the queue daemons block inside ``fetch_work`` until a
  message arrives or their poll interval elapses).
- If work is found, process the batch concurrently.
- Keep running forever (until SIGINT / Ctrl-C).

This module contains a small, reusable loop implementation so the
entrypoints stay thin and easy to read.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")


def run_polling_threadpool(
    *,
    daemon_name: str,
    fetch_work: Callable[[], list[T]],
    process_item: Callable[[T], None],
    poll_interval_seconds: float,
    max_workers: int,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """
    Run an infinite loop and process fetched items concurrently in a thread pool.

    - Items are fetched once per loop iteration.
    - Each loop iteration processes at most the current batch; the pool size
      is the ceiling on concurrent work and excess items wait for a slot.
    - Exceptions raised while processing one item are logged and do not stop
      the daemon.
    - The loop sleeps only when a fetch returns nothing, so a busy queue is
      drained without pauses.

    Args:
        daemon_name:
            Name used in log messages ("workflow", "completions", ...).
        fetch_work:
            A function returning the next batch of work items.
        process_item:
            Processes a single work item. Exceptions are caught and logged.
        poll_interval_seconds:
            How long to sleep after an empty fetch.
        max_workers:
            ThreadPoolExecutor worker count for processing items in parallel.
        sleep:
            Injectable sleep function (primarily for tests).
    """
    max_workers = max(1, int(max_workers))

    was_idle = False
    while True:
        try:
            items = fetch_work()
            if not items:
                if not was_idle:
                    log.info("No work found; waiting", daemon=daemon_name)
                was_idle = True
                sleep(poll_interval_seconds)
                continue

            was_idle = False
            log.info(
                "Processing batch",
                daemon=daemon_name,
                item_count=len(items),
                max_workers=max_workers,
            )

            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                future_to_item = {
                    executor.submit(process_item, item): item for item in items
                }
                for future in as_completed(future_to_item):
                    item = future_to_item[future]
                    try:
                        future.result()
                    except Exception:
                        # Log and continue. The per-item processor decides
                        # whether to ack, requeue, or abort an instance.
                        log.exception(
                            "Work item failed",
                            daemon=daemon_name,
                            item=_safe_item_summary(item),
                        )
        except KeyboardInterrupt:
            log.info("Ctrl-C received; exiting", daemon=daemon_name)
            break
        except Exception:
            log.exception(
                "Unexpected error in daemon loop; sleeping",
                daemon=daemon_name,
                poll_interval_seconds=poll_interval_seconds,
            )
            sleep(poll_interval_seconds)


def _safe_item_summary(item: object) -> str:
    """
    Best-effort string for logging a work item.

    Queue daemons pass ``QueueMessage`` objects, the sweeper passes instance
    ids, and tests may pass arbitrary objects.
    """
    try:
        raw = getattr(item, "raw", None)
        if isinstance(raw, bytes):
            return f"message_bytes={len(raw)}"
        if isinstance(item, dict):
            return f"dict_keys={sorted(item.keys())}"
        return str(item)
    except Exception:
        return "<unprintable>"
