"""
Utilities
=========

This module provides utility functions that are used across the
application but do not belong to a more specific domain.

It contains the `retry` decorator the workflow engine uses to re-run
failed stages with exponential backoff and jitter, the handle fingerprint
used in log lines, and a helper for detecting blank images.
"""
import hashlib
import random
import time
from functools import wraps
from typing import Callable, Type, TypeVar

import structlog
from PIL import Image

log = structlog.get_logger(__name__)
T = TypeVar("T")


def retry(
    retryable_exceptions: tuple[Type[Exception], ...],
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    A decorator that retries a method call on specific exceptions.

    The decorated method's instance must expose ``self.settings`` with
    ``STAGE_MAX_ATTEMPTS`` and ``MAX_RETRY_BACKOFF_SECONDS``.

    Args:
        retryable_exceptions: A tuple of exception types that should trigger a retry.
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(self, *args, **kwargs) -> T:
            settings = self.settings
            if settings.STAGE_MAX_ATTEMPTS < 1:
                raise ValueError("STAGE_MAX_ATTEMPTS must be >= 1")
            for attempt in range(1, settings.STAGE_MAX_ATTEMPTS + 1):
                try:
                    return func(self, *args, **kwargs)
                except retryable_exceptions as e:
                    if attempt == settings.STAGE_MAX_ATTEMPTS:
                        log.warning(
                            "Giving up after final attempt",
                            operation=func.__name__,
                            attempts=attempt,
                            error=str(e),
                        )
                        raise
                    log.warning(
                        "Attempt failed; retrying",
                        operation=func.__name__,
                        attempt=attempt,
                        max_attempts=settings.STAGE_MAX_ATTEMPTS,
                        error=str(e),
                    )
                    _sleep_backoff(attempt, settings)
            # This part should be unreachable if STAGE_MAX_ATTEMPTS > 0
            raise RuntimeError("Retry loop exited unexpectedly.")

        return wrapper

    return decorator


def _sleep_backoff(attempt: int, settings) -> None:
    """Sleep for a short duration with exponential backoff and jitter."""
    delay = min(
        (2**attempt) * random.uniform(0.8, 1.2),
        float(settings.MAX_RETRY_BACKOFF_SECONDS),
    )
    log.info(
        "Sleeping before retry",
        delay_seconds=round(delay, 1),
        attempt=attempt,
        max_attempts=settings.STAGE_MAX_ATTEMPTS,
    )
    time.sleep(delay)


def fingerprint(handle: str) -> str:
    """Short, stable identifier for a resumption handle, safe to log."""
    return hashlib.sha256(handle.encode("utf-8")).hexdigest()[:12]


def is_blank(image: Image.Image, threshold: int = 5) -> bool:
    """
    Return True if the image is essentially blank (all white).
    """
    # Greyscale histogram - index 255 is pure white
    histogram = image.convert("L").histogram()
    return (sum(histogram) - histogram[255]) < threshold
