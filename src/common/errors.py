"""
Error Hierarchy
===============

Every failure the pipeline knows how to reason about is a subclass of
``DocflowError``. Each class carries an ``error_code`` which is what an
aborted workflow instance records as its error, so the codes are part of
the observable surface and should not be renamed lightly.

Stage errors (storage, render, service) are never retried where they are
raised; they propagate to the workflow engine, which owns the retry policy.
"""


class DocflowError(Exception):
    """Base class for all pipeline errors."""

    error_code = "DocflowError"


class UnsupportedInput(DocflowError):
    """A document reference has a file type the pipeline does not handle."""

    error_code = "UnsupportedInput"


class StorageFetchFailure(DocflowError):
    """The source document could not be fetched."""

    error_code = "StorageFetchFailure"


class RenderFailure(DocflowError):
    """A paginated document could not be rendered to an image."""

    error_code = "RenderFailure"


class ServiceCallFailure(DocflowError):
    """A call to the OCR, classifier or extraction service failed."""

    error_code = "ServiceCallFailure"


class StoreError(DocflowError):
    """The object store failed for a reason other than a missing object."""

    error_code = "StoreError"


class ObjectNotFound(StoreError):
    """The requested object does not exist."""

    error_code = "ObjectNotFound"


class CorrelationNotFound(DocflowError):
    """No resumption handle is stored for a completed job's document."""

    error_code = "CorrelationNotFound"


class InstanceNotFound(DocflowError):
    """The workflow substrate does not know the handle or instance."""

    error_code = "InstanceNotFound"


class AlreadyResolvedInstance(DocflowError):
    """The instance behind a handle was already resumed or aborted."""

    error_code = "AlreadyResolved"


class StaleCompletion(AlreadyResolvedInstance):
    """A notification names a different job than the one the instance waits for."""

    error_code = "StaleCompletion"


class TimeoutAbort(DocflowError):
    """A suspended instance exceeded its suspension ceiling."""

    error_code = "Timeout"


class InvalidEvent(DocflowError, ValueError):
    """An inbound envelope or record failed boundary validation."""

    error_code = "InvalidEvent"


class InvalidTransition(DocflowError):
    """A workflow instance was asked to move along an edge that does not exist."""

    error_code = "InvalidTransition"


# Errors the engine treats as transient and hands to its retry policy.
RETRYABLE_STAGE_ERRORS = (StorageFetchFailure, RenderFailure, ServiceCallFailure)
