"""
Correlation Store
=================

The hand-off point between dispatching an extraction job and hearing that
it finished. The two sides never talk to each other directly: the dispatch
stage writes the workflow's resumption handle to a path derived from the
document key, and the completion correlator later derives the same path
from the document key in the job notification and reads the handle back.

``token_path`` is therefore the one bit-exact contract in the system. Both
sides must call it with the decoded object key (spaces, not ``+``).
"""

from __future__ import annotations

import structlog

from common.errors import CorrelationNotFound, ObjectNotFound
from common.storage import ObjectStore
from common.utils import fingerprint

log = structlog.get_logger(__name__)

TOKEN_SUFFIX = ".token"


def token_path(namespace: str, key: str) -> str:
    """Path of the correlation record for the document ``key``."""
    return f"{namespace}/{key}{TOKEN_SUFFIX}"


class CorrelationStore:
    """Reads and writes resumption handles in the output bucket."""

    def __init__(self, object_store: ObjectStore, bucket: str, namespace: str):
        self.object_store = object_store
        self.bucket = bucket
        self.namespace = namespace

    def path_for(self, key: str) -> str:
        return token_path(self.namespace, key)

    def put_handle(self, key: str, handle: str) -> str:
        """
        Durably store ``handle`` for the document ``key`` and return the path.

        Overwrites any earlier record for the same key.
        """
        path = self.path_for(key)
        self.object_store.put(self.bucket, path, handle.encode("utf-8"))
        log.info(
            "Stored resumption handle",
            bucket=self.bucket,
            path=path,
            handle=fingerprint(handle),
        )
        return path

    def get_handle(self, key: str) -> str:
        """
        Return the handle stored for the document ``key``.

        Raises ``CorrelationNotFound`` if there is none. Other store failures
        propagate as ``StoreError``.
        """
        path = self.path_for(key)
        try:
            raw = self.object_store.get(self.bucket, path)
        except ObjectNotFound as e:
            raise CorrelationNotFound(
                f"No resumption handle at {self.bucket}/{path}"
            ) from e
        handle = raw.decode("utf-8").strip()
        if not handle:
            raise CorrelationNotFound(f"Empty resumption handle at {self.bucket}/{path}")
        return handle
