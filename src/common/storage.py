"""
Object Storage Client
=====================

This module provides the durable key/value byte store the pipeline reads
source documents from and keeps resumption handles in.

`ObjectStore` is the interface the stages consume. `HttpObjectStore` talks
to an S3-compatible HTTP endpoint using path-style addressing
(``{base}/{bucket}/{key}``), with an optional ``versionId`` query
parameter for versioned reads. The store must be strongly consistent: a
successful ``put`` is visible to every subsequent ``get``.

No retries happen here. A failed call raises immediately and the workflow
engine decides whether to try the stage again.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from urllib.parse import quote

import requests
import structlog

from .config import Settings
from .errors import ObjectNotFound, StoreError

log = structlog.get_logger(__name__)


class ObjectStore(ABC):
    """A durable byte store addressed by (bucket, key[, version])."""

    @abstractmethod
    def get(self, bucket: str, key: str, version: str | None = None) -> bytes:
        """Return the object's bytes, raising ``ObjectNotFound`` if absent."""
        raise NotImplementedError

    @abstractmethod
    def put(self, bucket: str, key: str, data: bytes) -> None:
        """Durably write ``data``; visible to readers once this returns."""
        raise NotImplementedError


class HttpObjectStore(ObjectStore):
    """An object store client for an S3-compatible HTTP endpoint."""

    def __init__(self, settings: Settings):
        """Initializes the client with a session and optional bearer auth."""
        self.settings = settings
        self._session = requests.Session()
        if settings.OBJECT_STORE_TOKEN:
            self._session.headers.update(
                {"Authorization": f"Bearer {settings.OBJECT_STORE_TOKEN}"}
            )

    def close(self) -> None:
        self._session.close()

    def _url(self, bucket: str, key: str) -> str:
        return (
            f"{self.settings.OBJECT_STORE_URL}/{quote(bucket, safe='')}/"
            f"{quote(key, safe='/')}"
        )

    def get(self, bucket: str, key: str, version: str | None = None) -> bytes:
        params = {"versionId": version} if version else None
        try:
            response = self._session.get(
                self._url(bucket, key),
                params=params,
                timeout=self.settings.REQUEST_TIMEOUT,
            )
        except requests.exceptions.RequestException as e:
            raise StoreError(f"GET {bucket}/{key} failed: {e}") from e

        if response.status_code == 404:
            raise ObjectNotFound(f"Object not found: {bucket}/{key}")
        if not response.ok:
            raise StoreError(
                f"GET {bucket}/{key} returned HTTP {response.status_code}"
            )
        log.debug("Fetched object", bucket=bucket, key=key, size=len(response.content))
        return response.content

    def put(self, bucket: str, key: str, data: bytes) -> None:
        try:
            response = self._session.put(
                self._url(bucket, key),
                data=data,
                headers={"Content-Type": "application/octet-stream"},
                timeout=self.settings.REQUEST_TIMEOUT,
            )
        except requests.exceptions.RequestException as e:
            raise StoreError(f"PUT {bucket}/{key} failed: {e}") from e

        if not response.ok:
            raise StoreError(
                f"PUT {bucket}/{key} returned HTTP {response.status_code}"
            )
        log.debug("Stored object", bucket=bucket, key=key, size=len(data))
