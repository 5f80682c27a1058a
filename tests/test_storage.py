import os

import pytest
import requests

from common.config import Settings
from common.errors import ObjectNotFound, StoreError
from common.storage import HttpObjectStore


@pytest.fixture
def settings(mocker):
    """Fixture to create a Settings object for tests."""
    mocker.patch.dict(
        os.environ,
        {
            "OBJECT_STORE_URL": "http://store:9000",
            "OBJECT_STORE_TOKEN": "store-token",
            "OUTPUT_BUCKET": "docs-out",
            "EXTRACTION_URL": "http://extraction:8080",
            "NOTIFICATION_TARGET": "arn:topic:completions",
            "NOTIFICATION_ROLE": "arn:role:publisher",
            "OPENAI_API_KEY": "test_api_key",
        },
        clear=True,
    )
    return Settings()


@pytest.fixture
def object_store(settings):
    store = HttpObjectStore(settings)
    yield store
    store.close()


def test_get_returns_content(object_store, requests_mock):
    requests_mock.get("http://store:9000/docs-in/forms/app1.pdf", content=b"%PDF-1.7")

    assert object_store.get("docs-in", "forms/app1.pdf") == b"%PDF-1.7"
    assert requests_mock.last_request.headers["Authorization"] == "Bearer store-token"


def test_get_passes_version_and_quotes_key(object_store, requests_mock):
    requests_mock.get(
        "http://store:9000/docs-in/my%20payslip.pdf?versionId=v7", content=b"data"
    )

    assert object_store.get("docs-in", "my payslip.pdf", "v7") == b"data"
    assert requests_mock.last_request.qs == {"versionid": ["v7"]}


def test_get_missing_object_raises_object_not_found(object_store, requests_mock):
    requests_mock.get("http://store:9000/docs-out/_tasks/a.pdf.token", status_code=404)

    with pytest.raises(ObjectNotFound):
        object_store.get("docs-out", "_tasks/a.pdf.token")


def test_get_server_error_raises_store_error(object_store, requests_mock):
    requests_mock.get("http://store:9000/docs-in/a.pdf", status_code=503)

    with pytest.raises(StoreError, match="HTTP 503") as excinfo:
        object_store.get("docs-in", "a.pdf")
    assert not isinstance(excinfo.value, ObjectNotFound)


def test_get_connection_error_raises_store_error(object_store, requests_mock):
    requests_mock.get(
        "http://store:9000/docs-in/a.pdf", exc=requests.exceptions.ConnectTimeout
    )

    with pytest.raises(StoreError):
        object_store.get("docs-in", "a.pdf")


def test_put_uploads_bytes(object_store, requests_mock):
    adapter = requests_mock.put("http://store:9000/docs-out/_tasks/a.pdf.token")

    object_store.put("docs-out", "_tasks/a.pdf.token", b"handle-1")

    assert adapter.called_once
    assert adapter.last_request.body == b"handle-1"


def test_put_failure_raises_store_error(object_store, requests_mock):
    requests_mock.put("http://store:9000/docs-out/_tasks/a.pdf.token", status_code=500)

    with pytest.raises(StoreError):
        object_store.put("docs-out", "_tasks/a.pdf.token", b"handle-1")
