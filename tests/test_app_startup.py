from __future__ import annotations

from unittest.mock import MagicMock

from fastapi.testclient import TestClient

from blobstore.common.config import get_settings
from blobstore.main import create_app


def test_shutdown_closes_blob_storage():
    app = create_app()
    storage = MagicMock()

    with TestClient(app):
        app.state.blob_storage = storage

    storage.close.assert_called_once_with()
    assert app.state.blob_storage is None


def test_startup_tolerates_missing_storage_configuration(monkeypatch):
    monkeypatch.delenv("COS_SECRET_ID", raising=False)
    get_settings.cache_clear()  # type: ignore[attr-defined]

    app = create_app()
    with TestClient(app) as client:
        assert client.get("/health").status_code == 200

    assert app.state.blob_storage is None
