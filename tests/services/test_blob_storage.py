"""Tests for the digest-addressed blob storage facade."""

from __future__ import annotations

import threading

import pytest

from blobstore.common.config import Settings
from blobstore.infra.storage.client import (
    ConfigurationError,
    ObjectNotFoundError,
    OperationCancelledError,
)
from blobstore.infra.storage.config import CdnConfig, CosBackendConfig
from blobstore.infra.storage.retry import RetryPolicy
from blobstore.services.blob_storage import BlobStorage, CosBlobStorage
from tests.services.mock_cos import FakeCosSession

SERVICE_URL = "https://examplebucket-1250000000.cos.ap-beijing.myqcloud.com"
ACCELERATED_URL = "https://examplebucket-1250000000.cos.accelerate.myqcloud.com"
DIGEST = "sha256:e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
LOCATION = "sha256/e3/e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
NOW = 1557989151


@pytest.fixture
def session():
    return FakeCosSession()


def _storage(session, **config_kwargs) -> CosBlobStorage:
    config = CosBackendConfig("AKIDEXAMPLE", "secret", SERVICE_URL, **config_kwargs)
    return CosBlobStorage(
        config,
        session=session,
        part_size=1024,
        retry_policy=RetryPolicy(sleep=lambda _: None),
        clock=lambda: NOW,
        nonce_provider=lambda: "f" * 32,
    )


@pytest.fixture
def storage(session):
    return _storage(session)


class TestCosBlobStorage:
    def test_supports_downloading(self, storage):
        backend: BlobStorage = storage
        assert backend.supports_downloading is True

    def test_save_returns_object_key(self, storage, session):
        location = storage.save(b"layer-bytes", DIGEST, "library/ubuntu")

        assert location == LOCATION
        assert session.objects[f"/{LOCATION}"] == b"layer-bytes"

    def test_save_large_blob_uses_multipart(self, storage, session):
        data = b"x" * 3000

        storage.save(data, DIGEST, "library/ubuntu")

        assert len(session.requests_matching(lambda r: r.is_part_upload)) == 3
        assert session.objects[f"/{LOCATION}"] == data

    def test_save_from_file(self, storage, session, tmp_path):
        path = tmp_path / "blob"
        path.write_bytes(b"from-disk")

        storage.save(path, DIGEST, "library/ubuntu")

        assert session.objects[f"/{LOCATION}"] == b"from-disk"

    def test_save_same_digest_twice_is_idempotent(self, storage, session):
        first = storage.save(b"same", DIGEST, "a/repo")
        second = storage.save(b"same", DIGEST, "b/repo")

        assert first == second
        assert session.objects[f"/{LOCATION}"] == b"same"

    def test_save_rejects_invalid_digest(self, storage, session):
        with pytest.raises(ValueError):
            storage.save(b"data", "not-a-digest", "library/ubuntu")
        assert session.requests == []

    def test_save_rejects_unsupported_content(self, storage):
        with pytest.raises(TypeError):
            storage.save(12345, DIGEST, "library/ubuntu")  # type: ignore[arg-type]

    def test_save_honours_cancellation(self, storage, session):
        event = threading.Event()
        event.set()

        with pytest.raises(OperationCancelledError):
            storage.save(b"data", DIGEST, "library/ubuntu", cancel_event=event)
        assert session.requests == []

    def test_try_locate_existing(self, storage, session):
        assert storage.try_locate_existing(DIGEST) is None

        session.objects[f"/{LOCATION}"] = b"data"

        assert storage.try_locate_existing(DIGEST) == LOCATION
        assert session.requests[-1].method == "HEAD"

    def test_accelerated_upload_endpoint(self, session):
        storage = _storage(session, accelerated_upload_base_url=ACCELERATED_URL)

        storage.save(b"data", DIGEST, "library/ubuntu")
        storage.try_locate_existing(DIGEST)
        storage.delete(LOCATION)

        put, head, delete = session.requests
        assert put.url.startswith(ACCELERATED_URL)
        assert head.url.startswith(ACCELERATED_URL)
        assert delete.url == f"{SERVICE_URL}/{LOCATION}"

    def test_read_streams_content(self, storage, session):
        session.objects[f"/{LOCATION}"] = b"blob-content"

        stream = storage.read(LOCATION)

        request = session.requests[-1]
        assert request.method == "GET"
        assert request.url.startswith(f"{SERVICE_URL}/{LOCATION}?q-sign-algorithm=sha1")
        assert "Authorization" not in request.headers
        assert stream.decode_content is True
        assert stream.read() == b"blob-content"

    def test_read_missing_blob(self, storage):
        with pytest.raises(ObjectNotFoundError):
            storage.read(LOCATION)

    def test_delete(self, storage, session):
        session.objects[f"/{LOCATION}"] = b"data"

        storage.delete(LOCATION)

        assert f"/{LOCATION}" not in session.objects
        assert session.requests[-1].headers["Authorization"].startswith(
            "q-sign-algorithm=sha1"
        )

    def test_generate_download_url_presigned(self, storage):
        url = storage.generate_download_url(LOCATION)
        assert url.startswith(f"{SERVICE_URL}/{LOCATION}?q-sign-algorithm=sha1&q-ak=AKIDEXAMPLE")

    def test_generate_download_url_cdn(self, session):
        storage = _storage(
            session,
            cdn=CdnConfig(base_url="https://cdn.example.com", auth_key_type_a="k"),
        )

        url = storage.generate_download_url(LOCATION)

        assert url.startswith(f"https://cdn.example.com/{LOCATION}?sign={NOW}-{'f' * 32}-0-")

    def test_context_manager_closes_session(self, session):
        with _storage(session) as storage:
            storage.try_locate_existing(DIGEST)
        assert session.closed


class TestFromSettings:
    def test_builds_from_settings(self, session):
        settings = Settings(
            COS_SECRET_ID="AKIDEXAMPLE",
            COS_SECRET_KEY="secret",
            COS_SERVICE_BASE_URL=SERVICE_URL + "/",
            STORAGE_PART_SIZE_BYTES=2048,
            STORAGE_UPLOAD_BATCH_SIZE=2,
        )

        storage = CosBlobStorage.from_settings(settings, session=session)

        assert storage.config.service_base_url == SERVICE_URL
        assert storage.uploader.part_size == 2048
        assert storage.uploader.batch_size == 2

    def test_missing_credentials(self):
        with pytest.raises(ConfigurationError):
            CosBlobStorage.from_settings(Settings(COS_SERVICE_BASE_URL=SERVICE_URL))
