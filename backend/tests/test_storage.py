"""
Tests for the storage backends.
The S3 backend runs against moto's in-memory S3.
"""
import re

import boto3
import pytest
from moto import mock_aws

from filedrop.config import Settings
from filedrop.exceptions import NotFound, StorageWriteFailed, Unsupported
from filedrop.storage import LocalStorageBackend, S3StorageBackend, create_storage_backend
from filedrop.storage.base import join_key, unique_filename

BUCKET = "filedrop-test"


@pytest.fixture
def s3_backend():
    with mock_aws():
        boto3.client("s3", region_name="us-east-1").create_bucket(Bucket=BUCKET)
        yield S3StorageBackend(
            bucket=BUCKET,
            access_key="testing",
            secret_key="testing",
            region="us-east-1",
        )


class TestKeyHelpers:
    """Tests for key naming helpers."""

    def test_unique_filename_keeps_stem_and_extension(self):
        name = unique_filename("report.pdf")
        assert re.fullmatch(r"report-\d+-[0-9a-f]{8}\.pdf", name)

    def test_unique_filename_strips_path_segments(self):
        name = unique_filename("../../etc/passwd")
        assert "/" not in name
        assert name.startswith("passwd-")

    def test_unique_filename_is_unique(self):
        assert unique_filename("a.txt") != unique_filename("a.txt")

    def test_join_key(self):
        assert join_key("users/u1/", "a.txt") == "users/u1/a.txt"
        assert join_key(None, "a.txt") == "a.txt"


class TestLocalStorage:
    """Tests for LocalStorageBackend."""

    def test_save_fetch_round_trip(self, storage: LocalStorageBackend):
        key = storage.save(b"hello world", "hello.txt", "users/u1/2026/01")

        assert key.startswith("users/u1/2026/01/hello-")
        assert storage.fetch(key) == b"hello world"
        assert storage.exists(key)

    def test_save_never_overwrites(self, storage: LocalStorageBackend):
        first = storage.save(b"one", "same.txt")
        second = storage.save(b"two", "same.txt")

        assert first != second
        assert storage.fetch(first) == b"one"
        assert storage.fetch(second) == b"two"

    def test_save_leaves_no_temp_files(self, storage: LocalStorageBackend):
        storage.save(b"data", "clean.bin", "folder")
        names = [p.name for p in (storage.base_dir / "folder").iterdir()]
        assert len(names) == 1
        assert not names[0].startswith(".upload-")

    def test_fetch_missing_raises_not_found(self, storage: LocalStorageBackend):
        with pytest.raises(NotFound):
            storage.fetch("missing/file.txt")

    def test_fetch_outside_root_raises_not_found(self, storage: LocalStorageBackend):
        with pytest.raises(NotFound):
            storage.fetch("../../etc/passwd")

    def test_delete_is_idempotent(self, storage: LocalStorageBackend):
        key = storage.save(b"bye", "bye.txt")

        storage.delete(key)
        storage.delete(key)

        assert not storage.exists(key)
        with pytest.raises(NotFound):
            storage.fetch(key)

    def test_write_error_raises_storage_write_failed(self, storage: LocalStorageBackend):
        # A regular file where the folder should be
        (storage.base_dir / "blocked").write_bytes(b"")

        with pytest.raises(StorageWriteFailed):
            storage.save(b"data", "x.txt", "blocked")

    def test_public_url(self, storage: LocalStorageBackend):
        assert storage.public_url("a/b.txt") == "http://files.test/uploads/a/b.txt"

    def test_signed_url_unsupported(self, storage: LocalStorageBackend):
        with pytest.raises(Unsupported):
            storage.signed_url("a/b.txt", 60)


class TestS3Storage:
    """Tests for S3StorageBackend."""

    def test_save_fetch_round_trip(self, s3_backend: S3StorageBackend):
        key = s3_backend.save(b"\x89PNG bytes", "photo.png", "users/u1/2026/01")

        assert key.startswith("users/u1/2026/01/photo-")
        assert key.endswith(".png")
        assert s3_backend.fetch(key) == b"\x89PNG bytes"
        assert s3_backend.exists(key)

    def test_save_sets_content_type(self, s3_backend: S3StorageBackend):
        key = s3_backend.save(b"%PDF", "doc.pdf")
        head = s3_backend._client.head_object(Bucket=BUCKET, Key=key)
        assert head["ContentType"] == "application/pdf"

    def test_save_uses_given_content_type(self, s3_backend: S3StorageBackend):
        key = s3_backend.save(b"\x89PNG", "upload.bin", content_type="image/png")
        head = s3_backend._client.head_object(Bucket=BUCKET, Key=key)
        assert head["ContentType"] == "image/png"

    def test_fetch_missing_raises_not_found(self, s3_backend: S3StorageBackend):
        with pytest.raises(NotFound):
            s3_backend.fetch("missing/key.txt")

    def test_delete_is_idempotent(self, s3_backend: S3StorageBackend):
        key = s3_backend.save(b"bye", "bye.txt")

        s3_backend.delete(key)
        s3_backend.delete(key)

        assert not s3_backend.exists(key)

    def test_missing_bucket_raises_storage_write_failed(self, s3_backend: S3StorageBackend):
        s3_backend.bucket = "no-such-bucket"
        with pytest.raises(StorageWriteFailed):
            s3_backend.save(b"data", "x.txt")

    def test_signed_url(self, s3_backend: S3StorageBackend):
        url = s3_backend.signed_url("users/u1/a.txt", 300)
        assert BUCKET in url
        assert "X-Amz-Signature=" in url
        assert "X-Amz-Expires=300" in url

    def test_public_url_prefers_public_base(self):
        backend = S3StorageBackend(bucket=BUCKET, public_base_url="https://cdn.test/", client=object())
        assert backend.public_url("a.txt") == "https://cdn.test/a.txt"

    def test_public_url_uses_endpoint(self):
        backend = S3StorageBackend(bucket=BUCKET, endpoint_url="https://r2.test", client=object())
        assert backend.public_url("a.txt") == f"https://r2.test/{BUCKET}/a.txt"


class TestStorageFactory:
    """Tests for backend selection."""

    def test_local(self, tmp_path):
        backend = create_storage_backend(Settings(storage_backend="local", local_storage_dir=str(tmp_path)))
        assert isinstance(backend, LocalStorageBackend)

    def test_s3_requires_credentials(self):
        with pytest.raises(ValueError):
            create_storage_backend(Settings(storage_backend="s3", s3_access_key=None, s3_secret_key=None))

    def test_s3(self):
        backend = create_storage_backend(Settings(
            storage_backend="s3",
            s3_access_key="key",
            s3_secret_key="secret",
            s3_region="us-east-1",
        ))
        assert isinstance(backend, S3StorageBackend)
        assert backend.name == "s3"

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_storage_backend(Settings(storage_backend="ftp"))
