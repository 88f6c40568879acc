"""
Shared fixtures for unit tests.
"""

from __future__ import annotations

import dataclasses
import io
import os
import uuid
import zipfile
from unittest.mock import MagicMock

import pytest
from aws_lambda_powertools.utilities.typing import LambdaContext
from botocore.exceptions import ClientError

# The handler module reads its configuration at import time, which happens
# during collection, before any fixture runs.
os.environ.setdefault("BUCKET_NAME", "unzipper-test-bucket")
os.environ.setdefault("SERVICE_NAME", "s3-unzipper-test")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-1")
os.environ.setdefault("POWERTOOLS_SERVICE_NAME", "s3-unzipper-test")
os.environ.setdefault("POWERTOOLS_METRICS_NAMESPACE", "S3Unzipper")
os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "true")
os.environ.setdefault("POWERTOOLS_LOG_LEVEL", "INFO")

from s3_unzipper.config import AppConfig  # noqa: E402
from s3_unzipper.memory import MemoryCircuitBreaker  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def _env_vars():
    """
    Ensures a deterministic environment for every test run.
    Restores whatever the tests changed once the session ends.
    """
    original = os.environ.copy()
    yield
    os.environ.clear()
    os.environ.update(original)


@pytest.fixture
def lambda_context() -> MagicMock:
    """A small stand-in for the LambdaContext object with plenty of time left."""
    context = MagicMock(spec=LambdaContext)
    context.function_name = "s3-unzipper-test"
    context.function_version = "$LATEST"
    context.memory_limit_in_mb = 1024
    context.invoked_function_arn = "arn:aws:lambda:eu-west-1:000000000000:function:dummy"
    context.aws_request_id = "req-" + uuid.uuid4().hex
    context.get_remaining_time_in_millis.return_value = 300_000
    return context


@pytest.fixture
def app_config() -> AppConfig:
    """A fully-populated config with zero retry delays so tests never sleep."""
    return AppConfig(
        bucket_name="unzipper-test-bucket",
        service_name="s3-unzipper-test",
        environment="test",
        output_bucket="unzipper-test-bucket",
        input_path="input/",
        output_path="output/",
        kms_key_id=None,
        log_level="INFO",
        max_archive_size_mb=100,
        max_entry_count=10_000,
        max_total_uncompressed_mb=200,
        max_compression_ratio=100,
        max_memory_mb=1024,
        memory_warning_threshold=70.0,
        memory_trip_threshold=80.0,
        memory_check_interval_ms=0,
        gc_every_n_entries=10,
        storage_retry_max_attempts=3,
        storage_retry_base_delay_ms=0,
        storage_retry_max_delay_ms=0,
        s3_operation_timeout_seconds=5,
        timeout_guard_threshold_seconds=30,
        csv_processing_enabled=True,
        csv_timestamp_column="_processed",
        csv_skip_malformed=True,
    )


@pytest.fixture
def make_config(app_config):
    """Returns a factory that overrides individual config fields."""

    def _make(**overrides) -> AppConfig:
        return dataclasses.replace(app_config, **overrides)

    return _make


@pytest.fixture
def quiet_breaker() -> MemoryCircuitBreaker:
    """A breaker that always reports 10% usage."""
    return MemoryCircuitBreaker(
        check_interval=0,
        memory_limit_bytes=1000,
        sampler=lambda: 100,
    )


@pytest.fixture
def make_zip():
    """
    Returns a builder for in-memory zip archives.

    Each item is ``(name, data)``; names ending in ``/`` become directories.
    """

    def _build(items, compression=zipfile.ZIP_DEFLATED) -> bytes:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=compression) as archive:
            for name, data in items:
                if name.endswith("/"):
                    archive.writestr(zipfile.ZipInfo(name), b"")
                else:
                    archive.writestr(name, data)
        return buffer.getvalue()

    return _build


class FakeS3:
    """
    Minimal in-memory replacement for the boto3 S3 client.

    Supports the calls made through `S3Client`; uploads are read to the end
    so entry streams are really consumed.
    """

    def __init__(self):
        self.objects: dict[tuple[str, str], bytes] = {}
        self.uploads: dict[str, dict] = {}

    def _read(self, Bucket, Key, operation) -> bytes:
        try:
            return self.objects[(Bucket, Key)]
        except KeyError:
            raise ClientError(
                {"Error": {"Code": "NoSuchKey", "Message": "The specified key does not exist."}},
                operation,
            ) from None

    def head_object(self, Bucket, Key):
        return {"ContentLength": len(self._read(Bucket, Key, "HeadObject"))}

    def get_object(self, Bucket, Key):
        return {"Body": io.BytesIO(self._read(Bucket, Key, "GetObject"))}

    def put_object(self, Bucket, Key, Body, **kwargs):
        self.uploads[Key] = {"bucket": Bucket, "body": Body, **kwargs}

    def upload_fileobj(self, Fileobj, Bucket, Key, ExtraArgs=None):
        self.uploads[Key] = {"bucket": Bucket, "body": Fileobj.read(), **(ExtraArgs or {})}


@pytest.fixture
def fake_s3() -> FakeS3:
    return FakeS3()
