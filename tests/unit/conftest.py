"""
Shared fixtures for unit tests.
"""

from __future__ import annotations

import io
import os
import types
import uuid
from datetime import datetime, timezone

import pytest
from botocore.exceptions import ClientError

LAST_MODIFIED = datetime(2024, 5, 17, 12, 30, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session", autouse=True)
def _env_vars():
    """
    Ensures a deterministic environment for every test run.
    Overwrite *only* the variables needed by the handler.
    """
    original = os.environ.copy()
    os.environ.setdefault("SERVICE_NAME", "s3-archiver-test")
    os.environ.setdefault("ENVIRONMENT", "test")
    os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-1")
    os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "true")
    os.environ.setdefault("POWERTOOLS_LOG_LEVEL", "INFO")
    yield
    os.environ.clear()
    os.environ.update(original)


def client_error(code: str, operation: str = "GetObject", message: str = "") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": message or f"{code} error"}},
        operation,
    )


class FakeBotoS3:
    """
    In-memory stand-in for the boto3 S3 client.

    ``upload_fileobj`` drains the stream it is given in fixed-size chunks, the
    way s3transfer does for non-seekable input, so the producer and the upload
    genuinely run against each other through the pipe.
    """

    def __init__(self, objects: dict[str, bytes] | None = None, pages: list[dict] | None = None):
        self.objects = dict(objects or {})
        self.pages = pages
        self.get_errors: dict[str, Exception] = {}
        self.upload_error: Exception | None = None
        self.upload_chunk_size = 256 * 1024
        self.list_calls: list[dict] = []
        self.get_calls: list[str] = []
        self.upload_calls: list[dict] = []
        self.uploads: dict[tuple[str, str], bytes] = {}

    def list_objects_v2(self, **params):
        self.list_calls.append(params)
        if self.pages is not None:
            return self.pages[len(self.list_calls) - 1]
        prefix = params.get("Prefix", "")
        return {
            "Contents": [{"Key": key} for key in self.objects if key.startswith(prefix)],
            "IsTruncated": False,
        }

    def get_object(self, Bucket: str, Key: str):
        self.get_calls.append(Key)
        if Key in self.get_errors:
            raise self.get_errors[Key]
        if Key not in self.objects:
            raise client_error("NoSuchKey", message="The specified key does not exist.")
        data = self.objects[Key]
        return {
            "Body": io.BytesIO(data),
            "ContentLength": len(data),
            "LastModified": LAST_MODIFIED,
        }

    def upload_fileobj(self, Fileobj, Bucket, Key, ExtraArgs=None, Config=None):
        self.upload_calls.append(
            {"Bucket": Bucket, "Key": Key, "ExtraArgs": ExtraArgs, "Config": Config}
        )
        if self.upload_error is not None:
            raise self.upload_error
        received = bytearray()
        for chunk in iter(lambda: Fileobj.read(self.upload_chunk_size), b""):
            received += chunk
        self.uploads[(Bucket, Key)] = bytes(received)


@pytest.fixture
def fake_boto_s3() -> FakeBotoS3:
    return FakeBotoS3(
        objects={
            "photos/": b"",
            "photos/a.txt": b"alpha",
            "photos/b.txt": b"bravo bravo",
            "photos/2024/c.txt": b"charlie",
        }
    )


@pytest.fixture
def lambda_context():
    """A *very* small stand-in for the LambdaContext object."""
    return types.SimpleNamespace(
        function_name="s3-archiver",
        memory_limit_in_mb=512,
        aws_request_id="req-" + uuid.uuid4().hex,
        invoked_function_arn="arn:aws:lambda:eu-west-1:000000000000:function:s3-archiver",
        get_remaining_time_in_millis=lambda: 30000,
    )


@pytest.fixture
def make_fake_s3():
    """Factory for FakeBotoS3 instances with custom objects or listing pages."""
    return FakeBotoS3


@pytest.fixture
def make_client_error():
    return client_error
