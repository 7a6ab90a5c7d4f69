# tests/unit/test_core.py

import gc
import io
import os
import tarfile
import zipfile
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ReadTimeoutError

from s3_archiver.clients import S3Client
from s3_archiver.config import AppConfig
from s3_archiver.core import (
    ArchivePipeline,
    StreamingArchiver,
    archive,
    archive_entry_name,
    basename,
    relative_to,
    resolve_entries,
)
from s3_archiver.exceptions import (
    ArchiveEncodeError,
    EntryReadError,
    EntryStreamInterruptedError,
    EnumerationError,
    InvalidEntryNameError,
    S3AccessDeniedError,
    S3ObjectNotFoundError,
    UploadError,
)
from s3_archiver.schemas import ArchiveRequest, ListingPage, PipelineState


@pytest.fixture
def config() -> AppConfig:
    """Small pipe so multi-megabyte entries exercise backpressure."""
    return AppConfig(pipe_buffer_size_mb=1, read_chunk_size_kb=64)


@pytest.fixture
def s3_client(fake_boto_s3) -> S3Client:
    return S3Client(s3_client=fake_boto_s3)


def _zip_entries(data: bytes) -> list[tuple[str, bytes]]:
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        return [(info.filename, zf.read(info)) for info in zf.infolist()]


def _tar_entries(data: bytes) -> list[tuple[str, bytes]]:
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:") as tar:
        return [(m.name, tar.extractfile(m).read()) for m in tar.getmembers()]


# --- Naming ---


def test_default_name_is_last_path_segment():
    assert archive_entry_name("dir/sub/file.txt") == "file.txt"
    assert archive_entry_name("top.txt") == "top.txt"


def test_name_transform_overrides_default():
    assert archive_entry_name("dir/sub/file.txt", str.upper) == "DIR/SUB/FILE.TXT"


def test_relative_to_keeps_subdirectories():
    transform = relative_to("photos/")
    assert transform("photos/2024/c.txt") == "2024/c.txt"
    assert transform("elsewhere/d.txt") == "elsewhere/d.txt"


@pytest.mark.parametrize(
    "key, transform",
    [("dir/sub/", None), ("a/b.txt", lambda k: ""), ("a/c.txt", lambda k: 42)],
)
def test_empty_entry_name_is_rejected(key, transform):
    with pytest.raises(InvalidEntryNameError) as exc_info:
        archive_entry_name(key, transform)
    assert exc_info.value.context["key"] == key


# --- Entry Enumerator ---


def test_explicit_entries_skip_listing(fake_boto_s3, s3_client):
    keys = resolve_entries(s3_client, "bucket", "photos/", ["b.txt", "a.txt", "b.txt"])

    assert keys == ["photos/b.txt", "photos/a.txt", "photos/b.txt"]
    assert fake_boto_s3.list_calls == []


def test_listing_follows_every_page_and_passes_tokens(make_fake_s3):
    pages = [
        {"Contents": [{"Key": "p/"}, {"Key": "p/1"}], "IsTruncated": True, "NextContinuationToken": "tok-1"},
        {"Contents": [{"Key": "p/2"}], "IsTruncated": True, "NextContinuationToken": "tok-2"},
        {"Contents": [{"Key": "p/3"}, {"Key": "p/4"}], "IsTruncated": True, "NextContinuationToken": "tok-3"},
        {"Contents": [{"Key": "p/5"}], "IsTruncated": False},
    ]
    fake = make_fake_s3(pages=pages)

    keys = resolve_entries(S3Client(s3_client=fake), "bucket", "p/")

    assert keys == ["p/1", "p/2", "p/3", "p/4", "p/5"]
    assert len(fake.list_calls) == 4
    assert "ContinuationToken" not in fake.list_calls[0]
    assert [c.get("ContinuationToken") for c in fake.list_calls[1:]] == ["tok-1", "tok-2", "tok-3"]
    assert all(c["Prefix"] == "p/" for c in fake.list_calls)


def test_listing_without_prefix_omits_prefix_param(make_fake_s3):
    fake = make_fake_s3(objects={"a": b"1", "b": b"2"})

    keys = resolve_entries(S3Client(s3_client=fake), "bucket")

    assert keys == ["a", "b"]
    assert fake.list_calls == [{"Bucket": "bucket"}]


def test_listing_failure_on_any_page_fails_enumeration():
    mock_s3_client = MagicMock()
    mock_s3_client.list_objects_page.side_effect = [
        ListingPage(keys=["p/1"], next_token="tok-1", is_truncated=True),
        EnumerationError(bucket="bucket", prefix="p/", page=2, reason="boom"),
    ]

    with pytest.raises(EnumerationError) as exc_info:
        resolve_entries(mock_s3_client, "bucket", "p/")

    assert exc_info.value.context["page"] == 2


# --- Pipeline Orchestrator ---


def test_archive_zip_happy_path(fake_boto_s3, s3_client, config):
    result = archive(s3_client, "bucket", "photos/", config=config)

    uploaded = fake_boto_s3.uploads[("bucket", "photos/archive.zip")]
    assert result.bucket == "bucket"
    assert result.key == "photos/archive.zip"
    assert result.byte_size == len(uploaded)
    assert result.entry_count == 3
    assert _zip_entries(uploaded) == [
        ("a.txt", b"alpha"),
        ("b.txt", b"bravo bravo"),
        ("c.txt", b"charlie"),
    ]
    assert fake_boto_s3.upload_calls[0]["ExtraArgs"] == {"ContentType": "application/zip"}


def test_archive_tar_with_explicit_files(fake_boto_s3, s3_client, config):
    result = archive(
        s3_client,
        "bucket",
        "photos/",
        source_files=["b.txt", "2024/c.txt"],
        output_filename="bundle",
        output_format="TAR",
        config=config,
    )

    uploaded = fake_boto_s3.uploads[("bucket", "photos/bundle.tar")]
    assert result.key == "photos/bundle.tar"
    assert result.byte_size == len(uploaded)
    assert _tar_entries(uploaded) == [("b.txt", b"bravo bravo"), ("c.txt", b"charlie")]
    assert fake_boto_s3.list_calls == []


def test_unknown_format_falls_back_to_zip(fake_boto_s3, s3_client, config):
    result = archive(s3_client, "bucket", "photos/", output_format="rar", config=config)

    assert result.key == "photos/archive.zip"
    assert zipfile.is_zipfile(io.BytesIO(fake_boto_s3.uploads[("bucket", result.key)]))


def test_naming_override_is_applied_in_order(fake_boto_s3, s3_client, config):
    result = archive(
        s3_client,
        "bucket",
        "photos/",
        archiver_options={"name_transform": str.upper},
        config=config,
    )

    names = [name for name, _ in _zip_entries(fake_boto_s3.uploads[("bucket", result.key)])]
    assert names == ["PHOTOS/A.TXT", "PHOTOS/B.TXT", "PHOTOS/2024/C.TXT"]


def test_colliding_names_are_all_kept(fake_boto_s3, s3_client, config):
    result = archive(
        s3_client,
        "bucket",
        "photos/",
        archiver_options={"name_transform": lambda key: "same.txt"},
        config=config,
    )

    entries = _zip_entries(fake_boto_s3.uploads[("bucket", result.key)])
    assert [name for name, _ in entries] == ["same.txt"] * 3
    assert result.entry_count == 3


def test_upload_options_are_passed_through(fake_boto_s3, s3_client, config):
    archive(
        s3_client,
        "bucket",
        "photos/",
        upload_options={"ContentType": "application/octet-stream", "ACL": "private"},
        config=config,
    )

    assert fake_boto_s3.upload_calls[0]["ExtraArgs"] == {
        "ContentType": "application/octet-stream",
        "ACL": "private",
    }


@pytest.mark.parametrize("output_format", ["zip", "tar"])
def test_large_entries_stream_through_a_small_pipe(make_fake_s3, config, output_format):
    """Entries several times the pipe capacity arrive intact and sizes agree."""
    payloads = {f"big/{i}.bin": os.urandom(3 * 1024 * 1024 + i) for i in range(3)}
    fake = make_fake_s3(objects=payloads)
    request = ArchiveRequest(
        source_bucket="bucket", source_prefix="big/", output_format=output_format
    )
    pipeline = ArchivePipeline(S3Client(s3_client=fake), request, config)

    result = pipeline.run()

    uploaded = fake.uploads[("bucket", request.output_key)]
    assert pipeline.state is PipelineState.SUCCEEDED
    assert result.byte_size == pipeline.encoder.bytes_written == pipeline.pipe.bytes_read
    assert result.byte_size == len(uploaded)
    reader = _zip_entries if output_format == "zip" else _tar_entries
    assert reader(uploaded) == [(k.split("/")[-1], v) for k, v in payloads.items()]


def test_read_failure_stops_before_later_entries(fake_boto_s3, s3_client, config):
    with pytest.raises(S3ObjectNotFoundError) as exc_info:
        archive(
            s3_client,
            "bucket",
            "photos/",
            source_files=["a.txt", "missing.txt", "b.txt"],
            config=config,
        )

    assert isinstance(exc_info.value, EntryReadError)
    assert fake_boto_s3.get_calls == ["photos/a.txt", "photos/missing.txt"]
    assert fake_boto_s3.uploads == {}


def test_access_denied_marks_pipeline_failed(fake_boto_s3, s3_client, config, make_client_error):
    fake_boto_s3.get_errors["photos/b.txt"] = make_client_error("AccessDenied")
    request = ArchiveRequest(source_bucket="bucket", source_prefix="photos/")
    pipeline = ArchivePipeline(s3_client, request, config)

    with pytest.raises(S3AccessDeniedError):
        pipeline.run()

    assert pipeline.state is PipelineState.FAILED
    assert "photos/2024/c.txt" not in fake_boto_s3.get_calls


def test_enumeration_failure_is_surfaced(fake_boto_s3, s3_client, config, make_client_error):
    fake_boto_s3.list_objects_v2 = MagicMock(
        side_effect=make_client_error("AccessDenied", operation="ListObjectsV2")
    )

    with pytest.raises(EnumerationError) as exc_info:
        archive(s3_client, "bucket", "photos/", config=config)

    assert exc_info.value.context["aws_error_code"] == "AccessDenied"
    assert fake_boto_s3.uploads == {}


def test_upload_failure_is_surfaced(make_fake_s3, config, make_client_error):
    payloads = {f"big/{i}.bin": os.urandom(2 * 1024 * 1024) for i in range(3)}
    fake = make_fake_s3(objects=payloads)
    fake.upload_error = make_client_error("AccessDenied", operation="PutObject")
    request = ArchiveRequest(source_bucket="bucket", source_prefix="big/")
    pipeline = ArchivePipeline(S3Client(s3_client=fake), request, config)

    with pytest.raises(UploadError) as exc_info:
        pipeline.run()

    assert exc_info.value.context["aws_error_code"] == "AccessDenied"
    assert pipeline.state is PipelineState.FAILED


def test_invalid_entry_name_fails_the_archive(fake_boto_s3, s3_client, config):
    with pytest.raises(ArchiveEncodeError):
        archive(
            s3_client,
            "bucket",
            "photos/",
            archiver_options={"name_transform": lambda key: ""},
            config=config,
        )

    assert fake_boto_s3.get_calls == []


class InterruptedBody:
    """Object body whose connection drops after the first chunk."""

    def __init__(self, first_chunk: bytes):
        self._first_chunk = first_chunk
        self.reads = 0
        self.closed = False

    def read(self, amt=None):
        self.reads += 1
        if self.reads == 1:
            return self._first_chunk
        raise ReadTimeoutError(endpoint_url="https://bucket.s3.amazonaws.com")

    def close(self):
        self.closed = True


def test_body_interrupted_mid_entry_aborts_the_run(fake_boto_s3, s3_client, config):
    body = InterruptedBody(b"bravo")
    get_object = fake_boto_s3.get_object

    def get_object_with_interruption(Bucket, Key):
        response = get_object(Bucket=Bucket, Key=Key)
        if Key == "photos/b.txt":
            response["Body"] = body
        return response

    fake_boto_s3.get_object = get_object_with_interruption
    request = ArchiveRequest(source_bucket="bucket", source_prefix="photos/")
    pipeline = ArchivePipeline(s3_client, request, config)

    with pytest.raises(EntryStreamInterruptedError) as exc_info:
        pipeline.run()

    assert exc_info.value.context["key"] == "photos/b.txt"
    assert exc_info.value.context["bytes_read"] == 5
    assert pipeline.state is PipelineState.FAILED
    assert body.closed
    assert fake_boto_s3.get_calls == ["photos/a.txt", "photos/b.txt"]
    assert fake_boto_s3.uploads == {}


@pytest.mark.filterwarnings("error::pytest.PytestUnraisableExceptionWarning")
@pytest.mark.parametrize("output_format", ["zip", "tar"])
def test_failed_run_leaves_nothing_to_flush_at_collection(
    fake_boto_s3, s3_client, config, output_format
):
    with pytest.raises(S3ObjectNotFoundError):
        archive(
            s3_client,
            "bucket",
            "photos/",
            source_files=["a.txt", "nope.txt"],
            output_format=output_format,
            config=config,
        )

    gc.collect()


def test_failed_run_sends_no_bytes_after_the_failure(fake_boto_s3, s3_client, config):
    request = ArchiveRequest(
        source_bucket="bucket", source_prefix="photos/", source_files=["a.txt", "nope.txt"]
    )
    pipeline = ArchivePipeline(s3_client, request, config)

    with pytest.raises(S3ObjectNotFoundError):
        pipeline.run()

    assert pipeline.encoder.bytes_written == pipeline.pipe.bytes_written
    with pytest.raises(ArchiveEncodeError):
        pipeline.encoder.append("late.txt", io.BytesIO(b"late"))


def test_interrupt_in_producer_releases_the_upload_worker(fake_boto_s3, s3_client, config):
    def interrupt(key):
        raise SystemExit(1)

    request = ArchiveRequest(
        source_bucket="bucket",
        source_prefix="photos/",
        archiver_options={"name_transform": interrupt},
    )
    pipeline = ArchivePipeline(s3_client, request, config)

    with pytest.raises(SystemExit):
        pipeline.run()

    assert pipeline.state is PipelineState.FAILED
    assert len(fake_boto_s3.upload_calls) == 1
    assert fake_boto_s3.uploads == {}


def test_each_run_gets_its_own_pipeline(fake_boto_s3, s3_client, config):
    archiver = StreamingArchiver(s3_client, config)
    first = archiver.archive(ArchiveRequest(source_bucket="bucket", source_prefix="photos/"))
    second = archiver.archive(
        ArchiveRequest(source_bucket="bucket", source_prefix="photos/", output_format="tar")
    )

    assert first.key == "photos/archive.zip"
    assert second.key == "photos/archive.tar"
    assert len(fake_boto_s3.uploads) == 2


def test_basename_of_key_without_separator():
    assert basename("plain") == "plain"
