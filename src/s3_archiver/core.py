# src/s3_archiver/core.py

"""
Core business logic for streaming S3 objects into a single archive object.

The main entry point, `archive`, resolves the set of source keys, streams each
object through a ZIP or TAR encoder, and uploads the encoder's output back to
S3 while it is still being produced. Nothing holds the whole archive: the
encoder and the upload are joined by a bounded pipe, and the encoder blocks
whenever the upload falls behind.

Two threads take part in every run:
- the calling thread enumerates entries, reads them one at a time, appends
  them to the encoder and finalizes it;
- an upload worker hands the pipe's read end to boto3's managed upload.

The first failure from either side aborts the run and is re-raised.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Iterable, Mapping

from .clients import S3Client
from .config import AppConfig
from .encoders import ArchiveEncoder, create_encoder
from .exceptions import (
    ArchiveCreationError,
    ArchiverError,
    InvalidEntryNameError,
    UploadError,
    get_error_context,
)
from .schemas import (
    ArchiveRequest,
    ArchiveResult,
    ArchiverOptions,
    PipelineState,
    UploadedObject,
)
from .streams import ArchivePipe, ConduitClosedError

logger = logging.getLogger(__name__)

NameTransform = Callable[[str], str]


# --- Naming policies ---
def basename(key: str) -> str:
    """Default entry name: everything after the last ``/``."""
    return key[key.rfind("/") + 1 :]


def full_key(key: str) -> str:
    return key


def relative_to(prefix: str) -> NameTransform:
    """Entry names relative to *prefix*, keeping any sub-directories."""

    def transform(key: str) -> str:
        return key[len(prefix) :] if prefix and key.startswith(prefix) else key

    return transform


def archive_entry_name(key: str, name_transform: NameTransform | None = None) -> str:
    """
    Derives the in-archive name for *key*. Empty names are rejected rather
    than skipped; colliding names are left alone.
    """
    name = name_transform(key) if name_transform else basename(key)
    if not isinstance(name, str) or not name:
        raise InvalidEntryNameError(key=key, name=name)
    return name


# --- Entry Enumerator ---
def resolve_entries(
    s3_client: S3Client,
    bucket: str,
    prefix: str = "",
    source_files: Iterable[str] = (),
) -> list[str]:
    """
    Returns the ordered list of object keys to archive.

    Explicit *source_files* are prefixed and returned as-is, without a listing
    call or an existence check. Otherwise every page under *prefix* is listed,
    following continuation tokens until S3 reports no more pages. A key equal
    to the prefix itself (the "directory" marker) is dropped.
    """
    explicit = list(source_files)
    if explicit:
        return [f"{prefix}{name}" for name in explicit]

    keys: list[str] = []
    continuation_token: str | None = None
    page_number = 0
    while True:
        page_number += 1
        page = s3_client.list_objects_page(
            bucket, prefix, continuation_token, page=page_number
        )
        keys.extend(key for key in page.keys if key != prefix)
        logger.info(
            f"Found {len(keys)} files in {prefix!r}",
            extra={"bucket": bucket, "page": page_number},
        )
        if not page.is_truncated:
            break
        continuation_token = page.next_token

    logger.info(
        f"Found {len(keys)} total files in {prefix!r}",
        extra={"bucket": bucket, "pages": page_number},
    )
    return keys


# --- Pipeline Orchestrator ---
class ArchivePipeline:
    """
    One archive run. Owns its pipe, encoder and upload worker; never reused.
    """

    def __init__(self, s3_client: S3Client, request: ArchiveRequest, config: AppConfig):
        self._s3 = s3_client
        self.request = request
        self._config = config
        self.state = PipelineState.INIT
        self.pipe = ArchivePipe(config.pipe_buffer_size_bytes)
        self.encoder: ArchiveEncoder = create_encoder(
            request.output_format,
            self.pipe,
            chunk_size=config.read_chunk_size_bytes,
            spool_threshold=config.spool_file_max_size_bytes,
        )

    def _transition(self, state: PipelineState) -> None:
        logger.debug(
            "Pipeline state change",
            extra={"from_state": self.state.value, "to_state": state.value},
        )
        self.state = state

    def _upload(self) -> UploadedObject:
        reader = self.pipe.reader
        try:
            return self._s3.upload_stream(
                bucket=self.request.source_bucket,
                key=self.request.output_key,
                stream=reader,
                upload_options=self.request.upload_options,
                content_type=self.request.output_format.content_type,
            )
        finally:
            # Unblocks the producer if the upload ended early.
            reader.close()

    def _produce(self) -> None:
        request = self.request
        self._transition(PipelineState.ENUMERATING)
        keys = resolve_entries(
            self._s3, request.source_bucket, request.source_prefix, request.source_files
        )
        logger.debug("Working with source files", extra={"keys": keys})

        self._transition(PipelineState.STREAMING)
        name_transform = request.archiver_options.name_transform
        for key in keys:
            name = archive_entry_name(key, name_transform)
            with self._s3.get_entry_stream(request.source_bucket, key) as stream:
                self.encoder.append(
                    name, stream, size=stream.size, modified=stream.last_modified
                )

        self._transition(PipelineState.FINALIZING)
        self.encoder.finalize()
        self.pipe.close()

    def run(self) -> ArchiveResult:
        request = self.request
        failure: BaseException | None = None

        with ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="archive-upload"
        ) as executor:
            # The upload starts consuming before the first entry exists.
            upload: Future[UploadedObject] = executor.submit(self._upload)
            try:
                self._produce()
            except ConduitClosedError:
                # The upload side stopped first; its error is the real one.
                failure = upload.exception() or ArchiveCreationError(
                    "upload stopped reading before the archive was complete"
                )
            except ArchiverError as e:
                self.pipe.abort(e)
                upload.exception()
                failure = e
            except Exception as e:
                self.pipe.abort(e)
                upload.exception()
                failure = ArchiveCreationError(f"unexpected error: {e}")
                failure.__cause__ = e
            except BaseException as e:
                # The executor joins the upload worker on exit; it must not stay blocked.
                self.pipe.abort(e)
                self.encoder.discard()
                self._transition(PipelineState.FAILED)
                raise

            if failure is None:
                upload_error = upload.exception()
                if upload_error is not None:
                    failure = upload_error

        if failure is not None:
            self.encoder.discard()
            self._transition(PipelineState.FAILED)
            logger.error(
                "Archive creation failed",
                extra={"key": request.output_key, "error": get_error_context(failure)},
            )
            raise failure

        uploaded = upload.result()
        byte_size = self.encoder.bytes_written
        if not (byte_size == self.pipe.bytes_written == self.pipe.bytes_read):
            self._transition(PipelineState.FAILED)
            raise UploadError(
                bucket=uploaded["bucket"],
                key=uploaded["key"],
                reason="uploaded byte count does not match archive size",
                context={
                    "encoded_bytes": byte_size,
                    "piped_bytes": self.pipe.bytes_written,
                    "uploaded_bytes": self.pipe.bytes_read,
                },
            )

        self._transition(PipelineState.SUCCEEDED)
        result = ArchiveResult(
            bucket=uploaded["bucket"],
            key=uploaded["key"],
            byte_size=byte_size,
            entry_count=self.encoder.entry_count,
        )
        logger.info(
            "Successfully created archive",
            extra={
                "bucket": result.bucket,
                "key": result.key,
                "byte_size": result.byte_size,
                "entry_count": result.entry_count,
            },
        )
        return result


class StreamingArchiver:
    """Runs archive requests against an injected S3 client."""

    def __init__(self, s3_client: S3Client, config: AppConfig | None = None):
        self._s3 = s3_client
        self._config = config or AppConfig()

    def archive(self, request: ArchiveRequest) -> ArchiveResult:
        logger.info(
            "Starting archive creation",
            extra={
                "bucket": request.source_bucket,
                "prefix": request.source_prefix,
                "explicit_files": len(request.source_files),
                "output_key": request.output_key,
                "format": request.output_format.value,
            },
        )
        return ArchivePipeline(self._s3, request, self._config).run()


def archive(
    s3_client: S3Client,
    source_bucket: str,
    source_prefix: str = "",
    source_files: Iterable[str] | None = None,
    output_filename: str = "archive",
    output_format: str = "zip",
    upload_options: Mapping[str, Any] | None = None,
    archiver_options: ArchiverOptions | Mapping[str, Any] | None = None,
    config: AppConfig | None = None,
) -> ArchiveResult:
    """
    Archives objects from *source_bucket* into
    ``{source_prefix}{output_filename}.{format}`` in the same bucket.

    Unrecognized formats fall back to ZIP. Raises the first ArchiverError
    hit by any stage; on failure no result is returned and a partially
    uploaded object may be left behind.
    """
    request = ArchiveRequest(
        source_bucket=source_bucket,
        source_prefix=source_prefix,
        source_files=list(source_files or []),
        output_filename=output_filename,
        output_format=output_format,
        upload_options=dict(upload_options or {}),
        archiver_options=archiver_options,
    )
    return StreamingArchiver(s3_client, config).archive(request)
