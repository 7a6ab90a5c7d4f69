# src/s3_archiver/clients.py

"""
Client wrapper for the S3 operations the archiver needs: listing a prefix,
streaming an object body, and uploading a stream of unknown length.

The wrapper maps botocore failures onto the service's exception hierarchy so
the pipeline can tell which stage broke without knowing about boto3.
"""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, BinaryIO, cast

from boto3.s3.transfer import TransferConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    IncompleteReadError,
    ReadTimeoutError,
    ResponseStreamingError,
)

from .config import AppConfig
from .exceptions import (
    EntryReadError,
    EntryStreamInterruptedError,
    EnumerationError,
    S3AccessDeniedError,
    S3ObjectNotFoundError,
    S3ThrottlingError,
    S3TimeoutError,
    UploadError,
)
from .schemas import ListingPage, UploadedObject

if TYPE_CHECKING:
    from mypy_boto3_s3.client import S3Client as S3ClientType

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}
_ACCESS_DENIED_CODES = {"AccessDenied", "403", "Forbidden"}
_THROTTLING_CODES = {"Throttling", "ThrottlingException", "RequestLimitExceeded", "SlowDown"}
_TIMEOUT_CODES = {"RequestTimeout", "RequestTimeoutException"}

# Errors botocore raises while a response body is being consumed.
_STREAM_ERRORS = (
    ReadTimeoutError,
    ResponseStreamingError,
    IncompleteReadError,
    ConnectionClosedError,
)


def _aws_error_context(error: ClientError) -> dict[str, Any]:
    return {
        "aws_error_code": error.response.get("Error", {}).get("Code", "Unknown"),
        "aws_error_message": error.response.get("Error", {}).get("Message", ""),
    }


class S3EntryStream:
    """
    Forward-only view over an object body.

    Exposes the object's size and modification time so encoders can write
    headers up front, and turns mid-stream network failures into
    EntryStreamInterruptedError.
    """

    def __init__(
        self,
        bucket: str,
        key: str,
        body: BinaryIO,
        size: int | None = None,
        last_modified: datetime | None = None,
    ):
        self.bucket = bucket
        self.key = key
        self.size = size
        self.last_modified = last_modified
        self._body = body
        self.bytes_read = 0

    def read(self, amt: int | None = None) -> bytes:
        try:
            data = self._body.read(amt) if amt is not None and amt >= 0 else self._body.read()
        except _STREAM_ERRORS as e:
            raise EntryStreamInterruptedError(
                bucket=self.bucket,
                key=self.key,
                bytes_read=self.bytes_read,
                context={"stream_error": str(e)},
            ) from e
        self.bytes_read += len(data)
        return data

    def readable(self) -> bool:
        return True

    def close(self) -> None:
        self._body.close()

    def __enter__(self) -> "S3EntryStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class S3Client:
    """
    A wrapper for S3 client operations, focused on streaming data.
    """

    def __init__(
        self,
        s3_client: "S3ClientType",
        transfer_config: TransferConfig | None = None,
    ):
        """
        Initializes the S3Client.

        Args:
            s3_client: A typed boto3 S3 client.
            transfer_config: Optional s3transfer tuning for uploads.
        """
        self._client = s3_client
        self._transfer_config = transfer_config or TransferConfig()

    @classmethod
    def from_config(cls, s3_client: "S3ClientType", config: AppConfig) -> "S3Client":
        transfer_config = TransferConfig(
            multipart_chunksize=config.multipart_chunk_size_bytes,
            max_concurrency=config.upload_max_concurrency,
        )
        return cls(s3_client=s3_client, transfer_config=transfer_config)

    def list_objects_page(
        self,
        bucket: str,
        prefix: str = "",
        continuation_token: str | None = None,
        page: int = 1,
    ) -> ListingPage:
        """
        Fetches one ListObjectsV2 page. ``Prefix`` and ``ContinuationToken``
        are only sent when set.
        """
        params: dict[str, Any] = {"Bucket": bucket}
        if prefix:
            params["Prefix"] = prefix
        if continuation_token is not None:
            params["ContinuationToken"] = continuation_token

        try:
            response = self._client.list_objects_v2(**params)
        except ClientError as e:
            raise EnumerationError(
                bucket=bucket,
                prefix=prefix,
                page=page,
                reason=_aws_error_context(e)["aws_error_message"] or str(e),
                context=_aws_error_context(e),
            ) from e
        except BotoCoreError as e:
            raise EnumerationError(
                bucket=bucket, prefix=prefix, page=page, reason=str(e)
            ) from e

        keys = [content["Key"] for content in response.get("Contents", [])]
        return ListingPage(
            keys=keys,
            next_token=response.get("NextContinuationToken"),
            is_truncated=bool(response.get("IsTruncated", False)),
        )

    def get_entry_stream(self, bucket: str, key: str) -> S3EntryStream:
        """
        Opens an S3 object's body as a forward-only stream.
        Raises specific S3 exceptions based on the error type.
        """
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
        except ClientError as e:
            context = _aws_error_context(e)
            error_code = context["aws_error_code"]

            # Map boto3 error codes to our specific exception types
            if error_code in _NOT_FOUND_CODES:
                raise S3ObjectNotFoundError(bucket=bucket, key=key, context=context) from e
            elif error_code in _ACCESS_DENIED_CODES:
                raise S3AccessDeniedError(bucket=bucket, key=key, context=context) from e
            elif error_code in _THROTTLING_CODES:
                raise S3ThrottlingError(bucket=bucket, key=key, context=context) from e
            elif error_code in _TIMEOUT_CODES:
                raise S3TimeoutError(bucket=bucket, key=key, context=context) from e
            else:
                raise EntryReadError(
                    bucket=bucket,
                    key=key,
                    reason=f"S3 client error: {context['aws_error_message']}",
                    error_code="S3_CLIENT_ERROR",
                    context=context,
                ) from e
        except (ReadTimeoutError, EndpointConnectionError) as e:
            raise S3TimeoutError(
                bucket=bucket, key=key, context={"connection_error": str(e)}
            ) from e

        return S3EntryStream(
            bucket=bucket,
            key=key,
            body=cast(BinaryIO, response["Body"]),
            size=response.get("ContentLength"),
            last_modified=response.get("LastModified"),
        )

    def upload_stream(
        self,
        bucket: str,
        key: str,
        stream: BinaryIO,
        upload_options: dict[str, Any] | None = None,
        content_type: str | None = None,
    ) -> UploadedObject:
        """
        Uploads a non-seekable stream via a managed multipart upload.

        s3transfer reads the stream chunk by chunk, so the total size is never
        needed up front. ``upload_options`` are merged over our defaults and
        passed through as ``ExtraArgs`` untouched.
        """
        extra_args: dict[str, Any] = {}
        if content_type:
            extra_args["ContentType"] = content_type
        extra_args.update(upload_options or {})

        logger.info(
            "Uploading archive stream",
            extra={"bucket": bucket, "key": key, "extra_args": sorted(extra_args)},
        )

        try:
            self._client.upload_fileobj(
                Fileobj=stream,
                Bucket=bucket,
                Key=key,
                ExtraArgs=extra_args,
                Config=self._transfer_config,
            )
        except ClientError as e:
            context = _aws_error_context(e)
            raise UploadError(
                bucket=bucket,
                key=key,
                reason=context["aws_error_message"] or context["aws_error_code"],
                context=context,
            ) from e
        except (BotoCoreError, ValueError) as e:
            raise UploadError(bucket=bucket, key=key, reason=str(e)) from e

        logger.debug(
            "Upload completed successfully",
            extra={"bucket": bucket, "key": key},
        )
        return {"bucket": bucket, "key": key}
