"""
The Lambda Adapter for the S3 Archiver service.

This module is the main entry point for the AWS Lambda function. It is
responsible for:
1.  Initializing and configuring AWS Lambda Powertools (Logger, Tracer and
    Metrics), and routing the library's own loggers through the same
    structured handler.
2.  Parsing and validating the incoming archive request event.
3.  Invoking the core streaming archiver with an explicitly injected S3 client.
4.  Recording outcome metrics and re-raising failures so Lambda reports them.
"""

from typing import Any

import boto3
import pydantic
from aws_lambda_powertools import Logger, Metrics, Tracer
from aws_lambda_powertools.logging.utils import copy_config_to_registered_loggers
from aws_lambda_powertools.metrics import MetricUnit
from aws_lambda_powertools.utilities.typing import LambdaContext

from .clients import S3Client
from .config import get_config
from .core import StreamingArchiver, basename, full_key, relative_to
from .exceptions import (
    ArchiverError,
    InvalidArchiveEventError,
    get_error_context,
    is_retryable_error,
)
from .schemas import ArchiveEvent, ArchiverOptions, ArchiveRequest, ArchiveResult

# --- Global & Reusable Components ---
CONFIG = get_config()

logger = Logger(service=CONFIG.service_name, level=CONFIG.log_level)
copy_config_to_registered_loggers(source_logger=logger, include={"s3_archiver"})
tracer = Tracer(service=CONFIG.service_name)
metrics = Metrics(
    namespace="S3Archiver",
    service=CONFIG.service_name,
)

s3_boto_client = boto3.client("s3")
s3_client = S3Client.from_config(s3_client=s3_boto_client, config=CONFIG)
archiver = StreamingArchiver(s3_client, CONFIG)


def build_archive_request(event: ArchiveEvent) -> ArchiveRequest:
    """Turns a validated event into a request, resolving the naming policy."""
    if event.entry_naming == "relative":
        name_transform = relative_to(event.source_prefix)
    elif event.entry_naming == "full":
        name_transform = full_key
    else:
        name_transform = basename

    return ArchiveRequest(
        source_bucket=event.source_bucket,
        source_prefix=event.source_prefix,
        source_files=event.source_files,
        output_filename=event.output_filename,
        output_format=event.output_format,
        upload_options=event.upload_options,
        archiver_options=ArchiverOptions(name_transform=name_transform),
    )


@tracer.capture_method
def _create_archive(request: ArchiveRequest) -> ArchiveResult:
    return archiver.archive(request)


@logger.inject_lambda_context()
@tracer.capture_lambda_handler
@metrics.log_metrics(capture_cold_start_metric=True)
def handler(event: dict, context: LambdaContext) -> dict[str, Any]:
    """Main Lambda handler for archive requests."""
    metrics.add_dimension("environment", CONFIG.environment)

    try:
        parsed_event = ArchiveEvent.model_validate(event)
    except pydantic.ValidationError as e:
        logger.error(
            "Invalid archive event.",
            extra={"errors": e.errors(include_url=False, include_input=False)},
        )
        metrics.add_metric(name="InvalidEvents", unit=MetricUnit.Count, value=1)
        raise InvalidArchiveEventError("Invalid archive event provided") from e

    request = build_archive_request(parsed_event)
    logger.info(
        "Received archive request",
        extra={
            "source_bucket": request.source_bucket,
            "source_prefix": request.source_prefix,
            "explicit_files": len(request.source_files),
            "output_key": request.output_key,
            "request_id": context.aws_request_id,
        },
    )

    try:
        result = _create_archive(request)
    except ArchiverError as e:
        retryable = is_retryable_error(e)
        metrics.add_metric(name="ArchiveFailures", unit=MetricUnit.Count, value=1)
        log_level = logger.warning if retryable else logger.error
        log_level(f"Archive creation failed: {e}", extra={"error": get_error_context(e)})
        raise

    metrics.add_metric(name="ArchivesCreated", unit=MetricUnit.Count, value=1)
    metrics.add_metric(
        name="ArchiveSizeBytes", unit=MetricUnit.Bytes, value=result.byte_size
    )
    metrics.add_metric(
        name="ArchiveEntries", unit=MetricUnit.Count, value=result.entry_count
    )
    return result.model_dump()
