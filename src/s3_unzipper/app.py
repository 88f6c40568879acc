"""
The Lambda Adapter & Orchestrator for the S3 Unzipper service.

This module is the main entry point for the AWS Lambda function. It is
responsible for:
1.  Initializing and configuring AWS Lambda Powertools (Logger, Tracer, Metrics)
    and routing the package's module loggers through the same redacting handler.
2.  Parsing and validating incoming S3 event notification records.
3.  Filtering out records that are not archives in the configured input path.
4.  Invoking the core business logic (`ArchivePipeline.process_archive`) for
    each archive, one at a time, while watching the remaining execution time.
5.  Aggregating the per-archive results into the invocation response.
"""

import json
from datetime import datetime, timezone
from typing import Any

import boto3
import pydantic
from aws_lambda_powertools import Logger, Metrics, Tracer
from aws_lambda_powertools.logging.utils import copy_config_to_registered_loggers
from aws_lambda_powertools.metrics import MetricUnit
from aws_lambda_powertools.utilities.typing import LambdaContext
from botocore.config import Config

from .clients import S3Client
from .config import get_config
from .core import ArchivePipeline
from .exceptions import ArchiveBatchError, get_error_context
from .models import ArchiveRef, ProcessingResult
from .redaction import RedactingFilter, redact_key
from .schemas import S3EventNotificationRecord, S3EventRecord

# --- Global & Reusable Components ---
CONFIG = get_config()

logger = Logger(service=CONFIG.service_name, level=CONFIG.log_level)
logger.registered_handler.addFilter(RedactingFilter())
copy_config_to_registered_loggers(source_logger=logger, include={"s3_unzipper"})

tracer = Tracer(service=CONFIG.service_name)
metrics = Metrics(
    namespace="S3Unzipper",
    service=CONFIG.service_name,
)

# Socket deadlines bound any attempt the retry executor has to wait out
s3_boto_client = boto3.client(
    "s3",
    config=Config(
        connect_timeout=CONFIG.s3_operation_timeout_seconds,
        read_timeout=CONFIG.s3_operation_timeout_seconds,
    ),
)
s3_client = S3Client(s3_client=s3_boto_client, kms_key_id=CONFIG.kms_key_id)

_pipeline: ArchivePipeline | None = None


def get_pipeline() -> ArchivePipeline:
    """The pipeline is built on first use and reused across warm invocations."""
    global _pipeline
    if _pipeline is None:
        _pipeline = ArchivePipeline(s3_client=s3_client, config=CONFIG)
    return _pipeline


def _reset_memory_breaker() -> None:
    """Close a breaker tripped by an earlier invocation, if memory has recovered since."""
    breaker = get_pipeline().breaker
    if breaker.tripped:
        breaker.reset()


def _select_archive(record: S3EventNotificationRecord) -> ArchiveRef | None:
    """Return the archive to process, or None if the record should be skipped."""
    ref = record.to_archive_ref()
    log_extra = {"bucket": ref.bucket, "key": ref.key}

    if not record.is_object_created:
        logger.info(
            "Skipping non-ObjectCreated event",
            extra={**log_extra, "event_name": record.event_name},
        )
        return None
    if ref.bucket != CONFIG.bucket_name:
        logger.warning(
            "Skipping record from unexpected bucket",
            extra={**log_extra, "expected_bucket": CONFIG.bucket_name},
        )
        return None
    if not ref.key.lower().endswith(".zip"):
        logger.warning("Skipping non-zip file", extra=log_extra)
        return None
    if not ref.key.startswith(CONFIG.input_path):
        logger.warning(
            "Skipping file not in input path",
            extra={**log_extra, "expected_input_path": CONFIG.input_path},
        )
        return None
    return ref


def _process_one(ref: ArchiveRef, request_id: str) -> ProcessingResult:
    """Process one archive; unexpected errors become a failed result."""
    try:
        result = get_pipeline().process_archive(ref, request_id)
    except Exception as e:
        # Anything escaping the pipeline is a bug; fail this archive, keep the batch going
        logger.exception(
            "Unexpected error while processing archive",
            extra={"key": ref.key, **get_error_context(e)},
        )
        result = ProcessingResult(
            success=False,
            files_processed=0,
            errors=[f"Failed to process zip file {redact_key(ref.key)}: {e}"],
        )

    metrics.add_metric(
        name="FilesExtracted", unit=MetricUnit.Count, value=result.files_processed
    )
    if result.errors:
        metrics.add_metric(
            name="EntryErrors", unit=MetricUnit.Count, value=len(result.errors)
        )
    metrics.add_metric(
        name="ArchivesProcessed" if result.success else "ArchiveFailures",
        unit=MetricUnit.Count,
        value=1,
    )
    logger.info(
        "Completed processing S3 record",
        extra={
            "key": ref.key,
            "success": result.success,
            "files_processed": result.files_processed,
            "error_count": len(result.errors),
        },
    )
    return result


@logger.inject_lambda_context()
@tracer.capture_lambda_handler
@metrics.log_metrics(capture_cold_start_metric=True)
def handler(event: dict, context: LambdaContext) -> dict[str, Any]:
    """Main Lambda handler for S3 ObjectCreated notifications."""
    metrics.add_dimension("environment", CONFIG.environment)
    request_id = context.aws_request_id
    _reset_memory_breaker()

    raw_records: list[S3EventRecord] = event.get("Records") or []
    logger.info(
        "S3 Unzipper Lambda started",
        extra={
            "event_records": len(raw_records),
            "remaining_time_ms": context.get_remaining_time_in_millis(),
        },
    )

    # --- 1. Parse and filter ---
    archives: list[ArchiveRef] = []
    for index, raw_record in enumerate(raw_records):
        try:
            record = S3EventNotificationRecord.model_validate(raw_record)
        except pydantic.ValidationError as e:
            logger.warning(
                "Skipping invalid S3 event record",
                extra={
                    "record_index": index,
                    "errors": [err.get("msg") for err in e.errors()],
                },
            )
            continue
        ref = _select_archive(record)
        if ref is not None:
            archives.append(ref)

    # --- 2. Process sequentially under the timeout guard ---
    results: list[ProcessingResult] = []
    for ref in archives:
        results.append(_process_one(ref, request_id))

        remaining_ms = context.get_remaining_time_in_millis()
        if remaining_ms < CONFIG.timeout_guard_threshold_ms:
            logger.warning(
                "Lambda function running low on time, stopping processing",
                extra={
                    "remaining_time_ms": remaining_ms,
                    "processed_archives": len(results),
                    "total_archives": len(archives),
                },
            )
            break

    # --- 3. Aggregate ---
    succeeded = [r for r in results if r.success]
    total_files = sum(r.files_processed for r in results)
    overall_success = len(succeeded) == len(results)

    logger.info(
        "S3 Unzipper Lambda completed",
        extra={
            "overall_success": overall_success,
            "archives_processed": len(results),
            "total_archives": len(archives),
            "total_files_processed": total_files,
            "total_errors": sum(len(r.errors) for r in results),
            "remaining_time_ms": context.get_remaining_time_in_millis(),
        },
    )

    if results and not succeeded:
        summary = " | ".join("; ".join(r.errors) for r in results if r.errors)
        raise ArchiveBatchError(summary, correlation_id=request_id)

    return {
        "success": overall_success,
        "archives_processed": len(results),
        "total_archives": len(archives),
        "files_processed": total_files,
        "results": [r.to_dict() for r in results],
    }


def health_check() -> dict[str, Any]:
    """Liveness check exposing only non-sensitive configuration."""
    return {
        "statusCode": 200,
        "body": json.dumps(
            {
                "message": "S3 Unzipper Lambda is healthy",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "config": {
                    "input_path": CONFIG.input_path,
                    "output_path": CONFIG.output_path,
                    "log_level": CONFIG.log_level,
                    "environment": CONFIG.environment,
                    "csv_processing_enabled": CONFIG.csv_processing_enabled,
                },
            }
        ),
    }
