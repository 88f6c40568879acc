# src/s3_unzipper/publisher.py

"""
Upload orchestration for extracted entries.

An entry is either transformed (CSV) and uploaded as bytes, or streamed
straight into S3. Entry streams are single-use: every attempt, and the
fallback after a failed transform, obtains a fresh stream from the
`open_stream` callable instead of rewinding a consumed one. An attempt that
overruns its deadline is cancelled by closing its stream, and the next
attempt opens only after it has returned, so one entry stream is open at a
time.
"""

import logging
import threading
import time
from contextlib import closing
from typing import BinaryIO, Callable, Dict, Optional

from .clients import S3Client, guess_content_type
from .csv_transform import CsvTransformer
from .exceptions import (
    EntryProcessingError,
    ResourceLimitExceededError,
    RetryExhaustedError,
    S3UnzipperError,
)
from .memory import MemoryCircuitBreaker, require_headroom
from .models import ArchiveEntry, CsvOutcome, RetryPolicy
from .retry import TRANSFORM_POLICY, storage_policy as default_storage_policy, with_retry

logger = logging.getLogger(__name__)

StreamOpener = Callable[[], BinaryIO]


class AttemptStreams:
    """
    Tracks the stream opened by the running attempt so a timed-out attempt
    can be cancelled from outside its worker thread.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._current: Optional[BinaryIO] = None

    def open(self, open_stream: StreamOpener) -> BinaryIO:
        stream = open_stream()
        with self._lock:
            self._current = stream
        return stream

    def cancel(self) -> None:
        """Close the current stream; the attempt's next read raises ValueError."""
        with self._lock:
            stream, self._current = self._current, None
        if stream is not None:
            stream.close()


class UploadOrchestrator:
    """Publishes one archive entry at a time to the output bucket."""

    def __init__(
        self,
        s3_client: S3Client,
        transformer: CsvTransformer,
        breaker: MemoryCircuitBreaker,
        storage_policy: Optional[RetryPolicy] = None,
        transform_policy: RetryPolicy = TRANSFORM_POLICY,
        csv_enabled: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.s3_client = s3_client
        self.transformer = transformer
        self.breaker = breaker
        self.storage_policy = storage_policy or default_storage_policy()
        self.transform_policy = transform_policy
        self.csv_enabled = csv_enabled
        self._sleep = sleep

    def publish(
        self,
        entry: ArchiveEntry,
        open_stream: StreamOpener,
        bucket: str,
        output_key: str,
        request_id: str,
    ) -> bool:
        """
        Upload one entry. Returns True if the CSV transform was applied.

        Raises:
            EntryProcessingError: the entry could not be published; the
                caller records it and moves on to the next entry.
            ResourceLimitExceededError: the memory breaker refused work;
                the caller must abort the archive.
        """
        try:
            if self.csv_enabled and self.transformer.is_csv_file(entry.name):
                return self._publish_csv(entry, open_stream, bucket, output_key, request_id)
            self._upload_original(entry, open_stream, bucket, output_key, request_id)
            return False
        except ResourceLimitExceededError:
            raise
        except S3UnzipperError as e:
            raise EntryProcessingError(entry.name, str(e), correlation_id=request_id) from e

    def _log_context(self, entry: ArchiveEntry, output_key: str, request_id: str, operation: str):
        return {
            "operation": operation,
            "entry_name": entry.name,
            "output_key": output_key,
            "request_id": request_id,
        }

    def _metadata(self, request_id: str, csv_processed: bool) -> Dict[str, str]:
        return {"request-id": request_id, "csv-processed": str(csv_processed).lower()}

    def _transform(
        self, entry: ArchiveEntry, open_stream: StreamOpener, attempt: AttemptStreams
    ) -> CsvOutcome:
        with closing(attempt.open(open_stream)) as stream:
            return self.transformer.transform_stream(stream, entry.name)

    def _publish_csv(
        self,
        entry: ArchiveEntry,
        open_stream: StreamOpener,
        bucket: str,
        output_key: str,
        request_id: str,
    ) -> bool:
        logger.info(
            "Processing CSV file",
            extra={"entry_name": entry.name, "output_key": output_key, "request_id": request_id},
        )
        attempt = AttemptStreams()
        try:
            outcome = with_retry(
                lambda: self._transform(entry, open_stream, attempt),
                self.transform_policy,
                self._log_context(entry, output_key, request_id, "csv_transform"),
                sleep=self._sleep,
                on_timeout=attempt.cancel,
            )
        except RetryExhaustedError as e:
            logger.warning(
                "CSV processing error, uploading original file",
                extra={
                    "entry_name": entry.name,
                    "request_id": request_id,
                    "fallback_reason": "processing_error",
                    "error": str(e.last_error),
                },
            )
            self._upload_original(entry, open_stream, bucket, output_key, request_id)
            return False

        if outcome.output is None:
            logger.warning(
                "CSV processing produced no output, uploading original file",
                extra={
                    "entry_name": entry.name,
                    "request_id": request_id,
                    "fallback_reason": "processing_failed",
                },
            )
            self._upload_original(entry, open_stream, bucket, output_key, request_id)
            return False

        payload = outcome.output

        def upload_processed() -> None:
            require_headroom(self.breaker, "upload_processed_csv")
            self.s3_client.put_bytes(
                bucket,
                output_key,
                payload,
                content_type="text/csv",
                metadata=self._metadata(request_id, csv_processed=True),
            )

        with_retry(
            upload_processed,
            self.storage_policy,
            self._log_context(entry, output_key, request_id, "upload_processed_csv"),
            sleep=self._sleep,
        )
        logger.info(
            "Successfully processed and uploaded CSV",
            extra={
                "entry_name": entry.name,
                "output_key": output_key,
                "original_size": entry.uncompressed_size,
                "processed_size": len(payload),
                "rows_processed": outcome.rows_processed,
                "request_id": request_id,
            },
        )
        return True

    def _upload_original(
        self,
        entry: ArchiveEntry,
        open_stream: StreamOpener,
        bucket: str,
        output_key: str,
        request_id: str,
    ) -> None:
        content_type = guess_content_type(entry.name)
        attempt = AttemptStreams()

        def upload() -> None:
            require_headroom(self.breaker, "upload_entry")
            with closing(attempt.open(open_stream)) as stream:
                self.s3_client.upload_stream(
                    bucket,
                    output_key,
                    stream,
                    content_type=content_type,
                    metadata=self._metadata(request_id, csv_processed=False),
                )

        with_retry(
            upload,
            self.storage_policy,
            self._log_context(entry, output_key, request_id, "upload_entry"),
            sleep=self._sleep,
            on_timeout=attempt.cancel,
        )
        logger.debug(
            "Successfully uploaded extracted file",
            extra={
                "entry_name": entry.name,
                "output_key": output_key,
                "size_bytes": entry.uncompressed_size,
                "content_type": content_type,
                "request_id": request_id,
            },
        )
