# src/s3_unzipper/core.py

"""
Core business logic for unpacking one archive.

`ArchivePipeline.process_archive` drives a single zip end-to-end: size check,
bounded download, lazy walk of the central directory under the resource
guard, and publication of each admitted entry. Entries are processed
strictly one at a time, so peak memory is the compressed archive plus one
entry's working set.

Failures fall into two groups. Per-entry failures are recorded and the walk
continues; hard limits (entry count, ratio, total size, memory) and a corrupt
archive end the walk immediately and make the result unsuccessful.
"""

import logging
from typing import Optional

from .archive import ResourceGuard, ZipArchiveReader, describe_archive
from .clients import S3Client
from .config import AppConfig
from .csv_transform import CsvTransformer
from .exceptions import (
    ArchiveTooLargeError,
    CorruptArchiveError,
    EntryProcessingError,
    MemoryLimitExceededError,
    ResourceLimitExceededError,
    RetryExhaustedError,
    UnsafePathError,
    get_error_context,
)
from .filenames import extract_stem, filename_debug_info
from .memory import MemoryCircuitBreaker, get_memory_breaker, require_headroom
from .models import ArchiveEntry, ArchiveRef, ProcessingResult, ResourceLimits, RunState
from .publisher import UploadOrchestrator
from .retry import TRANSFORM_POLICY, storage_policy, with_retry
from .security import sanitize_entry_path

logger = logging.getLogger(__name__)

_LISTING_LIMIT = 50


def build_output_key(output_path: str, entry_name: str) -> str:
    """``<output_path><stem>/<sanitized entry path>``; raises UnsafePathError."""
    return f"{output_path}{extract_stem(entry_name)}/{sanitize_entry_path(entry_name)}"


class ArchivePipeline:
    """
    Processes archives one at a time.

    The memory breaker and the upload orchestrator are injectable; by default
    the process-wide breaker is used so its trip state carries across archives.
    """

    def __init__(
        self,
        s3_client: S3Client,
        config: AppConfig,
        breaker: Optional[MemoryCircuitBreaker] = None,
        publisher: Optional[UploadOrchestrator] = None,
    ):
        self.s3_client = s3_client
        self.config = config
        self.breaker = breaker or get_memory_breaker(config)
        self.storage_policy = storage_policy(config)
        self.limits = ResourceLimits(
            max_entry_count=config.max_entry_count,
            max_total_uncompressed_bytes=config.max_total_uncompressed_bytes,
            max_compression_ratio=config.max_compression_ratio,
        )
        self.publisher = publisher or UploadOrchestrator(
            s3_client=s3_client,
            transformer=CsvTransformer(
                timestamp_column=config.csv_timestamp_column,
                skip_malformed=config.csv_skip_malformed,
            ),
            breaker=self.breaker,
            storage_policy=self.storage_policy,
            transform_policy=TRANSFORM_POLICY,
            csv_enabled=config.csv_processing_enabled,
        )

    def _download(self, ref: ArchiveRef, request_id: str) -> bytes:
        def download() -> bytes:
            require_headroom(self.breaker, "download_archive")
            return self.s3_client.download_bytes(
                ref.bucket, ref.key, self.config.max_archive_size_bytes
            )

        return with_retry(
            download,
            self.storage_policy,
            {"operation": "download_archive", "key": ref.key, "request_id": request_id},
        )

    def process_archive(self, ref: ArchiveRef, request_id: str) -> ProcessingResult:
        """Unpack one archive and publish its entries. Never raises for archive-level failures."""
        state = RunState()
        log_extra = {"key": ref.key, "request_id": request_id}

        # --- 1. Size check before any bytes are fetched ---
        try:
            size = with_retry(
                lambda: self.s3_client.head_object_size(ref.bucket, ref.key),
                self.storage_policy,
                {"operation": "head_archive", "key": ref.key, "request_id": request_id},
            )
        except RetryExhaustedError as e:
            logger.error(
                "Failed to read archive metadata", extra={**log_extra, **get_error_context(e)}
            )
            return ProcessingResult(success=False, files_processed=0, errors=[str(e)])

        if size > self.config.max_archive_size_bytes:
            error = ArchiveTooLargeError(size, self.config.max_archive_size_bytes)
            logger.error(
                "Archive exceeds size limit, skipping",
                extra={**log_extra, **get_error_context(error)},
            )
            return ProcessingResult(success=False, files_processed=0, errors=[str(error)])

        # --- 2. Bounded download and open ---
        try:
            buffer = self._download(ref, request_id)
            reader = ZipArchiveReader(buffer)
        except ResourceLimitExceededError as e:
            logger.error(
                "Memory limit reached before download",
                extra={**log_extra, **get_error_context(e)},
            )
            return ProcessingResult(success=False, files_processed=0, errors=[str(e)])
        except (RetryExhaustedError, CorruptArchiveError) as e:
            logger.error("Archive could not be opened", extra={**log_extra, "error": str(e)})
            return ProcessingResult(success=False, files_processed=0, errors=[str(e)])

        logger.info(
            "Processing archive",
            extra={**log_extra, "size_bytes": len(buffer), "entry_count": reader.entry_count},
        )

        # --- 3. Entry loop ---
        guard = ResourceGuard(self.limits)
        aborted = False
        try:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(
                    "Archive listing",
                    extra={**log_extra, "entries": describe_archive(buffer, limit=_LISTING_LIMIT)},
                )
            for entry in reader.entries():
                guard.admit(entry, state)
                if entry.is_directory or entry.uncompressed_size == 0:
                    continue
                require_headroom(self.breaker, "process_entry")

                try:
                    self._process_entry(reader, entry, ref, request_id)
                except EntryProcessingError as e:
                    logger.warning(
                        "Entry failed, continuing with next entry",
                        extra={**log_extra, "entry_name": entry.name, "error": str(e)},
                    )
                    state.errors.append(str(e))
                    continue

                state.files_processed += 1
                if state.files_processed % self.config.gc_every_n_entries == 0:
                    self.breaker.request_gc("entry_batch")
        except ResourceLimitExceededError as e:
            aborted = True
            level = logger.critical if isinstance(e, MemoryLimitExceededError) else logger.error
            level("Archive aborted by resource limit", extra={**log_extra, **get_error_context(e)})
            state.errors.append(str(e))
        except CorruptArchiveError as e:
            aborted = True
            logger.error("Archive is corrupt, aborting", extra={**log_extra, "error": str(e)})
            state.errors.append(str(e))

        # --- 4. Aggregate ---
        success = not aborted and not (state.files_processed == 0 and state.errors)
        logger.info(
            "Archive processing finished",
            extra={
                **log_extra,
                "success": success,
                "files_processed": state.files_processed,
                "entries_admitted": state.entries_admitted,
                "total_uncompressed_bytes": state.total_uncompressed_bytes,
                "error_count": len(state.errors),
            },
        )
        return ProcessingResult(
            success=success, files_processed=state.files_processed, errors=state.errors
        )

    def _process_entry(
        self, reader: ZipArchiveReader, entry: ArchiveEntry, ref: ArchiveRef, request_id: str
    ) -> None:
        try:
            output_key = build_output_key(self.config.output_path, entry.name)
        except UnsafePathError as e:
            raise EntryProcessingError(entry.name, str(e), correlation_id=request_id) from e

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "Processing archive entry",
                extra={
                    "key": ref.key,
                    "output_key": output_key,
                    "request_id": request_id,
                    "filename_info": filename_debug_info(entry.name),
                },
            )

        self.publisher.publish(
            entry,
            lambda: reader.open_entry(entry),
            self.config.output_bucket,
            output_key,
            request_id,
        )
