# src/s3_unzipper/models.py

"""
Value objects shared by the archive pipeline.

Everything here is a plain dataclass: immutable views produced by one stage
and consumed by the next, plus the single mutable accumulator (`RunState`)
owned by one `ArchivePipeline.process_archive` call.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from .exceptions import NonRetryableError, OperationTimeoutError

MIB = 1024 * 1024


@dataclass(frozen=True, slots=True)
class ArchiveRef:
    """Location and size of one archive in the object store."""

    bucket: str
    key: str
    size: int


@dataclass(frozen=True, slots=True)
class ArchiveEntry:
    """
    One central-directory record.

    The trailing fields locate the entry's data inside the archive buffer and
    are only meaningful to the reader that produced the entry.
    """

    name: str
    uncompressed_size: int
    compressed_size: int
    is_directory: bool
    compression_method: int = 0
    flags: int = 0
    crc32: int = 0
    header_offset: int = 0

    @property
    def is_encrypted(self) -> bool:
        return bool(self.flags & 0x1)


@dataclass(frozen=True, slots=True)
class ResourceLimits:
    max_entry_count: int = 10_000
    max_total_uncompressed_bytes: int = 200 * MIB
    max_compression_ratio: float = 100.0


@dataclass(slots=True)
class RunState:
    entries_admitted: int = 0
    total_uncompressed_bytes: int = 0
    files_processed: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class FilenameComponents:
    base_name: str
    extension: str
    date_parts: Tuple[str, ...]
    non_date_parts: Tuple[str, ...]
    stem_name: str


@dataclass(frozen=True, slots=True)
class CsvOutcome:
    """Result of one CSV transform. `output is None` means upload the original bytes."""

    processed: bool
    rows_processed: int
    output: Optional[bytes]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """
    How one class of operation is retried. Delays and timeouts are in seconds.

    `retryable_errors` holds substrings matched against an error's class name,
    its error code and its message.
    """

    name: str
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    timeout: Optional[float] = 60.0
    retryable_errors: FrozenSet[str] = frozenset()
    retry_on_timeout: bool = True

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, OperationTimeoutError):
            return self.retry_on_timeout
        if isinstance(error, NonRetryableError):
            return False

        haystacks = (
            type(error).__name__,
            str(getattr(error, "error_code", "") or ""),
            str(error),
        )
        return any(
            needle in haystack for needle in self.retryable_errors for haystack in haystacks
        )


@dataclass(frozen=True, slots=True)
class MemorySample:
    used_bytes: int
    total_bytes: int
    usage_percentage: float


@dataclass(slots=True)
class ProcessingResult:
    """Externally visible outcome of one archive."""

    success: bool
    files_processed: int
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "files_processed": self.files_processed,
            "errors": list(self.errors),
        }
