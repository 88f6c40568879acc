import logging
import os
import re
from dataclasses import dataclass
from functools import lru_cache

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = ["AppConfig", "ConfigurationError", "get_config"]

_BUCKET_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9\-]*[a-z0-9]$")
_COLUMN_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_RESERVED_COLUMN_WORDS = ("password", "secret", "key", "token", "credential")
_TRUE_WORDS = ("true", "1", "yes", "on")


def _env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUE_WORDS


def _normalize_prefix(raw: str) -> str:
    """Strip traversal and reserved characters, force a single trailing slash."""
    prefix = raw.replace("..", "")
    prefix = re.sub(r'[<>:"|?*\\]', "", prefix).lstrip("/")
    if prefix and not prefix.endswith("/"):
        prefix += "/"
    return prefix


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Application configuration loaded from environment variables."""

    # --- Required Variables ---
    bucket_name: str
    service_name: str
    environment: str

    # --- Storage Layout ---
    output_bucket: str
    input_path: str
    output_path: str
    kms_key_id: str | None
    log_level: str

    # --- Archive Limits ---
    max_archive_size_mb: int
    max_entry_count: int
    max_total_uncompressed_mb: int
    max_compression_ratio: int

    # --- Memory Circuit Breaker ---
    max_memory_mb: int
    memory_warning_threshold: float
    memory_trip_threshold: float
    memory_check_interval_ms: int
    gc_every_n_entries: int

    # --- Retry / Timeouts ---
    storage_retry_max_attempts: int
    storage_retry_base_delay_ms: int
    storage_retry_max_delay_ms: int
    s3_operation_timeout_seconds: int
    timeout_guard_threshold_seconds: int

    # --- CSV Processing ---
    csv_processing_enabled: bool
    csv_timestamp_column: str
    csv_skip_malformed: bool

    # --- Derived Properties ---
    @property
    def max_archive_size_bytes(self) -> int:
        return self.max_archive_size_mb * 1_048_576

    @property
    def max_total_uncompressed_bytes(self) -> int:
        return self.max_total_uncompressed_mb * 1_048_576

    @property
    def max_memory_bytes(self) -> int:
        return self.max_memory_mb * 1_048_576

    @property
    def memory_check_interval_seconds(self) -> float:
        return self.memory_check_interval_ms / 1000

    @property
    def timeout_guard_threshold_ms(self) -> int:
        return self.timeout_guard_threshold_seconds * 1000

    @classmethod
    def load_from_env(cls) -> "AppConfig":
        """
        Loads configuration from environment variables, performing validation and type casting.
        Fails fast with a ConfigurationError if anything is invalid.
        """
        try:
            # --- Handle required string variables ---
            bucket_name = os.environ["BUCKET_NAME"]
            service_name = os.environ["SERVICE_NAME"]
            environment = os.environ["ENVIRONMENT"]

            if not 3 <= len(bucket_name) <= 63 or not _BUCKET_NAME_PATTERN.match(bucket_name):
                raise ValueError(
                    "BUCKET_NAME must be a valid S3 bucket name "
                    "(lowercase alphanumeric and hyphens only)."
                )
            if "password" in bucket_name or "secret" in bucket_name:
                raise ValueError("BUCKET_NAME contains potentially sensitive keywords.")

            output_bucket = os.getenv("OUTPUT_BUCKET_NAME") or bucket_name
            kms_key_id = os.getenv("KMS_KEY_ID") or None

            input_path = _normalize_prefix(os.getenv("INPUT_PATH", "input/")) or "input/"
            output_path = _normalize_prefix(os.getenv("OUTPUT_PATH", "output/")) or "output/"
            if input_path == output_path and output_bucket == bucket_name:
                raise ValueError("INPUT_PATH and OUTPUT_PATH cannot be the same.")

            # --- Handle special-case variables like log level ---
            log_level = os.getenv("LOG_LEVEL", "INFO").upper()
            if log_level == "WARN":
                log_level = "WARNING"
            allowed_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
            if log_level not in allowed_log_levels:
                raise ValueError(
                    f"LOG_LEVEL must be one of {allowed_log_levels}, not '{log_level}'"
                )

            # --- Archive limits ---
            max_archive_size_mb = _env_int("MAX_ARCHIVE_SIZE_MB", "100")
            if max_archive_size_mb <= 0:
                raise ValueError("MAX_ARCHIVE_SIZE_MB must be a positive integer.")

            max_entry_count = _env_int("MAX_ENTRY_COUNT", "10000")
            if max_entry_count <= 0:
                raise ValueError("MAX_ENTRY_COUNT must be a positive integer.")

            max_total_uncompressed_mb = _env_int("MAX_TOTAL_UNCOMPRESSED_MB", "200")
            if max_total_uncompressed_mb <= 0:
                raise ValueError("MAX_TOTAL_UNCOMPRESSED_MB must be a positive integer.")

            max_compression_ratio = _env_int("MAX_COMPRESSION_RATIO", "100")
            if max_compression_ratio <= 0:
                raise ValueError("MAX_COMPRESSION_RATIO must be a positive integer.")

            # --- Memory circuit breaker ---
            max_memory_mb = _env_int(
                "MAX_MEMORY_MB", os.getenv("AWS_LAMBDA_FUNCTION_MEMORY_SIZE", "1024")
            )
            if not 128 <= max_memory_mb <= 10240:
                raise ValueError("MAX_MEMORY_MB must be between 128 and 10240.")

            memory_warning_threshold = float(os.getenv("MEMORY_WARNING_THRESHOLD", "70"))
            memory_trip_threshold = float(os.getenv("MEMORY_TRIP_THRESHOLD", "80"))
            if not 0 < memory_warning_threshold < memory_trip_threshold <= 100:
                raise ValueError(
                    "Memory thresholds must satisfy 0 < MEMORY_WARNING_THRESHOLD "
                    "< MEMORY_TRIP_THRESHOLD <= 100."
                )

            memory_check_interval_ms = _env_int("MEMORY_CHECK_INTERVAL_MS", "1000")
            if memory_check_interval_ms < 0:
                raise ValueError("MEMORY_CHECK_INTERVAL_MS must be a non-negative integer.")

            gc_every_n_entries = _env_int("GC_EVERY_N_ENTRIES", "10")
            if gc_every_n_entries <= 0:
                raise ValueError("GC_EVERY_N_ENTRIES must be a positive integer.")

            # --- Retry and timeouts ---
            storage_retry_max_attempts = _env_int("STORAGE_RETRY_MAX_ATTEMPTS", "4")
            if storage_retry_max_attempts < 1:
                raise ValueError("STORAGE_RETRY_MAX_ATTEMPTS must be at least 1.")

            storage_retry_base_delay_ms = _env_int("STORAGE_RETRY_BASE_DELAY_MS", "500")
            storage_retry_max_delay_ms = _env_int("STORAGE_RETRY_MAX_DELAY_MS", "16000")
            if not 0 <= storage_retry_base_delay_ms <= storage_retry_max_delay_ms:
                raise ValueError(
                    "STORAGE_RETRY_BASE_DELAY_MS must be non-negative and not exceed "
                    "STORAGE_RETRY_MAX_DELAY_MS."
                )

            s3_operation_timeout_seconds = _env_int("S3_OPERATION_TIMEOUT_SECONDS", "45")
            if s3_operation_timeout_seconds <= 0:
                raise ValueError("S3_OPERATION_TIMEOUT_SECONDS must be a positive integer.")

            timeout_guard_threshold_seconds = _env_int("TIMEOUT_GUARD_THRESHOLD_SECONDS", "30")
            if timeout_guard_threshold_seconds <= 0:
                raise ValueError(
                    "TIMEOUT_GUARD_THRESHOLD_SECONDS must be a positive integer."
                )

            # --- CSV processing ---
            csv_processing_enabled = _env_bool("CSV_PROCESSING_ENABLED", "true")
            csv_skip_malformed = _env_bool("CSV_SKIP_MALFORMED", "true")

            csv_timestamp_column = os.getenv("CSV_TIMESTAMP_COLUMN", "_processed")
            if not 1 <= len(csv_timestamp_column) <= 255 or not _COLUMN_NAME_PATTERN.match(
                csv_timestamp_column
            ):
                raise ValueError("CSV_TIMESTAMP_COLUMN must be a valid column name.")
            lowered = csv_timestamp_column.lower()
            if any(word in lowered for word in _RESERVED_COLUMN_WORDS):
                raise ValueError(
                    "CSV_TIMESTAMP_COLUMN name conflicts with reserved security keywords."
                )

        except KeyError as e:
            raise ConfigurationError(
                f"Missing required environment variable: {e.args[0]}"
            ) from e
        except (ValueError, TypeError) as e:
            raise ConfigurationError(
                f"Invalid value for an environment variable: {e}"
            ) from e

        return cls(
            bucket_name=bucket_name,
            service_name=service_name,
            environment=environment,
            output_bucket=output_bucket,
            input_path=input_path,
            output_path=output_path,
            kms_key_id=kms_key_id,
            log_level=log_level,
            max_archive_size_mb=max_archive_size_mb,
            max_entry_count=max_entry_count,
            max_total_uncompressed_mb=max_total_uncompressed_mb,
            max_compression_ratio=max_compression_ratio,
            max_memory_mb=max_memory_mb,
            memory_warning_threshold=memory_warning_threshold,
            memory_trip_threshold=memory_trip_threshold,
            memory_check_interval_ms=memory_check_interval_ms,
            gc_every_n_entries=gc_every_n_entries,
            storage_retry_max_attempts=storage_retry_max_attempts,
            storage_retry_base_delay_ms=storage_retry_base_delay_ms,
            storage_retry_max_delay_ms=storage_retry_max_delay_ms,
            s3_operation_timeout_seconds=s3_operation_timeout_seconds,
            timeout_guard_threshold_seconds=timeout_guard_threshold_seconds,
            csv_processing_enabled=csv_processing_enabled,
            csv_timestamp_column=csv_timestamp_column,
            csv_skip_malformed=csv_skip_malformed,
        )


# --- Singleton Factory Function (Lazy-loaded and Cached) ---
@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """
    Loads the application configuration from environment variables.
    The result is cached using lru_cache, so the environment is only read once
    on the first call. This avoids import-time side effects.
    """
    logger.info("Loading application configuration from environment...")
    return AppConfig.load_from_env()
