# src/s3_unzipper/csv_transform.py

"""
Append-timestamp transform for CSV entries.

Rows are read from the entry stream one at a time with the standard `csv`
reader in strict mode and re-serialized as they are read, so the text of the
file is never held twice. The only change made to a file is one extra column
carrying the processing time.
"""

import csv
import io
import logging
import re
from datetime import datetime, timezone
from typing import BinaryIO, Callable, List, Optional

from .exceptions import CorruptArchiveError, CsvTransformError
from .models import CsvOutcome

logger = logging.getLogger(__name__)

_PURE_NUMBER = re.compile(r"^\d+(\.\d+)?$")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}")
_US_DATE = re.compile(r"^\d{1,2}/\d{1,2}/\d{2,4}")
_URL = re.compile(r"^https?://")
_HEADER_CHARS = re.compile(r"^[A-Za-z][A-Za-z0-9_\s-]*$")
_LETTER = re.compile(r"[A-Za-z]")
_COMMON_HEADER_WORDS = re.compile(
    r"^(id|name|age|email|phone|address|city|state|country|date|time|created|updated|"
    r"status|type|category|description|title|first|last|user|customer|order|product|"
    r"price|amount|total|count|quantity|_processed)$",
    re.IGNORECASE,
)
_NEEDS_QUOTING = (",", '"', "\n", "\r")


def utc_timestamp() -> str:
    """Current UTC time as ISO-8601 with milliseconds, e.g. 2026-10-19T08:15:30.123Z."""
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def is_csv_file(name: str) -> bool:
    return name.lower().endswith(".csv")


def looks_like_header_cell(value: str) -> bool:
    return (
        len(value) < 50
        and bool(_LETTER.search(value))
        and not _PURE_NUMBER.match(value)
        and not _ISO_DATE.match(value)
        and not _US_DATE.match(value)
        and "@" not in value
        and not _URL.match(value)
        and bool(_HEADER_CHARS.match(value) or _COMMON_HEADER_WORDS.match(value))
    )


def detect_header(row: List[str]) -> bool:
    """A row is a header only if every non-empty cell looks like a column name."""
    non_empty = [cell for cell in row if cell]
    return bool(non_empty) and all(looks_like_header_cell(cell) for cell in non_empty)


def _quote(cell: str) -> str:
    if any(ch in cell for ch in _NEEDS_QUOTING):
        return '"' + cell.replace('"', '""') + '"'
    return cell


def format_row(row: List[str]) -> str:
    """Serialize one row, quoting a cell only when it contains a delimiter, quote or newline."""
    return ",".join(_quote(cell) for cell in row)


class CsvTransformer:
    """
    Adds a timestamp column to CSV entries.

    `skip_malformed` decides what a parse failure means: when on, the
    transform returns no output and the caller uploads the original bytes;
    when off, a CsvTransformError is raised.
    """

    def __init__(
        self,
        timestamp_column: str = "_processed",
        skip_malformed: bool = True,
        clock: Optional[Callable[[], str]] = None,
    ):
        self.timestamp_column = timestamp_column
        self.skip_malformed = skip_malformed
        self._clock = clock or utc_timestamp

    def is_csv_file(self, name: str) -> bool:
        return is_csv_file(name)

    def transform_stream(self, stream: BinaryIO, filename: str) -> CsvOutcome:
        """Run the transform over a binary stream, reporting how many rows were touched."""
        timestamp = self._clock()
        output = io.BytesIO()
        row_count = 0
        has_header = False

        logger.debug(
            "Starting CSV processing",
            extra={"entry_name": filename, "timestamp_column": self.timestamp_column},
        )

        # utf-8-sig drops a leading BOM if the export tool wrote one
        text = io.TextIOWrapper(stream, encoding="utf-8-sig", newline="")
        try:
            for raw_row in csv.reader(text, strict=True):
                row = [cell.strip() for cell in raw_row]
                if not any(row):
                    continue

                row_count += 1
                if row_count == 1:
                    has_header = detect_header(row)
                    row.append(self.timestamp_column if has_header else timestamp)
                else:
                    row.append(timestamp)
                    output.write(b"\n")
                output.write(format_row(row).encode("utf-8"))
        except (csv.Error, UnicodeDecodeError, OSError, CorruptArchiveError) as e:
            return self._malformed(filename, e)
        finally:
            # Leave closing the entry stream to its owner
            text.detach()

        if row_count == 0:
            logger.warning("CSV file is empty", extra={"entry_name": filename})
            return CsvOutcome(processed=False, rows_processed=0, output=None)

        rows_processed = row_count - 1 if has_header else row_count
        if has_header and rows_processed == 0:
            logger.debug("CSV has only headers, no data rows", extra={"entry_name": filename})

        result = output.getvalue()
        logger.debug(
            "CSV processing completed successfully",
            extra={
                "entry_name": filename,
                "rows_processed": rows_processed,
                "has_header": has_header,
                "processed_size": len(result),
            },
        )
        return CsvOutcome(processed=True, rows_processed=rows_processed, output=result)

    def _malformed(self, filename: str, error: Exception) -> CsvOutcome:
        logger.warning(
            "CSV parsing error",
            extra={"entry_name": filename, "error": str(error), "skip_malformed": self.skip_malformed},
        )
        if self.skip_malformed:
            return CsvOutcome(processed=False, rows_processed=0, output=None)
        raise CsvTransformError(filename, str(error)) from error
