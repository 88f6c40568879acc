# src/s3_unzipper/archive.py

"""
Zip archive reading with decompression-bomb defenses.

The reader works on an archive that is already in memory but never builds
the full entry list: `ZipArchiveReader.entries()` walks the central directory
one record at a time, so a directory claiming millions of entries costs one
record of memory until the `ResourceGuard` stops the walk.

`zipfile.ZipFile` is not used here because it parses every central-directory
record into a `ZipInfo` before the caller sees the first one.
"""

import bz2
import io
import logging
import struct
import zlib
from typing import Any, Dict, Iterator, List

from .exceptions import (
    CompressionRatioExceededError,
    CorruptArchiveError,
    EntryCountExceededError,
    TotalSizeExceededError,
    UnsupportedEntryError,
)
from .models import ArchiveEntry, ResourceLimits, RunState

logger = logging.getLogger(__name__)

# --- Zip record layouts (APPNOTE.TXT) ---
_EOCD = struct.Struct("<4s4H2LH")
_EOCD_SIGNATURE = b"PK\x05\x06"
_ZIP64_LOCATOR = struct.Struct("<4sLQL")
_ZIP64_LOCATOR_SIGNATURE = b"PK\x06\x07"
_ZIP64_EOCD = struct.Struct("<4sQ2H2L4Q")
_ZIP64_EOCD_SIGNATURE = b"PK\x06\x06"
_CENTRAL_HEADER = struct.Struct("<4s6H3L5H2L")
_CENTRAL_HEADER_SIGNATURE = b"PK\x01\x02"
_LOCAL_HEADER = struct.Struct("<4s5H3L2H")
_LOCAL_HEADER_SIGNATURE = b"PK\x03\x04"
_EXTRA_HEADER = struct.Struct("<2H")
_ZIP64_EXTRA_ID = 0x0001
_MAX_COMMENT = 0xFFFF

STORED = 0
DEFLATED = 8
BZIP2 = 12
SUPPORTED_METHODS = {STORED: "stored", DEFLATED: "deflate", BZIP2: "bzip2"}

_FLAG_ENCRYPTED = 0x1
_FLAG_UTF8 = 0x800
_CHUNK_SIZE = 64 * 1024


def _parse_zip64_extra(
    extra: bytes, uncompressed: int, compressed: int, offset: int
) -> tuple[int, int, int]:
    """Replace 0xFFFFFFFF placeholders with values from the ZIP64 extra field."""
    pos = 0
    while pos + _EXTRA_HEADER.size <= len(extra):
        header_id, data_size = _EXTRA_HEADER.unpack_from(extra, pos)
        pos += _EXTRA_HEADER.size
        data = extra[pos : pos + data_size]
        pos += data_size
        if header_id != _ZIP64_EXTRA_ID:
            continue

        values = [v[0] for v in struct.iter_unpack("<Q", data[: len(data) // 8 * 8])]
        try:
            if uncompressed == 0xFFFFFFFF:
                uncompressed = values.pop(0)
            if compressed == 0xFFFFFFFF:
                compressed = values.pop(0)
            if offset == 0xFFFFFFFF:
                offset = values.pop(0)
        except IndexError:
            raise CorruptArchiveError("ZIP64 extra field is truncated")
        return uncompressed, compressed, offset

    if 0xFFFFFFFF in (uncompressed, compressed, offset):
        raise CorruptArchiveError("ZIP64 sizes declared but extra field is missing")
    return uncompressed, compressed, offset


def _find_eocd(tail: bytes) -> int:
    """
    Offset of the end of central directory record within *tail*, or -1.

    The signature can also appear inside the archive comment, so a candidate
    whose comment length runs exactly to the end of the data wins; failing
    that, the last candidate with room for a full record is used.
    """
    fallback = -1
    index = tail.rfind(_EOCD_SIGNATURE)
    while index != -1:
        if len(tail) - index >= _EOCD.size:
            comment_len = _EOCD.unpack_from(tail, index)[7]
            if index + _EOCD.size + comment_len == len(tail):
                return index
            if fallback == -1:
                fallback = index
        index = tail.rfind(_EOCD_SIGNATURE, 0, index)
    return fallback


class _EntryReader(io.RawIOBase):
    """
    Single-use, read-only stream over one entry's data.

    Output is produced in bounded chunks, never exceeds the size declared in
    the central directory, and is checked against the declared CRC-32 when
    the end of the data is reached.
    """

    def __init__(self, source: memoryview, entry: ArchiveEntry):
        super().__init__()
        self._source = source
        self._entry = entry
        self._src_pos = 0
        self._produced = 0
        self._crc = 0
        self._pending = b""
        self._tail = b""
        self._finished = False
        if entry.compression_method == DEFLATED:
            self._decompressor: Any = zlib.decompressobj(-15)
        elif entry.compression_method == BZIP2:
            self._decompressor = bz2.BZ2Decompressor()
        else:
            self._decompressor = None

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        if not self._pending:
            self._pending = self._next_chunk()
        n = min(len(buffer), len(self._pending))
        buffer[:n] = self._pending[:n]
        self._pending = self._pending[n:]
        return n

    def _next_input(self) -> bytes | None:
        if self._src_pos >= len(self._source):
            return None
        data = bytes(self._source[self._src_pos : self._src_pos + _CHUNK_SIZE])
        self._src_pos += len(data)
        return data

    def _inflate(self, max_length: int) -> bytes:
        while True:
            if self._tail:
                data, self._tail = self._tail, b""
            else:
                data = self._next_input()
            if data is None:
                return self._decompressor.flush()
            out = self._decompressor.decompress(data, max_length)
            self._tail = self._decompressor.unconsumed_tail
            if out or self._decompressor.eof:
                return out

    def _bunzip(self, max_length: int) -> bytes:
        while not self._decompressor.eof:
            if self._decompressor.needs_input:
                data = self._next_input()
                if data is None:
                    return b""
            else:
                data = b""
            out = self._decompressor.decompress(data, max_length)
            if out:
                return out
        return b""

    def _next_chunk(self) -> bytes:
        if self._finished:
            return b""

        remaining = self._entry.uncompressed_size - self._produced
        # With nothing left to produce, ask for one byte to detect overflow
        want = min(_CHUNK_SIZE, remaining) if remaining > 0 else 1
        try:
            if self._entry.compression_method == STORED:
                chunk = bytes(self._source[self._src_pos : self._src_pos + min(want, remaining)])
                self._src_pos += len(chunk)
            elif self._entry.compression_method == DEFLATED:
                chunk = self._inflate(want)
            else:
                chunk = self._bunzip(want)
        except (zlib.error, OSError, EOFError, ValueError) as e:
            raise CorruptArchiveError(
                f"entry {self._entry.name} could not be decompressed: {e}"
            ) from e

        if chunk:
            self._produced += len(chunk)
            if self._produced > self._entry.uncompressed_size:
                raise CorruptArchiveError(
                    f"entry {self._entry.name} expands beyond its declared size of "
                    f"{self._entry.uncompressed_size} bytes"
                )
            self._crc = zlib.crc32(chunk, self._crc)
            return chunk

        self._finished = True
        if self._produced != self._entry.uncompressed_size:
            raise CorruptArchiveError(
                f"entry {self._entry.name} is truncated: got {self._produced} of "
                f"{self._entry.uncompressed_size} bytes"
            )
        if self._crc != self._entry.crc32:
            raise CorruptArchiveError(f"entry {self._entry.name} failed CRC-32 check")
        return b""


class ZipArchiveReader:
    """
    Lazy reader over an in-memory zip archive.

    Raises CorruptArchiveError from the constructor when the end of central
    directory record cannot be located or points outside the buffer.
    """

    def __init__(self, buffer: bytes):
        self._buffer = memoryview(buffer)
        self._size = len(buffer)
        self._locate_central_directory(bytes(buffer[-(_EOCD.size + _MAX_COMMENT) :]))

    @property
    def entry_count(self) -> int:
        """Number of records the central directory claims to hold."""
        return self._total_entries

    def _locate_central_directory(self, tail: bytes) -> None:
        if self._size < _EOCD.size:
            raise CorruptArchiveError("file is too small to be a zip archive")

        index = _find_eocd(tail)
        if index == -1:
            raise CorruptArchiveError("end of central directory record not found")

        eocd_pos = self._size - len(tail) + index
        (_, disk, cd_disk, _, total, cd_size, cd_offset, _) = _EOCD.unpack_from(tail, index)
        if disk != 0 or cd_disk != 0:
            raise CorruptArchiveError("multi-disk archives are not supported")
        directory_end = eocd_pos

        locator_pos = eocd_pos - _ZIP64_LOCATOR.size
        if (
            locator_pos >= 0
            and bytes(self._buffer[locator_pos : locator_pos + 4]) == _ZIP64_LOCATOR_SIGNATURE
        ):
            record_pos = locator_pos - _ZIP64_EOCD.size
            if record_pos < 0:
                raise CorruptArchiveError("ZIP64 end of central directory record is truncated")
            record = _ZIP64_EOCD.unpack_from(self._buffer, record_pos)
            if record[0] != _ZIP64_EOCD_SIGNATURE:
                raise CorruptArchiveError("ZIP64 end of central directory record is corrupt")
            total, cd_size, cd_offset = record[7], record[8], record[9]
            directory_end = record_pos

        # Bytes prepended to the archive (e.g. a self-extractor stub) shift every offset
        self._base = directory_end - cd_size - cd_offset
        if self._base < 0:
            raise CorruptArchiveError("central directory offset points outside the archive")
        if self._base:
            logger.debug("Archive has bytes before its first entry", extra={"prefix_bytes": self._base})
        self._cd_start = self._base + cd_offset
        self._cd_end = self._cd_start + cd_size
        self._total_entries = total

    def entries(self) -> Iterator[ArchiveEntry]:
        """Yield central-directory records one at a time, in directory order."""
        pos = self._cd_start
        for _ in range(self._total_entries):
            if pos + _CENTRAL_HEADER.size > self._cd_end:
                raise CorruptArchiveError("central directory is shorter than its entry count")
            (
                signature, _, _, flags, method, _, _, crc, compressed, uncompressed,
                name_len, extra_len, comment_len, _, _, _, offset,
            ) = _CENTRAL_HEADER.unpack_from(self._buffer, pos)
            if signature != _CENTRAL_HEADER_SIGNATURE:
                raise CorruptArchiveError("bad central directory record signature")

            name_start = pos + _CENTRAL_HEADER.size
            extra_start = name_start + name_len
            record_end = extra_start + extra_len + comment_len
            if record_end > self._cd_end:
                raise CorruptArchiveError("central directory record overruns the directory")

            raw_name = bytes(self._buffer[name_start:extra_start])
            name = raw_name.decode("utf-8" if flags & _FLAG_UTF8 else "cp437", errors="replace")
            uncompressed, compressed, offset = _parse_zip64_extra(
                bytes(self._buffer[extra_start : extra_start + extra_len]),
                uncompressed,
                compressed,
                offset,
            )

            yield ArchiveEntry(
                name=name,
                uncompressed_size=uncompressed,
                compressed_size=compressed,
                is_directory=name.endswith(("/", "\\")),
                compression_method=method,
                flags=flags,
                crc32=crc,
                header_offset=offset,
            )
            pos = record_end

    def open_entry(self, entry: ArchiveEntry) -> io.BufferedReader:
        """
        Open a fresh decompressing stream for *entry*.

        Every call is an independent read from the start of the entry's data;
        a consumed or failed stream is never reused.
        """
        if entry.is_encrypted:
            raise UnsupportedEntryError(entry.name, "entry is encrypted")
        if entry.compression_method not in SUPPORTED_METHODS:
            raise UnsupportedEntryError(
                entry.name, f"compression method {entry.compression_method} is not supported"
            )
        if entry.compression_method == STORED and entry.compressed_size != entry.uncompressed_size:
            raise CorruptArchiveError(f"stored entry {entry.name} has inconsistent sizes")

        header_pos = self._base + entry.header_offset
        if header_pos + _LOCAL_HEADER.size > self._size:
            raise CorruptArchiveError(f"local header for {entry.name} is outside the archive")
        header = _LOCAL_HEADER.unpack_from(self._buffer, header_pos)
        if header[0] != _LOCAL_HEADER_SIGNATURE:
            raise CorruptArchiveError(f"bad local header signature for {entry.name}")

        data_start = header_pos + _LOCAL_HEADER.size + header[9] + header[10]
        data_end = data_start + entry.compressed_size
        if data_end > self._size:
            raise CorruptArchiveError(f"data for {entry.name} extends beyond the archive")

        return io.BufferedReader(_EntryReader(self._buffer[data_start:data_end], entry))


class ResourceGuard:
    """
    Enforces per-archive limits before an entry is admitted.

    Checks run in a fixed order (entry count, compression ratio, cumulative
    size) and each violation raises a ResourceLimitExceededError subclass,
    which aborts the rest of the archive. The cumulative size is checked
    before it is added, so the configured total is a hard ceiling.
    """

    def __init__(self, limits: ResourceLimits):
        self.limits = limits

    def admit(self, entry: ArchiveEntry, state: RunState) -> None:
        limits = self.limits

        if state.entries_admitted >= limits.max_entry_count:
            raise EntryCountExceededError(state.entries_admitted, limits.max_entry_count)

        ratio = entry.uncompressed_size / max(entry.compressed_size, 1)
        if ratio > limits.max_compression_ratio:
            raise CompressionRatioExceededError(entry.name, ratio, limits.max_compression_ratio)

        projected = state.total_uncompressed_bytes + entry.uncompressed_size
        if projected > limits.max_total_uncompressed_bytes:
            raise TotalSizeExceededError(
                entry.name, projected, limits.max_total_uncompressed_bytes
            )

        state.entries_admitted += 1
        state.total_uncompressed_bytes = projected


def describe_archive(buffer: bytes, limit: int = 10_000) -> List[Dict[str, Any]]:
    """List up to *limit* entries of an archive for diagnostics."""
    listing: List[Dict[str, Any]] = []
    for entry in ZipArchiveReader(buffer).entries():
        if len(listing) >= limit:
            break
        listing.append(
            {
                "name": entry.name,
                "size": entry.uncompressed_size,
                "is_directory": entry.is_directory,
            }
        )
    return listing
