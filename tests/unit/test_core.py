# tests/unit/test_core.py

import zipfile
from unittest.mock import MagicMock

import pytest

from s3_unzipper import core
from s3_unzipper.clients import S3Client
from s3_unzipper.core import ArchivePipeline, build_output_key
from s3_unzipper.exceptions import UnsafePathError
from s3_unzipper.memory import MemoryCircuitBreaker
from s3_unzipper.models import ArchiveRef

BUCKET = "unzipper-test-bucket"
KEY = "input/2026-01-01_batch.zip"
REQUEST_ID = "req-123"


@pytest.fixture
def put_archive(fake_s3):
    """Stores archive bytes at the test key and returns the matching ArchiveRef."""

    def _put(data: bytes, key: str = KEY) -> ArchiveRef:
        fake_s3.objects[(BUCKET, key)] = data
        return ArchiveRef(bucket=BUCKET, key=key, size=len(data))

    return _put


@pytest.fixture
def make_pipeline(fake_s3, app_config, quiet_breaker):
    def _make(config=None, breaker=None) -> ArchivePipeline:
        return ArchivePipeline(
            s3_client=S3Client(s3_client=fake_s3),
            config=config or app_config,
            breaker=breaker or quiet_breaker,
        )

    return _make


# --- Output keys ---


@pytest.mark.parametrize(
    "entry_name, expected",
    [
        ("reports/2026-01-01_sales.csv", "output/sales/reports/2026-01-01_sales.csv"),
        ("2026-01-01__2026-01-02_app_registration_report.csv",
         "output/app_registration_report/2026-01-01__2026-01-02_app_registration_report.csv"),
        ("C:\\exports\\notes.txt", "output/notes/exports/notes.txt"),
        ("2026-01-01.csv", "output/unknown/2026-01-01.csv"),
    ],
)
def test_build_output_key(entry_name, expected):
    assert build_output_key("output/", entry_name) == expected


def test_build_output_key_rejects_traversal():
    with pytest.raises(UnsafePathError):
        build_output_key("output/", "../../etc/cron.d/evil")


# --- High-level orchestration (`process_archive`) ---


def test_happy_path_publishes_every_file(fake_s3, make_zip, put_archive, make_pipeline):
    """Directories and empty entries are skipped; files keep their relative paths."""
    # ARRANGE
    ref = put_archive(
        make_zip(
            [
                ("reports/", b""),
                ("reports/2026-01-01_sales.csv", b"id,amount\n1,10\n"),
                ("notes.txt", b"some notes"),
                ("empty.txt", b""),
            ]
        )
    )

    # ACT
    result = make_pipeline().process_archive(ref, REQUEST_ID)

    # ASSERT
    assert result.success is True
    assert result.files_processed == 2
    assert result.errors == []
    assert set(fake_s3.uploads) == {
        "output/sales/reports/2026-01-01_sales.csv",
        "output/notes/notes.txt",
    }
    csv_upload = fake_s3.uploads["output/sales/reports/2026-01-01_sales.csv"]
    assert csv_upload["body"].startswith(b"id,amount,_processed\n1,10,")
    assert csv_upload["ContentType"] == "text/csv"
    assert csv_upload["Metadata"] == {"request-id": REQUEST_ID, "csv-processed": "true"}
    notes_upload = fake_s3.uploads["output/notes/notes.txt"]
    assert notes_upload["body"] == b"some notes"
    assert notes_upload["ContentType"] == "text/plain"


def test_uploads_go_to_the_output_bucket(fake_s3, make_zip, put_archive, make_pipeline, make_config):
    ref = put_archive(make_zip([("a.txt", b"a")]))

    make_pipeline(make_config(output_bucket="published")).process_archive(ref, REQUEST_ID)

    assert fake_s3.uploads["output/a/a.txt"]["bucket"] == "published"


def test_empty_archive_succeeds_with_nothing_published(fake_s3, make_zip, put_archive, make_pipeline):
    result = make_pipeline().process_archive(put_archive(make_zip([])), REQUEST_ID)

    assert result.success is True
    assert result.files_processed == 0
    assert fake_s3.uploads == {}


def test_oversized_archive_is_never_downloaded(fake_s3, put_archive, make_pipeline, make_config):
    # ARRANGE
    ref = put_archive(b"x" * (1024 * 1024 + 1))
    fake_s3.get_object = MagicMock()

    # ACT
    result = make_pipeline(make_config(max_archive_size_mb=1)).process_archive(ref, REQUEST_ID)

    # ASSERT
    assert result.success is False
    assert result.files_processed == 0
    assert "exceeds limit" in result.errors[0]
    fake_s3.get_object.assert_not_called()


def test_missing_archive_fails_after_retries(make_pipeline):
    ref = ArchiveRef(bucket=BUCKET, key="input/missing.zip", size=10)

    result = make_pipeline().process_archive(ref, REQUEST_ID)

    assert result.success is False
    assert "after 3 attempts" in result.errors[0]


def test_corrupt_archive_fails_cleanly(fake_s3, put_archive, make_pipeline):
    result = make_pipeline().process_archive(put_archive(b"this is not a zip file at all"), REQUEST_ID)

    assert result.success is False
    assert result.files_processed == 0
    assert "Corrupt archive" in result.errors[0]
    assert fake_s3.uploads == {}


def test_compression_bomb_aborts_remaining_entries(fake_s3, make_zip, put_archive, make_pipeline):
    # ARRANGE
    ref = put_archive(
        make_zip([("a.txt", b"hello"), ("bomb.txt", b"\0" * 1_000_000), ("c.txt", b"after")])
    )

    # ACT
    result = make_pipeline().process_archive(ref, REQUEST_ID)

    # ASSERT
    assert result.success is False
    assert result.files_processed == 1
    assert "decompression bomb" in result.errors[-1]
    assert set(fake_s3.uploads) == {"output/a/a.txt"}


def test_entry_count_limit_aborts(fake_s3, make_zip, put_archive, make_pipeline, make_config):
    ref = put_archive(make_zip([("a.txt", b"a"), ("b.txt", b"b"), ("c.txt", b"c")]))

    result = make_pipeline(make_config(max_entry_count=2)).process_archive(ref, REQUEST_ID)

    assert result.success is False
    assert result.files_processed == 2
    assert "entry count limit" in result.errors[-1]


def test_total_size_limit_aborts(fake_s3, make_zip, put_archive, make_pipeline, make_config):
    # ARRANGE: stored entries keep the ratio at 1:1
    ref = put_archive(
        make_zip([("a.bin", b"x" * 600_000), ("b.bin", b"y" * 600_000)], compression=zipfile.ZIP_STORED)
    )

    # ACT
    result = make_pipeline(make_config(max_total_uncompressed_mb=1)).process_archive(ref, REQUEST_ID)

    # ASSERT
    assert result.success is False
    assert result.files_processed == 1
    assert set(fake_s3.uploads) == {"output/a/a.bin"}


def test_unsafe_entry_is_reported_and_the_rest_continue(fake_s3, make_zip, put_archive, make_pipeline):
    ref = put_archive(make_zip([("../evil.sh", b"rm -rf /"), ("good.txt", b"ok")]))

    result = make_pipeline().process_archive(ref, REQUEST_ID)

    assert result.success is True
    assert result.files_processed == 1
    assert len(result.errors) == 1
    assert "../evil.sh" in result.errors[0]
    assert set(fake_s3.uploads) == {"output/good/good.txt"}


def test_archive_where_every_entry_fails_is_unsuccessful(make_zip, put_archive, make_pipeline):
    ref = put_archive(make_zip([("../evil.sh", b"rm -rf /")]))

    result = make_pipeline().process_archive(ref, REQUEST_ID)

    assert result.success is False
    assert result.files_processed == 0
    assert len(result.errors) == 1


def test_corrupt_entry_data_is_a_per_entry_failure(fake_s3, make_zip, put_archive, make_pipeline):
    # ARRANGE
    buffer = bytearray(
        make_zip([("a.txt", b"hello world"), ("b.txt", b"fine")], compression=zipfile.ZIP_STORED)
    )
    data_pos = buffer.find(b"hello world")
    buffer[data_pos] = ord("j")
    ref = put_archive(bytes(buffer))

    # ACT
    result = make_pipeline().process_archive(ref, REQUEST_ID)

    # ASSERT
    assert result.success is True
    assert result.files_processed == 1
    assert "CRC-32" in result.errors[0]
    assert "output/b/b.txt" in fake_s3.uploads


def test_tripped_breaker_stops_before_download(fake_s3, make_zip, put_archive, make_pipeline):
    # ARRANGE
    breaker = MemoryCircuitBreaker(check_interval=0, memory_limit_bytes=1000, sampler=lambda: 900)
    ref = put_archive(make_zip([("a.txt", b"a")]))

    # ACT
    result = make_pipeline(breaker=breaker).process_archive(ref, REQUEST_ID)

    # ASSERT
    assert result.success is False
    assert "Memory circuit breaker open" in result.errors[0]
    assert fake_s3.uploads == {}


def test_breaker_tripping_mid_archive_aborts(fake_s3, make_zip, put_archive, make_pipeline):
    # ARRANGE: healthy for the download and the first entry, then over the limit
    readings = iter([100, 100, 100])
    breaker = MemoryCircuitBreaker(
        check_interval=0, memory_limit_bytes=1000, sampler=lambda: next(readings, 950)
    )
    ref = put_archive(make_zip([("a.txt", b"a"), ("b.txt", b"b")]))

    # ACT
    result = make_pipeline(breaker=breaker).process_archive(ref, REQUEST_ID)

    # ASSERT
    assert result.success is False
    assert result.files_processed == 1
    assert set(fake_s3.uploads) == {"output/a/a.txt"}


def test_gc_is_requested_every_n_files(make_zip, put_archive, make_pipeline, make_config, quiet_breaker):
    # ARRANGE
    quiet_breaker.request_gc = MagicMock(return_value=0)
    ref = put_archive(make_zip([(f"f{i}.txt", b"data") for i in range(5)]))

    # ACT
    make_pipeline(make_config(gc_every_n_entries=2)).process_archive(ref, REQUEST_ID)

    # ASSERT
    assert quiet_breaker.request_gc.call_count == 2


def test_debug_logging_lists_the_archive_and_each_entry(monkeypatch, make_zip, put_archive, make_pipeline):
    # ARRANGE
    mock_logger = MagicMock()
    mock_logger.isEnabledFor.return_value = True
    monkeypatch.setattr(core, "logger", mock_logger)
    ref = put_archive(make_zip([("2026-01-01_badge.csv", b"id\n1\n")]))

    # ACT
    make_pipeline().process_archive(ref, REQUEST_ID)

    # ASSERT
    debug = {c.args[0]: c.kwargs["extra"] for c in mock_logger.debug.call_args_list}
    assert debug["Archive listing"]["entries"] == [
        {"name": "2026-01-01_badge.csv", "size": 5, "is_directory": False}
    ]
    entry_log = debug["Processing archive entry"]
    assert entry_log["output_key"] == "output/badge/2026-01-01_badge.csv"
    assert entry_log["filename_info"]["stem_name"] == "badge"
    assert entry_log["filename_info"]["date_parts"] == ["2026-01-01"]


def test_debug_details_are_skipped_when_debug_is_off(monkeypatch, make_zip, put_archive, make_pipeline):
    mock_logger = MagicMock()
    mock_logger.isEnabledFor.return_value = False
    monkeypatch.setattr(core, "logger", mock_logger)
    ref = put_archive(make_zip([("2026-01-01_badge.csv", b"id\n1\n")]))

    result = make_pipeline().process_archive(ref, REQUEST_ID)

    assert result.files_processed == 1
    mock_logger.debug.assert_not_called()
