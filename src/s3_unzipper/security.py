"""
Security utilities for the S3 Unzipper service.

Archives arrive from outside the trust boundary, so every name taken from an
S3 event or from a zip central directory is treated as hostile until it has
been through one of the functions below.

The primary focus is preventing:
- Path traversal (``../../etc/passwd``, URL-encoded and Unicode variants)
- Zip-slip style writes outside the output prefix
- Control, invisible and reserved characters leaking into object keys
"""

import re
import unicodedata
import urllib.parse
from pathlib import PurePosixPath

from .exceptions import UnsafePathError

# Module-level constants
_DRIVE_PREFIX = re.compile(r"^[a-zA-Z]:")
_INVALID_CONTROL_CHARS: set[int] = set(range(0x00, 0x20)) | set(range(0x7F, 0xA0))
_RESERVED_CHARS = re.compile(r'[<>:"|?*]')
_MAX_KEY_BYTES = 1024
_MAX_COMPONENT_LENGTH = 100

_UNICODE_INVISIBLES: set[int] = {
    # Zero-width characters
    0x200B,  # Zero Width Space
    0x200C,  # Zero Width Non-Joiner
    0x200D,  # Zero Width Joiner
    0xFEFF,  # Zero Width No-Break Space (BOM)
    # Directional overrides
    0x202E,  # Right-to-Left Override
    0x202D,  # Left-to-Right Override
    0x202C,  # Pop Directional Formatting
    # Line/paragraph separators
    0x2028,
    0x2029,
    0x00A0,  # Non-breaking space
    0x1680,  # Ogham space mark
}

# Windows reserved device names (case-insensitive)
_WINDOWS_DEVICE_NAMES: set[str] = {
    "CON", "PRN", "AUX", "NUL",
    "COM1", "COM2", "COM3", "COM4", "COM5", "COM6", "COM7", "COM8", "COM9",
    "LPT1", "LPT2", "LPT3", "LPT4", "LPT5", "LPT6", "LPT7", "LPT8", "LPT9",
}

# Unicode look-alikes of ".."
_UNICODE_DOTS: set[str] = {
    "\uFF0E\uFF0E",
    "\u3002\u3002",
    "\u2024\u2024",
    "\u2027\u2027",
    "\uFF61\uFF61",
}

# Patterns that make a single path component unsafe
_UNSAFE_COMPONENT_PATTERNS = (
    re.compile(r"[\x00-\x1f\x7f-\x9f]"),
    re.compile(r"\.\."),
    re.compile(r"^\.+$"),
    re.compile(r"[/\\]"),
    _RESERVED_CHARS,
)


def sanitize_component(value: str) -> str:
    """
    Rewrite one filename component into something safe to use inside an S3 key.

    Never raises. Control characters, reserved characters, ``..`` sequences and
    whitespace become underscores; leading dots and leading/trailing underscores
    are stripped; runs of four or more underscores collapse to three (so
    ``2026-01-01__2026-01-02`` keeps its double underscore); the result is
    truncated to 100 characters. Returns ``"unknown"`` when nothing is left.
    """
    if not value or not value.strip():
        return "unknown"

    sanitized = re.sub(r"[\x00-\x1f\x7f-\x9f]", "_", value)
    sanitized = _RESERVED_CHARS.sub("_", sanitized)
    sanitized = sanitized.replace("..", "_")
    sanitized = re.sub(r"^\.+", "", sanitized)
    sanitized = re.sub(r"\s+", "_", sanitized)
    sanitized = re.sub(r"_{4,}", "___", sanitized)
    sanitized = sanitized.strip("_")

    if sanitized in ("", "."):
        return "unknown"
    return sanitized[:_MAX_COMPONENT_LENGTH]


def is_safe_path_component(component: str) -> bool:
    """Return True if *component* can be used verbatim as one S3 key segment."""
    if not component or not component.strip():
        return False
    return not any(p.search(component) for p in _UNSAFE_COMPONENT_PATTERNS)


def _fully_unquote(value: str, max_iterations: int = 5) -> str:
    """Decode URL escapes until stable, to catch nested encodings like %252e."""
    decoded = value
    for _ in range(max_iterations):
        new_decoded = urllib.parse.unquote(decoded)
        if new_decoded == decoded:
            break
        decoded = new_decoded
    return decoded


def _normalize_path(value: str, label: str) -> str:
    """
    Shared validation for event keys and entry paths.

    Returns a relative, normalized POSIX path or raises UnsafePathError.
    """
    if not isinstance(value, str):
        raise UnsafePathError(
            f"{label} is not a valid string",
            context={"type": type(value).__name__},
        )

    utf8_length = len(value.encode("utf-8"))
    if utf8_length > _MAX_KEY_BYTES:
        raise UnsafePathError(
            f"{label} exceeds byte length limit",
            context={"length": utf8_length},
        )

    if any(ord(c) in _INVALID_CONTROL_CHARS for c in value):
        raise UnsafePathError(f"{label} contains control characters")

    for char in value:
        char_code = ord(char)
        if char_code in _UNICODE_INVISIBLES or unicodedata.category(char) == "Cf":
            raise UnsafePathError(
                f"{label} contains invisible Unicode characters",
                context={"char_code": hex(char_code)},
            )

    # Cross-platform: drop drive letters, backslashes become separators
    posix = _DRIVE_PREFIX.sub("", value).replace("\\", "/")
    segments = [part for part in posix.split("/") if part]

    for part in segments:
        base_name = part.split(".", 1)[0].upper()
        if base_name in _WINDOWS_DEVICE_NAMES:
            raise UnsafePathError(
                f"{label} contains a Windows reserved device name",
                context={"device_name": part},
            )

    if any(dots in posix for dots in _UNICODE_DOTS):
        raise UnsafePathError(f"{label} contains Unicode path traversal sequences")

    decoded = _fully_unquote(posix)
    if decoded != posix:
        decoded = decoded.replace("\\", "/")
        if any(part == ".." for part in decoded.split("/")) or any(
            dots in decoded for dots in _UNICODE_DOTS
        ):
            raise UnsafePathError(f"{label} contains URL-encoded path traversal sequences")

    # ".." is only a problem as a whole segment; "backup..old.txt" is a filename
    if any(part == ".." for part in posix.split("/")):
        raise UnsafePathError(f"{label} contains path traversal")

    safe_path = str(PurePosixPath(posix)).lstrip("/")
    if safe_path in {"", "."}:
        raise UnsafePathError(f"{label} is empty after normalization")

    return safe_path


def sanitize_s3_key(key: str) -> str:
    """
    Validate an object key taken from an S3 event notification.

    Examples:
        >>> sanitize_s3_key("input/batch.zip")
        'input/batch.zip'

        >>> sanitize_s3_key("input/../secrets.zip")
        UnsafePathError: S3 key contains path traversal
    """
    if key != key.strip() or any(part != part.strip() for part in key.split("/")):
        raise UnsafePathError("S3 key contains leading or trailing whitespace")
    return _normalize_path(key, "S3 key")


def sanitize_entry_path(name: str) -> str:
    """
    Turn an archive entry name into a relative path that is safe to append to
    an output prefix.

    Drive letters and leading slashes are dropped and backslashes become
    separators; traversal in any encoding raises UnsafePathError so the entry
    is reported instead of being written somewhere unexpected.

    Examples:
        >>> sanitize_entry_path("reports/2026-01-01_badge.csv")
        'reports/2026-01-01_badge.csv'

        >>> sanitize_entry_path("C:\\\\exports\\\\data.csv")
        'exports/data.csv'
    """
    return _normalize_path(name, "Archive entry path")
