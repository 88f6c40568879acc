"""
PII redaction for log output.

Object keys and entry names frequently embed customer identifiers, so nothing
derived from them reaches the log sink unmasked. The helpers here are pure
string functions; `RedactingFilter` applies them to every record passing
through a handler.
"""

import logging
import re
from typing import Any, Dict, Mapping

_EMAIL = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_PHONE = re.compile(r"(\+?1)?[-.\s]?\(?[0-9]{3}\)?[-.\s]?[0-9]{3}[-.\s]?[0-9]{4}")
_SSN = re.compile(r"\d{3}-?\d{2}-?\d{4}")
_CREDIT_CARD = re.compile(r"\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}")
_IP_ADDRESS = re.compile(r"(?:[0-9]{1,3}\.){3}[0-9]{1,3}")
_S3_URL = re.compile(r"https?://[^/\s]+\.amazonaws\.com/[^\s]+")
_SYSTEM_PATH = re.compile(r"/[^\s]+")
_PERSONAL_IDENTIFIERS = (
    re.compile(r"\b(user|customer|client|employee)[-_]?id[-_]?\d+", re.IGNORECASE),
    re.compile(r"\b(account|acct)[-_]?\d{8,}", re.IGNORECASE),
    re.compile(r"\b(order|invoice|transaction)[-_]?\d{8,}", re.IGNORECASE),
    re.compile(r"\bmember[-_]?\d{6,}", re.IGNORECASE),
    re.compile(r"\buser[-_]?\d{6,}", re.IGNORECASE),
)

KEY_FIELDS = frozenset({"key", "input_key", "output_key", "output_path", "s3_key"})
FILENAME_FIELDS = frozenset(
    {"filename", "file_name", "entry_name", "name", "original_filename", "base_name"}
)
MESSAGE_FIELDS = frozenset({"error", "last_error", "message"})


def mask(value: str, visible: int = 3, mask_char: str = "*") -> str:
    """Keep *visible* characters at each end and mask the middle."""
    if len(value) <= visible * 2:
        return mask_char * len(value)
    middle = max(3, len(value) - visible * 2)
    return f"{value[:visible]}{mask_char * middle}{value[-visible:] if visible else ''}"


def contains_pii(value: str) -> bool:
    return any(
        p.search(value) for p in (_EMAIL, _PHONE, _SSN, _CREDIT_CARD, *_PERSONAL_IDENTIFIERS)
    )


def redact_filename(filename: str) -> str:
    """Mask PII inside a filename while keeping its extension readable."""
    if not filename:
        return "[empty-filename]"

    redacted = _EMAIL.sub(lambda m: mask(m.group(), 2), filename)
    for pattern in (_PHONE, _SSN, _CREDIT_CARD):
        redacted = pattern.sub(lambda m: mask(m.group(), 0), redacted)
    for pattern in _PERSONAL_IDENTIFIERS:
        redacted = pattern.sub(lambda m: mask(m.group(), 2), redacted)

    if len(redacted) > 50:
        dot = redacted.rfind(".")
        extension = redacted[dot:] if dot >= 0 else ""
        base = redacted[: len(redacted) - len(extension)]
        if len(base) > 40:
            redacted = f"{base[:15]}...*****...{base[-10:]}{extension}"
    return redacted


def _redact_directory(name: str) -> str:
    if not name:
        return name
    redacted = name
    for pattern in _PERSONAL_IDENTIFIERS:
        redacted = pattern.sub(lambda m: mask(m.group()), redacted)
    return _EMAIL.sub(lambda m: mask(m.group(), 2), redacted)


def redact_key(key: str) -> str:
    """
    Mask PII in an S3 key, segment by segment.

    Directory names only lose personal identifiers and emails; the final
    segment gets the full filename treatment.
    """
    if not key:
        return "[empty-key]"
    parts = key.split("/")
    redacted = [
        _redact_directory(part) if i < len(parts) - 1 and "." not in part else redact_filename(part)
        for i, part in enumerate(parts)
    ]
    return "/".join(redacted)


def _redact_system_path(path: str) -> str:
    parts = path.split("/")
    if len(parts) <= 3:
        return path
    return f"{parts[0]}/***/{'/'.join(parts[-2:])}"


def _redact_s3_url(url: str) -> str:
    _, _, rest = url.partition(".amazonaws.com/")
    path = "/".join(p for p in rest.split("/") if p)
    return f"https://[BUCKET].s3.amazonaws.com/{redact_key(path) if path else ''}"


def redact_message(message: str, context: Mapping[str, Any] | None = None) -> str:
    """Strip S3 URLs, IPs, emails and sensitive system paths from free text."""
    if not message:
        return "[empty-message]"

    redacted = _S3_URL.sub(lambda m: _redact_s3_url(m.group()), message)
    redacted = _SYSTEM_PATH.sub(
        lambda m: _redact_system_path(m.group())
        if any(d in m.group() for d in ("/tmp/", "/var/", "/home/"))
        else m.group(),
        redacted,
    )
    redacted = _IP_ADDRESS.sub("[IP-ADDRESS]", redacted)
    redacted = _EMAIL.sub("[EMAIL]", redacted)

    if context and isinstance(context.get("key"), str) and context.get("bucket"):
        raw_key = context["key"]
        if raw_key:
            redacted = redacted.replace(raw_key, redact_key(raw_key))
    return redacted


def redact_context(context: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a copy of a logging context with sensitive values masked."""
    redacted: Dict[str, Any] = {}
    for name, value in context.items():
        if isinstance(value, str):
            if name in KEY_FIELDS:
                redacted[name] = redact_key(value)
            elif name in FILENAME_FIELDS:
                redacted[name] = redact_filename(value)
            elif name in MESSAGE_FIELDS:
                redacted[name] = redact_message(value, context)
            elif contains_pii(value):
                redacted[name] = mask(value)
            else:
                redacted[name] = value
        elif isinstance(value, Mapping):
            redacted[name] = redact_context(value)
        elif isinstance(value, list):
            redacted[name] = [
                redact_context(item) if isinstance(item, Mapping) else item for item in value
            ]
        else:
            redacted[name] = value
    return redacted


class RedactingFilter(logging.Filter):
    """
    Logging filter that masks PII in the rendered message and in the
    well-known ``extra`` attributes of each record.

    Attach it to the handler so it also covers records propagated from
    module loggers.
    """

    # LogRecord.name is the logger name, never an entry name
    _FIELDS = (
        KEY_FIELDS
        | FILENAME_FIELDS
        | MESSAGE_FIELDS
        | {"context", "error_context", "filename_info", "entries"}
    ) - {"name"}

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str) and record.msg:
            record.msg = redact_message(record.msg)
        for name in self._FIELDS:
            value = record.__dict__.get(name)
            if isinstance(value, (str, Mapping, list)):
                record.__dict__[name] = redact_context({name: value})[name]
        return True
