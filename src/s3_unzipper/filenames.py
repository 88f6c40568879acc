"""
Filename stem extraction.

Exports are named like ``2026-01-01__2026-01-02_app_registration_report.csv``;
the stem (``app_registration_report``) groups every export of the same
report under one output prefix regardless of the date range in its name.
"""

import logging
import re
from typing import Any, Dict, List

from .models import FilenameComponents
from .security import is_safe_path_component, sanitize_component

logger = logging.getLogger(__name__)

UNKNOWN_STEM = "unknown"
_DATE_PART = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _basename(filename: str) -> str:
    segments = [s for s in re.split(r"[/\\]", filename) if s]
    return segments[-1] if segments else ""


def _stem_from_parts(parts: List[str]) -> str:
    valid_parts = [
        cleaned
        for cleaned in (sanitize_component(part) for part in parts if part and part.strip())
        if cleaned != UNKNOWN_STEM and is_safe_path_component(cleaned)
    ]
    if not valid_parts:
        return UNKNOWN_STEM

    # Everything from the first substantial part onwards
    stem_parts: List[str] = []
    for part in valid_parts:
        if stem_parts or part != "_":
            stem_parts.append(part)
    if not stem_parts:
        stem_parts = valid_parts

    stem = sanitize_component("_".join(stem_parts))
    return stem if stem and is_safe_path_component(stem) else UNKNOWN_STEM


def parse_filename(filename: str) -> FilenameComponents:
    """Split *filename* into its base name, extension, date parts and stem."""
    sanitized = sanitize_component(_basename(filename))

    last_dot = sanitized.rfind(".")
    base_name = sanitized[:last_dot] if last_dot > 0 else sanitized
    extension = sanitized[last_dot:] if last_dot > 0 else ""

    date_parts: List[str] = []
    non_date_parts: List[str] = []
    for part in base_name.split("_"):
        if _DATE_PART.match(part):
            date_parts.append(part)
        elif part == "":
            # Kept so the part list mirrors the original underscores
            non_date_parts.append(part)
        else:
            non_date_parts.append(sanitize_component(part))

    return FilenameComponents(
        base_name=sanitize_component(base_name),
        extension=extension,
        date_parts=tuple(date_parts),
        non_date_parts=tuple(non_date_parts),
        stem_name=_stem_from_parts(non_date_parts),
    )


def extract_stem(filename: str) -> str:
    """
    Return the grouping stem for *filename*.

    Total: every input, including empty strings and hostile names, yields a
    non-empty, path-safe string, with ``"unknown"`` as the fallback.
    """
    if not isinstance(filename, str) or not filename.strip() or filename.strip() == ".":
        return UNKNOWN_STEM
    try:
        return parse_filename(filename).stem_name
    except (ValueError, TypeError) as e:
        logger.warning(
            "Failed to parse filename, using fallback",
            extra={"entry_name": filename, "error": str(e)},
        )
        return UNKNOWN_STEM


def is_valid_filename_pattern(filename: str) -> bool:
    """True if the filename carries any meaningful date or name content."""
    if not filename or not filename.strip() or filename.strip() == ".":
        return False
    components = parse_filename(filename)
    return bool(components.date_parts) or any(
        part and part.strip() for part in components.non_date_parts
    )


def filename_debug_info(filename: str) -> Dict[str, Any]:
    components = parse_filename(filename)
    return {
        "original_filename": filename,
        "is_valid": is_valid_filename_pattern(filename),
        "base_name": components.base_name,
        "extension": components.extension,
        "date_parts": list(components.date_parts),
        "non_date_parts": list(components.non_date_parts),
        "stem_name": components.stem_name,
    }
