# In src/s3_unzipper/schemas.py

from typing import TypedDict
from urllib.parse import unquote_plus

from pydantic import BaseModel, Field, field_validator

from .exceptions import UnsafePathError
from .models import ArchiveRef
from .security import sanitize_s3_key

# --- Static Type Hinting (for mypy and IDEs) ---


class S3BucketDict(TypedDict):
    name: str


class S3ObjectDict(TypedDict, total=False):
    key: str
    size: int
    versionId: str | None
    sequencer: str


class S3DataDict(TypedDict):
    bucket: S3BucketDict
    object: S3ObjectDict


class S3EventRecord(TypedDict, total=False):
    """
    A TypedDict representing the structure of a single S3 event record.
    Used for static type analysis throughout the application.
    """

    eventSource: str
    eventName: str
    s3: S3DataDict


# --- Runtime Validation (using Pydantic) ---


class S3BucketModel(BaseModel):
    name: str = Field(..., min_length=1)


class S3ObjectModel(BaseModel):
    # Kept exactly as it appeared in the notification (URL-encoded)
    key: str = Field(..., min_length=1)
    size: int = Field(0, ge=0)
    version_id: str | None = Field(None, alias="versionId")
    sequencer: str | None = None

    # S3 notifications URL-encode keys with '+' for spaces
    @field_validator("key")
    @classmethod
    def validate_key(cls, value: str) -> str:
        try:
            sanitize_s3_key(unquote_plus(value))
        except UnsafePathError as e:
            raise ValueError(str(e))
        return value

    @property
    def decoded_key(self) -> str:
        """The key to fetch: URL-decoded but otherwise untouched."""
        return unquote_plus(self.key)


class S3DataModel(BaseModel):
    bucket: S3BucketModel
    object: S3ObjectModel


class S3EventNotificationRecord(BaseModel):
    """
    Pydantic model for runtime parsing and validation of an S3 event record.
    """

    event_source: str | None = Field(None, alias="eventSource")
    event_name: str | None = Field(None, alias="eventName")
    s3: S3DataModel

    @field_validator("event_source")
    @classmethod
    def validate_event_source(cls, value: str | None) -> str | None:
        if value is not None and value != "aws:s3":
            raise ValueError(f"Unexpected event source: {value}")
        return value

    @property
    def is_object_created(self) -> bool:
        return self.event_name is None or self.event_name.startswith("ObjectCreated:")

    def to_archive_ref(self) -> ArchiveRef:
        return ArchiveRef(
            bucket=self.s3.bucket.name,
            key=self.s3.object.decoded_key,
            size=self.s3.object.size,
        )
