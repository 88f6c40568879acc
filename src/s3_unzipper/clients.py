# src/s3_unzipper/clients.py

"""
Client wrapper for the S3 operations the unzipper needs: head, bounded
download, buffer upload and streaming upload.

The wrapper gives the core logic a small typed surface and translates
botocore failures into the service's own exception hierarchy, so the retry
executor can classify them by name and code.
"""

import io
import logging
from typing import Any, BinaryIO, Dict, Optional, TYPE_CHECKING, cast

from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError

from .exceptions import (
    ArchiveTooLargeError,
    S3AccessDeniedError,
    S3Error,
    S3ObjectNotFoundError,
    S3ThrottlingError,
    S3TimeoutError,
)

if TYPE_CHECKING:
    from mypy_boto3_s3.client import S3Client as S3ClientType

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024

_NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404"}
_ACCESS_DENIED_CODES = {"AccessDenied", "403", "Forbidden"}
_THROTTLING_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "SlowDown",
    "TooManyRequests",
    "BandwidthLimitExceeded",
}
_TIMEOUT_CODES = {"RequestTimeout", "RequestTimeoutException"}

_MIME_TYPES = {
    "csv": "text/csv",
    "txt": "text/plain",
    "json": "application/json",
    "xml": "application/xml",
    "pdf": "application/pdf",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "html": "text/html",
    "css": "text/css",
    "js": "application/javascript",
}


def guess_content_type(key: str) -> str:
    """Best-effort content type from the key's extension."""
    extension = key.rsplit(".", 1)[-1].lower() if "." in key else ""
    return _MIME_TYPES.get(extension, "application/octet-stream")


def _translate_error(
    error: Exception, operation: str, bucket: str, key: str
) -> Exception:
    """Map a botocore exception to the matching service exception."""
    if isinstance(error, ClientError):
        error_code = str(error.response.get("Error", {}).get("Code", "Unknown"))
        error_message = error.response.get("Error", {}).get("Message", str(error))
        aws_context = {
            "operation": operation,
            "aws_error_code": error_code,
            "aws_error_message": error_message,
        }

        if error_code in _NOT_FOUND_CODES:
            return S3ObjectNotFoundError(bucket=bucket, key=key, context=aws_context)
        if error_code in _ACCESS_DENIED_CODES:
            return S3AccessDeniedError(bucket=bucket, key=key, context=aws_context)
        if error_code in _THROTTLING_CODES:
            return S3ThrottlingError(
                operation,
                error_code=error_code,
                context={"bucket": bucket, "key": key, **aws_context},
            )
        if error_code in _TIMEOUT_CODES:
            return S3TimeoutError(
                operation,
                error_code="S3_TIMEOUT",
                context={"bucket": bucket, "key": key, **aws_context},
            )
        # Keep the AWS code so retry policies can match InternalError, ServiceUnavailable...
        return S3Error(
            f"S3 {operation} failed: {error_message}",
            error_code=error_code,
            context={"bucket": bucket, "key": key, **aws_context},
        )
    if isinstance(error, ReadTimeoutError):
        return S3TimeoutError(
            operation,
            error_code="S3_READ_TIMEOUT",
            context={"bucket": bucket, "key": key, "timeout_error": str(error)},
        )
    if isinstance(error, EndpointConnectionError):
        return S3TimeoutError(
            operation,
            error_code="S3_CONNECTION_ERROR",
            context={"bucket": bucket, "key": key, "connection_error": str(error)},
        )
    return error


class S3Client:
    """
    A wrapper for S3 client operations, focused on bounded reads and
    streaming writes.
    """

    def __init__(self, s3_client: "S3ClientType", kms_key_id: str | None = None):
        """
        Initializes the S3Client.

        Args:
            s3_client: A typed boto3 S3 client.
            kms_key_id: Optional KMS key ID for server-side encryption of uploads.
        """
        self._client = s3_client
        self._kms_key_id = kms_key_id
        if self._kms_key_id:
            logger.debug("S3Client initialized with SSE-KMS enabled.")

    def _extra_args(
        self, content_type: str, metadata: Optional[Dict[str, str]]
    ) -> Dict[str, Any]:
        extra_args: Dict[str, Any] = {"ContentType": content_type}
        if metadata:
            extra_args["Metadata"] = metadata
        if self._kms_key_id:
            extra_args.update(
                {"ServerSideEncryption": "aws:kms", "SSEKMSKeyId": self._kms_key_id}
            )
        return extra_args

    def head_object_size(self, bucket: str, key: str) -> int:
        """Returns the object's size in bytes without downloading it."""
        try:
            response = self._client.head_object(Bucket=bucket, Key=key)
        except (ClientError, ReadTimeoutError, EndpointConnectionError) as e:
            raise _translate_error(e, "head_object", bucket, key) from e
        return int(response["ContentLength"])

    def get_object_stream(self, bucket: str, key: str) -> BinaryIO:
        """
        Retrieves an S3 object's body as a file-like streaming object.
        Raises specific S3 exceptions based on the error type.
        """
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
            return cast(BinaryIO, response["Body"])
        except (ClientError, ReadTimeoutError, EndpointConnectionError) as e:
            raise _translate_error(e, "get_object", bucket, key) from e

    def download_bytes(self, bucket: str, key: str, max_bytes: int) -> bytes:
        """
        Downloads an object fully into memory, refusing to read more than
        *max_bytes*. The object may have grown since it was sized with HEAD.
        """
        stream = self.get_object_stream(bucket, key)
        buffer = io.BytesIO()
        try:
            while True:
                chunk = stream.read(_CHUNK_SIZE)
                if not chunk:
                    break
                if buffer.tell() + len(chunk) > max_bytes:
                    raise ArchiveTooLargeError(
                        buffer.tell() + len(chunk),
                        max_bytes,
                        context={"phase": "download"},
                    )
                buffer.write(chunk)
        except (ClientError, ReadTimeoutError, EndpointConnectionError) as e:
            raise _translate_error(e, "get_object", bucket, key) from e
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()

        logger.debug("Download completed", extra={"key": key, "size_bytes": buffer.tell()})
        return buffer.getvalue()

    def put_bytes(
        self,
        bucket: str,
        key: str,
        body: bytes,
        content_type: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> None:
        """Uploads an in-memory payload with a single PUT."""
        params: Dict[str, Any] = {"Bucket": bucket, "Key": key, "Body": body}
        params.update(self._extra_args(content_type, metadata))
        try:
            self._client.put_object(**params)
        except (ClientError, ReadTimeoutError, EndpointConnectionError) as e:
            raise _translate_error(e, "put_object", bucket, key) from e
        logger.debug(
            "Upload (PUT) completed successfully",
            extra={"key": key, "size_bytes": len(body), "kms_enabled": bool(self._kms_key_id)},
        )

    def upload_stream(
        self,
        bucket: str,
        key: str,
        file_obj: BinaryIO,
        content_type: str | None = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> None:
        """Uploads a file-like object to S3 via a managed, streaming upload."""
        extra_args = self._extra_args(content_type or guess_content_type(key), metadata)
        try:
            self._client.upload_fileobj(
                Fileobj=file_obj, Bucket=bucket, Key=key, ExtraArgs=extra_args
            )
        except (ClientError, ReadTimeoutError, EndpointConnectionError) as e:
            raise _translate_error(e, "upload_fileobj", bucket, key) from e
        except S3UploadFailedError as e:
            # The transfer manager folds the underlying ClientError into its message
            raise S3Error(
                f"S3 upload_fileobj failed: {e}",
                error_code="S3_UPLOAD_FAILED",
                context={"bucket": bucket, "key": key, "operation": "upload_fileobj"},
            ) from e
        logger.debug(
            "Streaming upload completed successfully",
            extra={"key": key, "kms_enabled": bool(self._kms_key_id)},
        )
