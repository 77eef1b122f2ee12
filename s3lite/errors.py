"""Exception hierarchy for the S3 client.

Every exception raised by this package derives from S3LiteError and carries
a ``kind`` so callers can branch on the failure category without matching
on messages:

- CONFIGURATION: bad arguments or credentials, raised before any network call
- SERVER: the server rejected a request (parsed from its XML error body)
- PROTOCOL: the server answered, but not in the shape we expected
- USAGE: the API was driven incorrectly (e.g. an upload with no data)
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Category of an S3LiteError."""

    CONFIGURATION = "configuration"
    SERVER = "server"
    PROTOCOL = "protocol"
    USAGE = "usage"


class S3LiteError(Exception):
    """Base class for all errors raised by this client."""

    kind: ErrorKind = ErrorKind.CONFIGURATION


class InvalidArgumentError(S3LiteError):
    """An argument or configuration parameter was invalid."""


class InvalidEndpointError(S3LiteError):
    """The endpoint is not a bare hostname."""


class InvalidBucketNameError(S3LiteError):
    """The bucket name does not follow the S3 naming rules.

    See https://docs.aws.amazon.com/AmazonS3/latest/userguide/bucketnamingrules.html
    """


class InvalidObjectNameError(S3LiteError):
    """The object key is empty or longer than 1024 characters."""


class AccessKeyRequiredError(S3LiteError):
    """The request cannot be signed without an access key."""


class SecretKeyRequiredError(S3LiteError):
    """The request cannot be signed without a secret key."""


class InvalidExpiryError(S3LiteError):
    """Presign expiry must be between 1 second and 7 days."""


class ConfigError(S3LiteError):
    """Raised when configuration loading fails."""


class ProtocolError(S3LiteError):
    """The server response did not have the expected structure."""

    kind = ErrorKind.PROTOCOL


class UploadUsageError(S3LiteError):
    """An ObjectUploader was driven in an order it does not support."""

    kind = ErrorKind.USAGE


class EmptyUploadError(UploadUsageError):
    """An upload stream was closed without any data being written."""


class UploadAbortedError(UploadUsageError):
    """An upload was aborted by the caller before it completed."""


class ServerError(S3LiteError):
    """Any error returned by the server.

    Attributes:
        status_code: HTTP status of the response.
        code: S3 error code, e.g. ``NoSuchKey`` or ``SignatureDoesNotMatch``.
        key: Object key from the error body, if any.
        bucket_name: Bucket name from the error body, if any.
        resource: Resource path from the error body, if any.
        region: Region from the error body, if any.
        request_id: Server request ID, if any.
    """

    kind = ErrorKind.SERVER

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        key: Optional[str] = None,
        bucket_name: Optional[str] = None,
        resource: Optional[str] = None,
        region: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.key = key
        self.bucket_name = bucket_name
        self.resource = resource
        self.region = region
        self.request_id = request_id

    def __repr__(self) -> str:
        return (
            f"ServerError(status_code={self.status_code}, code={self.code!r}, "
            f"message={str(self)!r})"
        )
