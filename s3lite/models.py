"""Data models for the S3 client."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

import httpx

# A POST policy condition is either an object like {"acl": "public-read"}
# or a list like ["content-length-range", 0, 1048576].
PolicyCondition = Union[dict[str, Any], list[Any]]


@dataclass(frozen=True)
class SigningRequest:
    """Everything needed to sign one request with SigV4.

    ``path`` is the unencoded resource path and may include a ``?query``
    suffix whose keys and values are URL-encoded.
    """

    method: str
    path: str
    headers: httpx.Headers
    access_key: str
    secret_key: str
    region: str
    date: datetime
    session_token: Optional[str] = None


@dataclass(frozen=True)
class PresignRequest(SigningRequest):
    """A SigningRequest for a presigned URL."""

    protocol: str = "https"
    expiry_seconds: int = 7 * 24 * 3600


@dataclass(frozen=True)
class PostPolicyRequest:
    """Inputs for a browser-direct presigned POST upload."""

    host: str
    bucket: str
    object_key: str
    access_key: str
    secret_key: str
    region: str
    date: datetime
    expiry_seconds: int
    protocol: str = "https"
    conditions: list[PolicyCondition] = field(default_factory=list)
    fields: dict[str, str] = field(default_factory=dict)
    session_token: Optional[str] = None


@dataclass
class PresignedPost:
    """URL and form fields for a presigned POST upload."""

    url: str
    fields: dict[str, str]


@dataclass(frozen=True)
class PartETag:
    """ETag of one uploaded part of a multipart upload."""

    part: int
    etag: str


@dataclass(frozen=True)
class UploadedObjectInfo:
    """Result of a completed upload."""

    etag: str
    version_id: Optional[str] = None


@dataclass
class ObjectStatus:
    """Metadata about a stored object, as returned by a HEAD request."""

    key: str
    size: int
    etag: str
    last_modified: Optional[datetime]
    version_id: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class ObjectInfo:
    """One object in a bucket listing."""

    key: str
    size: int
    etag: str
    last_modified: Optional[datetime]


@dataclass
class CommonPrefix:
    """A "directory" in a delimited bucket listing."""

    prefix: str
