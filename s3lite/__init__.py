"""
s3lite: a lightweight asyncio client for S3-compatible object storage.

Signs requests with AWS Signature Version 4 and streams large objects
through concurrent multipart uploads, without the AWS SDK.
"""

__version__ = "1.0.0"

from s3lite.client import S3Client
from s3lite.errors import ErrorKind, S3LiteError, ServerError
from s3lite.models import UploadedObjectInfo
from s3lite.signing import presign_post_v4, presign_v4, sign_v4

__all__ = [
    "S3Client",
    "ErrorKind",
    "S3LiteError",
    "ServerError",
    "UploadedObjectInfo",
    "sign_v4",
    "presign_v4",
    "presign_post_v4",
    "__version__",
]
