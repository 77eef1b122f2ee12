"""Small pure helpers: dates, hashing, ETags and name validation."""

import hashlib
import hmac
import re
from datetime import datetime, timezone
from typing import Optional, Union

import httpx

_BUCKET_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9.-]+[a-z0-9]$", re.IGNORECASE)
_IP_ADDRESS_RE = re.compile(r"[0-9]+\.[0-9]+\.[0-9]+\.[0-9]+")

# Surrounding quotes (literal or XML-escaped) that servers put around ETags
_ETAG_QUOTES_RE = re.compile(r'^("|&quot;|&#34;)|("|&quot;|&#34;)$', re.IGNORECASE)


def is_valid_port(port: object) -> bool:
    """Check that a port is an integer in 1..65535."""
    if isinstance(port, bool) or not isinstance(port, int):
        return False
    return 1 <= port <= 65535


def is_valid_bucket_name(bucket: object) -> bool:
    """Validate a bucket name.

    Names are 3-63 characters of letters, digits, dots and hyphens, start
    and end with a letter or digit, contain no ``..`` and do not look like
    an IP address. Uppercase letters are accepted because some providers
    (Backblaze B2) allow them.
    """
    if not isinstance(bucket, str):
        return False
    if len(bucket) < 3 or len(bucket) > 63:
        return False
    if ".." in bucket:
        return False
    if _IP_ADDRESS_RE.search(bucket):
        return False
    return _BUCKET_NAME_RE.match(bucket) is not None


def is_valid_prefix(prefix: object) -> bool:
    """Check that a key prefix is a string of at most 1024 characters."""
    return isinstance(prefix, str) and len(prefix) <= 1024


def is_valid_object_name(object_name: object) -> bool:
    """Check that an object key is non-empty and at most 1024 characters."""
    return is_valid_prefix(object_name) and len(object_name) > 0


def to_utc(date: datetime) -> datetime:
    """Return ``date`` in UTC; naive datetimes are assumed to be UTC."""
    if date.tzinfo is None:
        return date.replace(tzinfo=timezone.utc)
    return date.astimezone(timezone.utc)


def make_date_long(date: datetime) -> str:
    """Format a date as ``YYYYMMDDTHHMMSSZ``."""
    return to_utc(date).strftime("%Y%m%dT%H%M%SZ")


def make_date_short(date: datetime) -> str:
    """Format a date as ``YYYYMMDD``."""
    return to_utc(date).strftime("%Y%m%d")


def make_iso_date(date: datetime) -> str:
    """Format a date as ISO 8601 with milliseconds, e.g. ``2021-10-26T18:07:28.492Z``."""
    utc = to_utc(date)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def get_scope(region: str, date: datetime) -> str:
    return f"{make_date_short(date)}/{region}/s3/aws4_request"


def sha256_hex(data: Union[bytes, str]) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def sha256_hmac(key: Union[bytes, str], data: Union[bytes, str]) -> bytes:
    """HMAC-SHA256 of ``data`` under ``key``; strings are UTF-8 encoded."""
    if isinstance(key, str):
        key = key.encode("utf-8")
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hmac.new(key, data, hashlib.sha256).digest()


def sanitize_etag(etag: Optional[str] = "") -> str:
    """Strip the quotes servers put around ETag values."""
    if not etag:
        return ""
    return _ETAG_QUOTES_RE.sub("", etag)


def get_version_id(headers: httpx.Headers) -> Optional[str]:
    return headers.get("x-amz-version-id")
