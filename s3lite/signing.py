"""AWS Signature Version 4 signing for S3 requests.

Provides:
- Canonical request construction (URI encoding, header selection)
- The ``Authorization`` header for authenticated requests
- Presigned URLs (query-string authentication)
- Presigned POST policies for browser-direct uploads

See https://docs.aws.amazon.com/AmazonS3/latest/API/sig-v4-header-based-auth.html
"""

import base64
import functools
import json
import re
from datetime import datetime, timedelta
from typing import Mapping, Union
from urllib.parse import parse_qsl, quote, unquote, urlencode

import httpx

from s3lite.errors import (
    AccessKeyRequiredError,
    InvalidExpiryError,
    ProtocolError,
    SecretKeyRequiredError,
)
from s3lite.helpers import (
    get_scope,
    make_date_long,
    make_date_short,
    make_iso_date,
    sha256_hex,
    sha256_hmac,
)
from s3lite.models import (
    PostPolicyRequest,
    PresignedPost,
    PresignRequest,
    SigningRequest,
)

SIGN_V4_ALGORITHM = "AWS4-HMAC-SHA256"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"

# Presigned URLs and POST policies are valid for at most 7 days
MAX_EXPIRY_SECONDS = 604800

# Headers that are never signed. Proxies and browsers rewrite User-Agent and
# Content-Type, and Content-Length is already covered by the payload hash.
IGNORED_HEADERS = frozenset(
    {"authorization", "content-length", "content-type", "user-agent"}
)

_UNRESERVED_BYTES = frozenset(
    b"ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"
)
_SLASH = ord("/")
_SPACES_RE = re.compile(r" +")

HeadersLike = Union[httpx.Headers, Mapping[str, str]]


def aws_uri_encode(value: str, allow_slashes: bool = False) -> str:
    """URI-encode a string the way SigV4 requires.

    Every UTF-8 byte except ``A-Z a-z 0-9 - . _ ~`` is percent-encoded with
    uppercase hex digits, so a space becomes ``%20`` (never ``+``). Forward
    slashes are kept only when ``allow_slashes`` is set, which is how object
    keys in the resource path are encoded.
    """
    encoded = []
    for byte in value.encode("utf-8"):
        if byte in _UNRESERVED_BYTES or (allow_slashes and byte == _SLASH):
            encoded.append(chr(byte))
        else:
            encoded.append(f"%{byte:02X}")
    return "".join(encoded)


def select_headers_to_sign(headers: HeadersLike) -> list[str]:
    """Determine which headers will be signed, and in what order.

    Returns:
        Lowercase header names, sorted, excluding IGNORED_HEADERS.
    """
    headers = httpx.Headers(headers)
    selected = {
        name.lower()
        for name in headers.keys()
        if name.lower() not in IGNORED_HEADERS
    }
    return sorted(selected)


def canonical_request(
    method: str,
    path: str,
    headers: HeadersLike,
    headers_to_sign: list[str],
    payload_hash: str,
) -> str:
    """Build the SigV4 canonical request.

    The result is six fields joined by newlines::

        <HTTPMethod>
        <CanonicalURI>
        <CanonicalQueryString>
        <CanonicalHeaders>            (each header on its own line, then a blank line)
        <SignedHeaders>
        <HashedPayload>

    Args:
        method: HTTP method, any case.
        path: Unencoded resource path, optionally followed by ``?`` and an
            already URL-encoded query string.
        headers: Request headers; lookups are case-insensitive.
        headers_to_sign: Header names to sign, in signing order.
        payload_hash: Hex SHA-256 of the body, or UNSIGNED_PAYLOAD.
    """
    headers = httpx.Headers(headers)
    header_lines = []
    for name in headers_to_sign:
        value = _SPACES_RE.sub(" ", str(headers.get(name)).strip())
        header_lines.append(f"{name.lower()}:{value}")

    resource, _, query = path.partition("?")
    canonical_query = ""
    if query:
        pairs = []
        for element in query.split("&"):
            key, _, value = element.partition("=")
            # The query is already encoded; decode before re-encoding.
            pairs.append(
                aws_uri_encode(unquote(key)) + "=" + aws_uri_encode(unquote(value))
            )
        canonical_query = "&".join(sorted(pairs))

    return "\n".join(
        [
            method.upper(),
            aws_uri_encode(resource, allow_slashes=True),
            canonical_query,
            "\n".join(header_lines) + "\n",
            ";".join(headers_to_sign).lower(),
            payload_hash,
        ]
    )


def string_to_sign(canonical: str, date: datetime, region: str) -> str:
    return "\n".join(
        [
            SIGN_V4_ALGORITHM,
            make_date_long(date),
            get_scope(region, date),
            sha256_hex(canonical),
        ]
    )


@functools.lru_cache(maxsize=32)
def _derive_signing_key(date_short: str, region: str, secret_key: str) -> bytes:
    date_key = sha256_hmac("AWS4" + secret_key, date_short)
    date_region_key = sha256_hmac(date_key, region)
    date_region_service_key = sha256_hmac(date_region_key, "s3")
    return sha256_hmac(date_region_service_key, "aws4_request")


def signing_key(date: datetime, region: str, secret_key: str) -> bytes:
    """Derive the 32-byte signing key for a day, region and secret."""
    return _derive_signing_key(make_date_short(date), region, secret_key)


def credential(access_key: str, region: str, date: datetime) -> str:
    return f"{access_key}/{get_scope(region, date)}"


def _check_credentials(access_key: str, secret_key: str) -> None:
    if not access_key:
        raise AccessKeyRequiredError("accessKey is required for signing")
    if not secret_key:
        raise SecretKeyRequiredError("secretKey is required for signing")


def _check_expiry(expiry_seconds: int) -> None:
    if expiry_seconds < 1:
        raise InvalidExpiryError("expirySeconds cannot be less than 1 seconds")
    if expiry_seconds > MAX_EXPIRY_SECONDS:
        raise InvalidExpiryError("expirySeconds cannot be greater than 7 days")


def _signature(key: bytes, data: str) -> str:
    return sha256_hmac(key, data).hex().lower()


def sign_v4(request: SigningRequest) -> str:
    """Generate the Authorization header value for an S3 request.

    The caller must already have set ``x-amz-content-sha256`` (and
    ``x-amz-date``) on the request headers.

    Raises:
        AccessKeyRequiredError: If the access key is empty.
        SecretKeyRequiredError: If the secret key is empty.
        ProtocolError: If the x-amz-content-sha256 header is missing.
    """
    _check_credentials(request.access_key, request.secret_key)

    headers = httpx.Headers(request.headers)
    payload_hash = headers.get("x-amz-content-sha256")
    if payload_hash is None:
        raise ProtocolError(
            "Internal S3 client error - expected x-amz-content-sha256 header, "
            "but it's missing."
        )

    signed_headers = select_headers_to_sign(headers)
    canonical = canonical_request(
        request.method, request.path, headers, signed_headers, payload_hash
    )
    key = signing_key(request.date, request.region, request.secret_key)
    signature = _signature(key, string_to_sign(canonical, request.date, request.region))

    return (
        f"{SIGN_V4_ALGORITHM} "
        f"Credential={credential(request.access_key, request.region, request.date)}, "
        f"SignedHeaders={';'.join(signed_headers)}, "
        f"Signature={signature}"
    )


def _set_query_param(params: list[tuple[str, str]], key: str, value: str) -> None:
    """Replace every ``key`` in ``params`` by a single entry, or append one."""
    replaced = False
    result = []
    for existing_key, existing_value in params:
        if existing_key != key:
            result.append((existing_key, existing_value))
        elif not replaced:
            result.append((key, value))
            replaced = True
    if not replaced:
        result.append((key, value))
    params[:] = result


def presign_v4(request: PresignRequest) -> str:
    """Generate a presigned URL.

    The signing parameters go into the query string rather than the
    headers, and the payload is not signed. Query values are encoded with
    ``%20`` for spaces, both in the signed form and in the returned URL.

    Raises:
        AccessKeyRequiredError: If the access key is empty.
        SecretKeyRequiredError: If the secret key is empty.
        InvalidExpiryError: If expiry is outside 1..604800 seconds.
        ProtocolError: If the Host header is missing.
    """
    _check_credentials(request.access_key, request.secret_key)
    _check_expiry(request.expiry_seconds)

    headers = httpx.Headers(request.headers)
    host = headers.get("host")
    if host is None:
        raise ProtocolError("Internal error: host header missing")

    resource, _, query = request.path.partition("?")
    signed_headers = select_headers_to_sign(headers)

    params = parse_qsl(query, keep_blank_values=True)
    _set_query_param(params, "X-Amz-Algorithm", SIGN_V4_ALGORITHM)
    _set_query_param(
        params,
        "X-Amz-Credential",
        credential(request.access_key, request.region, request.date),
    )
    _set_query_param(params, "X-Amz-Date", make_date_long(request.date))
    _set_query_param(params, "X-Amz-Expires", str(request.expiry_seconds))
    _set_query_param(params, "X-Amz-SignedHeaders", ";".join(signed_headers))
    if request.session_token:
        _set_query_param(params, "X-Amz-Security-Token", request.session_token)
    new_query = urlencode(params, quote_via=quote)

    canonical = canonical_request(
        request.method,
        f"{resource}?{new_query}",
        headers,
        signed_headers,
        UNSIGNED_PAYLOAD,
    )
    key = signing_key(request.date, request.region, request.secret_key)
    signature = _signature(key, string_to_sign(canonical, request.date, request.region))

    protocol = request.protocol.rstrip(":")
    encoded_path = aws_uri_encode(resource, allow_slashes=True)
    return f"{protocol}://{host}{encoded_path}?{new_query}&X-Amz-Signature={signature}"


def presign_post_v4(request: PostPolicyRequest) -> PresignedPost:
    """Generate a presigned POST policy for direct uploads from a browser.

    The returned fields must be sent as form fields alongside the file,
    to the returned URL.

    Raises:
        AccessKeyRequiredError: If the access key is empty.
        SecretKeyRequiredError: If the secret key is empty.
        InvalidExpiryError: If expiry is outside 1..604800 seconds.
    """
    _check_credentials(request.access_key, request.secret_key)
    _check_expiry(request.expiry_seconds)

    expiration = make_iso_date(request.date + timedelta(seconds=request.expiry_seconds))
    cred = credential(request.access_key, request.region, request.date)
    date_long = make_date_long(request.date)

    fields = {
        "X-Amz-Algorithm": SIGN_V4_ALGORITHM,
        "X-Amz-Credential": cred,
        "X-Amz-Date": date_long,
        "key": request.object_key,
        **request.fields,
    }
    conditions = [
        {"bucket": request.bucket},
        {"key": request.object_key},
        {"X-Amz-Algorithm": SIGN_V4_ALGORITHM},
        {"X-Amz-Credential": cred},
        {"X-Amz-Date": date_long},
    ]
    if request.session_token:
        fields["x-amz-security-token"] = request.session_token
        conditions.append({"x-amz-security-token": request.session_token})

    conditions.extend(request.conditions)
    for key, value in request.fields.items():
        if key in ("key", "X-Amz-Algorithm", "X-Amz-Credential", "X-Amz-Date"):
            continue
        conditions.append({key: value})

    policy = json.dumps(
        {"expiration": expiration, "conditions": conditions},
        separators=(",", ":"),
        ensure_ascii=False,
    )
    encoded_policy = base64.b64encode(policy.encode("utf-8")).decode("ascii")
    fields["policy"] = encoded_policy

    key = signing_key(request.date, request.region, request.secret_key)
    fields["X-Amz-Signature"] = _signature(key, encoded_policy)

    protocol = request.protocol.rstrip(":")
    return PresignedPost(url=f"{protocol}://{request.host}/{request.bucket}", fields=fields)
