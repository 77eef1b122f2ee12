"""Asyncio S3 client built on httpx.

S3Client signs every request with SigV4 (see ``s3lite.signing``) and
exposes object CRUD, listing, streaming multipart uploads and presigning.
Requests go through a single ``httpx.AsyncClient``, which may carry many
concurrent requests (one per in-flight upload part).
"""

import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, AsyncIterator, Mapping, Optional, Union
from urllib.parse import quote, urlencode

import httpx

from s3lite.chunker import ByteChunks, arechunk
from s3lite.errors import (
    InvalidArgumentError,
    InvalidBucketNameError,
    InvalidEndpointError,
    InvalidObjectNameError,
    ServerError,
)
from s3lite.helpers import (
    get_version_id,
    is_valid_bucket_name,
    is_valid_object_name,
    is_valid_port,
    is_valid_prefix,
    make_date_long,
    sanitize_etag,
    sha256_hex,
)
from s3lite.models import (
    CommonPrefix,
    ObjectInfo,
    ObjectStatus,
    PartETag,
    PolicyCondition,
    PostPolicyRequest,
    PresignedPost,
    PresignRequest,
    SigningRequest,
    UploadedObjectInfo,
)
from s3lite.signing import aws_uri_encode, presign_post_v4, presign_v4, sign_v4
from s3lite.uploader import (
    DEFAULT_PART_SIZE,
    MAX_OBJECT_SIZE,
    MAX_PART_SIZE,
    MIN_PART_SIZE,
    ObjectUploader,
    calculate_part_size,
)
from s3lite.xml_parser import (
    build_complete_multipart_upload,
    parse_complete_multipart_upload,
    parse_copy_object,
    parse_initiate_multipart_upload,
    parse_list_objects,
    parse_server_error,
)

logger = logging.getLogger(__name__)

USER_AGENT = "s3lite"

# Seven days, the longest validity S3 accepts for presigned requests
DEFAULT_EXPIRY_SECONDS = 7 * 24 * 3600

# Response headers reported as metadata by stat_object, besides x-amz-meta-*
METADATA_HEADERS = (
    "content-type",
    "cache-control",
    "content-disposition",
    "content-encoding",
    "content-language",
    "expires",
)

QueryType = Union[str, Mapping[str, str], None]
PayloadType = Union[bytes, str, None]


class S3Client:
    """Client for one S3-compatible endpoint.

    Example:
        >>> async with S3Client(
        ...     endpoint="localhost", port=9000, use_ssl=False,
        ...     region="us-east-1", access_key="AKIA...", secret_key="...",
        ...     bucket="dev-bucket",
        ... ) as client:
        ...     await client.put_object("hello.txt", "Hello, world")
    """

    def __init__(
        self,
        endpoint: str,
        region: str,
        access_key: str = "",
        secret_key: str = "",
        session_token: Optional[str] = None,
        bucket: Optional[str] = None,
        port: Optional[int] = None,
        use_ssl: bool = True,
        path_style: bool = True,
        part_size: int = DEFAULT_PART_SIZE,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the client.

        Args:
            endpoint: Hostname only, no protocol, port or path.
            region: Region to sign for, e.g. "us-east-1".
            access_key: Access key ID. Leave empty (with secret_key) for
                anonymous requests.
            secret_key: Secret access key.
            session_token: Optional STS session token.
            bucket: Default bucket for requests that don't name one.
            port: Port number; defaults to 443 or 80.
            use_ssl: Use HTTPS.
            path_style: Use https://endpoint/bucket/key URLs instead of
                https://bucket.endpoint/key.
            part_size: Minimum multipart part size, 5 MiB to 5 GiB.
            http_client: httpx client to send requests with. One is created
                (and closed by aclose()) if not given.

        Raises:
            InvalidEndpointError: If the endpoint is empty or contains "/".
            InvalidArgumentError: If the port or part size is invalid.
        """
        if not isinstance(endpoint, str) or not endpoint or "/" in endpoint:
            raise InvalidEndpointError(f"Invalid endPoint : {endpoint}")
        if port is not None and not is_valid_port(port):
            raise InvalidArgumentError(f"Invalid port : {port}")
        if part_size < MIN_PART_SIZE:
            raise InvalidArgumentError("Part size should be greater than 5MB")
        if part_size > MAX_PART_SIZE:
            raise InvalidArgumentError("Part size should be less than 5GB")

        default_port = 443 if use_ssl else 80
        self.port = port if port is not None else default_port
        self.host = endpoint.lower()
        if self.port != default_port:
            self.host += f":{self.port}"
        self.protocol = "https" if use_ssl else "http"
        self.region = region
        self.access_key = access_key
        self._secret_key = secret_key
        self.session_token = session_token
        self.default_bucket = bucket
        self.path_style = path_style
        self.part_size = part_size
        self._http = http_client if http_client is not None else httpx.AsyncClient()
        self._owns_http = http_client is None

    async def __aenter__(self) -> "S3Client":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this client created it."""
        if self._owns_http:
            await self._http.aclose()

    def get_bucket_name(self, bucket_name: Optional[str] = None) -> str:
        """Resolve the bucket for a request, falling back to the default.

        Raises:
            InvalidBucketNameError: If no valid bucket name is available.
        """
        bucket = bucket_name if bucket_name is not None else self.default_bucket
        if bucket is None or not is_valid_bucket_name(bucket):
            raise InvalidBucketNameError(f"Invalid bucket name: {bucket}")
        return bucket

    def _check_object_name(self, object_name: str) -> None:
        if not is_valid_object_name(object_name):
            raise InvalidObjectNameError(f"Invalid object name: {object_name}")

    def _host_for(self, bucket: str) -> str:
        return self.host if self.path_style else f"{bucket}.{self.host}"

    def _resource_for(self, bucket: str, object_name: str) -> str:
        if self.path_style:
            return f"/{bucket}/{object_name}"
        return f"/{object_name}"

    async def make_request(
        self,
        method: str,
        object_name: str = "",
        *,
        bucket_name: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
        query: QueryType = None,
        payload: PayloadType = None,
        status_code: int = 200,
        stream: bool = False,
    ) -> httpx.Response:
        """Sign and send a single request.

        The response body is read in full before returning, unless
        ``stream`` is set, in which case the caller must close the response.

        Args:
            method: HTTP method.
            object_name: Object key; empty for bucket-level requests.
            bucket_name: Bucket; defaults to the client's bucket.
            headers: Extra request headers (metadata, Range, ...).
            query: Query string (already encoded) or a mapping to encode.
            payload: Request body for POST/PUT/DELETE.
            status_code: Expected response status.
            stream: Return without reading the response body.

        Raises:
            ServerError: If the response status differs from status_code.
            InvalidArgumentError: If a payload is given for GET/HEAD.
        """
        date = datetime.now(timezone.utc)
        bucket = self.get_bucket_name(bucket_name)
        request_headers = httpx.Headers(headers or {})
        host = self._host_for(bucket)

        if isinstance(query, Mapping):
            query_string = urlencode(query, quote_via=quote)
        else:
            query_string = query or ""
        resource = self._resource_for(bucket, object_name)
        path = resource + (f"?{query_string}" if query_string else "")

        if method in ("POST", "PUT", "DELETE"):
            if payload is None:
                payload = b""
            elif isinstance(payload, str):
                payload = payload.encode("utf-8")
            request_headers["Content-Length"] = str(len(payload))
        elif payload:
            raise InvalidArgumentError(f"Unexpected payload on {method} request.")

        request_headers["host"] = host
        request_headers["x-amz-date"] = make_date_long(date)
        request_headers["x-amz-content-sha256"] = sha256_hex(payload or b"")
        if self.session_token:
            request_headers["x-amz-security-token"] = self.session_token
        if self.access_key or self._secret_key:
            request_headers["authorization"] = sign_v4(
                SigningRequest(
                    method=method,
                    path=path,
                    headers=request_headers,
                    access_key=self.access_key,
                    secret_key=self._secret_key,
                    region=self.region,
                    date=date,
                )
            )
        request_headers["user-agent"] = USER_AGENT

        url = f"{self.protocol}://{host}{aws_uri_encode(resource, allow_slashes=True)}"
        if query_string:
            url += f"?{query_string}"

        request = self._http.build_request(
            method, url, headers=request_headers, content=payload
        )
        response = await self._http.send(request, stream=True)
        logger.debug("%s %s -> %d", method, resource, response.status_code)

        if response.status_code != status_code:
            try:
                body = (await response.aread()).decode("utf-8", errors="replace")
            finally:
                await response.aclose()
            if response.status_code >= 400:
                raise parse_server_error(
                    response.status_code, body, bucket, object_name or None
                )
            raise ServerError(
                response.status_code,
                "UnexpectedStatusCode",
                f"Unexpected response code from the server (expected {status_code}, "
                f"got {response.status_code} {response.reason_phrase}).",
            )

        if not stream:
            try:
                await response.aread()
            finally:
                await response.aclose()
        return response

    async def put_object(
        self,
        object_name: str,
        data: Union[bytes, str, ByteChunks],
        metadata: Optional[Mapping[str, str]] = None,
        size: Optional[int] = None,
        bucket_name: Optional[str] = None,
        max_concurrency: Optional[int] = None,
    ) -> UploadedObjectInfo:
        """Upload an object from bytes, a string or a stream of bytes.

        Small objects are stored with a single PUT; larger or unsized
        streams use a concurrent multipart upload.

        Args:
            object_name: Object key.
            data: bytes, str (UTF-8 encoded), or a sync or async iterable
                of bytes chunks of any size.
            metadata: Headers stored with the object.
            size: Total size, if known, for streams. Used to pick the part
                size; unsized streams assume the maximum object size.
            bucket_name: Bucket; defaults to the client's bucket.
            max_concurrency: Maximum number of parts uploaded at once.

        Raises:
            InvalidArgumentError: For bad data or a size mismatch.
            EmptyUploadError: If a stream produced no data.
            ServerError: If the server rejects any request.
        """
        bucket = self.get_bucket_name(bucket_name)
        self._check_object_name(object_name)

        known_size: Optional[int] = None
        if isinstance(data, str):
            data = data.encode("utf-8")
        if isinstance(data, (bytes, bytearray, memoryview)):
            known_size = len(data)
            chunks: ByteChunks = [bytes(data)]
        elif hasattr(data, "__aiter__") or hasattr(data, "__iter__"):
            chunks = data
        else:
            raise InvalidArgumentError("Invalid stream/data type provided.")

        if size is not None:
            if known_size is not None and size != known_size:
                raise InvalidArgumentError(
                    f"size was specified ({size}) but doesn't match "
                    f"auto-detected size ({known_size})."
                )
            if size < 0:
                raise InvalidArgumentError(f"invalid size specified: {size}")
            known_size = size

        part_size = calculate_part_size(
            known_size if known_size is not None else MAX_OBJECT_SIZE, self.part_size
        )
        uploader = ObjectUploader(
            self,
            bucket,
            object_name,
            part_size,
            metadata=metadata,
            max_concurrency=max_concurrency,
        )
        try:
            written = False
            async for chunk in arechunk(chunks, part_size):
                await uploader.write(chunk)
                written = True
            if not written and known_size == 0:
                await uploader.write(b"")
        except BaseException as e:
            if e is uploader.first_error:
                # A request of this upload failed: let the parts still in
                # flight settle, then close() re-raises that failure.
                await uploader.close()
            else:
                await uploader.abort(e)
            raise
        return await uploader.close()

    async def initiate_new_multipart_upload(
        self,
        object_name: str,
        bucket_name: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> str:
        """Start a multipart upload and return its upload ID.

        Raises:
            ProtocolError: If the response carries no UploadId.
        """
        self._check_object_name(object_name)
        response = await self.make_request(
            "POST",
            object_name,
            bucket_name=bucket_name,
            headers=metadata,
            query="uploads",
        )
        return parse_initiate_multipart_upload(response.text)

    async def upload_part(
        self,
        object_name: str,
        upload_id: str,
        part_number: int,
        data: bytes,
        bucket_name: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> str:
        """Upload one part and return its ETag without quotes."""
        response = await self.make_request(
            "PUT",
            object_name,
            bucket_name=bucket_name,
            headers=headers,
            query={"partNumber": str(part_number), "uploadId": upload_id},
            payload=data,
        )
        return sanitize_etag(response.headers.get("etag"))

    async def complete_multipart_upload(
        self,
        object_name: str,
        upload_id: str,
        etags: list[PartETag],
        bucket_name: Optional[str] = None,
    ) -> UploadedObjectInfo:
        """Assemble uploaded parts into the final object.

        Args:
            etags: Parts to assemble, sorted by part number.
        """
        bucket = self.get_bucket_name(bucket_name)
        response = await self.make_request(
            "POST",
            object_name,
            bucket_name=bucket,
            query={"uploadId": upload_id},
            payload=build_complete_multipart_upload(etags),
        )
        etag = parse_complete_multipart_upload(
            response.status_code, response.text, bucket, object_name
        )
        return UploadedObjectInfo(etag=etag, version_id=get_version_id(response.headers))

    async def get_object(
        self,
        object_name: str,
        bucket_name: Optional[str] = None,
        version_id: Optional[str] = None,
    ) -> bytes:
        """Download a whole object into memory."""
        self._check_object_name(object_name)
        response = await self.make_request(
            "GET",
            object_name,
            bucket_name=bucket_name,
            query={"versionId": version_id} if version_id else None,
        )
        return response.content

    async def get_partial_object(
        self,
        object_name: str,
        offset: int,
        length: Optional[int] = None,
        bucket_name: Optional[str] = None,
    ) -> bytes:
        """Download ``length`` bytes (or everything) starting at ``offset``."""
        self._check_object_name(object_name)
        if offset < 0 or (length is not None and length < 1):
            raise InvalidArgumentError(
                f"Invalid range: offset={offset}, length={length}"
            )
        end = str(offset + length - 1) if length is not None else ""
        response = await self.make_request(
            "GET",
            object_name,
            bucket_name=bucket_name,
            headers={"Range": f"bytes={offset}-{end}"},
            status_code=206,
        )
        return response.content

    async def stream_object(
        self,
        object_name: str,
        bucket_name: Optional[str] = None,
        chunk_size: Optional[int] = None,
    ) -> AsyncIterator[bytes]:
        """Download an object as a stream of byte chunks.

        The response is closed when the iteration ends or is abandoned.
        """
        self._check_object_name(object_name)
        response = await self.make_request(
            "GET", object_name, bucket_name=bucket_name, stream=True
        )
        try:
            async for chunk in response.aiter_bytes(chunk_size):
                yield chunk
        finally:
            await response.aclose()

    async def stat_object(
        self,
        object_name: str,
        bucket_name: Optional[str] = None,
        version_id: Optional[str] = None,
    ) -> ObjectStatus:
        """Get an object's size, ETag, modification time and metadata."""
        self._check_object_name(object_name)
        response = await self.make_request(
            "HEAD",
            object_name,
            bucket_name=bucket_name,
            query={"versionId": version_id} if version_id else None,
        )
        headers = response.headers
        last_modified = headers.get("last-modified")
        metadata = {
            name: value
            for name, value in headers.items()
            if name.startswith("x-amz-meta-") or name in METADATA_HEADERS
        }
        return ObjectStatus(
            key=object_name,
            size=int(headers.get("content-length", "0")),
            etag=sanitize_etag(headers.get("etag")),
            last_modified=parsedate_to_datetime(last_modified) if last_modified else None,
            version_id=get_version_id(headers),
            metadata=metadata,
        )

    async def exists(self, object_name: str, bucket_name: Optional[str] = None) -> bool:
        """Check whether an object exists."""
        try:
            await self.stat_object(object_name, bucket_name=bucket_name)
        except ServerError as e:
            if e.status_code == 404:
                return False
            raise
        return True

    async def delete_object(
        self,
        object_name: str,
        bucket_name: Optional[str] = None,
        version_id: Optional[str] = None,
    ) -> None:
        """Delete an object. Deleting a missing key is not an error."""
        self._check_object_name(object_name)
        await self.make_request(
            "DELETE",
            object_name,
            bucket_name=bucket_name,
            query={"versionId": version_id} if version_id else None,
            status_code=204,
        )

    async def copy_object(
        self,
        source_key: str,
        object_name: str,
        source_bucket: Optional[str] = None,
        bucket_name: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> UploadedObjectInfo:
        """Copy an object server-side.

        If ``metadata`` is given it replaces the source object's metadata;
        otherwise the metadata is copied.
        """
        source_bucket = self.get_bucket_name(source_bucket)
        bucket = self.get_bucket_name(bucket_name)
        self._check_object_name(source_key)
        self._check_object_name(object_name)

        headers = dict(metadata or {})
        headers["x-amz-copy-source"] = aws_uri_encode(
            f"/{source_bucket}/{source_key}", allow_slashes=True
        )
        if metadata is not None:
            headers["x-amz-metadata-directive"] = "REPLACE"
        response = await self.make_request(
            "PUT", object_name, bucket_name=bucket, headers=headers
        )
        etag, _ = parse_copy_object(response.text)
        return UploadedObjectInfo(etag=etag, version_id=get_version_id(response.headers))

    async def list_objects_grouped(
        self,
        prefix: str = "",
        delimiter: Optional[str] = "/",
        max_results: Optional[int] = None,
        page_size: int = 1000,
        bucket_name: Optional[str] = None,
    ) -> AsyncIterator[Union[ObjectInfo, CommonPrefix]]:
        """List objects and common prefixes, following continuation tokens.

        Args:
            prefix: Only list keys starting with this prefix.
            delimiter: Group keys sharing a prefix up to this delimiter into
                CommonPrefix entries. None lists every key.
            max_results: Stop after this many entries.
            page_size: Entries requested per page (1..1000).
            bucket_name: Bucket; defaults to the client's bucket.

        Yields:
            ObjectInfo and CommonPrefix entries in key order, page by page.
        """
        if not is_valid_prefix(prefix):
            raise InvalidArgumentError(f"Invalid prefix: {prefix}")
        if not 1 <= page_size <= 1000:
            raise InvalidArgumentError("page_size must be between 1 and 1000")

        yielded = 0
        continuation_token: Optional[str] = None
        while True:
            query = {"list-type": "2", "max-keys": str(page_size), "prefix": prefix}
            if delimiter:
                query["delimiter"] = delimiter
            if continuation_token:
                query["continuation-token"] = continuation_token
            response = await self.make_request(
                "GET", "", bucket_name=bucket_name, query=query
            )
            page = parse_list_objects(response.text)

            entries: list[Any] = [*page.objects, *page.prefixes]
            entries.sort(key=lambda e: e.key if isinstance(e, ObjectInfo) else e.prefix)
            for entry in entries:
                if max_results is not None and yielded >= max_results:
                    return
                yield entry
                yielded += 1

            if not page.is_truncated:
                return
            continuation_token = page.next_continuation_token

    async def list_objects(
        self,
        prefix: str = "",
        max_results: Optional[int] = None,
        page_size: int = 1000,
        bucket_name: Optional[str] = None,
    ) -> AsyncIterator[ObjectInfo]:
        """List every object whose key starts with ``prefix``."""
        async for entry in self.list_objects_grouped(
            prefix,
            delimiter=None,
            max_results=max_results,
            page_size=page_size,
            bucket_name=bucket_name,
        ):
            if isinstance(entry, ObjectInfo):
                yield entry

    def get_presigned_url(
        self,
        method: str,
        object_name: str,
        bucket_name: Optional[str] = None,
        expiry_seconds: int = DEFAULT_EXPIRY_SECONDS,
        parameters: Optional[Mapping[str, str]] = None,
        request_date: Optional[datetime] = None,
    ) -> str:
        """Generate a presigned URL for any request.

        Args:
            method: HTTP method the URL will be used with.
            object_name: Object key.
            expiry_seconds: Validity, 1 second to 7 days.
            parameters: Extra query parameters, e.g. response-content-type
                or partNumber/uploadId.
            request_date: Signing time; defaults to now.
        """
        bucket = self.get_bucket_name(bucket_name)
        self._check_object_name(object_name)
        path = self._resource_for(bucket, object_name)
        if parameters:
            path += "?" + urlencode(parameters, quote_via=quote)
        return presign_v4(
            PresignRequest(
                method=method,
                path=path,
                headers=httpx.Headers({"host": self._host_for(bucket)}),
                access_key=self.access_key,
                secret_key=self._secret_key,
                region=self.region,
                date=request_date or datetime.now(timezone.utc),
                session_token=self.session_token,
                protocol=self.protocol,
                expiry_seconds=expiry_seconds,
            )
        )

    def presigned_get_object(
        self,
        object_name: str,
        bucket_name: Optional[str] = None,
        expiry_seconds: int = DEFAULT_EXPIRY_SECONDS,
        response_params: Optional[Mapping[str, str]] = None,
        request_date: Optional[datetime] = None,
    ) -> str:
        """Generate a presigned URL to download an object."""
        return self.get_presigned_url(
            "GET",
            object_name,
            bucket_name=bucket_name,
            expiry_seconds=expiry_seconds,
            parameters=response_params,
            request_date=request_date,
        )

    def presigned_post_policy(
        self,
        object_name: str,
        bucket_name: Optional[str] = None,
        expiry_seconds: int = 3600,
        conditions: Optional[list[PolicyCondition]] = None,
        fields: Optional[Mapping[str, str]] = None,
        request_date: Optional[datetime] = None,
    ) -> PresignedPost:
        """Generate a presigned POST policy for a browser-direct upload.

        Args:
            conditions: Extra policy conditions, e.g.
                ``["content-length-range", 0, 10485760]``.
            fields: Extra form fields; each is also added as a condition.
        """
        bucket = self.get_bucket_name(bucket_name)
        self._check_object_name(object_name)
        return presign_post_v4(
            PostPolicyRequest(
                host=self.host,
                bucket=bucket,
                object_key=object_name,
                access_key=self.access_key,
                secret_key=self._secret_key,
                region=self.region,
                date=request_date or datetime.now(timezone.utc),
                expiry_seconds=expiry_seconds,
                protocol=self.protocol,
                conditions=list(conditions or []),
                fields=dict(fields or {}),
                session_token=self.session_token,
            )
        )
