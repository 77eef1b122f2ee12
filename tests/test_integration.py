"""Integration tests against a local fake S3 server.

The server runs in a thread, speaks real HTTP and verifies every
signature the way S3 does, so these tests exercise the whole stack from
S3Client down to the socket.

These tests do NOT require real S3 credentials - they use a local mock server.
"""

import asyncio
import hashlib
import hmac
import threading
import uuid
from datetime import datetime, timezone
from email.utils import formatdate
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qsl, unquote, urlsplit
from xml.sax.saxutils import escape

import httpx
import pytest

from s3lite.client import S3Client
from s3lite.errors import ServerError
from s3lite.helpers import sha256_hex, sha256_hmac
from s3lite.models import CommonPrefix, SigningRequest
from s3lite.signing import (
    UNSIGNED_PAYLOAD,
    canonical_request,
    sign_v4,
    signing_key,
    string_to_sign,
)
from s3lite.uploader import MIN_PART_SIZE
from s3lite.xml_parser import find_children, find_text, parse_xml

ACCESS_KEY = "AKIA_INTEGRATION"
SECRET_KEY = "integration-secret"
REGION = "us-east-1"
BUCKET = "dev-bucket"
MiB = 1024 * 1024


class FakeS3Store:
    """Objects and multipart uploads held by the fake server."""

    def __init__(self):
        self.lock = threading.Lock()
        self.objects = {}
        self.uploads = {}
        self.completed_parts = []

    def reset(self):
        with self.lock:
            self.objects.clear()
            self.uploads.clear()
            self.completed_parts.clear()


def parse_amz_date(value):
    return datetime.strptime(value, "%Y%m%dT%H%M%SZ").replace(tzinfo=timezone.utc)


class FakeS3Handler(BaseHTTPRequestHandler):
    """Mock HTTP handler implementing a small, strict subset of S3."""

    store = FakeS3Store()

    def log_message(self, format, *args):
        """Suppress logging."""
        pass

    def do_GET(self):
        self.handle_s3("GET")

    def do_HEAD(self):
        self.handle_s3("HEAD")

    def do_PUT(self):
        self.handle_s3("PUT")

    def do_POST(self):
        self.handle_s3("POST")

    def do_DELETE(self):
        self.handle_s3("DELETE")

    def handle_s3(self, method):
        split = urlsplit(self.path)
        path = unquote(split.path)
        params = dict(parse_qsl(split.query, keep_blank_values=True))
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length else b""

        if not self.is_authorized(method, path, split.query, params, body):
            return self.send_error_xml(
                403,
                "SignatureDoesNotMatch",
                "The request signature we calculated does not match the signature you provided.",
            )

        _, bucket, key = path.split("/", 2)
        if bucket != BUCKET:
            return self.send_error_xml(404, "NoSuchBucket", "The specified bucket does not exist")

        if method == "GET" and not key:
            return self.list_objects(params)
        if method == "POST" and "uploads" in params:
            return self.initiate_upload(key)
        if method == "PUT" and "partNumber" in params:
            return self.upload_part(params, body)
        if method == "POST" and "uploadId" in params:
            return self.complete_upload(key, params["uploadId"], body)
        if method == "PUT" and self.headers.get("x-amz-copy-source"):
            return self.copy_object(key)
        if method == "PUT":
            return self.put_object(key, body, self.object_metadata())
        if method in ("GET", "HEAD"):
            return self.get_object(key)
        if method == "DELETE":
            with self.store.lock:
                self.store.objects.pop(key, None)
            return self.send_body(204, b"")
        return self.send_error_xml(405, "MethodNotAllowed", "Not supported")

    def is_authorized(self, method, path, query, params, body):
        if "X-Amz-Signature" in params:
            date = parse_amz_date(params["X-Amz-Date"])
            signed = params["X-Amz-SignedHeaders"].split(";")
            unsigned_query = query.rpartition("&X-Amz-Signature=")[0]
            canonical = canonical_request(
                method,
                f"{path}?{unsigned_query}",
                {name: self.headers[name] for name in signed},
                signed,
                UNSIGNED_PAYLOAD,
            )
            key = signing_key(date, REGION, SECRET_KEY)
            expected = sha256_hmac(key, string_to_sign(canonical, date, REGION)).hex()
            return hmac.compare_digest(expected, params["X-Amz-Signature"])

        authorization = self.headers.get("Authorization")
        if authorization is None:
            return False
        if self.headers.get("x-amz-content-sha256") != sha256_hex(body):
            return False
        signed = authorization.split("SignedHeaders=")[1].split(",")[0].split(";")
        expected = sign_v4(
            SigningRequest(
                method=method,
                path=f"{path}?{query}" if query else path,
                headers=httpx.Headers({name: self.headers[name] for name in signed}),
                access_key=ACCESS_KEY,
                secret_key=SECRET_KEY,
                region=REGION,
                date=parse_amz_date(self.headers["x-amz-date"]),
            )
        )
        return hmac.compare_digest(expected, authorization)

    def object_metadata(self):
        return {
            name.lower(): value
            for name, value in self.headers.items()
            if name.lower().startswith("x-amz-meta-") or name.lower() == "content-type"
        }

    def store_object(self, key, data, metadata, etag=None):
        with self.store.lock:
            self.store.objects[key] = {
                "data": data,
                "etag": etag or hashlib.md5(data).hexdigest(),
                "metadata": metadata,
                "last_modified": formatdate(usegmt=True),
            }
        return self.store.objects[key]

    def put_object(self, key, data, metadata):
        stored = self.store_object(key, data, metadata)
        self.send_body(200, b"", {"ETag": f'"{stored["etag"]}"'})

    def get_object(self, key):
        stored = self.store.objects.get(key)
        if stored is None:
            if self.command == "HEAD":
                return self.send_body(404, b"")
            return self.send_error_xml(404, "NoSuchKey", "The specified key does not exist.")
        headers = {
            "ETag": f'"{stored["etag"]}"',
            "Last-Modified": stored["last_modified"],
            **stored["metadata"],
        }
        byte_range = self.headers.get("Range")
        if byte_range:
            start, _, end = byte_range[len("bytes="):].partition("-")
            stop = int(end) + 1 if end else len(stored["data"])
            return self.send_body(206, stored["data"][int(start):stop], headers)
        self.send_body(200, stored["data"], headers)

    def copy_object(self, key):
        source = unquote(self.headers["x-amz-copy-source"]).split("/", 2)[2]
        stored = self.store.objects.get(source)
        if stored is None:
            return self.send_error_xml(404, "NoSuchKey", "The specified key does not exist.")
        metadata = stored["metadata"]
        if self.headers.get("x-amz-metadata-directive") == "REPLACE":
            metadata = self.object_metadata()
        copied = self.store_object(key, stored["data"], metadata)
        self.send_xml(
            200,
            "<CopyObjectResult><LastModified>2021-10-26T18:07:28.000Z</LastModified>"
            f"<ETag>&quot;{copied['etag']}&quot;</ETag></CopyObjectResult>",
        )

    def initiate_upload(self, key):
        upload_id = uuid.uuid4().hex
        with self.store.lock:
            self.store.uploads[upload_id] = {
                "key": key,
                "parts": {},
                "metadata": self.object_metadata(),
            }
        self.send_xml(
            200,
            "<InitiateMultipartUploadResult xmlns=\"http://s3.amazonaws.com/doc/2006-03-01/\">"
            f"<Bucket>{BUCKET}</Bucket><Key>{escape(key)}</Key>"
            f"<UploadId>{upload_id}</UploadId></InitiateMultipartUploadResult>",
        )

    def upload_part(self, params, body):
        upload = self.store.uploads.get(params["uploadId"])
        if upload is None:
            return self.send_error_xml(404, "NoSuchUpload", "The specified upload does not exist.")
        etag = hashlib.md5(body).hexdigest()
        with self.store.lock:
            upload["parts"][int(params["partNumber"])] = (etag, body)
        self.send_body(200, b"", {"ETag": f'"{etag}"'})

    def complete_upload(self, key, upload_id, body):
        upload = self.store.uploads.get(upload_id)
        if upload is None:
            return self.send_error_xml(404, "NoSuchUpload", "The specified upload does not exist.")
        root = parse_xml(body.decode("utf-8"))
        requested = [
            (int(find_text(part, "PartNumber")), find_text(part, "ETag"))
            for part in find_children(root, "Part")
        ]
        numbers = [number for number, _ in requested]
        if numbers != sorted(numbers):
            return self.send_error_xml(400, "InvalidPartOrder", "The list of parts was not in ascending order.")
        for number, etag in requested:
            if number not in upload["parts"] or upload["parts"][number][0] != etag:
                return self.send_error_xml(400, "InvalidPart", "One or more of the specified parts could not be found.")

        data = b"".join(upload["parts"][number][1] for number in numbers)
        digests = b"".join(bytes.fromhex(etag) for _, etag in requested)
        etag = f"{hashlib.md5(digests).hexdigest()}-{len(requested)}"
        self.store_object(key, data, upload["metadata"], etag=etag)
        with self.store.lock:
            self.store.completed_parts.append(numbers)
            del self.store.uploads[upload_id]
        self.send_xml(
            200,
            "<CompleteMultipartUploadResult xmlns=\"http://s3.amazonaws.com/doc/2006-03-01/\">"
            f"<Bucket>{BUCKET}</Bucket><Key>{escape(key)}</Key>"
            f"<ETag>&quot;{etag}&quot;</ETag></CompleteMultipartUploadResult>",
        )

    def list_objects(self, params):
        prefix = params.get("prefix", "")
        delimiter = params.get("delimiter")
        max_keys = int(params.get("max-keys", "1000"))
        start = int(params.get("continuation-token", "0"))

        entries = []
        seen_prefixes = set()
        for key in sorted(self.store.objects):
            if not key.startswith(prefix):
                continue
            rest = key[len(prefix):]
            if delimiter and delimiter in rest:
                common = prefix + rest.split(delimiter, 1)[0] + delimiter
                if common not in seen_prefixes:
                    seen_prefixes.add(common)
                    entries.append(
                        f"<CommonPrefixes><Prefix>{escape(common)}</Prefix></CommonPrefixes>"
                    )
            else:
                stored = self.store.objects[key]
                entries.append(
                    f"<Contents><Key>{escape(key)}</Key>"
                    "<LastModified>2021-10-26T18:07:28.000Z</LastModified>"
                    f"<ETag>&quot;{stored['etag']}&quot;</ETag>"
                    f"<Size>{len(stored['data'])}</Size></Contents>"
                )

        page = entries[start:start + max_keys]
        truncated = start + max_keys < len(entries)
        token = (
            f"<NextContinuationToken>{start + max_keys}</NextContinuationToken>"
            if truncated
            else ""
        )
        self.send_xml(
            200,
            "<ListBucketResult xmlns=\"http://s3.amazonaws.com/doc/2006-03-01/\">"
            f"<Name>{BUCKET}</Name><IsTruncated>{'true' if truncated else 'false'}</IsTruncated>"
            f"{token}{''.join(page)}</ListBucketResult>",
        )

    def send_error_xml(self, status, code, message):
        self.send_xml(
            status,
            f"<Error><Code>{code}</Code><Message>{escape(message)}</Message>"
            "<RequestId>FAKE-REQUEST</RequestId></Error>",
        )

    def send_xml(self, status, text):
        self.send_body(status, text.encode("utf-8"), {"Content-Type": "application/xml"})

    def send_body(self, status, data, headers=None):
        self.send_response(status)
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(data)


@pytest.fixture(scope="module")
def mock_server():
    """Start the fake S3 server for integration tests."""
    server = ThreadingHTTPServer(("127.0.0.1", 0), FakeS3Handler)
    port = server.server_address[1]
    thread = threading.Thread(target=server.serve_forever)
    thread.daemon = True
    thread.start()
    yield port
    server.shutdown()


@pytest.fixture
def store(mock_server):
    FakeS3Handler.store.reset()
    return FakeS3Handler.store


def run_with_client(port, scenario, **kwargs):
    """Run scenario(client) with a client pointed at the fake server."""
    options = dict(
        endpoint="127.0.0.1",
        port=port,
        use_ssl=False,
        region=REGION,
        access_key=ACCESS_KEY,
        secret_key=SECRET_KEY,
        bucket=BUCKET,
        part_size=MIN_PART_SIZE,
    )
    options.update(kwargs)

    async def main():
        async with S3Client(**options) as client:
            return await scenario(client)

    return asyncio.run(main())


class TestObjectLifecycle:
    """Put, read, copy and delete objects over real HTTP."""

    def test_put_get_stat_delete(self, mock_server, store):
        """A small object round-trips with its metadata."""

        async def scenario(client):
            info = await client.put_object(
                "docs/hello world.txt",
                "Hello, world",
                metadata={"Content-Type": "text/plain", "x-amz-meta-owner": "alice"},
            )
            data = await client.get_object("docs/hello world.txt")
            status = await client.stat_object("docs/hello world.txt")
            await client.delete_object("docs/hello world.txt")
            return info, data, status, await client.exists("docs/hello world.txt")

        info, data, status, exists_after = run_with_client(mock_server, scenario)

        assert info.etag == hashlib.md5(b"Hello, world").hexdigest()
        assert data == b"Hello, world"
        assert status.size == 12
        assert status.etag == info.etag
        assert status.metadata["x-amz-meta-owner"] == "alice"
        assert status.metadata["content-type"] == "text/plain"
        assert exists_after is False

    def test_missing_object(self, mock_server, store):
        """Reading a missing key raises NoSuchKey."""

        async def scenario(client):
            await client.get_object("nope.txt")

        with pytest.raises(ServerError) as exc_info:
            run_with_client(mock_server, scenario)

        assert exc_info.value.code == "NoSuchKey"
        assert exc_info.value.status_code == 404

    def test_copy_object(self, mock_server, store):
        """Server-side copies keep the data."""

        async def scenario(client):
            await client.put_object("source.txt", b"copy me")
            await client.copy_object("source.txt", "target.txt")
            return await client.get_object("target.txt")

        assert run_with_client(mock_server, scenario) == b"copy me"

    def test_partial_and_streamed_reads(self, mock_server, store):
        """Ranges and streams read the stored bytes."""

        async def scenario(client):
            await client.put_object("digits.txt", b"0123456789")
            partial = await client.get_partial_object("digits.txt", offset=2, length=3)
            streamed = [chunk async for chunk in client.stream_object("digits.txt")]
            return partial, b"".join(streamed)

        partial, streamed = run_with_client(mock_server, scenario)

        assert partial == b"234"
        assert streamed == b"0123456789"

    def test_open_ended_range(self, mock_server, store):
        """Without a length the read runs to the end of the object."""

        async def scenario(client):
            await client.put_object("digits.txt", b"0123456789")
            return await client.get_partial_object("digits.txt", offset=7)

        assert run_with_client(mock_server, scenario) == b"789"


class TestMultipartUploadOverHttp:
    """Streaming uploads that need several parts."""

    def test_async_stream_upload(self, mock_server, store):
        """A sized 12 MiB stream is uploaded in three parts and reassembled."""

        async def source():
            for i in range(12):
                yield bytes([i]) * MiB

        async def scenario(client):
            info = await client.put_object(
                "big.bin", source(), size=12 * MiB, max_concurrency=2
            )
            return info, await client.get_object("big.bin")

        info, data = run_with_client(mock_server, scenario)

        assert data == b"".join(bytes([i]) * MiB for i in range(12))
        assert info.etag.endswith("-3")
        assert store.completed_parts == [[1, 2, 3]]
        assert store.uploads == {}

    def test_sized_bytes_upload(self, mock_server, store):
        """Bytes larger than a part are split into parts."""
        data = bytes(range(256)) * (6 * MiB // 256)

        async def scenario(client):
            await client.put_object("six.bin", data)
            return await client.stat_object("six.bin")

        status = run_with_client(mock_server, scenario)

        assert status.size == 6 * MiB
        assert store.completed_parts == [[1, 2]]


class TestListingOverHttp:
    """Listing with pagination."""

    def test_grouped_listing_across_pages(self, mock_server, store):
        """Every key and prefix is listed once, in order, across pages."""

        async def scenario(client):
            for key in ["a.txt", "b.txt", "photos/1.jpg", "photos/2.jpg", "z.txt"]:
                await client.put_object(key, b"x")
            return [entry async for entry in client.list_objects_grouped(page_size=2)]

        entries = run_with_client(mock_server, scenario)

        names = [e.prefix if isinstance(e, CommonPrefix) else e.key for e in entries]
        assert names == ["a.txt", "b.txt", "photos/", "z.txt"]

    def test_recursive_listing_with_prefix(self, mock_server, store):
        """Without a delimiter every key under the prefix is listed."""

        async def scenario(client):
            for key in ["logs/2021/a", "logs/2022/b", "other"]:
                await client.put_object(key, b"x")
            return [entry.key async for entry in client.list_objects("logs/", page_size=1)]

        assert run_with_client(mock_server, scenario) == ["logs/2021/a", "logs/2022/b"]


class TestAuthenticationOverHttp:
    """Signatures as checked by the server."""

    def test_wrong_secret_rejected(self, mock_server, store):
        """A bad secret fails with SignatureDoesNotMatch."""

        async def scenario(client):
            await client.put_object("a.txt", b"x")

        with pytest.raises(ServerError) as exc_info:
            run_with_client(mock_server, scenario, secret_key="wrong-secret")

        assert exc_info.value.code == "SignatureDoesNotMatch"
        assert exc_info.value.status_code == 403

    def test_presigned_url_usable_without_client(self, mock_server, store):
        """A presigned GET URL works with a plain HTTP client."""

        async def scenario(client):
            await client.put_object("shared/report 2021.csv", b"a,b,c")
            return client.presigned_get_object("shared/report 2021.csv", expiry_seconds=60)

        url = run_with_client(mock_server, scenario)
        response = httpx.get(url)

        assert response.status_code == 200
        assert response.content == b"a,b,c"

    def test_tampered_presigned_url_rejected(self, mock_server, store):
        """Changing a signed parameter invalidates the URL."""

        async def scenario(client):
            await client.put_object("a.txt", b"x")
            return client.presigned_get_object("a.txt", expiry_seconds=60)

        url = run_with_client(mock_server, scenario)
        response = httpx.get(url.replace("X-Amz-Expires=60", "X-Amz-Expires=61"))

        assert response.status_code == 403
