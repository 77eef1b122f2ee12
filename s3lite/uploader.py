"""Streaming object upload: single PUT or concurrent multipart upload.

An ObjectUploader receives the chunks produced by ``arechunk`` (every chunk
exactly ``part_size`` bytes except possibly the last) and decides how to
store them:

- If the first chunk is shorter than ``part_size`` it is also the last one,
  so the object is stored with a single PUT.
- Otherwise a multipart upload is initiated and each chunk becomes a part.
  Part uploads run as concurrent asyncio tasks; a failing part does not
  cancel its siblings, but the first failure is latched and re-raised once
  every in-flight part has settled, and the upload is never completed.

All session state is mutated on the event loop between awaits, so no
locking is needed even though part responses arrive out of order.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Mapping, Optional

from s3lite.errors import (
    EmptyUploadError,
    InvalidArgumentError,
    UploadAbortedError,
    UploadUsageError,
)
from s3lite.helpers import get_version_id, sanitize_etag
from s3lite.models import PartETag, UploadedObjectInfo

if TYPE_CHECKING:
    from s3lite.client import S3Client

logger = logging.getLogger(__name__)

MIN_PART_SIZE = 5 * 1024 * 1024
MAX_PART_SIZE = 5 * 1024 * 1024 * 1024
MAX_OBJECT_SIZE = 5 * 1024 * 1024 * 1024 * 1024
DEFAULT_PART_SIZE = 64 * 1024 * 1024
MAX_PARTS = 10_000

# Part sizes grow in these steps (64 MiB, 80 MiB, 96 MiB, ...)
PART_SIZE_STEP = 16 * 1024 * 1024

# The only metadata headers that are repeated on each part. Everything else
# is sent once, when the multipart upload is initiated.
PART_HEADERS = frozenset(
    {
        "x-amz-server-side-encryption-customer-algorithm",
        "x-amz-server-side-encryption-customer-key",
        "x-amz-server-side-encryption-customer-key-md5",
    }
)


def calculate_part_size(size: int, minimum: int = DEFAULT_PART_SIZE) -> int:
    """Choose a part size that keeps an object within MAX_PARTS parts.

    Args:
        size: Object size in bytes. Pass MAX_OBJECT_SIZE when unknown.
        minimum: Smallest part size to use.

    Returns:
        The smallest ``minimum + k * PART_SIZE_STEP`` such that
        ``part_size * MAX_PARTS > size``.

    Raises:
        InvalidArgumentError: If size exceeds MAX_OBJECT_SIZE.
    """
    if size > MAX_OBJECT_SIZE:
        raise InvalidArgumentError(f"size should not be more than {MAX_OBJECT_SIZE}")
    part_size = minimum
    while part_size * MAX_PARTS <= size:
        part_size += PART_SIZE_STEP
    return part_size


class ObjectUploader:
    """Upload session for one object.

    Call ``write()`` for each chunk in order, then ``close()`` to get the
    result. If the data source fails or the caller gives up, call
    ``abort()`` so in-flight part uploads are cancelled and the session
    settles as failed.

    Attributes:
        upload_id: Multipart upload ID; set only for multipart uploads.
        next_part_number: Number the next written chunk will get.
        etags: ETags of parts uploaded so far, in completion order.
        result: Final result, once the upload succeeded.
        first_error: First failure of the session, if any.
    """

    def __init__(
        self,
        client: "S3Client",
        bucket_name: str,
        object_name: str,
        part_size: int,
        metadata: Optional[Mapping[str, str]] = None,
        max_concurrency: Optional[int] = None,
    ):
        """Initialize the upload session.

        Args:
            client: Client used to send requests.
            bucket_name: Target bucket.
            object_name: Target object key.
            part_size: Size of every part except the last.
            metadata: Headers to store with the object (Content-Type,
                x-amz-meta-*, ...).
            max_concurrency: Maximum number of part uploads in flight.
                Unbounded if None.
        """
        if max_concurrency is not None and max_concurrency < 1:
            raise InvalidArgumentError("max_concurrency must be at least 1")
        self.client = client
        self.bucket_name = bucket_name
        self.object_name = object_name
        self.part_size = part_size
        self.metadata = dict(metadata or {})
        self.upload_id: Optional[str] = None
        self.next_part_number = 1
        self.etags: list[PartETag] = []
        self.result: Optional[UploadedObjectInfo] = None
        self.first_error: Optional[BaseException] = None
        self._tasks: list[asyncio.Task] = []
        self._semaphore = (
            asyncio.Semaphore(max_concurrency) if max_concurrency is not None else None
        )
        self._closed = False

    @property
    def part_headers(self) -> dict[str, str]:
        """Metadata headers that must accompany every part."""
        return {
            name: value
            for name, value in self.metadata.items()
            if name.lower() in PART_HEADERS
        }

    @property
    def in_flight(self) -> int:
        """Number of part uploads that have not settled yet."""
        return sum(1 for task in self._tasks if not task.done())

    async def write(self, chunk: bytes) -> None:
        """Upload one chunk.

        Returns once the chunk has been handed off: single PUTs and the
        initiate request are awaited, part uploads are only scheduled.

        Raises:
            UploadUsageError: If the session is closed, or already stored
                its object with a single PUT.
            Exception: The latched failure, if an earlier request failed.
        """
        if self._closed:
            raise UploadUsageError("Cannot write to a closed upload")
        if self.first_error is not None:
            raise self.first_error
        if self.result is not None:
            raise UploadUsageError(
                "The object was already stored in a single request; "
                "only the last chunk may be shorter than the part size"
            )

        part_number = self.next_part_number
        self.next_part_number += 1

        if part_number == 1 and len(chunk) < self.part_size:
            try:
                self.result = await self._put_single(chunk)
            except Exception as e:
                self._fail(e)
                raise
            return

        if not chunk:
            raise UploadUsageError("Only the first chunk of an upload may be empty")

        if part_number == 1:
            try:
                self.upload_id = await self.client.initiate_new_multipart_upload(
                    self.object_name,
                    bucket_name=self.bucket_name,
                    metadata=self.metadata,
                )
            except Exception as e:
                self._fail(e)
                raise
            logger.debug(
                "Initiated multipart upload %s for %s/%s",
                self.upload_id,
                self.bucket_name,
                self.object_name,
            )

        if self._semaphore is not None:
            await self._semaphore.acquire()
            # A sibling may have failed while we waited for the slot
            if self.first_error is not None:
                self._semaphore.release()
                raise self.first_error
        self._tasks.append(asyncio.create_task(self._upload_part(part_number, chunk)))

    async def close(self) -> UploadedObjectInfo:
        """Finish the upload and return its result.

        Waits for every in-flight part, then completes the multipart upload
        with the parts sorted by part number.

        Raises:
            EmptyUploadError: If no chunk was ever written.
            Exception: The first failure of the session, unchanged.
        """
        if self._closed and self.result is not None:
            return self.result
        self._closed = True

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self.first_error is not None:
            raise self.first_error
        if self.result is not None:
            return self.result
        if self.next_part_number == 1:
            error = EmptyUploadError("No data was written to the upload stream")
            self._fail(error)
            raise error

        etags = sorted(self.etags, key=lambda part: part.part)
        try:
            self.result = await self.client.complete_multipart_upload(
                self.object_name,
                self.upload_id,
                etags,
                bucket_name=self.bucket_name,
            )
        except Exception as e:
            self._fail(e)
            raise
        logger.debug(
            "Completed multipart upload %s for %s/%s (%d parts)",
            self.upload_id,
            self.bucket_name,
            self.object_name,
            len(etags),
        )
        return self.result

    async def abort(self, error: Optional[BaseException] = None) -> None:
        """Fail the session and cancel every in-flight part upload.

        Args:
            error: The reason, latched as the session failure unless an
                earlier failure was already recorded.
        """
        self._fail(error if error is not None else UploadAbortedError("Upload was aborted"))
        self._closed = True
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _fail(self, error: BaseException) -> None:
        if self.first_error is None:
            self.first_error = error

    async def _put_single(self, chunk: bytes) -> UploadedObjectInfo:
        response = await self.client.make_request(
            "PUT",
            self.object_name,
            bucket_name=self.bucket_name,
            headers=self.metadata,
            payload=chunk,
        )
        logger.debug(
            "Stored %s/%s with a single PUT (%d bytes)",
            self.bucket_name,
            self.object_name,
            len(chunk),
        )
        return UploadedObjectInfo(
            etag=sanitize_etag(response.headers.get("etag")),
            version_id=get_version_id(response.headers),
        )

    async def _upload_part(self, part_number: int, chunk: bytes) -> None:
        try:
            etag = await self.client.upload_part(
                self.object_name,
                self.upload_id,
                part_number,
                chunk,
                bucket_name=self.bucket_name,
                headers=self.part_headers,
            )
        except Exception as e:
            logger.warning(
                "Part %d of upload %s failed: %s", part_number, self.upload_id, e
            )
            self._fail(e)
        else:
            self.etags.append(PartETag(part=part_number, etag=etag))
            logger.debug("Uploaded part %d of upload %s", part_number, self.upload_id)
        finally:
            if self._semaphore is not None:
                self._semaphore.release()
