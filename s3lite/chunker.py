"""Rechunking of byte streams into fixed-size chunks.

Multipart uploads need every part except the last to have the same size,
while callers hand us data in whatever chunk sizes their I/O produces.
ChunkResizer buffers incoming bytes and emits chunks of exactly
``out_chunk_size`` bytes; only the final chunk, emitted at end of stream,
may be shorter. Empty chunks are never emitted.

The generators built on top of it are lazy, finite when their input is
finite, and cannot be restarted.
"""

from typing import AsyncIterable, AsyncIterator, Iterable, Iterator, Optional, Union

from s3lite.errors import InvalidArgumentError

ByteChunks = Union[AsyncIterable[bytes], Iterable[bytes]]


class ChunkResizer:
    """Resegments a byte stream into chunks of a fixed size.

    Holds one buffer of ``out_chunk_size`` bytes plus the number of bytes
    currently in it. Emitted chunks are always copies of the buffer, since
    the buffer is reused for the data that follows.
    """

    def __init__(self, out_chunk_size: int):
        if out_chunk_size < 1:
            raise InvalidArgumentError(
                f"Chunk size must be at least 1 byte, got {out_chunk_size}"
            )
        self.out_chunk_size = out_chunk_size
        self._buffer = bytearray(out_chunk_size)
        self._offset = 0
        self._flushed = False

    @property
    def buffered(self) -> int:
        """Number of bytes waiting for the buffer to fill."""
        return self._offset

    def feed(self, data: bytes) -> list[bytes]:
        """Add data to the buffer.

        Args:
            data: Bytes-like input chunk of any length.

        Returns:
            Zero or more full chunks completed by this input, in order.
        """
        if self._flushed:
            raise InvalidArgumentError("Cannot feed data after flush()")

        view = memoryview(data).cast("B")
        completed = []
        pos = 0
        while pos < len(view):
            to_copy = min(self.out_chunk_size - self._offset, len(view) - pos)
            self._buffer[self._offset:self._offset + to_copy] = view[pos:pos + to_copy]
            pos += to_copy
            self._offset += to_copy

            if self._offset == self.out_chunk_size:
                completed.append(bytes(self._buffer))
                self._offset = 0
        return completed

    def flush(self) -> Optional[bytes]:
        """End the stream.

        Returns:
            The partial remainder, or None if the buffer is empty.
        """
        self._flushed = True
        if self._offset == 0:
            return None
        remainder = bytes(self._buffer[:self._offset])
        self._offset = 0
        return remainder


def rechunk(chunks: Iterable[bytes], out_chunk_size: int) -> Iterator[bytes]:
    """Yield the bytes of ``chunks`` regrouped into ``out_chunk_size`` chunks."""
    resizer = ChunkResizer(out_chunk_size)
    for chunk in chunks:
        yield from resizer.feed(chunk)
    remainder = resizer.flush()
    if remainder is not None:
        yield remainder


async def arechunk(chunks: ByteChunks, out_chunk_size: int) -> AsyncIterator[bytes]:
    """Async version of rechunk; accepts a sync or async iterable."""
    resizer = ChunkResizer(out_chunk_size)
    if hasattr(chunks, "__aiter__"):
        async for chunk in chunks:
            for out in resizer.feed(chunk):
                yield out
    else:
        for chunk in chunks:
            for out in resizer.feed(chunk):
                yield out
    remainder = resizer.flush()
    if remainder is not None:
        yield remainder
