"""
Demultiplexer for the stdout/stderr stream of an execution.

Execution output arrives as a single byte stream made of frames:

    byte 0      stream type (1 = stdout, 2 = stderr, anything else is stdout)
    bytes 1-3   reserved, ignored
    bytes 4-7   payload length, big-endian uint32
    payload     `length` bytes

Reads from the underlying transport do not line up with frame boundaries, so
the decoder buffers whatever is incomplete (including a split header) until
the rest arrives.
"""

import struct
from enum import IntEnum
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator, List, NamedTuple, Tuple

from .errors import StreamProtocolError

HEADER = struct.Struct(">BxxxI")
HEADER_SIZE = HEADER.size  # 8


class StreamType(IntEnum):
    STDIN = 0
    STDOUT = 1
    STDERR = 2


class StreamChunk(NamedTuple):
    """One decoded frame payload tagged with its channel."""
    channel: StreamType
    data: bytes


class FrameDecoder:
    """
    Incremental frame decoder.

    Usage:
        decoder = FrameDecoder()
        for raw in reads:
            for chunk in decoder.feed(raw):
                handle(chunk)
        decoder.close()  # raises if the stream stopped mid-frame
    """

    def __init__(self):
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet forming a complete frame."""
        return len(self._buffer)

    def feed(self, data: bytes) -> List[StreamChunk]:
        """Append newly arrived bytes and return every complete frame, in order."""
        if data:
            self._buffer.extend(data)

        chunks: List[StreamChunk] = []
        offset = 0
        available = len(self._buffer)
        while available - offset >= HEADER_SIZE:
            stream_type, length = HEADER.unpack_from(self._buffer, offset)
            end = offset + HEADER_SIZE + length
            if end > available:
                break
            channel = StreamType.STDERR if stream_type == StreamType.STDERR else StreamType.STDOUT
            chunks.append(StreamChunk(channel, bytes(self._buffer[offset + HEADER_SIZE:end])))
            offset = end

        if offset:
            del self._buffer[:offset]
        return chunks

    def close(self) -> None:
        """Finish decoding; a non-empty remainder means the stream was truncated."""
        if self._buffer:
            remainder = len(self._buffer)
            self._buffer.clear()
            raise StreamProtocolError(f"Stream closed with {remainder} byte(s) of an incomplete frame")


async def demux_stream(source: AsyncIterable[bytes]) -> AsyncIterator[StreamChunk]:
    """Lazily decode an async byte source into channel-tagged chunks."""
    decoder = FrameDecoder()
    async for raw in source:
        for chunk in decoder.feed(raw):
            yield chunk
    decoder.close()


def demux_bytes(source: Iterable[bytes]) -> Iterator[StreamChunk]:
    """Synchronous counterpart of demux_stream for in-memory or blocking sources."""
    decoder = FrameDecoder()
    for raw in source:
        yield from decoder.feed(raw)
    decoder.close()


def encode_frame(channel: StreamType, data: bytes) -> bytes:
    """Build a single frame (used by fakes and tests to produce streams)."""
    return HEADER.pack(int(channel), len(data)) + data


def collect_output(chunks: Iterable[StreamChunk]) -> Tuple[bytes, bytes]:
    """Join decoded chunks into (stdout, stderr)."""
    stdout = bytearray()
    stderr = bytearray()
    for chunk in chunks:
        if chunk.channel == StreamType.STDERR:
            stderr.extend(chunk.data)
        else:
            stdout.extend(chunk.data)
    return bytes(stdout), bytes(stderr)
