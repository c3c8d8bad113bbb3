from __future__ import annotations

import asyncio
import json
import struct
from typing import Optional

import msgpack
import structlog

from .messages import Message, parse_message

logger = structlog.get_logger()

DEFAULT_MAX_FRAME_SIZE = 10 * 1024 * 1024


class ProtocolError(Exception):
    """Protocol-level error."""

    pass


class FrameReader:
    """Async frame reader with proper synchronization using asyncio.Condition."""

    def __init__(
        self, reader: asyncio.StreamReader, max_frame_size: int = DEFAULT_MAX_FRAME_SIZE
    ) -> None:
        self._reader = reader
        self._max_frame_size = max_frame_size
        self._buffer = bytearray()
        self._condition = asyncio.Condition()
        self._closed = False
        self._read_task: Optional[asyncio.Task[None]] = None

    @property
    def closed(self) -> bool:
        return self._closed and not self._buffer

    async def start(self) -> None:
        """Start the background reader task."""
        if not self._read_task:
            self._read_task = asyncio.create_task(self._read_loop())

    async def stop(self) -> None:
        """Stop the background reader task."""
        self._closed = True
        if self._read_task:
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass

    async def _read_loop(self) -> None:
        """Background task that continuously reads from the stream into buffer."""
        try:
            while not self._closed:
                try:
                    data = await self._reader.read(8192)
                except (ConnectionError, OSError) as e:
                    logger.debug("frame_reader_connection_lost", error=str(e))
                    break
                if not data:
                    logger.debug("frame_reader_eof")
                    break

                async with self._condition:
                    self._buffer.extend(data)
                    self._condition.notify_all()
        finally:
            async with self._condition:
                self._closed = True
                self._condition.notify_all()

    async def read_frame(self, timeout: Optional[float] = None) -> bytes:
        """Read a complete frame from the buffer.

        Frame format: [4 bytes big-endian length][data]

        Raises:
            ProtocolError: If connection is closed or frame is invalid
            asyncio.TimeoutError: If timeout is exceeded
        """
        async with self._condition:
            await asyncio.wait_for(
                self._condition.wait_for(lambda: len(self._buffer) >= 4 or self._closed),
                timeout=timeout,
            )
            if len(self._buffer) < 4:
                raise ProtocolError("Connection closed while reading frame length")

            length = struct.unpack(">I", self._buffer[:4])[0]
            if length > self._max_frame_size:
                # Stream position is lost; nothing after this frame can be trusted
                self._buffer.clear()
                self._closed = True
                raise ProtocolError(f"Frame too large: {length} bytes")

            total_needed = 4 + length
            await asyncio.wait_for(
                self._condition.wait_for(
                    lambda: len(self._buffer) >= total_needed or self._closed
                ),
                timeout=timeout,
            )
            if len(self._buffer) < total_needed:
                raise ProtocolError("Connection closed while reading frame data")

            frame = bytes(self._buffer[4:total_needed])
            del self._buffer[:total_needed]
            return frame


class FrameWriter:
    """Async frame writer with backpressure via drain()."""

    def __init__(self, writer: asyncio.StreamWriter) -> None:
        self._writer = writer
        self._write_lock = asyncio.Lock()
        self._closed = False

    async def write_frame(self, data: bytes) -> None:
        """Write a length-prefixed frame to the stream.

        Raises:
            ProtocolError: If connection is closed
        """
        if self._closed:
            raise ProtocolError("Connection closed")

        async with self._write_lock:
            self._writer.write(struct.pack(">I", len(data)) + data)
            await self._writer.drain()

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, OSError):
                pass


def encode_message(message: Message, use_msgpack: bool = True) -> bytes:
    data_dict = message.model_dump(mode="json")
    if use_msgpack:
        return msgpack.packb(data_dict, use_bin_type=True)
    return json.dumps(data_dict).encode("utf-8")


def decode_message(frame: bytes, use_msgpack: bool = True) -> Message:
    """Decode one frame into a message.

    Raises:
        ProtocolError: If the frame cannot be decoded or is not a known message
    """
    try:
        if use_msgpack:
            data_dict = msgpack.unpackb(frame, raw=False, strict_map_key=False)
        else:
            data_dict = json.loads(frame.decode("utf-8"))
    except (ValueError, msgpack.UnpackException) as e:
        raise ProtocolError(f"Undecodable frame: {e}") from e

    if not isinstance(data_dict, dict):
        raise ProtocolError("Frame does not contain a message object")

    try:
        return parse_message(data_dict)
    except ValueError as e:
        # pydantic.ValidationError is a ValueError subclass
        raise ProtocolError(str(e)) from e


class MessageTransport:
    """High-level message transport using the framed protocol."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        use_msgpack: bool = True,
        max_frame_size: int = DEFAULT_MAX_FRAME_SIZE,
    ) -> None:
        self._frame_reader = FrameReader(reader, max_frame_size=max_frame_size)
        self._frame_writer = FrameWriter(writer)
        self._use_msgpack = use_msgpack
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed or self._frame_reader.closed

    async def start(self) -> None:
        await self._frame_reader.start()

    async def send_message(self, message: Message) -> None:
        """Send a message.

        Raises:
            ProtocolError: If transport is closed
        """
        if self._closed:
            raise ProtocolError("Transport closed")

        data = encode_message(message, self._use_msgpack)
        await self._frame_writer.write_frame(data)
        logger.debug("sent_message", type=message.type, id=message.id, size=len(data))

    async def receive_message(self, timeout: Optional[float] = None) -> Message:
        """Receive a message.

        Raises:
            ProtocolError: If transport is closed or message is invalid
            asyncio.TimeoutError: If timeout is exceeded
        """
        if self._closed:
            raise ProtocolError("Transport closed")

        frame = await self._frame_reader.read_frame(timeout=timeout)
        message = decode_message(frame, self._use_msgpack)
        logger.debug("received_message", type=message.type, id=message.id)
        return message

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._frame_reader.stop()
            await self._frame_writer.close()
