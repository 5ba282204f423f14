"""
Length-prefixed framing for the chat protocol

Frame Format:
┌──────────────────────┬──────────────────────────────┐
│ Length (4B, uint32)  │ Payload                      │
│ little-endian        │ exactly Length bytes, UTF-8  │
└──────────────────────┴──────────────────────────────┘

The handshake that precedes the framed protocol is NOT framed; see
negotiation.py.
"""
import socket
import struct
import logging
import threading
from typing import Optional

from peerchat import config
from peerchat.common.errors import (
    ChannelIOError, EndOfStream, MessageTooLarge, TruncatedMessage
)

logger = logging.getLogger(__name__)

HEADER = struct.Struct('<I')
HEADER_SIZE = HEADER.size

# Socket reads are capped so a huge frame is assembled in pieces
RECV_CHUNK_SIZE = 65536


def encode_frame(payload: bytes) -> bytes:
    """Build one frame (length prefix + payload) in memory"""
    return HEADER.pack(len(payload)) + payload


class FramedChannel:
    """
    Reads and writes discrete messages on a connected stream socket.

    One reader thread and one writer thread may use the channel at the
    same time. Two concurrent writers are not supported; see
    ChatSession.send for a serialized entry point.
    """

    def __init__(self, sock: socket.socket, max_message_size: int = config.MAX_MESSAGE_SIZE):
        self._sock = sock
        self.max_message_size = max_message_size
        self._closed = False
        self._close_lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def write_message(self, payload: bytes):
        """
        Write one frame.

        Raises:
            ChannelIOError: the channel is closed or the socket write failed
        """
        if self._closed:
            raise ChannelIOError("Channel is closed")

        try:
            self._sock.sendall(encode_frame(payload))
        except OSError as e:
            raise ChannelIOError(f"Write failed: {e}") from e

        logger.debug(f"Sent frame of {len(payload)} bytes")

    def read_message(self) -> bytes:
        """
        Block until one full frame has arrived and return its payload.

        Raises:
            EndOfStream: the peer closed the stream at a frame boundary
            TruncatedMessage: the stream ended inside a frame
            MessageTooLarge: the declared length exceeds max_message_size
            ChannelIOError: the socket read failed
        """
        header = self._recv_exact(HEADER_SIZE, at_boundary=True)
        (length,) = HEADER.unpack(header)

        if length > self.max_message_size:
            raise MessageTooLarge(length, self.max_message_size)

        if length == 0:
            return b""

        payload = self._recv_exact(length)
        logger.debug(f"Received frame of {length} bytes")
        return payload

    def _recv_exact(self, count: int, at_boundary: bool = False) -> bytes:
        """Read exactly count bytes or raise"""
        buf = bytearray()
        while len(buf) < count:
            try:
                data = self._sock.recv(min(count - len(buf), RECV_CHUNK_SIZE))
            except OSError as e:
                raise ChannelIOError(f"Read failed: {e}") from e

            if not data:
                if at_boundary and not buf:
                    raise EndOfStream()
                raise TruncatedMessage(count, len(buf))

            buf.extend(data)
        return bytes(buf)

    def close(self):
        """Close the channel. Safe to call more than once and from any thread."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True

        # Shutdown first so a recv() blocked in another thread returns
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # Already disconnected
        try:
            self._sock.close()
        except OSError as e:
            logger.debug(f"Error closing socket: {e}")

        logger.debug("Channel closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
