"""
Unit tests for framing.py - Length-prefixed messages
"""
import pytest
import os
import struct
import threading

from peerchat.common.errors import (
    ChannelIOError, EndOfStream, MessageTooLarge, TruncatedMessage
)
from peerchat.common.framing import FramedChannel, encode_frame, HEADER_SIZE


def _write_in_thread(channel: FramedChannel, payload: bytes) -> threading.Thread:
    """Large frames need a concurrent reader on a socketpair"""
    thread = threading.Thread(target=channel.write_message, args=(payload,), daemon=True)
    thread.start()
    return thread


class TestEncodeFrame:
    """Tests for encode_frame"""

    def test_header_is_little_endian_length(self):
        frame = encode_frame(b"abc")
        assert frame[:4] == b"\x03\x00\x00\x00"
        assert frame[4:] == b"abc"

    def test_empty_payload(self):
        assert encode_frame(b"") == b"\x00\x00\x00\x00"

    def test_header_size(self):
        assert HEADER_SIZE == 4


class TestRoundTrip:
    """Payloads read back exactly as written"""

    @pytest.mark.parametrize("size", [0, 1, 4, 65536 + 3, 10 * 1024 * 1024])
    def test_binary_payload_sizes(self, channel_pair, size):
        left, right = channel_pair
        payload = os.urandom(size)

        writer = _write_in_thread(left, payload)
        received = right.read_message()
        writer.join(timeout=5)

        assert received == payload

    def test_unicode_text(self, channel_pair, unicode_text):
        left, right = channel_pair
        left.write_message(unicode_text.encode('utf-8'))
        assert right.read_message().decode('utf-8') == unicode_text

    def test_several_frames_in_one_segment(self, socket_pair):
        a, b = socket_pair
        a.sendall(encode_frame(b"one") + encode_frame(b"") + encode_frame(b"three"))

        channel = FramedChannel(b)
        assert channel.read_message() == b"one"
        assert channel.read_message() == b""
        assert channel.read_message() == b"three"

    def test_frame_delivered_byte_by_byte(self, socket_pair):
        a, b = socket_pair
        frame = encode_frame(b"slow payload")

        def trickle():
            for i in range(len(frame)):
                a.sendall(frame[i:i + 1])

        thread = threading.Thread(target=trickle, daemon=True)
        thread.start()

        assert FramedChannel(b).read_message() == b"slow payload"
        thread.join(timeout=5)

    def test_both_directions(self, channel_pair):
        left, right = channel_pair
        left.write_message(b"ping")
        assert right.read_message() == b"ping"
        right.write_message(b"pong")
        assert left.read_message() == b"pong"


class TestStreamEnd:
    """Graceful close vs truncation"""

    def test_close_at_frame_boundary_is_end_of_stream(self, socket_pair):
        a, b = socket_pair
        a.close()

        with pytest.raises(EndOfStream):
            FramedChannel(b).read_message()

    def test_close_after_complete_frame(self, socket_pair):
        a, b = socket_pair
        a.sendall(encode_frame(b"last"))
        a.close()

        channel = FramedChannel(b)
        assert channel.read_message() == b"last"
        with pytest.raises(EndOfStream):
            channel.read_message()

    def test_truncated_payload(self, socket_pair):
        a, b = socket_pair
        a.sendall(struct.pack('<I', 100) + b"x" * 10)
        a.close()

        with pytest.raises(TruncatedMessage) as exc_info:
            FramedChannel(b).read_message()

        assert exc_info.value.expected == 100
        assert exc_info.value.received == 10

    def test_truncated_header(self, socket_pair):
        a, b = socket_pair
        a.sendall(b"\x05\x00")
        a.close()

        with pytest.raises(TruncatedMessage):
            FramedChannel(b).read_message()

    def test_truncation_is_not_end_of_stream(self, socket_pair):
        a, b = socket_pair
        a.sendall(struct.pack('<I', 3) + b"x")
        a.close()

        with pytest.raises(TruncatedMessage):
            FramedChannel(b).read_message()
        assert not issubclass(TruncatedMessage, EndOfStream)


class TestLimits:
    """Tests for the message size limit"""

    def test_message_too_large_rejected(self, socket_pair):
        a, b = socket_pair
        a.sendall(struct.pack('<I', 2048) + b"x" * 16)

        channel = FramedChannel(b, max_message_size=1024)
        with pytest.raises(MessageTooLarge) as exc_info:
            channel.read_message()

        assert exc_info.value.size == 2048
        assert exc_info.value.limit == 1024

    def test_message_at_limit_accepted(self, socket_pair):
        a, b = socket_pair
        a.sendall(encode_frame(b"y" * 1024))

        assert FramedChannel(b, max_message_size=1024).read_message() == b"y" * 1024


class TestClose:
    """Tests for closing the channel"""

    def test_close_is_idempotent(self, channel_pair):
        left, _ = channel_pair
        left.close()
        left.close()
        assert left.closed

    def test_write_after_close_fails(self, channel_pair):
        left, _ = channel_pair
        left.close()

        with pytest.raises(ChannelIOError):
            left.write_message(b"too late")

    def test_write_to_closed_peer_fails(self, channel_pair):
        left, right = channel_pair
        right.close()

        with pytest.raises(ChannelIOError):
            for _ in range(100):
                left.write_message(b"x" * 65536)

    def test_close_interrupts_blocked_read(self, channel_pair):
        left, _ = channel_pair
        errors = []

        def reader():
            try:
                left.read_message()
            except Exception as e:
                errors.append(e)

        thread = threading.Thread(target=reader, daemon=True)
        thread.start()
        thread.join(timeout=0.2)
        assert thread.is_alive()

        left.close()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert len(errors) == 1

    def test_context_manager_closes(self, socket_pair):
        a, _ = socket_pair
        with FramedChannel(a) as channel:
            pass
        assert channel.closed
