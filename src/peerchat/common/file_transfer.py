"""
File transfer over the chat feed

A file travels as ordinary chat messages:
1. One control message:  FILE|<name>|<byte length>
2. ceil(length / chunk_size) messages, each the base64 text of one chunk

There is no type tag on the wire. The receiving side runs every inbound
text through a FileTransferDecoder, which tracks whether a transfer is in
progress and turns the feed into ChatText / File* events.

The encoder sleeps between chunks because the framed protocol has no flow
control.
"""
import base64
import binascii
import math
import shutil
import time
import logging
from enum import Enum
from dataclasses import dataclass
from pathlib import Path, PureWindowsPath
from typing import Callable, List, Optional, Union

from peerchat import config
from peerchat.common.errors import InvalidArgument, TransferCancelled
from peerchat.common.session import CancellationToken

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


@dataclass
class FileDescriptor:
    """Metadata carried by a FILE control message"""
    name: str
    size: int

    def to_message(self) -> str:
        return build_control_message(self.name, self.size)


def build_control_message(name: str, size: int) -> str:
    """Build the FILE|<name>|<size> control message"""
    sep = config.FILE_CONTROL_SEPARATOR
    if not name:
        raise InvalidArgument("File name cannot be empty")
    if sep in name:
        raise InvalidArgument(f"File name cannot contain '{sep}': {name!r}")
    if size < 0:
        raise InvalidArgument(f"File size cannot be negative: {size}")
    return f"{config.FILE_CONTROL_PREFIX}{sep}{name}{sep}{size}"


def parse_control_message(text: str) -> Optional[FileDescriptor]:
    """Return the descriptor if text is a well-formed control message, else None"""
    parts = text.split(config.FILE_CONTROL_SEPARATOR)
    if len(parts) != 3 or parts[0] != config.FILE_CONTROL_PREFIX:
        return None

    name, size_str = parts[1], parts[2]
    if not name or not (size_str.isascii() and size_str.isdigit()):
        return None
    return FileDescriptor(name=name, size=int(size_str))


def expected_chunk_count(size: int, chunk_size: int) -> int:
    """Number of chunk messages a file of this size produces"""
    return math.ceil(size / chunk_size)


class FileTransferEncoder:
    """
    Sends files through anything with a send(text) method
    (ChatSession or MessageSender).

    Stops on the first failed send; chunks already sent are not recalled.
    """

    def __init__(self,
                 sender,
                 chunk_size: int = config.DEFAULT_CHUNK_SIZE,
                 inter_chunk_delay: float = config.DEFAULT_INTER_CHUNK_DELAY):
        self.sender = sender
        self.chunk_size = chunk_size
        self.inter_chunk_delay = inter_chunk_delay

    def send_file(self,
                  name: str,
                  data: bytes,
                  chunk_size: Optional[int] = None,
                  inter_chunk_delay: Optional[float] = None,
                  on_progress: Optional[ProgressCallback] = None,
                  cancel_token: Optional[CancellationToken] = None) -> int:
        """
        Send one file.

        Args:
            name: Name announced to the peer (no '|')
            data: File contents
            chunk_size: Bytes per chunk before base64 (default: encoder's)
            inter_chunk_delay: Seconds between chunk messages (default: encoder's)
            on_progress: Called with (bytes_sent, bytes_total) after each chunk
            cancel_token: Checked between chunks

        Returns:
            Number of chunk messages sent

        Raises:
            InvalidArgument: bad name, chunk size or delay
            TransferCancelled: cancel_token was set mid-transfer
            ChannelIOError: a send failed
        """
        chunk_size = self.chunk_size if chunk_size is None else chunk_size
        delay = self.inter_chunk_delay if inter_chunk_delay is None else inter_chunk_delay

        if chunk_size <= 0:
            raise InvalidArgument(f"Chunk size must be positive: {chunk_size}")
        if delay < 0:
            raise InvalidArgument(f"Inter-chunk delay cannot be negative: {delay}")

        total = len(data)
        control = build_control_message(name, total)

        logger.info(f"Sending {name} ({format_bytes(total)}, "
                    f"{expected_chunk_count(total, chunk_size)} chunks)")
        self.sender.send(control)

        sent_chunks = 0
        for offset in range(0, total, chunk_size):
            if sent_chunks and delay:
                if cancel_token is not None:
                    cancel_token.wait(delay)
                else:
                    time.sleep(delay)
            if cancel_token is not None and cancel_token.is_cancelled:
                logger.info(f"Transfer of {name} cancelled after {sent_chunks} chunks")
                raise TransferCancelled(f"Transfer of {name} cancelled")

            chunk = data[offset:offset + chunk_size]
            self.sender.send(base64.b64encode(chunk).decode('ascii'))
            sent_chunks += 1

            if on_progress:
                try:
                    on_progress(offset + len(chunk), total)
                except Exception as e:
                    logger.error(f"Progress callback error: {e}")

        logger.info(f"Sent {name}")
        return sent_chunks

    def send_path(self, path: Union[str, Path], **kwargs) -> int:
        """Read a file from disk and send it under its base name"""
        path = Path(path)
        data = path.read_bytes()
        return self.send_file(path.name, data, **kwargs)


# ========== Receiving side ==========

@dataclass
class ChatText:
    """An ordinary chat message"""
    text: str


@dataclass
class FileStarted:
    descriptor: FileDescriptor


@dataclass
class FileProgress:
    descriptor: FileDescriptor
    received: int


@dataclass
class FileCompleted:
    descriptor: FileDescriptor
    data: bytes


@dataclass
class FileFailed:
    descriptor: FileDescriptor
    reason: str


class DecoderState(Enum):
    IDLE = "idle"
    EXPECTING_CHUNKS = "expecting_chunks"


class FileTransferDecoder:
    """
    Parser state machine for the inbound feed:
    IDLE -> EXPECTING_CHUNKS(remaining, buffer) -> IDLE

    Not thread-safe; feed it from the single consumer of the session's
    messages.
    """

    def __init__(self):
        self._state = DecoderState.IDLE
        self._descriptor: Optional[FileDescriptor] = None
        self._buffer = bytearray()

    @property
    def state(self) -> DecoderState:
        return self._state

    @property
    def current(self) -> Optional[FileDescriptor]:
        """Descriptor of the transfer in progress, if any"""
        return self._descriptor

    @property
    def remaining(self) -> int:
        if self._descriptor is None:
            return 0
        return self._descriptor.size - len(self._buffer)

    def feed(self, text: str) -> list:
        """Consume one inbound message and return the resulting events"""
        events = []
        descriptor = parse_control_message(text)

        if self._state == DecoderState.EXPECTING_CHUNKS:
            if descriptor is not None:
                # Base64 never contains '|', so this is a new transfer
                events.append(self._fail("Interrupted by a new file transfer"))
            else:
                events.extend(self._feed_chunk(text))
                return events

        if descriptor is None:
            events.append(ChatText(text))
            return events

        logger.info(f"Receiving {descriptor.name} ({format_bytes(descriptor.size)})")
        events.append(FileStarted(descriptor))
        if descriptor.size == 0:
            events.append(FileCompleted(descriptor, b""))
            return events

        self._state = DecoderState.EXPECTING_CHUNKS
        self._descriptor = descriptor
        self._buffer = bytearray()
        return events

    def abort(self, reason: str = "Connection closed") -> Optional[FileFailed]:
        """Drop a transfer in progress (e.g. on session end)"""
        if self._state != DecoderState.EXPECTING_CHUNKS:
            return None
        return self._fail(reason)

    def _feed_chunk(self, text: str) -> List:
        descriptor = self._descriptor
        try:
            chunk = base64.b64decode(text.strip(), validate=True)
        except (binascii.Error, ValueError) as e:
            return [self._fail(f"Invalid chunk: {e}")]

        if len(self._buffer) + len(chunk) > descriptor.size:
            return [self._fail(
                f"Received more than the declared {descriptor.size} bytes"
            )]

        self._buffer.extend(chunk)
        events = [FileProgress(descriptor, len(self._buffer))]

        if len(self._buffer) == descriptor.size:
            data = bytes(self._buffer)
            self._reset()
            logger.info(f"Received {descriptor.name}")
            events.append(FileCompleted(descriptor, data))
        return events

    def _fail(self, reason: str) -> FileFailed:
        descriptor = self._descriptor
        logger.warning(f"File transfer of {descriptor.name} failed: {reason}")
        self._reset()
        return FileFailed(descriptor, reason)

    def _reset(self):
        self._state = DecoderState.IDLE
        self._descriptor = None
        self._buffer = bytearray()


def safe_file_name(name: str) -> str:
    """Strip any directory part a peer may have put in the announced name"""
    base = PureWindowsPath(name).name  # handles both / and \
    if base in ('', '.', '..'):
        return 'received_file'
    return base


def _get_unique_path(path: Path) -> Path:
    """Get a unique path if file already exists"""
    if not path.exists():
        return path

    stem = path.stem
    suffix = path.suffix
    counter = 1

    while path.exists():
        path = path.parent / f"{stem}_{counter}{suffix}"
        counter += 1

    return path


def save_received_file(dest_dir: Union[str, Path], name: str, data: bytes) -> Path:
    """
    Write a received file into dest_dir.

    Writes to a temp file first, then moves it to a collision-free name.

    Returns:
        Final file path
    """
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)

    file_name = safe_file_name(name)
    temp_path = dest_dir / f".{file_name}.tmp"
    try:
        temp_path.write_bytes(data)
        final_path = _get_unique_path(dest_dir / file_name)
        shutil.move(str(temp_path), str(final_path))
    except OSError:
        if temp_path.exists():
            temp_path.unlink()
        raise

    logger.info(f"File written successfully: {final_path}")
    return final_path


def format_bytes(size: float) -> str:
    """Format byte size as human-readable string"""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if abs(size) < 1024.0:
            return f"{size:.1f} {unit}"
        size /= 1024.0
    return f"{size:.1f} PB"
