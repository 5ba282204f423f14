"""
Errors for the chat core

Two layers:
- Exception classes raised by the framing, session, negotiation and
  file-transfer modules.
- User-friendly messages (with a suggestion) for presenting those
  exceptions in the console or the window.
"""
from enum import Enum
from dataclasses import dataclass
from typing import Optional


class ChatError(Exception):
    """Base class for all peerchat errors"""


class BindError(ChatError, OSError):
    """The listening endpoint could not be opened"""


class PeerConnectionError(ChatError, ConnectionError):
    """Accept, connect or handshake I/O failed"""


class HandshakeRejected(ChatError):
    """The peer did not answer the handshake prompt with the acceptance token"""

    def __init__(self, reply: str = ""):
        self.reply = reply
        super().__init__(f"Connection rejected by peer (reply: {reply!r})")


class EndOfStream(ChatError):
    """The peer closed the stream cleanly at a frame boundary"""


class TruncatedMessage(ChatError):
    """The stream ended in the middle of a frame"""

    def __init__(self, expected: int, received: int):
        self.expected = expected
        self.received = received
        super().__init__(f"Stream ended after {received} of {expected} bytes")


class MessageTooLarge(ChatError):
    """A frame declared a payload bigger than the allowed maximum"""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Message of {size} bytes exceeds limit of {limit} bytes")


class InvalidArgument(ChatError, ValueError):
    """Rejected before any I/O"""


class ChannelIOError(ChatError, IOError):
    """Read or write failure on an established channel"""


class TransferCancelled(ChatError):
    """A file transfer was stopped by its cancellation token"""


@dataclass
class ChatErrorInfo:
    """User-friendly error with message and suggestion"""
    message: str
    suggestion: str
    code: str = ""

    def __str__(self) -> str:
        result = f"Error: {self.message}"
        if self.suggestion:
            result += f"\n  Suggestion: {self.suggestion}"
        return result

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "suggestion": self.suggestion
        }


class ErrorCode(Enum):
    """Error codes for categorization"""
    # Network errors
    PORT_IN_USE = "port_in_use"
    BIND_FAILED = "bind_failed"
    CONNECTION_REFUSED = "connection_refused"
    CONNECTION_TIMEOUT = "connection_timeout"
    NETWORK_UNREACHABLE = "network_unreachable"
    CONNECTION_LOST = "connection_lost"
    HANDSHAKE_REJECTED = "handshake_rejected"

    # Protocol errors
    TRUNCATED_MESSAGE = "truncated_message"
    MESSAGE_TOO_LARGE = "message_too_large"
    EMPTY_MESSAGE = "empty_message"

    # Transfer errors
    FILE_NOT_FOUND = "file_not_found"
    PERMISSION_DENIED = "permission_denied"
    TRANSFER_CANCELLED = "transfer_cancelled"

    # General
    UNKNOWN = "unknown"


ERROR_MESSAGES = {
    ErrorCode.PORT_IN_USE: ChatErrorInfo(
        code="port_in_use",
        message="The chat port is already in use",
        suggestion="Close the other peerchat instance or pick another port with --port"
    ),

    ErrorCode.BIND_FAILED: ChatErrorInfo(
        code="bind_failed",
        message="Could not start listening on the requested address",
        suggestion="Check that the address belongs to this machine (or use 0.0.0.0)"
    ),

    ErrorCode.CONNECTION_REFUSED: ChatErrorInfo(
        code="connection_refused",
        message="Connection was refused by the peer",
        suggestion="Make sure the other side is running 'peerchat listen'"
    ),

    ErrorCode.CONNECTION_TIMEOUT: ChatErrorInfo(
        code="connection_timeout",
        message="Connection timed out while trying to reach peer",
        suggestion="Check your network connection and firewall settings"
    ),

    ErrorCode.NETWORK_UNREACHABLE: ChatErrorInfo(
        code="network_unreachable",
        message="Cannot reach the peer on the network",
        suggestion="Verify both machines are connected to the same network"
    ),

    ErrorCode.CONNECTION_LOST: ChatErrorInfo(
        code="connection_lost",
        message="The connection to the peer was lost",
        suggestion="Reconnect to continue chatting"
    ),

    ErrorCode.HANDSHAKE_REJECTED: ChatErrorInfo(
        code="handshake_rejected",
        message="The connection was not accepted",
        suggestion="Ask the peer to answer 'si' to the connection prompt, then retry"
    ),

    ErrorCode.TRUNCATED_MESSAGE: ChatErrorInfo(
        code="truncated_message",
        message="The peer closed the connection in the middle of a message",
        suggestion="The peer may have crashed. Reconnect and resend"
    ),

    ErrorCode.MESSAGE_TOO_LARGE: ChatErrorInfo(
        code="message_too_large",
        message="Received message exceeds maximum allowed size",
        suggestion="This may indicate a protocol mismatch or corrupted data"
    ),

    ErrorCode.EMPTY_MESSAGE: ChatErrorInfo(
        code="empty_message",
        message="Cannot send an empty message",
        suggestion="Type some text before sending"
    ),

    ErrorCode.FILE_NOT_FOUND: ChatErrorInfo(
        code="file_not_found",
        message="The file to send was not found",
        suggestion="Check the path and try again"
    ),

    ErrorCode.PERMISSION_DENIED: ChatErrorInfo(
        code="permission_denied",
        message="Permission denied when accessing file or directory",
        suggestion="Check file permissions"
    ),

    ErrorCode.TRANSFER_CANCELLED: ChatErrorInfo(
        code="transfer_cancelled",
        message="File transfer was cancelled",
        suggestion="Send the file again to restart the transfer"
    ),

    ErrorCode.UNKNOWN: ChatErrorInfo(
        code="unknown",
        message="An unexpected error occurred",
        suggestion="Check the log file for more details"
    ),
}


def get_error(code: ErrorCode) -> ChatErrorInfo:
    """Get user-friendly error for a given error code"""
    return ERROR_MESSAGES.get(code, ERROR_MESSAGES[ErrorCode.UNKNOWN])


def get_error_from_exception(exc: Exception) -> ChatErrorInfo:
    """Map exceptions to user-friendly errors"""
    # Our own exception types first
    if isinstance(exc, HandshakeRejected):
        return get_error(ErrorCode.HANDSHAKE_REJECTED)
    if isinstance(exc, TruncatedMessage):
        return get_error(ErrorCode.TRUNCATED_MESSAGE)
    if isinstance(exc, MessageTooLarge):
        return get_error(ErrorCode.MESSAGE_TOO_LARGE)
    if isinstance(exc, TransferCancelled):
        return get_error(ErrorCode.TRANSFER_CANCELLED)
    if isinstance(exc, InvalidArgument) and "empty" in str(exc).lower():
        return get_error(ErrorCode.EMPTY_MESSAGE)
    if isinstance(exc, FileNotFoundError):
        return get_error(ErrorCode.FILE_NOT_FOUND)

    exc_str = str(exc).lower()
    exc_type = type(exc).__name__

    # Socket errors
    if "address already in use" in exc_str:
        return get_error(ErrorCode.PORT_IN_USE)
    if isinstance(exc, BindError):
        return get_error(ErrorCode.BIND_FAILED)

    # Connection errors
    if isinstance(exc, ConnectionRefusedError) or "connection refused" in exc_str:
        return get_error(ErrorCode.CONNECTION_REFUSED)
    if "timed out" in exc_str or "timeout" in exc_str:
        return get_error(ErrorCode.CONNECTION_TIMEOUT)
    if "network is unreachable" in exc_str:
        return get_error(ErrorCode.NETWORK_UNREACHABLE)
    if isinstance(exc, (ChannelIOError, ConnectionResetError, BrokenPipeError)):
        return get_error(ErrorCode.CONNECTION_LOST)

    # File errors
    if "permission denied" in exc_str:
        return get_error(ErrorCode.PERMISSION_DENIED)

    # Default
    error = get_error(ErrorCode.UNKNOWN)
    # Include original exception type for debugging
    return ChatErrorInfo(
        code=error.code,
        message=f"{error.message}: {exc_type}",
        suggestion=error.suggestion
    )


def format_error(code: ErrorCode, details: Optional[str] = None) -> str:
    """Format error message for display"""
    error = get_error(code)
    result = str(error)
    if details:
        result = f"{result}\n  Details: {details}"
    return result
