"""Chat core: framing, sessions, negotiation and file transfer"""
from .errors import (
    ChatError,
    BindError,
    PeerConnectionError,
    HandshakeRejected,
    EndOfStream,
    TruncatedMessage,
    MessageTooLarge,
    InvalidArgument,
    ChannelIOError,
    TransferCancelled
)
from .framing import FramedChannel, encode_frame
from .session import (
    CancellationToken,
    ChatSession,
    MessageReceiver,
    MessageSender,
    QueueSink,
    ReceiverState
)
from .negotiation import ConnectionNegotiator, NegotiatorState, connect_to_peer
from .file_transfer import FileTransferEncoder, FileTransferDecoder

__all__ = [
    'ChatError',
    'BindError',
    'PeerConnectionError',
    'HandshakeRejected',
    'EndOfStream',
    'TruncatedMessage',
    'MessageTooLarge',
    'InvalidArgument',
    'ChannelIOError',
    'TransferCancelled',
    'FramedChannel',
    'encode_frame',
    'CancellationToken',
    'ChatSession',
    'MessageReceiver',
    'MessageSender',
    'QueueSink',
    'ReceiverState',
    'ConnectionNegotiator',
    'NegotiatorState',
    'connect_to_peer',
    'FileTransferEncoder',
    'FileTransferDecoder'
]
