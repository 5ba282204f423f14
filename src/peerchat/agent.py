"""
Chat Agent - ties the network core to an application front-end

The agent owns at most one ChatSession. It does not run threads of its
own for delivery: the front-end passes every message from the session's
feed to handle_message() on whichever thread it uses for UI work
(console dispatcher thread, Qt main thread). handle_message() runs the
file-transfer decoder and turns the feed into callbacks:

- on_text_received(text)
- on_transfer_progress(name, bytes_done, bytes_total)
- on_file_received(path)
- on_file_failed(name, reason)
- on_error(exc) for a receive fault (truncated frame, I/O failure)

Outbound messages are one sequence: while a file is being sent, text
waits until its last chunk is out, so nothing lands between a FILE
control message and its chunks.
"""
import logging
import threading
from pathlib import Path
from typing import Callable, Optional, Union

from peerchat.common.discovery import PeerDiscovery
from peerchat.common.errors import HandshakeRejected, InvalidArgument
from peerchat.common.file_transfer import (
    ChatText,
    FileCompleted,
    FileFailed,
    FileProgress,
    FileStarted,
    FileTransferDecoder,
    FileTransferEncoder,
    save_received_file
)
from peerchat.common.negotiation import ConnectionNegotiator, NegotiatorState, connect_to_peer
from peerchat.common.session import (
    CancellationToken, ChatSession, MessageCallback, ReceiverState, fault_text
)
from peerchat.common.user_config import ChatConfig, get_config

logger = logging.getLogger(__name__)


class ChatAgent:
    """
    One chat conversation:
    - Listening (with accept/reject confirmation) or connecting
    - Sending text and files
    - Decoding inbound text into chat messages and received files
    """

    def __init__(self,
                 user_config: Optional[ChatConfig] = None,
                 on_text_received: Optional[Callable[[str], None]] = None,
                 on_file_received: Optional[Callable[[Path], None]] = None,
                 on_file_failed: Optional[Callable[[str, str], None]] = None,
                 on_transfer_progress: Optional[Callable[[str, int, int], None]] = None,
                 on_state_change: Optional[Callable[[NegotiatorState], None]] = None,
                 on_disconnected: Optional[Callable[[ReceiverState], None]] = None,
                 on_error: Optional[Callable[[Exception], None]] = None):
        """
        Initialize the chat agent

        Args:
            user_config: Settings (default: loaded from config.json)
            on_text_received: Chat text from the peer
            on_file_received: A file was received and saved
            on_file_failed: A file transfer broke off (name, reason)
            on_transfer_progress: Inbound file progress (name, done, total)
            on_state_change: Listener state changes while negotiating
            on_disconnected: Receive loop ended; called on the receiver thread
            on_error: The receive loop faulted; called from handle_message
        """
        self.user_config = user_config or get_config()
        self.on_text_received = on_text_received
        self.on_file_received = on_file_received
        self.on_file_failed = on_file_failed
        self.on_transfer_progress = on_transfer_progress
        self.on_state_change = on_state_change
        self.on_disconnected = on_disconnected
        self.on_error = on_error

        self.session: Optional[ChatSession] = None
        self._negotiator: Optional[ConnectionNegotiator] = None
        self._discovery: Optional[PeerDiscovery] = None
        self._decoder = FileTransferDecoder()
        self._encoder: Optional[FileTransferEncoder] = None
        self._transfer_token = CancellationToken()
        self._receive_fault: Optional[Exception] = None
        self._lock = threading.Lock()
        # Held for a whole outbound file so text cannot interleave with its chunks
        self._outbound_lock = threading.Lock()
        self._sending_file = False

    @property
    def is_connected(self) -> bool:
        return self.session is not None and self.session.is_active

    @property
    def is_sending_file(self) -> bool:
        return self._sending_file

    @property
    def peer_name(self) -> str:
        return self.session.peer_name if self.session else ""

    # ========== Connection ==========

    def listen(self,
               on_message: MessageCallback,
               decide_retry: Callable[[HandshakeRejected], bool],
               address: Optional[str] = None,
               port: Optional[int] = None,
               on_listening: Optional[Callable[[str, int], None]] = None) -> Optional[ChatSession]:
        """
        Listen for one peer and negotiate until accepted or aborted.

        Blocks the calling thread. Raises BindError / PeerConnectionError.
        """
        cfg = self.user_config
        address = cfg.bind_address if address is None else address
        port = cfg.port if port is None else port

        negotiator = ConnectionNegotiator(
            handshake_timeout=cfg.handshake_timeout_or_none,
            on_state_change=self.on_state_change
        )
        with self._lock:
            self._negotiator = negotiator

        try:
            bound_address, bound_port = negotiator.listen(address, port)
            if on_listening:
                on_listening(bound_address, bound_port)

            if cfg.auto_discovery:
                self._discovery = PeerDiscovery()
                if not self._discovery.advertise(bound_port):
                    logger.warning("LAN discovery unavailable; peers must connect by address")

            session = negotiator.negotiate(
                on_message,
                decide_retry,
                on_error=self._on_session_error,
                on_closed=self._on_session_closed
            )
        finally:
            # One peer per listener: stop accepting once negotiation ends
            negotiator.close()
            self._stop_discovery()
            with self._lock:
                self._negotiator = None

        if session is not None:
            self.attach(session)
        return session

    def connect(self,
                host: str,
                port: int,
                confirm: Callable[[str], bool],
                on_message: MessageCallback) -> Optional[ChatSession]:
        """Connect to a listening peer. Raises PeerConnectionError."""
        session = connect_to_peer(
            host,
            port,
            confirm,
            on_message,
            on_error=self._on_session_error,
            on_closed=self._on_session_closed,
            timeout=self.user_config.connect_timeout
        )
        if session is not None:
            self.attach(session)
        return session

    def find_peer(self, timeout: float = 5.0) -> Optional[tuple]:
        """Look for an advertised listener on the LAN"""
        discovery = PeerDiscovery()
        try:
            return discovery.get_first_peer(timeout=timeout)
        finally:
            discovery.stop()

    def open_session(self, connection, on_message: MessageCallback) -> ChatSession:
        """Start and attach a session on an already connected socket or channel"""
        session = ChatSession(
            connection,
            on_message,
            on_error=self._on_session_error,
            on_closed=self._on_session_closed
        )
        self.attach(session)
        return session.start()

    def attach(self, session: ChatSession):
        """Use an already negotiated session"""
        # Send failures reach the caller as exceptions; keep them out of
        # the inbound feed, where they would be decoded as peer data
        session.sender.on_message = None
        with self._lock:
            self.session = session
            self._decoder = FileTransferDecoder()
            self._encoder = FileTransferEncoder(
                session,
                chunk_size=self.user_config.chunk_size,
                inter_chunk_delay=self.user_config.inter_chunk_delay
            )
        logger.info(f"Chatting with {session.peer_name}")

    def _on_session_error(self, exc: Exception):
        """Receiver thread; the fault text follows on the feed"""
        self._receive_fault = exc

    def _on_session_closed(self, state: ReceiverState):
        logger.info(f"Session ended ({state.value})")
        if self.on_disconnected:
            self.on_disconnected(state)

    # ========== Sending ==========

    def send_text(self, text: str):
        """
        Send one chat message. Waits for an outbound file to finish.

        Raises InvalidArgument / ChannelIOError.
        """
        if self.session is None:
            raise InvalidArgument("Not connected")
        with self._outbound_lock:
            self.session.send(text)

    def send_file(self,
                  path: Union[str, Path],
                  on_progress: Optional[Callable[[int, int], None]] = None) -> int:
        """
        Send a file from disk. Blocks for the whole transfer; other sends
        wait until it ends.

        Returns:
            Number of chunk messages sent
        """
        if self._encoder is None:
            raise InvalidArgument("Not connected")

        with self._outbound_lock:
            token = CancellationToken()
            self._transfer_token = token
            self._sending_file = True
            try:
                return self._encoder.send_path(
                    path,
                    on_progress=on_progress,
                    cancel_token=token
                )
            finally:
                self._sending_file = False

    def cancel_transfer(self):
        """Stop an outgoing file transfer between chunks"""
        self._transfer_token.cancel()

    # ========== Receiving ==========

    def handle_message(self, text: str):
        """Process one message from the session's feed"""
        fault = self._receive_fault
        if fault is not None and text == fault_text(fault):
            self._handle_fault(fault)
            return

        for event in self._decoder.feed(text):
            self._dispatch(event)

    def _handle_fault(self, exc: Exception):
        self._receive_fault = None
        failed = self._decoder.abort(str(exc))
        if failed is not None:
            self._dispatch(failed)
        if self.on_error:
            self.on_error(exc)

    def _dispatch(self, event):
        if isinstance(event, ChatText):
            if self.on_text_received:
                self.on_text_received(event.text)

        elif isinstance(event, FileStarted):
            self._report_progress(event.descriptor.name, 0, event.descriptor.size)

        elif isinstance(event, FileProgress):
            self._report_progress(event.descriptor.name, event.received, event.descriptor.size)

        elif isinstance(event, FileCompleted):
            try:
                path = save_received_file(
                    self.user_config.download_path,
                    event.descriptor.name,
                    event.data
                )
            except OSError as e:
                logger.error(f"Could not save {event.descriptor.name}: {e}")
                if self.on_file_failed:
                    self.on_file_failed(event.descriptor.name, str(e))
                return
            if self.on_file_received:
                self.on_file_received(path)

        elif isinstance(event, FileFailed):
            if self.on_file_failed:
                self.on_file_failed(event.descriptor.name, event.reason)

    def _report_progress(self, name: str, done: int, total: int):
        if self.on_transfer_progress:
            self.on_transfer_progress(name, done, total)

    # ========== Teardown ==========

    def _stop_discovery(self):
        if self._discovery is not None:
            self._discovery.stop()
            self._discovery = None

    def close_session(self):
        """
        Stop the network side: outbound transfer, listener and session.
        Safe to call from any thread, more than once.
        """
        self._transfer_token.cancel()

        with self._lock:
            negotiator = self._negotiator
            session = self.session

        if negotiator is not None:
            negotiator.close()
        if session is not None:
            session.close()

    def finish(self):
        """
        Fail an inbound file left half received. Call on the thread that
        runs handle_message(), once it has stopped.
        """
        failed = self._decoder.abort()
        if failed is not None:
            self._dispatch(failed)

    def close(self):
        """close_session() then finish(), for callers that handle the feed on this thread"""
        self.close_session()
        self.finish()
