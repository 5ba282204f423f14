"""
Connection negotiation for peerchat

Handles the unframed accept/reject handshake that precedes the framed
chat protocol:
1. The listener accepts one TCP connection and sends a prompt (raw UTF-8)
2. The connector shows the prompt to its user and replies with raw bytes
3. If the reply is "si" (case-insensitive, trimmed) the listener starts a
   ChatSession; otherwise the connection is dropped and the listener's
   owner chooses to retry (wait for the next connection) or abort

The reply is read with a single recv() of at most HANDSHAKE_BUFFER_SIZE
bytes; it is not frame-delimited.
"""
import socket
import logging
from enum import Enum
from typing import Callable, List, Optional, Tuple

from peerchat import config
from peerchat.common.errors import BindError, HandshakeRejected, PeerConnectionError
from peerchat.common.session import ChatSession, ErrorCallback, MessageCallback, ReceiverState

logger = logging.getLogger(__name__)

ClosedCallback = Optional[Callable[[ReceiverState], None]]


class NegotiatorState(Enum):
    IDLE = "idle"
    LISTENING = "listening"
    ACCEPTED = "accepted"
    CONFIRMING = "confirming"
    ACTIVE = "active"
    REJECTED = "rejected"
    CLOSED = "closed"


def is_acceptance(reply: str, token: str = config.ACCEPT_TOKEN) -> bool:
    """True if a handshake reply accepts the connection"""
    return reply.strip().lower() == token.lower()


def _close_quietly(sock: socket.socket):
    try:
        sock.close()
    except OSError as e:
        logger.debug(f"Error closing socket: {e}")


class ConnectionNegotiator:
    """Listener side: accepts one peer at a time and asks for confirmation"""

    def __init__(self,
                 prompt: str = config.HANDSHAKE_PROMPT,
                 accept_token: str = config.ACCEPT_TOKEN,
                 handshake_timeout: Optional[float] = None,
                 on_state_change: Optional[Callable[[NegotiatorState], None]] = None):
        """
        Args:
            prompt: Text sent to the connector right after accept
            accept_token: Reply that accepts the connection
            handshake_timeout: Seconds to wait for the reply (None = forever)
            on_state_change: Called with each new NegotiatorState
        """
        self.prompt = prompt
        self.accept_token = accept_token
        self.handshake_timeout = handshake_timeout
        self.on_state_change = on_state_change

        self._server_socket: Optional[socket.socket] = None
        self._state = NegotiatorState.IDLE

    @property
    def state(self) -> NegotiatorState:
        return self._state

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """(host, port) actually bound, or None if not listening"""
        if self._server_socket is None:
            return None
        return self._server_socket.getsockname()[:2]

    def _set_state(self, state: NegotiatorState):
        self._state = state
        logger.debug(f"Negotiator state: {state.value}")
        if self.on_state_change:
            try:
                self.on_state_change(state)
            except Exception as e:
                logger.error(f"State callback error: {e}")

    def listen(self, address: str = config.BIND_ADDRESS, port: int = config.PORT) -> Tuple[str, int]:
        """
        Bind and listen.

        Raises:
            BindError: the address/port could not be bound
        """
        if self._server_socket is not None:
            raise RuntimeError("Already listening")

        try:
            server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        except OSError as e:
            raise BindError(f"Cannot create socket: {e}") from e

        try:
            server_socket.bind((address, port))
            server_socket.listen(1)
        except OSError as e:
            _close_quietly(server_socket)
            raise BindError(f"Cannot listen on {address}:{port}: {e}") from e

        self._server_socket = server_socket
        self._set_state(NegotiatorState.LISTENING)
        logger.info(f"Listening on {self.address[0]}:{self.address[1]}")
        return self.address

    def accept_once(self,
                    on_message: MessageCallback,
                    on_error: Optional[ErrorCallback] = None,
                    on_closed: ClosedCallback = None) -> ChatSession:
        """
        Wait for one connection and run the handshake.

        Returns:
            A started ChatSession

        Raises:
            HandshakeRejected: the peer did not accept (connection already closed)
            PeerConnectionError: accept or handshake I/O failed
        """
        if self._server_socket is None:
            raise PeerConnectionError("Not listening")

        self._set_state(NegotiatorState.LISTENING)
        try:
            client_socket, addr = self._server_socket.accept()
        except OSError as e:
            raise PeerConnectionError(f"Accept failed: {e}") from e

        logger.info(f"Connection from {addr[0]}:{addr[1]}")
        self._set_state(NegotiatorState.ACCEPTED)

        try:
            self._set_state(NegotiatorState.CONFIRMING)
            client_socket.settimeout(self.handshake_timeout)
            client_socket.sendall(self.prompt.encode('utf-8'))
            data = client_socket.recv(config.HANDSHAKE_BUFFER_SIZE)
            client_socket.settimeout(None)
        except OSError as e:
            _close_quietly(client_socket)
            raise PeerConnectionError(f"Handshake failed: {e}") from e

        reply = data.decode('utf-8', errors='replace')
        if not is_acceptance(reply, self.accept_token):
            _close_quietly(client_socket)
            self._set_state(NegotiatorState.REJECTED)
            logger.info(f"Connection from {addr[0]} rejected (reply: {reply.strip()!r})")
            raise HandshakeRejected(reply)

        self._set_state(NegotiatorState.ACTIVE)
        logger.info(f"Connection from {addr[0]} accepted")
        session = ChatSession(
            client_socket,
            on_message,
            on_error=on_error,
            on_closed=on_closed,
            peer_address=addr
        )
        return session.start()

    def negotiate(self,
                  on_message: MessageCallback,
                  decide_retry: Callable[[HandshakeRejected], bool],
                  on_error: Optional[ErrorCallback] = None,
                  on_closed: ClosedCallback = None) -> Optional[ChatSession]:
        """
        Accept until a peer confirms or the owner gives up.

        decide_retry is asked after each rejection; True waits for the next
        connection on the same listener, False closes the listener.

        Returns:
            A started ChatSession, or None if aborted
        """
        while True:
            try:
                return self.accept_once(on_message, on_error=on_error, on_closed=on_closed)
            except HandshakeRejected as e:
                if decide_retry(e):
                    logger.info("Retrying: waiting for another connection")
                    continue
                logger.info("Negotiation aborted")
                self.close()
                return None

    def close(self):
        """Release the listener. Safe to call more than once."""
        server_socket, self._server_socket = self._server_socket, None
        if server_socket is None:
            return

        # Shutdown wakes a thread blocked in accept()
        try:
            server_socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # Not connected
        _close_quietly(server_socket)
        self._set_state(NegotiatorState.CLOSED)
        logger.info("Listener closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def connect_to_peer(host: str,
                    port: int,
                    confirm: Callable[[str], bool],
                    on_message: MessageCallback,
                    on_error: Optional[ErrorCallback] = None,
                    on_closed: ClosedCallback = None,
                    timeout: Optional[float] = 10.0) -> Optional[ChatSession]:
    """
    Connector side of the handshake.

    Args:
        host: Listener address
        port: Listener port
        confirm: Shown the listener's prompt; returns True to accept
        on_message: Delivery callback for the session
        timeout: Seconds allowed for connect and for the prompt to arrive

    Returns:
        A started ChatSession, or None if confirm() declined

    Raises:
        PeerConnectionError: connect or handshake I/O failed
    """
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
    except OSError as e:
        raise PeerConnectionError(f"Could not connect to {host}:{port}: {e}") from e

    try:
        data = sock.recv(config.HANDSHAKE_BUFFER_SIZE)
        if not data:
            raise PeerConnectionError(f"{host}:{port} closed the connection before the handshake")

        prompt = data.decode('utf-8', errors='replace')
        logger.debug(f"Handshake prompt: {prompt!r}")
        accepted = bool(confirm(prompt))

        reply = config.ACCEPT_TOKEN if accepted else config.REJECT_TOKEN
        sock.sendall(reply.encode('utf-8'))
    except PeerConnectionError:
        _close_quietly(sock)
        raise
    except OSError as e:
        _close_quietly(sock)
        raise PeerConnectionError(f"Handshake with {host}:{port} failed: {e}") from e

    if not accepted:
        logger.info(f"Declined connection to {host}:{port}")
        _close_quietly(sock)
        return None

    sock.settimeout(None)
    logger.info(f"Connected to {host}:{port}")
    session = ChatSession(
        sock,
        on_message,
        on_error=on_error,
        on_closed=on_closed,
        peer_address=(host, port)
    )
    return session.start()


def get_local_ips() -> List[str]:
    """Get list of local IP addresses for display"""
    ips = []
    try:
        hostname = socket.gethostname()
        try:
            for info in socket.getaddrinfo(hostname, None, socket.AF_INET):
                ip = info[4][0]
                if not ip.startswith('127.'):
                    ips.append(ip)
        except socket.gaierror:
            pass

        # Also try routing to an external address to find the primary IP
        try:
            s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            try:
                s.connect(('8.8.8.8', 80))
                primary_ip = s.getsockname()[0]
            finally:
                s.close()
            if primary_ip not in ips:
                ips.insert(0, primary_ip)
        except OSError:
            pass

        # Remove duplicates while preserving order
        seen = set()
        unique_ips = []
        for ip in ips:
            if ip not in seen:
                seen.add(ip)
                unique_ips.append(ip)
        ips = unique_ips

    except Exception as e:
        logger.debug(f"Error getting local IPs: {e}")

    if not ips:
        ips = ['127.0.0.1']

    return ips
