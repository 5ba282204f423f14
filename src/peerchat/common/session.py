"""
Chat session: receive loop, sender and cancellation

A ChatSession is created once the handshake succeeds. It owns the
FramedChannel and runs one background thread (MessageReceiver) that
delivers each inbound message to an on_message callback. Sends run on
the caller's thread.

Receive errors and send errors are reported on the same on_message feed
as ordinary text ("Error: ...", "Send error: ..."), so a consumer that
only listens to that feed still sees them. An optional on_error callback
receives the exception object as well, before the text is delivered.
"""
import queue
import socket
import logging
import threading
from enum import Enum
from typing import Callable, List, Optional, Union

from peerchat.common.errors import ChatError, EndOfStream, InvalidArgument
from peerchat.common.framing import FramedChannel

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str], None]
ErrorCallback = Callable[[Exception], None]


def fault_text(exc: Exception) -> str:
    """Text delivered on the feed when the receive loop faults"""
    return f"Error: {exc}"


class CancellationToken:
    """
    One-shot cancellation signal.

    Once cancelled it stays cancelled. Callbacks registered with
    on_cancel() run exactly once, on the thread that calls cancel(), or
    immediately if the token is already cancelled.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def on_cancel(self, callback: Callable[[], None]):
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def cancel(self) -> bool:
        """Set the token. Returns False if it was already set."""
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []

        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Cancellation callback error: {e}")
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep until cancelled or timeout. Returns True if cancelled."""
        return self._event.wait(timeout)


class ReceiverState(Enum):
    IDLE = "idle"
    LISTENING = "listening"
    DELIVERING = "delivering"
    STOPPED = "stopped"
    FAULTED = "faulted"


class MessageReceiver:
    """
    Background loop reading frames and delivering them as text.

    Terminal states:
    - STOPPED: peer closed at a frame boundary, or cancellation
    - FAULTED: truncated frame or I/O failure (reported on the feed)

    Cancellation is best-effort for a read that is already blocked; it
    relies on the channel being closed to interrupt it. Once cancel()
    has returned, on_message is not called again.
    """

    def __init__(self,
                 channel: FramedChannel,
                 on_message: MessageCallback,
                 cancel_token: Optional[CancellationToken] = None,
                 on_error: Optional[ErrorCallback] = None,
                 on_closed: Optional[Callable[[ReceiverState], None]] = None):
        if on_message is None:
            raise InvalidArgument("on_message callback is required")

        self.channel = channel
        self.on_message = on_message
        self.on_error = on_error
        self.on_closed = on_closed
        self.cancel_token = cancel_token or CancellationToken()

        self._state = ReceiverState.IDLE
        self._thread: Optional[threading.Thread] = None
        # Held while delivering; cancel() takes it so no delivery starts afterwards
        self._deliver_lock = threading.RLock()

    @property
    def state(self) -> ReceiverState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start the receive loop on a daemon thread"""
        if self._thread is not None:
            raise RuntimeError("Receiver already started")

        self._state = ReceiverState.LISTENING
        self._thread = threading.Thread(
            target=self._receive_loop,
            name="peerchat-receiver",
            daemon=True
        )
        self._thread.start()

    def cancel(self):
        """Stop delivering messages and interrupt the loop"""
        with self._deliver_lock:
            self.cancel_token.cancel()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the loop to finish. Returns True if it has."""
        if self._thread is None:
            return True
        if self._thread is threading.current_thread():
            return False
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _receive_loop(self):
        logger.debug("Receive loop started")
        try:
            while not self.cancel_token.is_cancelled:
                self._state = ReceiverState.LISTENING
                try:
                    payload = self.channel.read_message()
                except EndOfStream:
                    logger.info("Peer closed the connection")
                    self._state = ReceiverState.STOPPED
                    break
                except (ChatError, OSError) as e:
                    if self.cancel_token.is_cancelled:
                        # Channel closed underneath us by cancellation
                        self._state = ReceiverState.STOPPED
                        break
                    logger.error(f"Receive error: {e}")
                    self._report_fault(e)
                    self._state = ReceiverState.FAULTED
                    break

                self._deliver(payload.decode('utf-8', errors='replace'))
            else:
                self._state = ReceiverState.STOPPED
        finally:
            logger.debug(f"Receive loop ended ({self._state.value})")
            if self.on_closed:
                try:
                    self.on_closed(self._state)
                except Exception as e:
                    logger.error(f"on_closed callback error: {e}")

    def _deliver(self, text: str):
        with self._deliver_lock:
            if self.cancel_token.is_cancelled:
                return
            self._state = ReceiverState.DELIVERING
            try:
                self.on_message(text)
            except Exception as e:
                logger.error(f"Message callback error: {e}")

    def _report_fault(self, exc: Exception):
        with self._deliver_lock:
            if self.cancel_token.is_cancelled:
                return
            # on_error runs first so a consumer of the feed can recognise the fault text
            if self.on_error:
                try:
                    self.on_error(exc)
                except Exception as e:
                    logger.error(f"Error callback error: {e}")
            try:
                self.on_message(fault_text(exc))
            except Exception as e:
                logger.error(f"Message callback error: {e}")


class MessageSender:
    """
    Synchronous writer: one call, one frame.

    Precondition: callers do not call send() concurrently on the same
    channel. ChatSession.send serializes for callers that cannot
    guarantee this.
    """

    def __init__(self,
                 channel: FramedChannel,
                 on_message: Optional[MessageCallback] = None,
                 on_error: Optional[ErrorCallback] = None):
        self.channel = channel
        self.on_message = on_message
        self.on_error = on_error

    def send(self, text: str):
        """
        Send one text message.

        Raises:
            InvalidArgument: text is empty
            ChannelIOError: the write failed (also reported on the feed)
        """
        if not text:
            raise InvalidArgument("Message cannot be empty")

        try:
            self.channel.write_message(text.encode('utf-8'))
        except (ChatError, OSError) as e:
            logger.error(f"Send error: {e}")
            if self.on_message:
                try:
                    self.on_message(f"Send error: {e}")
                except Exception as cb_error:
                    logger.error(f"Message callback error: {cb_error}")
            if self.on_error:
                try:
                    self.on_error(e)
                except Exception as cb_error:
                    logger.error(f"Error callback error: {cb_error}")
            raise


class ChatSession:
    """
    One conversation over one connection.

    Owns the channel exclusively. close() cancels the receiver and
    releases the socket; it can be called from any teardown path any
    number of times.
    """

    def __init__(self,
                 connection: Union[socket.socket, FramedChannel],
                 on_message: MessageCallback,
                 on_error: Optional[ErrorCallback] = None,
                 on_closed: Optional[Callable[[ReceiverState], None]] = None,
                 peer_address: Optional[tuple] = None):
        if isinstance(connection, FramedChannel):
            self.channel = connection
        else:
            self.channel = FramedChannel(connection)

        self.peer_address = peer_address
        self.cancel_token = CancellationToken()
        self.cancel_token.on_cancel(self.channel.close)

        self.receiver = MessageReceiver(
            self.channel,
            on_message,
            cancel_token=self.cancel_token,
            on_error=on_error,
            on_closed=on_closed
        )
        self.sender = MessageSender(self.channel, on_message=on_message, on_error=on_error)
        self._send_lock = threading.Lock()

    @property
    def peer_name(self) -> str:
        if self.peer_address:
            return f"{self.peer_address[0]}:{self.peer_address[1]}"
        return "peer"

    @property
    def is_active(self) -> bool:
        if self.cancel_token.is_cancelled or self.channel.closed:
            return False
        return self.receiver.state not in (ReceiverState.STOPPED, ReceiverState.FAULTED)

    def start(self) -> 'ChatSession':
        """Start receiving. Returns self for chaining."""
        self.receiver.start()
        logger.info(f"Chat session with {self.peer_name} started")
        return self

    def send(self, text: str):
        """Send one message; concurrent callers are serialized"""
        with self._send_lock:
            self.sender.send(text)

    def close(self):
        """Cancel the session and release the connection. Idempotent."""
        if self.cancel_token.is_cancelled:
            return
        self.receiver.cancel()
        self.receiver.join(timeout=2)
        logger.info(f"Chat session with {self.peer_name} closed")

    def wait_closed(self, timeout: Optional[float] = None) -> bool:
        """Block until the receive loop ends (peer close, fault or cancel)"""
        return self.receiver.join(timeout)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class QueueSink:
    """
    on_message callback that hands messages to another thread.

    The receive loop only enqueues; the consuming thread (console printer,
    UI timer) pulls with get() or iterates until close().
    """

    _CLOSED = object()

    def __init__(self, maxsize: int = 0):
        self._queue: queue.Queue = queue.Queue(maxsize)
        self.closed = False

    def __call__(self, text: str):
        self._queue.put(text)

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """Next message, or None on timeout or after close()"""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is self._CLOSED:
            self.closed = True
            return None
        return item

    def close(self):
        self._queue.put(self._CLOSED)

    def __iter__(self):
        while True:
            item = self._queue.get()
            if item is self._CLOSED:
                self.closed = True
                return
            yield item
