"""
ChatApp - Main Qt application for the chat window

This module manages the Qt application lifecycle and wires the
ChatAgent to the ChatWindow. Blocking work (listen/accept, connect,
file sends) runs in worker threads; everything that touches widgets
runs in the main Qt thread via ChatSignals.
"""

import logging
import sys
import threading
from pathlib import Path
from typing import Callable, Optional

from PySide6.QtCore import QObject, QThread
from PySide6.QtWidgets import QApplication, QMessageBox

from peerchat.agent import ChatAgent
from peerchat.common.errors import ChatError, HandshakeRejected, get_error_from_exception
from peerchat.common.negotiation import NegotiatorState
from peerchat.common.session import ReceiverState
from peerchat.common.user_config import get_config

from .signals import ChatSignals
from .window import ChatWindow

logger = logging.getLogger(__name__)


class NegotiationWorker(QThread):
    """
    Runs a blocking listen/connect call off the UI thread.

    The call's result (a ChatSession or None) is left in self.session.
    """

    def __init__(self, target: Callable, signals: ChatSignals, parent=None):
        super().__init__(parent)
        self.target = target
        self.signals = signals
        self.session = None

    def run(self):
        try:
            self.session = self.target()
        except ChatError as e:
            logger.error(f"Connection failed: {e}")
            self.signals.connection_failed.emit(str(get_error_from_exception(e)))
            return

        if self.session is None:
            self.signals.connection_failed.emit("Connection cancelled")
        else:
            self.signals.connection_changed.emit(True, self.session.peer_name)


class ChatApp(QObject):
    """
    Main application class for the chat window.

    Manages:
    - Qt application lifecycle
    - ChatAgent and the negotiation worker thread
    - Signal routing between the chat core and the window
    """

    def __init__(self):
        super().__init__()
        self.user_config = get_config()

        # Qt application (created in start())
        self._app: Optional[QApplication] = None

        # Signal bridge for thread-safe communication
        self.signals = ChatSignals()

        self._window: Optional[ChatWindow] = None
        self._worker: Optional[NegotiationWorker] = None

        self._agent = ChatAgent(
            self.user_config,
            on_text_received=self._on_text_received,
            on_file_received=self._on_file_received,
            on_file_failed=self._on_file_failed,
            on_transfer_progress=self._on_transfer_progress,
            on_state_change=self._on_state_change,
            on_disconnected=self._on_disconnected,
            on_error=self._on_receive_error
        )

        # Worker threads block on these until the user answers a dialog
        self._answer_event = threading.Event()
        self._answer = False

    def start(self) -> int:
        """
        Start the chat window.

        Returns:
            Exit code from Qt application
        """
        self._app = QApplication.instance() or QApplication(sys.argv)
        self._app.setApplicationName("peerchat")
        self._app.aboutToQuit.connect(self.stop)

        self._window = ChatWindow(
            address="",
            port=self.user_config.port,
            display_name=self.user_config.display_name,
            peer_display_name=self.user_config.peer_display_name
        )
        self._connect_signals()
        self._window.show()

        logger.info("Chat window started")
        return self._app.exec()

    def stop(self):
        """Close the session and any pending negotiation."""
        logger.info("Stopping chat window...")
        self._agent.close()
        # Unblock a worker waiting on a dialog answer
        self._answer = False
        self._answer_event.set()
        if self._worker:
            self._worker.wait(3000)

    def _connect_signals(self):
        """Connect signals to UI slots."""
        window = self._window

        # Window actions -> agent
        window.listen_requested.connect(self._handle_listen)
        window.connect_requested.connect(self._handle_connect)
        window.send_requested.connect(self._handle_send)
        window.send_file_requested.connect(self._handle_send_file)

        # Receive loop -> decoder, in the UI thread
        self.signals.message_received.connect(self._on_feed_message)

        # Status -> window
        self.signals.connection_changed.connect(window.set_connected)
        self.signals.connection_failed.connect(window.connection_failed)
        self.signals.status_changed.connect(window.set_status)
        self.signals.question_asked.connect(self._ask_user)
        self.signals.send_progress.connect(window.update_progress)
        self.signals.send_finished.connect(self._on_send_finished)

    # ========== Worker <-> dialog ==========

    def _ask_from_worker(self, title: str, question: str) -> bool:
        """Called in a worker thread; blocks until the user answers."""
        self._answer_event.clear()
        self.signals.question_asked.emit(title, question)
        self._answer_event.wait()
        return self._answer

    def _ask_user(self, title: str, question: str):
        """Slot in the UI thread."""
        reply = QMessageBox.question(self._window, title, question)
        self._answer = reply == QMessageBox.StandardButton.Yes
        self._answer_event.set()

    def _decide_retry(self, rejection: HandshakeRejected) -> bool:
        return self._ask_from_worker("Confirmation", "Connection rejected. Retry?")

    def _confirm_prompt(self, prompt: str) -> bool:
        return self._ask_from_worker("Incoming chat", prompt)

    # ========== UI Action Handlers ==========

    def _start_worker(self, target: Callable):
        self._worker = NegotiationWorker(target, self.signals)
        self._worker.start()

    def _handle_listen(self, address: str, port: int):
        bind = address or self.user_config.bind_address

        def on_listening(host: str, bound_port: int):
            self.signals.status_changed.emit(f"Waiting for a peer on {host}:{bound_port}")

        self._start_worker(lambda: self._agent.listen(
            self.signals.message_received.emit,
            self._decide_retry,
            address=bind,
            port=port,
            on_listening=on_listening
        ))

    def _handle_connect(self, address: str, port: int):
        self.signals.status_changed.emit(f"Connecting to {address}:{port}...")
        self._start_worker(lambda: self._agent.connect(
            address,
            port,
            self._confirm_prompt,
            self.signals.message_received.emit
        ))

    def _handle_send(self, text: str):
        try:
            self._agent.send_text(text)
        except ChatError as e:
            self._window.append_notice(str(get_error_from_exception(e)))
            return
        self._window.append_own(text)

    def _handle_send_file(self, path_str: str):
        path = Path(path_str)

        def on_progress(sent: int, total: int):
            self.signals.send_progress.emit(path.name, sent, total)

        # Run the transfer in a thread to avoid blocking UI
        def do_send():
            try:
                self._agent.send_file(path, on_progress=on_progress)
                self.signals.send_finished.emit(path.name, True, "")
            except (ChatError, OSError) as e:
                logger.error(f"Send file failed: {e}")
                self.signals.send_finished.emit(path.name, False, str(get_error_from_exception(e)))

        if self._agent.is_sending_file:
            self._window.append_notice("Wait for the current file to finish")
            return
        self._window.set_uploading(True)
        self._window.append_notice(f"Sending {path.name}...")
        thread = threading.Thread(target=do_send, daemon=True)
        thread.start()

    def _on_send_finished(self, name: str, success: bool, error: str):
        self._window.set_uploading(False)
        self._window.update_progress(name, 0, 0)
        if success:
            self._window.append_notice(f"File sent: {name}")
        else:
            self._window.append_notice(f"Could not send {name}: {error}")

    # ========== Callbacks from ChatAgent ==========

    def _on_feed_message(self, text: str):
        """UI thread: queued from the receive loop."""
        self._agent.handle_message(text)

    def _on_text_received(self, text: str):
        """UI thread (via message_received)."""
        self._window.append_peer(text)

    def _on_file_received(self, path: Path):
        """UI thread."""
        self._window.append_notice(f"Received file {path.name} -> {path}")

    def _on_file_failed(self, name: str, reason: str):
        """UI thread, or the thread calling close()."""
        logger.warning(f"Incoming file {name} failed: {reason}")
        if self._window is not None and QThread.currentThread() is self.thread():
            self._window.append_notice(f"Incoming file {name} failed: {reason}")

    def _on_receive_error(self, exc: Exception):
        """UI thread (via message_received)."""
        self._window.append_notice(f"{get_error_from_exception(exc).message} ({exc})")

    def _on_transfer_progress(self, name: str, done: int, total: int):
        """UI thread."""
        self._window.update_progress(name, done, total)

    def _on_state_change(self, state: NegotiatorState):
        """Worker thread."""
        self.signals.status_changed.emit(f"Status: {state.value}")

    def _on_disconnected(self, state: ReceiverState):
        """Receive-loop thread."""
        self.signals.connection_changed.emit(False, "")
