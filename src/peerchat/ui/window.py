"""
ChatWindow - the chat form.

Layout:
    [Address] [Port] [Listen] [Connect]
    [ chat log .......................... ]
    [ input line ........................ ]
    [Send] [Send file]
    [progress bar]  status
"""

import html
import logging
from datetime import datetime

from PySide6.QtCore import Signal
from PySide6.QtWidgets import (
    QFileDialog,
    QHBoxLayout,
    QLabel,
    QLineEdit,
    QProgressBar,
    QPushButton,
    QSpinBox,
    QTextEdit,
    QVBoxLayout,
    QWidget,
)

from peerchat.common.file_transfer import format_bytes

logger = logging.getLogger(__name__)


class ChatWindow(QWidget):
    """Chat form: connection bar, log, input and file button."""

    listen_requested = Signal(str, int)
    connect_requested = Signal(str, int)
    send_requested = Signal(str)
    send_file_requested = Signal(str)

    def __init__(self, address: str, port: int, display_name: str, peer_display_name: str, parent=None):
        super().__init__(parent)
        self.display_name = display_name
        self.peer_display_name = peer_display_name
        self._connected = False
        self._uploading = False

        self.setWindowTitle("peerchat")
        self.resize(480, 400)

        # Connection bar
        self.address_edit = QLineEdit(address)
        self.address_edit.setPlaceholderText("IP address")
        self.port_spin = QSpinBox()
        self.port_spin.setRange(1, 65535)
        self.port_spin.setValue(port)
        self.listen_button = QPushButton("Listen")
        self.connect_button = QPushButton("Connect")

        top = QHBoxLayout()
        top.addWidget(self.address_edit, 1)
        top.addWidget(self.port_spin)
        top.addWidget(self.listen_button)
        top.addWidget(self.connect_button)

        # Chat
        self.chat_log = QTextEdit()
        self.chat_log.setReadOnly(True)
        self.input_edit = QLineEdit()
        self.input_edit.setPlaceholderText("Type a message")
        self.send_button = QPushButton("Send")
        self.send_file_button = QPushButton("Send file")

        buttons = QHBoxLayout()
        buttons.addWidget(self.send_button)
        buttons.addWidget(self.send_file_button)

        # Status
        self.progress_bar = QProgressBar()
        self.progress_bar.setVisible(False)
        self.status_label = QLabel("Not connected")

        layout = QVBoxLayout(self)
        layout.addLayout(top)
        layout.addWidget(self.chat_log, 1)
        layout.addWidget(self.input_edit)
        layout.addLayout(buttons)
        layout.addWidget(self.progress_bar)
        layout.addWidget(self.status_label)

        self.listen_button.clicked.connect(self._on_listen_clicked)
        self.connect_button.clicked.connect(self._on_connect_clicked)
        self.send_button.clicked.connect(self._on_send_clicked)
        self.input_edit.returnPressed.connect(self._on_send_clicked)
        self.send_file_button.clicked.connect(self._on_send_file_clicked)

        self.set_connected(False, "")

    # ========== User actions ==========

    def _on_listen_clicked(self):
        self._set_busy(True)
        self.listen_requested.emit(self.address_edit.text().strip(), self.port_spin.value())

    def _on_connect_clicked(self):
        address = self.address_edit.text().strip()
        if not address:
            self.set_status("Enter the peer's IP address")
            return
        self._set_busy(True)
        self.connect_requested.emit(address, self.port_spin.value())

    def _on_send_clicked(self):
        text = self.input_edit.text()
        if not text or not self.send_button.isEnabled():
            return
        self.send_requested.emit(text)
        self.input_edit.clear()

    def _on_send_file_clicked(self):
        path, _ = QFileDialog.getOpenFileName(self, "Send file")
        if path:
            self.send_file_requested.emit(path)

    # ========== Updates (main thread only) ==========

    def _set_busy(self, busy: bool):
        self.listen_button.setEnabled(not busy)
        self.connect_button.setEnabled(not busy)
        self.address_edit.setEnabled(not busy)
        self.port_spin.setEnabled(not busy)

    def _update_send_controls(self):
        # No text or second file while a file is going out
        enabled = self._connected and not self._uploading
        self.input_edit.setEnabled(enabled)
        self.send_button.setEnabled(enabled)
        self.send_file_button.setEnabled(enabled)

    def set_uploading(self, uploading: bool):
        self._uploading = uploading
        self._update_send_controls()

    def set_connected(self, connected: bool, peer_name: str):
        self._connected = connected
        self._set_busy(connected)
        self._update_send_controls()
        if connected:
            self.set_status(f"Connected to {peer_name}")
            self.input_edit.setFocus()
        else:
            self.set_status("Not connected")

    def set_status(self, text: str):
        self.status_label.setText(text)

    def connection_failed(self, error: str):
        self._set_busy(False)
        self.set_status(error)

    def append_line(self, who: str, text: str):
        stamp = datetime.now().strftime("%H:%M")
        self.chat_log.append(f"[{stamp}] <b>{html.escape(who)}</b>: {html.escape(text)}")

    def append_own(self, text: str):
        self.append_line(self.display_name, text)

    def append_peer(self, text: str):
        self.append_line(self.peer_display_name, text)

    def append_notice(self, text: str):
        self.chat_log.append(f"<i>{html.escape(text)}</i>")

    def update_progress(self, name: str, done: int, total: int):
        if total <= 0 or done >= total:
            self.progress_bar.setVisible(False)
            return
        self.progress_bar.setVisible(True)
        self.progress_bar.setMaximum(100)
        self.progress_bar.setValue(int(done * 100 / total))
        self.set_status(f"{name}: {format_bytes(done)} / {format_bytes(total)}")
