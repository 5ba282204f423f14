"""
Qt Signals for thread-safe communication between the chat core and UI.

The receive loop and the negotiation/file-send workers run in background
threads, while the UI runs in the main Qt thread. These signals bridge
the two safely.
"""

from PySide6.QtCore import QObject, Signal


class ChatSignals(QObject):
    """
    Signal hub for chat events.

    All signals are thread-safe and can be emitted from any thread.
    """

    # Raw text from the session feed (receive loop -> UI thread)
    # Args: text (str)
    message_received = Signal(str)

    # Connection status changed
    # Args: connected (bool), peer_name (str)
    connection_changed = Signal(bool, str)

    # Negotiation status text for the status bar
    # Args: status (str)
    status_changed = Signal(str)

    # Listen/connect failed
    # Args: error (str)
    connection_failed = Signal(str)

    # Worker needs a yes/no answer from the user (rejection retry, connect prompt)
    # Args: title (str), question (str)
    question_asked = Signal(str, str)

    # Outgoing file progress
    # Args: name (str), bytes_sent (int), bytes_total (int)
    send_progress = Signal(str, int, int)

    # Outgoing file finished
    # Args: name (str), success (bool), error (str)
    send_finished = Signal(str, bool, str)
