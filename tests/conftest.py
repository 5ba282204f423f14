"""
Global test fixtures for peerchat tests
"""
import pytest
import socket
import tempfile
import shutil
import threading
from pathlib import Path
from typing import Generator, List, Tuple

from peerchat.common.framing import FramedChannel


class MessageCollector:
    """Thread-safe on_message callback that records what it is given"""

    def __init__(self):
        self.messages: List[str] = []
        self._cond = threading.Condition()

    def __call__(self, text: str):
        with self._cond:
            self.messages.append(text)
            self._cond.notify_all()

    def wait_for(self, count: int, timeout: float = 5.0) -> bool:
        """Wait until at least count messages have arrived"""
        with self._cond:
            return self._cond.wait_for(lambda: len(self.messages) >= count, timeout)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files"""
    path = Path(tempfile.mkdtemp(prefix="peerchat_test_"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def socket_pair() -> Generator[Tuple[socket.socket, socket.socket], None, None]:
    """Two connected stream sockets"""
    a, b = socket.socketpair()
    yield a, b
    for s in (a, b):
        try:
            s.close()
        except OSError:
            pass


@pytest.fixture
def channel_pair(socket_pair) -> Generator[Tuple[FramedChannel, FramedChannel], None, None]:
    """Two FramedChannels talking to each other"""
    a, b = socket_pair
    left, right = FramedChannel(a), FramedChannel(b)
    yield left, right
    left.close()
    right.close()


@pytest.fixture
def collector() -> MessageCollector:
    return MessageCollector()


@pytest.fixture
def sample_text() -> str:
    """Sample chat text"""
    return "Hello, this is a peer-to-peer chat message!"


@pytest.fixture
def unicode_text() -> str:
    """Chat text with multi-byte characters"""
    return "¿Aceptar conexión? ñandú 日本語 🚀"


@pytest.fixture
def sample_file(temp_dir: Path) -> Path:
    """Create a sample binary file for transfer testing"""
    file_path = temp_dir / "report.bin"
    file_path.write_bytes(bytes(range(256)) * 80)  # 20480 bytes
    return file_path
