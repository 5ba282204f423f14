"""
Unit tests for agent.py - Text and files between two agents
"""
import pytest
import base64
import struct
import threading

from peerchat.agent import ChatAgent
from peerchat.common import discovery
from peerchat.common.errors import ChannelIOError, InvalidArgument, TransferCancelled, TruncatedMessage
from peerchat.common.framing import encode_frame
from peerchat.common.user_config import ChatConfig


class AgentEvents:
    """Collects agent callbacks and lets tests wait on them"""

    def __init__(self):
        self.texts = []
        self.files = []
        self.failures = []
        self.progress = []
        self.disconnected = []
        self.errors = []
        self.got_text = threading.Event()
        self.got_file = threading.Event()
        self.got_failure = threading.Event()
        self.got_disconnect = threading.Event()
        self.got_error = threading.Event()

    def on_text(self, text):
        self.texts.append(text)
        self.got_text.set()

    def on_file(self, path):
        self.files.append(path)
        self.got_file.set()

    def on_failed(self, name, reason):
        self.failures.append((name, reason))
        self.got_failure.set()

    def on_progress(self, name, done, total):
        self.progress.append((name, done, total))

    def on_disconnected(self, state):
        self.disconnected.append(state)
        self.got_disconnect.set()

    def on_error(self, exc):
        self.errors.append(exc)
        self.got_error.set()


def make_agent(download_dir, events: AgentEvents, **overrides) -> ChatAgent:
    settings = dict(
        bind_address="127.0.0.1",
        download_dir=str(download_dir),
        inter_chunk_delay=0,
        auto_discovery=False
    )
    settings.update(overrides)
    cfg = ChatConfig(**settings)
    return ChatAgent(
        cfg,
        on_text_received=events.on_text,
        on_file_received=events.on_file,
        on_file_failed=events.on_failed,
        on_transfer_progress=events.on_progress,
        on_disconnected=events.on_disconnected,
        on_error=events.on_error
    )


@pytest.fixture
def agent_pair(socket_pair, temp_dir):
    """Two agents attached to either end of a socketpair"""
    a, b = socket_pair
    events_a, events_b = AgentEvents(), AgentEvents()
    agent_a = make_agent(temp_dir / "a", events_a)
    agent_b = make_agent(temp_dir / "b", events_b)

    agent_a.open_session(a, agent_a.handle_message)
    agent_b.open_session(b, agent_b.handle_message)

    yield (agent_a, events_a), (agent_b, events_b)

    agent_a.close()
    agent_b.close()


class TestTextAndFiles:
    """Tests for an attached pair of agents"""

    def test_text(self, agent_pair):
        (agent_a, _), (_, events_b) = agent_pair

        agent_a.send_text("hola")

        assert events_b.got_text.wait(5)
        assert events_b.texts == ["hola"]

    def test_file(self, agent_pair, sample_file, temp_dir):
        (agent_a, _), (_, events_b) = agent_pair

        chunks = agent_a.send_file(sample_file)

        assert chunks == 3
        assert events_b.got_file.wait(5)
        received = events_b.files[0]
        assert received.parent == temp_dir / "b"
        assert received.name == "report.bin"
        assert received.read_bytes() == sample_file.read_bytes()

        assert events_b.progress[0] == ("report.bin", 0, 20480)
        assert events_b.progress[-1] == ("report.bin", 20480, 20480)

    def test_text_after_file(self, agent_pair, sample_file):
        (agent_a, _), (_, events_b) = agent_pair

        agent_a.send_file(sample_file)
        agent_a.send_text("did you get it?")

        assert events_b.got_file.wait(5)
        assert events_b.got_text.wait(5)
        assert events_b.texts == ["did you get it?"]

    def test_empty_file(self, agent_pair, temp_dir):
        (agent_a, _), (_, events_b) = agent_pair
        empty = temp_dir / "empty.txt"
        empty.write_bytes(b"")

        assert agent_a.send_file(empty) == 0

        assert events_b.got_file.wait(5)
        assert events_b.files[0].read_bytes() == b""

    def test_peer_close_is_reported(self, agent_pair):
        (agent_a, _), (agent_b, events_b) = agent_pair

        agent_a.close()

        assert events_b.got_disconnect.wait(5)
        assert not agent_b.is_connected

    def test_send_error_leaves_inbound_file_alone(self, agent_pair):
        (agent_a, events_a), (agent_b, _) = agent_pair
        agent_a.handle_message("FILE|in.bin|10")

        agent_b.close()
        assert events_a.got_disconnect.wait(5)

        with pytest.raises(ChannelIOError):
            agent_a.send_text("anyone there?")

        assert events_a.failures == []
        assert events_a.texts == []


@pytest.fixture
def big_file(temp_dir):
    path = temp_dir / "big.bin"
    path.write_bytes(bytes(range(256)) * 200)  # 51200 bytes
    return path


@pytest.fixture
def slow_pair(socket_pair, temp_dir):
    """Agent pair whose sender pauses between file chunks"""
    a, b = socket_pair
    events_a, events_b = AgentEvents(), AgentEvents()
    agent_a = make_agent(temp_dir / "a", events_a, inter_chunk_delay=0.05)
    agent_b = make_agent(temp_dir / "b", events_b)

    agent_a.open_session(a, agent_a.handle_message)
    agent_b.open_session(b, agent_b.handle_message)

    yield (agent_a, events_a), (agent_b, events_b)

    agent_a.close()
    agent_b.close()


class TestOutboundOrder:
    """Tests for text sent while a file is going out"""

    def test_text_waits_for_file(self, slow_pair, big_file):
        (agent_a, _), (_, events_b) = slow_pair
        first_chunk_out = threading.Event()
        result = {}

        def upload():
            result["chunks"] = agent_a.send_file(
                big_file,
                on_progress=lambda sent, total: first_chunk_out.set()
            )

        thread = threading.Thread(target=upload, daemon=True)
        thread.start()
        assert first_chunk_out.wait(5)
        assert agent_a.is_sending_file

        agent_a.send_text("hello there")

        assert not agent_a.is_sending_file
        thread.join(timeout=5)
        assert result["chunks"] == 7

        assert events_b.got_file.wait(5)
        assert events_b.got_text.wait(5)
        assert events_b.files[0].read_bytes() == big_file.read_bytes()
        assert events_b.texts == ["hello there"]
        assert events_b.failures == []

    def test_not_sending_when_idle(self, slow_pair, sample_file):
        (agent_a, _), (_, events_b) = slow_pair

        assert not agent_a.is_sending_file
        agent_a.send_file(sample_file)
        assert not agent_a.is_sending_file
        assert events_b.got_file.wait(5)

    def test_file_after_cancelled_file(self, slow_pair, big_file, sample_file):
        (agent_a, _), (_, events_b) = slow_pair

        with pytest.raises(TransferCancelled):
            agent_a.send_file(big_file, on_progress=lambda sent, total: agent_a.cancel_transfer())

        assert agent_a.send_file(sample_file) == 3

        assert events_b.got_file.wait(5)
        assert events_b.files[0].name == "report.bin"
        assert events_b.files[0].read_bytes() == sample_file.read_bytes()
        assert [name for name, _ in events_b.failures] == ["big.bin"]


class TestReceiveFault:
    """Tests for a connection that breaks inside a frame"""

    def test_truncated_frame_fails_inbound_file(self, socket_pair, temp_dir):
        a, b = socket_pair
        events = AgentEvents()
        agent = make_agent(temp_dir, events)
        agent.open_session(b, agent.handle_message)

        try:
            a.sendall(
                encode_frame(b"FILE|x.bin|100")
                + encode_frame(base64.b64encode(b"0123456789"))
                + struct.pack('<I', 50) + b"ab"
            )
            a.close()

            assert events.got_error.wait(5)
        finally:
            agent.close()

        assert events.failures == [("x.bin", "Stream ended after 2 of 50 bytes")]
        assert events.progress[-1] == ("x.bin", 10, 100)
        assert events.texts == []
        assert len(events.errors) == 1
        assert isinstance(events.errors[0], TruncatedMessage)

    def test_truncated_frame_between_messages(self, socket_pair, temp_dir):
        a, b = socket_pair
        events = AgentEvents()
        agent = make_agent(temp_dir, events)
        agent.open_session(b, agent.handle_message)

        try:
            a.sendall(encode_frame(b"hola") + struct.pack('<I', 8) + b"x")
            a.close()

            assert events.got_error.wait(5)
        finally:
            agent.close()

        assert events.texts == ["hola"]
        assert events.failures == []
        assert isinstance(events.errors[0], TruncatedMessage)

    def test_text_like_fault_from_peer_is_chat(self, temp_dir):
        events = AgentEvents()
        agent = make_agent(temp_dir, events)

        agent.handle_message("Error: Stream ended after 2 of 50 bytes")

        assert events.texts == ["Error: Stream ended after 2 of 50 bytes"]
        assert events.errors == []


class TestHandleMessage:
    """Tests for decoding the inbound feed without a connection"""

    def test_close_fails_partial_file(self, temp_dir):
        events = AgentEvents()
        agent = make_agent(temp_dir, events)

        agent.handle_message("FILE|half.bin|100")
        agent.handle_message(base64.b64encode(b"x" * 10).decode('ascii'))
        agent.close()

        assert events.failures == [("half.bin", "Connection closed")]

    def test_close_session_leaves_decoder_to_finish(self, temp_dir):
        events = AgentEvents()
        agent = make_agent(temp_dir, events)

        agent.handle_message("FILE|half.bin|100")
        agent.close_session()
        assert events.failures == []

        agent.finish()
        assert events.failures == [("half.bin", "Connection closed")]

        agent.finish()
        assert len(events.failures) == 1

    def test_save_failure_reported(self, temp_dir):
        blocker = temp_dir / "not_a_dir"
        blocker.write_text("occupied")
        events = AgentEvents()
        agent = make_agent(blocker, events)

        agent.handle_message("FILE|a.txt|0")

        assert events.files == []
        assert len(events.failures) == 1
        assert events.failures[0][0] == "a.txt"

    def test_not_connected(self, temp_dir, sample_file):
        agent = make_agent(temp_dir, AgentEvents())

        assert not agent.is_connected
        with pytest.raises(InvalidArgument):
            agent.send_text("hello")
        with pytest.raises(InvalidArgument):
            agent.send_file(sample_file)


class TestListenAndConnect:
    """Tests for negotiating a session between two agents"""

    def test_listen_and_connect(self, temp_dir):
        events_server, events_client = AgentEvents(), AgentEvents()
        server = make_agent(temp_dir / "server", events_server)
        client = make_agent(temp_dir / "client", events_client)

        bound = {}
        listening = threading.Event()
        result = {}

        def on_listening(host, port):
            bound["port"] = port
            listening.set()

        def run_server():
            result["session"] = server.listen(
                server.handle_message,
                lambda rejection: False,
                port=0,
                on_listening=on_listening
            )

        thread = threading.Thread(target=run_server, daemon=True)
        thread.start()
        assert listening.wait(5)

        try:
            session = client.connect('127.0.0.1', bound["port"], lambda prompt: True, client.handle_message)
            assert session is not None

            thread.join(timeout=5)
            assert result["session"] is not None
            assert server.is_connected

            client.send_text("hola servidor")
            assert events_server.got_text.wait(5)
            server.send_text("hola cliente")
            assert events_client.got_text.wait(5)
        finally:
            client.close()
            server.close()

        assert events_server.texts == ["hola servidor"]
        assert events_client.texts == ["hola cliente"]

    def test_listen_aborted(self, temp_dir):
        server = make_agent(temp_dir, AgentEvents())
        client = make_agent(temp_dir, AgentEvents())
        listening = threading.Event()
        bound = {}
        result = {}

        def on_listening(host, port):
            bound["port"] = port
            listening.set()

        def run_server():
            result["session"] = server.listen(
                server.handle_message,
                lambda rejection: False,
                port=0,
                on_listening=on_listening
            )

        thread = threading.Thread(target=run_server, daemon=True)
        thread.start()
        assert listening.wait(5)

        assert client.connect('127.0.0.1', bound["port"], lambda prompt: False, client.handle_message) is None

        thread.join(timeout=5)
        assert result["session"] is None
        assert not server.is_connected

    def test_listen_without_mdns(self, temp_dir, monkeypatch):
        def no_multicast(*args, **kwargs):
            raise OSError("No multicast route")

        monkeypatch.setattr(discovery, "Zeroconf", no_multicast)
        events_server, events_client = AgentEvents(), AgentEvents()
        server = make_agent(temp_dir / "server", events_server, auto_discovery=True)
        client = make_agent(temp_dir / "client", events_client)
        listening = threading.Event()
        bound = {}
        result = {}

        def on_listening(host, port):
            bound["port"] = port
            listening.set()

        def run_server():
            result["session"] = server.listen(
                server.handle_message,
                lambda rejection: False,
                port=0,
                on_listening=on_listening
            )

        thread = threading.Thread(target=run_server, daemon=True)
        thread.start()
        assert listening.wait(5)

        try:
            assert client.connect('127.0.0.1', bound["port"], lambda prompt: True, client.handle_message) is not None
            thread.join(timeout=5)
            assert result["session"] is not None

            client.send_text("sin mdns")
            assert events_server.got_text.wait(5)
        finally:
            client.close()
            server.close()

        assert events_server.texts == ["sin mdns"]

    def test_close_stops_listening(self, temp_dir):
        server = make_agent(temp_dir, AgentEvents())
        listening = threading.Event()
        errors = []

        def run_server():
            try:
                server.listen(server.handle_message, lambda rejection: True, port=0,
                              on_listening=lambda host, port: listening.set())
            except Exception as e:
                errors.append(e)

        thread = threading.Thread(target=run_server, daemon=True)
        thread.start()
        assert listening.wait(5)

        server.close()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert len(errors) == 1
