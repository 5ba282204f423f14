"""
Unit tests for main.py - Command line and console input handling
"""
import pytest

from peerchat import main as cli
from peerchat.common import user_config
from peerchat.common.errors import TruncatedMessage
from peerchat.common.session import fault_text
from peerchat.common.user_config import ConfigManager


@pytest.fixture(autouse=True)
def isolated_config(temp_dir, monkeypatch):
    config_path = temp_dir / "config.json"
    monkeypatch.setattr(user_config, "CONFIG_FILE", config_path)
    monkeypatch.setattr(ConfigManager, "_instance", None)
    monkeypatch.setattr(ConfigManager, "_config", None)
    return config_path


class FakeAgent:
    """Records what the console asks the agent to do"""

    def __init__(self):
        self.texts = []
        self.files = []
        self.is_connected = True
        self.peer_name = "127.0.0.1:1900"
        self.calls = []
        self.dispatcher = None
        self.dispatcher_alive_at_finish = None

    def close_session(self):
        self.calls.append("close_session")

    def finish(self):
        self.calls.append("finish")
        self.dispatcher_alive_at_finish = self.dispatcher.is_alive()

    def send_text(self, text):
        self.texts.append(text)

    def send_file(self, path, on_progress=None):
        self.files.append(path)
        return 1


class TestMain:
    """Tests for argument handling"""

    def test_no_command_prints_help(self, capsys):
        assert cli.main([]) == 0
        assert "listen" in capsys.readouterr().out

    def test_config_show(self, capsys):
        assert cli.main(["config", "--show"]) == 0
        assert "Port:" in capsys.readouterr().out

    def test_config_set(self):
        assert cli.main(["config", "--set", "port", "2345"]) == 0
        assert ConfigManager().get().port == 2345

    def test_config_set_unknown_key(self, capsys):
        assert cli.main(["config", "--set", "colour", "blue"]) == 1
        assert "Unknown config key" in capsys.readouterr().out

    def test_config_set_invalid_value(self):
        assert cli.main(["config", "--set", "chunk_size", "0"]) == 1

    def test_connect_invalid_address(self, capsys):
        assert cli.main(["connect", "not-an-ip"]) == 1
        assert "Invalid address" in capsys.readouterr().out


class TestAskYesNo:
    """Tests for terminal confirmation"""

    @pytest.mark.parametrize("answer,expected", [
        ("si", True), ("y", True), ("YES", True), ("no", False), ("", False)
    ])
    def test_answers(self, monkeypatch, answer, expected):
        monkeypatch.setattr("builtins.input", lambda prompt: answer)
        assert cli.ask_yes_no("? ") is expected

    def test_eof_is_default(self, monkeypatch):
        def raise_eof(prompt):
            raise EOFError()

        monkeypatch.setattr("builtins.input", raise_eof)
        assert cli.ask_yes_no("? ", default=True) is True


class TestConsoleInput:
    """Tests for ChatConsole._handle_line"""

    @pytest.fixture
    def console(self):
        console = cli.ChatConsole()
        console.agent = FakeAgent()
        return console

    def test_text_is_sent(self, console):
        assert console._handle_line("hola") is True
        assert console.agent.texts == ["hola"]

    def test_empty_line_ignored(self, console):
        assert console._handle_line("") is True
        assert console.agent.texts == []

    def test_quit(self, console):
        assert console._handle_line("/quit") is False

    def test_file_command(self, console, sample_file):
        assert console._handle_line(f"/file {sample_file}") is True
        assert console.agent.files == [sample_file]
        assert console.agent.texts == []

    def test_file_command_missing_file(self, console, temp_dir, capsys):
        assert console._handle_line(f"/file {temp_dir / 'nope.txt'}") is True
        assert console.agent.files == []
        assert "not found" in capsys.readouterr().out


class TestConsoleSession:
    """Tests for ChatConsole output and teardown"""

    def test_teardown_waits_for_dispatcher(self):
        console = cli.ChatConsole()
        agent = FakeAgent()
        agent.is_connected = False
        agent.dispatcher = console._dispatcher
        console.agent = agent

        console.run()

        assert agent.calls == ["close_session", "finish"]
        assert agent.dispatcher_alive_at_finish is False

    def test_receive_fault_printed_as_error(self, capsys):
        console = cli.ChatConsole()
        exc = TruncatedMessage(50, 2)

        console.agent._on_session_error(exc)
        console.agent.handle_message(fault_text(exc))

        out = capsys.readouterr().out
        assert "[error]" in out
        assert "Stream ended after 2 of 50 bytes" in out
        assert "Peer:" not in out

    def test_peer_text_printed_with_name(self, capsys):
        console = cli.ChatConsole()

        console.agent.handle_message("Error: just kidding")

        assert "Peer: Error: just kidding" in capsys.readouterr().out
