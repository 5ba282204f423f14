"""
peerchat - Command-line Entry Point

Commands:
    peerchat listen                 Wait for a peer (asks to retry on rejection)
    peerchat connect [HOST]         Connect to a listening peer
    peerchat config                 Show/edit configuration
    peerchat gui                    Open the chat window

In a console chat session:
    /file PATH    send a file
    /quit         end the session
"""
import sys
import logging
import argparse
import threading
from pathlib import Path

from peerchat import config
from peerchat.agent import ChatAgent
from peerchat.common.discovery import parse_peer_address
from peerchat.common.errors import ChatError, HandshakeRejected, get_error_from_exception
from peerchat.common.file_transfer import format_bytes
from peerchat.common.negotiation import get_local_ips
from peerchat.common.session import QueueSink
from peerchat.common.user_config import (
    coerce_value, get_config, get_config_manager, print_config
)

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    """Log everything to the log file; only warnings to the console unless verbose"""
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)

    handlers = [console]
    try:
        handlers.append(logging.FileHandler(config.LOG_FILE))
    except OSError as e:
        print(f"Cannot open log file {config.LOG_FILE}: {e}", file=sys.stderr)

    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, config.LOG_LEVEL),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def ask_yes_no(question: str, default: bool = False) -> bool:
    """Prompt on the terminal; EOF counts as the default"""
    try:
        answer = input(question).strip().lower()
    except EOFError:
        return default
    if not answer:
        return default
    return answer in ('y', 'yes', 's', 'si', 'sí')


class ChatConsole:
    """
    Terminal front-end for one chat session.

    The session's receive loop only enqueues into a QueueSink; a
    dispatcher thread drains it through the agent and prints, while the
    main thread reads input lines.
    """

    def __init__(self):
        self.user_config = get_config()
        self.sink = QueueSink()
        self.agent = ChatAgent(
            self.user_config,
            on_text_received=self._on_text_received,
            on_file_received=self._on_file_received,
            on_file_failed=self._on_file_failed,
            on_transfer_progress=self._on_transfer_progress,
            on_disconnected=self._on_disconnected,
            on_error=self._on_error
        )
        self._dispatcher = threading.Thread(target=self._dispatch_loop, name="peerchat-dispatch", daemon=True)
        self._last_percent = -1

    # ----- feed -----

    def _dispatch_loop(self):
        for text in self.sink:
            try:
                self.agent.handle_message(text)
            except Exception as e:
                logger.error(f"Error handling message: {e}")

    def _on_text_received(self, text: str):
        print(f"\r{self.user_config.peer_display_name}: {text}")

    def _on_file_received(self, path: Path):
        print(f"\r[file] received {path.name} -> {path}")

    def _on_file_failed(self, name: str, reason: str):
        print(f"\r[file] {name} failed: {reason}")

    def _on_transfer_progress(self, name: str, done: int, total: int):
        percent = int(done * 100 / total) if total else 100
        if done == 0:
            self._last_percent = -1
            print(f"\r[file] receiving {name} ({format_bytes(total)})")
        elif percent // 25 != self._last_percent // 25:
            print(f"\r[file] {name}: {percent}%")
        self._last_percent = percent

    def _on_error(self, exc: Exception):
        print(f"\r[error] {get_error_from_exception(exc).message} ({exc})")

    def _on_disconnected(self, state):
        self.sink.close()
        print("\r[peer disconnected] press Enter to exit")

    # ----- session -----

    def run(self):
        """Read input lines until /quit, EOF or disconnect"""
        self._dispatcher.start()
        print(f"Connected to {self.agent.peer_name}. Type /file PATH to send a file, /quit to exit.")

        try:
            while self.agent.is_connected:
                try:
                    line = input()
                except EOFError:
                    break
                if not self.agent.is_connected:
                    break
                if not self._handle_line(line):
                    break
        except KeyboardInterrupt:
            print()
        finally:
            # The decoder belongs to the dispatcher until it has stopped
            self.agent.close_session()
            self.sink.close()
            self._dispatcher.join(timeout=2)
            self.agent.finish()

    def _handle_line(self, line: str) -> bool:
        """Returns False when the user wants to leave"""
        stripped = line.strip()
        if stripped == '/quit':
            return False

        if stripped.startswith('/file '):
            self._send_file(stripped[len('/file '):].strip())
            return True

        if not line:
            return True

        try:
            self.agent.send_text(line)
        except ChatError as e:
            print(get_error_from_exception(e))
            return self.agent.is_connected
        return True

    def _send_file(self, raw_path: str):
        path = Path(raw_path).expanduser()
        if not path.is_file():
            print(f"[file] not found: {path}")
            return

        def on_progress(sent: int, total: int):
            if sent == total:
                print(f"[file] sent {path.name} ({format_bytes(total)})")

        try:
            self.agent.send_file(path, on_progress=on_progress)
            if path.stat().st_size == 0:
                print(f"[file] sent {path.name} (empty)")
        except (ChatError, OSError) as e:
            print(get_error_from_exception(e))


# ========== Commands ==========

def cmd_listen(args):
    console = ChatConsole()
    cfg = console.user_config

    def on_listening(address: str, port: int):
        print(f"\n{'='*50}")
        print(f"  Waiting for a peer on port {port}")
        print(f"{'='*50}")
        print("\n  On the other machine, run:")
        for ip in (get_local_ips() if address == '0.0.0.0' else [address]):
            print(f"    peerchat connect {ip} --port {port}")
        print(f"\n{'='*50}\n")

    def decide_retry(rejection: HandshakeRejected) -> bool:
        return ask_yes_no("Connection rejected. Retry? [y/N] ")

    try:
        session = console.agent.listen(
            console.sink,
            decide_retry,
            address=args.bind or cfg.bind_address,
            port=args.port if args.port is not None else cfg.port,
            on_listening=on_listening
        )
    except KeyboardInterrupt:
        console.agent.close()
        return 1
    except ChatError as e:
        print(get_error_from_exception(e))
        logger.debug(f"Listen failed: {e}")
        return 1

    if session is None:
        print("Stopped listening.")
        return 1

    print("Connection accepted")
    console.run()
    return 0


def cmd_connect(args):
    console = ChatConsole()
    cfg = console.user_config
    port = args.port if args.port is not None else cfg.port

    if args.host:
        try:
            host, port = parse_peer_address(args.host, port)
        except ValueError as e:
            print(f"Invalid address: {e}")
            return 1
    else:
        print("Looking for peers on the network...")
        peer = console.agent.find_peer(timeout=args.discover_timeout)
        if not peer:
            print("No peer found. Pass the address: peerchat connect <IP>")
            return 1
        host, port = peer

    def confirm(prompt: str) -> bool:
        if args.yes:
            return True
        return ask_yes_no(f"{host}: {prompt} [si/no] ")

    try:
        session = console.agent.connect(host, port, confirm, console.sink)
    except ChatError as e:
        print(get_error_from_exception(e))
        logger.debug(f"Connect failed: {e}")
        return 1

    if session is None:
        print("Connection declined.")
        return 1

    console.run()
    return 0


def cmd_config(args):
    manager = get_config_manager()

    if args.reset:
        manager.reset()
        print("Configuration reset to defaults.")
    elif args.set:
        key, raw_value = args.set
        try:
            value = coerce_value(key, raw_value)
        except KeyError:
            print(f"Unknown config key: {key}")
            return 1
        except ValueError as e:
            print(f"Invalid value for {key}: {e}")
            return 1
        if not manager.set(key, value):
            print(f"Could not set {key}; see the log for details.")
            return 1
        print(f"Set {key} = {value!r}")

    print_config()
    return 0


def cmd_gui(args):
    try:
        from peerchat.ui import ChatApp
    except ImportError as e:
        print(f"The chat window needs PySide6 (pip install 'peerchat[gui]'): {e}")
        return 1
    return ChatApp().start()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog='peerchat',
        description='Peer-to-peer chat with file transfer',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose logging')
    subparsers = parser.add_subparsers(dest='command')

    listen_parser = subparsers.add_parser('listen', help='Wait for a peer to connect')
    listen_parser.add_argument('--bind', type=str, help='Address to listen on (default from config)')
    listen_parser.add_argument('--port', type=int, help=f'Port (default: {config.PORT})')

    connect_parser = subparsers.add_parser('connect', help='Connect to a listening peer')
    connect_parser.add_argument('host', nargs='?', help='IP or IP:PORT of the peer (omit to discover)')
    connect_parser.add_argument('--port', type=int, help=f'Port (default: {config.PORT})')
    connect_parser.add_argument('-y', '--yes', action='store_true', help='Accept the connection prompt automatically')
    connect_parser.add_argument('--discover-timeout', type=float, default=5.0,
                                help='Seconds to look for a peer when no host is given (default: 5)')

    config_parser = subparsers.add_parser('config', help='Show or edit configuration')
    config_parser.add_argument('--show', action='store_true', help='Show current configuration')
    config_parser.add_argument('--reset', action='store_true', help='Reset to default configuration')
    config_parser.add_argument('--set', nargs=2, metavar=('KEY', 'VALUE'), help='Set a configuration value')

    subparsers.add_parser('gui', help='Open the chat window')

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    commands = {
        'listen': cmd_listen,
        'connect': cmd_connect,
        'config': cmd_config,
        'gui': cmd_gui,
    }
    if args.command is None:
        parser.print_help()
        return 0
    return commands[args.command](args)


if __name__ == '__main__':
    sys.exit(main())
