"""
Configuration for peerchat
"""
import os
import sys
import tempfile
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

# Network Settings
PORT = 1900
BIND_ADDRESS = "0.0.0.0"
MAX_MESSAGE_SIZE = 64 * 1024 * 1024  # Largest frame payload we will allocate

# Handshake (unframed, precedes the framed chat protocol)
HANDSHAKE_PROMPT = "¿Aceptar conexión?"
ACCEPT_TOKEN = "si"
REJECT_TOKEN = "no"
HANDSHAKE_BUFFER_SIZE = 256

# File transfer
DEFAULT_CHUNK_SIZE = 8192  # bytes of file data per chunk message (before base64)
DEFAULT_INTER_CHUNK_DELAY = 0.01  # seconds between chunk messages
FILE_CONTROL_PREFIX = "FILE"
FILE_CONTROL_SEPARATOR = "|"

# Peer Discovery
SERVICE_NAME = "_peerchat._tcp.local."
PEER_ENV_VAR = "PEERCHAT_PEER"

# Paths
TEMP_DIR = Path(tempfile.gettempdir()) / 'peerchat'
TEMP_DIR.mkdir(parents=True, exist_ok=True)

# Logging
LOG_LEVEL = "INFO"
LOG_FILE = TEMP_DIR / "peerchat.log"


def get_data_dir() -> Path:
    """Platform-specific directory for user data (config.json)."""
    if sys.platform == 'win32':
        base = Path(os.environ.get('LOCALAPPDATA', Path.home() / 'AppData' / 'Local'))
    elif sys.platform == 'darwin':
        base = Path.home() / 'Library' / 'Application Support'
    else:
        base = Path(os.environ.get('XDG_CONFIG_HOME', Path.home() / '.config'))
    d = base / 'peerchat'
    d.mkdir(parents=True, exist_ok=True)
    return d


def get_download_dir() -> Path:
    """Default directory for files received from the peer"""
    d = Path.home() / 'Downloads' / 'peerchat'
    try:
        d.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.debug(f"Cannot create {d}: {e}, falling back to temp dir")
        d = TEMP_DIR / 'received'
        d.mkdir(parents=True, exist_ok=True)
    return d
