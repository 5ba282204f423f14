"""
User Configuration Management

Manages user-editable settings stored in a JSON file.
Settings can be changed without modifying code.
"""
import json
import logging
from pathlib import Path
from typing import Any, List, Optional
from dataclasses import dataclass, asdict, fields

from peerchat import config

logger = logging.getLogger(__name__)

# Default config file location
CONFIG_FILE = config.get_data_dir() / "config.json"

MAX_INTER_CHUNK_DELAY = 5.0  # seconds


@dataclass
class ChatConfig:
    """User configuration for peerchat"""

    # Network
    bind_address: str = config.BIND_ADDRESS
    port: int = config.PORT
    handshake_timeout: float = 0.0  # 0 = wait forever for the peer's reply
    connect_timeout: float = 10.0

    # File transfer
    chunk_size: int = config.DEFAULT_CHUNK_SIZE
    inter_chunk_delay: float = config.DEFAULT_INTER_CHUNK_DELAY
    download_dir: str = ""  # empty = ~/Downloads/peerchat

    # Behavior
    auto_discovery: bool = True
    display_name: str = "Yo"
    peer_display_name: str = "Peer"

    @property
    def download_path(self) -> Path:
        if self.download_dir:
            return Path(self.download_dir).expanduser()
        return config.get_download_dir()

    @property
    def handshake_timeout_or_none(self) -> Optional[float]:
        return self.handshake_timeout or None

    def validate(self) -> List[str]:
        """Return a list of problems; empty if the config is usable"""
        errors = []

        if not isinstance(self.port, int) or not 0 <= self.port <= 65535:
            errors.append(f"port must be between 0 and 65535 (got {self.port!r})")
        if not isinstance(self.chunk_size, int) or self.chunk_size <= 0:
            errors.append(f"chunk_size must be a positive integer (got {self.chunk_size!r})")
        elif self.chunk_size > config.MAX_MESSAGE_SIZE // 2:
            errors.append("chunk_size is too large: base64 chunks would exceed the message limit")
        if not isinstance(self.inter_chunk_delay, (int, float)) or self.inter_chunk_delay < 0:
            errors.append(f"inter_chunk_delay cannot be negative (got {self.inter_chunk_delay!r})")
        elif self.inter_chunk_delay > MAX_INTER_CHUNK_DELAY:
            errors.append(f"inter_chunk_delay must be at most {MAX_INTER_CHUNK_DELAY}s")
        if not isinstance(self.handshake_timeout, (int, float)) or self.handshake_timeout < 0:
            errors.append(f"handshake_timeout cannot be negative (got {self.handshake_timeout!r})")
        if not isinstance(self.connect_timeout, (int, float)) or self.connect_timeout <= 0:
            errors.append(f"connect_timeout must be positive (got {self.connect_timeout!r})")
        if not isinstance(self.bind_address, str) or not self.bind_address:
            errors.append("bind_address cannot be empty")

        return errors

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'ChatConfig':
        """Create config from dict, using defaults for missing keys"""
        defaults = cls()
        for key, value in data.items():
            if hasattr(defaults, key) and not isinstance(getattr(cls, key, None), property):
                setattr(defaults, key, value)
        return defaults


def coerce_value(key: str, value: str) -> Any:
    """Convert a command-line string to the type of the config field"""
    field_types = {f.name: f.type for f in fields(ChatConfig)}
    if key not in field_types:
        raise KeyError(key)

    field_type = field_types[key]
    if field_type in (bool, 'bool'):
        lowered = value.strip().lower()
        if lowered in ('1', 'true', 'yes', 'on', 'si'):
            return True
        if lowered in ('0', 'false', 'no', 'off'):
            return False
        raise ValueError(f"Not a boolean: {value!r}")
    if field_type in (int, 'int'):
        return int(value)
    if field_type in (float, 'float'):
        return float(value)
    return value


class ConfigManager:
    """Manages loading, saving, and accessing user configuration"""

    _instance: Optional['ConfigManager'] = None
    _config: Optional[ChatConfig] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._config is None:
            self.load()

    def load(self, config_path: Path = None) -> ChatConfig:
        """Load configuration from file"""
        path = config_path or CONFIG_FILE

        if path.exists():
            try:
                with open(path, 'r') as f:
                    data = json.load(f)
                loaded = ChatConfig.from_dict(data)
                errors = loaded.validate()
                if errors:
                    logger.warning(f"Invalid config in {path}: {'; '.join(errors)}, using defaults")
                    loaded = ChatConfig()
                self._config = loaded
                logger.info(f"Loaded config from {path}")
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to load config: {e}, using defaults")
                self._config = ChatConfig()
        else:
            logger.info("No config file found, using defaults")
            self._config = ChatConfig()
            # Save defaults
            self.save(path)

        return self._config

    def save(self, config_path: Path = None) -> bool:
        """Save configuration to file"""
        path = config_path or CONFIG_FILE

        try:
            with open(path, 'w') as f:
                json.dump(self._config.to_dict(), f, indent=2)
            logger.info(f"Saved config to {path}")
            return True
        except OSError as e:
            logger.error(f"Failed to save config: {e}")
            return False

    def get(self) -> ChatConfig:
        """Get current configuration"""
        if self._config is None:
            self.load()
        return self._config

    def set(self, key: str, value: Any, config_path: Path = None) -> bool:
        """Set a configuration value (rejected if it makes the config invalid)"""
        if key not in {f.name for f in fields(ChatConfig)}:
            logger.error(f"Unknown config key: {key}")
            return False

        old_value = getattr(self._config, key)
        setattr(self._config, key, value)
        errors = self._config.validate()
        if errors:
            setattr(self._config, key, old_value)
            logger.error(f"Invalid value for {key}: {'; '.join(errors)}")
            return False

        return self.save(config_path)

    def reset(self, config_path: Path = None) -> ChatConfig:
        """Reset to default configuration"""
        self._config = ChatConfig()
        self.save(config_path)
        return self._config


def get_config() -> ChatConfig:
    """Get the current user configuration"""
    return ConfigManager().get()


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance"""
    return ConfigManager()


def print_config():
    """Print current configuration in a readable format"""
    cfg = get_config()

    print("\n" + "=" * 50)
    print("  peerchat - Configuration")
    print("=" * 50)

    print("\n  Network:")
    print(f"    Bind Address:      {cfg.bind_address}")
    print(f"    Port:              {cfg.port}")
    print(f"    Handshake Timeout: {cfg.handshake_timeout or 'none'}")
    print(f"    Connect Timeout:   {cfg.connect_timeout}s")
    print(f"    Auto-Discovery:    {'ON' if cfg.auto_discovery else 'OFF'}")

    print("\n  File Transfer:")
    print(f"    Chunk Size:        {cfg.chunk_size} bytes")
    print(f"    Inter-chunk Delay: {cfg.inter_chunk_delay}s")
    print(f"    Download Dir:      {cfg.download_path}")

    print("\n  Display:")
    print(f"    Your Name:         {cfg.display_name}")
    print(f"    Peer Name:         {cfg.peer_display_name}")

    print(f"\n  Config File: {CONFIG_FILE}")
    print("=" * 50 + "\n")
