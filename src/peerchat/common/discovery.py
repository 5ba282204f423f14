"""
Peer discovery using mDNS/Zeroconf (Bonjour)

A listening peer advertises itself on the LAN; a connecting peer can
browse for it instead of typing an address.
"""
import os
import socket
import logging
import threading
import time
from typing import Optional, Callable, Dict, Tuple
from zeroconf import ServiceBrowser, ServiceInfo, Zeroconf, ServiceStateChange

from peerchat import config

logger = logging.getLogger(__name__)

# Peer cache TTL in seconds
PEER_CACHE_TTL = 60.0


def parse_peer_address(value: str, default_port: int = config.PORT) -> Tuple[str, int]:
    """
    Parse "IP" or "IP:PORT".

    Raises:
        ValueError: not a valid IPv4 address / port
    """
    if ':' in value:
        ip, port_str = value.rsplit(':', 1)
        port = int(port_str)
    else:
        ip = value
        port = default_port

    try:
        socket.inet_aton(ip)
    except OSError as e:
        raise ValueError(f"Invalid IP address: {ip!r}") from e
    if not 0 < port <= 65535:
        raise ValueError(f"Invalid port: {port}")
    return (ip, port)


class PeerDiscovery:
    """
    Handles peer discovery and advertisement using mDNS
    """

    def __init__(self, on_peer_found: Optional[Callable[[str, int], None]] = None,
                 on_peer_lost: Optional[Callable[[str], None]] = None):
        """
        Initialize peer discovery

        Args:
            on_peer_found: Callback when a peer is discovered (ip, port)
            on_peer_lost: Callback when a peer disappears (name)
        """
        self.zeroconf: Optional[Zeroconf] = None
        self.browser: Optional[ServiceBrowser] = None
        self.service_info: Optional[ServiceInfo] = None
        self.on_peer_found = on_peer_found
        self.on_peer_lost = on_peer_lost
        self.discovered_peers: Dict[str, tuple] = {}  # name -> (ip, port)
        self._peer_timestamps: Dict[str, float] = {}  # name -> discovery time (for TTL)
        self._lock = threading.Lock()
        self._peer_found_event = threading.Event()

    def _get_local_ip(self) -> str:
        """Get the local IP address"""
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            # Doesn't actually connect, just determines the local interface
            s.connect(('8.8.8.8', 80))
            return s.getsockname()[0]
        except OSError:
            return '127.0.0.1'
        finally:
            s.close()

    def _ensure_zeroconf(self) -> Zeroconf:
        if self.zeroconf is None:
            self.zeroconf = Zeroconf()
        return self.zeroconf

    def _on_service_state_change(self, zeroconf: Zeroconf, service_type: str,
                                 name: str, state_change: ServiceStateChange):
        """Handle service state changes"""
        if state_change == ServiceStateChange.Added:
            info = zeroconf.get_service_info(service_type, name)
            if info:
                self._handle_service_found(name, info)
        elif state_change == ServiceStateChange.Removed:
            self._handle_service_lost(name)

    def _handle_service_found(self, name: str, info: ServiceInfo):
        """Handle a discovered peer"""
        if not info.addresses:
            return

        ip = socket.inet_ntoa(info.addresses[0])
        port = info.port

        # Skip our own advertisement
        if self.service_info is not None and name == self.service_info.name:
            return

        with self._lock:
            is_new = name not in self.discovered_peers
            self.discovered_peers[name] = (ip, port)
            self._peer_timestamps[name] = time.time()

        if is_new:
            logger.info(f"Discovered peer: {name} at {ip}:{port}")
            self._peer_found_event.set()
            if self.on_peer_found:
                self.on_peer_found(ip, port)

    def _handle_service_lost(self, name: str):
        """Handle a lost peer"""
        with self._lock:
            if name not in self.discovered_peers:
                return
            del self.discovered_peers[name]
            self._peer_timestamps.pop(name, None)
        logger.info(f"Lost peer: {name}")

        if self.on_peer_lost:
            self.on_peer_lost(name)

    def advertise(self, port: int = config.PORT) -> bool:
        """
        Register this listener so connecting peers can find it.

        Returns:
            False if mDNS is unavailable (discovery is optional)
        """
        if self.service_info is not None:
            return True

        try:
            zc = self._ensure_zeroconf()
        except OSError as e:
            logger.warning(f"Cannot start mDNS: {e}")
            return False

        local_ip = self._get_local_ip()
        hostname = socket.gethostname()
        service_name = f"peerchat-{hostname}.{config.SERVICE_NAME}"

        self.service_info = ServiceInfo(
            config.SERVICE_NAME,
            service_name,
            addresses=[socket.inet_aton(local_ip)],
            port=port,
            properties={'host': hostname},
        )

        try:
            zc.register_service(self.service_info)
            logger.info(f"Registered service: {service_name} at {local_ip}:{port}")
        except Exception as e:
            logger.error(f"Failed to register service: {e}")
            self.service_info = None
            return False
        return True

    def browse(self) -> bool:
        """Start looking for advertised listeners. False if mDNS is unavailable."""
        if self.browser is not None:
            return True

        try:
            self.browser = ServiceBrowser(
                self._ensure_zeroconf(),
                config.SERVICE_NAME,
                handlers=[self._on_service_state_change]
            )
        except OSError as e:
            logger.warning(f"Cannot start mDNS: {e}")
            return False
        logger.info("Peer discovery started")
        return True

    def stop(self):
        """Stop advertising and browsing"""
        if self.zeroconf is None:
            return

        if self.service_info:
            try:
                self.zeroconf.unregister_service(self.service_info)
            except Exception as e:
                logger.debug(f"Failed to unregister service: {e}")
            self.service_info = None

        if self.browser:
            self.browser.cancel()
            self.browser = None

        self.zeroconf.close()
        self.zeroconf = None
        logger.info("Peer discovery stopped")

    def get_peers(self) -> Dict[str, tuple]:
        """Get currently discovered peers (with cache cleanup)"""
        self._cleanup_stale_peers()
        with self._lock:
            return dict(self.discovered_peers)

    def _cleanup_stale_peers(self):
        """Remove peers that haven't been seen recently"""
        now = time.time()
        with self._lock:
            stale = [
                name for name, ts in self._peer_timestamps.items()
                if now - ts > PEER_CACHE_TTL
            ]
            for name in stale:
                self.discovered_peers.pop(name, None)
                del self._peer_timestamps[name]
                logger.debug(f"Expired stale peer: {name}")

    def get_first_peer(self, timeout: float = 5.0) -> Optional[Tuple[str, int]]:
        """
        Get the first discovered peer (ip, port).

        The PEERCHAT_PEER environment variable (IP or IP:PORT) takes
        precedence over mDNS.

        Args:
            timeout: Maximum seconds to wait for a peer. 0 = don't wait.
        """
        manual_peer = get_manual_peer()
        if manual_peer:
            return manual_peer

        if not self.browse():
            return None
        self._cleanup_stale_peers()

        with self._lock:
            if self.discovered_peers:
                return list(self.discovered_peers.values())[0]

        if timeout <= 0:
            return None

        self._peer_found_event.clear()
        if self._peer_found_event.wait(timeout=timeout):
            with self._lock:
                if self.discovered_peers:
                    return list(self.discovered_peers.values())[0]

        logger.debug(f"No peer found within {timeout}s timeout")
        return None


def get_manual_peer() -> Optional[Tuple[str, int]]:
    """Peer from the PEERCHAT_PEER environment variable, if set and valid"""
    value = os.environ.get(config.PEER_ENV_VAR)
    if not value:
        return None

    try:
        peer = parse_peer_address(value)
    except ValueError as e:
        logger.warning(f"Invalid {config.PEER_ENV_VAR} value '{value}': {e}")
        return None

    logger.info(f"Using manual peer from {config.PEER_ENV_VAR}: {peer[0]}:{peer[1]}")
    return peer
