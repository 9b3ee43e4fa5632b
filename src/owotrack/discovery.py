"""
Discovery responder announcing the data port on the local network.

The sensor app broadcasts the text "DISCOVERY" to a fixed well-known port and
expects "<data_port>:Default\\n" back from every host willing to receive data.
"""

import logging
import socket
import threading
from dataclasses import dataclass
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

INFO_PORT = 35903
DISCOVERY_REQUEST = "DISCOVERY"
POLL_INTERVAL_SECONDS = 0.1
MAX_DATAGRAM_SIZE = 1024


@dataclass
class DiscoveryConfig:
    """Ports announced by the responder."""
    info_port: int = INFO_PORT
    data_port: int = 6969
    host: str = "0.0.0.0"


def build_reply(data_port: int) -> bytes:
    return f"{data_port}:Default\n".encode("utf-8")


def is_discovery_request(payload: bytes) -> bool:
    """True if `payload` is the discovery probe after trimming trailing NUL/CR/LF."""
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError:
        return False
    return text.rstrip("\0\r\n") == DISCOVERY_REQUEST


class DiscoveryResponder:
    """
    Background UDP listener answering discovery probes.

    A socket error ends the listener loop for good; the owner sees it through
    `failed` / `last_error` and recovers with `restart()`.

    Usage:
        responder = DiscoveryResponder(DiscoveryConfig(data_port=6969))
        responder.start()
        # ... later, data port moved ...
        responder.restart(6970)
        responder.stop()
    """

    def __init__(self, config: Optional[DiscoveryConfig] = None):
        self.config = config if config is not None else DiscoveryConfig()

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._socket: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None

        self._failed = False
        self._last_error: Optional[BaseException] = None
        self._requests_answered = 0

    @property
    def data_port(self) -> int:
        return self.config.data_port

    @property
    def info_port(self) -> int:
        """Bound port while running, configured port otherwise."""
        with self._lock:
            sock = self._socket
        if sock is not None:
            try:
                return int(sock.getsockname()[1])
            except OSError:
                pass
        return self.config.info_port

    @property
    def is_running(self) -> bool:
        with self._lock:
            thread = self._thread
        return thread is not None and thread.is_alive() and not self._stop_event.is_set()

    @property
    def failed(self) -> bool:
        return self._failed

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._last_error

    @property
    def requests_answered(self) -> int:
        return self._requests_answered

    def start(self) -> bool:
        """
        Bind the discovery port and start the listener thread.

        Returns:
            True on success, False if the port could not be bound
        """
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                raise RuntimeError("discovery responder already running")

            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            try:
                sock.bind((self.config.host, self.config.info_port))
                sock.setblocking(False)
            except OSError as exc:
                sock.close()
                self._failed = True
                self._last_error = exc
                logger.error("Error starting discovery on port %d: %s", self.config.info_port, exc)
                return False

            self._stop_event.clear()
            self._failed = False
            self._last_error = None
            self._socket = sock
            self._thread = threading.Thread(
                target=self._loop, args=(sock,), name="owotrack-discovery", daemon=True
            )
            self._thread.start()

        logger.info(
            "Discovery listening on UDP %d, announcing data port %d",
            self.info_port,
            self.config.data_port,
        )
        return True

    def stop(self) -> None:
        """Close the socket and join the listener. Safe to call repeatedly."""
        self._stop_event.set()
        with self._lock:
            sock = self._socket
            thread = self._thread
            self._socket = None
            self._thread = None

        if sock is not None:
            try:
                sock.close()
            except OSError as exc:
                logger.warning("Error stopping discovery: %s", exc)
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    def restart(self, data_port: int) -> bool:
        """Stop, switch the announced data port, and start again."""
        self.config.data_port = int(data_port)
        self.stop()
        result = self.start()
        if not result:
            logger.error("Failed to restart discovery service")
        return result

    def _loop(self, sock: socket.socket) -> None:
        while not self._stop_event.is_set():
            try:
                answered = self._receive_one(sock)
            except OSError as exc:
                if self._stop_event.is_set():
                    break
                self._failed = True
                self._last_error = exc
                logger.error("Discovery socket error, listener stopped: %s", exc)
                break

            if not answered:
                self._stop_event.wait(POLL_INTERVAL_SECONDS)

    def _receive_one(self, sock: socket.socket) -> bool:
        """Handle at most one pending datagram. Returns False if none was queued."""
        try:
            payload, addr = sock.recvfrom(MAX_DATAGRAM_SIZE)
        except (BlockingIOError, InterruptedError):
            return False

        if not is_discovery_request(payload):
            logger.debug("Ignoring non-discovery datagram from %s", addr)
            return True

        sock.sendto(build_reply(self.config.data_port), addr)
        self._requests_answered += 1
        logger.debug("Answered discovery probe from %s", addr)
        return True


def probe(
    host: str = "255.255.255.255",
    port: int = INFO_PORT,
    timeout: float = 1.0,
) -> Optional[Tuple[int, Tuple[str, int]]]:
    """
    Send a discovery probe and wait for the first reply.

    Returns:
        (data_port, responder_address), or None if nothing answered in time
    """
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        if host in ("255.255.255.255", "<broadcast>"):
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.settimeout(timeout)
        sock.sendto((DISCOVERY_REQUEST + "\n").encode("utf-8"), (host, port))
        try:
            data, addr = sock.recvfrom(MAX_DATAGRAM_SIZE)
        except socket.timeout:
            return None

    text = data.decode("utf-8").strip()
    port_text, _, _name = text.partition(":")
    return int(port_text), addr
