"""
Link Session - one MAVLink connection towards the relay (MAVProxy)

Three transports share one interface:

- UDP: fire-and-forget datagrams to host:port
- TCP server: listen on host:port, MAVProxy connects with --out=tcp:host:port
- TCP client: connect out to host:port, reconnecting forever on failure

The session owns the sequence counter, so reconnects and replaced peers keep
counting where the previous connection stopped.
"""

import logging
import select
import socket
import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .link_config import LinkConfig, TransportMode
from .mavlink_frames import contains_heartbeat, encode_heartbeat, encode_rc_override
from .reconnect import ReconnectSupervisor

logger = logging.getLogger(__name__)

READ_SIZE = 4096
SELECT_TIMEOUT_S = 0.2
CONNECT_TIMEOUT_S = 5.0


class LinkState(Enum):
    DOWN = "down"
    CONNECTING = "connecting"
    UP = "up"


class LinkStartError(RuntimeError):
    """The transport could not be opened (e.g. listen port already in use)."""


StateListener = Callable[[LinkState, LinkState], None]


class PeerWriter:
    """
    Non-blocking writer for a stream socket with a bounded pending buffer.

    Frames are queued whole: if a frame does not fit in the remaining buffer it
    is dropped, so a stalled peer costs frames instead of blocking the caller
    and the byte stream never contains a partial frame.
    """

    def __init__(self, sock: socket.socket, max_pending: int = 4096):
        self.sock = sock
        self.max_pending = max_pending
        self._pending = bytearray()
        self._lock = threading.Lock()
        self.closed = False

    @property
    def pending_bytes(self) -> int:
        with self._lock:
            return len(self._pending)

    def write(self, data: bytes) -> bool:
        """
        Queue and flush a frame.

        Returns:
            False if the frame was dropped (buffer full or writer closed).

        Raises:
            OSError: the connection is broken.
        """
        with self._lock:
            if self.closed:
                return False
            self._flush_locked()
            if len(self._pending) + len(data) > self.max_pending:
                return False
            self._pending += data
            self._flush_locked()
            return True

    def _flush_locked(self):
        while self._pending:
            try:
                sent = self.sock.send(self._pending)
            except (BlockingIOError, InterruptedError):
                return
            if sent <= 0:
                return
            del self._pending[:sent]

    def close(self):
        with self._lock:
            if self.closed:
                return
            self.closed = True
            self._pending.clear()
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self.sock.close()
        except OSError:
            pass


class LinkSession(ABC):
    """
    Base class for the transport variants.

    ``send`` is best effort and never raises: failures are counted, logged and
    move the session towards DOWN. State listeners are called outside every
    session lock with ``(old_state, new_state)``.
    """

    mode: TransportMode

    def __init__(self, config: LinkConfig):
        self.config = config

        self._state = LinkState.DOWN
        self._state_lock = threading.Lock()
        self._listeners: List[StateListener] = []

        self._seq = 0
        self._frame_lock = threading.Lock()

        self._running = False
        self._send_failing = False
        self._vehicle_seen = False

        self.stats: Dict[str, int] = {"tx": 0, "rx": 0, "errors": 0, "dropped": 0}

    # ==================== State ====================

    @property
    def state(self) -> LinkState:
        with self._state_lock:
            return self._state

    @property
    def is_up(self) -> bool:
        return self.state is LinkState.UP

    @property
    def sequence(self) -> int:
        """Sequence number the next frame will carry."""
        with self._frame_lock:
            return self._seq

    def add_state_listener(self, listener: StateListener):
        self._listeners.append(listener)

    def _set_state(self, new_state: LinkState):
        with self._state_lock:
            old_state = self._state
            if old_state is new_state:
                return
            self._state = new_state

        logger.debug(f"{self.mode.value} link {old_state.value} -> {new_state.value}")
        if new_state is LinkState.UP:
            self._vehicle_seen = False

        for listener in list(self._listeners):
            try:
                listener(old_state, new_state)
            except Exception as e:
                logger.error(f"Link state listener failed: {e}")

    # ==================== Framing ====================

    def next_sequence(self) -> int:
        with self._frame_lock:
            return self._take_sequence_locked()

    def _take_sequence_locked(self) -> int:
        seq = self._seq
        self._seq = (seq + 1) & 0xFF
        return seq

    def _send_frame(self, encode: Callable[[int], bytes]) -> bool:
        # Sequence allocation and the write happen under one lock so frames
        # reach the transport in sequence order.
        with self._frame_lock:
            frame = encode(self._take_sequence_locked())
            return self.send(frame)

    def send_heartbeat(self) -> bool:
        return self._send_frame(encode_heartbeat)

    def send_rc_override(self, channels: Sequence[int]) -> bool:
        config = self.config
        return self._send_frame(
            lambda seq: encode_rc_override(seq, channels, config.target_system, config.target_component)
        )

    # ==================== Transport ====================

    @abstractmethod
    def start(self):
        """Open the transport."""

    @abstractmethod
    def stop(self):
        """Close the transport; no frames are sent afterwards."""

    @abstractmethod
    def send(self, data: bytes) -> bool:
        """Write one frame. Returns True if the transport accepted it."""

    def _record_sent(self, accepted: bool):
        if accepted:
            self.stats["tx"] += 1
            self._send_failing = False
        else:
            self.stats["dropped"] += 1

    def _record_send_error(self, error: Exception):
        self.stats["errors"] += 1
        if not self._send_failing:
            logger.warning(f"{self.mode.value} write error: {error}")
            self._send_failing = True
        else:
            logger.debug(f"{self.mode.value} write error: {error}")

    def _on_data_received(self, data: bytes):
        self.stats["rx"] += 1
        if contains_heartbeat(data):
            if not self._vehicle_seen:
                logger.info("Vehicle heartbeat received")
                self._vehicle_seen = True
            else:
                logger.debug("Vehicle heartbeat received")

    def _read_stream(self, sock: socket.socket, keep_running: Callable[[], bool]) -> str:
        """Read until the peer closes or errors. Returns the reason."""
        while keep_running():
            try:
                readable, _, _ = select.select([sock], [], [], SELECT_TIMEOUT_S)
                if not readable:
                    continue
                data = sock.recv(READ_SIZE)
            except (BlockingIOError, InterruptedError):
                continue
            except (OSError, ValueError) as e:
                return f"error: {e}"

            if not data:
                return "closed by peer"
            self._on_data_received(data)

        return "stopped"

    def get_status(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "host": self.config.host,
            "port": self.config.port,
            "state": self.state.value,
            "sequence": self.sequence,
            "stats": self.stats.copy(),
        }


class UdpLink(LinkSession):
    """Datagrams to host:port; inbound datagrams are only scanned for heartbeats."""

    mode = TransportMode.UDP

    def __init__(self, config: LinkConfig):
        super().__init__(config)
        self._sock: Optional[socket.socket] = None
        self._sock_lock = threading.Lock()
        self._reader: Optional[threading.Thread] = None

    @property
    def destination(self) -> Tuple[str, int]:
        return (self.config.host, self.config.port)

    @property
    def local_address(self) -> Optional[Tuple[str, int]]:
        """Ephemeral address inbound datagrams are read from."""
        with self._sock_lock:
            sock = self._sock
        if sock is None:
            return None
        return sock.getsockname()[:2]

    def start(self):
        with self._sock_lock:
            if self._sock is not None:
                return
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            # Ephemeral local port so replies from the relay reach the reader
            sock.bind(("0.0.0.0", 0))
            sock.setblocking(False)
            self._sock = sock
            self._running = True

        self._reader = threading.Thread(target=self._udp_reader, args=(sock,), daemon=True, name="UDPReader")
        self._reader.start()

        logger.info(f"UDP link sending to {self.config.host}:{self.config.port}")
        self._set_state(LinkState.UP)

    def stop(self):
        with self._sock_lock:
            sock = self._sock
            self._sock = None
            self._running = False

        if sock is not None:
            try:
                sock.close()
            except OSError:
                pass
        if self._reader and self._reader is not threading.current_thread():
            self._reader.join(timeout=1)
        self._reader = None

        self._set_state(LinkState.DOWN)

    def send(self, data: bytes) -> bool:
        with self._sock_lock:
            sock = self._sock
        if sock is None:
            return False

        try:
            sock.sendto(data, self.destination)
        except (BlockingIOError, InterruptedError):
            self._record_sent(False)
            return False
        except OSError as e:
            # Nothing to reconnect: keep sending into the void
            self._record_send_error(e)
            return False

        self._record_sent(True)
        return True

    def _udp_reader(self, sock: socket.socket):
        while self._running:
            try:
                readable, _, _ = select.select([sock], [], [], SELECT_TIMEOUT_S)
                if not readable:
                    continue
                data, _addr = sock.recvfrom(READ_SIZE)
            except (BlockingIOError, InterruptedError):
                continue
            except (OSError, ValueError):
                # ICMP port unreachable surfaces here on some stacks; closed socket on stop
                if self._running:
                    continue
                break

            if data:
                self._on_data_received(data)


class TcpServerLink(LinkSession):
    """
    Listens for a single relay connection.

    A new connection replaces the current peer immediately. The session stays
    UP across a replacement, so the transmit loop keeps its cadence.
    """

    mode = TransportMode.TCP_SERVER

    def __init__(self, config: LinkConfig):
        super().__init__(config)
        self._server: Optional[socket.socket] = None
        self._accept_thread: Optional[threading.Thread] = None
        self._peer: Optional[PeerWriter] = None
        self._peer_addr: Optional[Tuple[str, int]] = None
        self._peer_lock = threading.Lock()

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """Bound (host, port), useful when configured with port 0."""
        server = self._server
        if server is None:
            return None
        return server.getsockname()[:2]

    @property
    def peer_address(self) -> Optional[Tuple[str, int]]:
        with self._peer_lock:
            return self._peer_addr

    def start(self):
        if self._server is not None:
            return

        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            server.bind((self.config.host, self.config.port))
            server.listen(1)
        except OSError as e:
            server.close()
            raise LinkStartError(f"Cannot listen on {self.config.host}:{self.config.port}: {e}") from e
        server.settimeout(1.0)

        self._server = server
        self._running = True

        self._accept_thread = threading.Thread(target=self._accept_loop, args=(server,), daemon=True, name="TCPAccept")
        self._accept_thread.start()

        host, port = self.address
        logger.info(f"TCP server listening on {host}:{port}, waiting for MAVProxy to connect")

    def stop(self):
        self._running = False

        server = self._server
        self._server = None
        if server is not None:
            try:
                server.close()
            except OSError:
                pass

        with self._peer_lock:
            peer = self._peer
            self._peer = None
            self._peer_addr = None
        if peer is not None:
            peer.close()

        if self._accept_thread and self._accept_thread is not threading.current_thread():
            self._accept_thread.join(timeout=2)
        self._accept_thread = None

        self._set_state(LinkState.DOWN)

    def send(self, data: bytes) -> bool:
        with self._peer_lock:
            peer = self._peer
        if peer is None:
            return False

        try:
            accepted = peer.write(data)
        except OSError as e:
            self._record_send_error(e)
            # The peer's reader sees the close and takes the session DOWN
            peer.close()
            return False

        self._record_sent(accepted)
        return accepted

    def _accept_loop(self, server: socket.socket):
        while self._running:
            try:
                client, addr = server.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self._running:
                    logger.warning(f"TCP accept error: {e}")
                    continue
                break

            try:
                self._attach_peer(client, addr)
            except OSError as e:
                # Peer reset before it could be set up
                logger.warning(f"Could not attach MAVProxy connection from {addr[0]}:{addr[1]}: {e}")
                client.close()

    def _attach_peer(self, client: socket.socket, addr):
        client.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        client.setblocking(False)
        peer = PeerWriter(client, self.config.max_pending_bytes)

        with self._peer_lock:
            previous = self._peer
            self._peer = peer
            self._peer_addr = (addr[0], addr[1])

        if previous is not None:
            logger.info("Replacing previous MAVProxy connection")
            previous.close()

        logger.info(f"MAVProxy connected from {addr[0]}:{addr[1]}")

        # UP before the reader exists: only the reader takes this peer DOWN
        self._set_state(LinkState.UP)

        reader = threading.Thread(
            target=self._peer_reader,
            args=(peer,),
            daemon=True,
            name=f"TCPReader-{addr[1]}",
        )
        reader.start()

    def _peer_reader(self, peer: PeerWriter):
        reason = self._read_stream(peer.sock, lambda: self._running and not peer.closed)
        if peer.closed:
            reason = "closed after write error"
        self._drop_peer(peer, reason)

    def _drop_peer(self, peer: PeerWriter, reason: str):
        with self._peer_lock:
            if self._peer is not peer:
                # Already replaced or stopped
                peer.close()
                return
            self._peer = None
            self._peer_addr = None

        peer.close()
        logger.info(f"MAVProxy client disconnected ({reason})")
        self._set_state(LinkState.DOWN)

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        peer = self.peer_address
        status["peer"] = f"{peer[0]}:{peer[1]}" if peer else None
        return status


class TcpClientLink(LinkSession):
    """
    Connects out to the relay and keeps reconnecting every ``retry_delay_s``.

    Args:
        config: Link configuration.
        wait: Optional replacement for the retry sleep, handed to the
            reconnect supervisor.
    """

    mode = TransportMode.TCP_CLIENT

    def __init__(self, config: LinkConfig, wait: Optional[Callable[[float], object]] = None):
        super().__init__(config)
        self._peer: Optional[PeerWriter] = None
        self._peer_lock = threading.Lock()
        self.supervisor = ReconnectSupervisor(
            f"MAVProxy {config.host}:{config.port}",
            self._connect_and_serve,
            retry_delay_s=config.retry_delay_s,
            wait=wait,
        )

    def start(self):
        if self._running:
            return
        self._running = True
        logger.info(f"TCP client connecting to MAVProxy at {self.config.host}:{self.config.port}")
        self.supervisor.start()

    def stop(self):
        self._running = False
        # The serving thread sees its stop event and drops the peer itself
        self.supervisor.stop()

        with self._peer_lock:
            peer = self._peer
            self._peer = None
        if peer is not None:
            peer.close()

        self._set_state(LinkState.DOWN)

    def send(self, data: bytes) -> bool:
        with self._peer_lock:
            peer = self._peer
        if peer is None:
            return False

        try:
            accepted = peer.write(data)
        except OSError as e:
            self._record_send_error(e)
            peer.close()
            return False

        self._record_sent(accepted)
        return accepted

    def _connect_and_serve(self, stop_event: threading.Event):
        """One connection lifetime, run by the reconnect supervisor."""
        self._set_state(LinkState.CONNECTING)
        try:
            sock = socket.create_connection((self.config.host, self.config.port), timeout=CONNECT_TIMEOUT_S)
        except OSError:
            if not stop_event.is_set():
                self._set_state(LinkState.DOWN)
            raise

        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        sock.setblocking(False)
        peer = PeerWriter(sock, self.config.max_pending_bytes)
        with self._peer_lock:
            if stop_event.is_set():
                # Stopped (and possibly restarted) while connecting
                peer.close()
                return
            self._peer = peer

        logger.info(f"Connected to MAVProxy at {self.config.host}:{self.config.port}")
        self._set_state(LinkState.UP)

        reason = self._read_stream(sock, lambda: not stop_event.is_set() and not peer.closed)
        if stop_event.is_set():
            reason = "stopped"
        elif peer.closed:
            reason = "closed after write error"
        self._drop_peer(peer, reason)

    def _drop_peer(self, peer: PeerWriter, reason: str):
        with self._peer_lock:
            if self._peer is not peer:
                peer.close()
                return
            self._peer = None

        peer.close()
        logger.info(f"MAVProxy connection lost ({reason})")
        self._set_state(LinkState.DOWN)

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        status["connect_attempts"] = self.supervisor.attempts
        return status


_LINK_TYPES = {
    TransportMode.UDP: UdpLink,
    TransportMode.TCP_SERVER: TcpServerLink,
    TransportMode.TCP_CLIENT: TcpClientLink,
}


def create_link(config: LinkConfig, **kwargs) -> LinkSession:
    """Build the session variant selected by ``config.mode``."""
    return _LINK_TYPES[config.mode](config, **kwargs)
