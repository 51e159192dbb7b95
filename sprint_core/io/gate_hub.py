"""
Gate Hub: TCP relay and reference clock.

One device (or a laptop) runs GateHubServer; every gate device connects a
GateHubClient. The hub:
- relays EVENT messages to every connected client, the sender included
- answers TIME_REQ with its wall clock (symmetric probes)
- answers ECHO_REQ with receive/response times and the echoed client send
  time (asymmetric 4-timestamp probes)

Wire format: 4-byte big-endian length prefix followed by a UTF-8 JSON object.

    {"type": "EVENT", "topic": "gate-trigger", "data": {...}}
    {"type": "TIME_REQ", "req_id": "..."}
    {"type": "TIME_RESP", "req_id": "...", "server_time": 1700000000000.0}
    {"type": "ECHO_REQ", "req_id": "...", "client_send_time": 123.4}
    {"type": "ECHO_RESP", "req_id": "...", "server_receive_time": ...,
     "server_response_time": ..., "client_send_time": 123.4}
"""

import itertools
import json
import logging
import socket
import threading
from typing import Any, Callable, Dict, List, Optional

from sprint_core.timing import TimeSource, EchoReply, ProbeError
from sprint_core.metrics import get_metrics
from sprint_core.clock import wall_ms
from .transport import Transport, TransportError

logger = logging.getLogger(__name__)

MSG_EVENT = 'EVENT'
MSG_TIME_REQ = 'TIME_REQ'
MSG_TIME_RESP = 'TIME_RESP'
MSG_ECHO_REQ = 'ECHO_REQ'
MSG_ECHO_RESP = 'ECHO_RESP'

MAX_MESSAGE_BYTES = 1024 * 1024


class FrameError(Exception):
    """Malformed length-prefixed frame."""


def encode_message(message: Dict[str, Any]) -> bytes:
    """Serialize a message with its 4-byte length prefix."""
    payload = json.dumps(message, separators=(',', ':')).encode('utf-8')
    return len(payload).to_bytes(4, byteorder='big') + payload


class MessageDecoder:
    """
    Incremental decoder for length-prefixed JSON frames.

    Usage:
        decoder = MessageDecoder()
        for message in decoder.feed(sock.recv(4096)):
            handle(message)
    """

    def __init__(self, max_message_bytes: int = MAX_MESSAGE_BYTES):
        self.max_message_bytes = max_message_bytes
        self._buffer = b''

    def feed(self, data: bytes) -> List[Dict[str, Any]]:
        """
        Add received bytes; return every complete message.

        Frames that are not a JSON object are skipped with a warning.

        Raises:
            FrameError: If a frame announces more than max_message_bytes
        """
        self._buffer += data
        messages = []

        while len(self._buffer) >= 4:
            msg_length = int.from_bytes(self._buffer[:4], byteorder='big')
            if msg_length > self.max_message_bytes:
                raise FrameError(f"frame of {msg_length} bytes exceeds limit")

            if len(self._buffer) < 4 + msg_length:
                break  # Incomplete, wait for more data

            message_data = self._buffer[4:4 + msg_length]
            self._buffer = self._buffer[4 + msg_length:]

            try:
                message = json.loads(message_data.decode('utf-8'))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                logger.warning(f"JSON decode failed: {e}")
                continue

            if not isinstance(message, dict):
                logger.warning(f"Ignoring non-object message: {message!r}")
                continue
            messages.append(message)

        return messages


class _Connection:
    """Socket plus a send lock, shared by reader and writers."""

    def __init__(self, sock: socket.socket, address):
        self.sock = sock
        self.address = address
        self._send_lock = threading.Lock()

    def send(self, message: Dict[str, Any]):
        data = encode_message(message)
        with self._send_lock:
            self.sock.sendall(data)

    def close(self):
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"Shutdown {self.address}: {e}")
        try:
            self.sock.close()
        except OSError as e:
            logger.debug(f"Closing {self.address}: {e}")


class GateHubServer:
    """
    Relay + reference clock server.

    Usage:
        server = GateHubServer('0.0.0.0', 8765)
        server.start()
        ...
        server.stop()
    """

    def __init__(self, host: str, port: int, clock_ms: Optional[Callable[[], float]] = None):
        """
        Initialize server.

        Args:
            host: Listen address
            port: Listen port (0 picks a free port, see .port after start)
            clock_ms: Reference clock (default: wall clock)
        """
        self.host = host
        self.port = port
        self.clock_ms = clock_ms or wall_ms
        self.metrics = get_metrics()
        self.server_socket: Optional[socket.socket] = None
        self.running = False
        self.clients: List[_Connection] = []
        self._clients_lock = threading.Lock()
        self.accept_thread: Optional[threading.Thread] = None

    @property
    def client_count(self) -> int:
        with self._clients_lock:
            return len(self.clients)

    def start(self) -> bool:
        """Bind and start accepting clients."""
        try:
            self.server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self.server_socket.bind((self.host, self.port))
            self.server_socket.listen(16)
            self.server_socket.settimeout(1.0)
            self.port = self.server_socket.getsockname()[1]

            self.running = True
            self.accept_thread = threading.Thread(
                target=self._accept_loop, name='gate-hub-accept', daemon=True
            )
            self.accept_thread.start()

            logger.info(f"Gate hub listening on {self.host}:{self.port}")
            return True

        except OSError as e:
            logger.error(f"Gate hub failed to start: {e}")
            return False

    def stop(self):
        """Close every client and the listening socket."""
        self.running = False

        with self._clients_lock:
            clients = list(self.clients)
            self.clients.clear()
        for client in clients:
            client.close()

        if self.server_socket:
            try:
                self.server_socket.close()
            except OSError as e:
                logger.debug(f"Closing listener: {e}")

        if self.accept_thread is not None:
            self.accept_thread.join(timeout=2.0)

        logger.info("Gate hub stopped")

    def _accept_loop(self):
        while self.running:
            try:
                client_socket, address = self.server_socket.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self.running:
                    logger.error(f"Accept failed: {e}")
                break

            client_socket.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            connection = _Connection(client_socket, address)
            with self._clients_lock:
                self.clients.append(connection)
            logger.info(f"Gate device connected: {address}")

            threading.Thread(
                target=self._handle_client,
                args=(connection,),
                name=f'gate-hub-{address[1]}',
                daemon=True,
            ).start()

    def _handle_client(self, connection: _Connection):
        decoder = MessageDecoder()
        try:
            connection.sock.settimeout(1.0)
            while self.running:
                try:
                    data = connection.sock.recv(4096)
                except socket.timeout:
                    continue

                if not data:
                    logger.info(f"Gate device disconnected: {connection.address}")
                    break

                for message in decoder.feed(data):
                    self._handle_message(connection, message)

        except FrameError as e:
            self.metrics.increment_drop('invalid_payload')
            logger.warning(f"Dropping {connection.address}: {e}")
        except OSError as e:
            if self.running:
                logger.warning(f"Connection error from {connection.address}: {e}")
        finally:
            connection.close()
            with self._clients_lock:
                if connection in self.clients:
                    self.clients.remove(connection)

    def _handle_message(self, connection: _Connection, message: Dict[str, Any]):
        received = self.clock_ms()
        msg_type = message.get('type')

        if msg_type == MSG_EVENT:
            if not isinstance(message.get('topic'), str) or not isinstance(message.get('data'), dict):
                self.metrics.increment_drop('invalid_payload')
                logger.warning(f"Malformed EVENT from {connection.address}")
                return
            self._broadcast(message)

        elif msg_type == MSG_TIME_REQ:
            connection.send({
                'type': MSG_TIME_RESP,
                'req_id': message.get('req_id'),
                'server_time': self.clock_ms(),
            })

        elif msg_type == MSG_ECHO_REQ:
            connection.send({
                'type': MSG_ECHO_RESP,
                'req_id': message.get('req_id'),
                'server_receive_time': received,
                'server_response_time': self.clock_ms(),
                'client_send_time': message.get('client_send_time'),
            })

        else:
            self.metrics.increment_drop('invalid_payload')
            logger.warning(f"Unknown message type {msg_type!r} from {connection.address}")

    def _broadcast(self, message: Dict[str, Any]):
        with self._clients_lock:
            clients = list(self.clients)
        for client in clients:
            try:
                client.send(message)
            except OSError as e:
                logger.warning(f"Relay to {client.address} failed: {e}")


class GateHubClient(Transport, TimeSource):
    """
    Gate device connection to a GateHubServer.

    Acts as the session Transport and as the reference TimeSource.

    Usage:
        client = GateHubClient('192.168.1.10', 8765)
        client.connect()
        estimator = ClockOffsetEstimator(ReferenceTimeClient(client))
        session = RaceSession(client, aggregator, stamper)
    """

    def __init__(self, host: str, port: int, reply_timeout_s: float = 1.0,
                 connect_timeout_s: float = 5.0):
        """
        Initialize client.

        Args:
            host: Hub address
            port: Hub port
            reply_timeout_s: Wait for a TIME/ECHO reply before failing (s)
            connect_timeout_s: TCP connect timeout (s)
        """
        Transport.__init__(self)
        self.host = host
        self.port = port
        self.reply_timeout_s = reply_timeout_s
        self.connect_timeout_s = connect_timeout_s

        self._connection: Optional[_Connection] = None
        self._reader: Optional[threading.Thread] = None
        self._running = False

        self._request_ids = itertools.count(1)
        self._pending_lock = threading.Lock()
        self._pending: Dict[str, Dict[str, Any]] = {}

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def connect(self):
        """
        Open the hub connection.

        Raises:
            TransportError: If the hub is unreachable
        """
        if self.is_connected:
            return
        try:
            sock = socket.create_connection((self.host, self.port), timeout=self.connect_timeout_s)
        except OSError as e:
            raise TransportError(f"cannot reach gate hub {self.host}:{self.port}: {e}") from e

        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        sock.settimeout(1.0)
        self._connection = _Connection(sock, (self.host, self.port))
        self._running = True
        self._reader = threading.Thread(target=self._read_loop, name='gate-hub-client', daemon=True)
        self._reader.start()

        self._set_connected(True)
        logger.info(f"Connected to gate hub {self.host}:{self.port}")

    def disconnect(self):
        self._running = False
        if self._connection is not None:
            self._connection.close()
        if self._reader is not None and self._reader is not threading.current_thread():
            self._reader.join(timeout=2.0)
        self._fail_pending()
        self._set_connected(False)
        logger.info("Disconnected from gate hub")

    def publish(self, topic: str, data: Dict[str, Any]):
        self._send({'type': MSG_EVENT, 'topic': topic, 'data': data})

    # ------------------------------------------------------------------
    # TimeSource
    # ------------------------------------------------------------------

    @property
    def supports_echo(self) -> bool:
        return True

    def server_now_ms(self) -> float:
        reply = self._request({'type': MSG_TIME_REQ})
        return float(reply['server_time'])

    def echo(self, client_send_ms: float) -> EchoReply:
        reply = self._request({'type': MSG_ECHO_REQ, 'client_send_time': client_send_ms})
        return EchoReply(
            server_receive_time=float(reply['server_receive_time']),
            server_response_time=float(reply['server_response_time']),
            echoed_client_send_time=float(reply['client_send_time']),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _send(self, message: Dict[str, Any]):
        if not self.is_connected or self._connection is None:
            raise TransportError(f"cannot send {message.get('type')}: not connected")
        try:
            self._connection.send(message)
        except OSError as e:
            self._running = False
            self._set_connected(False)
            raise TransportError(f"send failed: {e}") from e

    def _request(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """Send a request and wait for the reply with the same req_id."""
        req_id = str(next(self._request_ids))
        slot = {'event': threading.Event(), 'reply': None}
        with self._pending_lock:
            self._pending[req_id] = slot

        try:
            self._send(dict(message, req_id=req_id))
            if not slot['event'].wait(self.reply_timeout_s):
                raise ProbeError(f"{message['type']} {req_id} timed out "
                                 f"after {self.reply_timeout_s:.1f}s")
        finally:
            with self._pending_lock:
                self._pending.pop(req_id, None)

        if slot['reply'] is None:
            raise ProbeError(f"{message['type']} {req_id} aborted: connection closed")
        return slot['reply']

    def _fail_pending(self):
        with self._pending_lock:
            slots = list(self._pending.values())
        for slot in slots:
            slot['event'].set()

    def _read_loop(self):
        decoder = MessageDecoder()
        try:
            while self._running:
                try:
                    data = self._connection.sock.recv(4096)
                except socket.timeout:
                    continue

                if not data:
                    logger.warning("Gate hub closed the connection")
                    break

                for message in decoder.feed(data):
                    self._handle_message(message)

        except FrameError as e:
            logger.error(f"Gate hub sent a bad frame: {e}")
        except OSError as e:
            if self._running:
                logger.warning(f"Gate hub connection lost: {e}")
        finally:
            self._running = False
            self._fail_pending()
            self._set_connected(False)

    def _handle_message(self, message: Dict[str, Any]):
        msg_type = message.get('type')

        if msg_type == MSG_EVENT:
            self._dispatch(message.get('topic'), message.get('data'))

        elif msg_type in (MSG_TIME_RESP, MSG_ECHO_RESP):
            with self._pending_lock:
                slot = self._pending.get(str(message.get('req_id')))
            if slot is None:
                get_metrics().increment_drop('late_probe')
                logger.debug(f"Reply {message.get('req_id')} arrived after timeout")
                return
            slot['reply'] = message
            slot['event'].set()

        else:
            logger.warning(f"Unknown message type from hub: {msg_type!r}")
